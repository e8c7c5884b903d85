import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

console = Console()
cli_app = typer.Typer(name="adaptrain-admin", help="Adaptrain administrative CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    from adaptrain.core.exceptions import AdaptrainError

    try:
        return asyncio.run(coro)
    except AdaptrainError as e:
        console.print(f"[bold red]{e.code}:[/bold red] {e.message}")
        raise typer.Exit(code=1)


async def _orchestrator():
    from adaptrain.core.database import init_db
    from adaptrain.services.training.orchestrator import TrainingOrchestrator

    await init_db()
    return TrainingOrchestrator()


@cli_app.command("create-session")
def create_session(
    name: str = typer.Option(..., "--name", help="Human-readable session name"),
    model_type: str = typer.Option(..., "--model-type", help="dora, qr-adaptor or persian-bert"),
    config: Path = typer.Option(None, "--config", help="JSON file with the model configuration"),
):
    """Create a pending training session."""
    configuration = None
    if config is not None:
        configuration = json.loads(config.read_text(encoding="utf-8"))

    async def _create():
        orchestrator = await _orchestrator()
        return await orchestrator.create_session(name, model_type, configuration)

    session = _run_async(_create())
    console.print("\n[bold green]Session created.[/bold green]\n")
    console.print(f"  ID:         {session.id}")
    console.print(f"  Name:       {session.name}")
    console.print(f"  Model type: {session.model_type.value}")
    console.print(f"  Status:     {session.status.value}\n")


@cli_app.command("list-sessions")
def list_sessions():
    """List all training sessions."""
    async def _list():
        orchestrator = await _orchestrator()
        return await orchestrator.list_sessions()

    sessions = _run_async(_list())

    if not sessions:
        console.print("[dim]No training sessions found.[/dim]")
        return

    table = Table(title="Training Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type", style="green")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Checkpoints", justify="right")

    for s in sessions:
        table.add_row(
            s.id,
            s.name,
            s.model_type.value,
            s.status.value,
            f"{s.progress.completion_percentage:.1f}%",
            str(len(s.checkpoints)),
        )

    console.print(table)


@cli_app.command("train")
def train(
    session_id: str = typer.Argument(help="Session to start or resume"),
):
    """Start a session and follow it until it completes, fails or is interrupted."""
    def _on_progress(progress, metrics):
        loss = progress.training_loss[-1] if progress.training_loss else float("nan")
        console.print(
            f"  epoch {progress.current_epoch}/{progress.total_epochs}"
            f"  step {progress.current_step}/{progress.total_steps}"
            f"  loss {loss:.4f}"
            f"  {progress.completion_percentage:5.1f}%"
            f"  eta {progress.estimated_time_remaining:.0f}s"
            f"  {metrics.training_speed:.1f} steps/s"
        )

    def _on_error(sid, message):
        console.print(f"[bold red]Training failed:[/bold red] {message}")

    async def _train():
        orchestrator = await _orchestrator()
        await orchestrator.start(session_id, on_progress=_on_progress, on_error=_on_error)
        try:
            return await orchestrator.wait(session_id)
        except asyncio.CancelledError:
            await orchestrator.shutdown()
            raise

    try:
        session = _run_async(_train())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted; session paused.[/yellow]")
        raise typer.Exit(code=130)

    style = "green" if session.status.value == "completed" else "yellow"
    console.print(f"\n[bold {style}]Session {session.status.value}.[/bold {style}]")
    if session.status.value == "failed":
        raise typer.Exit(code=1)


@cli_app.command("checkpoint")
def checkpoint(
    session_id: str = typer.Argument(help="Session to snapshot"),
    description: str = typer.Option(None, "--description", help="Optional description"),
):
    """Create a checkpoint of a session's adapter state."""
    async def _checkpoint():
        orchestrator = await _orchestrator()
        return await orchestrator.create_checkpoint(session_id, description=description)

    ckpt = _run_async(_checkpoint())
    console.print(f"[bold green]Checkpoint {ckpt.id} created[/bold green] (epoch {ckpt.epoch}, step {ckpt.step}, {ckpt.size} bytes)")


@cli_app.command("delete-session")
def delete_session(
    session_id: str = typer.Argument(help="Session to delete"),
):
    """Delete a session and its checkpoints."""
    async def _delete():
        orchestrator = await _orchestrator()
        await orchestrator.delete(session_id)

    _run_async(_delete())
    console.print(f"[bold red]Session {session_id} deleted.[/bold red]")


def main():
    cli_app()


if __name__ == "__main__":
    main()
