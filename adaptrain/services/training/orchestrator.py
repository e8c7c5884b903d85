"""Training session lifecycle: state machine, run tasks, persistence of snapshots."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from pydantic import ValidationError

from adaptrain.config import settings
from adaptrain.core.exceptions import ConfigurationError, InvalidStateError, NotFoundError
from adaptrain.schemas.training import (
    CheckpointInfo,
    ModelCheckpoint,
    ModelConfiguration,
    ModelType,
    SessionStatus,
    TrainingMetrics,
    TrainingProgress,
    TrainingSession,
)
from adaptrain.services.adapters.base import ModelAdapter
from adaptrain.services.adapters.registry import create_adapter
from adaptrain.services.training.base_models import build_base_model
from adaptrain.services.training.data import DataSource, DataSplit, default_data_source, session_seed
from adaptrain.services.training.driver import CancellationToken, TrainingLoopDriver, invoke_callback
from adaptrain.services.training.events import ProgressBroadcaster
from adaptrain.services.training.store import SessionStore

logger = structlog.get_logger()

# Valid status transitions
VALID_TRANSITIONS = {
    "start": {"from": {SessionStatus.PENDING, SessionStatus.PAUSED}, "to": SessionStatus.RUNNING},
    "stop": {"from": {SessionStatus.RUNNING}, "to": SessionStatus.PAUSED},
    "complete": {"from": {SessionStatus.RUNNING}, "to": SessionStatus.COMPLETED},
    "fail": {"from": {SessionStatus.RUNNING}, "to": SessionStatus.FAILED},
}


@dataclass
class RunCallbacks:
    on_progress: object = None
    on_complete: object = None
    on_error: object = None


@dataclass
class ActiveRun:
    session_id: str
    token: CancellationToken
    progress: TrainingProgress
    steps_per_epoch: int
    callbacks: RunCallbacks
    adapter: ModelAdapter | None = None
    task: asyncio.Task | None = None
    metrics: TrainingMetrics = field(default_factory=TrainingMetrics)
    persisted_step: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def check_transition(session: TrainingSession, action: str) -> SessionStatus:
    """Target status of ``action`` from the session's status, or InvalidStateError."""
    rule = VALID_TRANSITIONS[action]
    if session.status not in rule["from"]:
        raise InvalidStateError(
            f"Cannot {action} a session with status '{session.status.value}'.",
            details={"session_id": session.id, "status": session.status.value},
        )
    return rule["to"]


class TrainingOrchestrator:
    """Owns at most one run per session and drives it through the state machine."""

    def __init__(
        self,
        store: SessionStore | None = None,
        data_source: DataSource | None = None,
        broadcaster: ProgressBroadcaster | None = None,
        driver: TrainingLoopDriver | None = None,
        base_model_factory=build_base_model,
        persist_every_steps: int | None = None,
        run_deadline_seconds: float | None = None,
    ):
        self._store = store or SessionStore()
        self._data_source = data_source or default_data_source()
        self._broadcaster = broadcaster or ProgressBroadcaster()
        self._driver = driver or TrainingLoopDriver()
        self._base_model_factory = base_model_factory
        self._persist_every = max(1, persist_every_steps or settings.adaptrain_persist_every_steps)
        self._run_deadline = (
            run_deadline_seconds if run_deadline_seconds is not None else settings.adaptrain_run_deadline_seconds
        )
        self._runs: dict[str, ActiveRun] = {}

    @property
    def broadcaster(self) -> ProgressBroadcaster:
        return self._broadcaster

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._runs)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._runs

    # ── CRUD ────────────────────────────────────────────────────────────────

    async def create_session(
        self,
        name: str,
        model_type: ModelType | str,
        configuration: ModelConfiguration | dict | None = None,
    ) -> TrainingSession:
        try:
            model_type = ModelType(model_type)
        except ValueError:
            raise ConfigurationError(
                f"Unknown model type '{model_type}'.",
                details={"supported": [m.value for m in ModelType]},
            ) from None
        if configuration is None:
            configuration = ModelConfiguration()
        elif isinstance(configuration, dict):
            try:
                configuration = ModelConfiguration.model_validate(configuration)
            except ValidationError as e:
                raise ConfigurationError(
                    "Invalid model configuration.",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        session = await self._store.create_session(name, model_type, configuration)
        logger.info("training_session_created", session_id=session.id, model_type=model_type.value, name=name)
        return session

    async def get_session(self, session_id: str) -> TrainingSession:
        session = await self._store.get_session(session_id)
        run = self._runs.get(session_id)
        if run is not None and session.status == SessionStatus.RUNNING:
            # in-memory progress is ahead of the throttled persisted copy
            session = session.model_copy(update={"progress": run.progress.model_copy(deep=True), "metrics": run.metrics})
        return session

    async def list_sessions(self) -> list[TrainingSession]:
        return await self._store.list_sessions()

    async def delete(self, session_id: str) -> None:
        session = await self._store.get_session(session_id)
        if session.status == SessionStatus.RUNNING or session_id in self._runs:
            raise InvalidStateError(
                "Cannot delete a running session; stop it first.",
                details={"session_id": session_id, "status": session.status.value},
            )
        await self._store.delete_session(session_id)
        logger.info("training_session_deleted", session_id=session_id)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(
        self,
        session_id: str,
        on_progress=None,
        on_complete=None,
        on_error=None,
    ) -> TrainingSession:
        """Start or resume a session.

        Validation errors (state, configuration, data) are raised before the
        session changes. Once the session is running, any failure moves it to
        ``failed`` and is reported through ``on_error`` instead.
        """
        session = await self._store.get_session(session_id)
        if session_id in self._runs:
            raise InvalidStateError(f"Session '{session_id}' already has an active run.")
        target = check_transition(session, "start")
        session.configuration.adapter_config(session.model_type)
        data = self._data_source.load(session)

        steps_per_epoch = data.train.num_batches(session.configuration.batch_size)
        if steps_per_epoch == 0:
            raise ConfigurationError("Training split is empty.")
        total_steps = steps_per_epoch * session.configuration.epochs

        progress = session.progress.model_copy(deep=True)
        progress.total_epochs = session.configuration.epochs
        progress.total_steps = total_steps

        run = ActiveRun(
            session_id=session_id,
            token=CancellationToken(self._run_deadline),
            progress=progress,
            steps_per_epoch=steps_per_epoch,
            callbacks=RunCallbacks(on_progress, on_complete, on_error),
            persisted_step=progress.current_step,
        )
        session = await self._store.update_session(
            session_id, status=target, progress=progress, error=None, started_at=_now()
        )
        self._runs[session_id] = run
        logger.info(
            "training_session_started",
            session_id=session_id,
            model_type=session.model_type.value,
            resume_step=progress.current_step,
            total_steps=total_steps,
        )

        try:
            await self._prepare_adapter(session, run, total_steps)
        except Exception as e:
            await self._fail(run, f"Adapter initialization failed: {e}")
            return await self._store.get_session(session_id)

        run.task = asyncio.create_task(self._run(session, data, run), name=f"training-{session_id}")
        return session

    async def _prepare_adapter(self, session: TrainingSession, run: ActiveRun, total_steps: int) -> None:
        adapter = create_adapter(
            session.model_type,
            session.configuration,
            total_steps=total_steps,
            seed=session_seed(session.id),
            cancel_token=run.token,
        )
        run.adapter = adapter
        adapter.initialize(self._base_model_factory(session.model_type, session.configuration))
        latest = await self._store.latest_checkpoint(session.id)
        if latest is not None:
            adapter.restore(latest.model_state)
            logger.info("training_session_restored", session_id=session.id, checkpoint_id=latest.id, step=latest.step)

    async def _run(self, session: TrainingSession, data: DataSplit, run: ActiveRun) -> None:
        session_id = session.id
        try:
            completed = await self._driver.run(
                run.adapter,
                data,
                session.configuration,
                run.progress,
                run.token,
                on_progress=lambda progress, metrics: self._on_progress(run, progress, metrics),
            )
        except asyncio.CancelledError:
            run.token.cancel("shutdown")
            await self._pause(run)
            raise
        except Exception as e:
            await self._fail(run, str(e) or e.__class__.__name__)
            return

        if completed:
            await self._complete(run)
        else:
            await self._pause(run)

    async def _on_progress(self, run: ActiveRun, progress: TrainingProgress, metrics: TrainingMetrics) -> None:
        if run.token.cancelled:
            return
        run.metrics = metrics
        epoch_boundary = progress.current_step % run.steps_per_epoch == 0
        if epoch_boundary or progress.current_step - run.persisted_step >= self._persist_every:
            try:
                await self._store.update_session(run.session_id, progress=progress, metrics=metrics)
                run.persisted_step = progress.current_step
            except Exception as e:
                # the snapshot is retried at the next emission; the event still goes out
                logger.warning(
                    "training_progress_persist_failed",
                    session_id=run.session_id,
                    step=progress.current_step,
                    error=str(e),
                )
        if run.token.cancelled:
            return

        self._broadcaster.publish(
            run.session_id,
            {"type": "progress", "session_id": run.session_id, "progress": progress.model_dump(), "metrics": metrics.model_dump()},
        )
        await invoke_callback(run.callbacks.on_progress, progress, metrics)

    async def _final_checkpoint(self, run: ActiveRun, description: str) -> None:
        """Keep the adapter state of a run that is about to release its adapter."""
        if run.adapter is None or not run.adapter.initialized:
            return
        await self._store.add_checkpoint(
            run.session_id,
            epoch=run.progress.current_epoch,
            step=run.progress.current_step,
            model_state=run.adapter.checkpoint(),
            loss=run.progress.training_loss[-1] if run.progress.training_loss else None,
            accuracy=run.progress.validation_accuracy[-1] if run.progress.validation_accuracy else None,
            description=description,
        )

    async def _complete(self, run: ActiveRun) -> None:
        session_id = run.session_id
        run.metrics = run.adapter.get_metrics()
        await self._final_checkpoint(run, f"completed at step {run.progress.current_step}")
        await self._store.update_session(
            session_id,
            status=VALID_TRANSITIONS["complete"]["to"],
            progress=run.progress,
            metrics=run.metrics,
            completed_at=_now(),
        )
        self._release(run)
        logger.info(
            "training_session_completed",
            session_id=session_id,
            steps=run.progress.current_step,
            final_loss=run.progress.training_loss[-1] if run.progress.training_loss else None,
        )
        self._broadcaster.publish(session_id, {"type": "completed", "session_id": session_id})
        await invoke_callback(run.callbacks.on_complete, session_id)

    async def _pause(self, run: ActiveRun) -> None:
        """Persist a cancelled run: snapshot the adapter, then release it."""
        session_id = run.session_id
        if run.progress.current_step > 0:
            await self._final_checkpoint(run, f"paused at step {run.progress.current_step}")
        session = await self._store.get_session(session_id)
        status = None
        if session.status == SessionStatus.RUNNING:
            # deadline or shutdown: nobody went through stop()
            status = check_transition(session, "stop")
        await self._store.update_session(session_id, status=status, progress=run.progress, metrics=run.metrics)
        self._release(run)
        logger.info(
            "training_session_paused",
            session_id=session_id,
            step=run.progress.current_step,
            reason=run.token.reason,
        )
        self._broadcaster.publish(
            session_id,
            {"type": "paused", "session_id": session_id, "step": run.progress.current_step, "reason": run.token.reason},
        )

    async def _fail(self, run: ActiveRun, message: str) -> None:
        session_id = run.session_id
        await self._store.update_session(
            session_id,
            status=VALID_TRANSITIONS["fail"]["to"],
            progress=run.progress,
            error=message,
            completed_at=_now(),
        )
        self._release(run)
        logger.error("training_session_failed", session_id=session_id, error=message)
        self._broadcaster.publish(session_id, {"type": "error", "session_id": session_id, "error": message})
        await invoke_callback(run.callbacks.on_error, session_id, message)

    def _release(self, run: ActiveRun) -> None:
        if run.adapter is not None:
            run.adapter.dispose()
        self._runs.pop(run.session_id, None)

    async def stop(self, session_id: str) -> TrainingSession:
        """Request cooperative cancellation; the session is paused on return.

        When called from inside one of the run's own callbacks the run task
        finishes after the callback returns.
        """
        session = await self._store.get_session(session_id)
        target = check_transition(session, "stop")
        run = self._runs.get(session_id)
        if run is not None:
            if run.adapter is not None:
                run.adapter.stop()
            run.token.cancel()

        await self._store.update_session(session_id, status=target)
        logger.info("training_session_stopping", session_id=session_id)

        if run is not None and run.task is not None and run.task is not asyncio.current_task():
            await run.task
        return await self._store.get_session(session_id)

    async def wait(self, session_id: str) -> TrainingSession:
        """Block until the session's current run (if any) has finished."""
        run = self._runs.get(session_id)
        if run is not None and run.task is not None and run.task is not asyncio.current_task():
            await asyncio.shield(run.task)
        return await self._store.get_session(session_id)

    async def shutdown(self) -> None:
        """Stop every active run and wait for them to settle."""
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("shutdown")
            if run.adapter is not None:
                run.adapter.stop()
        tasks = [r.task for r in runs if r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("training_orchestrator_shutdown", stopped=len(runs))

    # ── Checkpoints & metrics ───────────────────────────────────────────────

    async def create_checkpoint(self, session_id: str, description: str | None = None) -> ModelCheckpoint:
        session = await self._store.get_session(session_id)
        run = self._runs.get(session_id)

        if run is not None and run.adapter is not None and run.adapter.initialized:
            progress = run.progress.model_copy(deep=True)
            state = run.adapter.checkpoint()
        else:
            progress = session.progress
            state = await self._snapshot_offline(session)

        checkpoint = await self._store.add_checkpoint(
            session_id,
            epoch=progress.current_epoch,
            step=progress.current_step,
            model_state=state,
            loss=progress.training_loss[-1] if progress.training_loss else None,
            accuracy=progress.validation_accuracy[-1] if progress.validation_accuracy else None,
            description=description,
        )
        logger.info(
            "training_checkpoint_created",
            session_id=session_id,
            checkpoint_id=checkpoint.id,
            step=checkpoint.step,
            size=checkpoint.size,
        )
        return checkpoint

    async def _snapshot_offline(self, session: TrainingSession) -> dict:
        """Adapter state for a session without a live run."""
        adapter = create_adapter(
            session.model_type,
            session.configuration,
            total_steps=max(1, session.progress.total_steps),
            seed=session_seed(session.id),
        )
        try:
            adapter.initialize(self._base_model_factory(session.model_type, session.configuration))
            latest = await self._store.latest_checkpoint(session.id)
            if latest is not None:
                adapter.restore(latest.model_state)
            return adapter.checkpoint()
        finally:
            adapter.dispose()

    async def list_checkpoints(self, session_id: str) -> list[CheckpointInfo]:
        return await self._store.list_checkpoints(session_id)

    async def get_checkpoint(self, session_id: str, checkpoint_id: str) -> ModelCheckpoint:
        return await self._store.get_checkpoint(session_id, checkpoint_id)

    async def get_metrics(self, session_id: str) -> TrainingMetrics:
        run = self._runs.get(session_id)
        if run is not None and run.adapter is not None and run.adapter.initialized:
            return run.adapter.get_metrics()
        session = await self._store.get_session(session_id)
        return session.metrics

    def get_adapter(self, session_id: str) -> ModelAdapter:
        run = self._runs.get(session_id)
        if run is None or run.adapter is None or not run.adapter.initialized:
            raise NotFoundError(f"Session '{session_id}' has no live adapter.")
        return run.adapter
