import re

import pytest
import torch
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from typer.testing import CliRunner

import adaptrain.cli as cli
from adaptrain.core.database import Base
from adaptrain.services.training.base_models import build_base_model
from adaptrain.services.training.data import Batch, DataSplit, TensorDataSource
from adaptrain.services.training.driver import TrainingLoopDriver
from adaptrain.services.training.orchestrator import TrainingOrchestrator
from adaptrain.services.training.store import SessionStore

runner = CliRunner()


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point the CLI at a file database; every command opens it in its own event loop."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    generator = torch.Generator().manual_seed(0)
    split = DataSplit(
        train=Batch(torch.randn(64, 16, generator=generator), torch.randint(0, 4, (64,), generator=generator))
    )

    async def _orchestrator():
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return TrainingOrchestrator(
            store=SessionStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)),
            data_source=TensorDataSource(split),
            driver=TrainingLoopDriver(progress_interval=10_000),
            base_model_factory=lambda model_type, configuration: build_base_model(
                model_type, configuration, input_dim=16, num_classes=4, seed=1
            ),
        )

    monkeypatch.setattr(cli, "_orchestrator", _orchestrator)
    return url


def _create(tmp_path) -> str:
    config = tmp_path / "config.json"
    config.write_text('{"epochs": 1, "batch_size": 16, "dora_config": {"rank": 2}}', encoding="utf-8")
    result = runner.invoke(cli.cli_app, ["create-session", "--name", "cli", "--model-type", "dora", "--config", str(config)])
    assert result.exit_code == 0, result.output
    return re.search(r"ID:\s+(\S+)", result.output).group(1)


class TestCli:
    def test_create_and_list(self, cli_db, tmp_path):
        session_id = _create(tmp_path)
        result = runner.invoke(cli.cli_app, ["list-sessions"])
        assert result.exit_code == 0
        assert session_id[:8] in result.output

    def test_list_empty(self, cli_db):
        result = runner.invoke(cli.cli_app, ["list-sessions"])
        assert result.exit_code == 0
        assert "No training sessions" in result.output

    def test_train_to_completion(self, cli_db, tmp_path):
        session_id = _create(tmp_path)
        result = runner.invoke(cli.cli_app, ["train", session_id])
        assert result.exit_code == 0, result.output
        assert "epoch 1/1" in result.output
        assert "completed" in result.output

    def test_checkpoint_and_delete(self, cli_db, tmp_path):
        session_id = _create(tmp_path)
        result = runner.invoke(cli.cli_app, ["checkpoint", session_id, "--description", "baseline"])
        assert result.exit_code == 0
        assert "created" in result.output

        result = runner.invoke(cli.cli_app, ["delete-session", session_id])
        assert result.exit_code == 0

    def test_unknown_session_exits_with_error(self, cli_db):
        result = runner.invoke(cli.cli_app, ["train", "nope"])
        assert result.exit_code == 1
        assert "not_found" in result.output

    def test_unknown_model_type(self, cli_db):
        result = runner.invoke(cli.cli_app, ["create-session", "--name", "x", "--model-type", "gpt"])
        assert result.exit_code == 1
        assert "configuration_error" in result.output
