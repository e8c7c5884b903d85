import time

import pytest
import torch

from adaptrain.core.exceptions import ConfigurationError
from adaptrain.schemas.training import ModelConfiguration, TrainingMetrics, TrainingProgress
from adaptrain.services.adapters.base import EvaluationResult
from adaptrain.services.training.data import Batch, DataSplit
from adaptrain.services.training.driver import CancellationToken, TrainingLoopDriver, invoke_callback


class FakeAdapter:
    """Records calls; loss decreases by 0.1 per step."""

    def __init__(self):
        self.steps = 0
        self.batch_sizes: list[int] = []
        self.structure_epochs: list[int] = []
        self.current_learning_rate = 0.01

    def train_step(self, batch):
        self.steps += 1
        self.batch_sizes.append(len(batch))
        return 1.0 - 0.1 * self.steps

    def evaluate(self, batches):
        if not batches:
            return None
        return EvaluationResult(loss=0.5, accuracy=0.75, samples=sum(len(b) for b in batches))

    def get_metrics(self):
        return TrainingMetrics(batch_size=2)

    def maybe_adjust_structure(self, epoch):
        self.structure_epochs.append(epoch)
        return False


def _split(train: int = 6, validation: int = 2) -> DataSplit:
    return DataSplit(
        train=Batch(torch.zeros(train, 4), torch.zeros(train, dtype=torch.long)),
        validation=Batch(torch.zeros(validation, 4), torch.zeros(validation, dtype=torch.long)) if validation else None,
    )


def _configuration(epochs: int = 3, batch_size: int = 2) -> ModelConfiguration:
    return ModelConfiguration(epochs=epochs, batch_size=batch_size)


class TestRun:
    async def test_one_event_per_epoch(self):
        events = []
        progress = TrainingProgress()
        adapter = FakeAdapter()
        driver = TrainingLoopDriver(progress_interval=1000, structure_interval=1000)

        finished = await driver.run(
            adapter, _split(), _configuration(), progress, CancellationToken(), lambda p, m: events.append(p)
        )

        assert finished is True
        assert [e.current_epoch for e in events] == [1, 2, 3]
        assert [e.current_step for e in events] == [3, 6, 9]
        assert adapter.steps == 9
        assert progress.completion_percentage == 100.0
        assert progress.estimated_time_remaining == 0.0
        assert progress.validation_accuracy == [0.75, 0.75, 0.75]

    async def test_step_events_and_monotonic_completion(self):
        events = []
        driver = TrainingLoopDriver(progress_interval=1, structure_interval=1000)
        await driver.run(
            FakeAdapter(), _split(), _configuration(), TrainingProgress(), CancellationToken(),
            lambda p, m: events.append(p),
        )

        assert len(events) == 12
        pct = [e.completion_percentage for e in events]
        assert pct == sorted(pct)
        assert all(e.estimated_time_remaining >= 0 for e in events)

    async def test_events_are_snapshots(self):
        events = []
        progress = TrainingProgress()
        driver = TrainingLoopDriver(progress_interval=1000)
        await driver.run(
            FakeAdapter(), _split(), _configuration(), progress, CancellationToken(), lambda p, m: events.append(p)
        )
        assert events[0] is not progress
        assert len(events[0].training_loss) == 3

    async def test_last_batch_may_be_short(self):
        adapter = FakeAdapter()
        await TrainingLoopDriver().run(
            adapter, _split(train=5), _configuration(epochs=1), TrainingProgress(), CancellationToken()
        )
        assert adapter.batch_sizes == [2, 2, 1]

    async def test_empty_training_split(self):
        with pytest.raises(ConfigurationError):
            await TrainingLoopDriver().run(
                FakeAdapter(), _split(train=0), _configuration(), TrainingProgress(), CancellationToken()
            )

    async def test_structure_review_interval(self):
        adapter = FakeAdapter()
        driver = TrainingLoopDriver(structure_interval=2)
        await driver.run(adapter, _split(), _configuration(epochs=5), TrainingProgress(), CancellationToken())
        assert adapter.structure_epochs == [2, 4]

    async def test_history_is_capped(self):
        progress = TrainingProgress()
        driver = TrainingLoopDriver(history_limit=4)
        await driver.run(FakeAdapter(), _split(), _configuration(), progress, CancellationToken())
        assert len(progress.training_loss) == 4
        assert progress.training_loss[-1] == pytest.approx(1.0 - 0.9)


class TestCancellation:
    async def test_no_events_after_cancel(self):
        token = CancellationToken()
        events = []
        adapter = FakeAdapter()

        def on_progress(progress, metrics):
            events.append(progress)
            token.cancel()

        driver = TrainingLoopDriver(progress_interval=1)
        finished = await driver.run(adapter, _split(), _configuration(), TrainingProgress(), token, on_progress)

        assert finished is False
        assert len(events) == 1
        assert adapter.steps == 1

    async def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        adapter = FakeAdapter()
        finished = await TrainingLoopDriver().run(adapter, _split(), _configuration(), TrainingProgress(), token)
        assert finished is False
        assert adapter.steps == 0

    def test_deadline(self):
        token = CancellationToken(deadline_seconds=0.001)
        time.sleep(0.01)
        assert token.cancelled
        assert token.reason == "deadline"

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("shutdown")
        token.cancel("stopped")
        assert token.reason == "shutdown"


class TestResume:
    async def test_resumes_from_current_step(self):
        adapter = FakeAdapter()
        events = []
        progress = TrainingProgress(current_step=4)
        driver = TrainingLoopDriver(progress_interval=1000)

        finished = await driver.run(
            adapter, _split(), _configuration(), progress, CancellationToken(), lambda p, m: events.append(p)
        )

        assert finished is True
        assert adapter.steps == 5
        assert [e.current_epoch for e in events] == [2, 3]
        assert progress.current_step == 9


class TestInvokeCallback:
    async def test_async_callback_is_awaited(self):
        seen = []

        async def callback(value):
            seen.append(value)

        await invoke_callback(callback, 1)
        assert seen == [1]

    async def test_failures_are_swallowed(self):
        def callback():
            raise RuntimeError("boom")

        await invoke_callback(callback)

    async def test_none(self):
        await invoke_callback(None, 1)
