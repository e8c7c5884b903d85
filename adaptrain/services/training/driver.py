"""Epoch/batch loop shared by every adapter."""

import asyncio
import inspect
import time
from typing import TYPE_CHECKING

import structlog

from adaptrain.config import settings
from adaptrain.core.exceptions import ConfigurationError
from adaptrain.schemas.training import ModelConfiguration, TrainingProgress

if TYPE_CHECKING:
    from adaptrain.services.adapters.base import ModelAdapter
    from adaptrain.services.training.data import DataSplit

logger = structlog.get_logger()


class CancellationToken:
    """Cooperative stop flag, optionally tripped by a wall-clock deadline."""

    def __init__(self, deadline_seconds: float | None = None):
        self._cancelled = False
        self.reason: str | None = None
        self._deadline = time.monotonic() + deadline_seconds if deadline_seconds else None

    def cancel(self, reason: str = "stopped") -> None:
        if not self._cancelled:
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        if not self._cancelled and self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline")
        return self._cancelled


async def invoke_callback(callback, *args) -> None:
    """Call a sync or async callback; failures are logged, never raised."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.warning("training_callback_failed", callback=getattr(callback, "__name__", repr(callback)), error=str(e))


def _append_capped(history: list[float], value: float, limit: int) -> None:
    history.append(value)
    if len(history) > limit:
        del history[: len(history) - limit]


class TrainingLoopDriver:
    """Runs minibatches in order, emitting progress snapshots.

    Progress is emitted every ``progress_interval`` steps and once per epoch
    after validation. The token is checked before every batch and every
    emission, so nothing is emitted once a stop has been requested.
    """

    def __init__(
        self,
        progress_interval: int | None = None,
        structure_interval: int | None = None,
        history_limit: int | None = None,
    ):
        self.progress_interval = max(1, progress_interval or settings.adaptrain_progress_interval)
        self.structure_interval = max(1, structure_interval or settings.adaptrain_structure_interval)
        self.history_limit = max(1, history_limit or settings.adaptrain_history_limit)

    async def run(
        self,
        adapter: "ModelAdapter",
        data: "DataSplit",
        configuration: ModelConfiguration,
        progress: TrainingProgress,
        token: CancellationToken,
        on_progress=None,
    ) -> bool:
        """Train until done (True) or until ``token`` is cancelled (False).

        ``progress`` is mutated in place; a run resumes from
        ``progress.current_step``.
        """
        batch_size = configuration.batch_size
        steps_per_epoch = data.train.num_batches(batch_size)
        if steps_per_epoch == 0:
            raise ConfigurationError("Training split is empty.")
        total_steps = configuration.epochs * steps_per_epoch

        progress.total_epochs = configuration.epochs
        progress.total_steps = total_steps
        progress.current_step = min(progress.current_step, total_steps)
        start_step = progress.current_step

        started = time.monotonic()
        run_steps = 0

        async def emit() -> bool:
            if token.cancelled:
                return False
            await invoke_callback(on_progress, progress.model_copy(deep=True), adapter.get_metrics())
            return True

        for epoch in range(start_step // steps_per_epoch, configuration.epochs):
            if token.cancelled:
                return False
            progress.current_epoch = epoch + 1
            skip = max(0, start_step - epoch * steps_per_epoch)

            for index, batch in enumerate(data.train.minibatches(batch_size)):
                if index < skip:
                    continue
                if token.cancelled:
                    return False

                loss = adapter.train_step(batch)
                progress.current_step += 1
                run_steps += 1
                _append_capped(progress.training_loss, loss, self.history_limit)
                _append_capped(progress.learning_rate, adapter.current_learning_rate, self.history_limit)
                self._update_timing(progress, run_steps, time.monotonic() - started)

                if progress.current_step % self.progress_interval == 0:
                    if not await emit():
                        return False
                await asyncio.sleep(0)

            if token.cancelled:
                return False
            evaluation = adapter.evaluate(data.validation_batches(batch_size))
            if evaluation is not None:
                _append_capped(progress.validation_loss, evaluation.loss, self.history_limit)
                _append_capped(progress.validation_accuracy, evaluation.accuracy, self.history_limit)
            self._update_timing(progress, run_steps, time.monotonic() - started)
            logger.debug(
                "training_epoch_completed",
                epoch=epoch + 1,
                step=progress.current_step,
                validation_loss=evaluation.loss if evaluation else None,
            )
            if not await emit():
                return False

            if (epoch + 1) % self.structure_interval == 0:
                if token.cancelled:
                    return False
                adapter.maybe_adjust_structure(epoch + 1)
            await asyncio.sleep(0)

        progress.current_epoch = configuration.epochs
        progress.completion_percentage = 100.0
        progress.estimated_time_remaining = 0.0
        return True

    @staticmethod
    def _update_timing(progress: TrainingProgress, run_steps: int, elapsed: float) -> None:
        total = max(1, progress.total_steps)
        remaining = max(0, progress.total_steps - progress.current_step)
        if run_steps > 0 and elapsed > 0:
            eta = remaining / (run_steps / elapsed)
        else:
            eta = 0.0
        progress.estimated_time_remaining = max(0.0, round(eta, 3))
        pct = round(100.0 * progress.current_step / total, 2)
        progress.completion_percentage = min(100.0, max(progress.completion_percentage, pct))
