"""Common machinery shared by every model adapter.

An adapter takes a base model, decides which tensors become trainable and
how the effective weights are rebuilt before each forward pass, and owns
all of those tensors through a BufferRegistry. The shared part handles the
optimizer/schedule, a single training step, evaluation, metrics sampling
and the JSON-compatible checkpoint payload.
"""

import math
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING

import structlog
import torch
import torch.nn.functional as F
from torch import nn

from adaptrain.core.exceptions import ConfigurationError, ResourceError, TrainingError
from adaptrain.schemas.training import ModelConfiguration, ModelType, TrainingMetrics, TrainingProgress
from adaptrain.services import monitoring
from adaptrain.services.adapters.buffers import BufferRegistry
from adaptrain.services.adapters.optim import build_optimizer, build_scheduler
from adaptrain.services.training.driver import CancellationToken, TrainingLoopDriver

if TYPE_CHECKING:
    from adaptrain.services.training.data import Batch, DataSplit

logger = structlog.get_logger()

_MB = 1024 * 1024


def tensor_to_payload(tensor: torch.Tensor) -> dict:
    t = tensor.detach().cpu().float()
    return {"shape": list(t.shape), "data": t.reshape(-1).tolist()}


def payload_to_tensor(payload: dict) -> torch.Tensor:
    try:
        return torch.tensor(payload["data"], dtype=torch.float32).reshape(payload["shape"])
    except (KeyError, RuntimeError, TypeError) as e:
        raise ConfigurationError("Malformed tensor in checkpoint state.", details={"reason": str(e)}) from e


class EvaluationResult:
    __slots__ = ("loss", "accuracy", "samples")

    def __init__(self, loss: float, accuracy: float, samples: int):
        self.loss = loss
        self.accuracy = accuracy
        self.samples = samples


class ModelAdapter(ABC):
    model_type: ModelType

    def __init__(
        self,
        configuration: ModelConfiguration,
        adapter_config,
        total_steps: int = 1,
        seed: int = 0,
        cancel_token: CancellationToken | None = None,
    ):
        self.configuration = configuration
        self.adapter_config = adapter_config
        self.total_steps = max(1, total_steps)
        self.cancel_token = cancel_token or CancellationToken()
        self.buffers = BufferRegistry(owner=self.model_type.value)
        self.model: nn.Module | None = None
        self.optimizer: torch.optim.Optimizer | None = None
        self.scheduler = None
        self.initialized = False

        self._generator = torch.Generator().manual_seed(seed)
        self._step = 0
        self._last_loss: float | None = None
        self._step_times: deque[float] = deque(maxlen=50)

    # ── Subclass hooks ──────────────────────────────────────────────────────

    @abstractmethod
    def _setup(self, base_model: nn.Module | None) -> None:
        """Freeze/adapt ``base_model`` and allocate trainable buffers."""

    @abstractmethod
    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        """Logits for ``inputs`` using the adapted weights."""

    @abstractmethod
    def _state(self) -> dict:
        ...

    @abstractmethod
    def _load_state(self, state: dict) -> None:
        ...

    def trainable_parameters(self) -> list[torch.Tensor]:
        return [t for t in self.buffers.tensors() if t.requires_grad]

    def after_step(self, step: int) -> None:
        pass

    def maybe_adjust_structure(self, epoch: int) -> bool:
        """Review the adapter structure; True when something changed."""
        return False

    def _adjust_metrics(self, metrics: TrainingMetrics) -> TrainingMetrics:
        return metrics

    def loss_fn(self, logits: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
        return F.cross_entropy(logits, labels.long())

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def initialize(self, base_model: nn.Module | None) -> None:
        if self.buffers.closed:
            raise ResourceError("Adapter has been disposed; create a new one.")
        if self.initialized:
            raise ResourceError("Adapter is already initialized.")
        self._setup(base_model)
        self._build_optimization(start_step=0)
        self.initialized = True
        logger.info(
            "adapter_initialized",
            model_type=self.model_type.value,
            buffers=len(self.buffers),
            trainable_parameters=sum(p.numel() for p in self.trainable_parameters()),
        )

    def _build_optimization(self, start_step: int) -> None:
        self.optimizer = build_optimizer(
            self.configuration.optimizer,
            self.trainable_parameters(),
            self.configuration.learning_rate,
            self.configuration.weight_decay,
        )
        self.scheduler = build_scheduler(
            self.configuration.scheduler,
            self.optimizer,
            self.configuration.warmup_steps,
            self.total_steps,
            start_step=start_step,
        )

    def _require_ready(self) -> None:
        if not self.initialized or self.model is None:
            raise ResourceError("Adapter is not initialized.")

    def stop(self) -> None:
        self.cancel_token.cancel()

    def dispose(self) -> None:
        self.buffers.release_all()
        self.model = None
        self.optimizer = None
        self.scheduler = None
        self.initialized = False

    # ── Training ────────────────────────────────────────────────────────────

    @property
    def step(self) -> int:
        return self._step

    @property
    def current_learning_rate(self) -> float:
        if self.optimizer is None:
            return 0.0
        return float(self.optimizer.param_groups[0]["lr"])

    def train_step(self, batch: "Batch") -> float:
        self._require_ready()
        started = time.perf_counter()

        self.model.train()
        self.optimizer.zero_grad(set_to_none=True)
        logits = self.forward(batch.inputs)
        loss = self.loss_fn(logits, batch.labels)
        loss_value = float(loss.detach())
        if not math.isfinite(loss_value):
            raise TrainingError(
                f"Non-finite loss at step {self._step + 1}.",
                details={"step": self._step + 1, "loss": str(loss_value)},
            )
        if loss.requires_grad:
            loss.backward()
            self.optimizer.step()
        # nothing trainable (no layer matched): the schedule still advances
        self.scheduler.step()
        del logits, loss

        self._step += 1
        self._last_loss = loss_value
        self._step_times.append(time.perf_counter() - started)
        self.after_step(self._step)
        return loss_value

    def evaluate(self, batches: list["Batch"]) -> EvaluationResult | None:
        """Sample-weighted loss and accuracy over ``batches``; None if empty."""
        self._require_ready()
        if not batches:
            return None

        total_loss = 0.0
        correct = 0
        samples = 0
        self.model.eval()
        with torch.no_grad():
            for batch in batches:
                logits = self.forward(batch.inputs)
                n = len(batch)
                total_loss += float(self.loss_fn(logits, batch.labels)) * n
                correct += int((logits.argmax(dim=-1) == batch.labels).sum())
                samples += n
        self.model.train()
        if samples == 0:
            return None
        return EvaluationResult(loss=total_loss / samples, accuracy=correct / samples, samples=samples)

    async def train(self, data: "DataSplit", progress: TrainingProgress | None = None, on_progress=None) -> bool:
        """Run the whole schedule on ``data`` outside an orchestrator.

        Returns True when all epochs finished, False when stopped early.
        """
        driver = TrainingLoopDriver()
        progress = progress if progress is not None else TrainingProgress()
        return await driver.run(self, data, self.configuration, progress, self.cancel_token, on_progress)

    # ── Metrics ─────────────────────────────────────────────────────────────

    def memory_bytes(self) -> int:
        """Adapter buffers plus any model parameters they do not already cover."""
        tracked = {id(t) for t in self.buffers.tensors()}
        total = self.buffers.live_bytes
        if self.model is not None:
            for p in self.model.parameters():
                if id(p) not in tracked:
                    total += p.numel() * p.element_size()
        return total

    def get_metrics(self) -> TrainingMetrics:
        elapsed = sum(self._step_times)
        speed = len(self._step_times) / elapsed if elapsed > 0 else 0.0
        batch_size = self.configuration.batch_size
        loss = self._last_loss

        metrics = TrainingMetrics(
            training_speed=round(speed, 4),
            memory_usage=round(self.memory_bytes() / _MB, 3),
            cpu_usage=monitoring.cpu_utilization(),
            gpu_usage=monitoring.gpu_utilization(),
            batch_size=batch_size,
            throughput=round(speed * batch_size, 4),
            convergence_rate=max(0.0, 1.0 - loss) if loss is not None else 0.0,
            efficiency=min(1.0, speed / 10.0),
        )
        return self._adjust_metrics(metrics)

    # ── Checkpoints ─────────────────────────────────────────────────────────

    def checkpoint(self) -> dict:
        self._require_ready()
        return {
            "model_type": self.model_type.value,
            "step": self._step,
            **self._state(),
        }

    def restore(self, state: dict) -> None:
        self._require_ready()
        if state.get("model_type") != self.model_type.value:
            raise ConfigurationError(
                f"Checkpoint is for '{state.get('model_type')}', not '{self.model_type.value}'."
            )
        self._load_state(state)
        self._step = int(state.get("step", 0))
        self._build_optimization(start_step=self._step)
        logger.info("adapter_restored", model_type=self.model_type.value, step=self._step)
