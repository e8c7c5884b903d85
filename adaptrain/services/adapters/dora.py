"""Weight-decomposed low-rank adaptation.

Each targeted weight W is split into a magnitude and a direction. The
original is kept frozen as W0 and the effective weight used in the forward
pass is ``magnitude * direction + W0``. Matrices (and 4-D kernels viewed as
matrices) store the direction as a rank-r factor pair whose rank can be
adjusted between epochs.
"""

from dataclasses import dataclass

import structlog
import torch
from torch import nn
from torch.func import functional_call

from adaptrain.schemas.training import ModelType
from adaptrain.services.adapters.base import ModelAdapter, payload_to_tensor, tensor_to_payload
from adaptrain.services.adapters.decomposition import DecompositionStrategy, RandomLowRankStrategy, as_matrix

logger = structlog.get_logger()

MAX_RANK = 64
LOW_NORM = 0.01
HIGH_NORM = 0.1


@dataclass
class DecomposedWeight:
    key: str
    shape: tuple[int, ...]
    rank: int | None = None  # None for weights kept as a dense direction

    @property
    def factored(self) -> bool:
        return self.rank is not None

    @property
    def matrix_shape(self) -> tuple[int, int]:
        return self.shape[0], int(torch.Size(self.shape[1:]).numel())


class WeightDecompositionAdapter(ModelAdapter):
    model_type = ModelType.DORA

    def __init__(self, *args, strategy: DecompositionStrategy | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.strategy = strategy or RandomLowRankStrategy(std=0.1, refine_iterations=0)
        self.weights: dict[str, DecomposedWeight] = {}

    # ── Setup ───────────────────────────────────────────────────────────────

    def _setup(self, base_model: nn.Module | None) -> None:
        if base_model is None:
            raise ValueError("Weight decomposition needs a base model.")
        self.model = base_model
        for p in base_model.parameters():
            p.requires_grad_(False)

        targets = self.adapter_config.target_modules
        for module_name, module in base_model.named_modules():
            if not module_name or not any(t in module_name for t in targets):
                continue
            for param_name, param in module.named_parameters(recurse=False):
                self._decompose(f"{module_name}.{param_name}", param)

        if not self.weights:
            logger.warning("dora_no_target_modules", target_modules=list(targets))

    def _decompose(self, key: str, weight: torch.Tensor) -> None:
        original = weight.detach()
        self.buffers.allocate(f"{key}.original", original)

        if original.dim() in (2, 4):
            matrix = as_matrix(original)
            m, n = matrix.shape
            rank = max(1, min(self.adapter_config.rank, m, n))
            left, right = self.strategy.factorize(matrix, rank, generator=self._generator)
            self.buffers.allocate(f"{key}.magnitude", torch.linalg.norm(matrix).reshape(1), trainable=True)
            self.buffers.allocate(f"{key}.left", left, trainable=True)
            self.buffers.allocate(f"{key}.right", right, trainable=True)
            self.weights[key] = DecomposedWeight(key=key, shape=tuple(original.shape), rank=rank)
        else:
            magnitude = torch.linalg.norm(original, dim=-1, keepdim=True)
            direction = original / magnitude.clamp_min(1e-12)
            self.buffers.allocate(f"{key}.magnitude", magnitude, trainable=True)
            self.buffers.allocate(f"{key}.direction", direction, trainable=True)
            self.weights[key] = DecomposedWeight(key=key, shape=tuple(original.shape))

        logger.debug("dora_weight_decomposed", key=key, shape=list(original.shape), rank=self.weights[key].rank)

    # ── Forward ─────────────────────────────────────────────────────────────

    def direction(self, key: str) -> torch.Tensor:
        w = self.weights[key]
        if w.factored:
            return (self.buffers.get(f"{key}.left") @ self.buffers.get(f"{key}.right")).reshape(w.shape)
        return self.buffers.get(f"{key}.direction")

    def adapted_weight(self, key: str) -> torch.Tensor:
        return self.buffers.get(f"{key}.magnitude") * self.direction(key) + self.buffers.get(f"{key}.original")

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        self._require_ready()
        overrides = {key: self.adapted_weight(key) for key in self.weights}
        return functional_call(self.model, overrides, (inputs,))

    # ── Adaptive rank ───────────────────────────────────────────────────────

    def maybe_adjust_structure(self, epoch: int) -> bool:
        if not self.adapter_config.adaptive_rank or not self.initialized:
            return False

        changed = False
        for w in self.weights.values():
            if not w.factored:
                continue
            with torch.no_grad():
                norm = float(torch.linalg.norm(self.direction(w.key)))
            m, n = w.matrix_shape
            new_rank = w.rank
            if norm < LOW_NORM and w.rank > 1:
                new_rank = w.rank - 1
            elif norm > HIGH_NORM and w.rank < MAX_RANK:
                new_rank = w.rank + 1
            new_rank = max(1, min(new_rank, MAX_RANK, m, n))
            if new_rank != w.rank:
                logger.info(
                    "dora_rank_adjusted",
                    key=w.key,
                    epoch=epoch,
                    old_rank=w.rank,
                    new_rank=new_rank,
                    direction_norm=round(norm, 6),
                )
                self._resize(w, new_rank)
                changed = True

        if changed:
            self._build_optimization(start_step=self._step)
        return changed

    def _resize(self, w: DecomposedWeight, new_rank: int) -> None:
        """Reallocate the factor pair at ``new_rank``, keeping shared columns."""
        m, n = w.matrix_shape
        keep = min(w.rank, new_rank)
        with torch.no_grad():
            left = torch.randn(m, new_rank, generator=self._generator) * self.strategy_std
            right = torch.zeros(new_rank, n)
            left[:, :keep] = self.buffers.get(f"{w.key}.left")[:, :keep]
            right[:keep] = self.buffers.get(f"{w.key}.right")[:keep]

        self.buffers.release(f"{w.key}.left")
        self.buffers.release(f"{w.key}.right")
        self.buffers.allocate(f"{w.key}.left", left, trainable=True)
        self.buffers.allocate(f"{w.key}.right", right, trainable=True)
        w.rank = new_rank

    @property
    def strategy_std(self) -> float:
        return getattr(self.strategy, "std", 0.1)

    def ranks(self) -> dict[str, int]:
        return {key: w.rank for key, w in self.weights.items() if w.factored}

    # ── Checkpoints ─────────────────────────────────────────────────────────

    def _state(self) -> dict:
        weights = {}
        for key, w in self.weights.items():
            entry = {"rank": w.rank, "magnitude": tensor_to_payload(self.buffers.get(f"{key}.magnitude"))}
            if w.factored:
                entry["left"] = tensor_to_payload(self.buffers.get(f"{key}.left"))
                entry["right"] = tensor_to_payload(self.buffers.get(f"{key}.right"))
            else:
                entry["direction"] = tensor_to_payload(self.buffers.get(f"{key}.direction"))
            weights[key] = entry
        return {"weights": weights}

    def _load_state(self, state: dict) -> None:
        for key, entry in state.get("weights", {}).items():
            w = self.weights.get(key)
            if w is None:
                logger.warning("dora_checkpoint_key_unknown", key=key)
                continue
            parts = ["magnitude", "left", "right"] if w.factored else ["magnitude", "direction"]
            for part in parts:
                self.buffers.release(f"{key}.{part}")
                self.buffers.allocate(f"{key}.{part}", payload_to_tensor(entry[part]), trainable=True)
            if w.factored:
                w.rank = int(entry["rank"])
