"""Quantized low-rank adaptation.

Targeted weights are fake-quantized, then replaced by a trainable factor
pair Q (m×r) and R (r×n) fitted to the quantized matrix. Only Q and R train;
the effective weight is ``Q @ R`` reshaped to the original shape.
"""

import math
from dataclasses import dataclass

import structlog
import torch
from torch import nn
from torch.func import functional_call

from adaptrain.schemas.training import ModelType, TrainingMetrics
from adaptrain.services.adapters.base import ModelAdapter, payload_to_tensor, tensor_to_payload
from adaptrain.services.adapters.decomposition import DecompositionStrategy, RandomLowRankStrategy, as_matrix
from adaptrain.services.adapters.quantization import quantize

logger = structlog.get_logger()

MAX_RANK = 32
RANK_INSPECTION_INTERVAL = 100
SMALL_FACTOR_NORM = 0.1


@dataclass
class FactoredLayer:
    key: str
    shape: tuple[int, ...]
    rank: int
    original_size: int
    compressed_size: int

    def as_dict(self) -> dict:
        return {
            "name": self.key,
            "shape": list(self.shape),
            "rank": self.rank,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "compression_ratio": self.compressed_size / self.original_size if self.original_size else 1.0,
        }


def factored_rank(m: int, n: int, compression_ratio: float, rank_optimization: bool) -> int:
    if rank_optimization:
        return max(1, min(m, n, math.floor(min(m, n) * compression_ratio)))
    return max(1, min(m, n, MAX_RANK))


class QuantizedRankAdapter(ModelAdapter):
    model_type = ModelType.QR_ADAPTOR

    def __init__(self, *args, strategy: DecompositionStrategy | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.strategy = strategy or RandomLowRankStrategy(std=0.1, refine_iterations=5, step_size=0.01)
        self.layers: dict[str, FactoredLayer] = {}
        self.rank_reduction_candidates: set[str] = set()

    def _setup(self, base_model: nn.Module | None) -> None:
        if base_model is None:
            raise ValueError("Quantized-rank adaptation needs a base model.")
        self.model = base_model
        for p in base_model.parameters():
            p.requires_grad_(False)

        cfg = self.adapter_config
        for module_name, module in base_model.named_modules():
            if not module_name or not any(t in module_name for t in cfg.target_modules):
                continue
            for param_name, param in module.named_parameters(recurse=False):
                if param.dim() < 2:
                    continue
                self._factorize(f"{module_name}.{param_name}", param)

        if not self.layers:
            logger.warning("qr_no_target_modules", target_modules=list(cfg.target_modules))

    def _factorize(self, key: str, weight: torch.Tensor) -> None:
        cfg = self.adapter_config
        quantized = quantize(weight, cfg.precision_mode)
        matrix = as_matrix(quantized)
        m, n = matrix.shape
        rank = factored_rank(m, n, cfg.compression_ratio, cfg.rank_optimization)
        q, r = self.strategy.factorize(matrix, rank, generator=self._generator)

        self.buffers.allocate(f"{key}.q", q, trainable=True)
        self.buffers.allocate(f"{key}.r", r, trainable=True)
        layer = FactoredLayer(
            key=key,
            shape=tuple(weight.shape),
            rank=rank,
            original_size=weight.numel(),
            compressed_size=q.numel() + r.numel(),
        )
        self.layers[key] = layer
        logger.debug(
            "qr_layer_factorized",
            key=key,
            precision_mode=cfg.precision_mode,
            rank=rank,
            original_size=layer.original_size,
            compressed_size=layer.compressed_size,
        )

    def reconstruct(self, key: str) -> torch.Tensor:
        layer = self.layers[key]
        return (self.buffers.get(f"{key}.q") @ self.buffers.get(f"{key}.r")).reshape(layer.shape)

    def forward(self, inputs: torch.Tensor) -> torch.Tensor:
        self._require_ready()
        overrides = {key: self.reconstruct(key) for key in self.layers}
        return functional_call(self.model, overrides, (inputs,))

    # ── Rank inspection ─────────────────────────────────────────────────────

    def after_step(self, step: int) -> None:
        if self.adapter_config.dynamic_rank and step % RANK_INSPECTION_INTERVAL == 0:
            self.inspect_rank_candidates()

    def inspect_rank_candidates(self) -> list[str]:
        """Flag layers whose Q or R norm has collapsed. Ranks are not changed."""
        flagged = []
        with torch.no_grad():
            for key in self.layers:
                q_norm = float(torch.linalg.norm(self.buffers.get(f"{key}.q")))
                r_norm = float(torch.linalg.norm(self.buffers.get(f"{key}.r")))
                if q_norm < SMALL_FACTOR_NORM or r_norm < SMALL_FACTOR_NORM:
                    flagged.append(key)
                    if key not in self.rank_reduction_candidates:
                        logger.info(
                            "qr_rank_reduction_candidate",
                            key=key,
                            step=self._step,
                            q_norm=round(q_norm, 6),
                            r_norm=round(r_norm, 6),
                        )
                    self.rank_reduction_candidates.add(key)
        return flagged

    # ── Compression ─────────────────────────────────────────────────────────

    def get_compression_analysis(self) -> dict:
        total_original = sum(layer.original_size for layer in self.layers.values())
        total_compressed = sum(layer.compressed_size for layer in self.layers.values())
        return {
            "total_original_size": total_original,
            "total_compressed_size": total_compressed,
            "compression_ratio": total_compressed / total_original if total_original else 1.0,
            "precision_mode": self.adapter_config.precision_mode,
            "quantization_bits": self.adapter_config.quantization_bits,
            "layers": [layer.as_dict() for layer in self.layers.values()],
        }

    def _adjust_metrics(self, metrics: TrainingMetrics) -> TrainingMetrics:
        ratio = self.get_compression_analysis()["compression_ratio"]
        metrics.efficiency = min(1.0, max(0.0, 1.0 - ratio + 0.2))
        return metrics

    # ── Checkpoints ─────────────────────────────────────────────────────────

    def _state(self) -> dict:
        return {
            "layers": {
                key: {
                    "rank": layer.rank,
                    "q": tensor_to_payload(self.buffers.get(f"{key}.q")),
                    "r": tensor_to_payload(self.buffers.get(f"{key}.r")),
                }
                for key, layer in self.layers.items()
            },
            "rank_reduction_candidates": sorted(self.rank_reduction_candidates),
        }

    def _load_state(self, state: dict) -> None:
        for key, entry in state.get("layers", {}).items():
            layer = self.layers.get(key)
            if layer is None:
                logger.warning("qr_checkpoint_key_unknown", key=key)
                continue
            q = payload_to_tensor(entry["q"])
            r = payload_to_tensor(entry["r"])
            self.buffers.release(f"{key}.q")
            self.buffers.release(f"{key}.r")
            self.buffers.allocate(f"{key}.q", q, trainable=True)
            self.buffers.allocate(f"{key}.r", r, trainable=True)
            layer.rank = int(entry["rank"])
            layer.compressed_size = q.numel() + r.numel()
        self.rank_reduction_candidates = set(state.get("rank_reduction_candidates", []))
