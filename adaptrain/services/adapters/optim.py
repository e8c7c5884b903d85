"""Optimizer and learning-rate schedule construction."""

import math
from collections.abc import Iterable

import torch
from torch.optim.lr_scheduler import LambdaLR

from adaptrain.core.exceptions import ConfigurationError

# Floor of the exponential schedule, reached at the last step.
EXPONENTIAL_FLOOR = 0.05


def _trainable(params: Iterable[torch.Tensor]) -> list[torch.Tensor]:
    return [p for p in params if p.requires_grad]


def _build_sgd(params, learning_rate: float, weight_decay: float) -> torch.optim.Optimizer:
    return torch.optim.SGD(params, lr=learning_rate, momentum=0.9, weight_decay=weight_decay)


def _build_adam(params, learning_rate: float, weight_decay: float) -> torch.optim.Optimizer:
    return torch.optim.Adam(params, lr=learning_rate, weight_decay=weight_decay)


def _build_adamw(params, learning_rate: float, weight_decay: float) -> torch.optim.Optimizer:
    return torch.optim.AdamW(params, lr=learning_rate, weight_decay=weight_decay)


OPTIMIZERS = {
    "sgd": _build_sgd,
    "adam": _build_adam,
    "adamw": _build_adamw,
}


def build_optimizer(
    kind: str,
    params: Iterable[torch.Tensor],
    learning_rate: float,
    weight_decay: float = 0.0,
) -> torch.optim.Optimizer:
    builder = OPTIMIZERS.get(kind.lower())
    if builder is None:
        raise ConfigurationError(f"Unsupported optimizer '{kind}'.", details={"supported": sorted(OPTIMIZERS)})
    params = _trainable(params)
    if not params:
        # An adapter that matched no layer still needs a valid optimizer object.
        params = [torch.zeros(1, requires_grad=True)]
    return builder(params, learning_rate, weight_decay)


def lr_lambda(kind: str, warmup_steps: int, total_steps: int):
    """Multiplier on the base LR: linear warmup, then the named decay."""
    kind = kind.lower()
    if kind not in ("cosine", "linear", "exponential"):
        raise ConfigurationError(f"Unsupported scheduler '{kind}'.")
    total_steps = max(1, total_steps)
    warmup_steps = max(0, min(warmup_steps, total_steps))
    decay_steps = max(1, total_steps - warmup_steps)
    gamma = EXPONENTIAL_FLOOR ** (1.0 / decay_steps)

    def factor(step: int) -> float:
        if warmup_steps and step < warmup_steps:
            return (step + 1) / warmup_steps
        progress = min(1.0, (step - warmup_steps) / decay_steps)
        if kind == "cosine":
            return 0.5 * (1.0 + math.cos(math.pi * progress))
        if kind == "linear":
            return max(0.0, 1.0 - progress)
        return gamma ** (step - warmup_steps)

    return factor


def build_scheduler(
    kind: str,
    optimizer: torch.optim.Optimizer,
    warmup_steps: int,
    total_steps: int,
    start_step: int = 0,
) -> LambdaLR:
    """LambdaLR positioned at ``start_step`` so it can be rebuilt mid-run."""
    factor = lr_lambda(kind, warmup_steps, total_steps)
    if start_step <= 0:
        return LambdaLR(optimizer, factor)
    for group in optimizer.param_groups:
        group.setdefault("initial_lr", group["lr"])
    return LambdaLR(optimizer, factor, last_epoch=start_step - 1)
