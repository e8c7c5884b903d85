"""Low-rank factorization strategies used by the weight adapters.

These are approximations: a random factor pair, optionally refined by a few
gradient steps on the reconstruction residual. Nothing here is an exact SVD
or QR; callers only rely on the factor shapes.
"""

from typing import Protocol

import torch


def as_matrix(weight: torch.Tensor) -> torch.Tensor:
    """View an N-D weight as (out_features, rest)."""
    if weight.dim() == 2:
        return weight
    return weight.reshape(weight.shape[0], -1)


class DecompositionStrategy(Protocol):
    def factorize(
        self, matrix: torch.Tensor, rank: int, generator: torch.Generator | None = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Return (left m×r, right r×n) factors of a 2-D matrix."""
        ...


class RandomLowRankStrategy:
    """Random N(0, std) factors refined by ``refine_iterations`` residual steps."""

    def __init__(self, std: float = 0.1, refine_iterations: int = 0, step_size: float = 0.01):
        self.std = std
        self.refine_iterations = refine_iterations
        self.step_size = step_size

    def factorize(
        self, matrix: torch.Tensor, rank: int, generator: torch.Generator | None = None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        if matrix.dim() != 2:
            raise ValueError(f"expected a 2-D matrix, got shape {tuple(matrix.shape)}")
        m, n = matrix.shape
        rank = max(1, min(rank, m, n))

        target = matrix.detach().float()
        left = torch.randn(m, rank, generator=generator) * self.std
        right = torch.randn(rank, n, generator=generator) * self.std

        for _ in range(self.refine_iterations):
            residual = target - left @ right
            left_step = residual @ right.T
            right_step = left.T @ residual
            left = left + self.step_size * left_step
            right = right + self.step_size * right_step

        return left, right
