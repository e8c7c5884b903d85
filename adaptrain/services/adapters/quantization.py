"""Fake-quantization helpers: quantize then immediately dequantize."""

import torch

NF4_LEVELS = 7
INT8_LEVELS = 255


def quantize_nf4(weight: torch.Tensor) -> torch.Tensor:
    """Symmetric 4-bit grid: 15 levels between -absmax and +absmax."""
    absmax = weight.abs().max()
    if absmax == 0:
        return torch.zeros_like(weight)
    scale = absmax / NF4_LEVELS
    return torch.round(torch.clamp(weight / scale, -NF4_LEVELS, NF4_LEVELS)) * scale


def int8_params(weight: torch.Tensor) -> tuple[float, int]:
    """Affine (scale, zero_point) covering [min, max] in 256 levels."""
    w_min = float(weight.min())
    w_max = float(weight.max())
    span = w_max - w_min
    if span == 0:
        # constant tensor: one step of |min| maps it onto a single level exactly
        scale = abs(w_min) or 1.0
    else:
        scale = span / INT8_LEVELS
    zero_point = int(round(-w_min / scale))
    return scale, zero_point


def quantize_int8(weight: torch.Tensor) -> torch.Tensor:
    scale, zero_point = int8_params(weight)
    q = torch.clamp(torch.round(weight / scale) + zero_point, 0, INT8_LEVELS)
    return (q - zero_point) * scale


def quantize_fp16(weight: torch.Tensor) -> torch.Tensor:
    """Truncate to three decimals."""
    return torch.round(weight * 1000) / 1000


_QUANTIZERS = {
    "nf4": quantize_nf4,
    "int8": quantize_int8,
    "fp16": quantize_fp16,
}


def quantize(weight: torch.Tensor, precision_mode: str) -> torch.Tensor:
    try:
        fn = _QUANTIZERS[precision_mode]
    except KeyError:
        raise ValueError(f"Unknown precision mode '{precision_mode}'") from None
    with torch.no_grad():
        return fn(weight.detach().float())
