"""Half-precision conversions used by the reference computations."""

from __future__ import annotations

import numpy as np

from .config import DataType


def bfloat16_to_float(bits: int) -> float:
    """Widen a 16-bit bfloat16 pattern to a float."""
    bits = int(bits)
    if not 0 <= bits <= 0xFFFF:
        raise ValueError(f"bfloat16 bit pattern out of range: {bits:#x}")
    return float(np.array(bits << 16, dtype=np.uint32).view(np.float32))


def float_to_bfloat16(value: float) -> int:
    """Convert a float to a bfloat16 bit pattern by truncating the low bits."""
    with np.errstate(over="ignore"):
        as_f32 = np.array(value, dtype=np.float32)
    return int(as_f32.view(np.uint32)) >> 16


def round_to_bfloat16(values) -> np.ndarray:
    """Round float32 values to the nearest bfloat16 (ties to even), as float32."""
    arr = np.ascontiguousarray(values, dtype=np.float32)
    bits = arr.view(np.uint32).astype(np.uint64)
    rounded = (bits + 0x7FFF + ((bits >> 16) & 1)) & 0xFFFF0000
    quiet_nan = (bits | 0x00400000) & 0xFFFF0000
    result = np.where(np.isnan(arr), quiet_nan, rounded).astype(np.uint32)
    return result.view(np.float32).reshape(arr.shape)


def round_to_element(values, dtype: DataType) -> np.ndarray:
    """Round float32 values through the given element type, as float32."""
    dtype = DataType(dtype)
    arr = np.asarray(values, dtype=np.float32)
    if dtype is DataType.FP16:
        with np.errstate(over="ignore"):
            return arr.astype(np.float16).astype(np.float32)
    return round_to_bfloat16(arr)