"""Reference MXFP4 quantization on the host and FFN test-data preparation."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .config import DataType, MoEStage2Config
from .ffn import dequant_e2m1
from .mxfp4 import (
    E2M1_VALUES,
    MXFP4_BLOCK_SIZE,
    MXFP4_E2M1_MAX_VALUE,
    MxFp4WeightMetadata,
    calculate_packed_size_dwords,
)

_LUT = np.array(E2M1_VALUES, dtype=np.float32)
_TINY = np.float32(1e-9)
_MAX_E2M1 = np.float32(MXFP4_E2M1_MAX_VALUE)
_NIBBLES_PER_WORD = 8


@dataclass
class QuantizedFFNWeights:
    """Packed MXFP4 weights and per-block scales of both FFN layers."""

    w1_data: np.ndarray
    w1_scales: np.ndarray
    w2_data: np.ndarray
    w2_scales: np.ndarray
    w1_metadata: MxFp4WeightMetadata
    w2_metadata: MxFp4WeightMetadata


def _dimension(name: str, value: int) -> int:
    if int(value) != value or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    return int(value)


def _store_element(values, dtype: DataType) -> np.ndarray:
    """Store float32 values in the element type: fp16 rounds, bf16 truncates."""
    arr = np.asarray(values, dtype=np.float32)
    if DataType(dtype) is DataType.FP16:
        with np.errstate(over="ignore"):
            return arr.astype(np.float16).astype(np.float32)
    bits = np.ascontiguousarray(arr).view(np.uint32) & np.uint32(0xFFFF0000)
    return bits.view(np.float32).reshape(arr.shape)


def _scales_from_max_abs(max_abs) -> np.ndarray:
    max_abs = np.asarray(max_abs, dtype=np.float32)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        exponent = np.maximum(np.float32(0.0), np.ceil(np.log2(max_abs / _MAX_E2M1)))
        scale = np.exp2(exponent).astype(np.float32)
    return np.where(max_abs < _TINY, np.float32(1.0), scale).astype(np.float32)


def _nearest_codes(scaled) -> np.ndarray:
    """Index of the closest E2M1 value; the lowest index wins ties."""
    scaled = np.asarray(scaled, dtype=np.float32)
    with np.errstate(invalid="ignore", over="ignore"):
        errors = np.abs(scaled[..., None] - _LUT)
    return np.argmin(errors, axis=-1)


def calculate_optimal_scale(block_values) -> float:
    """Smallest power of two, at least 1, that brings the block within the E2M1 range."""
    magnitudes = np.abs(np.asarray(block_values, dtype=np.float32).ravel())
    magnitudes = np.where(np.isnan(magnitudes), np.float32(0.0), magnitudes)
    return float(_scales_from_max_abs(magnitudes.max(initial=0.0)))


def quantize_to_e2m1_index(value: float, scale: float) -> int:
    """E2M1 code closest to ``value / scale``; a zero scale counts as 1."""
    scale = np.float32(scale)
    if scale == 0:
        scale = np.float32(1.0)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        scaled = np.float32(value) / scale
    return int(_nearest_codes(scaled))


def cpu_dequant_e2m1(fp4_val: int, scale: float) -> float:
    """Decode one E2M1 code (low 4 bits) and multiply by its scale."""
    return float(dequant_e2m1(fp4_val, scale))


def quantize_weights_layer(weights, input_dim: int, output_dim: int) -> tuple[np.ndarray, np.ndarray]:
    """Quantize a row-major ``(input_dim, output_dim)`` matrix to MXFP4.

    Returns ``(packed, scales)``: the 4-bit codes packed eight to a 32-bit
    word along the input dimension of each output column, and one scale per
    block of 32 input rows and output column.
    """
    input_dim = _dimension("input_dim", input_dim)
    output_dim = _dimension("output_dim", output_dim)
    w = np.asarray(weights, dtype=np.float32)
    if w.size != input_dim * output_dim:
        raise ValueError(
            f"expected {input_dim * output_dim} weights for {input_dim}x{output_dim}, got {w.size}"
        )
    w = w.reshape(input_dim, output_dim)

    num_blocks = input_dim // MXFP4_BLOCK_SIZE
    covered = num_blocks * MXFP4_BLOCK_SIZE
    packed = np.zeros(calculate_packed_size_dwords(input_dim * output_dim), dtype=np.uint32)

    blocks = w[:covered].reshape(num_blocks, MXFP4_BLOCK_SIZE, output_dim)
    magnitudes = np.abs(blocks)
    magnitudes = np.where(np.isnan(magnitudes), np.float32(0.0), magnitudes)
    scales = _scales_from_max_abs(magnitudes.max(axis=1, initial=0.0))

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        scaled = blocks / scales[:, None, :]
    codes = _nearest_codes(scaled).reshape(covered, output_dim).astype(np.uint32)

    in_idx = np.arange(covered)[:, None]
    out_idx = np.arange(output_dim)[None, :]
    packed_idx = out_idx * (input_dim // _NIBBLES_PER_WORD) + in_idx // _NIBBLES_PER_WORD
    shifts = ((in_idx % _NIBBLES_PER_WORD) * 4).astype(np.uint32)
    np.bitwise_or.at(
        packed,
        np.broadcast_to(packed_idx, codes.shape).ravel(),
        (codes << shifts).ravel(),
    )
    return packed, scales.ravel()


def quantize_ffn_weights(w1_weights, w2_weights, config: MoEStage2Config) -> QuantizedFFNWeights:
    """Quantize W1 ``(hidden, intermediate)`` and W2 ``(intermediate, hidden)``."""
    hidden = config.hidden_size
    inter = config.intermediate_size
    w1_data, w1_scales = quantize_weights_layer(w1_weights, hidden, inter)
    w2_data, w2_scales = quantize_weights_layer(w2_weights, inter, hidden)
    return QuantizedFFNWeights(
        w1_data=w1_data,
        w1_scales=w1_scales,
        w2_data=w2_data,
        w2_scales=w2_scales,
        w1_metadata=MxFp4WeightMetadata.calculate(hidden, inter, config.input_type),
        w2_metadata=MxFp4WeightMetadata.calculate(inter, hidden, config.input_type),
    )


def cpu_dequantize_weights(
    quantized_data, scales, input_dim: int, output_dim: int, dtype: DataType = DataType.FP16
) -> np.ndarray:
    """Unpack a quantized layer into a row-major ``(input_dim, output_dim)`` matrix.

    Values are stored in ``dtype`` (fp16 rounds to nearest, bf16 truncates)
    and returned as float32.
    """
    input_dim = _dimension("input_dim", input_dim)
    output_dim = _dimension("output_dim", output_dim)
    dtype = DataType(dtype)
    words = np.asarray(quantized_data, dtype=np.uint32).ravel()
    scale_arr = np.asarray(scales, dtype=np.float32).ravel()

    in_idx = np.arange(input_dim)[:, None]
    out_idx = np.arange(output_dim)[None, :]
    packed_idx = out_idx * (input_dim // _NIBBLES_PER_WORD) + in_idx // _NIBBLES_PER_WORD
    scale_idx = (in_idx // MXFP4_BLOCK_SIZE) * output_dim + out_idx

    if input_dim and output_dim:
        if int(packed_idx.max()) >= words.size:
            raise ValueError(f"expected at least {int(packed_idx.max()) + 1} packed words, got {words.size}")
        if int(scale_idx.max()) >= scale_arr.size:
            raise ValueError(f"expected at least {int(scale_idx.max()) + 1} scales, got {scale_arr.size}")

    shifts = ((in_idx % _NIBBLES_PER_WORD) * 4).astype(np.uint32)
    codes = (words[packed_idx] >> shifts) & np.uint32(0xF)
    return _store_element(dequant_e2m1(codes, scale_arr[scale_idx]), dtype)


def _pattern(count: int, base: float, step: float, period: int) -> np.ndarray:
    cycle = (np.arange(count) % period).astype(np.float32)
    return np.float32(base) + np.float32(step) * cycle


def prepare_ffn_test_data(
    config: MoEStage2Config, use_random_data: bool = True, seed: int = 42
) -> tuple[np.ndarray, QuantizedFFNWeights, np.ndarray]:
    """Build inputs, quantized weights and expert indices for one FFN run.

    Returns ``(inputs, weights, expert_indices)``: inputs of shape
    ``(total_tokens, hidden_size)`` holding element-typed values, and every
    token routed to expert 0.
    """
    tokens = config.total_tokens
    hidden = config.hidden_size
    inter = config.intermediate_size
    dtype = config.input_type

    if use_random_data:
        rng = np.random.default_rng(seed)
        inputs = rng.normal(0.0, 0.3, size=tokens * hidden).astype(np.float32)
        w1 = rng.normal(0.0, 0.2, size=hidden * inter).astype(np.float32)
        w2 = rng.normal(0.0, 0.2, size=inter * hidden).astype(np.float32)
    else:
        inputs = _pattern(tokens * hidden, 1.0, 0.5, 10)
        w1 = _pattern(hidden * inter, 0.5, 0.2, 20)
        w2 = _pattern(inter * hidden, 0.3, 0.1, 15)

    inputs = _store_element(inputs, dtype).reshape(tokens, hidden)
    w1 = _store_element(w1, dtype).reshape(hidden, inter)
    w2 = _store_element(w2, dtype).reshape(inter, hidden)

    weights = quantize_ffn_weights(w1, w2, config)
    expert_indices = np.zeros(tokens, dtype=np.uint32)
    return inputs, weights, expert_indices