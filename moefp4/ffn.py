"""Reference evaluation of the complete MoE stage-2 FFN on MXFP4 weights.

Computation mirrors the device kernels: float32 arithmetic with
intermediate and final results stored in the element type (fp16/bf16).
"""

from __future__ import annotations

import numpy as np

from .config import DataType, MoEError, MoEErrorCode, MoEStage2Config, ActivationType
from .mxfp4 import E2M1_VALUES, MXFP4_BLOCK_SIZE
from .numerics import round_to_element

_LUT = np.array(E2M1_VALUES, dtype=np.float32)
_SHIFTS = np.arange(0, 32, 4, dtype=np.uint32)
_NIBBLES_PER_WORD = 8

_SQRT_2_OVER_PI = np.float32(0.7978845608)
_GELU_COEFF = np.float32(0.044715)
_HALF = np.float32(0.5)
_ONE = np.float32(1.0)


def _scalar_or_array(out: np.ndarray):
    return out[()]


def gelu(x):
    """Tanh approximation of GELU in float32."""
    x = np.asarray(x, dtype=np.float32)
    with np.errstate(over="ignore", invalid="ignore"):
        inner = _SQRT_2_OVER_PI * (x + _GELU_COEFF * (x * x * x))
        out = _HALF * x * (_ONE + np.tanh(inner))
    return _scalar_or_array(out.astype(np.float32))


def swish(x, beta=1.0):
    """Swish (SiLU for ``beta`` = 1): ``x / (1 + exp(-beta * x))`` in float32."""
    x = np.asarray(x, dtype=np.float32)
    with np.errstate(over="ignore", invalid="ignore"):
        out = x / (_ONE + np.exp(-np.float32(beta) * x))
    return _scalar_or_array(out.astype(np.float32))


def relu(x):
    """``max(0, x)``; NaN inputs map to 0."""
    x = np.asarray(x, dtype=np.float32)
    return _scalar_or_array(np.fmax(np.float32(0.0), x).astype(np.float32))


def apply_activation(x, activation):
    """Apply the activation with the given type or integer code.

    Codes other than GELU, Swish and ReLU leave the values unchanged.
    """
    code = int(activation)
    if code == ActivationType.GELU:
        return gelu(x)
    if code == ActivationType.SWISH:
        return swish(x)
    if code == ActivationType.RELU:
        return relu(x)
    return _scalar_or_array(np.asarray(x, dtype=np.float32))


def activate(values, activation, dtype=DataType.FP16) -> np.ndarray:
    """Apply an activation to element-typed values, storing the result in that type."""
    x = round_to_element(values, dtype)
    return round_to_element(apply_activation(x, activation), dtype)


def dequant_e2m1(fp4_values, scales) -> np.ndarray:
    """Decode E2M1 codes (low 4 bits used) and multiply by their scales."""
    codes = np.asarray(fp4_values, dtype=np.int64) & 0xF
    return (_LUT[codes] * np.asarray(scales, dtype=np.float32)).astype(np.float32)


def _dequant_matrix(quantized, scales, input_dim: int, output_dim: int) -> np.ndarray:
    """Unpack one layer into a float32 ``(input_dim, output_dim)`` matrix."""
    stride = input_dim // _NIBBLES_PER_WORD
    words_needed = output_dim * stride
    scales_needed = (input_dim // MXFP4_BLOCK_SIZE) * output_dim

    words = np.asarray(quantized, dtype=np.uint32).ravel()
    scale_arr = np.asarray(scales, dtype=np.float32).ravel()
    if words.size < words_needed:
        raise ValueError(f"expected at least {words_needed} packed words, got {words.size}")
    if scale_arr.size < scales_needed:
        raise ValueError(f"expected at least {scales_needed} scales, got {scale_arr.size}")

    packed = words[:words_needed].reshape(output_dim, stride)
    codes = ((packed[:, :, None] >> _SHIFTS) & 0xF).reshape(output_dim, input_dim).T
    block_scales = scale_arr[:scales_needed].reshape(input_dim // MXFP4_BLOCK_SIZE, output_dim)
    full_scales = np.repeat(block_scales, MXFP4_BLOCK_SIZE, axis=0)
    return (_LUT[codes.astype(np.int64)] * full_scales).astype(np.float32)


def dequantize_weights(quantized, scales, input_dim, output_dim, dtype=DataType.FP16) -> np.ndarray:
    """Dequantize a packed MXFP4 layer into a row-major ``(input_dim, output_dim)`` matrix.

    Raises MoEError(INVALID_CONFIG) when ``input_dim`` is not a multiple of the block size.
    """
    input_dim = int(input_dim)
    output_dim = int(output_dim)
    if input_dim < 0 or output_dim < 0:
        raise ValueError("dimensions must be non-negative")
    if input_dim % MXFP4_BLOCK_SIZE != 0:
        raise MoEError(
            MoEErrorCode.INVALID_CONFIG,
            f"input_dim {input_dim} is not a multiple of {MXFP4_BLOCK_SIZE}",
        )
    return round_to_element(_dequant_matrix(quantized, scales, input_dim, output_dim), dtype)


def _expert_slice(array, expert: int, per_expert: int, what: str) -> np.ndarray:
    start = expert * per_expert
    part = array[start:start + per_expert]
    if part.size < per_expert:
        raise MoEError(
            MoEErrorCode.INVALID_EXPERT_INDICES,
            f"no {what} for expert {expert}",
        )
    return part


def moe_complete_ffn_stage2(
    inputs,
    w1_weights,
    w2_weights,
    expert_indices,
    w1_scales,
    w2_scales,
    global_scale,
    config: MoEStage2Config,
) -> np.ndarray:
    """Run ``Y = act(X @ W1) @ W2 * global_scale`` with each token routed to its expert.

    Returns a float32 array of shape ``(total_tokens, hidden_size)`` holding
    values representable in ``config.input_type``.
    """
    tokens = config.total_tokens
    hidden = config.hidden_size
    inter = config.intermediate_size
    dtype = config.input_type

    if tokens == 0 or hidden == 0 or inter == 0:
        return np.zeros((tokens, hidden), dtype=np.float32)
    if hidden % MXFP4_BLOCK_SIZE != 0 or inter % MXFP4_BLOCK_SIZE != 0:
        raise MoEError(
            MoEErrorCode.INVALID_CONFIG,
            f"hidden_size and intermediate_size must be multiples of {MXFP4_BLOCK_SIZE}",
        )

    x_flat = np.asarray(inputs, dtype=np.float32).ravel()
    if x_flat.size < tokens * hidden:
        raise ValueError(f"expected at least {tokens * hidden} input values, got {x_flat.size}")
    x = round_to_element(x_flat[: tokens * hidden].reshape(tokens, hidden), dtype)

    indices = np.asarray(expert_indices, dtype=np.int64).ravel()
    if indices.size < tokens:
        raise ValueError(f"expected {tokens} expert indices, got {indices.size}")
    indices = indices[:tokens]
    if (indices < 0).any():
        raise MoEError(MoEErrorCode.INVALID_EXPERT_INDICES, "negative expert index")

    w1 = np.asarray(w1_weights, dtype=np.uint32).ravel()
    w2 = np.asarray(w2_weights, dtype=np.uint32).ravel()
    s1 = np.asarray(w1_scales, dtype=np.float32).ravel()
    s2 = np.asarray(w2_scales, dtype=np.float32).ravel()

    w1_per_expert = hidden * inter // _NIBBLES_PER_WORD
    w2_per_expert = inter * hidden // _NIBBLES_PER_WORD
    s1_per_expert = (hidden // MXFP4_BLOCK_SIZE) * inter
    s2_per_expert = (inter // MXFP4_BLOCK_SIZE) * hidden
    scale = np.float32(global_scale)

    output = np.zeros((tokens, hidden), dtype=np.float32)
    for expert in np.unique(indices):
        e = int(expert)
        rows = indices == expert
        w1_mat = _dequant_matrix(
            _expert_slice(w1, e, w1_per_expert, "W1 weights"),
            _expert_slice(s1, e, s1_per_expert, "W1 scales"),
            hidden, inter,
        )
        w2_mat = _dequant_matrix(
            _expert_slice(w2, e, w2_per_expert, "W2 weights"),
            _expert_slice(s2, e, s2_per_expert, "W2 scales"),
            inter, hidden,
        )
        with np.errstate(over="ignore", invalid="ignore"):
            h = round_to_element(x[rows] @ w1_mat, dtype)
            h_act = round_to_element(apply_activation(h, config.activation), dtype)
            y = (h_act @ w2_mat).astype(np.float32) * scale
        output[rows] = round_to_element(y, dtype)
    return output