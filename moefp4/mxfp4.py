"""MXFP4 (E2M1) format parameters, layout metadata and sizing helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .config import DataType

MXFP4_BLOCK_SIZE = 32
"""Number of 4-bit values that share one scale."""

MXFP4_PACKED_DWORDS = 4
MXFP4_SCALE_BITS = 32
MXFP4_E2M1_VALUE_RANGE = 8
MXFP4_E2M1_MAX_VALUE = 6.0

GPU_WARP_SIZE = 64
VALUES_PER_THREAD = 8
VALUES_PER_WARP = GPU_WARP_SIZE * VALUES_PER_THREAD
RECOMMENDED_BLOCK_SIZE = 256
MAX_SHARED_MEMORY_BYTES = 48 * 1024

E2M1_VALUES = (
    0.0, 0.5, 1.0, 1.5, 2.0, 3.0, 4.0, 6.0,
    -0.0, -0.5, -1.0, -1.5, -2.0, -3.0, -4.0, -6.0,
)
"""E2M1 code -> value; codes 8-15 are the negated codes 0-7."""

_DWORD_BYTES = 4
_FLOAT_BYTES = 4
_ELEMENT_BYTES = 2


def _non_negative(name: str, value: int) -> int:
    if int(value) != value or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    return int(value)


@dataclass(frozen=True)
class MxFp4QuantParams:
    """Bit layout of an MXFP4 element and its shared scale."""

    sign_bits: int
    exponent_bits: int
    mantissa_bits: int
    scale_bits: int
    block_size: int

    @classmethod
    def e2m1_default(cls) -> "MxFp4QuantParams":
        """Parameters of the E2M1 format with a float32 scale per 32 values."""
        return cls(
            sign_bits=1,
            exponent_bits=2,
            mantissa_bits=1,
            scale_bits=MXFP4_SCALE_BITS,
            block_size=MXFP4_BLOCK_SIZE,
        )


class MxFp4MemoryLayout(Enum):
    """How quantized weights are arranged in memory."""

    ROW_MAJOR = "row_major"
    COLUMN_MAJOR = "column_major"
    PACKED = "packed"


@dataclass(frozen=True)
class MxFp4WeightMetadata:
    """Sizes and layout of one quantized weight matrix."""

    rows: int
    cols: int
    num_blocks_per_row: int
    packed_size_bytes: int
    scales_size_bytes: int
    layout: MxFp4MemoryLayout
    original_dtype: DataType

    @classmethod
    def calculate(
        cls,
        input_dim: int,
        output_dim: int,
        dtype: DataType,
        layout: MxFp4MemoryLayout = MxFp4MemoryLayout.ROW_MAJOR,
    ) -> "MxFp4WeightMetadata":
        """Derive the metadata of an ``input_dim`` x ``output_dim`` matrix."""
        input_dim = _non_negative("input_dim", input_dim)
        output_dim = _non_negative("output_dim", output_dim)
        num_blocks = calculate_num_blocks(input_dim)
        return cls(
            rows=input_dim,
            cols=output_dim,
            num_blocks_per_row=num_blocks,
            packed_size_bytes=calculate_packed_size_dwords(input_dim * output_dim) * _DWORD_BYTES,
            scales_size_bytes=num_blocks * output_dim * _FLOAT_BYTES,
            layout=MxFp4MemoryLayout(layout),
            original_dtype=DataType(dtype),
        )

    def is_valid_dimensions(self) -> bool:
        """True when rows are block aligned and both dimensions are non-zero."""
        return self.rows % MXFP4_BLOCK_SIZE == 0 and self.rows > 0 and self.cols > 0

    def total_memory_bytes(self) -> int:
        """Bytes needed for packed weights plus scales."""
        return self.packed_size_bytes + self.scales_size_bytes


def calculate_num_blocks(num_elements: int) -> int:
    """Number of scale blocks covering ``num_elements`` values."""
    n = _non_negative("num_elements", num_elements)
    return (n + MXFP4_BLOCK_SIZE - 1) // MXFP4_BLOCK_SIZE


def calculate_packed_size_dwords(num_elements: int) -> int:
    """Number of 32-bit words holding ``num_elements`` packed 4-bit values."""
    n = _non_negative("num_elements", num_elements)
    return (n + 7) // 8


def is_aligned_to_block_size(dimension: int) -> bool:
    """True when ``dimension`` is a multiple of the block size."""
    return _non_negative("dimension", dimension) % MXFP4_BLOCK_SIZE == 0


def calculate_shared_memory_size(intermediate_size: int, dtype: DataType) -> int:
    """Bytes of scratch needed to hold one token's intermediate activations."""
    DataType(dtype)
    return _non_negative("intermediate_size", intermediate_size) * _ELEMENT_BYTES


def is_shared_memory_within_limit(shared_mem_size: int) -> bool:
    """True when the scratch size fits in the shared-memory budget."""
    return _non_negative("shared_mem_size", shared_mem_size) <= MAX_SHARED_MEMORY_BYTES


def calculate_optimal_block_size(total_tokens: int, max_dim: int) -> int:
    """Thread-block size chosen from the largest dimension."""
    _non_negative("total_tokens", total_tokens)
    max_dim = _non_negative("max_dim", max_dim)
    if max_dim <= 128:
        return 128
    if max_dim <= 256:
        return 256
    return RECOMMENDED_BLOCK_SIZE