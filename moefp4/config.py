"""Configuration types and error codes for the MoE stage-2 FFN."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class DataType(Enum):
    """Element type of activations and dequantized weights."""

    FP16 = "fp16"
    BF16 = "bf16"


class ActivationType(IntEnum):
    """Activation applied between the two FFN layers."""

    GELU = 0
    SWISH = 1
    RELU = 2
    IDENTITY = -1


def activation_from_int(value: int) -> ActivationType:
    """Return the activation with the given integer code."""
    try:
        return ActivationType(int(value))
    except ValueError:
        raise ValueError(f"unknown activation code: {value}") from None


@dataclass
class MoEStage2Config:
    """Shape and type parameters of a complete MoE stage-2 FFN.

    ``output_type`` follows ``input_type`` unless given explicitly.
    """

    total_tokens: int
    hidden_size: int
    intermediate_size: int
    num_experts: int = 1
    input_type: DataType = DataType.FP16
    activation: ActivationType = ActivationType.GELU
    output_type: DataType | None = field(default=None)

    def __post_init__(self) -> None:
        for name in ("total_tokens", "hidden_size", "intermediate_size", "num_experts"):
            value = getattr(self, name)
            if int(value) != value or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
            setattr(self, name, int(value))
        self.input_type = DataType(self.input_type)
        self.activation = ActivationType(self.activation)
        if self.output_type is None:
            self.output_type = self.input_type
        else:
            self.output_type = DataType(self.output_type)


class MoEErrorCode(IntEnum):
    """Failure codes reported by the MoE FFN routines."""

    SUCCESS = 0
    INVALID_CONFIG = -1
    UNSUPPORTED_DATA_TYPE = -2
    INSUFFICIENT_MEMORY = -3
    KERNEL_LAUNCH_FAILED = -4
    INVALID_EXPERT_INDICES = -5
    INVALID_DIMENSIONS = -6
    UNSUPPORTED_ACTIVATION = -7
    SHARED_MEMORY_ERROR = -8


_MESSAGES = {
    MoEErrorCode.SUCCESS: "Success",
    MoEErrorCode.INVALID_CONFIG: "Invalid configuration",
    MoEErrorCode.UNSUPPORTED_DATA_TYPE: "Unsupported data type",
    MoEErrorCode.INSUFFICIENT_MEMORY: "Insufficient memory",
    MoEErrorCode.KERNEL_LAUNCH_FAILED: "Kernel launch failed",
    MoEErrorCode.INVALID_EXPERT_INDICES: "Invalid expert indices",
    MoEErrorCode.INVALID_DIMENSIONS: "Invalid dimensions",
    MoEErrorCode.UNSUPPORTED_ACTIVATION: "Unsupported activation function",
    MoEErrorCode.SHARED_MEMORY_ERROR: "Shared memory allocation error",
}


def error_message(code: int) -> str:
    """Return the readable description of an error code."""
    try:
        return _MESSAGES[MoEErrorCode(int(code))]
    except ValueError:
        return "Unknown error"


class MoEError(Exception):
    """Raised when an MoE routine fails; ``code`` holds the error code."""

    def __init__(self, code: int, detail: str | None = None) -> None:
        try:
            self.code: MoEErrorCode | int = MoEErrorCode(int(code))
        except ValueError:
            self.code = int(code)
        self.detail = detail
        message = error_message(self.code)
        super().__init__(f"{message}: {detail}" if detail else message)