"""Timing harness for the MoE stage-2 FFN on prepared, resident test data."""

from __future__ import annotations

import argparse
import logging
import math
import statistics
import sys
import time
from dataclasses import dataclass

import numpy as np

from .config import (
    ActivationType,
    DataType,
    MoEError,
    MoEErrorCode,
    MoEStage2Config,
)
from .ffn import moe_complete_ffn_stage2
from .quantize import QuantizedFFNWeights, prepare_ffn_test_data

logger = logging.getLogger(__name__)

_BATCH_SIZE = 10
"""Number of FFN calls captured in one batch by ``measure_batched``."""

_BATCH_WARMUPS = 3
_MAX_WARMUPS = 5
_PROGRESS_EVERY = 50
_ELEMENT_BYTES = 2
_DWORD_BYTES = 4
_FLOAT_BYTES = 4


@dataclass
class FastBenchmarkConfig:
    """What to benchmark and how."""

    moe_config: MoEStage2Config
    warmup_iterations: int = 5
    benchmark_iterations: int = 100
    use_batched: bool = False


@dataclass
class PreciseBenchmarkResult:
    """Timing statistics of one benchmark run, in milliseconds."""

    kernel_time_ms: float
    setup_time_ms: float
    total_time_ms: float
    throughput_tflops: float
    memory_bandwidth: float
    min_time_ms: float
    max_time_ms: float
    std_deviation_ms: float
    used_batching: bool
    batch_creation_time_ms: float


def _rate(amount: int, seconds: float) -> float:
    if amount == 0:
        return 0.0
    if seconds <= 0:
        return math.inf
    return amount / seconds


class FastMoEBenchmark:
    """Prepares FFN data once, then times repeated FFN evaluations.

    Usable as a context manager; leaving the block releases the data.
    """

    def __init__(self, config: MoEStage2Config) -> None:
        self.config = config
        self.global_scale = np.float32(1.0)
        self._inputs: np.ndarray | None = None
        self._weights: QuantizedFFNWeights | None = None
        self._expert_indices: np.ndarray | None = None

    def __enter__(self) -> "FastMoEBenchmark":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def ready(self) -> bool:
        """True once ``setup`` has prepared the data."""
        return self._weights is not None

    def setup(self) -> None:
        """Prepare random test data and keep it resident for the measurements."""
        cfg = self.config
        logger.info(
            "Preparing test data for config: %dx%dx%d",
            cfg.total_tokens, cfg.hidden_size, cfg.intermediate_size,
        )
        if cfg.input_type not in (DataType.FP16, DataType.BF16):
            raise MoEError(MoEErrorCode.UNSUPPORTED_DATA_TYPE, str(cfg.input_type))
        inputs, weights, indices = prepare_ffn_test_data(cfg, True)
        self._inputs = inputs
        self._weights = weights
        self._expert_indices = indices

        io_bytes = cfg.total_tokens * cfg.hidden_size * _ELEMENT_BYTES
        logger.info("Input: %d bytes, output: %d bytes", io_bytes, io_bytes)
        logger.info(
            "W1 weights: %d bytes, W1 scales: %d bytes",
            weights.w1_data.size * _DWORD_BYTES, weights.w1_scales.size * _FLOAT_BYTES,
        )
        logger.info(
            "W2 weights: %d bytes, W2 scales: %d bytes",
            weights.w2_data.size * _DWORD_BYTES, weights.w2_scales.size * _FLOAT_BYTES,
        )

    def close(self) -> None:
        """Release the prepared data."""
        self._inputs = None
        self._weights = None
        self._expert_indices = None

    def _require_ready(self) -> None:
        if not self.ready:
            raise MoEError(MoEErrorCode.INVALID_CONFIG, "benchmark data not prepared; call setup()")

    @staticmethod
    def _check_iterations(iterations: int) -> int:
        if int(iterations) != iterations or iterations < 1:
            raise ValueError(f"iterations must be a positive integer, got {iterations!r}")
        return int(iterations)

    def _run_once(self) -> np.ndarray:
        weights = self._weights
        return moe_complete_ffn_stage2(
            self._inputs,
            weights.w1_data,
            weights.w2_data,
            self._expert_indices,
            weights.w1_scales,
            weights.w2_scales,
            self.global_scale,
            self.config,
        )

    def _run_batch(self) -> None:
        for _ in range(_BATCH_SIZE):
            self._run_once()

    def _ops_per_run(self) -> int:
        cfg = self.config
        return 4 * cfg.total_tokens * cfg.hidden_size * cfg.intermediate_size

    def measure_kernel_performance(self, iterations: int) -> PreciseBenchmarkResult:
        """Time ``iterations`` individual FFN evaluations after a short warm-up."""
        self._require_ready()
        iterations = self._check_iterations(iterations)

        warmups = min(_MAX_WARMUPS, iterations // 10)
        logger.info("Warming up with %d iterations", warmups)
        for _ in range(warmups):
            self._run_once()

        times: list[float] = []
        total_start = time.perf_counter()
        for i in range(iterations):
            start = time.perf_counter()
            self._run_once()
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            times.append(elapsed_ms)
            if (i + 1) % _PROGRESS_EVERY == 0 or i == 0:
                logger.info("Iteration %d/%d: %.3f ms", i + 1, iterations, elapsed_ms)
        total_time_ms = (time.perf_counter() - total_start) * 1000.0

        total_kernel = math.fsum(times)
        avg_time = total_kernel / len(times)
        std_dev = statistics.pstdev(times, mu=avg_time)
        avg_time_sec = avg_time / 1000.0

        cfg = self.config
        bytes_per_run = cfg.total_tokens * cfg.hidden_size * _ELEMENT_BYTES * 3
        result = PreciseBenchmarkResult(
            kernel_time_ms=avg_time,
            setup_time_ms=total_time_ms - total_kernel,
            total_time_ms=total_time_ms,
            throughput_tflops=_rate(self._ops_per_run(), avg_time_sec) / 1e12,
            memory_bandwidth=_rate(bytes_per_run, avg_time_sec) / 1e9,
            min_time_ms=min(times),
            max_time_ms=max(times),
            std_deviation_ms=std_dev,
            used_batching=False,
            batch_creation_time_ms=0.0,
        )
        logger.info(
            "Kernel time: %.3f +/- %.3f ms (min: %.3f, max: %.3f)",
            avg_time, std_dev, result.min_time_ms, result.max_time_ms,
        )
        return result

    def measure_batched(self, iterations: int) -> PreciseBenchmarkResult:
        """Time FFN evaluations in batches of ten, reporting per-call averages."""
        self._require_ready()
        iterations = self._check_iterations(iterations)

        for _ in range(_BATCH_WARMUPS):
            self._run_batch()

        batches = (iterations + _BATCH_SIZE - 1) // _BATCH_SIZE
        batch_times: list[float] = []
        total_start = time.perf_counter()
        for _ in range(batches):
            start = time.perf_counter()
            self._run_batch()
            batch_times.append((time.perf_counter() - start) * 1000.0)
        total_time_ms = (time.perf_counter() - total_start) * 1000.0

        avg_kernel = math.fsum(batch_times) / (batches * _BATCH_SIZE)
        result = PreciseBenchmarkResult(
            kernel_time_ms=avg_kernel,
            setup_time_ms=0.0,
            total_time_ms=total_time_ms,
            throughput_tflops=_rate(self._ops_per_run(), avg_kernel / 1000.0) / 1e12,
            memory_bandwidth=0.0,
            min_time_ms=min(batch_times) / _BATCH_SIZE,
            max_time_ms=max(batch_times) / _BATCH_SIZE,
            std_deviation_ms=0.0,
            used_batching=True,
            batch_creation_time_ms=0.0,
        )
        logger.info(
            "Average kernel time: %.3f ms (from %d batch executions)", avg_kernel, batches
        )
        return result


def run_fast_moe_benchmark(config: FastBenchmarkConfig) -> PreciseBenchmarkResult:
    """Set up a benchmark for ``config`` and run the requested measurement."""
    with FastMoEBenchmark(config.moe_config) as bench:
        bench.setup()
        if config.use_batched:
            return bench.measure_batched(config.benchmark_iterations)
        return bench.measure_kernel_performance(config.benchmark_iterations)


def measure_moe_kernel_performance(moe_config: MoEStage2Config, iterations: int) -> tuple[float, float]:
    """Return ``(average_time_ms, throughput_tflops)`` of unbatched runs."""
    result = run_fast_moe_benchmark(
        FastBenchmarkConfig(moe_config=moe_config, benchmark_iterations=iterations, use_batched=False)
    )
    return result.kernel_time_ms, result.throughput_tflops


_ACTIVATIONS = {
    "gelu": ActivationType.GELU,
    "swish": ActivationType.SWISH,
    "relu": ActivationType.RELU,
    "identity": ActivationType.IDENTITY,
}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Benchmark the MoE stage-2 FFN.")
    parser.add_argument("--tokens", type=int, default=16)
    parser.add_argument("--hidden", type=int, default=64)
    parser.add_argument("--intermediate", type=int, default=128)
    parser.add_argument("--experts", type=int, default=1)
    parser.add_argument("--dtype", choices=[d.value for d in DataType], default=DataType.FP16.value)
    parser.add_argument("--activation", choices=sorted(_ACTIVATIONS), default="gelu")
    parser.add_argument("--iterations", type=int, default=100)
    parser.add_argument("--batched", action="store_true", help="time batches of ten calls")
    return parser


def main(argv=None) -> int:
    """Run a benchmark from the command line and print its results."""
    args = _parser().parse_args(argv)
    try:
        moe_config = MoEStage2Config(
            args.tokens,
            args.hidden,
            args.intermediate,
            args.experts,
            DataType(args.dtype),
            _ACTIVATIONS[args.activation],
        )
        result = run_fast_moe_benchmark(
            FastBenchmarkConfig(
                moe_config=moe_config,
                benchmark_iterations=args.iterations,
                use_batched=args.batched,
            )
        )
    except (MoEError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    title = "Batched Results" if result.used_batching else "Precise Timing Results"
    print(f"=== {title} ===")
    print(
        f"Kernel time: {result.kernel_time_ms:.3f} \u00b1 {result.std_deviation_ms:.3f} ms "
        f"(min: {result.min_time_ms:.3f}, max: {result.max_time_ms:.3f})"
    )
    print(f"Setup overhead: {result.setup_time_ms:.3f} ms")
    print(f"Total time: {result.total_time_ms:.3f} ms")
    print(f"Throughput: {result.throughput_tflops:.3f} TFLOPS")
    print(f"Memory BW: {result.memory_bandwidth:.3f} GB/s")
    return 0


if __name__ == "__main__":
    sys.exit(main())