import pytest

from moefp4.benchmark import (
    FastBenchmarkConfig,
    FastMoEBenchmark,
    PreciseBenchmarkResult,
    main,
    measure_moe_kernel_performance,
    run_fast_moe_benchmark,
)
from moefp4.config import ActivationType, DataType, MoEError, MoEErrorCode, MoEStage2Config


def small_config(dtype=DataType.FP16, tokens=4):
    return MoEStage2Config(tokens, 32, 64, 1, dtype, ActivationType.GELU)


def test_fast_benchmark_config_defaults():
    cfg = FastBenchmarkConfig(moe_config=small_config())
    assert cfg.warmup_iterations == 5
    assert cfg.benchmark_iterations == 100
    assert cfg.use_batched is False


def test_measure_before_setup_raises():
    bench = FastMoEBenchmark(small_config())
    with pytest.raises(MoEError) as info:
        bench.measure_kernel_performance(3)
    assert info.value.code == MoEErrorCode.INVALID_CONFIG


def test_batched_before_setup_raises():
    bench = FastMoEBenchmark(small_config())
    with pytest.raises(MoEError) as info:
        bench.measure_batched(3)
    assert info.value.code == MoEErrorCode.INVALID_CONFIG


def test_setup_marks_ready():
    bench = FastMoEBenchmark(small_config())
    assert not bench.ready
    bench.setup()
    assert bench.ready


def test_closed_benchmark_refuses_to_measure():
    with FastMoEBenchmark(small_config()) as bench:
        bench.setup()
        assert bench.ready
    assert not bench.ready
    with pytest.raises(MoEError):
        bench.measure_kernel_performance(2)


@pytest.mark.parametrize("iterations", [0, -1, 2.5])
def test_invalid_iterations_rejected(iterations):
    with FastMoEBenchmark(small_config()) as bench:
        bench.setup()
        with pytest.raises(ValueError):
            bench.measure_kernel_performance(iterations)


def test_kernel_performance_statistics_are_consistent():
    with FastMoEBenchmark(small_config()) as bench:
        bench.setup()
        result = bench.measure_kernel_performance(12)
    assert isinstance(result, PreciseBenchmarkResult)
    assert result.min_time_ms <= result.kernel_time_ms <= result.max_time_ms
    assert result.std_deviation_ms >= 0.0
    assert result.setup_time_ms >= -1e-6
    assert result.total_time_ms >= result.kernel_time_ms
    assert result.throughput_tflops > 0.0
    assert result.memory_bandwidth > 0.0
    assert result.used_batching is False
    assert result.batch_creation_time_ms == 0.0


def test_batched_measurement_fields():
    with FastMoEBenchmark(small_config()) as bench:
        bench.setup()
        result = bench.measure_batched(15)
    assert result.used_batching is True
    assert result.std_deviation_ms == 0.0
    assert result.memory_bandwidth == 0.0
    assert result.setup_time_ms == 0.0
    assert result.min_time_ms <= result.max_time_ms
    assert result.kernel_time_ms > 0.0
    assert result.throughput_tflops > 0.0


def test_bf16_benchmark_runs():
    with FastMoEBenchmark(small_config(DataType.BF16)) as bench:
        bench.setup()
        result = bench.measure_kernel_performance(2)
    assert result.min_time_ms <= result.max_time_ms
    assert result.throughput_tflops > 0.0


def test_zero_tokens_has_zero_throughput():
    with FastMoEBenchmark(small_config(tokens=0)) as bench:
        bench.setup()
        result = bench.measure_kernel_performance(3)
    assert result.throughput_tflops == 0.0
    assert result.memory_bandwidth == 0.0


def test_invalid_dimensions_raise_during_measurement():
    config = MoEStage2Config(16, 63, 128, 1, DataType.FP16, ActivationType.GELU)
    with FastMoEBenchmark(config) as bench:
        bench.setup()
        with pytest.raises(MoEError) as info:
            bench.measure_kernel_performance(1)
    assert info.value.code == MoEErrorCode.INVALID_CONFIG


def test_run_fast_moe_benchmark_selects_mode():
    plain = run_fast_moe_benchmark(
        FastBenchmarkConfig(moe_config=small_config(), benchmark_iterations=3)
    )
    batched = run_fast_moe_benchmark(
        FastBenchmarkConfig(moe_config=small_config(), benchmark_iterations=3, use_batched=True)
    )
    assert plain.used_batching is False
    assert batched.used_batching is True


def test_measure_moe_kernel_performance_returns_time_and_throughput():
    avg_ms, tflops = measure_moe_kernel_performance(small_config(), 3)
    assert avg_ms > 0.0
    assert tflops > 0.0


def test_main_prints_results(capsys):
    code = main(["--tokens", "2", "--hidden", "32", "--intermediate", "32", "--iterations", "2"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Throughput:" in out
    assert "Kernel time:" in out


def test_main_batched(capsys):
    code = main(["--tokens", "2", "--hidden", "32", "--intermediate", "32",
                 "--iterations", "2", "--batched", "--dtype", "bf16"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Batched Results" in out


def test_main_reports_invalid_dimensions(capsys):
    code = main(["--tokens", "2", "--hidden", "63", "--intermediate", "32", "--iterations", "1"])
    err = capsys.readouterr().err
    assert code == 1
    assert "Invalid configuration" in err