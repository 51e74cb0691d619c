# moefp4

A NumPy reference implementation of a mixture-of-experts feed-forward
block whose weights are stored in the MXFP4 format: 4-bit E2M1 values,
eight packed into each 32-bit word, with one float scale shared by every
block of 32 input elements.

The package gives you:

- `moefp4.config` – `MoEStage2Config`, the `DataType` (FP16 / BF16) and
  `ActivationType` (GELU, Swish, ReLU, identity) enums,
  `activation_from_int`, and the `MoEError` exception with its
  `MoEErrorCode` values and `error_message` descriptions.
- `moefp4.mxfp4` – format parameters (`MxFp4QuantParams.e2m1_default`),
  layout metadata (`MxFp4WeightMetadata.calculate`) and size helpers such
  as `calculate_num_blocks` and `calculate_packed_size_dwords`.
- `moefp4.numerics` – bfloat16 bit conversion (`float_to_bfloat16`
  truncates, `bfloat16_to_float` widens) and rounding to the element type
  (`round_to_bfloat16`, `round_to_element`).
- `moefp4.quantize` – per-block scale selection, nearest-value E2M1
  quantization, weight packing (`quantize_weights_layer`,
  `quantize_ffn_weights`), reference dequantization
  (`cpu_dequantize_weights`) and test-data preparation
  (`prepare_ffn_test_data`).
- `moefp4.ffn` – the activations (`gelu`, `swish`, `relu`,
  `apply_activation`, `activate`), dequantization (`dequant_e2m1`,
  `dequantize_weights`) and the full stage-2 FFN
  `moe_complete_ffn_stage2`: `Y = act(X @ W1) @ W2 * global_scale`,
  computed per token with the weights of the token's expert.
- `moefp4.benchmark` – a timing harness around the FFN and the
  `moefp4-bench` command.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using the library

Build a configuration, make deterministic test data, and run the FFN:

```python
from moefp4.config import ActivationType, DataType, MoEStage2Config
from moefp4.ffn import moe_complete_ffn_stage2
from moefp4.quantize import prepare_ffn_test_data

config = MoEStage2Config(
    total_tokens=16,
    hidden_size=64,
    intermediate_size=128,
    num_experts=1,
    input_type=DataType.FP16,
    activation=ActivationType.GELU,
)

inputs, weights, expert_indices = prepare_ffn_test_data(config, True, 42)

output = moe_complete_ffn_stage2(
    inputs,
    weights.w1_data,
    weights.w2_data,
    expert_indices,
    weights.w1_scales,
    weights.w2_scales,
    1.0,
    config,
)
print(output.shape)  # (16, 64)
```

The result is a float32 array holding values representable in the
configuration's element type; intermediate results are rounded through
that type as well.

`hidden_size` and `intermediate_size` must be multiples of the MXFP4
block size, 32; a configuration that breaks this raises `MoEError` with
code `INVALID_CONFIG`. When `total_tokens`, `hidden_size` or
`intermediate_size` is zero, nothing is computed and an all-zero array of
shape `(total_tokens, hidden_size)` is returned. Expert weights for
several experts are passed as one concatenated array per layer; an expert
index that is negative or has no weights raises `MoEError` with code
`INVALID_EXPERT_INDICES`. `prepare_ffn_test_data` builds weights for a
single expert and routes every token to expert 0.

Quantizing and dequantizing a single weight matrix:

```python
from moefp4.config import DataType
from moefp4.quantize import cpu_dequantize_weights, quantize_weights_layer

packed, scales = quantize_weights_layer(w, 64, 32)   # w is 64 x 32
restored = cpu_dequantize_weights(packed, scales, 64, 32, DataType.FP16)
```

The scale of each block is the smallest power of two (at least 1) that
brings the block's largest magnitude within the E2M1 range of ±6, and each
value is mapped to the nearest of the sixteen E2M1 codes (the lowest code
wins ties).

## Benchmarking

`moefp4-bench` prepares random data for a configuration, runs the FFN a
number of times and prints the mean, minimum and maximum run time, the
standard deviation, the overhead outside the timed calls, the total time
and estimated throughput and memory bandwidth. Its options are
`--tokens`, `--hidden`, `--intermediate`, `--experts`, `--dtype`
(`fp16`, `bf16`), `--activation` (`gelu`, `swish`, `relu`, `identity`),
`--iterations` and `--batched`, which times batches of ten calls and
reports per-call averages (no standard deviation, overhead or bandwidth
in that mode). See them with:

```
moefp4-bench --help
```

The same measurements are available from Python through
`run_fast_moe_benchmark`, `measure_moe_kernel_performance` (which returns
the average time in milliseconds and the throughput in TFLOPS) and the
`FastMoEBenchmark` class, which can be used as a context manager.

## What this package does not do

Everything runs on the CPU with NumPy. There is no GPU execution and no
device memory management: the timings measure the NumPy reference
computation, not a hardware kernel.