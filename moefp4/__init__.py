"""NumPy reference MoE FFN with MXFP4 (E2M1) quantized weights, quantization helpers and a timing harness."""

__version__ = "0.1.0"

__all__ = ["benchmark", "config", "ffn", "mxfp4", "numerics", "quantize"]