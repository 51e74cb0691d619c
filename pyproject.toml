[build-system]
requires = ["setuptools>=68", "wheel"]
build-backend = "setuptools.build_meta"

[project]
name = "moefp4"
version = "0.1.0"
description = "NumPy reference mixture-of-experts FFN with MXFP4 (E2M1) quantized weights, plus quantization helpers and a timing harness"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = [
    "mixture-of-experts",
    "moe",
    "mxfp4",
    "fp4",
    "e2m1",
    "quantization",
    "bfloat16",
    "ffn",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
moefp4-bench = "moefp4.benchmark:main"

[tool.setuptools.packages.find]
include = ["moefp4*"]

[tool.pytest.ini_options]
addopts = "-ra"
