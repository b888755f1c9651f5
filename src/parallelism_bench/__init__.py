"""OpenCL parallelism micro-benchmarks.

This package compiles small OpenCL kernels, dispatches them over sweeps of
global/local work sizes and times each dispatch up to a device-completion
barrier. The sweeps isolate one hardware variable at a time (compute units,
hardware threads, warp/wavefront divergence).
"""

from __future__ import annotations

__version__ = "0.1.0"
