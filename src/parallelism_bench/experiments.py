"""Built-in experiments.

Each experiment isolates one variable:

- `cores`: one large dispatch; shows raw latency and the per-work-group output pattern.
- `threads`: fixed local size, global size grows from one work-group to two
  full waves across all compute units.
- `warps`: fixed global/local size, only the branch-divergence width K varies.

Hardware constants default to what the selected device reports and can be
overridden per run.
"""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable, Sequence

import attrs

from .model import (
    BufferRef,
    BufferSpec,
    DeviceLimits,
    Experiment,
    ExperimentSweep,
    FillPolicy,
    SampleSpec,
    Scalar,
    WorkConfiguration,
)

CORES_SOURCE = r"""
__kernel void add(__global float* c, int iterations) {
    int a = get_local_id(0);
    for (int i = 0; i < iterations; i++) { a *= 2; }
    c[get_global_id(0)] = a + get_local_id(0);
}
"""

THREADS_SOURCE = r"""
__kernel void compute(__global float* input, __global float* output, int iterations) {
    int gid = get_global_id(0);
    float a = input[gid];
    for (int i = 0; i < iterations; i++) {
        a += sin((float)(gid + i));
    }
    output[gid] = a;
}
"""

WARPS_SOURCE = r"""
__kernel void divergent_kernel(__global float* c, int K, int iterations) {
    int a = get_local_id(0);
    if (get_local_id(0) % K < K / 2) {
        for (int i = 0; i < iterations; i++) { a *= 2; }
    } else {
        for (int i = 0; i < iterations; i++) { a *= 3; }
    }
    c[get_global_id(0)] = a + get_local_id(0);
}
"""

DEFAULT_DIVERGENCE_WIDTHS: tuple[int, ...] = (16, 32, 48, 63, 64, 128, 256)


def cores_sweep(
    limits: DeviceLimits | None = None,
    *,
    iterations: int = 10_000_000,
    global_size: int = 4_194_304,
    local_size: int = 256,
    sample: int = 128,
) -> ExperimentSweep:
    cfg = WorkConfiguration(
        global_size=global_size,
        local_size=local_size,
        kernel_params=(BufferRef("c"), Scalar(iterations, "int32")),
    )
    return ExperimentSweep(
        name="cores",
        entry_point="add",
        buffers=(BufferSpec("c", "float32", "global_size", FillPolicy.zero()),),
        configurations=(cfg,),
        sample=SampleSpec(buffer="c", count=sample),
        description="Single large dispatch; the sample shows the first work-groups' outputs.",
    )


def threads_global_sizes(local_size: int, compute_units: int, groups_per_unit: int) -> list[int]:
    full = local_size * compute_units * groups_per_unit
    return [
        local_size,  # one work-group on one compute unit
        local_size * compute_units,  # one work-group per compute unit
        local_size * compute_units * 2,
        full,  # every compute unit holding groups_per_unit groups
        full * 2,  # two waves
    ]


def threads_sweep(
    limits: DeviceLimits | None = None,
    *,
    iterations: int = 1_000_000,
    local_size: int = 128,
    compute_units: int | None = None,
    groups_per_unit: int = 4,
) -> ExperimentSweep:
    if compute_units is None:
        if limits is None:
            raise ValueError("threads sweep needs compute_units or device limits")
        compute_units = limits.max_compute_units
    sizes = threads_global_sizes(local_size, compute_units, groups_per_unit)
    configs = [
        WorkConfiguration(
            global_size=g,
            local_size=local_size,
            kernel_params=(BufferRef("input"), BufferRef("output"), Scalar(iterations, "int32")),
        )
        for g in sizes
    ]
    return ExperimentSweep(
        name="threads",
        entry_point="compute",
        buffers=(
            BufferSpec("input", "float32", max(sizes), FillPolicy.constant(1.0)),
            BufferSpec("output", "float32", max(sizes), FillPolicy.zero()),
        ),
        configurations=configs,
        description=f"Fixed local size {local_size}; global size scales over {compute_units} compute units.",
    )


def warps_sweep(
    limits: DeviceLimits | None = None,
    *,
    iterations: int = 10_000_000,
    global_size: int = 4_194_304,
    local_size: int = 256,
    widths: Sequence[int] = DEFAULT_DIVERGENCE_WIDTHS,
) -> ExperimentSweep:
    configs = [
        WorkConfiguration(
            global_size=global_size,
            local_size=local_size,
            kernel_params=(BufferRef("c"), Scalar(k, "int32"), Scalar(iterations, "int32")),
            label=f"K={k}",
        )
        for k in widths
    ]
    return ExperimentSweep(
        name="warps",
        entry_point="divergent_kernel",
        buffers=(BufferSpec("c", "float32", global_size, FillPolicy.zero()),),
        configurations=configs,
        description="Work-items with lid % K < K/2 take one branch, the rest the other.",
    )


@attrs.define(frozen=True, slots=True)
class ExperimentDef:
    name: str
    description: str
    source: str
    entry_point: str
    sweep: Callable[..., ExperimentSweep]


EXPERIMENTS: dict[str, ExperimentDef] = {
    "cores": ExperimentDef(
        name="cores",
        description="One large dispatch of a spin kernel; prints a sample of outputs.",
        source=CORES_SOURCE,
        entry_point="add",
        sweep=cores_sweep,
    ),
    "threads": ExperimentDef(
        name="threads",
        description="Grow global size at fixed local size across compute units and waves.",
        source=THREADS_SOURCE,
        entry_point="compute",
        sweep=threads_sweep,
    ),
    "warps": ExperimentDef(
        name="warps",
        description="Vary branch-divergence width K within fixed work-groups.",
        source=WARPS_SOURCE,
        entry_point="divergent_kernel",
        sweep=warps_sweep,
    ),
}


def make_experiment(name: str, **overrides: object) -> Experiment:
    """Bind CLI overrides to a built-in experiment; None-valued overrides keep defaults."""
    if name not in EXPERIMENTS:
        raise KeyError(f"Unknown experiment={name!r}. Known: {sorted(EXPERIMENTS)}")
    d = EXPERIMENTS[name]
    kwargs = {k: v for k, v in overrides.items() if v is not None}
    accepted = inspect.signature(d.sweep).parameters
    unknown = sorted(k for k in kwargs if k not in accepted or k == "limits")
    if unknown:
        raise ValueError(f"Experiment {name!r} does not accept option(s): {unknown}")
    return Experiment(
        name=d.name,
        source=d.source,
        entry_point=d.entry_point,
        build_sweep=functools.partial(d.sweep, **kwargs),
        description=d.description,
    )
