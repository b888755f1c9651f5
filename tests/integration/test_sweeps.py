from __future__ import annotations

from collections.abc import Callable

import pytest

from kernels import ENTRY_POINTS, INCREMENT_SOURCE
from parallelism_bench import driver
from parallelism_bench.context import DeviceContext
from parallelism_bench.experiments import make_experiment
from parallelism_bench.model import BufferRef, BufferSpec, ExperimentSweep, FillPolicy, SampleSpec, Scalar, WorkConfiguration

pytestmark = pytest.mark.integration

OpenCtx = Callable[..., DeviceContext]
TREND_TOLERANCE = 0.2


def _increment_sweep(configurations: list[WorkConfiguration]) -> ExperimentSweep:
    return ExperimentSweep(
        name="increment",
        entry_point="increment",
        buffers=[
            BufferSpec("input", "float32", "global_size", FillPolicy.constant(1.0)),
            BufferSpec("output", "float32", "global_size", FillPolicy.zero()),
        ],
        configurations=configurations,
        sample=SampleSpec(buffer="output", count=8),
    )


def _inc(global_size: int, local_size: int) -> WorkConfiguration:
    return WorkConfiguration(global_size, local_size, kernel_params=(BufferRef("input"), BufferRef("output")))


def test_increment_sweep_samples_output(open_ctx: OpenCtx) -> None:
    ctx = open_ctx(INCREMENT_SOURCE, ENTRY_POINTS)
    (result,) = driver.run(_increment_sweep([_inc(8, 4)]), ctx)
    assert result.sampled_output == (2.0,) * 8
    assert result.elapsed_s > 0


def test_oversized_local_size_is_skipped(open_ctx: OpenCtx) -> None:
    ctx = open_ctx(INCREMENT_SOURCE, ENTRY_POINTS)
    too_big = ctx.limits.max_work_group_size * 2
    configurations = [_inc(8, 4), _inc(16, 8), _inc(too_big * 2, too_big), _inc(32, 16), _inc(8, 8)]

    results = driver.run(_increment_sweep(configurations), ctx)

    assert [r.configuration for r in results] == [configurations[i] for i in (0, 1, 3, 4)]
    assert all(r.sampled_output == (2.0,) * 8 for r in results)


def test_elapsed_time_does_not_drop_as_global_size_grows(open_ctx: OpenCtx) -> None:
    ctx = open_ctx(INCREMENT_SOURCE, ENTRY_POINTS)
    sizes = [16 * 64, 16 * 256, 16 * 1024, 16 * 4096]

    def _spin(global_size: int) -> WorkConfiguration:
        return WorkConfiguration(global_size, 16, kernel_params=(BufferRef("out"), Scalar(500)))

    sweep = ExperimentSweep(
        name="spin",
        entry_point="spin",
        buffers=[BufferSpec("out", "float32", "global_size")],
        configurations=[_spin(g) for g in sizes],
    )
    # Best of five damps scheduler noise; each 4x step may dip by at most TREND_TOLERANCE.
    runs = [driver.run(sweep, ctx) for _ in range(5)]
    best = [min(r[i].elapsed_s for r in runs) for i in range(len(sizes))]
    for g, prev, cur in zip(sizes[1:], best, best[1:]):
        assert cur >= prev * (1 - TREND_TOLERANCE), f"global_size={g}: {cur:.6f}s < {prev:.6f}s"


def test_profiled_context_reports_device_time(open_ctx: OpenCtx) -> None:
    ctx = open_ctx(INCREMENT_SOURCE, ENTRY_POINTS, profiling=True)
    (result,) = driver.run(_increment_sweep([_inc(64, 16)]), ctx)
    assert result.device_elapsed_s is not None
    assert result.device_elapsed_s >= 0


def test_run_cores_experiment_end_to_end(device_type: str) -> None:
    experiment = make_experiment("cores", iterations=10, global_size=1024, local_size=64)
    seen: list[float] = []
    outcome = driver.run_experiment(experiment, device_type=device_type, on_result=lambda r: seen.append(r.elapsed_s))

    (result,) = outcome.results
    assert seen == [result.elapsed_s]
    assert outcome.warp_width is not None and outcome.warp_width >= 1
    sample = result.sampled_output
    assert len(sample) == 128
    # Each element is local_id * 2**iterations + local_id.
    assert sample[0] == 0.0
    assert sample[1] == 1025.0
    assert sample[63] == 63.0 * 1025
    assert sample[64] == 0.0


def test_run_warps_experiment_labels_each_width(device_type: str) -> None:
    experiment = make_experiment("warps", iterations=4, global_size=256, local_size=64, widths=[16, 64])
    outcome = driver.run_experiment(experiment, device_type=device_type)
    assert [r.configuration.label for r in outcome.results] == ["K=16", "K=64"]
