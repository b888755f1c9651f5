from __future__ import annotations

import logging
from collections.abc import Callable

import attrs

from .buffers import BufferManager
from .context import DeviceContext, open_context
from .dispatch import await_completion, build, enqueue, validate_configuration
from .errors import BenchError, InvalidWorkConfiguration
from .model import BufferRef, DeviceLimits, ExecutionResult, Experiment, ExperimentSweep, WorkConfiguration
from .timing import format_duration, measure

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ExecutionResult], None]


@attrs.define(frozen=True, slots=True)
class ExperimentRun:
    device: DeviceLimits
    sweep: ExperimentSweep
    results: tuple[ExecutionResult, ...]
    warp_width: int | None = None


def _run_configuration(sweep: ExperimentSweep, context: DeviceContext, configuration: WorkConfiguration) -> ExecutionResult:
    validate_configuration(configuration, context.limits)
    with BufferManager(context) as buffers:
        for spec in sweep.buffers:
            buffers.allocate(spec.name, spec.dtype, spec.resolve_length(configuration), spec.fill)

        args = [buffers.get(a.name) if isinstance(a, BufferRef) else a for a in configuration.kernel_params]
        kernel = build(context, sweep.entry_point, args)
        validate_configuration(configuration, context.limits, kernel_work_group_size=kernel.max_work_group_size)

        readback = None
        if sweep.sample is not None:
            sample_buffer = buffers.get(sweep.sample.buffer)
            count = sweep.sample.count
            if count > sample_buffer.length:
                logger.warning(
                    "Sample of %d element(s) from %r clipped to its length %d (%s)",
                    count,
                    sample_buffer.name,
                    sample_buffer.length,
                    configuration.describe(),
                )
                count = sample_buffer.length
            readback = lambda: buffers.read(sample_buffer, count).tolist()  # noqa: E731

        return measure(
            lambda: enqueue(context, kernel, configuration),
            configuration=configuration,
            barrier=await_completion,
            readback=readback,
        )


def run(sweep: ExperimentSweep, context: DeviceContext, *, on_result: ResultCallback | None = None) -> list[ExecutionResult]:
    """Run every configuration of `sweep` in declared order, one at a time.

    Configurations that fail work-size validation are logged and skipped;
    any other error aborts the sweep.
    """
    results: list[ExecutionResult] = []
    total = len(sweep.configurations)
    for index, configuration in enumerate(sweep.configurations, start=1):
        try:
            result = _run_configuration(sweep, context, configuration)
        except InvalidWorkConfiguration as e:
            logger.warning("Skipping configuration %d/%d of %r: %s", index, total, sweep.name, e)
            continue
        except BenchError as e:
            if e.configuration is None:
                e.configuration = configuration
            raise
        logger.info(
            "[%d/%d] %s: %s",
            index,
            total,
            configuration.describe(),
            format_duration(result.elapsed_s),
        )
        results.append(result)
        if on_result is not None:
            on_result(result)
    return results


def run_experiment(
    experiment: Experiment,
    *,
    device_type: str | None = None,
    platform: str | None = None,
    profiling: bool = False,
    on_result: ResultCallback | None = None,
) -> ExperimentRun:
    with open_context(
        experiment.source,
        [experiment.entry_point],
        device_type=device_type,
        platform=platform,
        profiling=profiling,
    ) as context:
        limits = context.limits
        sweep = experiment.build_sweep(limits)
        warp_width = context.warp_width(sweep.entry_point)
        results = run(sweep, context, on_result=on_result)
    return ExperimentRun(device=limits, sweep=sweep, results=tuple(results), warp_width=warp_width)
