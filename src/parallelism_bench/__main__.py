from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .context import DEVICE_TYPES, list_devices
from .driver import ExperimentRun, run_experiment
from .errors import BenchError, CompileError
from .experiments import EXPERIMENTS, make_experiment
from .model import Experiment
from .sweep_file import SweepFileError, load_sweep_file
from .timing import format_sample, report

EPILOG = (
    "A dispatched kernel cannot be cancelled once enqueued: Ctrl-C only takes effect "
    "after the running kernel retires, so long sweeps can only be stopped by killing the process."
)


def _abs_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parallelism_bench",
        description="OpenCL micro-benchmarks for compute units, hardware threads and warp divergence.",
        epilog=EPILOG,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-configuration progress.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("devices", help="List OpenCL platforms and devices.")
    sub.add_parser("list", help="List built-in experiments.")

    run = sub.add_parser("run", help="Run a built-in experiment or a sweep file.", epilog=EPILOG)
    target = run.add_mutually_exclusive_group(required=True)
    target.add_argument("experiment", nargs="?", choices=sorted(EXPERIMENTS), help="Built-in experiment name.")
    target.add_argument("--sweep-file", type=_abs_path, default=None, help="Path to a JSON sweep file.")
    run.add_argument("--device-type", default=None, choices=sorted(DEVICE_TYPES), help="Device type (default: gpu).")
    run.add_argument("--platform", default=None, help="Substring of the OpenCL platform name to use.")
    run.add_argument("--iterations", type=int, default=None, help="Kernel inner-loop iterations (built-ins).")
    run.add_argument("--global-size", type=int, default=None, help="Global work size (cores, warps).")
    run.add_argument("--local-size", type=int, default=None, help="Local work size (built-ins).")
    run.add_argument("--compute-units", type=int, default=None, help="Override device compute units (threads).")
    run.add_argument("--format", dest="fmt", default="text", choices=["text", "markdown"])
    run.add_argument(
        "--sample",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Print the read-back result sample when the sweep defines one.",
    )
    run.add_argument("--profile-events", action="store_true", help="Also report OpenCL event-profiled device time.")
    return parser


def _resolve_experiment(ns: argparse.Namespace) -> Experiment:
    if ns.sweep_file is not None:
        if not ns.sweep_file.exists():
            raise SweepFileError(f"--sweep-file points to missing file: {ns.sweep_file}")
        return load_sweep_file(ns.sweep_file)
    return make_experiment(
        ns.experiment,
        iterations=ns.iterations,
        global_size=ns.global_size,
        local_size=ns.local_size,
        compute_units=ns.compute_units,
    )


def _print_run(result: ExperimentRun, *, fmt: str, sample: bool) -> None:
    d = result.device
    warp = "NA" if result.warp_width is None else str(result.warp_width)
    print(f"Device: {d.name} ({d.platform_name})")
    print(f"Compute units: {d.max_compute_units}, max work-group size: {d.max_work_group_size}, warp width: {warp}")
    if result.sweep.description:
        print(result.sweep.description)
    print()
    print(report(result.results, fmt=fmt, title=f"{result.sweep.name} sweep"))

    if sample and result.sweep.sample is not None:
        for r in result.results:
            print()
            print(f"Sample of {result.sweep.sample.buffer!r} ({r.configuration.describe()}):")
            print(format_sample(r.sampled_output))


def _cmd_devices() -> int:
    rows = list_devices()
    if not rows:
        print("No OpenCL devices found.", file=sys.stderr)
        return 1
    for r in rows:
        print(
            f"{r.platform_name}: {r.device_name} [{r.device_type}] "
            f"compute_units={r.compute_units} max_work_group_size={r.max_work_group_size}"
        )
    return 0


def _cmd_list() -> int:
    for name, d in EXPERIMENTS.items():
        print(f"{name:<8} {d.description}")
    return 0


def _cmd_run(ns: argparse.Namespace) -> int:
    try:
        experiment = _resolve_experiment(ns)
    except (SweepFileError, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2

    try:
        result = run_experiment(
            experiment,
            device_type=ns.device_type,
            platform=ns.platform,
            profiling=ns.profile_events,
        )
    except CompileError as e:
        print(f"error: {e}", file=sys.stderr)
        if e.log:
            print(e.log, file=sys.stderr)
        return 1
    except BenchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        # Bad device-type selection (e.g. from the environment).
        print(str(e), file=sys.stderr)
        return 2

    _print_run(result, fmt=ns.fmt, sample=ns.sample)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if ns.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        if ns.cmd == "devices":
            return _cmd_devices()
        if ns.cmd == "list":
            return _cmd_list()
        if ns.cmd == "run":
            return _cmd_run(ns)
    except BenchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
