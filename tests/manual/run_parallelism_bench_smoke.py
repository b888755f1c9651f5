from __future__ import annotations

import argparse

from parallelism_bench.context import select_device
from parallelism_bench.driver import run_experiment
from parallelism_bench.errors import DeviceUnavailable
from parallelism_bench.experiments import EXPERIMENTS, make_experiment
from parallelism_bench.timing import format_sample, report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Manual smoke: run each built-in experiment with tiny sizes.")
    parser.add_argument("--device-type", default="all", help="gpu, cpu, accelerator or all.")
    parser.add_argument("--iterations", type=int, default=1000)
    ns = parser.parse_args(argv)

    try:
        select_device(ns.device_type)
    except DeviceUnavailable as e:
        print(f"{e}; skipping parallelism smoke.")
        return 0

    small: dict[str, dict[str, object]] = {
        "cores": {"global_size": 4096, "local_size": 64},
        "threads": {"local_size": 64, "compute_units": 2, "groups_per_unit": 1},
        "warps": {"global_size": 4096, "local_size": 64, "widths": [16, 32, 64]},
    }
    for name in EXPERIMENTS:
        outcome = run_experiment(
            make_experiment(name, iterations=ns.iterations, **small.get(name, {})),
            device_type=ns.device_type,
        )
        print(f"== {name} on {outcome.device.name} (warp width {outcome.warp_width})")
        print(report(outcome.results))
        for r in outcome.results[:1]:
            if r.sampled_output:
                print(format_sample(r.sampled_output))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
