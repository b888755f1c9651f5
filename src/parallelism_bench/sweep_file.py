"""Declarative sweep files.

A sweep file is a JSON document (see `contracts/sweep.schema.json`) naming a
kernel, the buffers every configuration gets, a positional argument template
and the ordered configurations. `{"param": name}` arguments are filled from
each configuration's `params`, which is how a sweep varies a scalar such as
a divergence width.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .model import BufferRef, BufferSpec, Experiment, ExperimentSweep, FillPolicy, SampleSpec, Scalar, WorkConfiguration


class SweepFileError(ValueError):
    pass


def schema_path() -> Path:
    return Path(__file__).resolve().parent / "contracts" / "sweep.schema.json"


def validate_sweep_document(doc: Any) -> None:
    validator = Draft202012Validator(json.loads(schema_path().read_text()))
    errors = sorted(validator.iter_errors(doc), key=lambda e: [str(p) for p in e.absolute_path])
    if errors:
        lines = [f"- {'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}" for e in errors]
        raise SweepFileError("Invalid sweep file:\n" + "\n".join(lines))


def _fill(obj: dict[str, Any] | None) -> FillPolicy:
    if obj is None:
        return FillPolicy.zero()
    try:
        return FillPolicy(kind=obj["policy"], value=obj.get("value"))
    except ValueError as e:
        raise SweepFileError(str(e)) from e


def _kernel_params(template: list[dict[str, Any]], cfg: dict[str, Any], index: int) -> tuple[Any, ...]:
    params = cfg.get("params", {}) or {}
    out: list[Any] = []
    for arg in template:
        if "buffer" in arg:
            out.append(BufferRef(arg["buffer"]))
        elif "scalar" in arg:
            out.append(Scalar(arg["scalar"], arg.get("dtype")))
        else:
            name = arg["param"]
            if name not in params:
                raise SweepFileError(f"configurations[{index}] is missing param {name!r}")
            out.append(Scalar(params[name], arg.get("dtype")))
    return tuple(out)


def _label(cfg: dict[str, Any]) -> str:
    if "label" in cfg:
        return str(cfg["label"])
    params = cfg.get("params") or {}
    return ", ".join(f"{k}={v}" for k, v in params.items())


def parse_sweep_document(doc: dict[str, Any], *, base_dir: Path) -> Experiment:
    validate_sweep_document(doc)

    kernel = doc["kernel"]
    if "source" in kernel:
        source = kernel["source"]
    else:
        source_path = (base_dir / kernel["source_file"]).resolve()
        if not source_path.is_file():
            raise SweepFileError(f"kernel.source_file points to missing file: {source_path}")
        source = source_path.read_text()

    buffers = [BufferSpec(b["name"], b["dtype"], b["length"], _fill(b.get("fill"))) for b in doc["buffers"]]
    configurations = [
        WorkConfiguration(
            global_size=c["global_size"],
            local_size=c["local_size"],
            kernel_params=_kernel_params(doc["args"], c, i),
            label=_label(c),
        )
        for i, c in enumerate(doc["configurations"])
    ]
    sample = None
    if "sample" in doc:
        sample = SampleSpec(buffer=doc["sample"]["buffer"], count=doc["sample"]["count"])

    try:
        sweep = ExperimentSweep(
            name=doc["name"],
            entry_point=doc["entry_point"],
            buffers=buffers,
            configurations=configurations,
            sample=sample,
            description=doc.get("description", ""),
        )
    except ValueError as e:
        raise SweepFileError(str(e)) from e

    return Experiment(
        name=sweep.name,
        source=source,
        entry_point=sweep.entry_point,
        build_sweep=lambda _limits: sweep,
        description=sweep.description,
    )


def load_sweep_file(path: Path) -> Experiment:
    try:
        doc = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise SweepFileError(f"{path}: not valid JSON: {e}") from e
    return parse_sweep_document(doc, base_dir=path.parent)
