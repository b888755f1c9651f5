from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Literal

from mdutils.mdutils import MdUtils  # type: ignore[import-untyped]

from .dispatch import DispatchHandle, await_completion
from .model import ExecutionResult, WorkConfiguration

ReportFormat = Literal["text", "markdown"]


def _device_elapsed_s(handle: Any) -> float | None:
    if not isinstance(handle, DispatchHandle) or not handle.profiled:
        return None
    profile = handle.event.profile
    return (profile.end - profile.start) * 1e-9


def measure(
    action: Callable[[], Any],
    *,
    configuration: WorkConfiguration,
    barrier: Callable[[Any], None] = await_completion,
    readback: Callable[[], Iterable[Any]] | None = None,
    clock: Callable[[], float] = time.perf_counter,
) -> ExecutionResult:
    """Time `action` (an enqueue) up to the completion barrier.

    The clock stops only after `barrier` returns; stopping at enqueue return
    would time the driver call, not the kernel. `readback` runs after the
    clock has stopped.
    """
    start = clock()
    handle = action()
    barrier(handle)
    elapsed = clock() - start

    device_elapsed = _device_elapsed_s(handle)
    sampled = tuple(readback()) if readback is not None else ()
    return ExecutionResult(
        configuration=configuration,
        elapsed_s=elapsed,
        sampled_output=sampled,
        device_elapsed_s=device_elapsed,
    )


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "NA"
    if seconds >= 1.0:
        return f"{seconds:.2f}s"
    if seconds >= 1e-3:
        return f"{seconds * 1e3:.2f}ms"
    if seconds >= 1e-6:
        return f"{seconds * 1e6:.2f}µs"
    return f"{seconds * 1e9:.2f}ns"


def format_sample(values: Sequence[Any], *, per_line: int = 16, width: int = 4) -> str:
    """Render a result sample as a right-aligned grid for eyeball checks."""
    cells = [f"{v:>{width}g}" if isinstance(v, float) else f"{v!s:>{width}}" for v in values]
    lines = [" ".join(cells[i : i + per_line]) for i in range(0, len(cells), per_line)]
    return "\n".join(lines)


def _has_device_time(results: Sequence[ExecutionResult]) -> bool:
    return any(r.device_elapsed_s is not None for r in results)


def _rows(results: Sequence[ExecutionResult]) -> tuple[list[str], list[list[str]]]:
    header = ["global_size", "work_groups", "elapsed"]
    with_device = _has_device_time(results)
    if with_device:
        header.append("device_elapsed")
    header.append("label")

    rows: list[list[str]] = []
    for r in results:
        cfg = r.configuration
        row = [str(cfg.global_size), str(cfg.work_group_count), format_duration(r.elapsed_s)]
        if with_device:
            row.append(format_duration(r.device_elapsed_s))
        row.append(cfg.label)
        rows.append(row)
    return header, rows


def _text_table(header: list[str], rows: list[list[str]]) -> str:
    widths = [max(len(h), *(len(row[i]) for row in rows)) if rows else len(h) for i, h in enumerate(header)]
    lines = []
    for cells in [header, *rows]:
        # Numeric columns right-aligned, trailing label left-aligned.
        parts = [c.rjust(w) for c, w in zip(cells[:-1], widths[:-1])]
        parts.append(cells[-1].ljust(widths[-1]))
        lines.append("  ".join(parts).rstrip())
    return "\n".join(lines)


def report(results: Sequence[ExecutionResult], *, fmt: ReportFormat = "text", title: str = "Parallelism Sweep") -> str:
    header, rows = _rows(results)
    if fmt == "text":
        return _text_table(header, rows)
    if fmt == "markdown":
        md = MdUtils(file_name="", title=title)
        cells: list[str] = list(header)
        for row in rows:
            cells.extend(row)
        md.new_table(columns=len(header), rows=len(rows) + 1, text=cells, text_align="right")
        return md.get_md_text().strip() + "\n"
    raise ValueError(f"Unknown report format: {fmt!r}")
