"""OpenCL device selection and kernel program lifetime.

Device selection policy: platforms are walked in `pyopencl.get_platforms()`
order, optionally filtered by a case-insensitive substring of the platform
name. Within each platform, devices of the requested type are walked in
driver order and the first one that is both available and has a compiler
wins. The choice can be steered with `PARALLELISM_BENCH_DEVICE_TYPE` and
`PARALLELISM_BENCH_PLATFORM`; explicit arguments take precedence.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence

import attrs
import pyopencl as cl

from .errors import ArgumentMismatch, CompileError, DeviceUnavailable, KernelExecutionFault
from .model import DeviceLimits

logger = logging.getLogger(__name__)

ENV_DEVICE_TYPE = "PARALLELISM_BENCH_DEVICE_TYPE"
ENV_PLATFORM = "PARALLELISM_BENCH_PLATFORM"

DEVICE_TYPES: dict[str, int] = {
    "gpu": cl.device_type.GPU,
    "cpu": cl.device_type.CPU,
    "accelerator": cl.device_type.ACCELERATOR,
    "all": cl.device_type.ALL,
}

# Required so the dispatcher can type-check positional arguments.
KERNEL_ARG_INFO_OPTION = "-cl-kernel-arg-info"


@attrs.define(frozen=True, slots=True)
class KernelProgram:
    source: str
    entry_points: tuple[str, ...]
    kernel_names: frozenset[str]
    program: cl.Program


@attrs.define(frozen=True, slots=True)
class DeviceInfo:
    platform_name: str
    device_name: str
    device_type: str
    compute_units: int
    max_work_group_size: int


def resolve_selection(device_type: str | None = None, platform: str | None = None) -> tuple[str, str | None]:
    dt = device_type or os.environ.get(ENV_DEVICE_TYPE) or "gpu"
    dt = dt.lower()
    if dt not in DEVICE_TYPES:
        raise ValueError(f"Unknown device type {dt!r}. Known: {sorted(DEVICE_TYPES)}")
    pf = platform if platform is not None else (os.environ.get(ENV_PLATFORM) or None)
    return dt, pf


def _platforms() -> list[cl.Platform]:
    try:
        return list(cl.get_platforms())
    except cl.Error as e:
        raise DeviceUnavailable(f"No OpenCL platform found: {e}", stage="open") from e


def select_device(device_type: str | None = None, platform: str | None = None) -> cl.Device:
    dt, pf = resolve_selection(device_type, platform)
    platforms = _platforms()
    searched: list[str] = []
    for p in platforms:
        if pf is not None and pf.lower() not in p.name.lower():
            continue
        searched.append(p.name.strip())
        try:
            devices = p.get_devices(device_type=DEVICE_TYPES[dt])
        except cl.Error:
            # DEVICE_NOT_FOUND: this platform has no device of the requested type.
            continue
        for d in devices:
            if d.available and d.compiler_available:
                logger.info("Selected device %r on platform %r", d.name.strip(), p.name.strip())
                return d
    raise DeviceUnavailable(
        f"No available OpenCL device (device_type={dt!r}, platform={pf!r}); searched platforms: {searched or 'none'}",
        stage="open",
    )


def list_devices() -> list[DeviceInfo]:
    out: list[DeviceInfo] = []
    for p in _platforms():
        try:
            devices = p.get_devices(device_type=cl.device_type.ALL)
        except cl.Error:
            continue
        for d in devices:
            out.append(
                DeviceInfo(
                    platform_name=p.name.strip(),
                    device_name=d.name.strip(),
                    device_type=cl.device_type.to_string(d.type),
                    compute_units=int(d.max_compute_units),
                    max_work_group_size=int(d.max_work_group_size),
                )
            )
    return out


def build_program(
    cl_context: cl.Context,
    device: cl.Device,
    source: str,
    entry_points: Iterable[str],
    *,
    options: Sequence[str] = (),
) -> KernelProgram:
    """Compile `source` for `device` and check that every entry point exists.

    pyopencl folds the compiler log into the raised error's text, which is
    kept verbatim in `CompileError.log`.
    """
    entry_points = tuple(entry_points)
    try:
        program = cl.Program(cl_context, source).build(options=list(options), devices=[device])
    except cl.Error as e:
        raise CompileError(f"Kernel build failed on {device.name.strip()}", log=str(e)) from e

    names = frozenset(n for n in program.get_info(cl.program_info.KERNEL_NAMES).split(";") if n)
    missing = [n for n in entry_points if n not in names]
    if missing:
        raise CompileError(f"Entry point(s) {missing} not found in kernel source; available: {sorted(names)}")
    return KernelProgram(source=source, entry_points=entry_points, kernel_names=names, program=program)


class DeviceContext:
    """Owns the OpenCL context, its in-order queue and the active program.

    Use as a context manager; `close()` drops every device handle. The
    program is shared read-only by everything that runs on this context.
    """

    def __init__(self, device: cl.Device, *, profiling: bool = False, build_options: Sequence[str] = ()) -> None:
        self.device = device
        self.profiling = profiling
        self.build_options = (KERNEL_ARG_INFO_OPTION, *build_options)
        try:
            self._cl_context: cl.Context | None = cl.Context(devices=[device])
            props = cl.command_queue_properties.PROFILING_ENABLE if profiling else 0
            self._queue: cl.CommandQueue | None = cl.CommandQueue(self._cl_context, device, properties=props)
            # Queried once; device info calls must stay out of timed windows.
            self._limits = DeviceLimits(
                name=device.name.strip(),
                platform_name=device.platform.name.strip(),
                max_work_group_size=int(device.max_work_group_size),
                max_compute_units=int(device.max_compute_units),
            )
        except cl.Error as e:
            raise DeviceUnavailable(f"Failed to create a context on {device.name.strip()}: {e}", stage="open") from e
        self._program: KernelProgram | None = None

    def __enter__(self) -> DeviceContext:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._cl_context is None

    def _ensure_open(self) -> None:
        if self.closed:
            raise DeviceUnavailable("Device context is closed", stage="open")

    @property
    def cl_context(self) -> cl.Context:
        self._ensure_open()
        return self._cl_context

    @property
    def queue(self) -> cl.CommandQueue:
        self._ensure_open()
        return self._queue

    @property
    def program(self) -> KernelProgram:
        self._ensure_open()
        if self._program is None:
            raise CompileError("No kernel program has been built on this context")
        return self._program

    @property
    def limits(self) -> DeviceLimits:
        return self._limits

    def rebuild(self, source: str, entry_points: Iterable[str]) -> KernelProgram:
        """Build a new program and make it active only once it compiled."""
        program = build_program(self.cl_context, self.device, source, entry_points, options=self.build_options)
        self._program = program
        return program

    def kernel(self, name: str) -> cl.Kernel:
        """Return a fresh kernel object so argument state is never shared."""
        program = self.program
        if name not in program.kernel_names:
            raise ArgumentMismatch(
                f"Unknown kernel entry point {name!r}; available: {sorted(program.kernel_names)}",
                stage="build",
            )
        return cl.Kernel(program.program, name)

    def warp_width(self, entry_point: str) -> int:
        """Preferred work-group size multiple for `entry_point` (warp/wavefront width on GPUs)."""
        k = self.kernel(entry_point)
        return int(k.get_work_group_info(cl.kernel_work_group_info.PREFERRED_WORK_GROUP_SIZE_MULTIPLE, self.device))

    def finish(self) -> None:
        """Block until every command enqueued on this context has retired."""
        try:
            self.queue.finish()
        except cl.Error as e:
            raise KernelExecutionFault(f"Device barrier failed: {e}", stage="await") from e

    def close(self) -> None:
        if self._queue is not None:
            try:
                self._queue.finish()
            except cl.Error as e:
                logger.warning("Queue did not drain cleanly on close: %s", e)
        self._program = None
        self._queue = None
        self._cl_context = None


def open_context(
    source: str,
    entry_points: Iterable[str],
    *,
    device_type: str | None = None,
    platform: str | None = None,
    build_options: Sequence[str] = (),
    profiling: bool = False,
) -> DeviceContext:
    device = select_device(device_type, platform)
    ctx = DeviceContext(device, profiling=profiling, build_options=build_options)
    try:
        ctx.rebuild(source, entry_points)
    except BaseException:
        ctx.close()
        raise
    return ctx
