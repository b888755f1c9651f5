from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal, Union

import attrs
import numpy as np

FillKind = Literal["zero", "constant", "uninitialized"]
Number = Union[int, float, np.integer, np.floating]


@attrs.define(frozen=True, slots=True)
class FillPolicy:
    kind: FillKind
    value: Number | None = None

    def __attrs_post_init__(self) -> None:
        if self.kind not in ("zero", "constant", "uninitialized"):
            raise ValueError(f"Unknown fill policy: {self.kind!r}")
        if self.kind == "constant" and self.value is None:
            raise ValueError("Constant fill requires a value")
        if self.kind != "constant" and self.value is not None:
            raise ValueError(f"{self.kind} fill does not take a value")

    @staticmethod
    def zero() -> "FillPolicy":
        return FillPolicy(kind="zero")

    @staticmethod
    def constant(value: Number) -> "FillPolicy":
        return FillPolicy(kind="constant", value=value)

    @staticmethod
    def uninitialized() -> "FillPolicy":
        return FillPolicy(kind="uninitialized")


@attrs.define(slots=True, eq=False)
class DeviceBuffer:
    """A device-resident array owned by a `BufferManager`.

    `mem` is the underlying `pyopencl.Buffer`; it is set to None once the
    owning manager releases the buffer.
    """

    name: str
    dtype: np.dtype = attrs.field(converter=np.dtype)
    length: int
    mem: Any = None

    @property
    def nbytes(self) -> int:
        return self.length * self.dtype.itemsize

    @property
    def released(self) -> bool:
        return self.mem is None


@attrs.define(frozen=True, slots=True)
class BufferRef:
    """Positional kernel argument naming a buffer allocated for the configuration."""

    name: str


@attrs.define(frozen=True, slots=True)
class Scalar:
    """Positional by-value kernel argument.

    `dtype` is optional when the kernel reports argument info; the declared
    parameter type is used then.
    """

    value: Number
    dtype: str | None = None


KernelArg = Union[BufferRef, Scalar]


@attrs.define(frozen=True, slots=True)
class BufferSpec:
    name: str
    dtype: str
    length: int | Literal["global_size"]
    fill: FillPolicy = attrs.field(factory=FillPolicy.zero)

    def resolve_length(self, configuration: WorkConfiguration) -> int:
        if self.length == "global_size":
            return configuration.global_size
        return int(self.length)


@attrs.define(frozen=True, slots=True)
class WorkConfiguration:
    global_size: int
    local_size: int
    kernel_params: tuple[Any, ...] = attrs.field(default=(), converter=tuple)
    label: str = ""

    @property
    def work_group_count(self) -> int:
        return self.global_size // self.local_size

    def describe(self) -> str:
        s = f"global_size={self.global_size}, local_size={self.local_size}"
        if self.label:
            s += f", {self.label}"
        return s


@attrs.define(frozen=True, slots=True)
class SampleSpec:
    buffer: str
    count: int


@attrs.define(frozen=True, slots=True)
class ExperimentSweep:
    """Ordered configurations run against one kernel entry point.

    Buffers are declared once and allocated fresh for every configuration.
    """

    name: str
    entry_point: str
    buffers: tuple[BufferSpec, ...] = attrs.field(converter=tuple)
    configurations: tuple[WorkConfiguration, ...] = attrs.field(converter=tuple)
    sample: SampleSpec | None = None
    description: str = ""

    def __attrs_post_init__(self) -> None:
        names = [b.name for b in self.buffers]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate buffer name(s) in sweep {self.name!r}: {dupes}")
        known = set(names)
        if self.sample is not None and self.sample.buffer not in known:
            raise ValueError(f"Sample buffer {self.sample.buffer!r} is not declared in sweep {self.name!r}")
        for cfg in self.configurations:
            for arg in cfg.kernel_params:
                if isinstance(arg, BufferRef) and arg.name not in known:
                    raise ValueError(f"Configuration ({cfg.describe()}) references undeclared buffer {arg.name!r}")


@attrs.define(frozen=True, slots=True)
class ExecutionResult:
    configuration: WorkConfiguration
    elapsed_s: float
    sampled_output: tuple[Any, ...] = ()
    device_elapsed_s: float | None = None


@attrs.define(frozen=True, slots=True)
class DeviceLimits:
    name: str
    platform_name: str
    max_work_group_size: int
    max_compute_units: int


@attrs.define(frozen=True, slots=True)
class Experiment:
    """Kernel source plus a sweep builder.

    The sweep is built from the selected device's limits, so experiments can
    size themselves to the hardware (e.g. one work-group per compute unit).
    """

    name: str
    source: str
    entry_point: str
    build_sweep: Callable[[DeviceLimits], ExperimentSweep]
    description: str = ""
