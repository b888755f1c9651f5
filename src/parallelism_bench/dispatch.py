from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Literal

import attrs
import numpy as np
import pyopencl as cl

from .context import DeviceContext
from .errors import ArgumentMismatch, InvalidWorkConfiguration, KernelExecutionFault
from .model import BufferRef, DeviceBuffer, DeviceLimits, Scalar, WorkConfiguration

logger = logging.getLogger(__name__)

AddressSpace = Literal["global", "constant", "local", "private"]

_ADDRESS_SPACES: dict[int, AddressSpace] = {
    cl.kernel_arg_address_qualifier.GLOBAL: "global",
    cl.kernel_arg_address_qualifier.CONSTANT: "constant",
    cl.kernel_arg_address_qualifier.LOCAL: "local",
    cl.kernel_arg_address_qualifier.PRIVATE: "private",
}

# OpenCL C scalar type names as reported by CL_KERNEL_ARG_TYPE_NAME.
SCALAR_TYPES: dict[str, np.dtype] = {
    "char": np.dtype(np.int8),
    "uchar": np.dtype(np.uint8),
    "unsigned char": np.dtype(np.uint8),
    "short": np.dtype(np.int16),
    "ushort": np.dtype(np.uint16),
    "unsigned short": np.dtype(np.uint16),
    "int": np.dtype(np.int32),
    "uint": np.dtype(np.uint32),
    "unsigned int": np.dtype(np.uint32),
    "long": np.dtype(np.int64),
    "ulong": np.dtype(np.uint64),
    "unsigned long": np.dtype(np.uint64),
    "half": np.dtype(np.float16),
    "float": np.dtype(np.float32),
    "double": np.dtype(np.float64),
}


@attrs.define(frozen=True, slots=True)
class KernelParam:
    name: str
    address_space: AddressSpace
    type_name: str

    @property
    def is_pointer(self) -> bool:
        return self.type_name.endswith("*")

    @property
    def base_type(self) -> str:
        return self.type_name.rstrip("*").strip()

    @property
    def element_dtype(self) -> np.dtype | None:
        return SCALAR_TYPES.get(self.base_type)


KernelSignature = tuple[KernelParam, ...]


@attrs.define(frozen=True, slots=True)
class BoundKernel:
    entry_point: str
    kernel: Any
    args: tuple[Any, ...]
    signature: KernelSignature | None
    max_work_group_size: int | None = None


@attrs.define(frozen=True, slots=True)
class DispatchHandle:
    """In-flight work returned by `dispatch`; pass it to `await_completion`."""

    event: Any
    configuration: WorkConfiguration
    entry_point: str
    profiled: bool = False


def _normalize_type_name(raw: str) -> str:
    raw = raw.rstrip("\x00").strip()
    pointer = raw.endswith("*")
    words = [w for w in raw.rstrip("*").split() if w not in {"const", "volatile", "restrict"}]
    return " ".join(words) + ("*" if pointer else "")


def read_signature(kernel: Any, num_args: int) -> KernelSignature | None:
    """Return the kernel's parameter list, or None when the driver withholds arg info."""
    params: list[KernelParam] = []
    try:
        for i in range(num_args):
            qualifier = kernel.get_arg_info(i, cl.kernel_arg_info.ADDRESS_QUALIFIER)
            params.append(
                KernelParam(
                    name=str(kernel.get_arg_info(i, cl.kernel_arg_info.NAME)).rstrip("\x00"),
                    address_space=_ADDRESS_SPACES.get(qualifier, "private"),
                    type_name=_normalize_type_name(str(kernel.get_arg_info(i, cl.kernel_arg_info.TYPE_NAME))),
                )
            )
    except cl.Error as e:
        logger.debug("Kernel argument info unavailable (%s); checking arity only", e)
        return None
    return tuple(params)


def _mismatch(entry_point: str, index: int, param: KernelParam | None, msg: str) -> ArgumentMismatch:
    where = f"argument {index}" if param is None else f"argument {index} ({param.type_name} {param.name})"
    return ArgumentMismatch(f"Kernel {entry_point!r} {where}: {msg}", stage="build")


def _bind_buffer(entry_point: str, index: int, param: KernelParam | None, buf: DeviceBuffer) -> Any:
    if buf.released:
        raise _mismatch(entry_point, index, param, f"buffer {buf.name!r} was released")
    if param is None:
        return buf.mem
    if param.address_space == "local":
        raise _mismatch(entry_point, index, param, "__local parameters cannot be bound to device buffers")
    if not param.is_pointer or param.address_space not in ("global", "constant"):
        raise _mismatch(entry_point, index, param, f"expects a by-value {param.type_name}, got buffer {buf.name!r}")
    expected = param.element_dtype
    if expected is not None and expected != buf.dtype:
        raise _mismatch(entry_point, index, param, f"expects {expected} elements, buffer {buf.name!r} holds {buf.dtype}")
    return buf.mem


def _bind_scalar(entry_point: str, index: int, param: KernelParam | None, arg: Any) -> Any:
    value, explicit = (arg.value, arg.dtype) if isinstance(arg, Scalar) else (arg, None)
    if param is None:
        if explicit is not None:
            return np.dtype(explicit).type(value)
        if isinstance(value, np.generic):
            return value
        raise _mismatch(entry_point, index, None, "kernel argument info is unavailable; pass Scalar(value, dtype=...)")

    if param.is_pointer:
        raise _mismatch(entry_point, index, param, f"expects a buffer, got scalar {value!r}")
    declared = param.element_dtype
    if declared is None:
        raise _mismatch(entry_point, index, param, "unsupported parameter type")
    if explicit is not None and np.dtype(explicit) != declared:
        raise _mismatch(entry_point, index, param, f"declared as {declared}, argument says {np.dtype(explicit)}")
    if isinstance(value, (bool, np.bool_)):
        raise _mismatch(entry_point, index, param, f"expects {declared}, got bool")

    if declared.kind in "iu":
        if not isinstance(value, (int, np.integer)):
            raise _mismatch(entry_point, index, param, f"expects an integer, got {type(value).__name__} {value!r}")
        info = np.iinfo(declared)
        if not info.min <= int(value) <= info.max:
            raise _mismatch(entry_point, index, param, f"{value} is out of range for {declared}")
    elif not isinstance(value, (int, float, np.integer, np.floating)):
        raise _mismatch(entry_point, index, param, f"expects a number, got {type(value).__name__}")
    return declared.type(value)


def bind_arguments(entry_point: str, num_args: int, signature: KernelSignature | None, args: Sequence[Any]) -> tuple[Any, ...]:
    """Check `args` against the kernel's parameters and convert them for `set_args`."""
    if len(args) != num_args:
        raise ArgumentMismatch(
            f"Kernel {entry_point!r} takes {num_args} argument(s) but {len(args)} were supplied",
            stage="build",
        )
    values: list[Any] = []
    for i, arg in enumerate(args):
        param = None if signature is None else signature[i]
        if isinstance(arg, DeviceBuffer):
            values.append(_bind_buffer(entry_point, i, param, arg))
        elif isinstance(arg, BufferRef):
            raise _mismatch(entry_point, i, param, f"buffer reference {arg.name!r} was not resolved to an allocated buffer")
        else:
            values.append(_bind_scalar(entry_point, i, param, arg))
    return tuple(values)


def build(context: DeviceContext, entry_point: str, args: Sequence[Any]) -> BoundKernel:
    """Bind positional `args` to a fresh instance of `entry_point`.

    Misconfiguration raises `ArgumentMismatch` here, before any device time is spent.
    """
    kernel = context.kernel(entry_point)
    num_args = int(kernel.num_args)
    signature = read_signature(kernel, num_args)
    values = bind_arguments(entry_point, num_args, signature, args)
    try:
        kernel.set_args(*values)
        max_wg = int(kernel.get_work_group_info(cl.kernel_work_group_info.WORK_GROUP_SIZE, context.device))
    except cl.Error as e:
        raise ArgumentMismatch(f"Kernel {entry_point!r} rejected its arguments: {e}", stage="build") from e
    return BoundKernel(entry_point=entry_point, kernel=kernel, args=tuple(args), signature=signature, max_work_group_size=max_wg)


def validate_configuration(
    configuration: WorkConfiguration,
    limits: DeviceLimits,
    *,
    kernel_work_group_size: int | None = None,
) -> None:
    for field_name in ("global_size", "local_size"):
        v = getattr(configuration, field_name)
        if isinstance(v, bool) or not isinstance(v, (int, np.integer)) or v <= 0:
            raise InvalidWorkConfiguration(
                f"{field_name} must be a positive integer, got {v!r}", stage="validate", configuration=configuration
            )
    g, l = configuration.global_size, configuration.local_size
    if g % l != 0:
        raise InvalidWorkConfiguration(
            f"global_size {g} is not divisible by local_size {l}", stage="validate", configuration=configuration
        )
    if l > limits.max_work_group_size:
        raise InvalidWorkConfiguration(
            f"local_size {l} exceeds the device maximum work-group size {limits.max_work_group_size}",
            stage="validate",
            configuration=configuration,
        )
    if kernel_work_group_size is not None and l > kernel_work_group_size:
        raise InvalidWorkConfiguration(
            f"local_size {l} exceeds this kernel's maximum work-group size {kernel_work_group_size} on the device",
            stage="validate",
            configuration=configuration,
        )


def dispatch(context: DeviceContext, kernel: BoundKernel, configuration: WorkConfiguration) -> DispatchHandle:
    """Validate and enqueue; returns without waiting for the device."""
    validate_configuration(configuration, context.limits, kernel_work_group_size=kernel.max_work_group_size)
    return enqueue(context, kernel, configuration)


def enqueue(context: DeviceContext, kernel: BoundKernel, configuration: WorkConfiguration) -> DispatchHandle:
    """Enqueue an already validated configuration; this is the timed action."""
    try:
        event = cl.enqueue_nd_range_kernel(
            context.queue, kernel.kernel, (configuration.global_size,), (configuration.local_size,)
        )
    except cl.Error as e:
        raise KernelExecutionFault(
            f"Enqueue of kernel {kernel.entry_point!r} failed: {e}", stage="dispatch", configuration=configuration
        ) from e
    return DispatchHandle(event=event, configuration=configuration, entry_point=kernel.entry_point, profiled=context.profiling)


def await_completion(target: DispatchHandle | DeviceContext) -> None:
    """Block until `target`'s work (a single dispatch, or the whole context) has retired.

    Device-side failures are raised as `KernelExecutionFault`; they are never discarded.
    """
    if not isinstance(target, DispatchHandle):
        target.finish()
        return
    try:
        target.event.wait()
        status = int(target.event.get_info(cl.event_info.COMMAND_EXECUTION_STATUS))
    except cl.Error as e:
        raise KernelExecutionFault(
            f"Kernel {target.entry_point!r} failed on the device: {e}", stage="await", configuration=target.configuration
        ) from e
    if status < 0:
        raise KernelExecutionFault(
            f"Kernel {target.entry_point!r} finished with execution status {status}",
            stage="await",
            configuration=target.configuration,
        )
