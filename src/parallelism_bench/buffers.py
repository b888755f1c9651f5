from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt
import pyopencl as cl

from .context import DeviceContext
from .errors import ArgumentMismatch, DeviceUnavailable, KernelExecutionFault, OutOfBounds, Stage
from .model import DeviceBuffer, FillPolicy

logger = logging.getLogger(__name__)


def _fill_pattern(fill: FillPolicy, dtype: np.dtype, name: str) -> np.ndarray:
    if fill.kind == "zero":
        return np.zeros(1, dtype=dtype)
    value = fill.value
    if dtype.kind in "iu" and float(value) != int(value):
        raise ArgumentMismatch(f"Constant fill {value!r} is not representable as {dtype} for buffer {name!r}", stage="allocate")
    return np.array([value], dtype=dtype)


class BufferManager:
    """Allocates, fills, writes and reads device buffers for one scope.

    Every buffer belongs to the manager that allocated it and is released
    when the manager exits. Transfers block until the data is resident.
    """

    def __init__(self, context: DeviceContext) -> None:
        self._context = context
        self._buffers: dict[str, DeviceBuffer] = {}

    def __enter__(self) -> BufferManager:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    def __len__(self) -> int:
        return len(self._buffers)

    def allocate(
        self,
        name: str,
        dtype: npt.DTypeLike,
        length: int,
        fill: FillPolicy | None = None,
    ) -> DeviceBuffer:
        fill = FillPolicy.uninitialized() if fill is None else fill
        dtype = np.dtype(dtype)
        if isinstance(length, bool) or not isinstance(length, (int, np.integer)) or length <= 0:
            raise ArgumentMismatch(f"Buffer {name!r} length must be a positive integer, got {length!r}", stage="allocate")
        if name in self._buffers:
            raise ArgumentMismatch(f"Buffer {name!r} is already allocated in this scope", stage="allocate")

        pattern = None if fill.kind == "uninitialized" else _fill_pattern(fill, dtype, name)
        buf = DeviceBuffer(name=name, dtype=dtype, length=int(length))
        try:
            buf.mem = cl.Buffer(self._context.cl_context, cl.mem_flags.READ_WRITE, size=buf.nbytes)
        except cl.Error as e:
            raise DeviceUnavailable(f"Failed to allocate {buf.nbytes} bytes for buffer {name!r}: {e}", stage="allocate") from e
        self._buffers[name] = buf

        if pattern is not None:
            try:
                cl.enqueue_fill_buffer(self._context.queue, buf.mem, pattern, 0, buf.nbytes).wait()
            except cl.Error as e:
                raise KernelExecutionFault(f"Failed to fill buffer {name!r}: {e}", stage="allocate") from e
        logger.debug("Allocated %s[%d] %r (%s fill)", dtype, buf.length, name, fill.kind)
        return buf

    def get(self, name: str) -> DeviceBuffer:
        try:
            return self._buffers[name]
        except KeyError:
            raise ArgumentMismatch(f"No buffer named {name!r}; allocated: {sorted(self._buffers)}", stage="build") from None

    def _check_owned(self, buffer: DeviceBuffer, stage: Stage) -> None:
        if self._buffers.get(buffer.name) is not buffer or buffer.released:
            raise ArgumentMismatch(f"Buffer {buffer.name!r} is not live in this scope", stage=stage)

    def write(self, buffer: DeviceBuffer, host_data: npt.ArrayLike) -> None:
        self._check_owned(buffer, "write")
        try:
            host = np.ascontiguousarray(np.asarray(host_data).astype(buffer.dtype, casting="same_kind")).reshape(-1)
        except TypeError as e:
            raise ArgumentMismatch(f"Host data cannot be stored as {buffer.dtype} in buffer {buffer.name!r}: {e}", stage="write") from e
        if host.size != buffer.length:
            raise ArgumentMismatch(
                f"Host data has {host.size} element(s) but buffer {buffer.name!r} holds {buffer.length}",
                stage="write",
            )
        try:
            cl.enqueue_copy(self._context.queue, buffer.mem, host, is_blocking=True)
        except cl.Error as e:
            raise KernelExecutionFault(f"Write to buffer {buffer.name!r} failed: {e}", stage="write") from e

    def read(self, buffer: DeviceBuffer, max_count: int) -> np.ndarray:
        """Copy the first `max_count` elements of `buffer` to the host."""
        self._check_owned(buffer, "read")
        if isinstance(max_count, bool) or not isinstance(max_count, (int, np.integer)):
            raise ArgumentMismatch(f"Read count for buffer {buffer.name!r} must be an integer, got {max_count!r}", stage="read")
        if max_count < 0 or max_count > buffer.length:
            raise OutOfBounds(
                f"Cannot read {max_count} element(s) from buffer {buffer.name!r} of length {buffer.length}",
                stage="read",
            )
        host = np.empty(int(max_count), dtype=buffer.dtype)
        if host.size == 0:
            return host
        try:
            cl.enqueue_copy(self._context.queue, host, buffer.mem, is_blocking=True)
        except cl.Error as e:
            raise KernelExecutionFault(f"Read from buffer {buffer.name!r} failed: {e}", stage="read") from e
        return host

    def release(self) -> None:
        buffers, self._buffers = self._buffers, {}
        for buf in buffers.values():
            if buf.mem is not None:
                buf.mem.release()
                buf.mem = None
