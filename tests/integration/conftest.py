from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from parallelism_bench.context import DeviceContext, open_context, select_device
from parallelism_bench.errors import DeviceUnavailable

# Any device type: CI runners usually only have a CPU OpenCL implementation (pocl).
DEVICE_TYPE = "all"


@pytest.fixture(scope="session")
def device_type() -> str:
    try:
        select_device(DEVICE_TYPE)
    except DeviceUnavailable as e:
        pytest.skip(f"requires an OpenCL device: {e}")
    return DEVICE_TYPE


@pytest.fixture
def open_ctx(device_type: str) -> Iterator[Callable[..., DeviceContext]]:
    opened: list[DeviceContext] = []

    def _open(source: str, entry_points: list[str], **kwargs: Any) -> DeviceContext:
        ctx = open_context(source, entry_points, device_type=device_type, **kwargs)
        opened.append(ctx)
        return ctx

    yield _open
    for ctx in opened:
        ctx.close()
