from __future__ import annotations

from typing import Any

import pyopencl as cl
import pytest

from parallelism_bench import context
from parallelism_bench.errors import DeviceUnavailable


class _Device:
    def __init__(self, name: str, *, available: bool = True, compiler: bool = True, kind: int = cl.device_type.GPU) -> None:
        self.name = name
        self.available = available
        self.compiler_available = compiler
        self.type = kind
        self.max_compute_units = 8
        self.max_work_group_size = 256


class _Platform:
    def __init__(self, name: str, devices: list[_Device]) -> None:
        self.name = name
        self.devices = devices
        self.requested: list[Any] = []

    def get_devices(self, device_type: Any) -> list[_Device]:
        self.requested.append(device_type)
        if device_type == cl.device_type.ALL:
            return self.devices
        return [d for d in self.devices if d.type == device_type]


@pytest.fixture
def platforms(monkeypatch: pytest.MonkeyPatch) -> list[_Platform]:
    plats = [
        _Platform("Portable Computing Language", [_Device("pthread-cpu", kind=cl.device_type.CPU)]),
        _Platform(
            "NVIDIA CUDA",
            [_Device("busy", available=False), _Device("no-compiler", compiler=False), _Device("GeForce RTX 3080")],
        ),
    ]
    monkeypatch.setattr(context.cl, "get_platforms", lambda: plats)
    monkeypatch.delenv(context.ENV_DEVICE_TYPE, raising=False)
    monkeypatch.delenv(context.ENV_PLATFORM, raising=False)
    return plats


def test_resolve_selection_defaults_to_gpu(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(context.ENV_DEVICE_TYPE, raising=False)
    monkeypatch.delenv(context.ENV_PLATFORM, raising=False)
    assert context.resolve_selection() == ("gpu", None)


def test_resolve_selection_env_then_explicit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(context.ENV_DEVICE_TYPE, "CPU")
    monkeypatch.setenv(context.ENV_PLATFORM, "pocl")
    assert context.resolve_selection() == ("cpu", "pocl")
    assert context.resolve_selection("gpu", "nvidia") == ("gpu", "nvidia")


def test_resolve_selection_rejects_unknown_type() -> None:
    with pytest.raises(ValueError, match="Unknown device type"):
        context.resolve_selection("fpga")


def test_select_device_skips_unavailable_and_compilerless(platforms: list[_Platform]) -> None:
    assert context.select_device("gpu").name == "GeForce RTX 3080"


def test_select_device_first_match_in_enumeration_order(platforms: list[_Platform]) -> None:
    assert context.select_device("all").name == "pthread-cpu"


def test_select_device_platform_filter_is_case_insensitive_substring(platforms: list[_Platform]) -> None:
    assert context.select_device("all", "nvidia").name == "GeForce RTX 3080"
    assert platforms[0].requested == []


def test_select_device_reports_filters_when_nothing_matches(platforms: list[_Platform]) -> None:
    with pytest.raises(DeviceUnavailable) as ei:
        context.select_device("accelerator")
    assert ei.value.stage == "open"
    assert "accelerator" in str(ei.value)
    assert "NVIDIA CUDA" in str(ei.value)


def test_select_device_env_override(platforms: list[_Platform], monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(context.ENV_DEVICE_TYPE, "cpu")
    assert context.select_device().name == "pthread-cpu"


def test_list_devices_rows(platforms: list[_Platform]) -> None:
    rows = context.list_devices()
    assert [(r.platform_name, r.device_name) for r in rows] == [
        ("Portable Computing Language", "pthread-cpu"),
        ("NVIDIA CUDA", "busy"),
        ("NVIDIA CUDA", "no-compiler"),
        ("NVIDIA CUDA", "GeForce RTX 3080"),
    ]
    assert rows[-1].compute_units == 8
