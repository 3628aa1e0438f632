# ruff: noqa: D100,D101,D102,D103,D107
from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
import types
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeSourceDevice:
    def __init__(
        self,
        device_id: str,
        *,
        name: str = "Source",
        available: bool | None = True,
        loaded: bool = True,
    ) -> None:
        self.id = device_id
        self.name = name
        self.available = available
        self.capabilities_obj = {"meter_power": {"value": 1.0}} if loaded else None


class FakeManagedDevice:
    def __init__(
        self,
        device_id: str,
        *,
        name: str | None = None,
        settings: Mapping[str, Any] | None = None,
        poll_handle: Any | None = None,
        capability_listeners: Mapping[str, Any] | None = None,
    ) -> None:
        self.id = device_id
        self.name = name or f"meter {device_id}"
        self.settings: dict[str, Any] = dict(settings or {})
        self.tariff: float | None = None
        self.capabilities: dict[str, Any] = {}
        self.poll_handle = poll_handle
        self.capability_listeners = dict(capability_listeners or {})
        self.update_meter_from_flow = AsyncMock()
        self.update_meter_from_measure = AsyncMock()
        self.poll_meter = AsyncMock()
        self.restart_device = AsyncMock()
        self.set_available = AsyncMock()
        self.set_unavailable = AsyncMock()
        self.set_settings = AsyncMock(side_effect=self._store_settings)
        self.set_capability = AsyncMock(side_effect=self._store_capability)

    async def _store_settings(self, settings: Mapping[str, Any]) -> None:
        self.settings.update(settings)

    async def _store_capability(self, capability: str, value: Any) -> None:
        self.capabilities[capability] = value


class FakeRegistry:
    def __init__(self) -> None:
        self.devices: dict[str, list[FakeManagedDevice]] = {}
        self.sources: dict[str, FakeSourceDevice] = {}

    def add(self, driver_id: str, device: FakeManagedDevice) -> FakeManagedDevice:
        self.devices.setdefault(driver_id, []).append(device)
        return device

    def add_source(self, source: FakeSourceDevice) -> FakeSourceDevice:
        self.sources[source.id] = source
        return source

    def managed_devices(self, driver_id: str) -> Iterable[FakeManagedDevice]:
        return list(self.devices.get(driver_id, []))

    def source_device(self, device_id: str) -> FakeSourceDevice | None:
        return self.sources.get(device_id)


class LiveHandle:
    def __init__(self, cancelled: bool = False) -> None:
        self._cancelled = cancelled

    def cancelled(self) -> bool:
        return self._cancelled


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def make_device(registry: FakeRegistry) -> Callable[..., FakeManagedDevice]:
    """Return a factory registering managed devices under a driver."""

    def _make(
        device_id: str,
        *,
        driver_id: str = "power",
        source: FakeSourceDevice | None = None,
        **kwargs: Any,
    ) -> FakeManagedDevice:
        device = FakeManagedDevice(device_id, **kwargs)
        if source is not None:
            registry.add_source(source)
            device.settings.setdefault("homey_device_id", source.id)
        return registry.add(driver_id, device)

    return _make


@pytest.fixture
def hass() -> types.SimpleNamespace:
    """Return a minimal Home Assistant stand-in for injected helpers."""

    def _create_task(coro: Any) -> asyncio.Task[Any]:
        return asyncio.get_running_loop().create_task(coro)

    return types.SimpleNamespace(
        data={},
        loop=MagicMock(),
        async_create_task=MagicMock(side_effect=_create_task),
    )
