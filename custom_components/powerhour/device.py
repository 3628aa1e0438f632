"""Device-side collaborator contracts for derived sum meters."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .const import (
    DEFAULT_TARIFF_GROUP,
    SETTING_INTERVAL,
    SETTING_METER_VIA_FLOW,
    SETTING_SOURCE_ID,
    SETTING_TARIFF_UPDATE_GROUP,
    SETTING_USE_MEASURE_SOURCE,
)


def normalize_tariff_group(value: Any) -> int | None:
    """Return ``value`` as a positive tariff group or ``None`` when invalid.

    Missing values (``None`` or blank strings) map to the default group.
    """

    if value is None:
        return DEFAULT_TARIFF_GROUP
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return DEFAULT_TARIFF_GROUP
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        group = int(value)
    except (TypeError, ValueError):
        return None
    return group if group > 0 else None


@dataclass(frozen=True, slots=True)
class MeterSettings:
    """Typed view of the settings mapping stored on a derived device."""

    meter_via_flow: bool = False
    use_measure_source: bool = False
    interval: float | None = None
    tariff_update_group: int = DEFAULT_TARIFF_GROUP
    source_id: str | None = None

    @classmethod
    def from_mapping(cls, settings: Mapping[str, Any] | None) -> MeterSettings:
        """Build settings from a raw mapping, applying defaults."""

        if not isinstance(settings, Mapping):
            return cls()
        interval_raw = settings.get(SETTING_INTERVAL)
        try:
            interval = float(interval_raw) if interval_raw else None
        except (TypeError, ValueError):
            interval = None
        group = normalize_tariff_group(settings.get(SETTING_TARIFF_UPDATE_GROUP))
        source_id = settings.get(SETTING_SOURCE_ID)
        return cls(
            meter_via_flow=bool(settings.get(SETTING_METER_VIA_FLOW)),
            use_measure_source=bool(settings.get(SETTING_USE_MEASURE_SOURCE)),
            interval=interval if interval and interval > 0 else None,
            tariff_update_group=group or DEFAULT_TARIFF_GROUP,
            source_id=str(source_id) if source_id else None,
        )


class SourceDevice(Protocol):
    """Host device a derived meter reads from."""

    id: str
    name: str
    # Capability values reported by the host; ``None`` until the host loads them.
    capabilities_obj: Mapping[str, Any] | None
    available: bool | None


class ManagedDevice(Protocol):
    """Derived meter device supervised by a sum-meter driver.

    The runtime methods are implemented by the device itself; the driver
    only calls them.
    """

    id: str
    name: str
    settings: Mapping[str, Any]
    tariff: float | None
    # Active polling timer; anything exposing ``cancelled()`` like ``asyncio.TimerHandle``.
    poll_handle: Any | None
    capability_listeners: Mapping[str, Any]

    async def update_meter_from_flow(self, value: float | None) -> None: ...

    async def update_meter_from_measure(self, value: float | None) -> None: ...

    async def poll_meter(self) -> None: ...

    async def restart_device(self, delay: float) -> None: ...

    async def set_available(self) -> None: ...

    async def set_unavailable(self, reason: str) -> None: ...

    async def set_settings(self, settings: Mapping[str, Any]) -> None: ...

    async def set_capability(self, capability: str, value: Any) -> None: ...


class DeviceRegistry(Protocol):
    """In-memory registry of managed devices and host source devices."""

    def managed_devices(self, driver_id: str) -> Iterable[ManagedDevice]: ...

    def source_device(self, device_id: str) -> SourceDevice | None: ...


def polling_is_on(device: ManagedDevice, settings: MeterSettings) -> bool:
    """Return ``True`` when the device has a live polling timer."""

    if not settings.interval:
        return False
    handle = getattr(device, "poll_handle", None)
    if handle is None:
        return False
    cancelled = getattr(handle, "cancelled", None)
    if callable(cancelled):
        return not cancelled()
    return True


def listening_is_on(device: ManagedDevice) -> bool:
    """Return ``True`` when the device holds capability listeners."""

    listeners = getattr(device, "capability_listeners", None)
    return bool(listeners)


def mask_device_id(value: str | None) -> str:
    """Return a device id shortened to its last four characters for logs."""

    text = str(value).strip() if value is not None else ""
    if not text:
        return ""
    if len(text) <= 4:
        return "***"
    return f"***{text[-4:]}"


__all__ = [
    "DeviceRegistry",
    "ManagedDevice",
    "MeterSettings",
    "SourceDevice",
    "listening_is_on",
    "mask_device_id",
    "normalize_tariff_group",
    "polling_is_on",
]
