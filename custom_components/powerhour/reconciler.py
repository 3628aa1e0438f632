"""Hourly health reconciliation for derived sum-meter devices."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime
from enum import Enum
import logging

from homeassistant.core import HomeAssistant
from homeassistant.helpers.event import async_track_time_change

from .const import SOURCE_MISSING_RESTART_DELAY, STALLED_RESTART_DELAY
from .device import (
    DeviceRegistry,
    ManagedDevice,
    MeterSettings,
    listening_is_on,
    mask_device_id,
    polling_is_on,
)

_LOGGER = logging.getLogger(__name__)


class DeviceHealth(str, Enum):
    """Outcome of one device's hourly reconciliation."""

    FLOW_DRIVEN = "flow_driven"
    SOURCE_MISSING = "source_missing"
    MEASURE_DRIVEN = "measure_driven"
    STALLED = "stalled"
    DEGRADED = "degraded"
    NORMAL = "normal"


class HourlyReconciler:
    """Check every managed device once per hour and drive it back to health."""

    def __init__(
        self,
        hass: HomeAssistant,
        registry: DeviceRegistry,
        driver_id: str,
        *,
        source_missing_delay: float = SOURCE_MISSING_RESTART_DELAY,
        stalled_delay: float = STALLED_RESTART_DELAY,
    ) -> None:
        """Initialise the reconciler for the devices of ``driver_id``."""

        self._hass = hass
        self._registry = registry
        self._driver_id = driver_id
        self._source_missing_delay = source_missing_delay
        self._stalled_delay = stalled_delay
        self._remove_listener: Callable[[], None] | None = None
        self._active_task: asyncio.Task[dict[str, DeviceHealth | None]] | None = None
        self._restart_tasks: set[asyncio.Task[None]] = set()

    @property
    def is_running(self) -> bool:
        """Return ``True`` while an hourly pass is in progress."""

        return self._active_task is not None and not self._active_task.done()

    async def async_setup(self) -> None:
        """Register the top-of-the-hour trigger."""

        if self._remove_listener is not None:
            raise RuntimeError(f"Hourly reconciler for {self._driver_id} already set up")
        self._remove_listener = async_track_time_change(
            self._hass,
            self._on_time,
            minute=0,
            second=0,
        )

    async def async_shutdown(self) -> None:
        """Remove the hourly trigger and cancel pending work."""

        if callable(self._remove_listener):
            self._remove_listener()
            self._remove_listener = None

        pending = [task for task in self._restart_tasks if not task.done()]
        task = self._active_task
        self._active_task = None
        if task is not None and not task.done():
            pending.append(task)
        for item in pending:
            item.cancel()
        for item in pending:
            with suppress(asyncio.CancelledError):
                await item
        self._restart_tasks.clear()

    def _on_time(self, now: datetime | None) -> None:
        """Callback invoked by Home Assistant's time tracker in a thread-safe way."""

        loop = self._hass.loop

        def _schedule() -> None:
            if self.is_running:
                _LOGGER.debug(
                    "Hourly reconcile %s: skipping tick while previous pass is active",
                    self._driver_id,
                )
                return
            task = loop.create_task(self.async_run_tick())
            self._active_task = task

            def _finalise(finished: asyncio.Task[dict[str, DeviceHealth | None]]) -> None:
                if self._active_task is finished:
                    self._active_task = None
                if finished.cancelled():
                    _LOGGER.debug("Hourly reconcile task cancelled")
                    return
                exception = finished.exception()
                if exception is not None:
                    _LOGGER.error(
                        "Hourly reconcile run raised an exception", exc_info=exception
                    )

            task.add_done_callback(_finalise)

        loop.call_soon_threadsafe(_schedule)

    async def async_run_tick(self) -> dict[str, DeviceHealth | None]:
        """Reconcile every managed device concurrently.

        Returns the health outcome per device id; ``None`` marks a device
        whose reconciliation raised.
        """

        devices = list(self._registry.managed_devices(self._driver_id))
        results = await asyncio.gather(
            *(self.async_reconcile_device(device) for device in devices)
        )
        outcomes = {device.id: result for device, result in zip(devices, results)}

        summary: dict[str, int] = {}
        for result in results:
            key = result.value if result is not None else "error"
            summary[key] = summary.get(key, 0) + 1
        _LOGGER.info(
            "Hourly reconcile %s: devices=%d %s",
            self._driver_id,
            len(devices),
            " ".join(f"{key}={count}" for key, count in sorted(summary.items())),
        )
        return outcomes

    async def async_reconcile_device(self, device: ManagedDevice) -> DeviceHealth | None:
        """Run the per-device decision tree, isolating any failure."""

        try:
            return await self._reconcile(device)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception(
                "Hourly reconcile failed for %s", getattr(device, "name", "?")
            )
            return None

    async def _reconcile(self, device: ManagedDevice) -> DeviceHealth:
        settings = MeterSettings.from_mapping(device.settings)
        name = device.name

        if settings.meter_via_flow:
            await device.update_meter_from_flow(None)
            return DeviceHealth.FLOW_DRIVEN

        source = (
            self._registry.source_device(settings.source_id)
            if settings.source_id
            else None
        )
        if (
            source is None
            or source.capabilities_obj is None
            or source.available is None
        ):
            _LOGGER.error(
                "Source device %s of %s is missing",
                mask_device_id(settings.source_id),
                name,
            )
            self._schedule_restart(device, self._source_missing_delay)
            try:
                await device.set_unavailable(
                    "Source device is missing. Retry in "
                    f"{round(self._source_missing_delay / 60)} minutes."
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Marking %s unavailable failed", name)
            return DeviceHealth.SOURCE_MISSING

        if settings.use_measure_source:
            await device.update_meter_from_measure(None)
            return DeviceHealth.MEASURE_DRIVEN

        if not polling_is_on(device, settings) and not listening_is_on(device):
            _LOGGER.error(
                "%s is not in polling or listening mode. Restarting now", name
            )
            self._schedule_restart(device, self._stalled_delay)
            return DeviceHealth.STALLED

        await device.poll_meter()
        # The registry may have replaced or dropped the source during the poll.
        source = self._registry.source_device(settings.source_id)
        if source is None or not source.available:
            _LOGGER.warning("Source device of %s is unavailable", name)
            return DeviceHealth.DEGRADED
        await device.set_available()
        return DeviceHealth.NORMAL

    def _schedule_restart(self, device: ManagedDevice, delay: float) -> None:
        """Request a device restart without waiting for it to settle."""

        task = asyncio.create_task(device.restart_device(delay))
        self._restart_tasks.add(task)
        name = device.name

        def _finalise(finished: asyncio.Task[None]) -> None:
            self._restart_tasks.discard(finished)
            if finished.cancelled():
                return
            exception = finished.exception()
            if exception is not None:
                _LOGGER.error("Restart of %s failed: %s", name, exception)

        task.add_done_callback(_finalise)


__all__ = ["DeviceHealth", "HourlyReconciler"]
