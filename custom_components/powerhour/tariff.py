"""Tariff broadcast to the update groups of one logical driver."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
import logging
import math
from typing import Any

from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.dispatcher import (
    async_dispatcher_connect,
    async_dispatcher_send,
)

from .const import (
    CAPABILITY_TARIFF,
    SETTING_TARIFF,
    TARIFF_GRACE_DELAY,
    signal_set_tariff,
)
from .device import DeviceRegistry, ManagedDevice, MeterSettings, normalize_tariff_group

_LOGGER = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[Any]]


class InvalidTariff(Exception):
    """The tariff payload could not be parsed."""


def parse_tariff(value: Any) -> float:
    """Return ``value`` as a finite float or raise ``InvalidTariff``."""

    if isinstance(value, bool) or value is None:
        raise InvalidTariff(f"Invalid tariff: {value!r}")
    if isinstance(value, str):
        value = value.strip()
    try:
        tariff = float(value)
    except (TypeError, ValueError) as err:
        raise InvalidTariff(f"Invalid tariff: {value!r}") from err
    if not math.isfinite(tariff):
        raise InvalidTariff(f"Invalid tariff: {value!r}")
    return tariff


def parse_group(value: Any) -> int:
    """Return the tariff update group, defaulting to group 1."""

    group = normalize_tariff_group(value)
    if group is None:
        raise InvalidTariff(f"Invalid tariff update group: {value!r}")
    return group


class TariffDispatcher:
    """Apply tariff changes to every device of a matching update group."""

    def __init__(
        self,
        hass: HomeAssistant,
        registry: DeviceRegistry,
        driver_id: str,
        *,
        grace_delay: float = TARIFF_GRACE_DELAY,
        sleep: SleepCallable | None = None,
    ) -> None:
        """Initialise the dispatcher for the devices of ``driver_id``."""

        self._hass = hass
        self._registry = registry
        self._driver_id = driver_id
        self._grace_delay = grace_delay
        self._sleep = sleep or asyncio.sleep
        self._unsub: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def signal(self) -> str:
        """Return the dispatcher signal this instance listens to."""

        return signal_set_tariff(self._driver_id)

    async def async_setup(self) -> None:
        """Subscribe to tariff changes for this driver."""

        if self._unsub is not None:
            raise RuntimeError(f"Tariff dispatcher for {self._driver_id} already set up")
        self._unsub = async_dispatcher_connect(
            self._hass, self.signal, self._handle_signal
        )

    async def async_shutdown(self) -> None:
        """Unsubscribe and cancel tariff updates still waiting on the grace delay."""

        if callable(self._unsub):
            self._unsub()
            self._unsub = None
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    @callback
    def _handle_signal(self, args: Mapping[str, Any]) -> None:
        """Run a dispatched tariff change in the background."""

        task = self._hass.async_create_task(self._async_handle_event(args))
        self._tasks.add(task)
        task.add_done_callback(self._finalise)

    def _finalise(self, finished: asyncio.Task[Any]) -> None:
        self._tasks.discard(finished)
        if finished.cancelled():
            return
        exception = finished.exception()
        if exception is not None:
            _LOGGER.error(
                "%s handling raised an exception", self.signal, exc_info=exception
            )

    async def _async_handle_event(self, args: Mapping[str, Any]) -> None:
        try:
            await self.async_set_tariff(args)
        except InvalidTariff as err:
            _LOGGER.error("%s: %s", self.signal, err)

    async def async_set_tariff(self, args: Mapping[str, Any]) -> list[str]:
        """Parse ``args`` and push the tariff after the grace delay.

        Returns the ids of the devices that received the tariff.
        """

        _LOGGER.debug("%s received: %s", self.signal, dict(args))
        tariff = parse_tariff(args.get("tariff"))
        group = parse_group(args.get("group"))

        # Give a concurrent hourly pass time to finish before writing.
        await self._sleep(self._grace_delay)

        updated: list[str] = []
        for device in list(self._registry.managed_devices(self._driver_id)):
            settings = MeterSettings.from_mapping(device.settings)
            if settings.tariff_update_group != group:
                continue
            if await self._apply(device, tariff):
                updated.append(device.id)
        _LOGGER.info(
            "Tariff %s applied to %d devices of %s group %d",
            tariff,
            len(updated),
            self._driver_id,
            group,
        )
        return updated

    async def _apply(self, device: ManagedDevice, tariff: float) -> bool:
        _LOGGER.debug("Updating tariff of %s to %s", device.name, tariff)
        try:
            await device.set_settings({SETTING_TARIFF: tariff})
            await device.set_capability(CAPABILITY_TARIFF, tariff)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.exception("Tariff update failed for %s", device.name)
            return False
        device.tariff = tariff
        return True


@callback
def async_fire_set_tariff(
    hass: HomeAssistant, driver_id: str, tariff: Any, group: Any = None
) -> None:
    """Dispatch a tariff change to the driver identified by ``driver_id``."""

    payload: dict[str, Any] = {"tariff": tariff}
    if group is not None:
        payload["group"] = group
    async_dispatcher_send(hass, signal_set_tariff(driver_id), payload)


__all__ = [
    "InvalidTariff",
    "TariffDispatcher",
    "async_fire_set_tariff",
    "parse_group",
    "parse_tariff",
]
