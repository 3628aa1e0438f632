"""Logical sum-meter driver composing discovery, reconciliation and tariffs."""

from __future__ import annotations

from collections.abc import Mapping
import logging
from typing import Any

from homeassistant.core import HomeAssistant

from .const import DriverDefinition
from .device import DeviceRegistry
from .inventory import DeviceInventoryClassifier, InventoryFetcher, NewDeviceSpec
from .reconciler import DeviceHealth, HourlyReconciler
from .tariff import TariffDispatcher

_LOGGER = logging.getLogger(__name__)


class SumMeterDriver:
    """Supervise the derived meters of one logical driver."""

    def __init__(
        self,
        hass: HomeAssistant,
        definition: DriverDefinition,
        registry: DeviceRegistry,
        fetch_inventory: InventoryFetcher,
        *,
        version: str | None = None,
        reconciler: HourlyReconciler | None = None,
        tariff_dispatcher: TariffDispatcher | None = None,
    ) -> None:
        """Wire the driver's components to the injected host collaborators."""

        self._definition = definition
        self._classifier = DeviceInventoryClassifier(
            definition, fetch_inventory, version=version
        )
        self._reconciler = reconciler or HourlyReconciler(
            hass, registry, definition.driver_id
        )
        self._tariff = tariff_dispatcher or TariffDispatcher(
            hass, registry, definition.driver_id
        )
        self._initialised = False

    @property
    def driver_id(self) -> str:
        """Return the logical driver id."""

        return self._definition.driver_id

    async def async_init(self) -> None:
        """Subscribe to the hour tick and this driver's tariff signal."""

        if self._initialised:
            raise RuntimeError(f"Driver {self.driver_id} already initialised")
        _LOGGER.debug("Initialising driver %s", self.driver_id)
        await self._reconciler.async_setup()
        try:
            await self._tariff.async_setup()
        except Exception:
            await self._reconciler.async_shutdown()
            raise
        self._initialised = True

    async def async_teardown(self) -> None:
        """Drop all subscriptions and pending work."""

        await self._tariff.async_shutdown()
        await self._reconciler.async_shutdown()
        self._initialised = False

    async def async_on_hour_tick(self) -> dict[str, DeviceHealth | None]:
        """Run one reconciliation pass immediately."""

        return await self._reconciler.async_run_tick()

    async def async_on_tariff_changed(self, args: Mapping[str, Any]) -> list[str]:
        """Apply a tariff change to this driver's devices."""

        return await self._tariff.async_set_tariff(args)

    async def async_discover(self) -> list[NewDeviceSpec]:
        """Return specs for new derived devices."""

        return await self._classifier.async_discover()

    async def async_pair_list_devices(self) -> list[dict[str, Any]]:
        """Return the pairing payloads for the host's device list."""

        _LOGGER.info("Listing of %s devices started", self.driver_id)
        return [spec.as_dict() for spec in await self.async_discover()]


__all__ = ["SumMeterDriver"]
