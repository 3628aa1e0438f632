"""Home Assistant entry point for the Power by the Hour sum-meter drivers."""

from __future__ import annotations

from collections.abc import MutableMapping
import logging
from typing import Any

from homeassistant.core import HomeAssistant
from homeassistant.helpers import aiohttp_client

from .api import HomeyDevicesClient
from .const import DOMAIN, get_driver_definition
from .device import DeviceRegistry
from .driver import SumMeterDriver
from .inventory import InventoryFetcher

_LOGGER = logging.getLogger(__name__)


def create_devices_client(
    hass: HomeAssistant, base_url: str, token: str
) -> HomeyDevicesClient:
    """Return a host inventory client using Home Assistant's shared session."""

    session = aiohttp_client.async_get_clientsession(hass)
    return HomeyDevicesClient(session, base_url, token)


async def async_setup_driver(
    hass: HomeAssistant,
    driver_id: str,
    registry: DeviceRegistry,
    *,
    fetch_inventory: InventoryFetcher | None = None,
    base_url: str | None = None,
    token: str | None = None,
    version: str | None = None,
) -> SumMeterDriver:
    """Create, initialise and store the driver for ``driver_id``."""

    domain_data: MutableMapping[str, Any] = hass.data.setdefault(DOMAIN, {})
    if driver_id in domain_data:
        raise RuntimeError(f"Driver {driver_id} is already set up")

    definition = get_driver_definition(driver_id)
    if fetch_inventory is None:
        if not base_url or not token:
            raise ValueError("base_url and token are required without fetch_inventory")
        fetch_inventory = create_devices_client(hass, base_url, token).async_get_devices

    driver = SumMeterDriver(
        hass, definition, registry, fetch_inventory, version=version
    )
    await driver.async_init()
    domain_data[driver_id] = driver
    _LOGGER.info("Driver %s set up (version %s)", driver_id, version or "unknown")
    return driver


async def async_unload_driver(hass: HomeAssistant, driver_id: str) -> bool:
    """Tear down the driver for ``driver_id`` if it is running."""

    domain_data: MutableMapping[str, Any] = hass.data.get(DOMAIN, {})
    driver: SumMeterDriver | None = domain_data.pop(driver_id, None)
    if driver is None:
        return False
    await driver.async_teardown()
    _LOGGER.debug("Driver %s unloaded", driver_id)
    return True
