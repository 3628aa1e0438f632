"""Source-device discovery for new derived sum meters."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
import logging
import secrets
from typing import Any

from .const import (
    APP_NAMESPACE,
    DAILY_RESET_APPS,
    ID_MAX_ATTEMPTS,
    ID_TOKEN_BYTES,
    INVENTORY_TIMEOUT,
    METER_CAPABILITY_PREFIX,
    SETTING_DAILY_RESET,
    SETTING_LEVEL,
    SETTING_METER_VIA_FLOW,
    SETTING_SOURCE_ID,
    SETTING_SOURCE_NAME,
    SETTING_SOURCE_TYPE,
    SETTING_USE_MEASURE_SOURCE,
    VIRTUAL_METER_PREFIX,
    VIRTUAL_SOURCE_TYPE,
    DriverDefinition,
)
from .device import mask_device_id

_LOGGER = logging.getLogger(__name__)

InventoryFetcher = Callable[[], Awaitable[Mapping[str, Any]]]
TokenFactory = Callable[[], str]


class DiscoveryFailed(Exception):
    """Listing host devices failed; no device specs were produced."""


def _default_token() -> str:
    return secrets.token_hex(ID_TOKEN_BYTES)


@dataclass(frozen=True, slots=True)
class RawDeviceDescriptor:
    """Describe a host device as returned by the inventory API."""

    id: str
    name: str
    capabilities: frozenset[str]
    driver_uri: str

    @classmethod
    def from_payload(cls, key: str, payload: Mapping[str, Any]) -> RawDeviceDescriptor:
        """Build a descriptor from a raw host payload keyed by ``key``."""

        capabilities = payload.get("capabilities") or ()
        if isinstance(capabilities, str):
            capabilities = (capabilities,)
        return cls(
            id=str(payload.get("id") or key),
            name=str(payload.get("name") or key),
            capabilities=frozenset(str(cap) for cap in capabilities),
            driver_uri=str(payload.get("driverUri") or ""),
        )

    @property
    def is_own_device(self) -> bool:
        """Return ``True`` when the device was created by this app."""

        return APP_NAMESPACE in self.driver_uri

    @property
    def has_meter_capability(self) -> bool:
        """Return ``True`` when a cumulative ``meter_`` capability is exposed."""

        return any(cap.startswith(METER_CAPABILITY_PREFIX) for cap in self.capabilities)

    @property
    def resets_daily(self) -> bool:
        """Return ``True`` when the source app resets its counters at midnight."""

        return any(app_id in self.driver_uri for app_id in DAILY_RESET_APPS)


@dataclass(slots=True)
class NewDeviceSpec:
    """Describe a derived device the pairing flow may register."""

    name: str
    id: str
    settings: dict[str, Any] = field(default_factory=dict)
    capabilities: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        """Return the pairing payload understood by the host."""

        return {
            "name": self.name,
            "data": {"id": self.id},
            "settings": dict(self.settings),
            "capabilities": list(self.capabilities),
        }


class _IdAllocator:
    """Hand out generated ids that are unique within one discovery batch."""

    def __init__(self, token_factory: TokenFactory) -> None:
        self._token_factory = token_factory
        self._issued: set[str] = set()

    def allocate(self, prefix: str) -> tuple[str, str]:
        for _ in range(ID_MAX_ATTEMPTS):
            token = self._token_factory()
            candidate = f"{prefix}_{token}"
            if candidate not in self._issued:
                self._issued.add(candidate)
                return candidate, token
        raise DiscoveryFailed(
            f"Could not generate a unique id for {prefix} after {ID_MAX_ATTEMPTS} attempts"
        )


def classify_inventory(
    descriptors: Iterable[RawDeviceDescriptor],
    driver: DriverDefinition,
    *,
    version: str | None = None,
    token_factory: TokenFactory | None = None,
) -> list[NewDeviceSpec]:
    """Return device specs for eligible sources plus one flow-driven meter."""

    allocator = _IdAllocator(token_factory or _default_token)
    driver_id = driver.driver_id
    specs: list[NewDeviceSpec] = []
    skipped_own = 0

    for descriptor in descriptors:
        if descriptor.capabilities.isdisjoint(driver.origin_capabilities):
            continue
        if descriptor.is_own_device:
            skipped_own += 1
            continue
        device_id, _ = allocator.allocate(f"PH_{driver_id}_{descriptor.id}")
        settings: dict[str, Any] = {
            SETTING_SOURCE_ID: descriptor.id,
            SETTING_SOURCE_NAME: descriptor.name,
            SETTING_LEVEL: version,
        }
        if not descriptor.has_meter_capability:
            settings[SETTING_USE_MEASURE_SOURCE] = True
        if descriptor.resets_daily:
            settings[SETTING_DAILY_RESET] = True
        specs.append(
            NewDeviceSpec(
                name=f"{descriptor.name}_Σ{driver_id}",
                id=device_id,
                settings=settings,
                capabilities=driver.device_capabilities,
            )
        )

    virtual_id, token = allocator.allocate(f"PH_{driver_id}")
    specs.append(
        NewDeviceSpec(
            name=f"{VIRTUAL_METER_PREFIX}_Σ{driver_id}",
            id=virtual_id,
            settings={
                SETTING_SOURCE_ID: virtual_id,
                SETTING_SOURCE_NAME: f"{VIRTUAL_METER_PREFIX}_{token}",
                SETTING_LEVEL: version,
                SETTING_METER_VIA_FLOW: True,
                SETTING_SOURCE_TYPE: VIRTUAL_SOURCE_TYPE,
            },
            capabilities=driver.device_capabilities,
        )
    )

    _LOGGER.debug(
        "Discovery for %s: %d source devices, %d own devices skipped",
        driver_id,
        len(specs) - 1,
        skipped_own,
    )
    return specs


class DeviceInventoryClassifier:
    """Fetch the host inventory and classify it into new device specs."""

    def __init__(
        self,
        driver: DriverDefinition,
        fetch_inventory: InventoryFetcher,
        *,
        version: str | None = None,
        timeout: float = INVENTORY_TIMEOUT,
        token_factory: TokenFactory | None = None,
    ) -> None:
        """Initialise the classifier for one logical driver."""

        self._driver = driver
        self._fetch_inventory = fetch_inventory
        self._version = version
        self._timeout = timeout
        self._token_factory = token_factory

    async def async_discover(self) -> list[NewDeviceSpec]:
        """Return specs for every eligible source device.

        Raises ``DiscoveryFailed`` when the inventory cannot be fetched.
        """

        try:
            async with asyncio.timeout(self._timeout):
                raw = await self._fetch_inventory()
        except asyncio.CancelledError:
            raise
        except TimeoutError as err:
            _LOGGER.error(
                "Device inventory fetch timed out after %ss", self._timeout
            )
            raise DiscoveryFailed("Device inventory fetch timed out") from err
        except Exception as err:
            _LOGGER.error("Device inventory fetch failed: %s", err)
            raise DiscoveryFailed(f"Device inventory fetch failed: {err}") from err

        if not isinstance(raw, Mapping):
            raise DiscoveryFailed(
                f"Device inventory has unexpected type {type(raw).__name__}"
            )

        descriptors: list[RawDeviceDescriptor] = []
        for key, payload in raw.items():
            if not isinstance(payload, Mapping):
                _LOGGER.debug(
                    "Ignoring malformed inventory entry %s", mask_device_id(key)
                )
                continue
            descriptors.append(RawDeviceDescriptor.from_payload(str(key), payload))

        return classify_inventory(
            descriptors,
            self._driver,
            version=self._version,
            token_factory=self._token_factory,
        )


__all__ = [
    "DeviceInventoryClassifier",
    "DiscoveryFailed",
    "NewDeviceSpec",
    "RawDeviceDescriptor",
    "classify_inventory",
]
