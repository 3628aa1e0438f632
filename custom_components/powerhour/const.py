"""Constants for the Power by the Hour integration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

# Domain
DOMAIN: Final = "powerhour"

# Derived devices created by this app carry this namespace in their driverUri
APP_NAMESPACE: Final = "com.gruijter.powerhour"

# Apps known to reset their cumulative meter counters at midnight
DAILY_RESET_APPS: Final[tuple[str, ...]] = (
    "com.tibber",
    "it.diederik.solar",
)

# Host device API
DEVICES_PATH: Final = "/api/manager/devices/device/"
INVENTORY_TIMEOUT: Final = 20  # seconds

# Settings keys
SETTING_METER_VIA_FLOW: Final = "meter_via_flow"
SETTING_USE_MEASURE_SOURCE: Final = "use_measure_source"
SETTING_INTERVAL: Final = "interval"
SETTING_TARIFF: Final = "tariff"
SETTING_TARIFF_UPDATE_GROUP: Final = "tariff_update_group"
SETTING_DAILY_RESET: Final = "homey_device_daily_reset"
SETTING_SOURCE_ID: Final = "homey_device_id"
SETTING_SOURCE_NAME: Final = "homey_device_name"
SETTING_LEVEL: Final = "level"
SETTING_SOURCE_TYPE: Final = "source_device_type"

CAPABILITY_TARIFF: Final = "meter_tariff"
METER_CAPABILITY_PREFIX: Final = "meter_"

DEFAULT_TARIFF_GROUP: Final = 1

# Recovery and sequencing delays (seconds)
SOURCE_MISSING_RESTART_DELAY: Final = 10 * 60
STALLED_RESTART_DELAY: Final = 1.0
TARIFF_GRACE_DELAY: Final = 5.0

# Flow-driven virtual meter
VIRTUAL_METER_PREFIX: Final = "VIRTUAL_METER"
VIRTUAL_SOURCE_TYPE: Final = "virtual via flow"
ID_TOKEN_BYTES: Final = 3
ID_MAX_ATTEMPTS: Final = 5


@dataclass(frozen=True, slots=True)
class DriverDefinition:
    """Describe a logical sum-meter driver."""

    driver_id: str
    origin_capabilities: frozenset[str]
    device_capabilities: tuple[str, ...]


DRIVER_DEFINITIONS: Final[Mapping[str, DriverDefinition]] = {
    "power": DriverDefinition(
        driver_id="power",
        origin_capabilities=frozenset({"meter_power", "measure_power"}),
        device_capabilities=(
            "meter_power",
            "meter_tariff",
            "meter_power_hour",
            "meter_power_this_day",
            "meter_power_this_month",
            "meter_power_this_year",
            "meter_power_last_hour",
            "meter_power_last_day",
            "meter_money_this_hour",
            "meter_money_this_day",
        ),
    ),
    "gas": DriverDefinition(
        driver_id="gas",
        origin_capabilities=frozenset({"meter_gas", "measure_gas"}),
        device_capabilities=(
            "meter_gas",
            "meter_tariff",
            "meter_gas_this_day",
            "meter_gas_this_month",
            "meter_gas_this_year",
            "meter_money_this_day",
        ),
    ),
    "water": DriverDefinition(
        driver_id="water",
        origin_capabilities=frozenset({"meter_water", "measure_water"}),
        device_capabilities=(
            "meter_water",
            "meter_tariff",
            "meter_water_this_day",
            "meter_water_this_month",
            "meter_water_this_year",
            "meter_money_this_day",
        ),
    ),
}


def get_driver_definition(driver_id: str) -> DriverDefinition:
    """Return the built-in definition for ``driver_id``."""

    try:
        return DRIVER_DEFINITIONS[driver_id]
    except KeyError as err:
        raise ValueError(f"Unknown driver: {driver_id}") from err


# --- Dispatcher signal helpers (flow actions → drivers) ---


def signal_set_tariff(driver_id: str) -> str:
    """Signal name for tariff updates scoped to one logical driver."""

    return f"{DOMAIN}_set_tariff_{driver_id}"
