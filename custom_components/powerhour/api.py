"""Async client for the host's device inventory API."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

import aiohttp

from .const import DEVICES_PATH, INVENTORY_TIMEOUT

_LOGGER = logging.getLogger(__name__)

_SECRET_RE = re.compile(r"(?i)(Bearer\s+|token=)[^\s&'\"]+")


def redact_secrets(text: str | None) -> str:
    """Return ``text`` with bearer and query tokens replaced by ``***``."""

    if not text:
        return ""
    return _SECRET_RE.sub(lambda match: f"{match.group(1)}***", str(text))


class HostAuthError(Exception):
    """The host rejected the API token."""


class HostApiError(Exception):
    """The host returned an unusable response."""


class HomeyDevicesClient:
    """Thin async client listing the devices known to the host."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        token: str,
        *,
        timeout: float = INVENTORY_TIMEOUT,
    ) -> None:
        """Initialise the client with a shared session and bearer token."""
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    async def async_get_devices(self) -> dict[str, dict[str, Any]]:
        """Return a mapping of device id to raw device descriptor."""

        url = f"{self._base_url}{DEVICES_PATH}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }
        _LOGGER.debug("HTTP GET %s", url)
        try:
            async with self._session.get(
                url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status in (401, 403):
                    raise HostAuthError(f"Unauthorized (status {resp.status})")
                if resp.status >= 400:
                    body_text = await resp.text()
                    _LOGGER.error(
                        "HTTP error GET %s -> %s; body=%s",
                        url,
                        resp.status,
                        redact_secrets(body_text),
                    )
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=body_text,
                        headers=resp.headers,
                    )
                payload = await resp.json(content_type=None)
        except (HostAuthError, aiohttp.ClientResponseError):
            raise
        except asyncio.CancelledError:
            raise
        except Exception as err:
            _LOGGER.error(
                "Request GET %s failed (sanitized): %s", url, redact_secrets(str(err))
            )
            raise

        if not isinstance(payload, dict):
            raise HostApiError(
                f"Unexpected device list payload: {type(payload).__name__}"
            )
        _LOGGER.debug("Host returned %d devices", len(payload))
        return payload


__all__ = ["HomeyDevicesClient", "HostApiError", "HostAuthError", "redact_secrets"]
