import ipaddress
import logging
from typing import Protocol

import httpx

from shareaudit.models import GeoLocation

logger = logging.getLogger(__name__)


class GeoLocator(Protocol):
    def lookup(self, ip: str) -> GeoLocation: ...


class NullGeoLocator:
    def lookup(self, ip: str) -> GeoLocation:
        return GeoLocation()


class HttpGeoLocator:
    """Looks addresses up against a JSON endpoint such as ``https://ipapi.co/{ip}/json/``.

    Country is read from ``country_name``/``country`` and city from ``city``.
    """

    def __init__(self, url_template: str, *, timeout: float = 1.0, client: httpx.Client | None = None):
        self.url_template = url_template
        self._client = client or httpx.Client(timeout=timeout)

    def lookup(self, ip: str) -> GeoLocation:
        response = self._client.get(self.url_template.format(ip=ip))
        response.raise_for_status()
        payload = response.json()
        return GeoLocation(
            country=payload.get("country_name") or payload.get("country"),
            city=payload.get("city"),
        )

    def close(self) -> None:
        self._client.close()


def is_public_address(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return address.is_global


def locate(locator: GeoLocator, ip: str) -> GeoLocation:
    """Best-effort lookup; any failure yields an empty location."""
    if not is_public_address(ip):
        return GeoLocation()
    try:
        return locator.lookup(ip)
    except Exception as exc:  # lookups never block recording
        logger.warning("geo-ip lookup failed for %s: %s", ip, exc)
        return GeoLocation()
