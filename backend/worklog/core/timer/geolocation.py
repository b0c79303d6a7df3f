"""
Best-effort location capture for clock in/out.

The device reports coordinates with the request; the server only enriches
them with a street address. Nothing here may fail or delay a timer action
beyond GEOLOCATION_TIMEOUT_SECONDS.
"""
import asyncio
import logging
from typing import Any, Protocol

import httpx

from worklog.core.timer.schemas import LocationReport
from worklog.settings import get_settings

logger = logging.getLogger(__name__)


class GeolocationProvider(Protocol):
    async def capture(self, reported: LocationReport) -> dict[str, Any]:
        ...


def _bare(reported: LocationReport) -> dict[str, Any]:
    return {
        "lat": reported.latitude,
        "lon": reported.longitude,
        "accuracy": reported.accuracy,
    }


class ReverseGeocodingProvider:
    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout

    async def capture(self, reported: LocationReport) -> dict[str, Any]:
        location = _bare(reported)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.url, params={
                "latitude": reported.latitude,
                "longitude": reported.longitude,
                "localityLanguage": "en",
            })
            response.raise_for_status()
            data = response.json()
        parts = [data.get("locality") or data.get("city"), data.get("principalSubdivision"), data.get("countryName")]
        address = ", ".join(p for p in parts if p)
        if address:
            location["address"] = address
        return location


class CoordinatesOnlyProvider:
    async def capture(self, reported: LocationReport) -> dict[str, Any]:
        return _bare(reported)


def default_geolocation() -> GeolocationProvider:
    settings = get_settings()
    if settings.REVERSE_GEOCODE_URL:
        return ReverseGeocodingProvider(settings.REVERSE_GEOCODE_URL, settings.GEOLOCATION_TIMEOUT_SECONDS)
    return CoordinatesOnlyProvider()


async def capture_location(
    provider: GeolocationProvider | None,
    reported: LocationReport | None,
) -> dict[str, Any] | None:
    if reported is None:
        return None
    if provider is None:
        return _bare(reported)
    try:
        return await asyncio.wait_for(provider.capture(reported), get_settings().GEOLOCATION_TIMEOUT_SECONDS)
    except Exception:
        logger.warning("location capture failed; keeping raw coordinates", exc_info=True)
        return _bare(reported)
