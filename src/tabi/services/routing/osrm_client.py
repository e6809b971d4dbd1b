"""HTTP client for the OSRM directions service."""

from __future__ import annotations

import logging
import time

import httpx

from ...config import settings
from ..errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


class OSRMClient:
    """Directions provider backed by the OSRM ``route`` endpoint.

    ``directions`` returns ``{"distance": metres, "duration": seconds, "path": [(lat, lon), ...]}``
    and raises ``ExternalServiceError`` once the retry budget is spent.
    """

    def __init__(
        self,
        base_url: str | None = None,
        profiles: dict[str, str] | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.base_url = base_url or settings.osrm_base_url
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.base_url = self.base_url.rstrip("/")
        self.profiles = dict(profiles or settings.osrm_profiles)
        self.timeout = timeout if timeout is not None else settings.osrm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds

    def _get_client(self) -> httpx.Client:
        # One client per request: lookups run on the distance cache's worker threads.
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
            limits=httpx.Limits(max_connections=1, max_keepalive_connections=0),
        )

    def _profile_for(self, mode: str) -> str:
        try:
            return self.profiles[mode]
        except KeyError as exc:
            raise ValidationError(f"Travel mode '{mode}' has no OSRM profile configured.") from exc

    def directions(
        self,
        origin: tuple[float, float],
        destination: tuple[float, float],
        mode: str = "driving",
    ) -> dict:
        profile = self._profile_for(mode)
        coordinate_str = f"{origin[1]},{origin[0]};{destination[1]},{destination[0]}"
        params = {
            "overview": "full",
            "geometries": "polyline",
            "steps": "false",
        }
        url = f"{self.base_url}/route/v1/{profile}/{coordinate_str}"

        client = self._get_client()
        try:
            attempt = 0
            while True:
                try:
                    response = client.get(url, params=params)
                    response.raise_for_status()
                    data = response.json()
                    if data.get("code") != "Ok" or not data.get("routes"):
                        error_msg = data.get("message", data.get("code", "Unknown OSRM route error"))
                        raise ValueError(f"OSRM route request failed: {error_msg}")
                    route = data["routes"][0]
                    return {
                        "distance": float(route["distance"]),
                        "duration": float(route["duration"]),
                        "path": decode_polyline(route.get("geometry") or ""),
                    }
                except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError, ValueError, KeyError) as error:
                    attempt += 1
                    if attempt > self.max_retries:
                        logger.warning(f"OSRM route {origin} -> {destination} failed after {attempt} attempts: {error}")
                        raise ExternalServiceError(
                            f"Directions lookup failed for {origin} -> {destination} ({mode}): {error}"
                        ) from error
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.debug(f"OSRM route error, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries}): {error}")
                    time.sleep(wait_time)
                except httpx.HTTPError as error:
                    raise ExternalServiceError(f"Directions lookup failed: {error}") from error
        finally:
            client.close()


def decode_polyline(polyline: str) -> list[tuple[float, float]]:
    """Decode Google polyline string to list of (lat, lon) coordinates.

    OSRM uses Google's polyline encoding format for route geometry.
    """
    coordinates = []
    index = 0
    lat = 0
    lon = 0

    while index < len(polyline):
        deltas = []
        for _ in range(2):
            shift = 0
            result = 0
            while True:
                b = ord(polyline[index]) - 63
                index += 1
                result |= (b & 0x1f) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if (result & 1) else (result >> 1))
        lat += deltas[0]
        lon += deltas[1]
        coordinates.append((lat / 1e5, lon / 1e5))

    return coordinates


def check_health(base_url: str | None = None) -> bool:
    """Check OSRM reachability with a minimal two-point route request."""
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    try:
        profile = settings.osrm_profiles.get("driving", "driving")
        url = f"{base.rstrip('/')}/route/v1/{profile}/13.388860,52.517037;13.385983,52.496891"
        response = httpx.get(url, params={"overview": "false"}, timeout=5.0)
        response.raise_for_status()
        return response.json().get("code") == "Ok"
    except (httpx.HTTPError, ValueError):
        return False
