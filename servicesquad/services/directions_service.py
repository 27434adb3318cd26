import logging
from typing import Optional, Tuple

import httpx

from config.conf import settings
from dtos.dtos import RouteData
from services.exceptions import DirectionsError

logger = logging.getLogger(__name__)


class GoogleDirectionsService:
    BASE_URL = settings.directions_url

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: float = settings.directions_timeout_seconds,
    ):
        self.api_key = api_key if api_key is not None else settings.resolved_google_maps_api_key()
        self.base_url = base_url or self.BASE_URL
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def fetch_route(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> RouteData:
        """
        Driving route between two (lat, lng) points: distance, duration and the
        encoded overview polyline of the first route's first leg.
        """
        if not self.api_key:
            raise DirectionsError("Google Maps API key is not configured")

        params = {
            "origin": f"{origin[0]},{origin[1]}",
            "destination": f"{destination[0]},{destination[1]}",
            "key": self.api_key,
            "alternatives": "false",
        }

        try:
            response = await self._get_client().get(self.base_url, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise DirectionsError(f"Directions API returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise DirectionsError(f"Directions request failed: {e}") from e

        status = data.get("status")
        if status != "OK":
            raise DirectionsError(f"Directions API status {status}: {data.get('error_message', '')}".rstrip(": "))

        try:
            route = data["routes"][0]
            leg = route["legs"][0]
            return RouteData(
                distance_meters=float(leg["distance"]["value"]),
                duration_seconds=float(leg["duration"]["value"]),
                polyline=route.get("overview_polyline", {}).get("points", ""),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DirectionsError("Directions response has no usable route") from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
