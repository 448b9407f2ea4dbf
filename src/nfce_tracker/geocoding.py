from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests

from .analytics.projection import StoreAnalytics
from .logging import get_logger

LOG = get_logger("geocoding")

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float


@dataclass(frozen=True)
class StoreLocation:
    store: StoreAnalytics
    coordinates: Optional[Coordinates]

    @property
    def status(self) -> str:
        return "success" if self.coordinates else "error"


class GeocodingClient:
    """Address lookup against Nominatim; successful lookups are cached per address."""

    def __init__(
        self,
        *,
        base_url: str = NOMINATIM_URL,
        timeout: int = 30,
        session: Any = None,
        user_agent: str = "nfce-tracker",
    ) -> None:
        self.base_url = base_url
        self.timeout = int(timeout)
        self.s = session if session is not None else requests.Session()
        self.s.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        self._cache: Dict[str, Coordinates] = {}

    def address_to_coordinates(self, address: str) -> Optional[Coordinates]:
        if not address:
            return None
        cached = self._cache.get(address)
        if cached is not None:
            return cached
        params = {"q": address, "format": "json", "limit": "1"}
        try:
            r = self.s.get(self.base_url, params=params, timeout=self.timeout)
            r.raise_for_status()
            results = r.json()
        except (requests.RequestException, ValueError) as e:
            LOG.error(f"Geocoding failed for address {address!r}: {e}")
            return None
        if not isinstance(results, list) or not results:
            LOG.info(f"No coordinates found for {address!r}")
            return None
        try:
            coords = Coordinates(lat=float(results[0]["lat"]), lon=float(results[0]["lon"]))
        except (KeyError, TypeError, ValueError) as e:
            LOG.warning(f"Unexpected geocoding answer for {address!r}: {e}")
            return None
        self._cache[address] = coords
        return coords


def locate_stores(stores: Iterable[StoreAnalytics], geocoder: GeocodingClient) -> List[StoreLocation]:
    """Pair each store aggregate with its coordinates (None when lookup failed)."""
    return [StoreLocation(store=s, coordinates=geocoder.address_to_coordinates(s.store_address)) for s in stores]
