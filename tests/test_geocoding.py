from __future__ import annotations

import requests

from nfce_tracker.analytics.projection import StoreAnalytics
from nfce_tracker.geocoding import Coordinates, GeocodingClient, locate_stores


class _Response:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        return self.payload


class _Session:
    def __init__(self, answers):
        self.headers = {}
        self.answers = dict(answers)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append(params)
        answer = self.answers.get(params["q"], _Response([]))
        if isinstance(answer, Exception):
            raise answer
        return answer


def _store(name, address):
    return StoreAnalytics(
        store_name=name,
        store_cnpj=f"cnpj-{name}",
        store_address=address,
        total_spent=10.0,
        receipt_count=1,
        average_receipt_total=10.0,
        first_purchase_date="2024-01-01T00:00:00",
        last_purchase_date="2024-01-01T00:00:00",
    )


def test_lookup_sends_nominatim_query_and_caches_hits():
    session = _Session({"Rua Um, 1": _Response([{"lat": "-23.55", "lon": "-46.63"}])})
    geocoder = GeocodingClient(session=session)

    assert geocoder.address_to_coordinates("Rua Um, 1") == Coordinates(lat=-23.55, lon=-46.63)
    assert geocoder.address_to_coordinates("Rua Um, 1") == Coordinates(lat=-23.55, lon=-46.63)
    assert session.calls == [{"q": "Rua Um, 1", "format": "json", "limit": "1"}]
    assert session.headers["User-Agent"] == "nfce-tracker"


def test_misses_and_failures_are_not_cached():
    session = _Session(
        {
            "nowhere": _Response([]),
            "broken": requests.ConnectionError("down"),
            "server": _Response([], status_code=503),
        }
    )
    geocoder = GeocodingClient(session=session)

    assert geocoder.address_to_coordinates("nowhere") is None
    assert geocoder.address_to_coordinates("nowhere") is None
    assert geocoder.address_to_coordinates("broken") is None
    assert geocoder.address_to_coordinates("server") is None
    assert geocoder.address_to_coordinates("") is None
    assert len(session.calls) == 4


def test_locate_stores_reports_status_per_store():
    session = _Session({"Rua A": _Response([{"lat": "1.5", "lon": "2.5"}])})
    locations = locate_stores([_store("A", "Rua A"), _store("B", "Rua B")], GeocodingClient(session=session))
    assert [(loc.store.store_name, loc.status) for loc in locations] == [("A", "success"), ("B", "error")]
    assert locations[0].coordinates == Coordinates(lat=1.5, lon=2.5)
