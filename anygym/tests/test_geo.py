"""Haversine ranking and the Geoapify geocoder."""
import math

import httpx
import pytest

from anygym.core.errors import DegradedResult
from anygym.features.geo.service import EARTH_RADIUS_KM, Geocoder, haversine_km, rank_by_distance
from anygym.models.gym import Coordinate

LONDON = Coordinate(latitude=51.5074, longitude=-0.1278)
PARIS = Coordinate(latitude=48.8566, longitude=2.3522)


def test_distance_to_self_is_zero():
    assert haversine_km(LONDON, LONDON) == 0.0


def test_distance_is_symmetric():
    assert haversine_km(LONDON, PARIS) == pytest.approx(haversine_km(PARIS, LONDON))


def test_known_distance():
    assert haversine_km(LONDON, PARIS) == pytest.approx(343.5, abs=1.0)


def test_antipodal_distance_is_half_circumference():
    a = Coordinate(latitude=0.0, longitude=0.0)
    b = Coordinate(latitude=0.0, longitude=180.0)

    assert haversine_km(a, b) == pytest.approx(math.pi * EARTH_RADIUS_KM)


def test_triangle_inequality():
    edinburgh = Coordinate(latitude=55.9533, longitude=-3.1883)

    assert haversine_km(LONDON, edinburgh) <= haversine_km(LONDON, PARIS) + haversine_km(PARIS, edinburgh)


def test_rank_nearest_first_and_ties_keep_input_order():
    east = Coordinate(latitude=0.0, longitude=1.0)
    west = Coordinate(latitude=0.0, longitude=-1.0)
    far = Coordinate(latitude=0.0, longitude=5.0)
    origin = Coordinate(latitude=0.0, longitude=0.0)

    points = [("far", far), ("east", east), ("west", west)]
    ranked = rank_by_distance(origin, points, key=lambda p: p[1])

    assert [name for name, _ in ranked] == ["east", "west", "far"]


def _geocoder(handler, api_key="geo-key"):
    return Geocoder(api_key=api_key, base_url="https://geo.test/search", timeout=1.0, transport=httpx.MockTransport(handler))


def test_geocode_returns_first_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"results": [{"lat": 51.5014, "lon": -0.1419}, {"lat": 0, "lon": 0}]})

    result = _geocoder(handler).geocode(" SW1A 1AA ")

    assert result == Coordinate(latitude=51.5014, longitude=-0.1419)
    assert seen["params"]["text"] == "SW1A 1AA"
    assert seen["params"]["apiKey"] == "geo-key"


def test_geocode_no_match_is_none():
    assert _geocoder(lambda request: httpx.Response(200, json={"results": []})).geocode("ZZ99") is None


def test_geocode_timeout_is_none():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    assert _geocoder(handler).geocode("SW1A 1AA") is None


def test_geocode_http_error_is_none():
    assert _geocoder(lambda request: httpx.Response(500)).geocode("SW1A 1AA") is None


def test_geocode_bad_payload_is_none():
    assert _geocoder(lambda request: httpx.Response(200, json={"results": [{"lat": "x"}]})).geocode("SW1A 1AA") is None


def test_geocode_without_key_or_postcode_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert _geocoder(handler, api_key="").geocode("SW1A 1AA") is None
    assert _geocoder(handler).geocode("") is None
    assert _geocoder(handler).geocode(None) is None


def test_service_failure_is_a_degraded_result_inside_the_geocoder():
    geocoder = _geocoder(lambda request: httpx.Response(503))

    with pytest.raises(DegradedResult):
        geocoder._lookup("SW1A 1AA")
    assert geocoder.geocode("SW1A 1AA") is None
