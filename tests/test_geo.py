import math

import pytest

from fieldtrack.errors import InvalidCoordinates
from fieldtrack.services.geo import (
    format_coordinates,
    haversine_km,
    initial_bearing,
    speed_kmh,
    validate_coordinates,
)


def test_haversine_same_point_is_zero():
    assert haversine_km(40.7, -74.0, 40.7, -74.0) == 0


def test_haversine_new_york_to_los_angeles():
    assert haversine_km(40.7128, -74.0060, 34.0522, -118.2437) == pytest.approx(3936, rel=0.01)


def test_haversine_one_degree_of_latitude():
    assert haversine_km(0, 0, 1, 0) == pytest.approx(6371 * math.pi / 180, rel=1e-9)


@pytest.mark.parametrize(
    "dest, expected",
    [
        ((1, 0), 0),
        ((0, 1), 90),
        ((-1, 0), 180),
        ((0, -1), 270),
    ],
)
def test_initial_bearing_cardinal_directions(dest, expected):
    assert initial_bearing(0, 0, *dest) == pytest.approx(expected, abs=1e-9)


def test_initial_bearing_is_normalized():
    bearing = initial_bearing(40.0, -73.0, 39.9, -73.1)
    assert 0 <= bearing < 360
    assert 180 < bearing < 270


def test_speed_kmh():
    assert speed_kmh(10, 3600) == pytest.approx(10)
    assert speed_kmh(1, 60) == pytest.approx(60)


def test_speed_undefined_without_elapsed_time():
    assert speed_kmh(5, 0) is None
    assert speed_kmh(5, -10) is None


@pytest.mark.parametrize("lat, lng", [(90, 180), (-90, -180), (0, 0), (40.7, -74.0)])
def test_validate_accepts_range_bounds(lat, lng):
    validate_coordinates(lat, lng)


@pytest.mark.parametrize(
    "lat, lng",
    [(95, 0), (-90.5, 0), (0, 200), (0, -180.01), (float("nan"), 0), ("40", -74), (True, 0), (None, 0)],
)
def test_validate_rejects_bad_coordinates(lat, lng):
    with pytest.raises(InvalidCoordinates):
        validate_coordinates(lat, lng)


def test_format_coordinates():
    assert format_coordinates(40.7, -74.0) == "40.700000, -74.000000"
