import math

import pytest

from aerial.services import tile_system
from aerial.services.tile_system import (
    MAX_LATITUDE,
    MIN_LATITUDE,
    lat_long_to_pixel_xy,
    map_size,
    pixel_xy_to_lat_long,
    pixel_xy_to_tile_xy,
    quadkey_to_tile_xy,
    tile_xy_to_pixel_xy,
    tile_xy_to_quadkey,
)


def test_map_size_doubles_per_level():
    assert map_size(0) == 256
    assert map_size(1) == 512
    assert map_size(23) == 256 * 2**23


@pytest.mark.parametrize("level", [0, 1, 5, 12, 23])
def test_pixel_tile_round_trip(level):
    last = 2**level - 1
    for tile_x, tile_y in [(0, 0), (last, 0), (0, last), (last // 2, last // 3), (last, last)]:
        pixel_x, pixel_y = tile_xy_to_pixel_xy(tile_x, tile_y)
        assert pixel_xy_to_tile_xy(pixel_x, pixel_y) == (tile_x, tile_y)


def test_pixel_to_tile_uses_integer_division():
    assert pixel_xy_to_tile_xy(255, 256) == (0, 1)
    assert pixel_xy_to_tile_xy(511, 767) == (1, 2)


@pytest.mark.parametrize("level", [1, 3, 8, 16, 23])
def test_quadkey_round_trip(level):
    last = 2**level - 1
    for tile_x, tile_y in [(0, 0), (last, last), (last, 0), (1, last // 2)]:
        quadkey = tile_xy_to_quadkey(tile_x, tile_y, level)
        assert len(quadkey) == level
        assert set(quadkey) <= set("0123")
        assert quadkey_to_tile_xy(quadkey) == (tile_x, tile_y, level)


def test_quadkey_matches_bing_reference_example():
    # Tile (3, 5) at level 3 is documented as quadkey "213".
    assert tile_xy_to_quadkey(3, 5, 3) == "213"
    assert quadkey_to_tile_xy("213") == (3, 5, 3)


def test_quadkey_level_zero_is_empty():
    assert tile_xy_to_quadkey(0, 0, 0) == ""
    assert quadkey_to_tile_xy("") == (0, 0, 0)


def test_quadkeys_are_unique_per_level():
    level = 4
    keys = {tile_xy_to_quadkey(x, y, level) for x in range(16) for y in range(16)}
    assert len(keys) == 256


def test_quadkey_rejects_invalid_digits():
    with pytest.raises(ValueError):
        quadkey_to_tile_xy("0124")


def test_equator_and_prime_meridian_project_to_map_center():
    assert lat_long_to_pixel_xy(0.0, 0.0, 1) == (256, 256)
    latitude, longitude = pixel_xy_to_lat_long(256, 256, 1)
    assert latitude == pytest.approx(0.0, abs=1e-9)
    assert longitude == pytest.approx(0.0, abs=1e-9)


def test_latitude_is_clamped_before_projection():
    level = 5
    size = map_size(level)
    assert lat_long_to_pixel_xy(90.0, 0.0, level) == lat_long_to_pixel_xy(MAX_LATITUDE, 0.0, level)
    assert lat_long_to_pixel_xy(-90.0, 0.0, level) == lat_long_to_pixel_xy(MIN_LATITUDE, 0.0, level)
    assert lat_long_to_pixel_xy(90.0, 0.0, level)[1] == 0
    assert lat_long_to_pixel_xy(-90.0, 0.0, level)[1] == size - 1


def test_longitude_is_clamped_before_projection():
    level = 3
    size = map_size(level)
    assert lat_long_to_pixel_xy(0.0, 200.0, level)[0] == size - 1
    assert lat_long_to_pixel_xy(0.0, -200.0, level)[0] == 0


def test_projection_is_monotonic():
    level = 10
    north = lat_long_to_pixel_xy(51.6, -0.3, level)
    south = lat_long_to_pixel_xy(51.4, 0.1, level)
    assert north[0] < south[0]
    assert north[1] < south[1]


def test_inverse_projection_recovers_coordinates():
    level = 18
    pixel_x, pixel_y = lat_long_to_pixel_xy(47.6097, -122.3331, level)
    latitude, longitude = pixel_xy_to_lat_long(pixel_x, pixel_y, level)
    assert latitude == pytest.approx(47.6097, abs=1e-4)
    assert longitude == pytest.approx(-122.3331, abs=1e-4)


def test_ground_resolution_at_equator():
    expected = 2 * math.pi * tile_system.EARTH_RADIUS / 256
    assert tile_system.ground_resolution(0.0, 0) == pytest.approx(expected)
    assert tile_system.ground_resolution(0.0, 1) == pytest.approx(expected / 2)


def test_map_scale_grows_with_dpi():
    assert tile_system.map_scale(0.0, 10, 192) == pytest.approx(2 * tile_system.map_scale(0.0, 10, 96))


@pytest.mark.parametrize("level", [-1, 24])
def test_validate_level_rejects_out_of_range(level):
    with pytest.raises(ValueError):
        tile_system.validate_level(level)
