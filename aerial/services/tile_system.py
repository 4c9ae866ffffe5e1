"""Bing Maps tile system: conversions between WGS84, pixels, tiles and quadkeys.

Pixel space at a given level is a square of ``256 * 2**level`` pixels with the
origin at the top-left corner of the map (latitude 85.05112878°, longitude
-180°). Tiles are 256x256 blocks of that space, addressed either by their
``(tile_x, tile_y)`` index or by a quadkey string whose length equals the level.
"""

from __future__ import annotations

import math
from typing import Tuple

EARTH_RADIUS = 6378137.0
MIN_LATITUDE = -85.05112878
MAX_LATITUDE = 85.05112878
MIN_LONGITUDE = -180.0
MAX_LONGITUDE = 180.0

TILE_SIZE = 256
MIN_LEVEL = 0
MAX_LEVEL = 23

QUADKEY_DIGITS = "0123"


def clip(value: float, minimum: float, maximum: float) -> float:
    return min(max(value, minimum), maximum)


def validate_level(level: int) -> int:
    if not MIN_LEVEL <= level <= MAX_LEVEL:
        raise ValueError(f"Zoom level must be between {MIN_LEVEL} and {MAX_LEVEL}, got {level}.")
    return level


def map_size(level: int) -> int:
    """Width and height of the whole map in pixels at ``level``."""

    return TILE_SIZE << level


def ground_resolution(latitude: float, level: int) -> float:
    """Meters on the ground covered by one pixel at ``latitude`` and ``level``."""

    latitude = clip(latitude, MIN_LATITUDE, MAX_LATITUDE)
    return math.cos(latitude * math.pi / 180) * 2 * math.pi * EARTH_RADIUS / map_size(level)


def map_scale(latitude: float, level: int, screen_dpi: int) -> float:
    """Map scale denominator (1 : N) for a display with ``screen_dpi``."""

    return ground_resolution(latitude, level) * screen_dpi / 0.0254


def lat_long_to_pixel_xy(latitude: float, longitude: float, level: int) -> Tuple[int, int]:
    """Project a WGS84 point into pixel coordinates at ``level``.

    Latitude and longitude are clipped to the range the tile system supports
    and the result is clipped to the pixel space of the level.
    """

    latitude = clip(latitude, MIN_LATITUDE, MAX_LATITUDE)
    longitude = clip(longitude, MIN_LONGITUDE, MAX_LONGITUDE)

    x = (longitude + 180) / 360
    sin_latitude = math.sin(latitude * math.pi / 180)
    y = 0.5 - math.log((1 + sin_latitude) / (1 - sin_latitude)) / (4 * math.pi)

    size = map_size(level)
    pixel_x = int(clip(x * size + 0.5, 0, size - 1))
    pixel_y = int(clip(y * size + 0.5, 0, size - 1))
    return pixel_x, pixel_y


def pixel_xy_to_lat_long(pixel_x: int, pixel_y: int, level: int) -> Tuple[float, float]:
    size = map_size(level)
    x = (clip(pixel_x, 0, size - 1) / size) - 0.5
    y = 0.5 - (clip(pixel_y, 0, size - 1) / size)

    latitude = 90 - 360 * math.atan(math.exp(-y * 2 * math.pi)) / math.pi
    longitude = 360 * x
    return latitude, longitude


def pixel_xy_to_tile_xy(pixel_x: int, pixel_y: int) -> Tuple[int, int]:
    return pixel_x // TILE_SIZE, pixel_y // TILE_SIZE


def tile_xy_to_pixel_xy(tile_x: int, tile_y: int) -> Tuple[int, int]:
    """Top-left pixel of the tile."""

    return tile_x * TILE_SIZE, tile_y * TILE_SIZE


def tile_xy_to_quadkey(tile_x: int, tile_y: int, level: int) -> str:
    """Encode a tile index as a quadkey, most significant level first.

    Each digit interleaves one bit of the tile index: the ``tile_x`` bit adds 1
    and the ``tile_y`` bit adds 2, matching the Bing Maps tile service.
    """

    digits = []
    for i in range(level, 0, -1):
        mask = 1 << (i - 1)
        digit = 0
        if tile_x & mask:
            digit += 1
        if tile_y & mask:
            digit += 2
        digits.append(QUADKEY_DIGITS[digit])
    return "".join(digits)


def quadkey_to_tile_xy(quadkey: str) -> Tuple[int, int, int]:
    """Decode a quadkey into ``(tile_x, tile_y, level)``."""

    tile_x = tile_y = 0
    level = len(quadkey)
    for i in range(level, 0, -1):
        mask = 1 << (i - 1)
        digit = quadkey[level - i]
        if digit == "0":
            continue
        if digit == "1":
            tile_x |= mask
        elif digit == "2":
            tile_y |= mask
        elif digit == "3":
            tile_x |= mask
            tile_y |= mask
        else:
            raise ValueError(f"Invalid quadkey digit {digit!r} in {quadkey!r}.")
    return tile_x, tile_y, level
