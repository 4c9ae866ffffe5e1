"""Stitch a complete tile grid into one canvas and crop it to the requested box."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

from PIL import Image

from .config import OutputFormat
from .tile_system import TILE_SIZE, tile_xy_to_pixel_xy


@dataclass(frozen=True)
class PixelRect:
    """Axis-aligned rectangle in global pixel space, ``x1 <= x2`` and ``y1 <= y2``."""

    x1: int
    y1: int
    x2: int
    y2: int

    @classmethod
    def from_corners(cls, first: Tuple[int, int], second: Tuple[int, int]) -> "PixelRect":
        return cls(
            x1=min(first[0], second[0]),
            y1=min(first[1], second[1]),
            x2=max(first[0], second[0]),
            y2=max(first[1], second[1]),
        )

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1


@dataclass(frozen=True)
class TileRange:
    """Inclusive range of tile indices at one zoom level."""

    level: int
    x_start: int
    y_start: int
    x_end: int
    y_end: int

    @property
    def columns(self) -> int:
        return self.x_end - self.x_start + 1

    @property
    def rows(self) -> int:
        return self.y_end - self.y_start + 1

    def __len__(self) -> int:
        return self.columns * self.rows

    def __iter__(self) -> Iterator[Tuple[int, int]]:
        # Row-major, matching the order tiles are laid out on the canvas.
        for tile_y in range(self.y_start, self.y_end + 1):
            for tile_x in range(self.x_start, self.x_end + 1):
                yield tile_x, tile_y


def stitch_tiles(tiles: Sequence[Image.Image], columns: int, rows: int) -> Image.Image:
    """Paste ``tiles`` (row-major) onto a ``columns`` x ``rows`` canvas of 256 px cells."""

    if len(tiles) != columns * rows:
        raise ValueError(
            f"Tile grid is incomplete: expected {columns * rows} tiles, got {len(tiles)}."
        )

    canvas = Image.new("RGB", (columns * TILE_SIZE, rows * TILE_SIZE))
    for index, tile in enumerate(tiles):
        row, col = divmod(index, columns)
        if tile.mode != "RGB":
            tile = tile.convert("RGB")
        canvas.paste(tile, (col * TILE_SIZE, row * TILE_SIZE))
    return canvas


def crop_to_pixels(canvas: Image.Image, tile_range: TileRange, pixel_rect: PixelRect) -> Image.Image:
    origin_x, origin_y = tile_xy_to_pixel_xy(tile_range.x_start, tile_range.y_start)
    left = pixel_rect.x1 - origin_x
    top = pixel_rect.y1 - origin_y
    # crop() returns a new image whose origin is (0, 0).
    return canvas.crop((left, top, left + pixel_rect.width, top + pixel_rect.height))


def compose(tiles: Sequence[Image.Image], tile_range: TileRange, pixel_rect: PixelRect) -> Image.Image:
    canvas = stitch_tiles(tiles, tile_range.columns, tile_range.rows)
    return crop_to_pixels(canvas, tile_range, pixel_rect)


def encode_image(image: Image.Image, output_format: OutputFormat = OutputFormat.PNG) -> bytes:
    if output_format is OutputFormat.JPEG and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format=output_format.value)
    return buffer.getvalue()
