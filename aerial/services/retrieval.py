"""Retrieve aerial imagery for a bounding box at the highest available zoom level.

For each level from the requested maximum down to zero, every tile covering
the box is fetched. The first level whose tile grid is complete is stitched
and cropped to the exact pixel rectangle of the box; incomplete levels are
discarded entirely.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import httpx
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from .cache import TileCache
from .compositor import PixelRect, TileRange, compose, encode_image
from .config import RetrievalConfig
from .null_tile import NullTileDetector
from .tile_system import (
    MAX_LEVEL,
    lat_long_to_pixel_xy,
    pixel_xy_to_tile_xy,
    tile_xy_to_quadkey,
    validate_level,
)
from .tiles import (
    REQUEST_HEADERS,
    REQUEST_TIMEOUT,
    BackgroundWriter,
    TileFound,
    TileGateway,
    determine_cache_dir,
    max_concurrent_requests,
)
from .usage import record_api_usage, tile_provider_key

logger = logging.getLogger(__name__)


class InvalidBoundingBoxError(ValueError):
    """Raised when a bounding box collapses to (nearly) a single pixel."""


@dataclass
class RetrievalResult:
    image: Image.Image
    level: int
    tile_range: TileRange
    pixel_rect: PixelRect


def pixel_rect_for(lat1: float, lon1: float, lat2: float, lon2: float, level: int) -> PixelRect:
    return PixelRect.from_corners(
        lat_long_to_pixel_xy(lat1, lon1, level),
        lat_long_to_pixel_xy(lat2, lon2, level),
    )


def tile_range_for(pixel_rect: PixelRect, level: int) -> TileRange:
    x_start, y_start = pixel_xy_to_tile_xy(pixel_rect.x1, pixel_rect.y1)
    x_end, y_end = pixel_xy_to_tile_xy(pixel_rect.x2, pixel_rect.y2)
    return TileRange(level=level, x_start=x_start, y_start=y_start, x_end=x_end, y_end=y_end)


def _validate_pixel_rect(pixel_rect: PixelRect, level: int) -> None:
    if pixel_rect.width <= 1 or pixel_rect.height <= 1:
        raise InvalidBoundingBoxError(
            "Cannot find a valid aerial imagery for the given bounding box: it spans "
            f"{pixel_rect.width}x{pixel_rect.height} pixels at level {level}."
        )


class ImageRetrieval:
    """A retrieval session against the Bing Maps aerial tile service.

    The session keeps one HTTP client, the missing-tile placeholders it has
    seen and the pending background cache writes. Use it as an async context
    manager, or call :meth:`aclose` when done::

        async with ImageRetrieval(RetrievalConfig(labeled=False)) as retrieval:
            image = await retrieval.retrieve(51.61, -0.34, 51.37, 0.11, max_level=13)
    """

    def __init__(
        self,
        config: RetrievalConfig | None = None,
        *,
        cache_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self.config = config or RetrievalConfig()
        self.cache_dir = cache_dir or determine_cache_dir()
        self.max_concurrency = max(1, max_concurrency or max_concurrent_requests())
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._cache: TileCache | None = None
        self._writer = BackgroundWriter()
        self._detector = NullTileDetector()

    async def __aenter__(self) -> "ImageRetrieval":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Finish outstanding cache writes and close the HTTP client."""

        await self._writer.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def cache(self) -> TileCache:
        if self._cache is None:
            self._cache = TileCache(self.cache_dir)
        return self._cache

    async def retrieve(
        self,
        lat1: float,
        lon1: float,
        lat2: float,
        lon2: float,
        max_level: int = MAX_LEVEL,
    ) -> Image.Image | None:
        """Return the composed image, or ``None`` when no level has full coverage."""

        result = await self.retrieve_level(lat1, lon1, lat2, lon2, max_level)
        return result.image if result is not None else None

    async def retrieve_to_file(
        self,
        lat1: float,
        lon1: float,
        lat2: float,
        lon2: float,
        output_path: Path,
        max_level: int = MAX_LEVEL,
    ) -> bool:
        """Write the composed image to ``output_path`` in the configured format.

        Returns whether an image was produced.
        """

        image = await self.retrieve(lat1, lon1, lat2, lon2, max_level)
        if image is None:
            return False
        Path(output_path).write_bytes(encode_image(image, self.config.output_format))
        return True

    async def retrieve_level(
        self,
        lat1: float,
        lon1: float,
        lat2: float,
        lon2: float,
        max_level: int = MAX_LEVEL,
    ) -> RetrievalResult | None:
        start_level = validate_level(min(max_level, MAX_LEVEL))
        _validate_pixel_rect(pixel_rect_for(lat1, lon1, lat2, lon2, start_level), start_level)

        gateway = TileGateway(
            self._ensure_client(),
            self.config,
            self.cache if self.config.cache_enabled else None,
            self._detector,
            semaphore=asyncio.Semaphore(self.max_concurrency),
            writer=self._writer,
        )
        try:
            for level in range(start_level, -1, -1):
                pixel_rect = pixel_rect_for(lat1, lon1, lat2, lon2, level)
                _validate_pixel_rect(pixel_rect, level)
                tile_range = tile_range_for(pixel_rect, level)

                tiles = await self._download_grid(gateway, tile_range)
                if tiles is None:
                    if level > 0:
                        logger.info(
                            "Imagery incomplete at level %d; falling back to level %d.",
                            level,
                            level - 1,
                        )
                    continue

                image = compose(tiles, tile_range, pixel_rect)
                logger.info(
                    "Composed %dx%d image from %d tiles at level %d.",
                    image.width,
                    image.height,
                    len(tile_range),
                    level,
                )
                return RetrievalResult(
                    image=image, level=level, tile_range=tile_range, pixel_rect=pixel_rect
                )
        finally:
            self._record_usage(gateway.network_requests)

        logger.info(
            "No imagery available for (%.6f, %.6f)-(%.6f, %.6f) at levels %d..0.",
            lat1,
            lon1,
            lat2,
            lon2,
            start_level,
        )
        return None

    async def _download_grid(
        self, gateway: TileGateway, tile_range: TileRange
    ) -> List[Image.Image] | None:
        """Fetch every tile of ``tile_range`` or return ``None`` if any is missing.

        At most ``max_concurrency`` tiles are in flight; the first failure
        cancels the rest.
        """

        positions = enumerate(tile_range)
        images: Dict[int, Image.Image] = {}
        pending: Dict[asyncio.Task, int] = {}
        try:
            while True:
                while len(pending) < self.max_concurrency:
                    item = next(positions, None)
                    if item is None:
                        break
                    index, (tile_x, tile_y) = item
                    quadkey = tile_xy_to_quadkey(tile_x, tile_y, tile_range.level)
                    pending[asyncio.create_task(gateway.fetch_tile(quadkey))] = index

                if not pending:
                    break

                done, _ = await asyncio.wait(set(pending), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    index = pending.pop(task)
                    result = task.result()
                    if not isinstance(result, TileFound):
                        logger.info(
                            "Cannot find tile image at level %d for quadkey %s: %s",
                            tile_range.level,
                            result.quadkey,
                            type(result).__name__,
                        )
                        return None
                    images[index] = result.image
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return [images[index] for index in range(len(tile_range))]

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=REQUEST_TIMEOUT,
                headers=REQUEST_HEADERS,
                transport=self._transport,
            )
        return self._client

    def _record_usage(self, network_requests: int) -> None:
        try:
            record_api_usage(tile_provider_key(labeled=self.config.labeled), increment=network_requests)
        except SQLAlchemyError as exc:
            logger.warning("Unable to record tile usage: %s", exc)
