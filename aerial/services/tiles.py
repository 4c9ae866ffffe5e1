"""Tile download gateway: disk cache first, then the Bing Maps tile service."""

from __future__ import annotations

import asyncio
import io
import logging
import os
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional, Set, Union

import httpx
from PIL import Image

from ..database import DATA_DIR
from .cache import TileCache, tile_cache_key
from .config import RetrievalConfig
from .null_tile import NullTileDetector

logger = logging.getLogger(__name__)

AERIAL_LABELED_URL = "https://t.ssl.ak.tiles.virtualearth.net/tiles/h{quadkey}.jpeg?g=517&mkt={culture}"
AERIAL_UNLABELED_URL = "https://t.ssl.ak.tiles.virtualearth.net/tiles/a{quadkey}.jpeg?g=517&mkt={culture}"

# Deeper than any real level, so the service always answers with its placeholder.
SENTINEL_QUADKEY = "1" * 20

REQUEST_TIMEOUT = httpx.Timeout(60.0)
REQUEST_HEADERS = {"User-Agent": "AerialImageRetrieval/1.0 (tile stitcher)"}

CACHE_DIR_ENV = "AERIAL_CACHE_DIR"
REQUEST_DELAY_ENV = "AERIAL_REQUEST_DELAY"
MAX_CONCURRENCY_ENV = "AERIAL_MAX_CONCURRENT_REQUESTS"
DEFAULT_REQUEST_DELAY = 0.0
DEFAULT_MAX_CONCURRENCY = 8
MAX_CONCURRENCY_LIMIT = 16


def determine_cache_dir() -> Path:
    override = os.getenv(CACHE_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DATA_DIR / "cache"


def request_delay_seconds() -> float:
    raw_value = os.getenv(REQUEST_DELAY_ENV, "").strip()
    if not raw_value:
        return DEFAULT_REQUEST_DELAY
    try:
        delay = float(raw_value)
    except ValueError:
        return DEFAULT_REQUEST_DELAY
    return max(0.0, delay)


def max_concurrent_requests() -> int:
    raw_value = os.getenv(MAX_CONCURRENCY_ENV, "").strip()
    if not raw_value:
        return DEFAULT_MAX_CONCURRENCY
    try:
        value = int(raw_value)
    except ValueError:
        return DEFAULT_MAX_CONCURRENCY
    return max(1, min(MAX_CONCURRENCY_LIMIT, value))


async def _respect_rate_limit() -> None:
    delay = request_delay_seconds()
    if delay > 0:
        await asyncio.sleep(delay)


def tile_url(quadkey: str, *, labeled: bool, culture: str) -> str:
    template = AERIAL_LABELED_URL if labeled else AERIAL_UNLABELED_URL
    return template.format(quadkey=quadkey, culture=culture)


@dataclass
class TileFound:
    quadkey: str
    image: Image.Image
    source: str


@dataclass
class TileNotFound:
    """The service answered with its missing-tile placeholder."""

    quadkey: str


@dataclass
class TileError:
    """The tile could not be downloaded or decoded."""

    quadkey: str
    cause: str


TileResult = Union[TileFound, TileNotFound, TileError]


class TileDownloadError(Exception):
    """Raised when the tile service does not return usable image bytes."""


class BackgroundWriter:
    """Runs blocking writes in worker threads without awaiting them.

    Failures are logged and never reach the code that submitted the write.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, func: Callable[..., Any], *args: Any, description: str) -> None:
        task = asyncio.create_task(asyncio.to_thread(func, *args))
        self._tasks.add(task)
        task.add_done_callback(partial(self._finished, description))

    def _finished(self, description: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Failed to cache %s: %s", description, exc)

    async def drain(self) -> None:
        """Wait for all submitted writes to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def download_tile_bytes(client: httpx.AsyncClient, url: str) -> bytes:
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise TileDownloadError(
            f"{exc.response.status_code} {_short_error_detail(exc.response.text)}"
        ) from exc
    except httpx.RequestError as exc:
        raise TileDownloadError(str(exc) or exc.__class__.__name__) from exc

    if not _is_image_response(response):
        content_type = response.headers.get("Content-Type", "unknown")
        raise TileDownloadError(
            f"unexpected payload ({content_type}): {_short_error_detail(response.text)}"
        )
    return response.content


class TileGateway:
    """Resolves quadkeys to decoded tiles for one retrieval.

    Cached tiles are trusted as-is. Downloaded tiles are compared against the
    service's placeholder and, when real, written back to the cache in the
    background. Every request to the service, the placeholder included, shares
    the semaphore and is counted in ``network_requests``. ``cache`` is ``None``
    when caching is disabled.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: RetrievalConfig,
        cache: Optional[TileCache],
        detector: NullTileDetector,
        *,
        semaphore: asyncio.Semaphore,
        writer: BackgroundWriter,
    ) -> None:
        self.client = client
        self.config = config
        self.cache = cache
        self.detector = detector
        self.semaphore = semaphore
        self.writer = writer
        self.network_requests = 0

    async def fetch_tile(self, quadkey: str) -> TileResult:
        labeled = self.config.labeled
        key = tile_cache_key(quadkey, labeled=labeled)

        if self.cache is not None:
            data = self._load_cached(key)
            if data is not None:
                logger.debug("Tile %s served from cache", key)
                return _decode(quadkey, data, source="cache")

        try:
            data = await self._download(quadkey)
        except TileDownloadError as exc:
            logger.warning("Tile %s request failed: %s", quadkey, exc)
            return TileError(quadkey=quadkey, cause=str(exc))

        if await self.detector.is_null_tile(
            data, labeled, self.config.culture, partial(self._download, SENTINEL_QUADKEY)
        ):
            return TileNotFound(quadkey=quadkey)

        result = _decode(quadkey, data, source="network")
        if self.cache is not None and isinstance(result, TileFound):
            self.writer.submit(self.cache.store, key, data, description=key)
        return result

    async def _download(self, quadkey: str) -> bytes:
        async with self.semaphore:
            await _respect_rate_limit()
            self.network_requests += 1
            return await download_tile_bytes(
                self.client,
                tile_url(quadkey, labeled=self.config.labeled, culture=self.config.culture),
            )

    def _load_cached(self, key: str) -> bytes | None:
        try:
            return self.cache.load(key)
        except OSError as exc:
            logger.warning("Unable to read cached tile %s: %s", key, exc)
            return None


def _decode(quadkey: str, data: bytes, *, source: str) -> TileResult:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except Exception as exc:
        logger.warning("Unable to decode tile %s from %s: %s", quadkey, source, exc)
        return TileError(quadkey=quadkey, cause=f"unable to decode tile image: {exc}")
    return TileFound(quadkey=quadkey, image=image, source=source)


def _is_image_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("Content-Type", "")
    return "image" in content_type.lower()


def _short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"
