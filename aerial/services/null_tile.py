from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Tuple

logger = logging.getLogger(__name__)

SentinelFetcher = Callable[[], Awaitable[bytes]]


class TileServiceError(Exception):
    """Raised when the tile service cannot be used at all."""


class NullTileUnavailableError(TileServiceError):
    """Raised when the "tile does not exist" placeholder cannot be downloaded.

    Without it tile validity cannot be decided, so the retrieval is aborted.
    """


class NullTileDetector:
    """Recognizes the placeholder image the tile service returns for missing tiles.

    The placeholder is downloaded once per ``(labeled, culture)`` combination
    and kept in memory for the lifetime of the detector. Callers supply the
    download, so it goes through their own request limits.
    """

    def __init__(self) -> None:
        self._sentinels: Dict[Tuple[bool, str], bytes] = {}
        self._locks: Dict[Tuple[bool, str], asyncio.Lock] = {}

    async def sentinel(self, labeled: bool, culture: str, fetch: SentinelFetcher) -> bytes:
        key = (labeled, culture)
        cached = self._sentinels.get(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._sentinels.get(key)
            if cached is not None:
                return cached
            try:
                data = await fetch()
            except NullTileUnavailableError:
                raise
            except Exception as exc:
                raise NullTileUnavailableError(
                    f"Unable to download the missing-tile placeholder: {exc}"
                ) from exc
            logger.debug(
                "Cached missing-tile placeholder (%d bytes) for labeled=%s culture=%s",
                len(data),
                labeled,
                culture,
            )
            self._sentinels[key] = data
            return data

    async def is_null_tile(
        self, data: bytes, labeled: bool, culture: str, fetch: SentinelFetcher
    ) -> bool:
        return data == await self.sentinel(labeled, culture, fetch)
