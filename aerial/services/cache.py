from __future__ import annotations

import os
import tempfile
from pathlib import Path

TILE_EXTENSION = ".jpg"
LABELED_PARTITION = "labeled"
UNLABELED_PARTITION = "unlabeled"
_PARTITIONS = (LABELED_PARTITION, UNLABELED_PARTITION)
# The level-0 tile has an empty quadkey.
ROOT_TILE_NAME = "_root"


def tile_cache_key(quadkey: str, *, labeled: bool) -> str:
    partition = LABELED_PARTITION if labeled else UNLABELED_PARTITION
    return f"{partition}/{quadkey}"


class TileCache:
    """Simple on-disk cache for downloaded map tiles.

    Keys look like ``labeled/0231`` and map to ``<root>/labeled/0231.jpg``.
    The single level-0 tile (``labeled/``) is stored as ``_root.jpg``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def load(self, key: str) -> bytes | None:
        """Return the cached bytes for ``key`` or ``None`` on a miss."""

        cache_path = self._path(key, ensure_parent=False)
        if not cache_path.exists():
            return None
        return cache_path.read_bytes()

    def contains(self, key: str) -> bool:
        return self._path(key, ensure_parent=False).exists()

    def store(self, key: str, content: bytes) -> Path:
        """Persist ``content`` under ``key``.

        The tile is written next to its final location and renamed into place,
        so readers never observe a partial file.
        """

        cache_path = self._path(key, ensure_parent=True)
        handle, temp_name = tempfile.mkstemp(
            dir=cache_path.parent, prefix=f".{cache_path.stem}.", suffix=".tmp"
        )
        try:
            with os.fdopen(handle, "wb") as buffer:
                buffer.write(content)
            os.replace(temp_name, cache_path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        return cache_path

    def _path(self, key: str, *, ensure_parent: bool) -> Path:
        partition, _, name = key.partition("/")
        if partition not in _PARTITIONS or "/" in name or "\\" in name or ".." in name:
            raise ValueError(f"Invalid tile cache key: {key!r}")
        directory = self.root / partition
        name = name or ROOT_TILE_NAME
        if ensure_parent:
            directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{name}{TILE_EXTENSION}"
