import io
import os
import tempfile
from typing import Iterable, List

import httpx
import pytest
from PIL import Image

# The usage database lives under the data dir, which is resolved at import time.
os.environ.setdefault("AERIAL_DATA_DIR", tempfile.mkdtemp(prefix="aerial-tests-"))

from aerial.services.tile_system import quadkey_to_tile_xy  # noqa: E402
from aerial.services.tiles import SENTINEL_QUADKEY  # noqa: E402


def png_bytes(color, size: int = 256) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def tile_color(quadkey: str):
    tile_x, tile_y, level = quadkey_to_tile_xy(quadkey)
    return (tile_x % 256, tile_y % 256, 100 + level)


SENTINEL_BYTES = png_bytes((250, 250, 250))


class FakeTileService:
    """Stands in for the Bing tile server behind an ``httpx.MockTransport``.

    Tiles exist up to ``max_level`` unless listed in ``missing``; quadkeys in
    ``errors`` fail with a connection error.
    """

    def __init__(
        self,
        *,
        max_level: int = 23,
        missing: Iterable[str] = (),
        errors: Iterable[str] = (),
        sentinel_status: int = 200,
    ) -> None:
        self.max_level = max_level
        self.missing = set(missing)
        self.errors = set(errors)
        self.sentinel_status = sentinel_status
        self.requests: List[httpx.Request] = []

    @property
    def quadkeys(self) -> List[str]:
        return [self.quadkey_of(request) for request in self.requests]

    @property
    def tile_quadkeys(self) -> List[str]:
        return [quadkey for quadkey in self.quadkeys if quadkey != SENTINEL_QUADKEY]

    @staticmethod
    def quadkey_of(request: httpx.Request) -> str:
        name = request.url.path.rsplit("/", 1)[-1]
        return name[1:].split(".", 1)[0]

    def exists(self, quadkey: str) -> bool:
        return len(quadkey) <= self.max_level and quadkey not in self.missing

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        quadkey = self.quadkey_of(request)

        if quadkey == SENTINEL_QUADKEY:
            if self.sentinel_status != 200:
                return httpx.Response(self.sentinel_status, text="service unavailable")
            return httpx.Response(200, content=SENTINEL_BYTES, headers={"Content-Type": "image/jpeg"})

        if quadkey in self.errors:
            raise httpx.ConnectError("connection reset", request=request)

        if not self.exists(quadkey):
            return httpx.Response(200, content=SENTINEL_BYTES, headers={"Content-Type": "image/jpeg"})

        return httpx.Response(
            200, content=png_bytes(tile_color(quadkey)), headers={"Content-Type": "image/jpeg"}
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def tile_service() -> FakeTileService:
    return FakeTileService()


@pytest.fixture(autouse=True)
def _no_request_delay(monkeypatch):
    monkeypatch.delenv("AERIAL_REQUEST_DELAY", raising=False)
    monkeypatch.delenv("AERIAL_MAX_CONCURRENT_REQUESTS", raising=False)
