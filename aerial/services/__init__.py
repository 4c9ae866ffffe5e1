"""Service utilities exposed by the ``aerial.services`` package."""

from .config import OutputFormat, RetrievalConfig
from .null_tile import NullTileUnavailableError, TileServiceError
from .retrieval import ImageRetrieval, InvalidBoundingBoxError, RetrievalResult

__all__ = [
    "ImageRetrieval",
    "InvalidBoundingBoxError",
    "NullTileUnavailableError",
    "OutputFormat",
    "RetrievalConfig",
    "RetrievalResult",
    "TileServiceError",
]
