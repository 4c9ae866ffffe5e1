from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_CULTURE = "en-us"


class OutputFormat(str, Enum):
    """Encodings supported for the composed image (Pillow format names)."""

    PNG = "PNG"
    JPEG = "JPEG"
    TIFF = "TIFF"
    WEBP = "WEBP"
    BMP = "BMP"

    @property
    def media_type(self) -> str:
        return f"image/{self.value.lower()}"

    @property
    def extension(self) -> str:
        return ".jpg" if self is OutputFormat.JPEG else f".{self.value.lower()}"


def validate_culture(culture: str) -> str:
    if not isinstance(culture, str) or not culture or not all(
        char.isalpha() or char == "-" for char in culture
    ):
        raise ValueError(f"Value is not a valid culture code: {culture!r}")
    return culture


@dataclass(frozen=True)
class RetrievalConfig:
    """Options that stay fixed for the duration of a retrieval."""

    labeled: bool = True
    cache_enabled: bool = True
    output_format: OutputFormat = OutputFormat.PNG
    culture: str = DEFAULT_CULTURE

    def __post_init__(self) -> None:
        validate_culture(self.culture)
        if not isinstance(self.output_format, OutputFormat):
            object.__setattr__(self, "output_format", OutputFormat(str(self.output_format).upper()))

    @property
    def style(self) -> str:
        return "labeled" if self.labeled else "unlabeled"
