from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from . import __version__
from .services.tiling import MERCATOR_LATITUDE_LIMIT, BoundingBox

MAX_RETRIES = 4
INITIAL_DELAY_MS = 250
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_CONCURRENCY = 10
DEFAULT_TILESET_NAME = "Default Tileset"
DEFAULT_TILESET_VERSION = "1.0.0"
DEFAULT_TILE_FORMAT = "png"
DEFAULT_USER_AGENT = f"mbtiles-offline/{__version__}"

MAX_RETRIES_ENV = "MBTILES_MAX_RETRIES"
INITIAL_DELAY_MS_ENV = "MBTILES_INITIAL_DELAY_MS"
REQUEST_TIMEOUT_ENV = "MBTILES_REQUEST_TIMEOUT"
USER_AGENT_ENV = "MBTILES_USER_AGENT"

URL_PLACEHOLDERS = ("{z}", "{x}", "{y}")


def _env_number(name: str, default: float, *, minimum: float) -> float:
    raw_value = os.getenv(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def max_retries() -> int:
    return int(_env_number(MAX_RETRIES_ENV, MAX_RETRIES, minimum=1))


def initial_delay_ms() -> int:
    return int(_env_number(INITIAL_DELAY_MS_ENV, INITIAL_DELAY_MS, minimum=0))


def request_timeout_seconds() -> float:
    return _env_number(REQUEST_TIMEOUT_ENV, DEFAULT_REQUEST_TIMEOUT, minimum=0.001)


def user_agent() -> str:
    return os.getenv(USER_AGENT_ENV, "").strip() or DEFAULT_USER_AGENT


class ArchiveConfig(BaseModel):
    """Everything needed to build one offline archive.

    Invalid values raise :class:`pydantic.ValidationError` (a ``ValueError``)
    before any file is opened.
    """

    bounds: Tuple[float, float, float, float]
    minzoom: int = Field(ge=0)
    maxzoom: int = Field(ge=0)
    url: str
    output: Path
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, gt=0)
    name: str = DEFAULT_TILESET_NAME
    version: str = DEFAULT_TILESET_VERSION
    description: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _check_placeholders(cls, value: str) -> str:
        value = value.strip()
        missing = [token for token in URL_PLACEHOLDERS if token not in value]
        if missing:
            raise ValueError(f"URL template is missing placeholder(s): {', '.join(missing)}")
        return value

    @field_validator("bounds")
    @classmethod
    def _check_bounds(cls, value: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
        west, south, east, north = value
        if west > east or south > north:
            raise ValueError("Bounds must be ordered as west,south,east,north with west <= east and south <= north")
        limit = MERCATOR_LATITUDE_LIMIT + 1e-6
        if north > limit or south < -limit:
            raise ValueError(
                f"Latitudes must stay within ±{MERCATOR_LATITUDE_LIMIT:.4f}° (Web Mercator tile coverage), "
                f"got south={south}, north={north}"
            )
        return value

    @model_validator(mode="after")
    def _check_zoom_range(self) -> ArchiveConfig:
        if self.minzoom > self.maxzoom:
            raise ValueError(f"minzoom ({self.minzoom}) must not exceed maxzoom ({self.maxzoom})")
        return self

    @property
    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_sequence(self.bounds)

    def run_metadata(self) -> Dict[str, str]:
        """Metadata rows written at the start of a run, caller overrides last."""

        metadata = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "format": DEFAULT_TILE_FORMAT,
            "minzoom": str(self.minzoom),
            "maxzoom": str(self.maxzoom),
            "bounds": self.bounding_box.serialize(),
        }
        metadata.update({str(key): str(value) for key, value in self.metadata.items()})
        return metadata
