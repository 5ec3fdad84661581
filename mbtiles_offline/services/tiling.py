"""Web Mercator tile math and bounding-box coverage.

Tiles are addressed in the XYZ scheme used by web map servers, where row 0 is the
northernmost row. MBTiles archives store rows in the TMS scheme, where row 0 is
the southernmost row; :func:`to_archive_row` converts between the two.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

# Web Mercator tiles stop at this latitude; beyond it rows leave the grid.
MERCATOR_LATITUDE_LIMIT = 85.05112878


@dataclass(frozen=True)
class BoundingBox:
    """A WGS84 bounding box in degrees. Callers keep ``min_* <= max_*``."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> BoundingBox:
        if len(values) != 4:
            raise ValueError(f"Bounding box needs 4 values (west,south,east,north), got {len(values)}")
        west, south, east, north = (float(value) for value in values)
        return cls(min_lon=west, min_lat=south, max_lon=east, max_lat=north)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def serialize(self) -> str:
        return ",".join(str(value) for value in self.as_tuple())


@dataclass(frozen=True)
class TileCoord:
    """A tile address in the request (XYZ) scheme."""

    zoom: int
    column: int
    row: int

    def archive_key(self) -> ArchiveKey:
        return ArchiveKey(self.zoom, self.column, to_archive_row(self.zoom, self.row))

    def __str__(self) -> str:
        return f"{self.zoom}/{self.column}/{self.row}"


@dataclass(frozen=True)
class ArchiveKey:
    """A tile address as persisted in the archive (TMS row numbering)."""

    zoom: int
    column: int
    archive_row: int

    def tile_coord(self) -> TileCoord:
        return TileCoord(self.zoom, self.column, to_archive_row(self.zoom, self.archive_row))


def lon_to_column(lon: float, zoom: int) -> int:
    return int(math.floor((lon + 180.0) / 360.0 * (1 << zoom)))


def lat_to_row(lat: float, zoom: int) -> int:
    # |lat| >= 90 hits the tan/sec singularity; such boxes are not supported.
    lat_rad = math.radians(lat)
    fraction = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0
    return int(math.floor(fraction * (1 << zoom)))


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(min(value, maximum), minimum)


def to_archive_row(zoom: int, row: int) -> int:
    """Flip a row between the XYZ and TMS schemes. The flip is its own inverse."""

    return (1 << zoom) - 1 - row


class TileCoverage:
    """The tiles of one zoom level that intersect a bounding box.

    Iterating always starts from the first tile, so the same coverage can be
    traversed once for counting and again for dispatch.
    """

    def __init__(self, zoom: int, bounds: BoundingBox) -> None:
        self.zoom = zoom
        self.bounds = bounds
        last = (1 << zoom) - 1
        # Edges at 180° or the Mercator limit fall one past the grid.
        self.start_column = _clamp(lon_to_column(bounds.min_lon, zoom), 0, last)
        self.end_column = _clamp(lon_to_column(bounds.max_lon, zoom), 0, last)
        # The northern edge maps to the smaller row index.
        self.start_row = _clamp(lat_to_row(bounds.max_lat, zoom), 0, last)
        self.end_row = _clamp(lat_to_row(bounds.min_lat, zoom), 0, last)

    def __iter__(self) -> Iterator[TileCoord]:
        for column in range(self.start_column, self.end_column + 1):
            for row in range(self.start_row, self.end_row + 1):
                yield TileCoord(self.zoom, column, row)

    def __len__(self) -> int:
        columns = self.end_column - self.start_column + 1
        rows = self.end_row - self.start_row + 1
        return max(columns, 0) * max(rows, 0)

    def __repr__(self) -> str:
        return (
            f"TileCoverage(zoom={self.zoom}, columns={self.start_column}..{self.end_column}, "
            f"rows={self.start_row}..{self.end_row})"
        )


def coverage(zoom: int, bounds: BoundingBox) -> TileCoverage:
    return TileCoverage(zoom, bounds)


def count_tiles(bounds: BoundingBox, min_zoom: int, max_zoom: int) -> int:
    """Total number of tiles covering ``bounds`` across ``[min_zoom, max_zoom]``."""

    return sum(len(coverage(zoom, bounds)) for zoom in range(min_zoom, max_zoom + 1))
