"""Command line entry point.

Usage:
    mbtiles-offline --bounds=-0.5,51.3,0.3,51.7 --zoom 0-12 \
        --url "https://tile.openstreetmap.org/{z}/{x}/{y}.png" --output london.mbtiles
    mbtiles-offline --around 40.7,-74.0 --radius 25 --zoom 0-14 --url ... --output nyc.mbtiles

Bounds starting with a negative longitude must be passed as ``--bounds=...``.
Re-running the same command resumes an interrupted download.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import sys
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .config import DEFAULT_CONCURRENCY, DEFAULT_TILESET_NAME, DEFAULT_TILESET_VERSION, ArchiveConfig
from .events import LoggingSink
from .services.downloader import ArchiveCancelledError, build_archive
from .services.tiling import MERCATOR_LATITUDE_LIMIT

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_TILE_FAILURES = 1
EXIT_FATAL = 2

KM_PER_DEGREE_LAT = 111.0


def parse_zoom_range(value: str) -> Tuple[int, int]:
    parts = value.split("-")
    try:
        if len(parts) == 1:
            zoom = int(parts[0])
            return zoom, zoom
        if len(parts) == 2:
            return int(parts[0]), int(parts[1])
    except ValueError:
        pass
    raise argparse.ArgumentTypeError(f"invalid zoom range {value!r}, expected MIN-MAX or a single zoom")


def parse_bounds(value: str) -> Tuple[float, float, float, float]:
    try:
        values = tuple(float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid bounds {value!r}") from None
    if len(values) != 4:
        raise argparse.ArgumentTypeError("bounds must be west,south,east,north")
    return values


def parse_point(value: str) -> Tuple[float, float]:
    try:
        lat, lon = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid point {value!r}, expected lat,lon") from None
    return lat, lon


def parse_meta(values: Sequence[str]) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"invalid metadata entry {item!r}, expected name=value")
        metadata[name.strip()] = value
    return metadata


def bounds_around(lat: float, lon: float, radius_km: float) -> Tuple[float, float, float, float]:
    """Approximate bounding box of a circle of ``radius_km`` around a point."""

    lat_delta = radius_km / KM_PER_DEGREE_LAT
    limit = MERCATOR_LATITUDE_LIMIT
    lon_delta = radius_km / (KM_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 1e-6))
    return (
        max(lon - lon_delta, -180.0),
        min(max(lat - lat_delta, -limit), limit),
        min(lon + lon_delta, 180.0),
        max(min(lat + lat_delta, limit), -limit),
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mbtiles-offline",
        description="Download raster tiles into an offline MBTiles archive",
    )
    area = parser.add_mutually_exclusive_group(required=True)
    area.add_argument("--bounds", type=parse_bounds, help="Bounding box: west,south,east,north")
    area.add_argument("--around", type=parse_point, help="Center point: lat,lon (with --radius)")
    parser.add_argument("--radius", type=float, default=10.0, help="Radius in km (with --around)")
    parser.add_argument("--zoom", type=parse_zoom_range, default=(0, 8), help="Zoom range: min-max")
    parser.add_argument("--url", required=True, help="Tile URL template with {z}, {x} and {y}")
    parser.add_argument("--output", "-o", type=Path, required=True, help="Output .mbtiles file")
    parser.add_argument(
        "--concurrency", "-c", type=int, default=DEFAULT_CONCURRENCY, help="Parallel downloads"
    )
    parser.add_argument("--name", default=DEFAULT_TILESET_NAME, help="Tileset name")
    parser.add_argument("--tileset-version", default=DEFAULT_TILESET_VERSION, help="Tileset version")
    parser.add_argument("--description", default="", help="Tileset description")
    parser.add_argument(
        "--meta", action="append", default=[], metavar="NAME=VALUE", help="Extra metadata row"
    )
    parser.add_argument(
        "--header", action="append", default=[], metavar="NAME=VALUE", help="Extra request header"
    )
    parser.add_argument("--progress-every", type=int, default=100, help="Log progress every N tiles")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args: argparse.Namespace) -> ArchiveConfig:
    if args.bounds is not None:
        bounds = args.bounds
    else:
        lat, lon = args.around
        bounds = bounds_around(lat, lon, args.radius)
    min_zoom, max_zoom = args.zoom
    return ArchiveConfig(
        bounds=bounds,
        minzoom=min_zoom,
        maxzoom=max_zoom,
        url=args.url,
        output=args.output,
        concurrency=args.concurrency,
        name=args.name,
        version=args.tileset_version,
        description=args.description,
        metadata=parse_meta(args.meta),
        headers=parse_meta(args.header),
    )


def format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        archive_config = config_from_args(args)
    except (ValidationError, argparse.ArgumentTypeError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_FATAL

    sink = LoggingSink(every=args.progress_every)
    try:
        summary = asyncio.run(build_archive(archive_config, events=sink))
    except SQLAlchemyError as exc:
        logger.error("Cannot open archive %s: %s", archive_config.output, exc)
        return EXIT_FATAL
    except (ArchiveCancelledError, KeyboardInterrupt):
        logger.warning("Interrupted; re-run the same command to resume")
        return EXIT_FATAL

    size = archive_config.output.stat().st_size if archive_config.output.exists() else 0
    logger.info(
        "Done: %d/%d tiles, %d downloaded, %d failed, archive size %s",
        summary.completed,
        summary.total,
        summary.downloaded,
        summary.failed,
        format_bytes(size),
    )
    return EXIT_TILE_FAILURES if summary.failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
