from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Mapping

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import select

from ..database import create_archive_engine, init_db, session_scope
from ..models import Metadata, Tile

logger = logging.getLogger(__name__)


class StoreClosedError(RuntimeError):
    """Raised when a closed :class:`TileStore` is used."""


class ArchiveWriteError(Exception):
    """Reported when a tile could not be looked up in or written to the archive."""

    def __init__(self, tile: object, original: Exception) -> None:
        super().__init__(f"tile {tile}: {original}")
        self.tile = tile
        self.original = original


class TileStore:
    """MBTiles archive keyed by (zoom, column, archive row).

    Writes go through an internal lock so the store can be shared by concurrent
    workers; reads are not serialized.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._engine = create_archive_engine(self.path)
        self._write_lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> TileStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def init_schema(self) -> None:
        """Create the ``metadata`` and ``tiles`` tables when missing. Existing rows are kept."""

        self._ensure_open()
        with self._write_lock:
            init_db(self._engine)

    def write_metadata(self, metadata: Mapping[str, object]) -> None:
        self._ensure_open()
        rows = [{"name": str(name), "value": str(value)} for name, value in metadata.items()]
        if not rows:
            return
        statement = sqlite_insert(Metadata.__table__).values(rows)
        statement = statement.on_conflict_do_update(
            index_elements=["name"], set_={"value": statement.excluded["value"]}
        )
        with self._write_lock, session_scope(self._engine) as session:
            session.exec(statement)
            session.commit()

    def read_metadata(self) -> Dict[str, str]:
        self._ensure_open()
        with session_scope(self._engine) as session:
            return {row.name: row.value for row in session.exec(select(Metadata))}

    def exists(self, zoom: int, column: int, archive_row: int) -> bool:
        """True when the key holds non-empty tile data; empty rows are fetched again."""

        self._ensure_open()
        statement = select(Tile.zoom_level).where(
            Tile.zoom_level == zoom,
            Tile.tile_column == column,
            Tile.tile_row == archive_row,
            func.length(Tile.tile_data) > 0,
        )
        with session_scope(self._engine) as session:
            return session.exec(statement).first() is not None

    def upsert(self, zoom: int, column: int, archive_row: int, data: bytes) -> None:
        """Insert a tile or replace the bytes already stored under the same key."""

        self._ensure_open()
        statement = sqlite_insert(Tile.__table__).values(
            zoom_level=zoom, tile_column=column, tile_row=archive_row, tile_data=data
        )
        statement = statement.on_conflict_do_update(
            index_elements=["zoom_level", "tile_column", "tile_row"],
            set_={"tile_data": statement.excluded["tile_data"]},
        )
        with self._write_lock, session_scope(self._engine) as session:
            session.exec(statement)
            session.commit()

    def read_tile(self, zoom: int, column: int, archive_row: int) -> bytes | None:
        self._ensure_open()
        statement = select(Tile.tile_data).where(
            Tile.zoom_level == zoom,
            Tile.tile_column == column,
            Tile.tile_row == archive_row,
        )
        with session_scope(self._engine) as session:
            return session.exec(statement).first()

    def count_tiles(self, zoom: int | None = None) -> int:
        self._ensure_open()
        statement = select(func.count()).select_from(Tile)
        if zoom is not None:
            statement = statement.where(Tile.zoom_level == zoom)
        with session_scope(self._engine) as session:
            return int(session.exec(statement).one())

    def close(self) -> None:
        if self._closed:
            return
        with self._write_lock:
            self._engine.dispose()
            self._closed = True
        logger.debug("Closed archive %s", self.path)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StoreClosedError(f"Archive {self.path} is closed")
