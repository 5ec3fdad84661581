from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .. import config as settings
from ..config import ArchiveConfig
from ..events import EventSink, NullSink
from .fetcher import FetchStatus, RetryPolicy, TileDownloadError, fetch_tile
from .store import ArchiveWriteError, TileStore
from .tiling import TileCoord, count_tiles, coverage

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    ENUMERATING = "enumerating"
    DOWNLOADING = "downloading"
    CLOSED = "closed"


class ArchiveCancelledError(Exception):
    """Raised when a run is stopped between zoom levels."""


@dataclass
class RunSummary:
    """Counts gathered over one run. ``completed`` always reaches ``total`` on success."""

    total: int = 0
    completed: int = 0
    downloaded: int = 0
    skipped: int = 0
    absent: int = 0
    failed_tiles: List[TileCoord] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_tiles)


class ArchiveBuilder:
    """Downloads every tile of an :class:`ArchiveConfig` into an MBTiles file.

    Zoom levels are processed in ascending order; within a zoom level a fixed
    pool of ``config.concurrency`` workers pulls tiles from a bounded queue.
    Tiles already in the archive are counted but never fetched again.
    """

    def __init__(
        self,
        archive_config: ArchiveConfig,
        *,
        events: EventSink | None = None,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.config = archive_config
        self.events = events if events is not None else NullSink()
        self.policy = policy or RetryPolicy.from_env()
        self.cancel_event = cancel_event
        self.state = RunState.INIT
        self.summary = RunSummary()
        self._client = client
        self._store: TileStore | None = None
        self._progress_lock = asyncio.Lock()

    async def run(self) -> RunSummary:
        bounds = self.config.bounding_box
        started = time.monotonic()

        # Run-fatal problems surface here, before anything is downloaded.
        store = TileStore(self.config.output)
        self._store = store
        try:
            store.init_schema()

            self.state = RunState.ENUMERATING
            total = count_tiles(bounds, self.config.minzoom, self.config.maxzoom)
            store.write_metadata(self.config.run_metadata())
            self.summary.total = total
            logger.info(
                "Archiving %d tiles for zoom %d-%d into %s",
                total,
                self.config.minzoom,
                self.config.maxzoom,
                self.config.output,
            )
            self.events.on_total(total)

            async with self._http_client() as client:
                for zoom in range(self.config.minzoom, self.config.maxzoom + 1):
                    self._raise_if_cancelled(zoom)
                    self.state = RunState.DOWNLOADING
                    await self._download_zoom(client, zoom)
        finally:
            store.close()
            self.state = RunState.CLOSED

        logger.info(
            "Archive complete: %d/%d tiles (%d downloaded, %d already stored, %d absent, %d failed) in %.1fs",
            self.summary.completed,
            self.summary.total,
            self.summary.downloaded,
            self.summary.skipped,
            self.summary.absent,
            self.summary.failed,
            time.monotonic() - started,
        )
        return self.summary

    def _http_client(self):
        if self._client is not None:
            return _BorrowedClient(self._client)
        headers = {"User-Agent": settings.user_agent()}
        headers.update(self.config.headers)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_seconds()),
            headers=headers,
            follow_redirects=True,
        )

    def _raise_if_cancelled(self, zoom: int) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.info("Run cancelled before zoom %d", zoom)
            raise ArchiveCancelledError(f"Run cancelled before zoom {zoom}")

    async def _download_zoom(self, client: httpx.AsyncClient, zoom: int) -> None:
        tiles = coverage(zoom, self.config.bounding_box)
        logger.info("Zoom %d: %d tiles (%r)", zoom, len(tiles), tiles)
        before = self.summary.completed

        concurrency = self.config.concurrency
        queue: asyncio.Queue[TileCoord | None] = asyncio.Queue(maxsize=concurrency * 2)

        async def producer() -> None:
            for tile in tiles:
                await queue.put(tile)
            for _ in range(concurrency):
                await queue.put(None)

        async def worker() -> None:
            while True:
                tile = await queue.get()
                if tile is None:
                    return
                await self._process_tile(client, tile)

        tasks = [asyncio.create_task(producer())]
        tasks.extend(asyncio.create_task(worker()) for _ in range(concurrency))
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        logger.info("Zoom %d done: %d tiles processed", zoom, self.summary.completed - before)

    async def _process_tile(self, client: httpx.AsyncClient, tile: TileCoord) -> None:
        store = self._store
        key = tile.archive_key()

        try:
            stored = store.exists(key.zoom, key.column, key.archive_row)
        except SQLAlchemyError as exc:
            logger.warning("Could not look up tile %s: %s", tile, exc)
            await self._tile_done(error=(tile, ArchiveWriteError(tile, exc)))
            return
        if stored:
            await self._tile_done(skipped=True)
            return

        outcome = await fetch_tile(client, tile, self.config.url, policy=self.policy)

        if outcome.status is FetchStatus.SUCCESS:
            try:
                store.upsert(key.zoom, key.column, key.archive_row, outcome.data)
            except SQLAlchemyError as exc:
                logger.warning("Could not store tile %s: %s", tile, exc)
                await self._tile_done(error=(tile, ArchiveWriteError(tile, exc)))
                return
            await self._tile_done(downloaded=True)
        elif outcome.status is FetchStatus.ABSENT:
            await self._tile_done(absent=True)
        else:
            error = TileDownloadError(tile, outcome.error or "unknown error")
            await self._tile_done(error=(tile, error))

    async def _tile_done(
        self,
        *,
        skipped: bool = False,
        downloaded: bool = False,
        absent: bool = False,
        error: tuple[TileCoord, Exception] | None = None,
    ) -> None:
        async with self._progress_lock:
            summary = self.summary
            summary.completed += 1
            summary.skipped += int(skipped)
            summary.downloaded += int(downloaded)
            summary.absent += int(absent)
            if error is not None:
                summary.failed_tiles.append(error[0])
            self.events.on_progress(summary.completed)
            if error is not None:
                self.events.on_error(*error)


class _BorrowedClient:
    """Async context wrapper that leaves a caller-owned client open."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def __aenter__(self) -> httpx.AsyncClient:
        return self._client

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


async def build_archive(
    archive_config: ArchiveConfig,
    *,
    events: EventSink | None = None,
    client: httpx.AsyncClient | None = None,
    policy: RetryPolicy | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RunSummary:
    """Build (or resume) the archive described by ``archive_config``."""

    builder = ArchiveBuilder(
        archive_config,
        events=events,
        client=client,
        policy=policy,
        cancel_event=cancel_event,
    )
    return await builder.run()
