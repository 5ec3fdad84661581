"""Receivers for the events emitted while an archive is built."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Protocol, Tuple

from .services.tiling import TileCoord

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    def on_total(self, total: int) -> None: ...

    def on_progress(self, completed: int) -> None: ...

    def on_error(self, tile: TileCoord, cause: Exception) -> None: ...


class NullSink:
    def on_total(self, total: int) -> None:
        return None

    def on_progress(self, completed: int) -> None:
        return None

    def on_error(self, tile: TileCoord, cause: Exception) -> None:
        return None


@dataclass
class RecordingSink:
    """Keeps every event in memory, in the order it was emitted."""

    total: int | None = None
    progress: List[int] = field(default_factory=list)
    errors: List[Tuple[TileCoord, Exception]] = field(default_factory=list)

    def on_total(self, total: int) -> None:
        self.total = total

    def on_progress(self, completed: int) -> None:
        self.progress.append(completed)

    def on_error(self, tile: TileCoord, cause: Exception) -> None:
        self.errors.append((tile, cause))

    @property
    def completed(self) -> int:
        return self.progress[-1] if self.progress else 0


@dataclass
class CallbackSink:
    """Adapts plain callables to the sink interface. Missing callbacks are ignored."""

    total_callback: Callable[[int], None] | None = None
    progress_callback: Callable[[int], None] | None = None
    error_callback: Callable[[TileCoord, Exception], None] | None = None

    def on_total(self, total: int) -> None:
        if self.total_callback is not None:
            self.total_callback(total)

    def on_progress(self, completed: int) -> None:
        if self.progress_callback is not None:
            self.progress_callback(completed)

    def on_error(self, tile: TileCoord, cause: Exception) -> None:
        if self.error_callback is not None:
            self.error_callback(tile, cause)


class LoggingSink:
    """Reports progress through ``logging`` every ``every`` tiles and at completion."""

    def __init__(self, every: int = 100, log: logging.Logger | None = None) -> None:
        self.every = max(1, every)
        self.log = log or logger
        self.total = 0
        self.failed = 0

    def on_total(self, total: int) -> None:
        self.total = total
        self.log.info("Archiving %d tiles", total)

    def on_progress(self, completed: int) -> None:
        if completed % self.every and completed != self.total:
            return
        percent = 100.0 * completed / self.total if self.total else 100.0
        self.log.info(
            "Progress: %d/%d (%.1f%%) | failed: %d", completed, self.total, percent, self.failed
        )

    def on_error(self, tile: TileCoord, cause: Exception) -> None:
        self.failed += 1
        self.log.warning("Tile %s failed: %s", tile, cause)
