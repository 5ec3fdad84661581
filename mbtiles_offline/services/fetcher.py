from __future__ import annotations

import asyncio
import logging
import textwrap
from dataclasses import dataclass
from enum import Enum

import httpx

from .. import config
from .tiling import TileCoord

logger = logging.getLogger(__name__)

DETAIL_WIDTH = 160


class FetchStatus(str, Enum):
    """How a tile request ended."""

    SUCCESS = "success"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchOutcome:
    status: FetchStatus
    data: bytes | None = None
    error: str | None = None
    attempts: int = 0

    @classmethod
    def success(cls, data: bytes, *, attempts: int) -> FetchOutcome:
        return cls(FetchStatus.SUCCESS, data=data, attempts=attempts)

    @classmethod
    def absent(cls, *, attempts: int) -> FetchOutcome:
        return cls(FetchStatus.ABSENT, attempts=attempts)

    @classmethod
    def failed(cls, error: str, *, attempts: int) -> FetchOutcome:
        return cls(FetchStatus.FAILED, error=error, attempts=attempts)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff for a single tile."""

    max_retries: int = config.MAX_RETRIES
    initial_delay_ms: int = config.INITIAL_DELAY_MS

    @classmethod
    def from_env(cls) -> RetryPolicy:
        return cls(max_retries=config.max_retries(), initial_delay_ms=config.initial_delay_ms())

    def delay_seconds(self, attempt: int) -> float:
        """Pause after failed ``attempt`` (1-based) before the next one."""

        return self.initial_delay_ms * (2 ** (attempt - 1)) / 1000.0


class TileDownloadError(Exception):
    """Raised (or reported) when a tile could not be downloaded after every attempt."""

    def __init__(self, tile: TileCoord, detail: str) -> None:
        super().__init__(f"tile {tile}: {detail}")
        self.tile = tile
        self.detail = detail


def tile_url(url_template: str, tile: TileCoord) -> str:
    # Request URLs use the XYZ row; the archive flip happens at the store.
    return (
        url_template.replace("{z}", str(tile.zoom))
        .replace("{x}", str(tile.column))
        .replace("{y}", str(tile.row))
    )


async def _backoff(delay: float) -> None:
    if delay > 0:
        await asyncio.sleep(delay)


async def fetch_tile(
    client: httpx.AsyncClient,
    tile: TileCoord,
    url_template: str,
    *,
    policy: RetryPolicy | None = None,
) -> FetchOutcome:
    """Download one tile, retrying transient failures.

    A 404 means the tile does not exist and is returned as ``ABSENT`` without any
    retry. Every other non-2xx status and every transport error is retried until
    the attempt budget is spent, sleeping ``initial_delay_ms * 2**(attempt-1)``
    between attempts.
    """

    policy = policy or RetryPolicy()
    url = tile_url(url_template, tile)
    last_error = "no attempt made"

    for attempt in range(1, policy.max_retries + 1):
        try:
            response = await client.get(url)
        except httpx.RequestError as exc:
            last_error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            logger.debug("Attempt %d for %s failed: %s", attempt, url, last_error)
        else:
            if response.is_success:
                return FetchOutcome.success(response.content, attempts=attempt)
            if response.status_code == 404:
                logger.info("Tile not found (404), not retrying: %s", url)
                return FetchOutcome.absent(attempts=attempt)
            last_error = f"HTTP {response.status_code} {_http_error_detail(response)}"
            logger.debug("Attempt %d for %s failed: %s", attempt, url, last_error)

        if attempt == policy.max_retries:
            break
        await _backoff(policy.delay_seconds(attempt))

    logger.warning(
        "Giving up on %s after %d attempts: %s", url, policy.max_retries, last_error
    )
    return FetchOutcome.failed(last_error, attempts=policy.max_retries)


def _http_error_detail(response: httpx.Response) -> str:
    """Summarize an error response for logs and error events."""

    content_type = response.headers.get("Content-Type", "").lower()
    content = response.content or b""
    if not content:
        return "(no detail)"
    if "text" in content_type or "json" in content_type:
        return _first_line(response.text)
    return f"{content_type or 'binary'} payload ({len(content)} bytes)"


def _first_line(body: str, width: int = DETAIL_WIDTH) -> str:
    # Servers often answer with whole HTML pages; keep one readable line.
    for line in body.splitlines():
        if line.strip():
            return textwrap.shorten(line, width=width, placeholder=" ...")
    return "(no detail)"
