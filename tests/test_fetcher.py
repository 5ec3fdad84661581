import asyncio

import httpx
import pytest

import mbtiles_offline.services.fetcher as fetcher
from mbtiles_offline.services.fetcher import FetchStatus, RetryPolicy, fetch_tile, tile_url
from mbtiles_offline.services.tiling import TileCoord

TEMPLATE = "https://tiles.example.test/{z}/{x}/{y}.png"
TILE = TileCoord(zoom=3, column=4, row=2)


class ScriptedClient:
    """Answers each ``get`` with the next scripted item; the last item repeats."""

    def __init__(self, *script):
        self.script = list(script)
        self.urls: list[str] = []

    async def get(self, url: str):
        self.urls.append(url)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def delays(monkeypatch):
    recorded: list[float] = []

    async def fake_backoff(delay: float) -> None:
        recorded.append(delay)

    monkeypatch.setattr(fetcher, "_backoff", fake_backoff)
    return recorded


def test_tile_url_uses_request_row():
    assert tile_url(TEMPLATE, TILE) == "https://tiles.example.test/3/4/2.png"
    assert tile_url("https://t.test/{z}/{y}/{x}", TileCoord(10, 512, 300)) == "https://t.test/10/300/512"


def test_success_on_first_attempt(delays):
    client = ScriptedClient(httpx.Response(200, content=b"\x89PNG"))

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE))

    assert outcome.status is FetchStatus.SUCCESS
    assert outcome.data == b"\x89PNG"
    assert outcome.attempts == 1
    assert client.urls == ["https://tiles.example.test/3/4/2.png"]
    assert delays == []


def test_three_transient_failures_then_success(delays):
    client = ScriptedClient(
        httpx.Response(500, text="server exploded"),
        httpx.ConnectError("connection refused"),
        httpx.Response(503),
        httpx.Response(200, content=b"tile"),
    )

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE))

    assert outcome.status is FetchStatus.SUCCESS
    assert outcome.data == b"tile"
    assert outcome.attempts == 4
    assert len(client.urls) == 4
    assert delays == [0.25, 0.5, 1.0]


def test_not_found_is_permanent_and_not_retried(delays):
    client = ScriptedClient(httpx.Response(404, text="no such tile"))

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE))

    assert outcome.status is FetchStatus.ABSENT
    assert outcome.data is None
    assert outcome.attempts == 1
    assert len(client.urls) == 1
    assert delays == []


def test_exhausted_retries_report_last_error(delays):
    client = ScriptedClient(
        httpx.ReadTimeout("timed out"),
        httpx.Response(502, text="bad gateway"),
    )

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE))

    assert outcome.status is FetchStatus.FAILED
    assert outcome.attempts == fetcher.config.MAX_RETRIES == 4
    assert len(client.urls) == 4
    assert "502" in outcome.error
    assert "bad gateway" in outcome.error
    # Backoff doubles between attempts and never follows the last one.
    assert delays == [0.25, 0.5, 1.0]


def test_transport_error_as_last_error(delays):
    client = ScriptedClient(httpx.ConnectError("connection refused"))

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE, policy=RetryPolicy(max_retries=2)))

    assert outcome.status is FetchStatus.FAILED
    assert "ConnectError" in outcome.error
    assert len(client.urls) == 2
    assert delays == [0.25]


def test_retry_policy_delays():
    policy = RetryPolicy(max_retries=5, initial_delay_ms=100)
    assert [policy.delay_seconds(attempt) for attempt in range(1, 5)] == [0.1, 0.2, 0.4, 0.8]


def test_retry_policy_from_env(monkeypatch):
    monkeypatch.setenv("MBTILES_MAX_RETRIES", "2")
    monkeypatch.setenv("MBTILES_INITIAL_DELAY_MS", "10")
    assert RetryPolicy.from_env() == RetryPolicy(max_retries=2, initial_delay_ms=10)

    monkeypatch.setenv("MBTILES_MAX_RETRIES", "not-a-number")
    monkeypatch.setenv("MBTILES_INITIAL_DELAY_MS", "-5")
    assert RetryPolicy.from_env() == RetryPolicy()


def test_binary_error_payload_is_summarized(delays):
    response = httpx.Response(500, content=b"\x00" * 32, headers={"Content-Type": "image/png"})
    client = ScriptedClient(response)

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE, policy=RetryPolicy(max_retries=1)))

    assert outcome.status is FetchStatus.FAILED
    assert outcome.error == "HTTP 500 image/png payload (32 bytes)"
    assert delays == []


def test_html_error_page_is_reduced_to_one_line(delays):
    page = "\n\n  <h1>Service Unavailable</h1>\n<p>" + "retry later " * 40 + "</p>\n"
    client = ScriptedClient(httpx.Response(503, text=page, headers={"Content-Type": "text/html"}))

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE, policy=RetryPolicy(max_retries=1)))

    assert outcome.error == "HTTP 503 <h1>Service Unavailable</h1>"
    assert "retry later" not in outcome.error


def test_long_error_text_is_shortened(delays):
    client = ScriptedClient(httpx.Response(500, text="quota exceeded " * 30))

    outcome = asyncio.run(fetch_tile(client, TILE, TEMPLATE, policy=RetryPolicy(max_retries=1)))

    detail = outcome.error.removeprefix("HTTP 500 ")
    assert detail.startswith("quota exceeded")
    assert detail.endswith(" ...")
    assert len(detail) <= fetcher.DETAIL_WIDTH
