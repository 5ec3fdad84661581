import httpx
import pytest

from mbtiles_offline import cli
from mbtiles_offline.services.store import TileStore


class MockAsyncClient:
    requests_made: list[str] = []
    last_headers: dict[str, str] = {}
    status_code = 200

    def __init__(self, *args, **kwargs):
        self.headers = kwargs.get("headers", {})
        MockAsyncClient.last_headers = dict(self.headers)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def get(self, url: str):
        self.requests_made.append(url)
        return httpx.Response(self.status_code, content=b"\x01")


@pytest.fixture
def mock_client(monkeypatch):
    MockAsyncClient.requests_made = []
    MockAsyncClient.last_headers = {}
    MockAsyncClient.status_code = 200
    monkeypatch.setenv("MBTILES_INITIAL_DELAY_MS", "0")
    monkeypatch.setattr(httpx, "AsyncClient", MockAsyncClient)
    return MockAsyncClient


def test_cli_builds_archive(tmp_path, mock_client):
    output = tmp_path / "london.mbtiles"

    code = cli.main(
        [
            "--bounds=-0.5,51.3,0.3,51.7",
            "--zoom",
            "0-2",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(output),
            "--name",
            "London",
            "--meta",
            "attribution=OSM",
        ]
    )

    assert code == cli.EXIT_OK
    assert len(mock_client.requests_made) == 5
    with TileStore(output) as store:
        assert store.count_tiles() == 5
        metadata = store.read_metadata()
    assert metadata["name"] == "London"
    assert metadata["attribution"] == "OSM"


def test_cli_reports_tile_failures(tmp_path, mock_client):
    mock_client.status_code = 500

    code = cli.main(
        [
            "--bounds=-0.5,51.3,0.3,51.7",
            "--zoom",
            "0",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(tmp_path / "fail.mbtiles"),
        ]
    )

    assert code == cli.EXIT_TILE_FAILURES


def test_cli_rejects_inverted_zoom_range(tmp_path, mock_client):
    output = tmp_path / "never.mbtiles"
    code = cli.main(
        [
            "--bounds=-0.5,51.3,0.3,51.7",
            "--zoom",
            "3-1",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(output),
        ]
    )

    assert code == cli.EXIT_FATAL
    assert not output.exists()
    assert mock_client.requests_made == []


def test_parse_helpers():
    assert cli.parse_zoom_range("4") == (4, 4)
    assert cli.parse_zoom_range("0-12") == (0, 12)
    assert cli.parse_meta(["type=overlay", "attribution=a=b"]) == {
        "type": "overlay",
        "attribution": "a=b",
    }

    west, south, east, north = cli.bounds_around(0.0, 0.0, 111.0)
    assert (west, south, east, north) == pytest.approx((-1.0, -1.0, 1.0, 1.0))


def test_cli_sends_user_agent_and_extra_headers(tmp_path, mock_client, monkeypatch):
    monkeypatch.setenv("MBTILES_USER_AGENT", "  field-kit/2.1  ")

    code = cli.main(
        [
            "--bounds=-0.5,51.3,0.3,51.7",
            "--zoom",
            "0",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(tmp_path / "headers.mbtiles"),
            "--header",
            "Referer=https://example.test/app",
        ]
    )

    assert code == cli.EXIT_OK
    assert mock_client.last_headers == {
        "User-Agent": "field-kit/2.1",
        "Referer": "https://example.test/app",
    }


def test_cli_rejects_latitudes_beyond_the_tile_grid(tmp_path, mock_client):
    output = tmp_path / "polar.mbtiles"
    code = cli.main(
        [
            "--bounds=0,-90,1,1",
            "--zoom",
            "0-1",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(output),
        ]
    )

    assert code == cli.EXIT_FATAL
    assert not output.exists()
    assert mock_client.requests_made == []


def test_cli_around_a_point_near_the_pole(tmp_path, mock_client):
    output = tmp_path / "arctic.mbtiles"
    code = cli.main(
        [
            "--around",
            "89.5,0",
            "--radius",
            "200",
            "--zoom",
            "0-1",
            "--url",
            "https://tiles.example.test/{z}/{x}/{y}.png",
            "--output",
            str(output),
        ]
    )

    assert code == cli.EXIT_OK
    # The whole top row: one tile at zoom 0, two at zoom 1.
    assert sorted(mock_client.requests_made) == [
        "https://tiles.example.test/0/0/0.png",
        "https://tiles.example.test/1/0/0.png",
        "https://tiles.example.test/1/1/0.png",
    ]


def test_bounds_around_stays_on_the_tile_grid():
    limit = cli.MERCATOR_LATITUDE_LIMIT
    west, south, east, north = cli.bounds_around(89.5, 0.0, 200.0)
    assert (west, east) == (-180.0, 180.0)
    assert south == north == limit

    west, south, east, north = cli.bounds_around(-84.0, 10.0, 500.0)
    assert south == -limit
    assert -limit < north < -79.0
