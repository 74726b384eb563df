import sys
from collections.abc import AsyncGenerator, Callable
from datetime import date
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure root path is available for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from roundup.db import (  # noqa: E402
    Episode,
    MediaItem,
    create_engine,
    create_session_factory,
    init_db,
)
from roundup.errors import GatewayError, TrackerFault  # noqa: E402
from roundup.models import ClientTorrentState, TorrentStatus  # noqa: E402
from roundup.services.catalog import CatalogRepository  # noqa: E402
from roundup.services.download_client import DownloadClient, TorrentFile  # noqa: E402
from roundup.services.download_store import DownloadStore  # noqa: E402
from roundup.utils import extract_info_hash  # noqa: E402


# --- HTTP fakes (patched in for httpx.AsyncClient) ---


class FakeResponse:
    def __init__(
        self,
        data: Any = None,
        status_code: int = 200,
        text: str | None = None,
        url: str = "https://example.org/page",
    ) -> None:
        self._data = data
        self.status_code = status_code
        self.text = text if text is not None else ""
        self.url = url

    def json(self):
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


class FakeAsyncClient:
    """
    Stands in for httpx.AsyncClient. Answers either from a queue of responses
    (exceptions in the queue are raised) or from a ``handler(url, params)``.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        handler: Callable[[str, dict | None], Any] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self.calls: list[tuple[str, dict | None]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get(self, url, params=None, headers=None):
        self.calls.append((url, params))
        item = self._handler(url, params) if self._handler else self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def make_response():
    return FakeResponse


@pytest.fixture
def fake_http(mocker):
    """Patches httpx.AsyncClient and returns the fake that will answer requests."""

    def _install(
        responses: list[Any] | None = None,
        handler: Callable[[str, dict | None], Any] | None = None,
    ) -> FakeAsyncClient:
        client = FakeAsyncClient(responses, handler)
        mocker.patch("httpx.AsyncClient", return_value=client)
        return client

    return _install


# --- Download daemon fake ---


class FakeGateway(DownloadClient):
    """In-memory download daemon implementing the gateway contract."""

    name = "fake daemon"

    def __init__(self) -> None:
        self.submitted: list[str] = []
        self.statuses: dict[str, TorrentStatus] = {}
        self.files: dict[str, list[TorrentFile]] = {}
        self.removed: list[str] = []
        self.reannounced: list[str] = []
        self.unwanted: dict[str, list[int]] = {}
        self.fail_submit = False
        self.unreachable = False
        self.faulty_hashes: set[str] = set()
        self.closed = False

    async def submit(self, magnet: str) -> str:
        if self.unreachable or self.fail_submit:
            raise GatewayError("daemon unreachable")
        magnet_hash = extract_info_hash(magnet)
        assert magnet_hash
        self.submitted.append(magnet_hash)
        self.statuses.setdefault(
            magnet_hash, TorrentStatus(ClientTorrentState.QUEUED, 0.0)
        )
        return magnet_hash

    async def status(self, magnet_hash: str) -> TorrentStatus:
        if self.unreachable:
            raise GatewayError("daemon unreachable")
        if magnet_hash in self.faulty_hashes:
            raise TrackerFault(magnet_hash, "bad answer")
        return self.statuses.get(
            magnet_hash, TorrentStatus(ClientTorrentState.MISSING, 0.0)
        )

    def set_status(self, magnet_hash: str, state: ClientTorrentState, progress: float) -> None:
        self.statuses[magnet_hash] = TorrentStatus(state, progress)

    async def remove(self, magnet_hash: str, delete_files: bool = False) -> None:
        if self.unreachable:
            raise GatewayError("daemon unreachable")
        self.removed.append(magnet_hash)
        self.statuses.pop(magnet_hash, None)

    async def list_files(self, magnet_hash: str) -> list[TorrentFile]:
        return self.files.get(magnet_hash, [])

    async def set_files_wanted(self, magnet_hash: str, indexes: list[int], wanted: bool) -> None:
        if not wanted:
            self.unwanted.setdefault(magnet_hash, []).extend(indexes)

    async def reannounce(self, magnet_hash: str) -> None:
        self.reannounced.append(magnet_hash)

    async def aclose(self) -> None:
        self.closed = True


# --- Database fixtures ---


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'roundup-test.sqlite3'}")
    await init_db(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def catalog(session_factory) -> CatalogRepository:
    return CatalogRepository(session_factory)


@pytest.fixture
def store(session_factory) -> DownloadStore:
    return DownloadStore(session_factory)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def add_media(session_factory):
    async def _add(
        media_id: str,
        kind: str,
        title: str,
        year: int | None = None,
        watchlist: bool = True,
    ) -> None:
        async with session_factory() as session:
            session.add(
                MediaItem(id=media_id, kind=kind, title=title, year=year, watchlist=watchlist)
            )
            await session.commit()

    return _add


@pytest.fixture
def add_episodes(session_factory):
    async def _add(
        media_id: str, episodes: list[tuple[int, int]], air_date: date | None = None
    ) -> None:
        async with session_factory() as session:
            for season, episode in episodes:
                session.add(
                    Episode(
                        media_id=media_id,
                        season=season,
                        episode=episode,
                        air_date=air_date,
                    )
                )
            await session.commit()

    return _add
