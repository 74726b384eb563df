import asyncio

import pytest

from roundup.errors import NotifyError
from roundup.models import (
    ClientTorrentState,
    DownloadState,
    MediaKind,
    SearchQuery,
    TorrentCandidate,
)
from roundup.services.download_client import TorrentFile
from roundup.services.download_tracker import DownloadTracker

MOVIE = SearchQuery(title="Alpha", kind=MediaKind.MOVIE, year=2020, media_id="tt1")
EPISODE = SearchQuery(
    title="Show Name", kind=MediaKind.TVSHOW, season=1, episode=2, media_id="tt2"
)
PLEX_CONFIG = {"url": "http://plex", "token": "abc"}


def _candidate(info_hash):
    return TorrentCandidate(
        source="yts",
        title="Release",
        quality="1080p",
        magnet=f"magnet:?xt=urn:btih:{info_hash}",
        info_hash=info_hash,
        seeders=10,
    )


async def _submitted(store, gateway, query, info_hash):
    row = await store.reserve(query, _candidate(info_hash))
    await gateway.submit(row.magnet_uri)
    await store.confirm_submission(row.id)
    return row


@pytest.fixture
def refresh(mocker):
    return mocker.patch(
        "roundup.services.plex_service.refresh_library",
        new=mocker.AsyncMock(return_value=True),
    )


@pytest.mark.asyncio
async def test_completed_movie_leaves_the_watchlist(
    store, catalog, gateway, add_media, refresh
):
    await add_media("tt1", "movie", "Alpha", 2020)
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.COMPLETED, 1.0)
    tracker = DownloadTracker(store, gateway, plex_config=PLEX_CONFIG)

    changed = await tracker.poll_once()

    assert changed == 1
    stored = await store.get(row.id)
    assert stored.state == DownloadState.COMPLETED.value
    assert stored.progress == 1.0
    assert (await catalog.get_item("tt1")).watchlist is False
    refresh.assert_awaited_once_with(PLEX_CONFIG, MediaKind.MOVIE)
    assert gateway.removed == ["a" * 40]


@pytest.mark.asyncio
async def test_completed_episode_keeps_the_show_on_the_watchlist(
    store, catalog, gateway, add_media, refresh
):
    await add_media("tt2", "tvshow", "Show Name", 2024)
    row = await _submitted(store, gateway, EPISODE, "b" * 40)
    gateway.set_status("b" * 40, ClientTorrentState.DOWNLOADING, 1.0)
    tracker = DownloadTracker(store, gateway, plex_config=PLEX_CONFIG)

    await tracker.poll_once()

    assert (await store.get(row.id)).state == DownloadState.COMPLETED.value
    assert (await catalog.get_item("tt2")).watchlist is True
    refresh.assert_awaited_once_with(PLEX_CONFIG, MediaKind.TVSHOW)
    assert await store.completed_episodes("tt2") == {(1, 2)}


@pytest.mark.asyncio
async def test_completion_is_handled_once(store, gateway, add_media, refresh):
    await add_media("tt1", "movie", "Alpha", 2020)
    await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.COMPLETED, 1.0)
    tracker = DownloadTracker(
        store, gateway, client_config={"remove_completed": False}
    )

    assert await tracker.poll_once() == 1
    assert await tracker.poll_once() == 0

    refresh.assert_awaited_once()
    assert gateway.removed == []


@pytest.mark.asyncio
async def test_plex_failure_does_not_undo_completion(
    store, catalog, gateway, add_media, refresh
):
    refresh.side_effect = NotifyError("Plex scan failed: Plex token is invalid.")
    await add_media("tt1", "movie", "Alpha", 2020)
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.COMPLETED, 1.0)
    tracker = DownloadTracker(store, gateway, plex_config=PLEX_CONFIG)

    await tracker.poll_once()

    assert (await store.get(row.id)).state == DownloadState.COMPLETED.value
    assert (await catalog.get_item("tt1")).watchlist is False


@pytest.mark.asyncio
async def test_watchlist_is_cleared_even_if_completion_follow_up_fails(
    store, catalog, gateway, add_media, refresh
):
    refresh.side_effect = OSError("database is locked")
    await add_media("tt1", "movie", "Alpha", 2020)
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.COMPLETED, 1.0)
    tracker = DownloadTracker(store, gateway, plex_config=PLEX_CONFIG)

    await tracker.poll_once()

    assert (await store.get(row.id)).state == DownloadState.COMPLETED.value
    assert (await catalog.get_item("tt1")).watchlist is False
    assert await store.reserve(MOVIE, _candidate("b" * 40)) is None


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(store, gateway, refresh):
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    tracker = DownloadTracker(store, gateway)

    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.5)
    assert await tracker.poll_once() == 1
    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.3)
    assert await tracker.poll_once() == 0

    stored = await store.get(row.id)
    assert stored.state == DownloadState.DOWNLOADING.value
    assert stored.progress == pytest.approx(0.5)
    refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_torrent_missing_from_daemon_is_marked_failed(
    store, catalog, gateway, add_media, refresh
):
    await add_media("tt1", "movie", "Alpha", 2020)
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.statuses.clear()
    tracker = DownloadTracker(store, gateway)

    await tracker.poll_once()

    assert (await store.get(row.id)).state == DownloadState.FAILED.value
    assert not await store.is_in_flight("tt1")
    assert (await catalog.get_item("tt1")).watchlist is True


@pytest.mark.asyncio
async def test_fresh_reservation_missing_from_daemon_is_left_alone(
    store, gateway
):
    row = await store.reserve(MOVIE, _candidate("a" * 40))
    tracker = DownloadTracker(store, gateway)

    assert await tracker.poll_once() == 0
    assert (await store.get(row.id)).state == DownloadState.NOT_STARTED.value


@pytest.mark.asyncio
async def test_daemon_error_state_fails_the_row(store, gateway, refresh):
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.ERROR, 0.2)
    tracker = DownloadTracker(store, gateway)

    await tracker.poll_once()

    assert (await store.get(row.id)).state == DownloadState.FAILED.value
    refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_unreachable_daemon_skips_the_pass(store, gateway):
    row = await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.COMPLETED, 1.0)
    gateway.unreachable = True
    tracker = DownloadTracker(store, gateway)

    assert await tracker.poll_once() == 0
    assert (await store.get(row.id)).state == DownloadState.DOWNLOADING.value


@pytest.mark.asyncio
async def test_status_fault_only_skips_that_row(store, gateway, refresh):
    faulty = await _submitted(store, gateway, MOVIE, "a" * 40)
    healthy = await _submitted(store, gateway, EPISODE, "b" * 40)
    gateway.faulty_hashes.add("a" * 40)
    gateway.set_status("b" * 40, ClientTorrentState.DOWNLOADING, 0.4)
    tracker = DownloadTracker(store, gateway)

    assert await tracker.poll_once() == 1
    assert (await store.get(faulty.id)).progress == 0.0
    assert (await store.get(healthy.id)).progress == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_non_media_files_are_deselected_once(store, gateway):
    await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.1)
    gateway.files["a" * 40] = [
        TorrentFile(0, "Alpha.2020.1080p.mkv", True),
        TorrentFile(1, "Alpha.2020.1080p.nfo", True),
        TorrentFile(2, "Sample/sample.txt", True),
        TorrentFile(3, "Subs/English.SRT", True),
    ]
    tracker = DownloadTracker(
        store, gateway, client_config={"valid_file_types": [".mkv", "srt"]}
    )

    await tracker.poll_once()
    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.2)
    await tracker.poll_once()

    assert gateway.unwanted == {"a" * 40: [1, 2]}


@pytest.mark.asyncio
async def test_file_selection_left_alone_when_nothing_matches(store, gateway):
    await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.1)
    gateway.files["a" * 40] = [TorrentFile(0, "Alpha.2020.iso", True)]
    tracker = DownloadTracker(
        store, gateway, client_config={"valid_file_types": ["mkv"]}
    )

    await tracker.poll_once()

    assert gateway.unwanted == {}


@pytest.mark.asyncio
async def test_files_wait_for_metadata(store, gateway):
    await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.METADATA, 0.0)
    gateway.files["a" * 40] = [
        TorrentFile(0, "Alpha.mkv", True),
        TorrentFile(1, "Alpha.txt", True),
    ]
    tracker = DownloadTracker(
        store, gateway, client_config={"valid_file_types": ["mkv"]}
    )

    await tracker.poll_once()
    assert gateway.unwanted == {}

    gateway.set_status("a" * 40, ClientTorrentState.DOWNLOADING, 0.0)
    await tracker.poll_once()
    assert gateway.unwanted == {"a" * 40: [1]}


@pytest.mark.asyncio
async def test_stalled_torrent_is_reannounced(store, gateway):
    await _submitted(store, gateway, MOVIE, "a" * 40)
    gateway.set_status("a" * 40, ClientTorrentState.STALLED, 0.3)
    now = [0.0]
    tracker = DownloadTracker(
        store,
        gateway,
        client_config={"stalled_reannounce_minutes": 1},
        clock=lambda: now[0],
    )

    await tracker.poll_once()
    now[0] = 30.0
    await tracker.poll_once()
    assert gateway.reannounced == []

    now[0] = 61.0
    await tracker.poll_once()
    assert gateway.reannounced == ["a" * 40]

    # The stall timer restarts after a re-announce.
    now[0] = 90.0
    await tracker.poll_once()
    assert gateway.reannounced == ["a" * 40]


@pytest.mark.asyncio
async def test_run_forever_stops_when_signalled(store, gateway, mocker):
    tracker = DownloadTracker(store, gateway)
    stop_event = asyncio.Event()
    poll = mocker.patch.object(tracker, "poll_once", new=mocker.AsyncMock())
    poll.side_effect = lambda: stop_event.set()

    await asyncio.wait_for(tracker.run_forever(3600, stop_event), timeout=5)

    poll.assert_awaited_once()
