import pytest
from unittest.mock import Mock
from plexapi.exceptions import NotFound, Unauthorized
from requests import exceptions as requests_exceptions

from roundup.errors import NotifyError
from roundup.models import MediaKind
from roundup.services.plex_service import (
    _should_suppress_plex_error,
    get_existing_episodes,
    refresh_library,
)

PLEX_CONFIG = {
    "url": "http://plex",
    "token": "abc",
    "movies_library": "Films",
    "tv_library": "Series",
}


@pytest.mark.asyncio
async def test_refresh_library_scans_the_movie_section(mocker):
    section = Mock()
    mock_plex = Mock()
    mock_plex.library.section.return_value = section
    server = mocker.patch(
        "roundup.services.plex_service.PlexServer", return_value=mock_plex
    )

    assert await refresh_library(PLEX_CONFIG, MediaKind.MOVIE) is True

    server.assert_called_once_with("http://plex", "abc")
    mock_plex.library.section.assert_called_once_with("Films")
    section.update.assert_called_once()


@pytest.mark.asyncio
async def test_refresh_library_uses_tv_section_and_defaults(mocker):
    mock_plex = Mock()
    mocker.patch("roundup.services.plex_service.PlexServer", return_value=mock_plex)

    await refresh_library({"url": "http://plex", "token": "abc"}, MediaKind.TVSHOW)

    mock_plex.library.section.assert_called_once_with("TV Shows")


@pytest.mark.asyncio
async def test_refresh_library_not_configured(mocker):
    server = mocker.patch("roundup.services.plex_service.PlexServer")

    assert await refresh_library({}, MediaKind.MOVIE) is False
    assert await refresh_library({"url": "http://plex", "token": "PLEX_TOKEN"}, MediaKind.MOVIE) is False
    server.assert_not_called()


@pytest.mark.asyncio
async def test_refresh_library_unauthorized(mocker):
    mocker.patch(
        "roundup.services.plex_service.PlexServer",
        side_effect=Unauthorized("bad token"),
    )

    with pytest.raises(NotifyError, match="token is invalid"):
        await refresh_library(PLEX_CONFIG, MediaKind.MOVIE)


@pytest.mark.asyncio
async def test_refresh_library_missing_section(mocker):
    mock_plex = Mock()
    mock_plex.library.section.side_effect = NotFound("no such section")
    mocker.patch("roundup.services.plex_service.PlexServer", return_value=mock_plex)

    with pytest.raises(NotifyError, match="'Series' not found"):
        await refresh_library(PLEX_CONFIG, MediaKind.TVSHOW)


@pytest.mark.asyncio
async def test_refresh_library_connection_error(mocker):
    mocker.patch(
        "roundup.services.plex_service.PlexServer",
        side_effect=requests_exceptions.ConnectionError("refused"),
    )

    with pytest.raises(NotifyError, match="unexpected error"):
        await refresh_library(PLEX_CONFIG, MediaKind.MOVIE)


def _episode(season, episode):
    return Mock(parentIndex=season, index=episode)


@pytest.mark.asyncio
async def test_get_existing_episodes(mocker):
    show = Mock()
    show.episodes.return_value = [_episode(1, 1), _episode(1, 2), _episode(None, 3)]
    section = Mock()
    section.search.return_value = [show]
    mock_plex = Mock()
    mock_plex.library.section.return_value = section
    mocker.patch("roundup.services.plex_service.PlexServer", return_value=mock_plex)

    found = await get_existing_episodes(PLEX_CONFIG, "Show Name", 2024)

    assert found == {(1, 1), (1, 2)}
    mock_plex.library.section.assert_called_once_with("Series")
    section.search.assert_called_once_with(title="Show Name", year=2024)


@pytest.mark.asyncio
async def test_get_existing_episodes_retries_without_year(mocker):
    show = Mock()
    show.episodes.return_value = [_episode(2, 5)]
    section = Mock()
    section.search.side_effect = [[], [show]]
    mock_plex = Mock()
    mock_plex.library.section.return_value = section
    mocker.patch("roundup.services.plex_service.PlexServer", return_value=mock_plex)

    found = await get_existing_episodes(PLEX_CONFIG, "Show Name", 2024)

    assert found == {(2, 5)}
    assert section.search.call_count == 2
    section.search.assert_called_with(title="Show Name")


@pytest.mark.asyncio
async def test_get_existing_episodes_swallows_plex_failures(mocker):
    mocker.patch(
        "roundup.services.plex_service.PlexServer",
        side_effect=requests_exceptions.ConnectionError("Max retries exceeded"),
    )

    assert await get_existing_episodes(PLEX_CONFIG, "Show Name") == set()


@pytest.mark.asyncio
async def test_get_existing_episodes_not_configured(mocker):
    server = mocker.patch("roundup.services.plex_service.PlexServer")

    assert await get_existing_episodes(None, "Show Name") == set()
    server.assert_not_called()


def test_should_suppress_plex_error():
    assert _should_suppress_plex_error(requests_exceptions.Timeout("slow"))
    assert _should_suppress_plex_error(OSError("network down"))
    assert _should_suppress_plex_error(Exception("Read timed out"))
    assert not _should_suppress_plex_error(ValueError("bad value"))
