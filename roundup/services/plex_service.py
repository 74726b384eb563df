# roundup/services/plex_service.py

import asyncio
from typing import Any

from plexapi.exceptions import NotFound, Unauthorized
from plexapi.server import PlexServer
from requests import exceptions as requests_exceptions

from ..config import logger
from ..errors import NotifyError
from ..models import MediaKind


def _should_suppress_plex_error(exc: Exception) -> bool:
    """Return True when the exception stems from transient Plex connectivity issues."""
    suppressible = (
        requests_exceptions.RequestException,
        TimeoutError,
        ConnectionError,
        OSError,
    )
    if isinstance(exc, suppressible):
        return True
    message = str(exc).lower()
    return "max retries exceeded" in message or "timed out" in message


def _has_valid_plex_token(plex_config: dict[str, Any] | None) -> bool:
    """Indicates whether the Plex token looks configured."""
    if not plex_config:
        return False
    token = str(plex_config.get("token") or "").strip()
    return bool(token) and token.upper() != "PLEX_TOKEN"


def _library_name(plex_config: dict[str, Any], kind: MediaKind) -> str:
    if kind is MediaKind.MOVIE:
        return plex_config.get("movies_library") or "Movies"
    return plex_config.get("tv_library") or "TV Shows"


async def refresh_library(plex_config: dict[str, Any] | None, kind: MediaKind) -> bool:
    """
    Triggers a Plex library scan for the library holding ``kind``.

    Returns False when Plex is not configured. Raises NotifyError when the scan
    could not be triggered.
    """
    if not plex_config or not _has_valid_plex_token(plex_config):
        logger.debug("[PLEX] Not configured; skipping library refresh.")
        return False

    library_name = _library_name(plex_config, kind)
    logger.info(f"[PLEX] Attempting to scan '{library_name}' library...")
    try:
        # Run blocking PlexAPI calls in a separate thread
        plex = await asyncio.to_thread(
            PlexServer, plex_config["url"], plex_config["token"]
        )
        target_library = await asyncio.to_thread(plex.library.section, library_name)
        await asyncio.to_thread(target_library.update)
    except Exception as e:
        error_map = {
            Unauthorized: "Plex token is invalid.",
            NotFound: f"Plex library '{library_name}' not found.",
        }
        reason = error_map.get(type(e), f"An unexpected error occurred: {e}")
        raise NotifyError(f"Plex scan failed: {reason}") from e

    logger.info(f"[PLEX] Successfully triggered Plex scan for '{library_name}'.")
    return True


async def get_existing_episodes(
    plex_config: dict[str, Any] | None, title: str, year: int | None = None
) -> set[tuple[int, int]]:
    """
    Returns the (season, episode) pairs Plex already holds for a show.

    An unconfigured or unreachable Plex yields an empty set; library awareness
    is an optimisation and never blocks reconciliation.
    """
    if not plex_config or not _has_valid_plex_token(plex_config):
        return set()

    library_name = _library_name(plex_config, MediaKind.TVSHOW)

    def _collect() -> set[tuple[int, int]]:
        plex = PlexServer(plex_config["url"], plex_config["token"])
        section = plex.library.section(library_name)
        params: dict[str, Any] = {"title": title}
        if isinstance(year, int):
            params["year"] = year
        shows = section.search(**params)
        if not shows and "year" in params:
            params.pop("year", None)
            shows = section.search(**params)
        if not shows:
            return set()
        found: set[tuple[int, int]] = set()
        for episode in shows[0].episodes():
            season_number = getattr(episode, "parentIndex", None)
            episode_number = getattr(episode, "index", None)
            if isinstance(season_number, int) and isinstance(episode_number, int):
                found.add((season_number, episode_number))
        return found

    try:
        return await asyncio.to_thread(_collect)
    except Exception as exc:  # noqa: BLE001
        if _should_suppress_plex_error(exc):
            logger.warning(f"[PLEX] Library lookup for '{title}' unavailable: {exc}")
        else:
            logger.error(f"[PLEX] Library lookup for '{title}' failed: {exc}")
        return set()
