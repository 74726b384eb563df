# roundup/services/scrapers/yts.py

from __future__ import annotations

from typing import Any, Iterable

from ...config import logger
from ...models import SearchQuery, TorrentCandidate
from ...utils import build_magnet, normalize_quality_label, safe_int
from .base_scraper import Scraper

DEFAULT_TRACKERS = [
    "udp://open.demonii.com:1337/announce",
    "udp://tracker.openbittorrent.com:80",
    "udp://tracker.opentrackr.org:1337/announce",
    "udp://exodus.desync.com:6969/announce",
]


class YtsScraper(Scraper):
    """Movie-only source backed by the YTS list_movies JSON API."""

    source_id = "yts"
    default_base_url = "https://yts.mx"

    def __init__(self, *, trackers: Iterable[str] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.trackers = list(trackers) if trackers else list(DEFAULT_TRACKERS)

    async def search(self, query: SearchQuery) -> list[TorrentCandidate]:
        if query.is_tv:
            return []

        params: dict[str, Any] = {
            "query_term": query.imdb_id or query.title,
            "limit": 50,
        }
        url = f"{self.base_url}/api/v2/list_movies.json"
        logger.info(f"[SCRAPER] YTS: Querying list_movies for '{params['query_term']}'.")
        payload = await self._get_json(url, params=params)

        if not isinstance(payload, dict) or payload.get("status") != "ok":
            raise self._permanent(
                f"unexpected list_movies payload: {str(payload)[:200]}"
            )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise self._permanent("list_movies payload has no 'data' object")

        movies = data.get("movies") or []
        if not isinstance(movies, list):
            raise self._permanent("list_movies 'movies' is not a list")

        results: list[TorrentCandidate] = []
        rank = 0
        for movie in movies:
            if not isinstance(movie, dict):
                continue
            if not self._movie_matches(movie, query):
                continue
            for torrent in movie.get("torrents") or []:
                candidate = self._build_candidate(movie, torrent, rank)
                rank += 1
                if candidate is not None and self._accept(candidate):
                    results.append(candidate)

        logger.info(f"[SCRAPER] YTS: Found {len(results)} torrents for {query.label()}.")
        return results

    @staticmethod
    def _movie_matches(movie: dict[str, Any], query: SearchQuery) -> bool:
        if query.imdb_id:
            imdb_code = movie.get("imdb_code")
            if imdb_code and imdb_code != query.imdb_id:
                return False
        movie_year = safe_int(movie.get("year"))
        if query.year and movie_year and movie_year != query.year:
            return False
        return True

    def _build_candidate(
        self, movie: dict[str, Any], torrent: Any, rank: int
    ) -> TorrentCandidate | None:
        try:
            info_hash = str(torrent["hash"]).strip().lower()
            title = str(movie.get("title") or movie["title_long"])
            quality_raw = str(torrent.get("quality", ""))
            release_type = str(torrent.get("type", ""))
        except (KeyError, TypeError, AttributeError) as exc:
            logger.debug(f"[SCRAPER] YTS: Skipping malformed torrent entry: {exc}")
            return None
        if not info_hash:
            return None

        seeders = safe_int(torrent.get("seeds"))
        # YTS reports non-seeding peers as "peers".
        peers = safe_int(torrent.get("peers"))
        year = safe_int(movie.get("year")) or None
        raw_title = f"{movie.get('title_long') or title} [{quality_raw}.{release_type}] [YTS]"

        return TorrentCandidate(
            source=self.source_id,
            title=title,
            quality=normalize_quality_label(quality_raw),
            magnet=build_magnet(info_hash, title, self.trackers),
            info_hash=info_hash,
            seeders=seeders,
            leechers=peers,
            size_bytes=safe_int(torrent.get("size_bytes")),
            year=year,
            source_rank=rank,
            raw_title=raw_title,
        )
