# roundup/services/scrapers/eztv.py

from __future__ import annotations

import asyncio
from typing import Any

from ...config import logger
from ...models import SearchQuery, TorrentCandidate
from ...utils import extract_info_hash, parse_quality, safe_int
from .base_scraper import Scraper

PAGE_SIZE = 100


class EztvScraper(Scraper):
    """TV-only source backed by the EZTV get-torrents JSON API, keyed by IMDb id."""

    source_id = "eztv"
    default_base_url = "https://eztvx.to"

    async def search(self, query: SearchQuery) -> list[TorrentCandidate]:
        if not query.is_tv:
            return []
        if not query.imdb_id:
            logger.debug(f"[SCRAPER] EZTV: No IMDb id for {query.label()}; skipping.")
            return []

        imdb_numeric = query.imdb_id[2:]
        url = f"{self.base_url}/api/get-torrents"
        results: list[TorrentCandidate] = []
        seen = 0

        for page in range(1, self.max_pages + 1):
            if page > 1 and self.page_delay:
                await asyncio.sleep(self.page_delay)

            params: dict[str, Any] = {"imdb_id": imdb_numeric, "limit": PAGE_SIZE}
            if page > 1:
                params["page"] = page
            payload = await self._get_json(url, params=params)
            if not isinstance(payload, dict):
                raise self._permanent(f"get-torrents returned {type(payload).__name__}")

            # The API omits "torrents" entirely when there is nothing to list.
            torrents = payload.get("torrents") or []
            if not isinstance(torrents, list):
                raise self._permanent("get-torrents 'torrents' is not a list")
            if not torrents:
                break

            episodic_items = 0
            for item in torrents:
                rank = seen
                seen += 1
                parsed = self._parse_item(item)
                if parsed is None:
                    continue
                episodic_items += 1
                candidate = self._build_candidate(item, parsed, rank)
                if candidate is None:
                    continue
                if (candidate.season, candidate.episode) != (query.season, query.episode):
                    continue
                if self._accept(candidate):
                    results.append(candidate)

            total = safe_int(payload.get("torrents_count"))
            if episodic_items == 0:
                logger.info(
                    f"[SCRAPER] EZTV: Page {page} had no episodic results; stopping pagination."
                )
                break
            if total and page * PAGE_SIZE >= total:
                break
        else:
            logger.info(f"[SCRAPER] EZTV: Reached the {self.max_pages}-page ceiling.")

        logger.info(f"[SCRAPER] EZTV: Found {len(results)} torrents for {query.label()}.")
        return results

    @staticmethod
    def _parse_item(item: Any) -> tuple[int, int | None] | None:
        """Returns (season, episode) with episode None for season packs."""
        if not isinstance(item, dict):
            return None
        try:
            season = int(item["season"])
            episode = int(item["episode"])
        except (KeyError, TypeError, ValueError):
            return None
        if season <= 0:
            return None

        title = str(item.get("title", "")).lower()
        if episode == 0 and (
            "complete" in title or ("e0" not in title and "episode" not in title)
        ):
            return season, None
        return season, episode

    def _build_candidate(
        self, item: dict[str, Any], parsed: tuple[int, int | None], rank: int
    ) -> TorrentCandidate | None:
        filename = str(item.get("filename", ""))
        if ".multi" in filename.lower():
            return None
        seeders = safe_int(item.get("seeds"))
        if seeders <= 0:
            return None

        magnet = str(item.get("magnet_url") or "")
        info_hash = str(item.get("hash") or "").lower() or extract_info_hash(magnet)
        if not magnet or not info_hash:
            return None

        title = str(item.get("title") or filename)
        season, episode = parsed
        return TorrentCandidate(
            source=self.source_id,
            title=title,
            quality=parse_quality(title),
            magnet=magnet,
            info_hash=info_hash,
            seeders=seeders,
            leechers=safe_int(item.get("peers")),
            size_bytes=safe_int(item.get("size_bytes")),
            season=season,
            episode=episode,
            source_rank=rank,
            raw_title=filename or title,
        )
