# roundup/services/scrapers/therarbg.py

from __future__ import annotations

import asyncio
import re
import urllib.parse
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup, Tag

from ...config import logger
from ...errors import SourceError
from ...models import MediaKind, SearchQuery, TorrentCandidate
from ...utils import (
    extract_info_hash,
    parse_quality,
    parse_size_to_bytes,
    parse_torrent_name,
)
from .base_scraper import Scraper, load_site_config

CONFIG_PATH = Path(__file__).parent / "configs" / "therarbg.yaml"
REQUIRED_KEYS = {
    "site_name",
    "base_url",
    "search_path",
    "category_mapping",
    "results_page_selectors",
    "details_page_selectors",
}


@dataclass
class _ResultRow:
    name: str
    details_link: str
    kind: MediaKind
    seeders: int
    leechers: int
    size_bytes: int
    parsed: dict[str, Any]
    rank: int


class TheRarbgScraper(Scraper):
    """Scrapes TheRARBG search listings and detail pages using YAML-declared selectors."""

    source_id = "therarbg"

    def __init__(self, *, site_config: dict[str, Any] | None = None, **kwargs: Any) -> None:
        self.config = site_config or load_site_config(CONFIG_PATH, REQUIRED_KEYS)
        if not kwargs.get("base_url"):
            kwargs["base_url"] = self.config["base_url"]
        super().__init__(**kwargs)
        self.site_name: str = self.config.get("site_name", "TheRARBG")
        self.search_path: str = self.config["search_path"]
        self.category_mapping: dict[str, str] = self.config["category_mapping"]
        self.results_selectors: dict[str, Any] = self.config["results_page_selectors"]
        self.details_selectors: dict[str, Any] = self.config["details_page_selectors"]
        self.max_detail_pages = int(self.config.get("max_detail_pages", 10))
        self.language: str | None = self.config.get("language")

    async def search(self, query: SearchQuery) -> list[TorrentCandidate]:
        term = query.imdb_id or urllib.parse.quote(query.title)
        page_limit = self.max_pages if query.is_tv else 1
        matched: list[_ResultRow] = []
        offset = 0

        for page in range(1, page_limit + 1):
            if page > 1 and self.page_delay:
                await asyncio.sleep(self.page_delay)

            url = self.base_url + self.search_path.format(query=term, page=page)
            logger.info(f"[SCRAPER] {self.site_name}: Fetching search results from {url}")
            final_url, html = await self._get_text(url)

            # The site redirects to its front page once a query runs out of results.
            if final_url.rstrip("/") == self.base_url:
                break

            rows = self._parse_results_page(html, offset)
            if not rows:
                break
            offset += len(rows)
            matched.extend(row for row in rows if self._row_matches(row, query))

            if query.is_tv and not any(row.parsed.get("type") == "tv" for row in rows):
                logger.info(
                    f"[SCRAPER] {self.site_name}: Page {page} had no episodic results; stopping pagination."
                )
                break
        else:
            if query.is_tv:
                logger.info(
                    f"[SCRAPER] {self.site_name}: Reached the {page_limit}-page ceiling."
                )

        top_rows = sorted(matched, key=lambda r: (-r.seeders, r.rank))[
            : self.max_detail_pages
        ]
        resolved = await asyncio.gather(*(self._resolve_row(row) for row in top_rows))
        results = [c for c in resolved if c is not None and self._accept(c)]
        logger.info(
            f"[SCRAPER] {self.site_name}: Found {len(results)} torrents for {query.label()}."
        )
        return results

    # --- Results page ---

    def _parse_results_page(self, html: str, offset: int) -> list[_ResultRow]:
        soup = BeautifulSoup(html, "lxml")
        row_selector = self.results_selectors["result_row"]
        raw_rows = [r for r in soup.select(row_selector) if isinstance(r, Tag)]
        if not raw_rows:
            return []

        rows: list[_ResultRow] = []
        named_rows = 0
        for index, raw in enumerate(raw_rows):
            name = self._extract_text(raw, self.results_selectors.get("name"))
            if not name:
                continue
            named_rows += 1
            try:
                row = self._extract_data_from_row(raw, name, offset + index)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.debug(f"[SCRAPER] {self.site_name}: Failed to parse row: {exc}")
                continue
            if row is not None:
                rows.append(row)

        # A lone unnamed row is the site's "no results" placeholder.
        if named_rows == 0 and len(raw_rows) > 1:
            raise self._permanent(
                f"{len(raw_rows)} result rows but none matched the name selector"
            )
        return rows

    def _extract_data_from_row(
        self, raw: Tag, name: str, rank: int
    ) -> _ResultRow | None:
        details_link = self._extract_href(raw, self.results_selectors.get("name"))
        category = self._extract_text(raw, self.results_selectors.get("category"))
        kind_value = self.category_mapping.get(category.strip())
        if not details_link or not kind_value:
            return None

        size_text = self._extract_text(raw, self.results_selectors.get("size"))
        return _ResultRow(
            name=name,
            details_link=details_link,
            kind=MediaKind(kind_value),
            seeders=self._extract_int(raw, self.results_selectors.get("seeders")),
            leechers=self._extract_int(raw, self.results_selectors.get("leechers")),
            size_bytes=parse_size_to_bytes(size_text) if size_text else 0,
            parsed=parse_torrent_name(name),
            rank=rank,
        )

    def _row_matches(self, row: _ResultRow, query: SearchQuery) -> bool:
        if row.kind is not query.kind or row.seeders <= 0:
            return False
        if query.is_tv:
            return (
                row.parsed.get("type") == "tv"
                and row.parsed.get("season") == query.season
                and row.parsed.get("episode") == query.episode
            )
        return row.parsed.get("type") != "tv"

    # --- Detail page ---

    async def _resolve_row(self, row: _ResultRow) -> TorrentCandidate | None:
        url = urllib.parse.urljoin(f"{self.base_url}/", row.details_link.lstrip("/"))
        try:
            _, html = await self._get_text(url)
        except SourceError as exc:
            logger.warning(
                f"[SCRAPER] {self.site_name}: Detail page for '{row.name}' unavailable: {exc}"
            )
            return None

        soup = BeautifulSoup(html, "lxml")
        magnet = self._extract_href(soup, self.details_selectors.get("magnet_url"))
        info_hash = extract_info_hash(magnet or "")
        if not magnet or not info_hash:
            logger.debug(f"[SCRAPER] {self.site_name}: No magnet on detail page {url}")
            return None

        language = self._extract_info_value(soup, "Language:")
        if self.language and language and language.lower() != self.language.lower():
            logger.debug(
                f"[SCRAPER] {self.site_name}: Dropping '{row.name}' (language {language})."
            )
            return None

        name = self._extract_text(soup, self.details_selectors.get("name")) or row.name
        parsed = row.parsed
        return TorrentCandidate(
            source=self.source_id,
            title=name,
            quality=parse_quality(name),
            magnet=magnet,
            info_hash=info_hash,
            seeders=row.seeders,
            leechers=row.leechers,
            size_bytes=row.size_bytes,
            season=parsed.get("season"),
            episode=parsed.get("episode"),
            year=parsed.get("year"),
            source_rank=row.rank,
            raw_title=row.name,
        )

    def _extract_info_value(self, soup: BeautifulSoup, label: str) -> str | None:
        for info_row in soup.select(self.details_selectors.get("info_row", "tbody > tr")):
            header = self._extract_text(info_row, self.details_selectors.get("info_label", "th"))
            if header != label:
                continue
            return self._extract_text(
                info_row, self.details_selectors.get("info_value", "td")
            ) or None
        return None

    # --- Selector helpers ---

    def _extract_text(self, root: Tag, selector: Any) -> str:
        tag = root.select_one(selector) if isinstance(selector, str) else None
        return tag.get_text(strip=True) if isinstance(tag, Tag) else ""

    def _extract_href(self, root: Tag, selector: Any) -> str | None:
        tag = root.select_one(selector) if isinstance(selector, str) else None
        if not isinstance(tag, Tag):
            return None
        href = tag.get("href")
        return href if isinstance(href, str) else None

    def _extract_int(self, root: Tag, selector: Any) -> int:
        text = self._extract_text(root, selector)
        # Counts may carry thousand separators (e.g. "1,927").
        cleaned = re.sub(r"[^\d]", "", text)
        return int(cleaned) if cleaned else 0
