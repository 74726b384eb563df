# roundup/services/search_logic.py

import asyncio
from collections import Counter
from typing import Any

from ..config import LOG_SCRAPER_RESULTS, logger
from ..errors import SourceError, SourceErrorKind
from ..models import SearchQuery, TorrentCandidate
from ..utils import format_bytes
from .scrapers import EztvScraper, Scraper, TheRarbgScraper, YtsScraper

SCRAPER_CLASSES: dict[str, type[Scraper]] = {
    "yts": YtsScraper,
    "eztv": EztvScraper,
    "therarbg": TheRarbgScraper,
}

# Extra time granted on top of an adapter's own retry schedule before the
# aggregator gives up on it for this query.
ADAPTER_DEADLINE_SLACK_SECONDS = 5.0


def build_scrapers(search_config: dict[str, Any]) -> list[Scraper]:
    """
    Instantiates every enabled source adapter from the [search] configuration.
    Unknown source ids are logged and ignored.
    """
    websites_config = search_config.get("websites", {})
    preferences = search_config.get("preferences", {})

    if not isinstance(websites_config, dict) or not websites_config:
        logger.warning("[SEARCH] No websites configured in config.ini.")
        return []

    scrapers: list[Scraper] = []
    for site_name, site_info in websites_config.items():
        normalized_name = str(site_name).strip().lower()
        if not isinstance(site_info, dict):
            logger.warning(
                f"[SEARCH] Skipping invalid item in 'websites' config: {site_name}"
            )
            continue
        if not site_info.get("enabled", True):
            logger.info(f"[SEARCH] Source '{normalized_name}' is disabled.")
            continue

        scraper_cls = SCRAPER_CLASSES.get(normalized_name)
        if scraper_cls is None:
            logger.warning(f"[SEARCH] Unknown source '{site_name}' in config; skipping.")
            continue

        kwargs: dict[str, Any] = {
            "base_url": site_info.get("base_url"),
            "max_concurrent_requests": site_info.get("max_concurrent_requests", 2),
            "timeout": site_info.get("timeout", 30),
            "retries": site_info.get("retries", 2),
            "page_delay": site_info.get("page_delay", 0),
            "max_pages": preferences.get("max_pages", 5),
            "min_seeders": preferences.get("min_seeders", 1),
            "max_size_gb": preferences.get("max_size_gb", 21),
            "exclude_keywords": preferences.get("exclude_keywords", []),
        }
        if scraper_cls is YtsScraper:
            kwargs["trackers"] = site_info.get("trackers")

        scrapers.append(scraper_cls(**kwargs))
        logger.info(f"[SEARCH] Source '{normalized_name}' enabled.")

    return scrapers


class Aggregator:
    """
    Fans one query out to every adapter concurrently and merges the results.

    A failing adapter contributes nothing; its error is counted in
    ``error_counts`` so operators can see which source is misbehaving.
    """

    def __init__(self, scrapers: list[Scraper]) -> None:
        self.scrapers = scrapers
        self.error_counts: Counter[tuple[str, str]] = Counter()

    async def search_all(self, query: SearchQuery) -> list[TorrentCandidate]:
        candidates, _ = await self.search_with_errors(query)
        return candidates

    async def search_with_errors(
        self, query: SearchQuery
    ) -> tuple[list[TorrentCandidate], list[SourceError]]:
        """Like ``search_all``, also returning the source errors of this query only."""
        if not self.scrapers:
            logger.warning("[SEARCH] No enabled search sites found to orchestrate.")
            return [], []

        logger.info(f"[SEARCH] Searching {len(self.scrapers)} sources for {query.label()}")
        outcomes = await asyncio.gather(
            *(self._run_adapter(scraper, query) for scraper in self.scrapers)
        )

        errors: list[SourceError] = []
        all_results: list[TorrentCandidate] = []
        for scraper, (site_results, error) in zip(self.scrapers, outcomes):
            if error is not None:
                errors.append(error)
            if LOG_SCRAPER_RESULTS:
                _log_scraper_results(scraper.source_id, site_results)
            all_results.extend(site_results)

        logger.info(
            f"[SEARCH] Orchestration complete for {query.label()}. "
            f"Returning {len(all_results)} results."
        )
        return all_results, errors

    async def _run_adapter(
        self, scraper: Scraper, query: SearchQuery
    ) -> tuple[list[TorrentCandidate], SourceError | None]:
        deadline = _adapter_deadline(scraper)
        try:
            results = await asyncio.wait_for(scraper.search(query), timeout=deadline)
            return results, None
        except asyncio.TimeoutError:
            error = SourceError(
                scraper.source_id,
                SourceErrorKind.TRANSIENT,
                f"no answer within {deadline:.0f}s",
            )
        except SourceError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001
            # An unexpected adapter bug is treated like upstream drift.
            logger.error(
                f"[SEARCH] Source '{scraper.source_id}' raised unexpectedly: {exc}",
                exc_info=True,
            )
            error = SourceError(scraper.source_id, SourceErrorKind.PERMANENT, repr(exc))
        self._record(error)
        return [], error

    def _record(self, error: SourceError) -> None:
        self.error_counts[(error.source_id, error.kind.value)] += 1
        if error.is_transient:
            logger.warning(
                f"[SCRAPER] {error.source_id} temporarily unavailable: {error.message}"
            )
        else:
            logger.error(
                f"[SCRAPER ERROR] {error.source_id} response could not be parsed; "
                f"upstream format may have changed: {error.message}"
            )


def _adapter_deadline(scraper: Scraper) -> float:
    """Worst-case time an adapter may take for one query, pagination included."""
    attempts = scraper.retries + 1
    backoff_total = sum(scraper.backoff * (2**i) for i in range(scraper.retries))
    per_request = scraper.timeout * attempts + backoff_total
    pages = scraper.max_pages + 1
    return per_request * pages + scraper.page_delay * pages + ADAPTER_DEADLINE_SLACK_SECONDS


def _log_scraper_results(site_label: str, results: list[TorrentCandidate]) -> None:
    """
    Emits a structured log entry enumerating each scraper result so operators
    can observe exactly what was returned before matching occurs.
    """
    header = f"--- {site_label} Scraper Results ---"
    lines = [header]
    if not results:
        lines.append("No results returned.")
        lines.append("--------------------")
        logger.info("\n".join(lines))
        return

    for idx, result in enumerate(results, start=1):
        lines.append(f"Result {idx}:")
        lines.append(f"  title: {result.title}")
        lines.append(f"  quality: {result.quality}")
        if result.season is not None:
            lines.append(f"  season/episode: {result.season}/{result.episode}")
        lines.append(f"  size: {format_bytes(result.size_bytes)}")
        lines.append(f"  seeders: {result.seeders}")
        lines.append(f"  leechers: {result.leechers}")
        lines.append(f"  hash: {result.info_hash}")
        lines.append("--------------------")
    logger.info("\n".join(lines))
