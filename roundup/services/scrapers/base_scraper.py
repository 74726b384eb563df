# roundup/services/scrapers/base_scraper.py

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

import httpx
import yaml  # type: ignore[import-untyped]

from ...config import MAX_TORRENT_SIZE_GB, logger
from ...errors import SourceError, SourceErrorKind
from ...models import SearchQuery, TorrentCandidate
from ...utils import contains_excluded_keyword

DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/115.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.9",
}

# Cache for site configurations to avoid repeated disk reads.
_config_cache: dict[Path, dict[str, Any]] = {}


def load_site_config(config_path: Path, required: Iterable[str] = ()) -> dict[str, Any]:
    """Load and minimally validate a YAML site configuration.

    Configuration files are cached in-memory after the first load.
    """
    resolved_path = config_path.resolve()
    cached = _config_cache.get(resolved_path)
    if cached is not None:
        return cached

    if not resolved_path.exists():
        raise FileNotFoundError(f"Scraper config not found: {resolved_path}")

    with resolved_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    missing = set(required) - data.keys()
    if missing:
        raise ValueError(f"Config missing keys: {', '.join(sorted(missing))}")

    _config_cache[resolved_path] = data
    return data


class Scraper(ABC):
    """
    Abstract base class for all source adapters.

    Every outbound request of an adapter instance goes through one semaphore,
    so the per-source concurrency ceiling holds across all targets being
    reconciled at the same time.
    """

    source_id: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        max_concurrent_requests: int = 2,
        timeout: float = 30.0,
        retries: int = 2,
        backoff: float = 1.0,
        page_delay: float = 0.0,
        max_pages: int = 5,
        min_seeders: int = 1,
        max_size_gb: float = MAX_TORRENT_SIZE_GB,
        exclude_keywords: Iterable[str] = (),
    ) -> None:
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.max_concurrent_requests = max(1, int(max_concurrent_requests))
        self.timeout = float(timeout)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff)
        self.page_delay = float(page_delay)
        self.max_pages = max(1, int(max_pages))
        self.min_seeders = max(0, int(min_seeders))
        self.max_size_bytes = int(float(max_size_gb) * 1024**3)
        self.exclude_keywords = [k for k in exclude_keywords if k]
        self._semaphore = asyncio.Semaphore(self.max_concurrent_requests)

    @abstractmethod
    async def search(self, query: SearchQuery) -> list[TorrentCandidate]:
        """
        Search the source for ``query``.

        Returns an empty list when the source has nothing (or does not serve
        this kind of media). Raises SourceError when the source is unreachable
        or its response can no longer be understood.
        """

    # --- Error helpers ---

    def _transient(self, message: str) -> SourceError:
        return SourceError(self.source_id, SourceErrorKind.TRANSIENT, message)

    def _permanent(self, message: str) -> SourceError:
        return SourceError(self.source_id, SourceErrorKind.PERMANENT, message)

    # --- HTTP ---

    async def _request(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        GET ``url`` under the source's semaphore, retrying transient failures
        with exponential backoff.
        """
        merged_headers = {**DEFAULT_HEADERS, **(headers or {})}
        last_error: SourceError
        attempt = 0

        while True:
            attempt += 1
            try:
                async with self._semaphore:
                    async with httpx.AsyncClient(
                        timeout=self.timeout, follow_redirects=True
                    ) as client:
                        logger.debug(f"[SCRAPER] {self.source_id}: GET {url} {params or ''}")
                        response = await client.get(
                            url, params=params, headers=merged_headers
                        )
            except httpx.TimeoutException as exc:
                last_error = self._transient(f"timeout fetching {url}: {exc}")
            except httpx.HTTPError as exc:
                last_error = self._transient(f"request error fetching {url}: {exc}")
            else:
                status = response.status_code
                if status == 429 or status >= 500:
                    last_error = self._transient(f"HTTP {status} from {url}")
                elif status >= 400:
                    raise self._permanent(f"HTTP {status} from {url}")
                else:
                    return response

            if attempt > self.retries:
                raise last_error
            delay = self.backoff * (2 ** (attempt - 1))
            logger.debug(
                "[SCRAPER] %s attempt %s failed: %s. Retrying in %ss.",
                self.source_id,
                attempt,
                last_error,
                delay,
            )
            await asyncio.sleep(delay)

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        response = await self._request(url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:  # JSON decode
            raise self._permanent(f"invalid JSON from {url}: {exc}") from exc

    async def _get_text(self, url: str, **kwargs: Any) -> tuple[str, str]:
        """Returns (final_url, body) so callers can detect redirects."""
        response = await self._request(url, **kwargs)
        return str(response.url), response.text

    # --- Shared candidate gate ---

    def _accept(self, candidate: TorrentCandidate) -> bool:
        """Source-independent sanity filters applied before results leave an adapter."""
        name = candidate.raw_title or candidate.title
        if candidate.seeders < self.min_seeders:
            return False
        if self.max_size_bytes and candidate.size_bytes > self.max_size_bytes:
            return False
        if self.exclude_keywords and contains_excluded_keyword(
            name, self.exclude_keywords
        ):
            return False
        return bool(candidate.info_hash)
