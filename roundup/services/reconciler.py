# roundup/services/reconciler.py

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable
from datetime import date
from enum import Enum
from typing import Any

from ..config import logger
from ..db import MediaItem
from ..errors import GatewayError
from ..models import MediaKind, SearchQuery, build_target_key
from . import plex_service, scoring
from .catalog import CatalogRepository
from .download_client import DownloadClient
from .download_store import DownloadStore
from .search_logic import Aggregator


class TargetOutcome(str, Enum):
    SUBMITTED = "submitted"
    IN_FLIGHT = "in_flight"
    ALREADY_DONE = "already_done"
    NO_CANDIDATE = "no_candidate"
    RESERVED_ELSEWHERE = "reserved_elsewhere"
    GATEWAY_ERROR = "gateway_error"
    ERROR = "error"


class WatchlistReconciler:
    """
    One reconciliation cycle: expand the watchlist into targets, then search,
    select and submit for each target that has nothing in flight.

    Holds no state between cycles; everything durable lives in the store.
    """

    def __init__(
        self,
        catalog: CatalogRepository,
        store: DownloadStore,
        aggregator: Aggregator,
        gateway: DownloadClient,
        search_config: dict[str, Any],
        plex_config: dict[str, Any] | None = None,
        max_concurrent_targets: int = 4,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.aggregator = aggregator
        self.gateway = gateway
        self.preferences: dict[str, Any] = search_config.get("preferences", {})
        self.plex_config = plex_config or {}
        self.max_concurrent_targets = max(1, int(max_concurrent_targets))
        self._today = today

    async def run_cycle(self) -> Counter[TargetOutcome]:
        items = await self.catalog.fetch_watchlist()
        logger.info(f"[RECONCILE] Cycle started with {len(items)} watchlist entries.")

        targets: list[SearchQuery] = []
        for item in items:
            try:
                targets.extend(await self.build_targets(item))
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"[RECONCILE] Could not expand targets for {item.id}: {exc}",
                    exc_info=True,
                )

        semaphore = asyncio.Semaphore(self.max_concurrent_targets)

        async def _bounded(query: SearchQuery) -> TargetOutcome:
            async with semaphore:
                return await self._guarded_process(query)

        outcomes = await asyncio.gather(*(_bounded(query) for query in targets))
        summary: Counter[TargetOutcome] = Counter(outcomes)
        logger.info(
            f"[RECONCILE] Cycle finished: {len(targets)} targets, "
            + ", ".join(f"{k.value}={v}" for k, v in sorted(summary.items()))
        )
        return summary

    async def build_targets(self, item: MediaItem) -> list[SearchQuery]:
        """Expands one watchlist entry into the targets still worth searching for."""
        try:
            kind = MediaKind(item.kind)
        except ValueError:
            logger.warning(f"[RECONCILE] Unknown media kind '{item.kind}' for {item.id}; skipping.")
            return []

        if kind is MediaKind.MOVIE:
            return [SearchQuery(title=item.title, kind=kind, year=item.year, media_id=item.id)]

        missing = await self.missing_episodes(item)
        return [
            SearchQuery(
                title=item.title,
                kind=kind,
                year=item.year,
                season=season,
                episode=episode,
                media_id=item.id,
            )
            for season, episode in missing
        ]

    async def missing_episodes(self, item: MediaItem) -> list[tuple[int, int]]:
        """
        Aired episodes with no completed or in-flight download, in broadcast
        order and capped at ``max_episodes_per_show``.
        """
        aired = await self.catalog.list_episodes(item.id, aired_on_or_before=self._today())
        if not aired:
            logger.info(f"[RECONCILE] No episode listing for '{item.title}' yet.")
            return []

        completed = await self.store.completed_episodes(item.id)
        in_flight = await self.store.in_flight_keys(item.id)
        in_library: set[tuple[int, int]] = set()
        if self.plex_config:
            in_library = await plex_service.get_existing_episodes(
                self.plex_config, item.title, item.year
            )

        limit = int(self.preferences.get("max_episodes_per_show", 10))
        missing = [
            (season, episode)
            for season, episode in aired
            if (season, episode) not in completed
            and (season, episode) not in in_library
            and build_target_key(item.id, season, episode) not in in_flight
        ]
        if len(missing) > limit:
            logger.info(
                f"[RECONCILE] '{item.title}' is missing {len(missing)} episodes; "
                f"targeting the first {limit} this cycle."
            )
        return missing[:limit]

    async def already_done(self, query: SearchQuery) -> bool:
        """
        True when the target has a completed download, or is a movie that has
        left the watchlist. A completed movie still flagged is unflagged here.
        """
        completed = await self.store.has_completed(query.target_key())
        if query.kind is not MediaKind.MOVIE:
            if completed:
                logger.info(f"[RECONCILE] {query.label()} already completed; skipping.")
            return completed

        item = await self.catalog.get_item(query.media_id)
        if item is None or not item.watchlist:
            logger.info(f"[RECONCILE] {query.label()} left the watchlist; skipping.")
            return True
        if completed:
            logger.warning(
                f"[RECONCILE] {query.label()} already completed but is still on the "
                "watchlist; clearing the flag."
            )
            await self.catalog.set_watchlist(query.media_id, False)
            return True
        return False

    async def _guarded_process(self, query: SearchQuery) -> TargetOutcome:
        try:
            return await self.process_target(query)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"[RECONCILE] Target {query.label()} failed: {exc}", exc_info=True
            )
            return TargetOutcome.ERROR

    async def process_target(self, query: SearchQuery) -> TargetOutcome:
        target_key = query.target_key()
        if await self.store.is_in_flight(target_key):
            logger.debug(f"[RECONCILE] {query.label()} already in flight; skipping.")
            return TargetOutcome.IN_FLIGHT
        # The watchlist was read when the cycle started; the tracker may have
        # finished this target since.
        if await self.already_done(query):
            return TargetOutcome.ALREADY_DONE

        candidates = await self.aggregator.search_all(query)
        failed_hashes = await self.store.failed_hashes(target_key)
        best = scoring.select(candidates, query, self.preferences, failed_hashes)
        if best is None:
            return TargetOutcome.NO_CANDIDATE

        row = await self.store.reserve(query, best)
        if row is None:
            return TargetOutcome.RESERVED_ELSEWHERE

        try:
            submitted_hash = await self.gateway.submit(best.magnet)
        except GatewayError as exc:
            await self.store.release(row.id)
            logger.warning(
                f"[RECONCILE] Submission of {query.label()} failed, will retry next cycle: {exc}"
            )
            return TargetOutcome.GATEWAY_ERROR
        except BaseException:
            await self.store.release(row.id)
            raise

        await self.store.confirm_submission(row.id, submitted_hash)
        logger.info(
            f"[RECONCILE] Submitted '{best.title}' ({best.quality}) for {query.label()}."
        )
        return TargetOutcome.SUBMITTED

    async def run_forever(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"[RECONCILE] Cycle aborted: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[RECONCILE] Loop stopped.")
