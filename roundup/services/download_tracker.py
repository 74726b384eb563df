# roundup/services/download_tracker.py

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Callable
from typing import Any

from ..config import logger
from ..db import ActiveDownload
from ..errors import GatewayError, NotifyError, TrackerFault
from ..models import ClientTorrentState, DownloadState, MediaKind, TorrentStatus
from . import plex_service
from .download_client import DownloadClient
from .download_store import DownloadStore, row_age_seconds

# A reserved row may not have reached the daemon yet; give the reconciler
# this long before treating "unknown to the daemon" as a removal.
RESERVATION_GRACE_SECONDS = 600


class DownloadTracker:
    """
    Polls the daemon for every in-flight row, records state and progress, and
    applies the completion policy.
    """

    def __init__(
        self,
        store: DownloadStore,
        gateway: DownloadClient,
        client_config: dict[str, Any] | None = None,
        plex_config: dict[str, Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        client_config = client_config or {}
        self.store = store
        self.gateway = gateway
        self.plex_config = plex_config or {}
        self.remove_completed = bool(client_config.get("remove_completed", True))
        self.valid_file_types = {
            ext.lower().lstrip(".") for ext in client_config.get("valid_file_types", [])
        }
        self.stalled_after_seconds = (
            int(client_config.get("stalled_reannounce_minutes", 30)) * 60
        )
        self._clock = clock
        self._filtered_hashes: set[str] = set()
        self._stalled_since: dict[str, float] = {}

    async def poll_once(self) -> int:
        """Runs one tracking pass. Returns the number of rows whose state or progress changed."""
        rows = await self.store.list_in_flight()
        changed = 0
        for row in rows:
            try:
                status = await self.gateway.status(row.magnet_hash)
            except GatewayError as exc:
                logger.warning(
                    f"[TRACKER] {self.gateway.name} unavailable, skipping this pass: {exc}"
                )
                return changed
            except TrackerFault as exc:
                logger.warning(f"[TRACKER] {exc}")
                continue

            try:
                if await self._apply(row, status):
                    changed += 1
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    f"[TRACKER] Failed to apply status for {row.magnet_hash}: {exc}",
                    exc_info=True,
                )
        return changed

    def _next_state(self, row: ActiveDownload, status: TorrentStatus) -> DownloadState | None:
        if status.state is ClientTorrentState.MISSING:
            if (
                row.state == DownloadState.NOT_STARTED.value
                and row_age_seconds(row) < RESERVATION_GRACE_SECONDS
            ):
                return None
            logger.warning(
                f"[TRACKER] '{row.title}' ({row.magnet_hash}) is no longer known to "
                f"{self.gateway.name}; marking it failed."
            )
            return DownloadState.FAILED
        if status.state is ClientTorrentState.ERROR:
            return DownloadState.FAILED
        if status.state is ClientTorrentState.COMPLETED or status.progress >= 1.0:
            return DownloadState.COMPLETED
        return DownloadState.DOWNLOADING

    async def _apply(self, row: ActiveDownload, status: TorrentStatus) -> bool:
        new_state = self._next_state(row, status)
        if new_state is None:
            return False

        # A finished movie leaves the watchlist in the same commit as its row.
        updated = await self.store.record_status(
            row.id,
            new_state,
            status.progress,
            clear_watchlist=row.kind == MediaKind.MOVIE.value,
        )

        if new_state is DownloadState.DOWNLOADING:
            await self._housekeeping(row.magnet_hash, status)
        else:
            self._forget(row.magnet_hash)

        if updated is None:
            return False
        logger.info(
            f"[TRACKER] '{updated.title}' is {updated.state} ({updated.progress:.1%})."
        )
        if new_state is DownloadState.COMPLETED:
            await self.on_completed(updated)
        return True

    async def on_completed(self, row: ActiveDownload) -> None:
        """
        Lifecycle policy: a finished movie has left the watchlist (see
        ``_apply``), a finished episode leaves its show tracked. The media
        server is told either way.
        """
        kind = MediaKind(row.kind)
        if kind is MediaKind.MOVIE:
            logger.info(f"[TRACKER] Movie {row.media_id} completed; removed from watchlist.")
        else:
            logger.info(
                f"[TRACKER] Episode {row.target_key} completed; show stays on the watchlist."
            )

        try:
            await plex_service.refresh_library(self.plex_config, kind)
        except NotifyError as exc:
            logger.error(f"[PLEX] {exc}")

        if self.remove_completed:
            try:
                await self.gateway.remove(row.magnet_hash, delete_files=False)
                logger.info(f"[CLIENT] Removed completed torrent {row.magnet_hash} (data kept).")
            except (GatewayError, TrackerFault) as exc:
                logger.warning(f"[CLIENT] Could not remove {row.magnet_hash}: {exc}")

    async def _housekeeping(self, magnet_hash: str, status: TorrentStatus) -> None:
        try:
            await self._filter_files(magnet_hash, status)
            await self._reannounce_if_stalled(magnet_hash, status)
        except (GatewayError, TrackerFault) as exc:
            logger.warning(f"[CLIENT] Housekeeping for {magnet_hash} failed: {exc}")

    async def _filter_files(self, magnet_hash: str, status: TorrentStatus) -> None:
        if not self.valid_file_types or magnet_hash in self._filtered_hashes:
            return
        if status.state is ClientTorrentState.METADATA:
            return  # file list is not known yet

        files = await self.gateway.list_files(magnet_hash)
        if not files:
            return
        unwanted = [
            f.index
            for f in files
            if f.wanted
            and os.path.splitext(f.name)[1].lower().lstrip(".") not in self.valid_file_types
        ]
        if len(unwanted) == len(files):
            logger.warning(
                f"[CLIENT] No file in {magnet_hash} matches {sorted(self.valid_file_types)}; "
                "leaving its file selection alone."
            )
        elif unwanted:
            await self.gateway.set_files_wanted(magnet_hash, unwanted, wanted=False)
            logger.info(f"[CLIENT] Skipping {len(unwanted)} non-media files in {magnet_hash}.")
        self._filtered_hashes.add(magnet_hash)

    async def _reannounce_if_stalled(self, magnet_hash: str, status: TorrentStatus) -> None:
        if status.state is not ClientTorrentState.STALLED:
            self._stalled_since.pop(magnet_hash, None)
            return
        now = self._clock()
        since = self._stalled_since.setdefault(magnet_hash, now)
        if now - since < self.stalled_after_seconds:
            return
        await self.gateway.reannounce(magnet_hash)
        self._stalled_since[magnet_hash] = now
        logger.info(f"[CLIENT] Re-announced stalled torrent {magnet_hash}.")

    def _forget(self, magnet_hash: str) -> None:
        self._filtered_hashes.discard(magnet_hash)
        self._stalled_since.pop(magnet_hash, None)

    async def run_forever(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"[TRACKER] Pass aborted: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[TRACKER] Loop stopped.")
