# roundup/services/download_store.py

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import logger
from ..db import ActiveDownload, MediaItem
from ..models import (
    IN_FLIGHT_STATES,
    DownloadState,
    MediaKind,
    SearchQuery,
    TorrentCandidate,
)

_IN_FLIGHT_VALUES = [state.value for state in IN_FLIGHT_STATES]


def row_age_seconds(row: ActiveDownload, now: datetime | None = None) -> float:
    """Seconds since the row was last written. Naive timestamps are UTC."""
    stamp = row.updated_at or row.created_at
    if stamp is None:
        return 0.0
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - stamp).total_seconds())


def _completed_row(target_key: str):
    return (
        select(ActiveDownload.id)
        .where(
            ActiveDownload.target_key == target_key,
            ActiveDownload.state == DownloadState.COMPLETED.value,
        )
        .limit(1)
    )


class DownloadStore:
    """
    CRUD over ActiveDownload rows.

    The in-flight uniqueness of a target is enforced by a partial unique index,
    so ``reserve`` is the single atomic check-and-insert used by every
    concurrent reconciliation worker.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def reserve(
        self, query: SearchQuery, candidate: TorrentCandidate
    ) -> ActiveDownload | None:
        """
        Inserts a ``Not Started`` row for the target. Returns None if another
        in-flight row already holds the target or the same magnet hash.
        """
        row = ActiveDownload(
            media_id=query.media_id,
            target_key=query.target_key(),
            season=query.season,
            episode=query.episode,
            quality=candidate.quality,
            kind=query.kind.value,
            magnet_hash=candidate.info_hash,
            magnet_uri=candidate.magnet,
            title=candidate.title,
            source=candidate.source,
            state=DownloadState.NOT_STARTED.value,
            progress=0.0,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            reason = await self._settled_reason(session, query)
            if reason is not None:
                logger.info(
                    f"[DB] Target {query.target_key()} {reason}; reservation refused."
                )
                return None
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    f"[DB] Target {query.target_key()} is already in flight; reservation refused."
                )
                return None
        return row

    async def _settled_reason(
        self, session: AsyncSession, query: SearchQuery
    ) -> str | None:
        """Why a target must not be downloaded again, or None if it may be."""
        completed = await session.execute(_completed_row(query.target_key()))
        if completed.first() is not None:
            return "has already completed"
        if query.kind is MediaKind.MOVIE:
            watchlist = await session.scalar(
                select(MediaItem.watchlist).where(MediaItem.id == query.media_id)
            )
            if watchlist is False:
                return "is no longer on the watchlist"
        return None

    async def has_completed(self, target_key: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(_completed_row(target_key))
            return result.first() is not None

    async def confirm_submission(self, row_id: int, magnet_hash: str | None = None) -> None:
        """
        Marks a reservation as handed to the daemon. ``magnet_hash`` is the hash
        the daemon reported; it replaces the candidate's hash when they differ.
        """
        async with self._session_factory() as session:
            row = await session.get(ActiveDownload, row_id)
            if row is None or row.state != DownloadState.NOT_STARTED.value:
                return
            candidate_hash = row.magnet_hash
            row.state = DownloadState.DOWNLOADING.value
            row.updated_at = datetime.now(timezone.utc)
            if magnet_hash and magnet_hash != candidate_hash:
                logger.warning(
                    f"[DB] Daemon reported hash {magnet_hash} for {candidate_hash}; "
                    "tracking the daemon's hash."
                )
                row.magnet_hash = magnet_hash
            try:
                await session.commit()
                return
            except IntegrityError:
                await session.rollback()

            logger.error(
                f"[DB] Hash {magnet_hash} is already tracked by another download; "
                f"keeping {candidate_hash} for row {row_id}."
            )
            await session.execute(
                update(ActiveDownload)
                .where(
                    ActiveDownload.id == row_id,
                    ActiveDownload.state == DownloadState.NOT_STARTED.value,
                )
                .values(
                    state=DownloadState.DOWNLOADING.value,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def release(self, row_id: int) -> None:
        """Drops a reservation whose submission never reached the daemon."""
        async with self._session_factory() as session:
            await session.execute(
                delete(ActiveDownload).where(
                    ActiveDownload.id == row_id,
                    ActiveDownload.state == DownloadState.NOT_STARTED.value,
                )
            )
            await session.commit()

    async def is_in_flight(self, target_key: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActiveDownload.id).where(
                    ActiveDownload.target_key == target_key,
                    ActiveDownload.state.in_(_IN_FLIGHT_VALUES),
                )
            )
            return result.first() is not None

    async def in_flight_keys(self, media_id: str) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActiveDownload.target_key).where(
                    ActiveDownload.media_id == media_id,
                    ActiveDownload.state.in_(_IN_FLIGHT_VALUES),
                )
            )
            return set(result.scalars().all())

    async def completed_episodes(self, media_id: str) -> set[tuple[int, int]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActiveDownload.season, ActiveDownload.episode).where(
                    ActiveDownload.media_id == media_id,
                    ActiveDownload.state == DownloadState.COMPLETED.value,
                    ActiveDownload.season.is_not(None),
                    ActiveDownload.episode.is_not(None),
                )
            )
            return {(int(s), int(e)) for s, e in result.all()}

    async def failed_hashes(self, target_key: str) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActiveDownload.magnet_hash).where(
                    ActiveDownload.target_key == target_key,
                    ActiveDownload.state == DownloadState.FAILED.value,
                )
            )
            return set(result.scalars().all())

    async def list_in_flight(self) -> list[ActiveDownload]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ActiveDownload)
                .where(ActiveDownload.state.in_(_IN_FLIGHT_VALUES))
                .order_by(ActiveDownload.id)
            )
            return list(result.scalars().all())

    async def get(self, row_id: int) -> ActiveDownload | None:
        async with self._session_factory() as session:
            return await session.get(ActiveDownload, row_id)

    async def record_status(
        self,
        row_id: int,
        state: DownloadState,
        progress: float,
        clear_watchlist: bool = False,
    ) -> ActiveDownload | None:
        """
        Applies a tracker observation. Terminal rows are never touched again and
        progress only moves forward. Returns the row if it changed.

        With ``clear_watchlist``, a transition to Completed also drops the
        item's watchlist flag in the same commit.
        """
        progress = min(max(float(progress), 0.0), 1.0)
        async with self._session_factory() as session:
            row = await session.get(ActiveDownload, row_id)
            if row is None or row.state not in _IN_FLIGHT_VALUES:
                return None

            new_progress = max(row.progress or 0.0, progress)
            if state is DownloadState.COMPLETED:
                new_progress = 1.0
            if row.state == state.value and new_progress == row.progress:
                return None

            row.state = state.value
            row.progress = new_progress
            row.updated_at = datetime.now(timezone.utc)
            if clear_watchlist and state is DownloadState.COMPLETED:
                await session.execute(
                    update(MediaItem)
                    .where(MediaItem.id == row.media_id)
                    .values(watchlist=False)
                )
            await session.commit()
            return row
