# roundup/services/catalog.py

from __future__ import annotations

from datetime import date

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import logger
from ..db import Episode, MediaItem


class CatalogRepository:
    """Read access to watchlist items and episode listings, plus the watchlist flag."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_watchlist(self) -> list[MediaItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(MediaItem)
                .where(MediaItem.watchlist.is_(True))
                .order_by(MediaItem.id)
            )
            return list(result.scalars().all())

    async def get_item(self, media_id: str) -> MediaItem | None:
        async with self._session_factory() as session:
            return await session.get(MediaItem, media_id)

    async def set_watchlist(self, media_id: str, value: bool) -> bool:
        """Returns True when a row was updated."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(MediaItem)
                .where(MediaItem.id == media_id)
                .values(watchlist=value)
            )
            await session.commit()
        updated = bool(result.rowcount)
        if updated:
            logger.info(f"[DB] Watchlist flag for {media_id} set to {value}.")
        else:
            logger.warning(f"[DB] Watchlist update for unknown item {media_id}.")
        return updated

    async def list_episodes(
        self, media_id: str, aired_on_or_before: date | None = None
    ) -> list[tuple[int, int]]:
        """
        Returns (season, episode) pairs known for a show, ordered. Episodes with
        a future air date are left out; undated episodes are kept.
        """
        query = select(Episode.season, Episode.episode).where(
            Episode.media_id == media_id, Episode.season > 0
        )
        if aired_on_or_before is not None:
            query = query.where(
                or_(Episode.air_date.is_(None), Episode.air_date <= aired_on_or_before)
            )
        query = query.order_by(Episode.season, Episode.episode)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [(int(s), int(e)) for s, e in result.all()]
