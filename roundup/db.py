# roundup/db.py

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.sql import func

from .config import logger

# Both the SQLite and PostgreSQL partial indexes share this predicate.
_IN_FLIGHT_PREDICATE = "state IN ('Not Started', 'Downloading')"


class Base(DeclarativeBase):
    pass


class MediaItem(Base):
    """Catalog entry. Owned by the catalog importer; the engine only flips ``watchlist``."""

    __tablename__ = "media_items"

    id = Column(String(32), primary_key=True)  # IMDb id, e.g. tt0133093
    kind = Column(String(10), nullable=False)  # movie | tvshow
    title = Column(Text, nullable=False)
    year = Column(Integer, nullable=True)
    watchlist = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Episode(Base):
    """Per-show episode listing written by the catalog importer."""

    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("media_id", "season", "episode", name="uq_episode"),
    )

    id = Column(Integer, primary_key=True)
    media_id = Column(String(32), nullable=False, index=True)
    season = Column(Integer, nullable=False)
    episode = Column(Integer, nullable=False)
    title = Column(Text, nullable=True)
    air_date = Column(Date, nullable=True)


class ActiveDownload(Base):
    __tablename__ = "active_downloads"
    __table_args__ = (
        # At most one in-flight row per movie / episode.
        Index(
            "uq_active_downloads_inflight_target",
            "target_key",
            unique=True,
            sqlite_where=text(_IN_FLIGHT_PREDICATE),
            postgresql_where=text(_IN_FLIGHT_PREDICATE),
        ),
        Index(
            "uq_active_downloads_inflight_hash",
            "magnet_hash",
            unique=True,
            sqlite_where=text(_IN_FLIGHT_PREDICATE),
            postgresql_where=text(_IN_FLIGHT_PREDICATE),
        ),
    )

    id = Column(Integer, primary_key=True)
    media_id = Column(String(32), nullable=False, index=True)
    target_key = Column(String(64), nullable=False, index=True)
    season = Column(Integer, nullable=True)
    episode = Column(Integer, nullable=True)
    quality = Column(String(16), nullable=False)
    kind = Column(String(10), nullable=False)
    magnet_hash = Column(String(40), nullable=False, index=True)
    magnet_uri = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    source = Column(String(32), nullable=True)
    state = Column(String(20), nullable=False, default="Not Started", index=True)
    progress = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, future=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Schema ready.")
