# roundup/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MediaKind(str, Enum):
    MOVIE = "movie"
    TVSHOW = "tvshow"


class DownloadState(str, Enum):
    """Persisted lifecycle of an ActiveDownload row."""

    NOT_STARTED = "Not Started"
    DOWNLOADING = "Downloading"
    COMPLETED = "Completed"
    FAILED = "Failed"


IN_FLIGHT_STATES = (DownloadState.NOT_STARTED, DownloadState.DOWNLOADING)


class ClientTorrentState(str, Enum):
    """Normalised torrent state as reported by a download daemon."""

    QUEUED = "queued"
    METADATA = "metadata"
    DOWNLOADING = "downloading"
    STALLED = "stalled"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    MISSING = "missing"


@dataclass(frozen=True)
class SearchQuery:
    """What a source adapter is asked to find."""

    title: str
    kind: MediaKind
    year: int | None = None
    season: int | None = None
    episode: int | None = None
    media_id: str | None = None

    @property
    def is_tv(self) -> bool:
        return self.kind is MediaKind.TVSHOW

    @property
    def imdb_id(self) -> str | None:
        if self.media_id and self.media_id.startswith("tt"):
            return self.media_id
        return None

    def target_key(self) -> str:
        return build_target_key(self.media_id or self.title, self.season, self.episode)

    def label(self) -> str:
        base = f"{self.title} ({self.year})" if self.year else self.title
        if self.season is not None and self.episode is not None:
            return f"{base} S{self.season:02d}E{self.episode:02d}"
        return base


def build_target_key(media_id: str, season: int | None, episode: int | None) -> str:
    """Key identifying one acquirable unit: a movie, or one episode of a show."""
    if season is None or episode is None:
        return media_id
    return f"{media_id}:S{season:02d}E{episode:02d}"


@dataclass
class TorrentCandidate:
    """A single discoverable torrent, as normalised by a source adapter."""

    source: str
    title: str
    quality: str
    magnet: str
    info_hash: str
    seeders: int = 0
    leechers: int = 0
    size_bytes: int = 0
    season: int | None = None
    episode: int | None = None
    year: int | None = None
    source_rank: int | None = None
    raw_title: str | None = None


@dataclass(frozen=True)
class TorrentStatus:
    state: ClientTorrentState
    progress: float
    name: str | None = None
