# roundup/errors.py

from __future__ import annotations

from enum import Enum


class RoundupError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(RoundupError, ValueError):
    pass


class SourceErrorKind(str, Enum):
    TRANSIENT = "transient"  # network, timeout, rate limit
    PERMANENT = "permanent"  # upstream format no longer matches the parser


class SourceError(RoundupError):
    """A source adapter could not produce results for a query."""

    def __init__(self, source_id: str, kind: SourceErrorKind, message: str) -> None:
        super().__init__(f"[{source_id}] {kind.value}: {message}")
        self.source_id = source_id
        self.kind = kind
        self.message = message

    @property
    def is_transient(self) -> bool:
        return self.kind is SourceErrorKind.TRANSIENT


class GatewayError(RoundupError):
    """The download daemon is unreachable or rejected a request."""


class TrackerFault(RoundupError):
    def __init__(self, magnet_hash: str, message: str) -> None:
        super().__init__(f"Status query failed for {magnet_hash}: {message}")
        self.magnet_hash = magnet_hash


class NotifyError(RoundupError):
    """The media server refresh could not be triggered."""
