"""Error taxonomy for the chess session core.

Every failure the core can hit is one of four families. Each carries a
``kind`` so callers can branch without parsing messages. None of them
are fatal: the adapter and stores raise, the controller absorbs.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Discriminator carried by every ChessbotError."""

    ILLEGAL_MOVE = "illegal_move"
    INVALID_FEN = "invalid_fen"
    INVALID_PGN = "invalid_pgn"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    UNAVAILABLE = "unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    CORRUPT_IMPORT = "corrupt_import"


class ChessbotError(Exception):
    """Base class: message plus a machine-readable kind."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class MoveError(ChessbotError, ValueError):
    """A move the rules engine refused."""

    def __init__(self, message: str = "") -> None:
        super().__init__(ErrorKind.ILLEGAL_MOVE, message)


class PositionError(ChessbotError, ValueError):
    """Malformed FEN or PGN on load."""


class EngineError(ChessbotError, RuntimeError):
    """The analysis engine timed out or could not be reached."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        request_id: int | None = None,
    ) -> None:
        super().__init__(kind, message)
        self.request_id = request_id


class StoreError(ChessbotError):
    """Persistent store unavailable, full, or fed a corrupt import."""
