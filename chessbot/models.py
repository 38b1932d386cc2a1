"""Shared data models for the chess session core.

Move, Settings, AnalysisResult and the persisted records (SavedGame,
Tab) are the contract between the controller, the stores and the
outer surfaces (MCP server, terminal board).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum

WHITE = "white"
BLACK = "black"
COLORS = (WHITE, BLACK)

HUMAN_VS_HUMAN = "human-vs-human"
HUMAN_VS_AI = "human-vs-ai"
MODES = (HUMAN_VS_HUMAN, HUMAN_VS_AI)


def opposite(color: str) -> str:
    """Return the other side's color name."""
    return BLACK if color == WHITE else WHITE


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with microseconds."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Move:
    """A move as realized on the board. Immutable once recorded."""

    origin: str
    destination: str
    promotion: str | None
    san: str
    uci: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Settings:
    """Per-tab game settings.

    ``ai_color`` is derived, so the human and the AI can never share a
    color.
    """

    mode: str = HUMAN_VS_AI
    human_color: str = WHITE
    ai_depth: int = 10
    board_orientation: str = WHITE
    show_analysis_arrows: bool = True
    auto_analysis: bool = False
    analysis_mode: bool = False

    @property
    def ai_color(self) -> str:
        return opposite(self.human_color)

    def merge(self, partial: dict) -> Settings:
        """Return a new Settings with ``partial`` applied.

        Accepts every field name plus ``ai_color``, which sets
        ``human_color`` to the opposite side.

        Raises:
            ValueError: On an unknown key or an invalid value. Nothing
                is applied in that case.
        """
        known = {f.name for f in fields(self)}
        updates: dict = {}
        for key, value in partial.items():
            if key == "ai_color":
                _check_color(key, value)
                updates["human_color"] = opposite(value)
            elif key not in known:
                raise ValueError(f"Unknown setting: {key}")
            else:
                updates[key] = value

        merged = replace(self, **updates)
        merged.validate()
        return merged

    def validate(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Invalid mode: {self.mode!r}")
        _check_color("human_color", self.human_color)
        _check_color("board_orientation", self.board_orientation)
        if (
            isinstance(self.ai_depth, bool)
            or not isinstance(self.ai_depth, int)
            or self.ai_depth < 1
        ):
            raise ValueError(
                f"ai_depth must be a positive integer, got {self.ai_depth!r}"
            )
        for flag in ("show_analysis_arrows", "auto_analysis", "analysis_mode"):
            if not isinstance(getattr(self, flag), bool):
                raise ValueError(f"{flag} must be a bool")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["ai_color"] = self.ai_color
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> Settings:
        """Build Settings from a persisted dict, ignoring derived keys."""
        if not data:
            return cls()
        data = {k: v for k, v in data.items() if k != "ai_color"}
        return cls().merge(data)


def _check_color(name: str, value: object) -> None:
    if value not in COLORS:
        raise ValueError(f"{name} must be 'white' or 'black', got {value!r}")


@dataclass(frozen=True)
class Arrow:
    """An overlay arrow between two squares."""

    from_square: str
    to_square: str


@dataclass(frozen=True)
class AnalysisResult:
    """Engine verdict on a position.

    Scores are from White's point of view. When ``mate`` is set it takes
    precedence and ``evaluation`` is None.
    """

    evaluation: int | None = None
    mate: int | None = None
    best_move: str | None = None
    best_move_san: str | None = None
    arrows: tuple[Arrow, ...] = ()
    depth: int | None = None

    def display(self) -> str:
        """Short score string: ``M3``, ``+0.35`` or ``-``."""
        if self.mate is not None:
            return f"M{abs(self.mate)}"
        if self.evaluation is not None:
            return f"{self.evaluation / 100:+.2f}"
        return "-"

    def to_dict(self) -> dict:
        return {
            "evaluation": self.evaluation,
            "mate": self.mate,
            "best_move": self.best_move,
            "best_move_san": self.best_move_san,
            "arrows": [
                {"from": a.from_square, "to": a.to_square} for a in self.arrows
            ],
            "depth": self.depth,
            "display": self.display(),
        }


@dataclass(frozen=True)
class SelectionState:
    """Selected square and its legal destinations."""

    selected_square: str | None = None
    available_moves: frozenset[str] = frozenset()


class ClickOutcome(str, Enum):
    """What a single square activation did."""

    SELECTED = "selected"
    MOVED = "moved"
    DESELECTED = "deselected"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class GameSnapshot:
    """Everything needed to rebuild one game in a fresh adapter."""

    fen: str
    pgn: str
    move_history: list[str] = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    last_move: dict | None = None
    evaluation: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> GameSnapshot:
        return cls(
            fen=data["fen"],
            pgn=data.get("pgn", ""),
            move_history=list(data.get("move_history", [])),
            settings=dict(data.get("settings") or {}),
            last_move=data.get("last_move"),
            evaluation=data.get("evaluation"),
        )


@dataclass
class SavedGame:
    """A named, user-initiated save. Replaced by id, never edited."""

    id: str
    name: str
    fen: str
    pgn: str
    move_history: list[str]
    settings: dict
    move_count: int
    timestamp: str
    evaluation: int | None = None
    last_move: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SavedGame:
        return cls(
            id=data["id"],
            name=data["name"],
            fen=data["fen"],
            pgn=data.get("pgn", ""),
            move_history=list(data.get("move_history", [])),
            settings=dict(data.get("settings") or {}),
            move_count=data["move_count"],
            timestamp=data["timestamp"],
            evaluation=data.get("evaluation"),
            last_move=data.get("last_move"),
        )

    def snapshot(self) -> GameSnapshot:
        return GameSnapshot(
            fen=self.fen,
            pgn=self.pgn,
            move_history=list(self.move_history),
            settings=dict(self.settings),
            last_move=self.last_move,
            evaluation=self.evaluation,
        )


@dataclass
class Tab:
    """Persisted form of one tab."""

    id: str
    name: str
    game_state: GameSnapshot
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "game_state": self.game_state.to_dict(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Tab:
        return cls(
            id=data["id"],
            name=data["name"],
            game_state=GameSnapshot.from_dict(data["game_state"]),
            timestamp=data["timestamp"],
        )
