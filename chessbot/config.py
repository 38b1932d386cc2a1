"""Runtime configuration, read from CHESSBOT_* environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_DATA_DIR = _PROJECT_ROOT / "data"
DEFAULT_ENGINE_TIMEOUT = 15.0
DEFAULT_ANALYSIS_DEPTH = 15
DEFAULT_DEBOUNCE_MS = 150
DEFAULT_MAX_SAVES = 50


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Knobs for the controller, engine and stores."""

    data_dir: Path = DEFAULT_DATA_DIR
    stockfish_path: str | None = None
    engine_timeout: float = DEFAULT_ENGINE_TIMEOUT
    analysis_depth: int = DEFAULT_ANALYSIS_DEPTH
    debounce_seconds: float = DEFAULT_DEBOUNCE_MS / 1000
    max_saves: int = DEFAULT_MAX_SAVES
    auto_reply_on_load: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """Build a Config from the environment.

        Raises:
            ValueError: If a numeric variable does not parse.
        """
        data_dir = os.environ.get("CHESSBOT_DATA_DIR")
        return cls(
            data_dir=Path(data_dir) if data_dir else DEFAULT_DATA_DIR,
            stockfish_path=os.environ.get("CHESSBOT_STOCKFISH_PATH") or None,
            engine_timeout=_env_float("CHESSBOT_ENGINE_TIMEOUT", DEFAULT_ENGINE_TIMEOUT),
            analysis_depth=_env_int("CHESSBOT_ANALYSIS_DEPTH", DEFAULT_ANALYSIS_DEPTH),
            debounce_seconds=_env_int("CHESSBOT_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS) / 1000,
            max_saves=_env_int("CHESSBOT_MAX_SAVES", DEFAULT_MAX_SAVES),
            auto_reply_on_load=_env_bool("CHESSBOT_AUTO_REPLY_ON_LOAD", True),
            log_level=os.environ.get("CHESSBOT_LOG_LEVEL", "INFO").upper(),
        )
