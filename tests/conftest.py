"""Shared test fixtures with dual-mode support (fake vs real Stockfish).

Usage:
    pytest tests/                  # Fast, fake engine backend (no Stockfish)
    pytest tests/ --e2e            # Also run tests marked e2e against Stockfish

Fixtures:
    backend            - Scriptable FakeBackend shared by every tab.
    make_controller    - Factory for a SessionController on a MemoryStore.
    enable_validation  - Sets CHESSBOT_VALIDATE=1 for schema validation.
"""

from __future__ import annotations

import asyncio

import chess
import pytest

from chessbot.config import Config
from chessbot.controller import SessionController
from chessbot.engine import EngineReply
from chessbot.store import MemoryStore


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine (no fakes).",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip e2e tests unless --e2e is given."""
    if config.getoption("--e2e"):
        return
    skip = pytest.mark.skip(reason="needs --e2e and a Stockfish binary")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Fake engine backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """Stand-in for StockfishBackend.

    Replies with the first legal move and a +0.25 score unless a reply is
    scripted for the FEN. ``hold()`` makes searches wait until
    ``release()``; ``hang`` makes them never finish; ``error`` is raised
    from every search.
    """

    def __init__(self) -> None:
        self.replies: dict[str, EngineReply] = {}
        self.calls: list[tuple[str, int]] = []
        self.error: Exception | None = None
        self.hang = False
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._gate: asyncio.Event | None = None

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def search(self, fen: str, depth: int) -> EngineReply:
        self.calls.append((fen, depth))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self._gate is not None:
                await self._gate.wait()
            if self.hang:
                await asyncio.sleep(3600)
            if self.error is not None:
                raise self.error
            if fen in self.replies:
                return self.replies[fen]
            move = next(iter(chess.Board(fen).legal_moves), None)
            return EngineReply(
                best_move=move.uci() if move else None, evaluation_cp=25
            )
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def make_controller(backend, store, tmp_path):
    """Build a SessionController with no debounce on the shared fakes.

    Keyword arguments override Config fields.
    """

    def _make(backend=backend, store=store, **overrides) -> SessionController:
        config = Config(data_dir=tmp_path, debounce_seconds=0, **overrides)
        return SessionController(backend, store, config)

    return _make


# ---------------------------------------------------------------------------
# Schema validation fixture
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def enable_validation(monkeypatch):
    """Set CHESSBOT_VALIDATE=1 for the test."""
    monkeypatch.setenv("CHESSBOT_VALIDATE", "1")
