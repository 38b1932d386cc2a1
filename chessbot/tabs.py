"""Tab multiplexer: independent game sessions behind one active pointer.

Each TabSession owns its own position adapter, move input, engine
client and overlay state. TabManager keeps them in an arena keyed by id
and persists the tab list after every structural change.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable

from chessbot.errors import PositionError, StoreError
from chessbot.models import (
    HUMAN_VS_AI,
    AnalysisResult,
    GameSnapshot,
    Settings,
    Tab,
    utc_now_iso,
)
from chessbot.position import PositionAdapter
from chessbot.schemas import GAME_SNAPSHOT_SCHEMA, TAB_SCHEMA, validate_record
from chessbot.selection import MoveInput
from chessbot.store import read_json, write_json

logger = logging.getLogger(__name__)

TABS_KEY = "chessbot-tabs"
TABS_VERSION = 1


class TabSession:
    """Runtime state of one tab."""

    def __init__(
        self,
        tab_id: str,
        name: str,
        engine,
        debounce_seconds: float = 0.15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = tab_id
        self.name = name
        self.timestamp = utc_now_iso()
        self.position = PositionAdapter()
        self.settings = Settings()
        self.engine = engine
        self.move_input = MoveInput(
            self.position, self.human_may_move, debounce_seconds, clock
        )
        self.analysis: AnalysisResult | None = None
        self.hint: str | None = None
        self.hint_move: str | None = None
        self.engine_error: str | None = None
        self.tasks: set[asyncio.Task] = set()
        self.ai_deferred = False
        self.closed = False

    def is_ai_turn(self) -> bool:
        settings = self.settings
        return (
            settings.mode == HUMAN_VS_AI
            and not settings.analysis_mode
            and self.position.turn == settings.ai_color
            and not self.position.status().game_over
        )

    def human_may_move(self, color: str) -> bool:
        """Whether the user may move ``color`` pieces right now."""
        if self.position.status().game_over:
            return False
        if self.settings.analysis_mode or self.settings.mode != HUMAN_VS_AI:
            return True
        return color == self.settings.human_color

    @property
    def is_thinking(self) -> bool:
        return self.engine.state == "requesting"

    def clear_overlays(self) -> None:
        self.analysis = None
        self.hint = None
        self.hint_move = None
        self.engine_error = None

    def last_move_dict(self) -> dict | None:
        last = self.position.last_move
        if last is None:
            return None
        return {"from": last.origin, "to": last.destination, "san": last.san}

    def snapshot(self) -> GameSnapshot:
        return GameSnapshot(
            fen=self.position.fen(),
            pgn=self.position.pgn(),
            move_history=[m.san for m in self.position.history],
            settings=self.settings.to_dict(),
            last_move=self.last_move_dict(),
            evaluation=self.analysis.evaluation if self.analysis else None,
        )

    def restore(self, snapshot: GameSnapshot) -> None:
        """Rebuild position and settings from a snapshot.

        The PGN is preferred because it carries history; the FEN is the
        fallback. The snapshot is loaded into a scratch adapter first, so
        a failure leaves this tab untouched.

        Raises:
            PositionError: If neither the PGN nor the FEN loads.
            ValueError: If the settings are invalid.
        """
        settings = Settings.from_dict(snapshot.settings)
        scratch = PositionAdapter()
        loaded = False
        if snapshot.pgn and snapshot.move_history:
            try:
                scratch.load_game(snapshot.pgn)
                loaded = scratch.fen() == snapshot.fen
            except PositionError:
                logger.warning("Tab %s: stored PGN unreadable, using FEN", self.id)
        if not loaded:
            scratch.load_position(snapshot.fen)
        self.position.adopt(scratch)
        self.settings = settings
        self.move_input.reset()
        self.clear_overlays()

    def shutdown(self) -> None:
        """Invalidate and cancel any engine work owned by this tab."""
        self.closed = True
        self.engine.cancel()
        for task in list(self.tasks):
            task.cancel()
        self.tasks.clear()
        self.ai_deferred = False

    def to_tab(self) -> Tab:
        return Tab(
            id=self.id,
            name=self.name,
            game_state=self.snapshot(),
            timestamp=self.timestamp,
        )


class TabManager:
    """Ordered arena of tabs with exactly one active tab.

    Args:
        store: Key-value byte store the tab list is written to.
        session_factory: Builds a TabSession from (tab_id, name).
    """

    def __init__(
        self,
        store,
        session_factory: Callable[[str, str], TabSession],
    ) -> None:
        self._store = store
        self._factory = session_factory
        self._tabs: dict[str, TabSession] = {}
        self._order: list[str] = []
        self._active_id: str | None = None
        self.last_error: StoreError | None = None

    def list(self) -> list[TabSession]:
        return [self._tabs[tab_id] for tab_id in self._order]

    @property
    def active_id(self) -> str:
        if self._active_id is None:
            raise RuntimeError("No active tab; call restore() first")
        return self._active_id

    @property
    def active(self) -> TabSession:
        return self._tabs[self.active_id]

    def get(self, tab_id: str) -> TabSession:
        """Look up a tab.

        Raises:
            KeyError: If no tab has that id.
        """
        try:
            return self._tabs[tab_id]
        except KeyError:
            raise KeyError(f"Tab not found: {tab_id}") from None

    def exists(self, tab_id: str) -> bool:
        return tab_id in self._tabs

    def _add(self, tab_id: str, name: str) -> TabSession:
        session = self._factory(tab_id, name)
        self._tabs[tab_id] = session
        self._order.append(tab_id)
        return session

    def create(self, name: str | None = None) -> TabSession:
        """Append a fresh tab and make it active."""
        session = self._add(uuid.uuid4().hex, name or f"Game {len(self._order) + 1}")
        self._active_id = session.id
        logger.info("Created tab %s (%s)", session.id, session.name)
        self.persist()
        return session

    def close(self, tab_id: str) -> TabSession:
        """Remove a tab; there is always at least one tab afterwards."""
        session = self.get(tab_id)
        session.shutdown()
        del self._tabs[tab_id]
        self._order.remove(tab_id)
        logger.info("Closed tab %s", tab_id)

        if not self._order:
            self._active_id = None
            self.create()
            return session
        if self._active_id == tab_id:
            self._active_id = self._order[0]
        self.persist()
        return session

    def rename(self, tab_id: str, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("Tab name must not be empty")
        self.get(tab_id).name = name
        self.persist()

    def switch_to(self, tab_id: str) -> TabSession:
        session = self.get(tab_id)
        self._active_id = tab_id
        self.persist()
        return session

    def update_game_state(self, tab_id: str) -> None:
        """Record that a tab's game changed and persist the tab list."""
        self.get(tab_id).timestamp = utc_now_iso()
        self.persist()

    def persist(self) -> bool:
        """Write the tab list. Failures are logged, never raised."""
        payload = {
            "version": TABS_VERSION,
            "active_tab_id": self._active_id,
            "tabs": [tab.to_tab().to_dict() for tab in self.list()],
        }
        try:
            write_json(self._store, TABS_KEY, payload)
        except StoreError as exc:
            logger.warning("Could not persist tabs: %s", exc)
            self.last_error = exc
            return False
        self.last_error = None
        return True

    def restore(self) -> None:
        """Load persisted tabs, falling back to one fresh tab."""
        try:
            payload = read_json(self._store, TABS_KEY)
        except StoreError as exc:
            logger.warning("Could not read tabs: %s", exc)
            self.last_error = exc
            payload = None

        tabs = self._parse(payload)
        if not tabs:
            self.create()
            return

        restored: list[TabSession] = []
        try:
            for tab in tabs:
                session = self._factory(tab.id, tab.name)
                session.restore(tab.game_state)
                session.timestamp = tab.timestamp
                restored.append(session)
        except ValueError as exc:
            logger.warning("Stored tabs unusable (%s); starting fresh", exc)
            self.create()
            return

        for session in restored:
            self._tabs[session.id] = session
            self._order.append(session.id)
        active = payload.get("active_tab_id")
        self._active_id = active if active in self._tabs else self._order[0]
        logger.info("Restored %d tabs", len(self._order))

    @staticmethod
    def _parse(payload: object) -> list[Tab]:
        if not isinstance(payload, dict) or not isinstance(payload.get("tabs"), list):
            return []
        tabs: list[Tab] = []
        seen: set[str] = set()
        for record in payload["tabs"]:
            errors = validate_record(record, TAB_SCHEMA)
            if not errors:
                errors = validate_record(record["game_state"], GAME_SNAPSHOT_SCHEMA)
            if errors or record["id"] in seen:
                logger.warning("Stored tab list is corrupt: %s", errors or "duplicate id")
                return []
            seen.add(record["id"])
            tabs.append(Tab.from_dict(record))
        return tabs
