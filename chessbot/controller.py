"""Session controller: the single API presentation code talks to.

Composes, per active tab, the position adapter, move input, engine
client and stores. Every command runs synchronously to completion; the
only suspension points are engine requests, and their replies are
checked against the issuing tab's latest request id before they touch
anything.

After each settled mutation one explicit step runs: persist the tab,
auto-save it, then either request an AI move (if it is now the AI's
turn) or start background analysis (if enabled).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import chess

from chessbot.config import Config
from chessbot.engine import BEST_MOVE, EngineClient, EngineResponse
from chessbot.errors import EngineError, ErrorKind, MoveError, PositionError, StoreError
from chessbot.models import (
    HUMAN_VS_AI,
    AnalysisResult,
    Arrow,
    ClickOutcome,
    GameSnapshot,
    SavedGame,
    SelectionState,
    Settings,
    opposite,
)
from chessbot.position import PositionAdapter, Status
from chessbot.store import SessionStore
from chessbot.tabs import TabManager, TabSession

logger = logging.getLogger(__name__)

ANALYSIS_UNAVAILABLE = "analysis unavailable"
PERSISTENCE_UNAVAILABLE = "persistence unavailable"

# Extra attempts after an AI move request times out
AI_TIMEOUT_RETRIES = 1


@dataclass(frozen=True)
class BoardView:
    """Everything the board widget needs to draw one frame."""

    fen: str
    orientation: str
    square_styles: dict[str, str]
    arrows: tuple[Arrow, ...]
    draggable: Callable[[str], bool]


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class SessionController:
    """Owns every tab and mediates all changes to their positions.

    Args:
        backend: Engine backend shared by all tabs (``search``/``close``).
        store: Key-value byte store for tabs, auto-saves and saves.
        config: Runtime configuration; defaults apply when omitted.
        clock: Monotonic clock for input debouncing.
    """

    def __init__(
        self,
        backend,
        store,
        config: Config | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or Config()
        self._backend = backend
        self._clock = clock
        self.saves = SessionStore(store, self._config.max_saves)
        self.tabs = TabManager(store, self._make_session)
        self.store_error: str | None = None
        self.import_error: str | None = None

        self.tabs.restore()
        self._note_tab_store_state()
        for session in self.tabs.list():
            if session.is_ai_turn():
                session.ai_deferred = True

    def _make_session(self, tab_id: str, name: str) -> TabSession:
        engine = EngineClient(self._backend, timeout=self._config.engine_timeout)
        return TabSession(
            tab_id,
            name,
            engine,
            debounce_seconds=self._config.debounce_seconds,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def active(self) -> TabSession:
        return self.tabs.active

    @property
    def position(self) -> PositionAdapter:
        return self.active.position

    @property
    def settings(self) -> Settings:
        return self.active.settings

    @property
    def selection(self) -> SelectionState:
        return self.active.move_input.state

    @property
    def analysis(self) -> AnalysisResult | None:
        return self.active.analysis

    @property
    def hint(self) -> str | None:
        return self.active.hint

    @property
    def status(self) -> Status:
        return self.active.position.status()

    @property
    def is_thinking(self) -> bool:
        return self.active.is_thinking

    @property
    def engine_error(self) -> str | None:
        return self.active.engine_error

    def board_view(self) -> BoardView:
        session = self.active
        position = session.position
        styles: dict[str, str] = {}

        last = position.last_move
        if last is not None:
            styles[last.origin] = "last-move"
            styles[last.destination] = "last-move"

        if position.status().check:
            board = position.current_position()
            king = board.king(board.turn)
            if king is not None:
                styles[chess.square_name(king)] = "check"

        selection = session.move_input.state
        if selection.selected_square is not None:
            styles[selection.selected_square] = "selected"
        for square in selection.available_moves:
            styles[square] = "capture" if position.piece_color(square) else "move"

        arrows: tuple[Arrow, ...] = ()
        if session.settings.show_analysis_arrows:
            if session.analysis is not None:
                arrows += session.analysis.arrows
            if session.hint_move is not None:
                arrows += (Arrow(session.hint_move[:2], session.hint_move[2:4]),)

        def draggable(square: str) -> bool:
            color = position.piece_color(square)
            return (
                color is not None
                and color == position.turn
                and session.human_may_move(color)
                and session.engine.pending_kind != BEST_MOVE
            )

        return BoardView(
            fen=position.fen(),
            orientation=session.settings.board_orientation,
            square_styles=styles,
            arrows=arrows,
            draggable=draggable,
        )

    # ------------------------------------------------------------------
    # Game commands
    # ------------------------------------------------------------------

    def new_game(self) -> None:
        session = self.active
        self._invalidate(session)
        session.position.reset()
        session.move_input.reset()
        session.clear_overlays()
        logger.info("Tab %s: new game", session.id)
        self._settle_mutation(session)

    def start_as(self, color: str) -> None:
        """New game against the AI with the human playing ``color``."""
        session = self.active
        session.settings = session.settings.merge(
            {"mode": HUMAN_VS_AI, "human_color": color, "board_orientation": color}
        )
        self.new_game()

    def load_fen(self, fen: str) -> bool:
        session = self.active
        try:
            session.position.load_position(fen)
        except PositionError as exc:
            logger.info("Tab %s: rejected FEN: %s", session.id, exc)
            return False
        self._after_load(session)
        return True

    def load_pgn(self, pgn: str) -> bool:
        session = self.active
        try:
            session.position.load_game(pgn)
        except PositionError as exc:
            logger.info("Tab %s: rejected PGN: %s", session.id, exc)
            return False
        self._after_load(session)
        return True

    def _after_load(self, session: TabSession) -> None:
        self._invalidate(session)
        session.move_input.reset()
        session.clear_overlays()
        self._settle_mutation(session, allow_ai=self._config.auto_reply_on_load)

    def undo(self) -> bool:
        """Take back the last move.

        Against the AI, plies are taken back until it is the human's
        turn again, so the AI does not immediately replay its move.
        """
        session = self.active
        if not session.position.history:
            return False
        self._invalidate(session)
        session.position.undo()
        settings = session.settings
        if settings.mode == HUMAN_VS_AI and not settings.analysis_mode:
            while (
                session.position.turn != settings.human_color
                and session.position.undo()
            ):
                pass
        session.move_input.reset()
        session.clear_overlays()
        self._settle_mutation(session)
        return True

    def flip_board(self) -> str:
        session = self.active
        session.settings = session.settings.merge(
            {"board_orientation": opposite(session.settings.board_orientation)}
        )
        self._persist(session)
        return session.settings.board_orientation

    def copy_fen(self) -> str:
        return self.active.position.fen()

    def square_clicked(self, square: str) -> ClickOutcome:
        session = self.active
        outcome = session.move_input.click(square)
        if outcome is ClickOutcome.MOVED:
            self._after_human_move(session)
        return outcome

    def piece_dropped(
        self,
        origin: str,
        destination: str,
        promotion: str | None = None,
    ) -> bool:
        """Drag-and-drop move; False tells the widget to snap back."""
        session = self.active
        if session.move_input.drop(origin, destination, promotion) is None:
            return False
        self._after_human_move(session)
        return True

    def _after_human_move(self, session: TabSession) -> None:
        move = session.move_input.last_applied
        logger.info("Tab %s: played %s", session.id, move.san if move else "?")
        session.clear_overlays()
        self._settle_mutation(session)

    def change_settings(self, partial: dict) -> Settings:
        """Merge ``partial`` into the active tab's settings.

        Raises:
            ValueError: If any key or value is invalid; nothing changes.
        """
        session = self.active
        session.settings = session.settings.merge(partial)
        if session.engine.pending_kind == BEST_MOVE and not session.is_ai_turn():
            self._invalidate(session)
        self._settle_mutation(session)
        return session.settings

    def bot_move(self) -> bool:
        """Ask the engine to move for whichever side is to move."""
        session = self.active
        if session.position.status().game_over:
            return False
        if session.engine.pending_kind == BEST_MOVE:
            return False
        if _running_loop() is None:
            logger.warning("bot_move needs a running event loop")
            return False
        self._request_ai_move(session, force=True)
        return True

    # ------------------------------------------------------------------
    # Engine: analysis and hints
    # ------------------------------------------------------------------

    async def analyze_position(self) -> AnalysisResult | None:
        session = self.active
        if self._ai_pending(session):
            return None
        fen = session.position.fen()
        request = session.engine.request_analysis(fen, self._config.analysis_depth)
        return await self._finish_analysis(session, request, fen)

    async def get_hint(self) -> str | None:
        """Best move for the side to move, in SAN. Never played."""
        session = self.active
        if self._ai_pending(session) or session.position.status().game_over:
            return None
        fen = session.position.fen()
        request = session.engine.request_hint(fen, session.settings.ai_depth)
        response = await self._await_engine(session, request)
        if response is None or not self._still_valid(session, response):
            return None
        best = response.reply.best_move
        san = session.position.san_for(best) if best else None
        if san is None:
            return None
        session.hint = san
        session.hint_move = best
        session.engine_error = None
        return san

    def _ai_pending(self, session: TabSession) -> bool:
        if session.engine.pending_kind == BEST_MOVE:
            logger.info("Tab %s: engine busy with AI move, request refused", session.id)
            return True
        return False

    async def _await_engine(
        self,
        session: TabSession,
        request: Awaitable[EngineResponse],
    ) -> EngineResponse | None:
        try:
            return await request
        except EngineError as exc:
            self._engine_failed(session, exc)
            return None

    def _engine_failed(self, session: TabSession, exc: EngineError) -> None:
        if exc.request_id is None or session.engine.is_current(exc.request_id):
            logger.warning("Tab %s: engine failed: %s", session.id, exc)
            session.engine_error = ANALYSIS_UNAVAILABLE
        else:
            logger.debug("Tab %s: stale engine failure ignored", session.id)

    def _still_valid(self, session: TabSession, response: EngineResponse) -> bool:
        """The staleness guard: tab alive, id current, position unchanged."""
        valid = (
            not session.closed
            and self.tabs.exists(session.id)
            and session.engine.is_current(response.request_id)
            and session.position.fen() == response.fen
        )
        if not valid:
            logger.debug(
                "Tab %s: discarding stale %s reply %d",
                session.id,
                response.kind,
                response.request_id,
            )
        return valid

    async def _finish_analysis(
        self,
        session: TabSession,
        request: Awaitable[EngineResponse],
        fen: str,
    ) -> AnalysisResult | None:
        response = await self._await_engine(session, request)
        if response is None or not self._still_valid(session, response):
            return None
        reply = response.reply
        best = reply.best_move
        arrows: tuple[Arrow, ...] = ()
        if best and len(best) >= 4:
            arrows = (Arrow(best[:2], best[2:4]),)
        result = AnalysisResult(
            evaluation=None if reply.mate is not None else reply.evaluation_cp,
            mate=reply.mate,
            best_move=best,
            best_move_san=session.position.san_for(best) if best else None,
            arrows=arrows,
            depth=response.depth,
        )
        session.analysis = result
        session.engine_error = None
        return result

    # ------------------------------------------------------------------
    # AI moves
    # ------------------------------------------------------------------

    def _request_ai_move(
        self,
        session: TabSession,
        force: bool = False,
        retries: int = AI_TIMEOUT_RETRIES,
    ) -> None:
        if session.engine.pending_kind == BEST_MOVE:
            return
        if _running_loop() is None:
            session.ai_deferred = True
            return
        self._cancel_tasks(session)
        fen = session.position.fen()
        request = session.engine.request_best_move(fen, session.settings.ai_depth)
        self._spawn(session, self._run_ai_move(session, request, fen, force, retries))

    async def _run_ai_move(
        self,
        session: TabSession,
        request: Awaitable[EngineResponse],
        fen: str,
        force: bool,
        retries: int,
    ) -> None:
        try:
            response = await request
        except EngineError as exc:
            if (
                exc.kind is ErrorKind.TIMEOUT
                and retries > 0
                and not session.closed
                and session.engine.is_current(exc.request_id)
                and session.position.fen() == fen
            ):
                logger.warning("Tab %s: AI move timed out, retrying", session.id)
                self._request_ai_move(session, force, retries - 1)
                return
            self._engine_failed(session, exc)
            return
        if not self._still_valid(session, response):
            return
        if not force and not session.is_ai_turn():
            logger.debug("Tab %s: no longer the AI's turn", session.id)
            return

        best = response.reply.best_move
        if best is None:
            logger.warning("Tab %s: engine returned no move", session.id)
            return
        try:
            move = session.position.apply_move(best[:2], best[2:4], best[4:] or None)
        except MoveError as exc:
            logger.warning("Tab %s: engine move rejected: %s", session.id, exc)
            return

        logger.info("Tab %s: engine played %s", session.id, move.san)
        session.move_input.reset()
        session.clear_overlays()
        self._settle_mutation(session)

    def _spawn(self, session: TabSession, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    def _invalidate(self, session: TabSession) -> None:
        """Drop every outstanding engine request for ``session``."""
        session.engine.cancel()
        session.ai_deferred = False
        self._cancel_tasks(session)

    @staticmethod
    def _cancel_tasks(session: TabSession) -> None:
        """Cancel the tab's engine tasks other than the running one."""
        current = asyncio.current_task() if _running_loop() else None
        for task in list(session.tasks):
            if task is not current:
                task.cancel()

    async def settle(self) -> None:
        """Wait until no tab has engine work in flight."""
        while True:
            for session in self.tabs.list():
                if session.ai_deferred:
                    session.ai_deferred = False
                    if session.is_ai_turn():
                        self._request_ai_move(session)
            pending = [t for s in self.tabs.list() for t in s.tasks]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Post-mutation step and persistence
    # ------------------------------------------------------------------

    def _settle_mutation(self, session: TabSession, allow_ai: bool = True) -> None:
        self._persist(session)
        self._auto_save(session)

        if session.is_ai_turn():
            if allow_ai:
                self._request_ai_move(session)
            return
        if (
            session.settings.auto_analysis
            and not session.position.status().game_over
            and _running_loop() is not None
        ):
            self._cancel_tasks(session)
            fen = session.position.fen()
            request = session.engine.request_analysis(fen, self._config.analysis_depth)
            self._spawn(session, self._finish_analysis(session, request, fen))

    def _persist(self, session: TabSession) -> None:
        self.tabs.update_game_state(session.id)
        self._note_tab_store_state()

    def _note_tab_store_state(self) -> None:
        """Mirror the latest tab-list write into ``store_error``.

        A successful write clears the error, so the banner goes away once
        the store recovers.
        """
        self.store_error = (
            PERSISTENCE_UNAVAILABLE if self.tabs.last_error is not None else None
        )

    def _auto_save(self, session: TabSession) -> None:
        try:
            self.saves.auto_save(session.id, session.snapshot())
        except StoreError as exc:
            self._store_failed("auto-save", exc)

    def _store_failed(self, action: str, exc: StoreError) -> None:
        logger.warning("%s failed: %s", action, exc)
        self.store_error = PERSISTENCE_UNAVAILABLE

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    def new_tab(self, name: str | None = None) -> TabSession:
        session = self.tabs.create(name)
        self._note_tab_store_state()
        if session.is_ai_turn():
            self._request_ai_move(session)
        return session

    def close_tab(self, tab_id: str) -> None:
        """Close a tab and drop its auto-save.

        Raises:
            KeyError: If the tab does not exist.
        """
        self.tabs.close(tab_id)
        self._note_tab_store_state()
        try:
            self.saves.clear_auto_save(tab_id)
        except StoreError as exc:
            self._store_failed("clear auto-save", exc)

    def rename_tab(self, tab_id: str, name: str) -> None:
        self.tabs.rename(tab_id, name)
        self._note_tab_store_state()

    def switch_tab(self, tab_id: str) -> TabSession:
        session = self.tabs.switch_to(tab_id)
        self._note_tab_store_state()
        return session

    # ------------------------------------------------------------------
    # Saved games
    # ------------------------------------------------------------------

    def save_game(self, name: str | None = None, save_id: str | None = None) -> SavedGame | None:
        session = self.active
        try:
            game = self.saves.save(name or session.name, session.snapshot(), save_id)
        except StoreError as exc:
            self._store_failed("save", exc)
            return None
        logger.info("Saved game %s (%s)", game.id, game.name)
        return game

    def load_saved_game(self, save_id: str) -> bool:
        session = self.active
        try:
            game = self.saves.get(save_id)
        except StoreError as exc:
            self._store_failed("load save", exc)
            return False
        if game is None:
            return False
        return self._restore_into(session, game.snapshot(), f"Saved game {save_id}")

    def _restore_into(
        self, session: TabSession, snapshot: GameSnapshot, label: str
    ) -> bool:
        try:
            session.restore(snapshot)
        except ValueError as exc:
            logger.warning("%s unusable: %s", label, exc)
            return False
        self._invalidate(session)
        self._settle_mutation(session, allow_ai=self._config.auto_reply_on_load)
        return True

    def load_auto_save(self, tab_id: str | None = None) -> bool:
        """Load a tab's auto-saved game into the active tab.

        Args:
            tab_id: Tab whose auto-save to load; the active tab when None.
        """
        session = self.active
        source = tab_id or session.id
        try:
            snapshot = self.saves.load_auto_save(source)
        except StoreError as exc:
            self._store_failed("load auto-save", exc)
            return False
        if snapshot is None:
            return False
        return self._restore_into(session, snapshot, f"Auto-save of tab {source}")

    def clear_auto_saves(self, tab_id: str | None = None) -> bool:
        """Drop one tab's auto-save, or every auto-save when None."""
        try:
            self.saves.clear_auto_save(tab_id)
        except StoreError as exc:
            self._store_failed("clear auto-save", exc)
            return False
        logger.info("Cleared auto-save %s", tab_id or "(all)")
        return True

    def delete_saved_game(self, save_id: str) -> bool:
        try:
            return self.saves.delete(save_id)
        except StoreError as exc:
            self._store_failed("delete save", exc)
            return False

    def saved_games(self) -> list[SavedGame]:
        try:
            return self.saves.list()
        except StoreError as exc:
            self._store_failed("list saves", exc)
            return []

    def export_saved_games(self) -> str | None:
        try:
            return self.saves.export()
        except StoreError as exc:
            self._store_failed("export", exc)
            return None

    def import_saved_games(self, blob: str) -> int | None:
        """Import an export blob. None if it was rejected or not stored."""
        self.import_error = None
        try:
            return self.saves.import_games(blob)
        except StoreError as exc:
            if exc.kind is ErrorKind.CORRUPT_IMPORT:
                logger.warning("Import rejected: %s", exc)
                self.import_error = str(exc)
                return None
            self._store_failed("import", exc)
            return None

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        for session in self.tabs.list():
            session.shutdown()
        await self._backend.close()
