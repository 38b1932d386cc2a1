"""Tests for SessionController: commands, AI flow, staleness and persistence.

Engine work runs on a FakeBackend inside ``asyncio.run``; ``settle()``
drains every in-flight request before assertions.
"""

from __future__ import annotations

import asyncio
import json

import chess
import pytest

from chessbot.controller import ANALYSIS_UNAVAILABLE, PERSISTENCE_UNAVAILABLE
from chessbot.engine import EngineReply
from chessbot.errors import EngineError, ErrorKind
from chessbot.models import ClickOutcome
from chessbot.store import MemoryStore

from conftest import FakeBackend

KK_FEN = "8/8/8/4k3/8/8/8/4K3 w - - 0 1"
STALEMATE_FEN = "7k/5Q2/6K1/8/8/8/8/8 b - - 0 1"
BLACK_TO_MOVE_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
AFTER_E4 = BLACK_TO_MOVE_FEN


def _human_vs_human(controller) -> None:
    controller.change_settings({"mode": "human-vs-human"})


# ---------------------------------------------------------------------------
# Basic commands
# ---------------------------------------------------------------------------


class TestCommands:

    def test_starts_with_one_tab(self, make_controller):
        controller = make_controller()
        assert len(controller.tabs.list()) == 1
        assert controller.position.fen() == chess.STARTING_FEN

    def test_click_to_move(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        assert controller.square_clicked("e2") is ClickOutcome.SELECTED
        assert controller.selection.available_moves == frozenset({"e3", "e4"})
        assert controller.square_clicked("e4") is ClickOutcome.MOVED
        assert controller.position.fen() == AFTER_E4

    def test_illegal_drop_changes_nothing(self, make_controller):
        controller = make_controller()
        assert controller.piece_dropped("e2", "e5") is False
        assert controller.position.history == ()

    def test_cannot_move_ai_pieces(self, make_controller):
        controller = make_controller()
        controller.load_fen(KK_FEN)
        assert controller.square_clicked("e5") is ClickOutcome.DESELECTED

    def test_new_game_resets(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        controller.new_game()
        assert controller.position.fen() == chess.STARTING_FEN
        assert controller.position.history == ()

    def test_invalid_fen_keeps_position(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        assert controller.load_fen("garbage") is False
        assert controller.position.fen() == AFTER_E4

    def test_invalid_pgn_keeps_position(self, make_controller):
        controller = make_controller()
        assert controller.load_pgn("") is False
        assert controller.position.fen() == chess.STARTING_FEN

    def test_load_pgn(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        assert controller.load_pgn("1. d4 d5 2. c4 *") is True
        assert [m.san for m in controller.position.history] == ["d4", "d5", "c4"]

    def test_flip_board(self, make_controller):
        controller = make_controller()
        assert controller.flip_board() == "black"
        assert controller.board_view().orientation == "black"
        assert controller.flip_board() == "white"

    def test_copy_fen(self, make_controller):
        controller = make_controller()
        assert controller.copy_fen() == chess.STARTING_FEN

    def test_invalid_settings_leave_settings_unchanged(self, make_controller):
        controller = make_controller()
        before = controller.settings
        with pytest.raises(ValueError):
            controller.change_settings({"ai_depth": 0})
        with pytest.raises(ValueError):
            controller.change_settings({"colour": "white"})
        assert controller.settings == before

    def test_ai_color_setting_flips_human(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        settings = controller.change_settings({"ai_color": "white"})
        assert settings.human_color == "black"

    def test_undo_empty_history(self, make_controller):
        controller = make_controller()
        assert controller.undo() is False

    def test_undo_human_vs_human_single_ply(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        controller.piece_dropped("e7", "e5")
        assert controller.undo() is True
        assert controller.position.fen() == AFTER_E4


# ---------------------------------------------------------------------------
# Status scenarios
# ---------------------------------------------------------------------------


class TestStatus:

    def test_bare_kings_not_over(self, make_controller):
        controller = make_controller()
        assert controller.load_fen(KK_FEN) is True
        status = controller.status
        assert status.game_over is False
        assert status.draw is False
        assert status.insufficient_material is True

    def test_stalemate_is_draw(self, make_controller, backend):
        controller = make_controller()
        controller.load_fen(STALEMATE_FEN)
        asyncio.run(controller.settle())
        assert controller.status.draw is True
        assert controller.status.game_over is True
        assert backend.calls == []


# ---------------------------------------------------------------------------
# AI moves
# ---------------------------------------------------------------------------


class TestAiMoves:

    def test_human_move_triggers_ai_reply(self, make_controller, backend):
        controller = make_controller()

        async def run():
            assert controller.piece_dropped("e2", "e4")
            assert controller.is_thinking
            await controller.settle()

        asyncio.run(run())
        assert backend.calls[0][0] == AFTER_E4
        assert backend.calls[0][1] == controller.settings.ai_depth
        assert len(controller.position.history) == 2
        assert controller.position.turn == "white"
        assert not controller.is_thinking

    def test_ai_pieces_not_draggable_while_thinking(self, make_controller, backend):
        controller = make_controller()

        async def run():
            backend.hold()
            controller.piece_dropped("e2", "e4")
            view = controller.board_view()
            assert not view.draggable("e7")
            assert not view.draggable("d2")
            backend.release()
            await controller.settle()
            assert controller.board_view().draggable("d2")

        asyncio.run(run())

    def test_hint_refused_while_ai_pending(self, make_controller, backend):
        controller = make_controller()

        async def run():
            backend.hold()
            controller.piece_dropped("e2", "e4")
            assert await controller.get_hint() is None
            assert await controller.analyze_position() is None
            backend.release()
            await controller.settle()

        asyncio.run(run())
        assert len(backend.calls) == 1
        assert len(controller.position.history) == 2

    def test_start_as_black_ai_opens(self, make_controller, backend):
        controller = make_controller()

        async def run():
            controller.start_as("black")
            await controller.settle()

        asyncio.run(run())
        assert controller.settings.human_color == "black"
        assert controller.board_view().orientation == "black"
        assert len(controller.position.history) == 1
        assert controller.position.turn == "black"

    def test_undo_against_ai_returns_to_human_turn(self, make_controller):
        controller = make_controller()

        async def run():
            controller.piece_dropped("e2", "e4")
            await controller.settle()
            assert controller.undo() is True
            await controller.settle()

        asyncio.run(run())
        assert controller.position.history == ()
        assert controller.position.turn == "white"

    def test_undo_cancels_pending_ai(self, make_controller, backend):
        controller = make_controller()

        async def run():
            backend.hold()
            controller.piece_dropped("e2", "e4")
            await asyncio.sleep(0)
            controller.undo()
            backend.release()
            await controller.settle()

        asyncio.run(run())
        assert controller.position.fen() == chess.STARTING_FEN
        assert not controller.is_thinking

    def test_load_triggers_ai_by_default(self, make_controller):
        controller = make_controller()

        async def run():
            controller.load_fen(BLACK_TO_MOVE_FEN)
            await controller.settle()

        asyncio.run(run())
        assert len(controller.position.history) == 1

    def test_load_without_auto_reply(self, make_controller, backend):
        controller = make_controller(auto_reply_on_load=False)

        async def run():
            controller.load_fen(BLACK_TO_MOVE_FEN)
            await controller.settle()

        asyncio.run(run())
        assert controller.position.history == ()
        assert backend.calls == []

    def test_ai_request_deferred_without_loop(self, make_controller):
        controller = make_controller()
        controller.load_fen(BLACK_TO_MOVE_FEN)
        assert controller.active.ai_deferred
        asyncio.run(controller.settle())
        assert len(controller.position.history) == 1

    def test_engine_failure_sets_error_and_keeps_position(self, make_controller, backend):
        controller = make_controller()
        backend.error = EngineError(ErrorKind.UNREACHABLE, "engine gone")

        async def run():
            controller.piece_dropped("e2", "e4")
            await controller.settle()

        asyncio.run(run())
        assert controller.position.fen() == AFTER_E4
        assert controller.engine_error == ANALYSIS_UNAVAILABLE
        assert not controller.is_thinking

    def test_bot_move_for_side_to_move(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)

        async def run():
            assert controller.bot_move() is True
            await controller.settle()

        asyncio.run(run())
        assert len(controller.position.history) == 1

    def test_bot_move_needs_loop(self, make_controller):
        controller = make_controller()
        assert controller.bot_move() is False

    def test_analysis_mode_suppresses_ai(self, make_controller, backend):
        controller = make_controller()

        async def run():
            controller.change_settings({"analysis_mode": True})
            controller.piece_dropped("e2", "e4")
            controller.piece_dropped("e7", "e5")
            await controller.settle()

        asyncio.run(run())
        assert len(controller.position.history) == 2
        assert backend.calls == []


# ---------------------------------------------------------------------------
# Analysis, hints and staleness
# ---------------------------------------------------------------------------


class TestAnalysis:

    def test_analyze_position(self, make_controller):
        controller = make_controller()
        result = asyncio.run(controller.analyze_position())
        assert result.evaluation == 25
        assert result.best_move_san is not None
        assert result.display() == "+0.25"
        assert controller.analysis is result
        assert len(controller.board_view().arrows) == 1

    def test_mate_score_takes_precedence(self, make_controller, backend):
        controller = make_controller()
        backend.replies[chess.STARTING_FEN] = EngineReply("e2e4", evaluation_cp=None, mate=-2)
        result = asyncio.run(controller.analyze_position())
        assert result.evaluation is None
        assert result.mate == -2
        assert result.display() == "M2"

    def test_arrows_hidden_when_disabled(self, make_controller):
        controller = make_controller()
        controller.change_settings({"show_analysis_arrows": False})
        asyncio.run(controller.analyze_position())
        assert controller.board_view().arrows == ()

    def test_hint_is_not_played(self, make_controller):
        controller = make_controller()
        hint = asyncio.run(controller.get_hint())
        assert hint is not None
        assert controller.hint == hint
        assert controller.position.history == ()
        assert len(controller.board_view().arrows) == 1

    def test_newer_analysis_supersedes_older(self, make_controller, backend):
        controller = make_controller()

        async def run():
            backend.hold()
            first = asyncio.ensure_future(controller.analyze_position())
            await asyncio.sleep(0)
            second = asyncio.ensure_future(controller.analyze_position())
            await asyncio.sleep(0)
            backend.release()
            return await first, await second

        first, second = asyncio.run(run())
        assert first is None
        assert second is not None
        assert controller.analysis is second

    def test_stale_reply_after_move_is_discarded(self, make_controller, backend):
        controller = make_controller()
        _human_vs_human(controller)

        async def run():
            backend.hold()
            pending = asyncio.ensure_future(controller.analyze_position())
            await asyncio.sleep(0)
            controller.piece_dropped("e2", "e4")
            backend.release()
            return await pending

        assert asyncio.run(run()) is None
        assert controller.analysis is None
        assert controller.position.fen() == AFTER_E4

    def test_timeout_sets_engine_error(self, make_controller, backend):
        controller = make_controller(engine_timeout=0.05)
        backend.hang = True
        assert asyncio.run(controller.analyze_position()) is None
        assert controller.engine_error == ANALYSIS_UNAVAILABLE
        assert not controller.is_thinking

    def test_auto_analysis_after_move(self, make_controller, backend):
        controller = make_controller()
        _human_vs_human(controller)

        async def run():
            controller.change_settings({"auto_analysis": True})
            await controller.settle()
            controller.piece_dropped("e2", "e4")
            await controller.settle()

        asyncio.run(run())
        assert backend.calls[-1][0] == AFTER_E4
        assert controller.analysis is not None

    def test_move_clears_overlays(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        asyncio.run(controller.get_hint())
        controller.piece_dropped("e2", "e4")
        assert controller.hint is None
        assert controller.analysis is None


# ---------------------------------------------------------------------------
# Board view
# ---------------------------------------------------------------------------


class TestBoardView:

    def test_selection_styles(self, make_controller):
        controller = make_controller()
        controller.square_clicked("g1")
        styles = controller.board_view().square_styles
        assert styles["g1"] == "selected"
        assert styles["f3"] == "move"
        assert styles["h3"] == "move"

    def test_capture_style(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.load_pgn("1. e4 d5 *")
        controller.square_clicked("e4")
        styles = controller.board_view().square_styles
        assert styles["d5"] == "capture"
        assert styles["e5"] == "move"

    def test_last_move_and_check(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.load_pgn("1. e4 f5 2. Qh5+ *")
        styles = controller.board_view().square_styles
        assert styles["d1"] == "last-move"
        assert styles["h5"] == "last-move"
        assert styles["e8"] == "check"


# ---------------------------------------------------------------------------
# Tabs
# ---------------------------------------------------------------------------


class TestTabs:

    def test_switch_does_not_cancel_other_tab(self, make_controller, backend):
        controller = make_controller()

        async def run():
            backend.hold()
            first = controller.active.id
            controller.piece_dropped("e2", "e4")
            second = controller.new_tab().id
            assert controller.active.id == second
            backend.release()
            await controller.settle()
            assert controller.position.history == ()
            controller.switch_tab(first)

        asyncio.run(run())
        assert len(controller.position.history) == 2

    def test_close_tab_cancels_its_request(self, make_controller, backend, store):
        controller = make_controller()

        async def run():
            backend.hold()
            first = controller.active
            controller.piece_dropped("e2", "e4")
            controller.new_tab()
            controller.close_tab(first.id)
            backend.release()
            await controller.settle()
            return first

        first = asyncio.run(run())
        assert len(controller.tabs.list()) == 1
        assert len(first.position.history) == 1
        assert controller.saves.load_auto_save(first.id) is None

    def test_close_last_tab_leaves_one(self, make_controller):
        controller = make_controller()
        only = controller.active.id
        controller.close_tab(only)
        assert len(controller.tabs.list()) == 1
        assert controller.active.id != only

    def test_rename_tab(self, make_controller):
        controller = make_controller()
        controller.rename_tab(controller.active.id, "Endgame drill")
        assert controller.active.name == "Endgame drill"

    def test_unknown_tab(self, make_controller):
        controller = make_controller()
        with pytest.raises(KeyError):
            controller.switch_tab("missing")

    def test_tabs_survive_restart(self, make_controller, store):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        controller.new_tab("Second")

        restarted = make_controller(store=store)
        assert [t.name for t in restarted.tabs.list()] == ["Game 1", "Second"]
        restarted.switch_tab(restarted.tabs.list()[0].id)
        assert restarted.position.fen() == AFTER_E4
        assert restarted.settings.mode == "human-vs-human"

    def test_restored_ai_turn_is_deferred(self, make_controller, store):
        controller = make_controller()
        controller.piece_dropped("e2", "e4")

        restarted = make_controller(store=store)
        assert restarted.active.ai_deferred
        asyncio.run(restarted.settle())
        assert len(restarted.position.history) == 2


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:

    def test_every_move_is_auto_saved(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        snapshot = controller.saves.load_auto_save(controller.active.id)
        assert snapshot.fen == AFTER_E4
        assert snapshot.move_history == ["e4"]

    def test_save_and_load_game(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        game = controller.save_game("Opening")
        assert game.name == "Opening"
        assert game.move_count == 1

        controller.new_game()
        assert controller.load_saved_game(game.id) is True
        assert controller.position.fen() == AFTER_E4
        assert [g.id for g in controller.saved_games()] == [game.id]

    def test_save_defaults_to_tab_name(self, make_controller):
        controller = make_controller()
        assert controller.save_game().name == "Game 1"

    def test_load_missing_save(self, make_controller):
        controller = make_controller()
        assert controller.load_saved_game("missing") is False

    def test_delete_saved_game(self, make_controller):
        controller = make_controller()
        game = controller.save_game("x")
        assert controller.delete_saved_game(game.id) is True
        assert controller.saved_games() == []

    def test_export_import(self, make_controller):
        controller = make_controller()
        controller.save_game("x")
        blob = controller.export_saved_games()

        other = make_controller(store=MemoryStore())
        assert other.import_saved_games(blob) == 1
        assert [g.name for g in other.saved_games()] == ["x"]

    def test_corrupt_import_rejected(self, make_controller):
        controller = make_controller()
        assert controller.import_saved_games("{}") is None
        assert controller.import_error is not None
        assert controller.store_error is None

    def test_store_failure_does_not_stop_play(self, make_controller):
        store = MemoryStore(quota_bytes=10)
        controller = make_controller(store=store)
        _human_vs_human(controller)
        assert controller.store_error == PERSISTENCE_UNAVAILABLE
        assert controller.piece_dropped("e2", "e4") is True
        assert controller.position.fen() == AFTER_E4
        assert controller.save_game("x") is None

    def test_unavailable_store_on_startup(self, make_controller):
        store = MemoryStore()
        store.available = False
        controller = make_controller(store=store)
        assert len(controller.tabs.list()) == 1
        assert controller.store_error == PERSISTENCE_UNAVAILABLE
        assert controller.saved_games() == []


class TestClose:

    def test_close_shuts_backend(self, make_controller, backend):
        controller = make_controller()
        asyncio.run(controller.close())
        assert backend.closed


# ---------------------------------------------------------------------------
# Engine contention
# ---------------------------------------------------------------------------


class _SerialBackend(FakeBackend):
    """FakeBackend that runs one slow search at a time, like Stockfish."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self._lock = asyncio.Lock()

    async def search(self, fen: str, depth: int) -> EngineReply:
        async with self._lock:
            await asyncio.sleep(self.delay)
            return await super().search(fen, depth)


class TestEngineContention:

    def test_human_move_cancels_running_analysis(self, make_controller):
        backend = _SerialBackend(delay=0.3)
        controller = make_controller(backend=backend, engine_timeout=0.45)

        async def run():
            controller.change_settings({"auto_analysis": True})
            await asyncio.sleep(0.05)
            controller.piece_dropped("e2", "e4")
            await controller.settle()

        asyncio.run(run())
        assert len(controller.position.history) == 2
        assert controller.engine_error is None
        searched = [fen for fen, _ in backend.calls]
        assert chess.STARTING_FEN not in searched
        assert searched[0] == AFTER_E4

    def test_ai_move_retried_after_timeout(self, make_controller, backend):
        controller = make_controller(engine_timeout=0.05)
        backend.hang = True

        async def run():
            controller.piece_dropped("e2", "e4")
            await asyncio.sleep(0.02)
            backend.hang = False
            await controller.settle()

        asyncio.run(run())
        assert len(backend.calls) == 2
        assert len(controller.position.history) == 2
        assert controller.engine_error is None

    def test_ai_move_gives_up_after_retry(self, make_controller, backend):
        controller = make_controller(engine_timeout=0.05)
        backend.hang = True

        async def run():
            controller.piece_dropped("e2", "e4")
            await controller.settle()

        asyncio.run(run())
        assert len(backend.calls) == 2
        assert controller.position.fen() == AFTER_E4
        assert controller.engine_error == ANALYSIS_UNAVAILABLE
        assert not controller.is_thinking


# ---------------------------------------------------------------------------
# Auto-saves and store recovery
# ---------------------------------------------------------------------------


class TestAutoSaves:

    def test_load_other_tabs_auto_save(self, make_controller):
        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        first = controller.active.id

        controller.new_tab()
        assert controller.load_auto_save(first) is True
        assert controller.position.fen() == AFTER_E4
        assert [m.san for m in controller.position.history] == ["e4"]
        assert controller.settings.mode == "human-vs-human"

    def test_load_missing_auto_save(self, make_controller):
        controller = make_controller()
        assert controller.load_auto_save("missing") is False
        assert controller.position.history == ()

    def test_clear_one_auto_save(self, make_controller):
        controller = make_controller()
        first = controller.active.id
        controller.new_game()
        second = controller.new_tab().id
        controller.new_game()

        assert controller.clear_auto_saves(first) is True
        assert controller.load_auto_save(first) is False
        assert controller.saves.load_auto_save(second) is not None

    def test_clear_all_auto_saves(self, make_controller):
        controller = make_controller()
        first = controller.active.id
        controller.new_game()
        second = controller.new_tab().id
        controller.new_game()

        assert controller.clear_auto_saves() is True
        assert controller.saves.load_auto_save(first) is None
        assert controller.saves.load_auto_save(second) is None

    def test_unusable_imported_save_keeps_position(self, make_controller):
        source = make_controller(store=MemoryStore())
        _human_vs_human(source)
        source.load_pgn("1. d4 d5 *")
        source.save_game("broken")
        export = json.loads(source.export_saved_games())
        export["games"][0]["fen"] = "not a fen"
        game_id = export["games"][0]["id"]

        controller = make_controller()
        _human_vs_human(controller)
        controller.piece_dropped("e2", "e4")
        before = controller.position.fen()
        assert controller.import_saved_games(json.dumps(export)) == 1
        assert controller.load_saved_game(game_id) is False
        assert controller.position.fen() == before
        assert [m.san for m in controller.position.history] == ["e4"]

    def test_store_error_clears_after_recovery(self, make_controller):
        store = MemoryStore()
        controller = make_controller(store=store)
        _human_vs_human(controller)
        store.available = False
        controller.piece_dropped("e2", "e4")
        assert controller.store_error == PERSISTENCE_UNAVAILABLE

        store.available = True
        controller.piece_dropped("e7", "e5")
        assert controller.store_error is None
        assert controller.saves.load_auto_save(controller.active.id).move_history == ["e4", "e5"]
