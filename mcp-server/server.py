"""MCP server for the chessbot session controller.

Exposes the controller's command set (moves, undo, loading, analysis,
hints, tabs and saved games) via FastMCP. One controller serves the
whole process; tabs and saves persist under the configured data
directory.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Add project root and mcp-server dir to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_MCP_SERVER_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_PROJECT_ROOT))
sys.path.insert(0, str(_MCP_SERVER_DIR))

from mcp.server.fastmcp import FastMCP  # noqa: E402

from chessbot.config import Config  # noqa: E402
from chessbot.controller import PERSISTENCE_UNAVAILABLE, SessionController  # noqa: E402
from chessbot.engine import StockfishBackend  # noqa: E402
from chessbot.store import FileStore  # noqa: E402

from response_schemas import (  # noqa: E402
    minify_analysis,
    minify_board_state,
    minify_saved_game,
)

logger = logging.getLogger(__name__)

mcp = FastMCP("chessbot")

_controller: SessionController | None = None


def _get_controller() -> SessionController:
    """Return the process-wide controller, building it on first use."""
    global _controller
    if _controller is None:
        config = Config.from_env()
        _controller = SessionController(
            StockfishBackend(config.stockfish_path),
            FileStore(config.data_dir / "store"),
            config,
        )
    return _controller


def _build_board_state(controller: SessionController) -> dict:
    """Build the full board state dict for the active tab.

    Args:
        controller: Session controller to read.

    Returns:
        Dict with position, settings, status and overlays.
    """
    session = controller.active
    position = controller.position
    board = position.current_position()
    status = controller.status
    settings = controller.settings
    last = position.last_move
    analysis = controller.analysis
    selection = controller.selection

    return {
        "tab_id": session.id,
        "tab_name": session.name,
        "fen": position.fen(),
        "pgn": position.pgn(),
        "turn": position.turn,
        "move_list": [m.san for m in position.history],
        "last_move": last.uci if last else None,
        "last_move_san": last.san if last else None,
        "mode": settings.mode,
        "human_color": settings.human_color,
        "orientation": settings.board_orientation,
        "status": status.describe(),
        "is_game_over": status.game_over,
        "insufficient_material": status.insufficient_material,
        "result": board.result(claim_draw=True) if status.game_over else None,
        "legal_moves": [board.san(m) for m in board.legal_moves],
        "is_thinking": controller.is_thinking,
        "analysis": analysis.to_dict() if analysis else None,
        "hint": controller.hint,
        "selected_square": selection.selected_square,
        "available_moves": list(selection.available_moves),
        "engine_error": controller.engine_error,
        "store_error": controller.store_error,
    }


async def _board_response() -> dict:
    """Let engine work settle, then report the active board."""
    controller = _get_controller()
    await controller.settle()
    return minify_board_state(_build_board_state(controller))


# ---------------------------------------------------------------------------
# Game tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def get_board() -> dict:
    """Get the current board state of the active tab.

    Returns:
        Board state dict with position, status and overlays.
    """
    return await _board_response()


@mcp.tool()
async def new_game(player_color: str | None = None) -> dict:
    """Start a new game in the active tab.

    Args:
        player_color: 'white' or 'black' to play against the engine as
            that color. Omit to keep the current settings.

    Returns:
        Board state dict. If it is the engine's turn, its reply is
        already on the board.
    """
    controller = _get_controller()
    if player_color is None:
        controller.new_game()
    else:
        try:
            controller.start_as(player_color)
        except ValueError as exc:
            return {"error": str(exc)}
    return await _board_response()


@mcp.tool()
async def click_square(square: str) -> dict:
    """Click a square: select a piece, move to a highlighted square or deselect.

    Args:
        square: Square name (e.g., 'e2').

    Returns:
        Board state dict plus the click outcome.
    """
    outcome = _get_controller().square_clicked(square)
    state = await _board_response()
    state["outcome"] = outcome.value
    return state


@mcp.tool()
async def make_move(origin: str, destination: str, promotion: str | None = None) -> dict:
    """Drag a piece from origin to destination in one step.

    Args:
        origin: Origin square (e.g., 'e2').
        destination: Destination square (e.g., 'e4').
        promotion: Promotion piece letter ('q', 'r', 'b', 'n'). Defaults
            to a queen when a pawn reaches the last rank.

    Returns:
        Updated board state dict, or an error if the move was refused.
    """
    controller = _get_controller()
    if not controller.piece_dropped(origin, destination, promotion):
        legal = sorted(controller.position.legal_destinations(origin))
        return {"error": f"Illegal move: {origin}{destination}. Legal destinations: {legal}"}
    return await _board_response()


@mcp.tool()
async def undo_move() -> dict:
    """Undo the last move. Against the engine, undoes back to the player's turn.

    Returns:
        Updated board state dict.
    """
    if not _get_controller().undo():
        return {"error": "No moves to undo"}
    return await _board_response()


@mcp.tool()
async def flip_board() -> dict:
    """Flip the board orientation.

    Returns:
        Updated board state dict.
    """
    _get_controller().flip_board()
    return await _board_response()


@mcp.tool()
async def load_fen(fen: str) -> dict:
    """Load a position from FEN into the active tab.

    Args:
        fen: FEN string for the position.

    Returns:
        Board state dict for the loaded position.
    """
    if not _get_controller().load_fen(fen):
        return {"error": f"Invalid FEN: {fen}"}
    return await _board_response()


@mcp.tool()
async def load_pgn(pgn: str) -> dict:
    """Load a game from PGN text into the active tab.

    Args:
        pgn: PGN text. A [FEN] header sets the starting position.

    Returns:
        Board state dict after replaying the game.
    """
    if not _get_controller().load_pgn(pgn):
        return {"error": "Invalid PGN"}
    return await _board_response()


@mcp.tool()
async def get_pgn() -> dict:
    """Export the active game as PGN.

    Returns:
        Dict with fen and pgn.
    """
    position = _get_controller().position
    return {"fen": position.fen(), "pgn": position.pgn()}


@mcp.tool()
async def change_settings(settings: dict) -> dict:
    """Change settings of the active tab.

    Args:
        settings: Partial settings, e.g. {"mode": "human-vs-human"} or
            {"ai_depth": 12, "auto_analysis": true}.

    Returns:
        Dict with the merged settings.
    """
    controller = _get_controller()
    try:
        merged = controller.change_settings(settings)
    except ValueError as exc:
        return {"error": str(exc)}
    await controller.settle()
    return {"settings": merged.to_dict()}


@mcp.tool()
async def engine_move() -> dict:
    """Have the engine move for whichever side is to move.

    Returns:
        Updated board state dict.
    """
    controller = _get_controller()
    if not controller.bot_move():
        return {"error": "Engine cannot move now"}
    return await _board_response()


@mcp.tool()
async def analyze_position() -> dict:
    """Analyze the active position with Stockfish.

    Returns:
        Dict with evaluation (White's view), best move and depth.
    """
    controller = _get_controller()
    result = await controller.analyze_position()
    if result is None:
        return {"error": controller.engine_error or "Analysis unavailable"}
    return minify_analysis(result.to_dict())


@mcp.tool()
async def get_hint() -> dict:
    """Suggest a move for the side to move without playing it.

    Returns:
        Dict with the hint in SAN.
    """
    controller = _get_controller()
    hint = await controller.get_hint()
    if hint is None:
        return {"error": controller.engine_error or "No hint available"}
    return {"hint": hint}


# ---------------------------------------------------------------------------
# Tab tools
# ---------------------------------------------------------------------------


def _tab_list(controller: SessionController) -> dict:
    return {
        "active_tab_id": controller.tabs.active_id,
        "tabs": [{"id": t.id, "name": t.name} for t in controller.tabs.list()],
    }


@mcp.tool()
async def list_tabs() -> dict:
    """List open tabs.

    Returns:
        Dict with active_tab_id and tabs (id, name).
    """
    return _tab_list(_get_controller())


@mcp.tool()
async def new_tab(name: str | None = None) -> dict:
    """Open a new tab and make it active.

    Args:
        name: Optional tab name. Defaults to 'Game <n>'.

    Returns:
        Board state dict for the new tab.
    """
    _get_controller().new_tab(name)
    return await _board_response()


@mcp.tool()
async def close_tab(tab_id: str) -> dict:
    """Close a tab. Closing the last tab opens a fresh one.

    Args:
        tab_id: Id of the tab to close.

    Returns:
        Dict with the remaining tabs.
    """
    controller = _get_controller()
    try:
        controller.close_tab(tab_id)
    except KeyError:
        return {"error": f"Tab not found: {tab_id}"}
    return _tab_list(controller)


@mcp.tool()
async def switch_tab(tab_id: str) -> dict:
    """Make another tab active.

    Args:
        tab_id: Id of the tab to activate.

    Returns:
        Board state dict for that tab.
    """
    try:
        _get_controller().switch_tab(tab_id)
    except KeyError:
        return {"error": f"Tab not found: {tab_id}"}
    return await _board_response()


@mcp.tool()
async def rename_tab(tab_id: str, name: str) -> dict:
    """Rename a tab.

    Args:
        tab_id: Id of the tab.
        name: New non-empty name.

    Returns:
        Dict with the tab list.
    """
    controller = _get_controller()
    try:
        controller.rename_tab(tab_id, name)
    except KeyError:
        return {"error": f"Tab not found: {tab_id}"}
    except ValueError as exc:
        return {"error": str(exc)}
    return _tab_list(controller)


# ---------------------------------------------------------------------------
# Saved-game tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def save_game(name: str | None = None, save_id: str | None = None) -> dict:
    """Save the active game.

    Args:
        name: Save name. Defaults to the tab name.
        save_id: Existing save id to overwrite.

    Returns:
        Dict describing the saved game.
    """
    controller = _get_controller()
    game = controller.save_game(name, save_id)
    if game is None:
        return {"error": controller.store_error or "Save failed"}
    return minify_saved_game(game.to_dict())


@mcp.tool()
async def list_saved_games() -> dict:
    """List saved games, most recent first.

    Returns:
        Dict with games (id, name, move_count, timestamp).
    """
    games = _get_controller().saved_games()
    return {"games": [minify_saved_game(g.to_dict()) for g in games]}


@mcp.tool()
async def load_saved_game(save_id: str) -> dict:
    """Load a saved game into the active tab.

    Args:
        save_id: Id of the saved game.

    Returns:
        Board state dict for the loaded game.
    """
    if not _get_controller().load_saved_game(save_id):
        return {"error": f"Saved game not found or unusable: {save_id}"}
    return await _board_response()


@mcp.tool()
async def delete_saved_game(save_id: str) -> dict:
    """Delete a saved game.

    Args:
        save_id: Id of the saved game.

    Returns:
        Dict with deleted flag.
    """
    if not _get_controller().delete_saved_game(save_id):
        return {"error": f"Saved game not found: {save_id}"}
    return {"deleted": save_id}


@mcp.tool()
async def load_auto_save(tab_id: str | None = None) -> dict:
    """Load a tab's auto-saved game into the active tab.

    Args:
        tab_id: Tab whose auto-save to load. Defaults to the active tab.

    Returns:
        Board state dict for the restored game.
    """
    if not _get_controller().load_auto_save(tab_id):
        return {"error": f"No usable auto-save for tab: {tab_id or 'active'}"}
    return await _board_response()


@mcp.tool()
async def clear_auto_saves(tab_id: str | None = None) -> dict:
    """Clear one tab's auto-save, or all of them.

    Args:
        tab_id: Tab whose auto-save to clear. Clears every auto-save when
            omitted.

    Returns:
        Dict with the cleared tab id or "all".
    """
    if not _get_controller().clear_auto_saves(tab_id):
        return {"error": PERSISTENCE_UNAVAILABLE}
    return {"cleared": tab_id or "all"}


@mcp.tool()
async def export_saved_games() -> dict:
    """Export every saved game as a JSON blob.

    Returns:
        Dict with the export blob.
    """
    controller = _get_controller()
    blob = controller.export_saved_games()
    if blob is None:
        return {"error": controller.store_error or "Export failed"}
    return {"export": blob}


@mcp.tool()
async def import_saved_games(blob: str) -> dict:
    """Import saved games from an export blob. All or nothing.

    Args:
        blob: JSON text produced by export_saved_games.

    Returns:
        Dict with the number of imported games.
    """
    controller = _get_controller()
    count = controller.import_saved_games(blob)
    if count is None:
        return {"error": controller.import_error or controller.store_error or "Import failed"}
    return {"imported": count}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(level=Config.from_env().log_level, stream=sys.stderr)
    mcp.run()
