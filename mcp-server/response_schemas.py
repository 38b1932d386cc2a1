"""Response schemas and minification for MCP tool responses.

Minifies MCP tool return values to reduce LLM context token waste.
Persisted records (tabs, saves) are NOT affected; only MCP return values.

PGN string format for move_list uses standard chess notation
(1.e4 e5 2.Nf3 ...) which is natural for the LLM agent to read.
"""

from __future__ import annotations

import os


# ---------------------------------------------------------------------------
# Minification functions
# ---------------------------------------------------------------------------


def minify_board_state(state: dict) -> dict:
    """Minify a board state dict for MCP response.

    Compacts move_list to a PGN string, replaces legal_moves with a
    count, drops the full PGN text and omits empty overlays.

    Args:
        state: Full board state dict (as produced by _build_board_state).

    Returns:
        Minified dict with reduced token footprint.
    """
    result = {}

    # Keep core fields as-is
    for key in (
        "tab_id", "tab_name", "fen", "turn", "last_move", "last_move_san",
        "mode", "human_color", "orientation", "status", "is_game_over",
        "result", "is_thinking",
    ):
        if key in state:
            result[key] = state[key]

    # Compact move_list: JSON array -> PGN string
    move_list = state.get("move_list", [])
    if isinstance(move_list, list):
        result["move_list"] = _moves_to_pgn_string(move_list)
    else:
        result["move_list"] = move_list

    # Replace legal_moves list with count
    legal_moves = state.get("legal_moves", [])
    if isinstance(legal_moves, list):
        result["legal_moves_count"] = len(legal_moves)
    else:
        result["legal_moves_count"] = 0

    # Overlays only when present
    analysis = state.get("analysis")
    if analysis:
        result["analysis"] = minify_analysis(analysis)
    for key in ("hint", "selected_square", "engine_error", "store_error"):
        if state.get(key):
            result[key] = state[key]
    if state.get("available_moves"):
        result["available_moves"] = sorted(state["available_moves"])

    # Removed fields: pgn, arrows, insufficient_material

    return result


def minify_analysis(analysis: dict) -> dict:
    """Minify an AnalysisResult dict for MCP response.

    Drops the arrow overlay and null score keys.

    Args:
        analysis: Full dict from AnalysisResult.to_dict().

    Returns:
        Minified dict.
    """
    result = {
        "display": analysis.get("display"),
        "best_move": analysis.get("best_move"),
        "best_move_san": analysis.get("best_move_san"),
        "depth": analysis.get("depth"),
    }
    if analysis.get("mate") is not None:
        result["mate"] = analysis["mate"]
    elif analysis.get("evaluation") is not None:
        result["evaluation"] = analysis["evaluation"]
    return result


def minify_saved_game(game: dict) -> dict:
    """Minify a SavedGame dict to a listing entry.

    Args:
        game: Full dict from SavedGame.to_dict().

    Returns:
        Dict with id, name, move_count and timestamp only.
    """
    return {
        "id": game.get("id"),
        "name": game.get("name"),
        "move_count": game.get("move_count"),
        "timestamp": game.get("timestamp"),
    }


# ---------------------------------------------------------------------------
# Helper: move list to PGN string
# ---------------------------------------------------------------------------


def _moves_to_pgn_string(moves: list[str]) -> str:
    """Convert a list of SAN moves to a PGN move string.

    E.g., ['e4', 'e5', 'Nf3', 'Nc6'] -> '1.e4 e5 2.Nf3 Nc6'

    Args:
        moves: List of SAN move strings.

    Returns:
        PGN-formatted move string.
    """
    parts = []
    for i, move in enumerate(moves):
        if i % 2 == 0:
            parts.append(f"{i // 2 + 1}.{move}")
        else:
            parts.append(move)
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Validation schemas (dict-based)
# ---------------------------------------------------------------------------

BOARD_STATE_SCHEMA = {
    "tab_id": str,
    "tab_name": str,
    "fen": str,
    "turn": str,
    "last_move": (str, type(None)),
    "last_move_san": (str, type(None)),
    "mode": str,
    "human_color": str,
    "orientation": str,
    "status": str,
    "is_game_over": bool,
    "result": (str, type(None)),
    "is_thinking": bool,
    "move_list": str,
    "legal_moves_count": int,
}

ANALYSIS_SCHEMA = {
    "display": str,
    "best_move": (str, type(None)),
    "best_move_san": (str, type(None)),
    "depth": (int, type(None)),
}

SAVED_GAME_SUMMARY_SCHEMA = {
    "id": str,
    "name": str,
    "move_count": int,
    "timestamp": str,
}

ERROR_SCHEMA = {
    "error": str,
}


def validate_response(response: dict, schema: dict) -> list[str]:
    """Validate a response dict against a schema.

    Only runs when CHESSBOT_VALIDATE=1 env var is set.

    Args:
        response: Response dict to validate.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    if os.environ.get("CHESSBOT_VALIDATE") != "1":
        return []

    errors = []

    if not isinstance(response, dict):
        errors.append(f"Response is not a dict: {type(response).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in response:
            errors.append(f"Missing key: {key}")
            continue

        value = response[key]
        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        elif not isinstance(value, expected_types):
            errors.append(
                f"Key '{key}': expected {expected_types.__name__}, "
                f"got {type(value).__name__}"
            )

    return errors
