"""Record schemas for persisted and imported data.

Schemas are plain dicts mapping key -> expected type (or tuple of
types). ``validate_record`` returns a list of problems; an empty list
means the record is structurally sound.
"""

from __future__ import annotations

_NONE = type(None)

GAME_SNAPSHOT_SCHEMA = {
    "fen": str,
    "pgn": str,
    "move_history": list,
    "settings": dict,
    "last_move": (dict, _NONE),
    "evaluation": (int, _NONE),
}

SAVED_GAME_SCHEMA = {
    "id": str,
    "name": str,
    "fen": str,
    "pgn": str,
    "move_history": list,
    "settings": dict,
    "move_count": int,
    "timestamp": str,
    "evaluation": (int, _NONE),
    "last_move": (dict, _NONE),
}

TAB_SCHEMA = {
    "id": str,
    "name": str,
    "game_state": dict,
    "timestamp": str,
}

EXPORT_FORMAT = "chessbot-saved-games"
EXPORT_VERSION = 1


def validate_record(record: object, schema: dict) -> list[str]:
    """Validate a record dict against a schema.

    Args:
        record: Value to check; must be a dict to pass.
        schema: Dict mapping key names to expected types (or tuple of types).

    Returns:
        List of validation error strings (empty = valid).
    """
    errors: list[str] = []

    if not isinstance(record, dict):
        errors.append(f"Record is not a dict: {type(record).__name__}")
        return errors

    for key, expected_types in schema.items():
        if key not in record:
            errors.append(f"Missing key: {key}")
            continue

        value = record[key]
        # bool is an int subclass; never accept it where a count is meant
        if isinstance(value, bool) and expected_types is not bool and (
            expected_types is int
            or (isinstance(expected_types, tuple) and int in expected_types)
        ):
            errors.append(f"Key '{key}': expected int, got bool")
            continue

        if isinstance(expected_types, tuple):
            if not isinstance(value, expected_types):
                type_names = ", ".join(t.__name__ for t in expected_types)
                errors.append(
                    f"Key '{key}': expected ({type_names}), "
                    f"got {type(value).__name__}"
                )
        else:
            if not isinstance(value, expected_types):
                errors.append(
                    f"Key '{key}': expected {expected_types.__name__}, "
                    f"got {type(value).__name__}"
                )

    return errors


def validate_saved_game(record: object) -> list[str]:
    """Schema check plus the cross-field rules for one SavedGame."""
    errors = validate_record(record, SAVED_GAME_SCHEMA)
    if errors:
        return errors
    if not record["id"]:
        errors.append("Key 'id': must not be empty")
    if record["move_count"] < 0:
        errors.append("Key 'move_count': must not be negative")
    if not all(isinstance(m, str) for m in record["move_history"]):
        errors.append("Key 'move_history': entries must be strings")
    return errors
