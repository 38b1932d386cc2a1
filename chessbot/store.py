"""Persistence for chess sessions.

Two layers:
- Key-value byte stores (in-memory and file-backed) with get/set/delete
- SessionStore, which keeps one auto-save per tab and a capped list of
  named saves on top of any key-value store, plus JSON export/import

Every record is keyed by tab id or save id so tabs never overwrite each
other's data.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote

from chessbot.errors import ErrorKind, StoreError
from chessbot.models import GameSnapshot, SavedGame, utc_now_iso
from chessbot.schemas import EXPORT_FORMAT, EXPORT_VERSION, validate_saved_game

logger = logging.getLogger(__name__)

MAX_SAVED_GAMES = 50

_SAVES_INDEX = "saves:index"
_AUTOSAVE_INDEX = "autosave:index"

_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def _save_key(save_id: str) -> str:
    return f"save:{save_id}"


def _autosave_key(tab_id: str) -> str:
    return f"autosave:{tab_id}"


def _timestamp_key(timestamp: str) -> datetime:
    parsed = datetime.fromisoformat(timestamp)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------


class MemoryStore:
    """Dict-backed byte store.

    ``quota_bytes`` caps the total stored size; ``available`` can be
    switched off to simulate a store that has gone away.
    """

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._data: dict[str, bytes] = {}
        self.quota_bytes = quota_bytes
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreError(ErrorKind.UNAVAILABLE, "Store is unavailable")

    def get(self, key: str) -> bytes | None:
        self._check()
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._check()
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(value) > self.quota_bytes:
                raise StoreError(
                    ErrorKind.QUOTA_EXCEEDED,
                    f"Writing {key} would exceed {self.quota_bytes} bytes",
                )
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._check()
        self._data.pop(key, None)


class FileStore:
    """One file per key under ``root``, written atomically."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        return self._root / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(ErrorKind.UNAVAILABLE, str(exc)) from exc

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(value)
            os.replace(tmp, path)
        except OSError as exc:
            kind = (
                ErrorKind.QUOTA_EXCEEDED
                if exc.errno in _QUOTA_ERRNOS
                else ErrorKind.UNAVAILABLE
            )
            raise StoreError(kind, str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StoreError(ErrorKind.UNAVAILABLE, str(exc)) from exc


def read_json(store, key: str) -> object | None:
    """Load a JSON value from ``store``; corrupt data reads as missing.

    Raises:
        StoreError: If the underlying store is unavailable.
    """
    raw = store.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Discarding corrupt record at %s", key)
        return None


def write_json(store, key: str, value: object) -> None:
    store.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Auto-saves per tab and up to ``max_saves`` named saves.

    All methods raise StoreError when the key-value store fails; the
    caller decides whether that matters.
    """

    def __init__(self, store, max_saves: int = MAX_SAVED_GAMES) -> None:
        self._store = store
        self._max_saves = max_saves

    # -- auto-save -------------------------------------------------------

    def auto_save(self, tab_id: str, snapshot: GameSnapshot) -> None:
        """Overwrite the single auto-save record for ``tab_id``."""
        record = {"tab_id": tab_id, "timestamp": utc_now_iso(), **snapshot.to_dict()}
        write_json(self._store, _autosave_key(tab_id), record)
        index = self._index(_AUTOSAVE_INDEX)
        if tab_id not in index:
            write_json(self._store, _AUTOSAVE_INDEX, [*index, tab_id])

    def load_auto_save(self, tab_id: str) -> GameSnapshot | None:
        record = read_json(self._store, _autosave_key(tab_id))
        if not isinstance(record, dict):
            return None
        try:
            return GameSnapshot.from_dict(record)
        except (KeyError, TypeError):
            logger.warning("Ignoring malformed auto-save for tab %s", tab_id)
            return None

    def clear_auto_save(self, tab_id: str | None = None) -> None:
        """Drop one tab's auto-save, or every auto-save when None."""
        index = self._index(_AUTOSAVE_INDEX)
        targets = index if tab_id is None else [tab_id]
        for target in targets:
            self._store.delete(_autosave_key(target))
        remaining = [t for t in index if t not in targets]
        write_json(self._store, _AUTOSAVE_INDEX, remaining)

    # -- named saves -----------------------------------------------------

    def save(
        self,
        name: str,
        snapshot: GameSnapshot,
        save_id: str | None = None,
    ) -> SavedGame:
        """Store ``snapshot`` under ``name``.

        Re-saving with an existing ``save_id`` replaces that record.
        When the count goes over the cap the oldest save is evicted.
        """
        game = SavedGame(
            id=save_id or str(uuid.uuid4()),
            name=name,
            fen=snapshot.fen,
            pgn=snapshot.pgn,
            move_history=list(snapshot.move_history),
            settings=dict(snapshot.settings),
            move_count=len(snapshot.move_history),
            timestamp=utc_now_iso(),
            evaluation=snapshot.evaluation,
            last_move=snapshot.last_move,
        )
        write_json(self._store, _save_key(game.id), game.to_dict())

        index = self._index(_SAVES_INDEX)
        if game.id not in index:
            index.append(game.id)
        self._write_index_with_eviction(index)
        return game

    def get(self, save_id: str) -> SavedGame | None:
        record = read_json(self._store, _save_key(save_id))
        if record is None or validate_saved_game(record):
            return None
        return SavedGame.from_dict(record)

    def delete(self, save_id: str) -> bool:
        index = self._index(_SAVES_INDEX)
        if save_id not in index:
            return False
        self._store.delete(_save_key(save_id))
        write_json(self._store, _SAVES_INDEX, [i for i in index if i != save_id])
        return True

    def list(self) -> list[SavedGame]:
        """All named saves, most recent first."""
        games = self._load_all(self._index(_SAVES_INDEX))
        order = {g.id: pos for pos, g in enumerate(games)}
        return sorted(
            games,
            key=lambda g: (_timestamp_key(g.timestamp), order[g.id]),
            reverse=True,
        )

    def _index(self, key: str) -> list[str]:
        index = read_json(self._store, key)
        if not isinstance(index, list):
            return []
        return [i for i in index if isinstance(i, str)]

    def _load_all(self, index: list[str]) -> list[SavedGame]:
        games = []
        for save_id in index:
            game = self.get(save_id)
            if game is not None:
                games.append(game)
        return games

    def _write_index_with_eviction(self, index: list[str]) -> None:
        games = self._load_all(index)
        kept_ids = [g.id for g in games]
        while len(games) > self._max_saves:
            # ties on timestamp fall back to insertion order
            oldest = min(
                enumerate(games),
                key=lambda pair: (_timestamp_key(pair[1].timestamp), pair[0]),
            )[1]
            games.remove(oldest)
            kept_ids.remove(oldest.id)
            self._store.delete(_save_key(oldest.id))
            logger.info("Evicted saved game %s (%s)", oldest.id, oldest.name)
        write_json(self._store, _SAVES_INDEX, kept_ids)

    # -- export / import -------------------------------------------------

    def export(self) -> str:
        """Serialize every named save as a self-describing JSON blob."""
        payload = {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "games": [g.to_dict() for g in self.list()],
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)

    def import_games(self, blob: str) -> int:
        """Import saves from an ``export()`` blob, all or nothing.

        Returns:
            Number of records imported.

        Raises:
            StoreError: CORRUPT_IMPORT if the blob or any record fails
                validation (nothing is written), or UNAVAILABLE /
                QUOTA_EXCEEDED if the store fails while committing.
        """
        records = _parse_export(blob)

        index = self._index(_SAVES_INDEX)
        previous: dict[str, bytes | None] = {}
        try:
            for record in records:
                key = _save_key(record["id"])
                previous[key] = self._store.get(key)
                write_json(self._store, key, record)
            for record in records:
                if record["id"] not in index:
                    index.append(record["id"])
            self._write_index_with_eviction(index)
        except StoreError:
            self._roll_back(previous)
            raise

        logger.info("Imported %d saved games", len(records))
        return len(records)

    def _roll_back(self, previous: dict[str, bytes | None]) -> None:
        for key, value in previous.items():
            try:
                if value is None:
                    self._store.delete(key)
                else:
                    self._store.set(key, value)
            except StoreError:
                logger.warning("Could not roll back %s", key)


def _parse_export(blob: str) -> list[dict]:
    """Validate an export blob and return its records."""
    try:
        payload = json.loads(blob)
    except (TypeError, json.JSONDecodeError) as exc:
        raise StoreError(ErrorKind.CORRUPT_IMPORT, f"Not valid JSON: {exc}") from exc

    if not isinstance(payload, dict) or payload.get("format") != EXPORT_FORMAT:
        raise StoreError(ErrorKind.CORRUPT_IMPORT, "Not a saved-games export")
    if payload.get("version") != EXPORT_VERSION:
        raise StoreError(
            ErrorKind.CORRUPT_IMPORT,
            f"Unsupported export version: {payload.get('version')!r}",
        )
    records = payload.get("games")
    if not isinstance(records, list):
        raise StoreError(ErrorKind.CORRUPT_IMPORT, "Key 'games' must be a list")

    seen: set[str] = set()
    for pos, record in enumerate(records):
        errors = validate_saved_game(record)
        if not errors:
            try:
                _timestamp_key(record["timestamp"])
            except ValueError:
                errors.append("Key 'timestamp': not an ISO-8601 datetime")
            if record["id"] in seen:
                errors.append(f"Duplicate id: {record['id']}")
            seen.add(record["id"])
        if errors:
            raise StoreError(
                ErrorKind.CORRUPT_IMPORT, f"Record {pos}: {'; '.join(errors)}"
            )
    return records
