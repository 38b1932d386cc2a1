"""Async engine client for the chess session core.

Wraps Stockfish via the python-chess asyncio UCI interface. Provides:
- A shared backend that serializes searches on one engine process
- A per-tab client with request ids, supersession and timeouts
- A CLI for quick one-off analysis
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable

import chess
import chess.engine

from chessbot.errors import EngineError, ErrorKind

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/games/stockfish",
    "/usr/bin/stockfish",
]

_MATE_SCORE = 10000

BEST_MOVE = "best_move"
ANALYSIS = "analysis"
HINT = "hint"


def _find_stockfish() -> str:
    """Auto-detect Stockfish binary path.

    Checks known install paths, then falls back to PATH lookup.

    Returns:
        Path to Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set CHESSBOT_STOCKFISH_PATH."
    )


@dataclass(frozen=True)
class EngineReply:
    """One response on the wire: best move plus a White-POV score."""

    best_move: str | None
    evaluation_cp: int | None = None
    mate: int | None = None


@dataclass(frozen=True)
class EngineResponse:
    """A reply tagged with the request that produced it."""

    request_id: int
    kind: str
    fen: str
    depth: int
    reply: EngineReply


def reply_from_info(info: dict) -> EngineReply:
    """Convert a python-chess analysis info dict to an EngineReply."""
    pv = info.get("pv") or []
    best = pv[0].uci() if pv else None
    score = info.get("score")
    if score is None:
        return EngineReply(best_move=best)

    white = score.white()
    mate = white.mate()
    if mate is not None:
        return EngineReply(best_move=best, evaluation_cp=None, mate=mate)
    return EngineReply(
        best_move=best,
        evaluation_cp=white.score(mate_score=_MATE_SCORE),
        mate=None,
    )


class StockfishBackend:
    """One Stockfish process shared by every tab.

    Searches are serialized with a lock; the UCI protocol only runs one
    search at a time.
    """

    def __init__(self, stockfish_path: str | None = None) -> None:
        self._stockfish_path = stockfish_path
        self._protocol: chess.engine.UciProtocol | None = None
        self._transport: asyncio.SubprocessTransport | None = None
        self._lock = asyncio.Lock()

    async def _open_engine(self) -> chess.engine.UciProtocol:
        """Start a fresh Stockfish process.

        Raises:
            EngineError: UNREACHABLE if the binary is missing or dies
                during the UCI handshake.
        """
        try:
            path = self._stockfish_path or _find_stockfish()
            self._stockfish_path = path
            transport, protocol = await chess.engine.popen_uci(path)
        except (FileNotFoundError, OSError, chess.engine.EngineError) as exc:
            raise EngineError(ErrorKind.UNREACHABLE, str(exc)) from exc
        self._transport = transport
        self._protocol = protocol
        logger.info("Started engine at %s", path)
        return protocol

    async def _ensure_engine(self) -> chess.engine.UciProtocol:
        """Return a live engine, restarting once if it was terminated."""
        if self._protocol is None:
            return await self._open_engine()
        try:
            await self._protocol.ping()
        except chess.engine.EngineTerminatedError:
            logger.warning("Engine terminated, restarting")
            return await self._open_engine()
        return self._protocol

    async def search(self, fen: str, depth: int) -> EngineReply:
        """Search ``fen`` to ``depth`` and return the principal result.

        Raises:
            EngineError: UNREACHABLE when the engine cannot be started
                or crashes twice in a row.
        """
        board = chess.Board(fen)
        async with self._lock:
            protocol = await self._ensure_engine()
            try:
                info = await protocol.analyse(board, chess.engine.Limit(depth=depth))
            except chess.engine.EngineTerminatedError:
                protocol = await self._open_engine()
                try:
                    info = await protocol.analyse(
                        board, chess.engine.Limit(depth=depth)
                    )
                except chess.engine.EngineError as exc:
                    raise EngineError(ErrorKind.UNREACHABLE, str(exc)) from exc
            except chess.engine.EngineError as exc:
                raise EngineError(ErrorKind.UNREACHABLE, str(exc)) from exc
        return reply_from_info(info)

    async def close(self) -> None:
        """Shut the Stockfish process down."""
        if self._protocol is None:
            return
        try:
            await self._protocol.quit()
        except chess.engine.EngineTerminatedError:
            pass
        self._protocol = None
        self._transport = None


class EngineClient:
    """Per-tab request channel to a shared backend.

    Each request gets a fresh id. A newer request makes every older one
    stale: the older reply still arrives but ``is_current`` reports it
    as superseded, and callers must drop it.
    """

    def __init__(self, backend, timeout: float = 15.0) -> None:
        self._backend = backend
        self._timeout = timeout
        self._latest_id = 0
        self._pending_id: int | None = None
        self._pending_kind: str | None = None

    @property
    def state(self) -> str:
        return "idle" if self._pending_id is None else "requesting"

    @property
    def pending_id(self) -> int | None:
        return self._pending_id

    @property
    def pending_kind(self) -> str | None:
        return self._pending_kind

    def is_current(self, request_id: int) -> bool:
        return request_id == self._latest_id

    def cancel(self) -> None:
        """Invalidate whatever request is outstanding."""
        if self._pending_id is not None:
            logger.debug("Cancelled engine request %d", self._pending_id)
        self._latest_id += 1
        self._pending_id = None
        self._pending_kind = None

    # The request_* methods reserve their id when called, not when the
    # returned coroutine first runs, so issue order decides supersession.

    def request_best_move(self, fen: str, depth: int) -> Awaitable[EngineResponse]:
        return self._request(self._begin(BEST_MOVE), BEST_MOVE, fen, depth)

    def request_analysis(self, fen: str, depth: int) -> Awaitable[EngineResponse]:
        return self._request(self._begin(ANALYSIS), ANALYSIS, fen, depth)

    def request_hint(self, fen: str, depth: int) -> Awaitable[EngineResponse]:
        return self._request(self._begin(HINT), HINT, fen, depth)

    def _begin(self, kind: str) -> int:
        self._latest_id += 1
        self._pending_id = self._latest_id
        self._pending_kind = kind
        return self._latest_id

    async def _request(
        self,
        request_id: int,
        kind: str,
        fen: str,
        depth: int,
    ) -> EngineResponse:
        try:
            reply = await asyncio.wait_for(
                self._backend.search(fen, depth), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            raise EngineError(
                ErrorKind.TIMEOUT,
                f"No engine response within {self._timeout:g}s",
                request_id=request_id,
            ) from exc
        except EngineError as exc:
            exc.request_id = request_id
            raise
        except (chess.engine.EngineError, OSError) as exc:
            raise EngineError(
                ErrorKind.UNREACHABLE, str(exc), request_id=request_id
            ) from exc
        finally:
            if self._pending_id == request_id:
                self._pending_id = None
                self._pending_kind = None

        return EngineResponse(
            request_id=request_id,
            kind=kind,
            fen=fen,
            depth=depth,
            reply=reply,
        )


# ---------------------------------------------------------------------------
# CLI interface
# ---------------------------------------------------------------------------


async def _cli_analyze(fen: str, depth: int) -> None:
    """Analyze a FEN position and print the engine's verdict."""
    backend = StockfishBackend()
    client = EngineClient(backend)
    try:
        response = await client.request_analysis(fen, depth)
    finally:
        await backend.close()

    reply = response.reply
    board = chess.Board(fen)
    print(f"Position: {fen}")
    print(f"Side to move: {'White' if board.turn else 'Black'}")
    if reply.mate is not None:
        print(f"Score: Mate in {reply.mate}")
    elif reply.evaluation_cp is not None:
        print(f"Score: {reply.evaluation_cp / 100.0:+.2f}")
    if reply.best_move:
        print(f"Best move: {board.san(chess.Move.from_uci(reply.best_move))}")


def main() -> None:
    """CLI entry point for engine.py."""
    parser = argparse.ArgumentParser(description="Analyze a FEN with Stockfish")
    parser.add_argument("fen", type=str, help="FEN string to analyze")
    parser.add_argument("--depth", type=int, default=15, help="Search depth")
    args = parser.parse_args()

    try:
        asyncio.run(_cli_analyze(args.fen, args.depth))
    except (EngineError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
