"""Position adapter over the python-chess rules engine.

Owns one Board and its move history. All legality, notation and status
questions are delegated to python-chess. Failed mutations leave the
board exactly as it was.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

import chess
import chess.pgn

from chessbot.errors import ErrorKind, MoveError, PositionError
from chessbot.models import BLACK, WHITE, Move

logger = logging.getLogger(__name__)

_PROMOTION_PIECES = {
    "q": chess.QUEEN,
    "r": chess.ROOK,
    "b": chess.BISHOP,
    "n": chess.KNIGHT,
}


@dataclass(frozen=True)
class Status:
    """Terminal and check flags derived from the current position."""

    checkmate: bool
    stalemate: bool
    draw: bool
    check: bool
    game_over: bool
    insufficient_material: bool

    def describe(self) -> str:
        if self.checkmate:
            return "checkmate"
        if self.stalemate:
            return "stalemate"
        if self.draw:
            return "draw"
        if self.check:
            return "check"
        return "in progress"


def _parse_square(square: str) -> int | None:
    try:
        return chess.parse_square(square)
    except (ValueError, TypeError):
        return None


class PositionAdapter:
    """Authoritative position for a single tab."""

    def __init__(self, fen: str | None = None) -> None:
        self._board = chess.Board(fen) if fen else chess.Board()
        self._start_fen = self._board.fen()
        self._history: list[Move] = []

    # -- queries ---------------------------------------------------------

    def current_position(self) -> chess.Board:
        """Return a copy of the board; mutating it has no effect here."""
        return self._board.copy()

    def fen(self) -> str:
        return self._board.fen()

    @property
    def start_fen(self) -> str:
        return self._start_fen

    @property
    def turn(self) -> str:
        return WHITE if self._board.turn == chess.WHITE else BLACK

    @property
    def move_number(self) -> int:
        return self._board.fullmove_number

    @property
    def history(self) -> tuple[Move, ...]:
        return tuple(self._history)

    @property
    def last_move(self) -> Move | None:
        return self._history[-1] if self._history else None

    def piece_color(self, square: str) -> str | None:
        """Color of the piece on ``square``, or None if empty/invalid."""
        sq = _parse_square(square)
        if sq is None:
            return None
        piece = self._board.piece_at(sq)
        if piece is None:
            return None
        return WHITE if piece.color == chess.WHITE else BLACK

    def legal_destinations(self, square: str) -> frozenset[str]:
        """Destination squares reachable from ``square`` this turn.

        Empty for an empty square, a bad square name, or a piece of the
        side not to move.
        """
        sq = _parse_square(square)
        if sq is None or self._board.piece_at(sq) is None:
            return frozenset()
        return frozenset(
            chess.square_name(m.to_square)
            for m in self._board.legal_moves
            if m.from_square == sq
        )

    def status(self) -> Status:
        board = self._board
        checkmate = board.is_checkmate()
        stalemate = board.is_stalemate()
        draw = (
            stalemate
            or board.can_claim_threefold_repetition()
            or board.can_claim_fifty_moves()
        )
        return Status(
            checkmate=checkmate,
            stalemate=stalemate,
            draw=draw,
            check=board.is_check(),
            game_over=checkmate or draw,
            insufficient_material=board.is_insufficient_material(),
        )

    def san_for(self, uci: str) -> str | None:
        """SAN for a UCI move in the current position, None if illegal."""
        try:
            move = chess.Move.from_uci(uci)
        except (chess.InvalidMoveError, ValueError):
            return None
        if move not in self._board.legal_moves:
            return None
        return self._board.san(move)

    def pgn(self) -> str:
        """Export the game so far as PGN text."""
        game = chess.pgn.Game()
        if self._start_fen != chess.STARTING_FEN:
            game.setup(chess.Board(self._start_fen))
        status = self.status()
        if status.game_over:
            game.headers["Result"] = self._board.result(claim_draw=True)
        node = game
        for move in self._board.move_stack:
            node = node.add_variation(move)
        exporter = chess.pgn.StringExporter(headers=True, variations=False, comments=False)
        return game.accept(exporter)

    # -- mutations -------------------------------------------------------

    def apply_move(
        self,
        origin: str,
        destination: str,
        promotion: str | None = None,
    ) -> Move:
        """Play ``origin``-``destination`` if legal.

        A pawn reaching the last rank without an explicit promotion
        piece becomes a queen.

        Raises:
            MoveError: If the move is illegal. The board is untouched.
        """
        from_sq = _parse_square(origin)
        to_sq = _parse_square(destination)
        if from_sq is None or to_sq is None:
            raise MoveError(f"Invalid square in move {origin}{destination}")

        promo_piece = None
        if promotion:
            promo_piece = _PROMOTION_PIECES.get(promotion.strip().lower()[:1])
            if promo_piece is None:
                raise MoveError(f"Invalid promotion piece: {promotion!r}")
        elif self._is_promotion_push(from_sq, to_sq):
            promo_piece = chess.QUEEN

        move = chess.Move(from_sq, to_sq, promotion=promo_piece)
        if move not in self._board.legal_moves:
            raise MoveError(f"Illegal move: {move.uci()}")

        san = self._board.san(move)
        self._board.push(move)
        realized = Move(
            origin=chess.square_name(from_sq),
            destination=chess.square_name(to_sq),
            promotion=chess.piece_symbol(promo_piece) if promo_piece else None,
            san=san,
            uci=move.uci(),
        )
        self._history.append(realized)
        return realized

    def _is_promotion_push(self, from_sq: int, to_sq: int) -> bool:
        piece = self._board.piece_at(from_sq)
        if piece is None or piece.piece_type != chess.PAWN:
            return False
        last_rank = 7 if piece.color == chess.WHITE else 0
        return chess.square_rank(to_sq) == last_rank

    def undo(self) -> bool:
        """Take back the last move. False (and no change) if none."""
        if not self._history:
            return False
        self._board.pop()
        self._history.pop()
        return True

    def reset(self) -> None:
        self._board = chess.Board()
        self._start_fen = self._board.fen()
        self._history = []

    def adopt(self, other: PositionAdapter) -> None:
        """Take over another adapter's board, start FEN and history."""
        self._board = other._board.copy()
        self._start_fen = other._start_fen
        self._history = list(other._history)

    def load_position(self, fen: str) -> None:
        """Replace the position with ``fen`` and clear history.

        Raises:
            PositionError: INVALID_FEN when the FEN does not parse or
                describes an impossible position.
        """
        try:
            board = chess.Board(fen.strip())
        except (ValueError, AttributeError) as exc:
            raise PositionError(ErrorKind.INVALID_FEN, f"Invalid FEN: {exc}") from exc
        if not board.is_valid():
            raise PositionError(ErrorKind.INVALID_FEN, f"Invalid FEN position: {fen}")

        self._board = board
        self._start_fen = board.fen()
        self._history = []

    def load_game(self, pgn: str) -> None:
        """Replace position and history by replaying ``pgn``.

        Raises:
            PositionError: INVALID_PGN when the text does not parse as a
                game or contains illegal moves.
        """
        try:
            game = chess.pgn.read_game(io.StringIO(pgn))
        except (ValueError, AttributeError) as exc:
            raise PositionError(ErrorKind.INVALID_PGN, f"Invalid PGN: {exc}") from exc
        if game is None:
            raise PositionError(ErrorKind.INVALID_PGN, "Invalid PGN: no game found")
        if game.errors:
            raise PositionError(
                ErrorKind.INVALID_PGN, f"Invalid PGN: {game.errors[0]}"
            )

        try:
            board = game.board()
        except ValueError as exc:
            raise PositionError(ErrorKind.INVALID_PGN, f"Invalid PGN: {exc}") from exc
        start_fen = board.fen()
        history: list[Move] = []
        for move in game.mainline_moves():
            if move not in board.legal_moves:
                raise PositionError(
                    ErrorKind.INVALID_PGN, f"Invalid PGN: illegal move {move.uci()}"
                )
            san = board.san(move)
            board.push(move)
            history.append(
                Move(
                    origin=chess.square_name(move.from_square),
                    destination=chess.square_name(move.to_square),
                    promotion=(
                        chess.piece_symbol(move.promotion) if move.promotion else None
                    ),
                    san=san,
                    uci=move.uci(),
                )
            )

        self._board = board
        self._start_fen = start_fen
        self._history = history
        logger.debug("Loaded PGN with %d moves", len(history))
