"""Move input state machine.

Turns board gestures into move attempts. A click either selects one of
the mover's pieces, plays to a highlighted destination, switches to
another own piece, or clears the selection. A drag-and-drop is a single
atomic attempt that skips selection entirely.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from chessbot.errors import MoveError
from chessbot.models import ClickOutcome, Move, SelectionState
from chessbot.position import PositionAdapter

logger = logging.getLogger(__name__)

CLICK_CHANNEL = "click"
DROP_CHANNEL = "drop"


class MoveInput:
    """Selection state for one tab.

    Args:
        adapter: The tab's position adapter.
        may_move: Predicate on a color name; True when the user is
            allowed to move that side right now.
        debounce_seconds: Refractory window per input channel.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        adapter: PositionAdapter,
        may_move: Callable[[str], bool],
        debounce_seconds: float = 0.15,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapter = adapter
        self._may_move = may_move
        self._debounce = debounce_seconds
        self._clock = clock
        self._last_activation: dict[str, float] = {}
        self._selected: str | None = None
        self._destinations: frozenset[str] = frozenset()
        self.last_applied: Move | None = None

    @property
    def state(self) -> SelectionState:
        return SelectionState(self._selected, self._destinations)

    def reset(self) -> None:
        self._selected = None
        self._destinations = frozenset()

    def _debounced(self, channel: str) -> bool:
        now = self._clock()
        last = self._last_activation.get(channel)
        if last is not None and now - last < self._debounce:
            return True
        self._last_activation[channel] = now
        return False

    def _selectable(self, square: str) -> frozenset[str] | None:
        """Destinations if ``square`` holds a movable piece with moves."""
        color = self._adapter.piece_color(square)
        if color is None or color != self._adapter.turn or not self._may_move(color):
            return None
        destinations = self._adapter.legal_destinations(square)
        return destinations or None

    def click(self, square: str) -> ClickOutcome:
        """Handle one square activation."""
        if self._debounced(CLICK_CHANNEL):
            return ClickOutcome.IGNORED

        if self._selected is None:
            destinations = self._selectable(square)
            if destinations is None:
                return ClickOutcome.DESELECTED
            self._selected = square
            self._destinations = destinations
            return ClickOutcome.SELECTED

        if square in self._destinations:
            try:
                self.last_applied = self._adapter.apply_move(self._selected, square)
            except MoveError as exc:
                logger.warning("Pre-validated move rejected: %s", exc)
                return ClickOutcome.REJECTED
            self.reset()
            return ClickOutcome.MOVED

        if square != self._selected:
            destinations = self._selectable(square)
            if destinations is not None:
                self._selected = square
                self._destinations = destinations
                return ClickOutcome.SELECTED

        self.reset()
        return ClickOutcome.DESELECTED

    def drop(
        self,
        origin: str,
        destination: str,
        promotion: str | None = None,
    ) -> Move | None:
        """Attempt a drag-and-drop move. None means the piece snaps back."""
        if self._debounced(DROP_CHANNEL):
            return None
        color = self._adapter.piece_color(origin)
        if color is None or not self._may_move(color):
            return None
        try:
            move = self._adapter.apply_move(origin, destination, promotion)
        except MoveError:
            return None
        self.last_applied = move
        self.reset()
        return move
