"""Turn lifecycle: one current turn per thread, terminal states are final."""

from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Optional, Set, Tuple

from ..models.registry import ProtocolKind
from ..state.threads import Item, ItemKind, Role, ThreadStore, new_item_id

PENDING_TURN_ID = "pending"
SESSION_STOPPED_TEXT = "Session stopped."
# Terminal turns kept so late backend events for them can still be recognised.
RETAINED_TERMINAL_TURNS = 256


class TurnState(Enum):
    CREATED = "created"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATES = frozenset({TurnState.COMPLETED, TurnState.FAILED, TurnState.INTERRUPTED})


@dataclass
class Turn:
    token: str
    thread_id: str
    provider_id: str
    model: Optional[str]
    protocol: Optional[ProtocolKind]
    id: str = PENDING_TURN_ID
    state: TurnState = TurnState.CREATED
    output: str = ""
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_backend_id(self) -> bool:
        return self.id != PENDING_TURN_ID


class TurnLifecycleManager:
    """
    Owns thread processing state for every turn.

    The current turn of a thread is the one an interrupt applies to. A newer
    submission replaces it without blocking the older one; the older turn
    still completes or fails, but no longer clears the thread's processing
    flag. A turn interrupted before its backend id arrived is remembered as
    a pending interrupt so that the late acknowledgment is discarded.
    """

    def __init__(self, store: ThreadStore) -> None:
        self.store = store
        self._turns: Dict[str, Turn] = {}
        self._by_backend_id: Dict[Tuple[str, str], str] = {}
        self._current: Dict[str, str] = {}
        self._processing: Dict[str, bool] = {}
        self._pending_interrupts: Set[str] = set()
        self._retired: Deque[str] = deque()
        self._counter = itertools.count(1)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def is_processing(self, thread_id: str) -> bool:
        return self._processing.get(thread_id, False)

    def current_turn(self, thread_id: str) -> Optional[Turn]:
        token = self._current.get(thread_id)
        return self._turns.get(token) if token else None

    def find_turn(self, token: str) -> Optional[Turn]:
        return self._turns.get(token)

    def find_by_backend_id(self, thread_id: str, turn_id: str) -> Optional[Turn]:
        token = self._by_backend_id.get((thread_id, turn_id))
        return self._turns.get(token) if token else None

    def is_pending_interrupt(self, token: str) -> bool:
        return token in self._pending_interrupts

    def is_current(self, turn: Turn) -> bool:
        return self._current.get(turn.thread_id) == turn.token

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #
    def begin(
        self, thread_id: str, provider_id: str, model: Optional[str], protocol: Optional[ProtocolKind] = None
    ) -> Turn:
        """Create a turn, make it current and mark the thread processing."""
        turn = Turn(
            token=f"turn-{next(self._counter)}-{new_item_id('local')}",
            thread_id=thread_id,
            provider_id=provider_id,
            model=model,
            protocol=protocol,
        )
        self._turns[turn.token] = turn
        self._current[thread_id] = turn.token
        self._set_processing(thread_id, True)
        return turn

    def acknowledge(self, token: str, turn_id: str) -> bool:
        """
        Record the backend id for a turn.

        Returns False when the acknowledgment is discarded because the turn
        is already terminal. The id is still recorded so a follow-up
        interrupt can name it.
        """
        turn = self._turns.get(token)
        if turn is None:
            return False
        turn.id = turn_id
        self._by_backend_id[(turn.thread_id, turn_id)] = turn.token
        if turn.is_terminal:
            return False
        turn.state = TurnState.ACTIVE
        if self.is_current(turn):
            self.store.set_active_turn_id(turn.thread_id, turn_id)
        return True

    def append_output(self, token: str, delta: str) -> Optional[str]:
        """Append a delta and return the accumulated text, or None if the turn is terminal."""
        turn = self._turns.get(token)
        if turn is None or turn.is_terminal:
            return None
        if turn.state == TurnState.CREATED:
            turn.state = TurnState.ACTIVE
        turn.output += delta
        return turn.output

    def complete(self, token: str) -> bool:
        turn = self._turns.get(token)
        if turn is None or turn.is_terminal:
            return False
        turn.state = TurnState.COMPLETED
        self._release(turn)
        self._retire(turn)
        return True

    def fail(self, token: str, message: str) -> bool:
        """Fail the turn and append a visible error item."""
        turn = self._turns.get(token)
        if turn is None or turn.is_terminal:
            return False
        turn.state = TurnState.FAILED
        turn.error = message
        self._release(turn)
        self._retire(turn)
        self.store.upsert_item(
            turn.thread_id,
            Item(id=new_item_id("error"), role=Role.ASSISTANT, text=message, kind=ItemKind.ERROR),
        )
        return True

    def interrupt(self, thread_id: str) -> Optional[Turn]:
        """
        Stop the thread synchronously and return the interrupted turn, if any.

        Processing and the active id are cleared before this returns.
        """
        self._set_processing(thread_id, False)
        self.store.set_active_turn_id(thread_id, None)
        self.store.upsert_item(
            thread_id,
            Item(id=new_item_id("assistant"), role=Role.ASSISTANT, text=SESSION_STOPPED_TEXT),
        )
        token = self._current.pop(thread_id, None)
        turn = self._turns.get(token) if token else None
        if turn is None or turn.is_terminal:
            return None
        turn.state = TurnState.INTERRUPTED
        if not turn.has_backend_id:
            self._pending_interrupts.add(turn.token)
        self._retire(turn)
        return turn

    def clear_pending_interrupt(self, token: str) -> None:
        self._pending_interrupts.discard(token)

    def forget(self, token: str) -> bool:
        """Drop a terminal turn and everything indexed by it."""
        turn = self._turns.get(token)
        if turn is None or not turn.is_terminal:
            return False
        del self._turns[token]
        self._pending_interrupts.discard(token)
        if self._by_backend_id.get((turn.thread_id, turn.id)) == token:
            del self._by_backend_id[(turn.thread_id, turn.id)]
        return True

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _release(self, turn: Turn) -> None:
        if not self.is_current(turn):
            return
        del self._current[turn.thread_id]
        self._set_processing(turn.thread_id, False)
        self.store.set_active_turn_id(turn.thread_id, None)

    def _retire(self, turn: Turn) -> None:
        self._retired.append(turn.token)
        while len(self._retired) > RETAINED_TERMINAL_TURNS:
            self.forget(self._retired.popleft())

    def _set_processing(self, thread_id: str, processing: bool) -> None:
        self._processing[thread_id] = processing
        self.store.mark_processing(thread_id, processing)
