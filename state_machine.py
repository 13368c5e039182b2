"""
STATE MACHINE
=============
Thread-safe state holder with:
- Validated transitions (anything not whitelisted raises)
- Transition history

PositionStateMachine wires the FLAT → OPEN → CLOSED position lifecycle.
"""

import threading
import logging
from typing import Dict, FrozenSet, List, Optional
from enum import Enum
from datetime import datetime, timezone
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class InvalidTransitionError(ValueError):
    """Transition not allowed from the current state."""


class PositionState(Enum):
    FLAT   = "FLAT"
    OPEN   = "OPEN"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class StateTransition:
    """Record of a state transition"""
    from_state: Enum
    to_state: Enum
    timestamp: datetime
    reason: Optional[str] = None


class StateMachine:
    """
    Thread-safe state machine with validation
    """

    def __init__(
        self,
        name: str,
        initial_state: Enum,
        valid_transitions: Dict[Enum, FrozenSet[Enum]],
    ):
        """
        Args:
            name: Label used in log lines
            initial_state: Starting state
            valid_transitions: state -> set of states reachable from it;
                states with no entry are terminal
        """
        self.name = name
        self._current_state = initial_state
        self._valid_transitions = valid_transitions

        self._lock = threading.RLock()
        self._history: List[StateTransition] = []

    @property
    def current_state(self) -> Enum:
        with self._lock:
            return self._current_state

    @property
    def is_terminal(self) -> bool:
        with self._lock:
            return not self._valid_transitions.get(self._current_state)

    def can_transition_to(self, new_state: Enum) -> bool:
        with self._lock:
            return new_state in self._valid_transitions.get(self._current_state, frozenset())

    def transition(self, new_state: Enum, reason: Optional[str] = None) -> StateTransition:
        """
        Move to `new_state`.

        Raises:
            InvalidTransitionError: if the move is not whitelisted
        """
        with self._lock:
            if not self.can_transition_to(new_state):
                raise InvalidTransitionError(
                    f"Invalid transition in '{self.name}': "
                    f"{self._current_state.name} -> {new_state.name}"
                )

            record = StateTransition(
                from_state=self._current_state,
                to_state=new_state,
                timestamp=datetime.now(timezone.utc),
                reason=reason,
            )
            self._current_state = new_state
            self._history.append(record)

            logger.debug(
                f"[{self.name}] {record.from_state.name} -> {new_state.name}"
                + (f" ({reason})" if reason else "")
            )
            return record

    def get_history(self, limit: Optional[int] = None) -> List[StateTransition]:
        with self._lock:
            if limit:
                return self._history[-limit:]
            return list(self._history)


class PositionStateMachine(StateMachine):
    """FLAT → OPEN → CLOSED; CLOSED is terminal."""

    TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {
        PositionState.FLAT: frozenset({PositionState.OPEN}),
        PositionState.OPEN: frozenset({PositionState.CLOSED}),
    }

    def __init__(self, instrument: str):
        super().__init__(
            name=f"POSITION:{instrument}",
            initial_state=PositionState.FLAT,
            valid_transitions=self.TRANSITIONS,
        )
