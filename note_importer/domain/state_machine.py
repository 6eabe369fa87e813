"""
Item State Machine

Side-effect-free validator for queue item status transitions. The queue
store and the upload worker consult it before writing a new status; it never
touches persistence itself.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List

from note_importer.core.exceptions import InvalidTransitionError
from note_importer.models.queue_item import FileStatus


VALID_TRANSITIONS: Dict[FileStatus, FrozenSet[FileStatus]] = {
    FileStatus.PENDING: frozenset({FileStatus.EXTRACTING, FileStatus.ERROR}),
    FileStatus.EXTRACTING: frozenset({FileStatus.ANALYZING, FileStatus.ERROR}),
    FileStatus.ANALYZING: frozenset({FileStatus.READY_TO_UPLOAD, FileStatus.ERROR}),
    FileStatus.READY_TO_UPLOAD: frozenset({FileStatus.UPLOADING, FileStatus.ERROR}),
    FileStatus.UPLOADING: frozenset({
        FileStatus.COMPLETE,
        FileStatus.RATE_LIMITED,
        FileStatus.RETRYING,
        FileStatus.ERROR,
    }),
    FileStatus.RATE_LIMITED: frozenset({FileStatus.UPLOADING, FileStatus.ERROR}),
    FileStatus.RETRYING: frozenset({FileStatus.UPLOADING, FileStatus.ERROR}),
    FileStatus.COMPLETE: frozenset(),  # Terminal
    FileStatus.ERROR: frozenset(),     # Terminal
}

TERMINAL_STATES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)


@dataclass(frozen=True)
class StateTransition:
    """One entry of an item's transition history"""
    from_state: FileStatus
    to_state: FileStatus
    timestamp: float = field(default_factory=time.time)


def is_valid_transition(from_state: FileStatus, to_state: FileStatus) -> bool:
    """Check an edge against the adjacency table"""
    return FileStatus(to_state) in VALID_TRANSITIONS[FileStatus(from_state)]


class ItemStateMachine:
    """
    Tracks the current status of a single item plus its transition history.

    ``set_state`` to the current state is a no-op; any edge not in
    ``VALID_TRANSITIONS`` raises ``InvalidTransitionError`` and leaves the
    machine untouched.
    """

    def __init__(self, initial_state: FileStatus = FileStatus.PENDING):
        self._current_state = FileStatus(initial_state)
        self._history: List[StateTransition] = [
            StateTransition(self._current_state, self._current_state)
        ]

    @property
    def state(self) -> FileStatus:
        return self._current_state

    def get_state(self) -> FileStatus:
        return self._current_state

    def set_state(self, new_state: FileStatus) -> None:
        new_state = FileStatus(new_state)

        if new_state == self._current_state:
            return

        if not is_valid_transition(self._current_state, new_state):
            raise InvalidTransitionError(self._current_state.value, new_state.value)

        self._history.append(StateTransition(self._current_state, new_state))
        self._current_state = new_state

    def can_transition_to(self, new_state: FileStatus) -> bool:
        new_state = FileStatus(new_state)
        return new_state == self._current_state or is_valid_transition(self._current_state, new_state)

    def is_valid_transition(self, from_state: FileStatus, to_state: FileStatus) -> bool:
        return is_valid_transition(from_state, to_state)

    def get_history(self) -> List[StateTransition]:
        """Copy of the transition history (for debugging)"""
        return list(self._history)

    def is_terminal(self) -> bool:
        return self._current_state in TERMINAL_STATES

    def reset(self, initial_state: FileStatus = FileStatus.PENDING) -> None:
        """Reinitialize, e.g. when an operator re-admits an errored item"""
        self._current_state = FileStatus(initial_state)
        self._history = [StateTransition(self._current_state, self._current_state)]
