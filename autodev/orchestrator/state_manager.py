"""Single owner of the canonical AgentState.

All transitions go through the StateManager, which validates them against
the transition table, serializes writers, and persists/restores snapshots
through the CheckpointStore. Readers get the current state without taking
the writer lock: the snapshot is an immutable value swapped in one step.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Optional

from autodev.core.exceptions import InvalidTransition, RestoreError
from autodev.core.models import AgentState, AgentStateKind
from autodev.storage.checkpoint_store import CheckpointStore

logger = logging.getLogger("autodev.orchestrator.state_manager")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[AgentStateKind, set[AgentStateKind]] = {
    AgentStateKind.IDLE: {
        AgentStateKind.ANALYZING,
        AgentStateKind.IMPROVING,
        AgentStateKind.ERROR,
    },
    AgentStateKind.ANALYZING: {AgentStateKind.PLANNING, AgentStateKind.ERROR},
    AgentStateKind.PLANNING: {AgentStateKind.EXECUTING, AgentStateKind.ERROR},
    AgentStateKind.EXECUTING: {AgentStateKind.VALIDATING, AgentStateKind.ERROR},
    AgentStateKind.VALIDATING: {
        AgentStateKind.IDLE,
        AgentStateKind.IMPROVING,
        AgentStateKind.ERROR,
    },
    AgentStateKind.IMPROVING: {AgentStateKind.IDLE, AgentStateKind.ERROR},
    # Error is left only through recover().
    AgentStateKind.ERROR: set(),
}

TransitionListener = Callable[[AgentState, AgentState], None]


@dataclass(frozen=True)
class StateSnapshot:
    """Observable agent state: the state value plus its metadata.

    Two snapshots are equal when state and metadata are equal; the entry
    timestamp is bookkeeping only.
    """

    state: AgentState
    metadata: dict[str, Any] = field(default_factory=dict)
    entered_at: float = field(default_factory=time.monotonic, compare=False)


@dataclass(frozen=True)
class TransitionRecord:
    from_state: AgentState
    to_state: AgentState
    at: datetime
    note: str = ""


class StateManager:
    """Owns AgentState. Injected into every collaborator that needs it.

    Injected dependencies:
        store: CheckpointStore used by checkpoint() and restore().
    """

    def __init__(self, store: CheckpointStore, history_size: int = 200):
        self.store = store
        self._lock = threading.RLock()
        self._snapshot = StateSnapshot(state=AgentState.idle())
        self._history: deque[TransitionRecord] = deque(maxlen=history_size)
        self._listeners: list[TransitionListener] = []

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def current(self) -> AgentState:
        return self._snapshot.state

    def snapshot(self) -> StateSnapshot:
        snap = self._snapshot
        return StateSnapshot(
            state=snap.state,
            metadata=copy.deepcopy(snap.metadata),
            entered_at=snap.entered_at,
        )

    def time_in_current_state(self) -> float:
        return time.monotonic() - self._snapshot.entered_at

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return copy.deepcopy(self._snapshot.metadata.get(key, default))

    def history(self) -> list[TransitionRecord]:
        with self._lock:
            return list(self._history)

    @staticmethod
    def can_transition(from_kind: AgentStateKind, to_kind: AgentStateKind) -> bool:
        """Check if a transition is legal."""
        return to_kind in VALID_TRANSITIONS.get(from_kind, set())

    # ------------------------------------------------------------------
    # Writes (serialized)
    # ------------------------------------------------------------------

    def add_listener(self, listener: TransitionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def transition(self, next_state: AgentState, note: str = "") -> None:
        """Move to ``next_state``.

        Raises:
            InvalidTransition: If the pair is not in the table. State is unchanged.
        """
        with self._lock:
            current = self._snapshot.state
            if current.is_error:
                raise InvalidTransition(
                    str(current), str(next_state), f"Leaving {current} requires recover()"
                )
            if not self.can_transition(current.kind, next_state.kind):
                raise InvalidTransition(str(current), str(next_state))
            self._swap(next_state, note)

    def escalate(self, reason: str) -> bool:
        """Enter ``Error(reason)`` from any state.

        Returns False (keeping the first reason) if already in Error.
        """
        with self._lock:
            current = self._snapshot.state
            if current.is_error:
                logger.warning(
                    "Escalation ignored, already in %s (new reason: %s)", current, reason
                )
                return False
            self._swap(AgentState.error(reason), reason)
        logger.error("Agent entered Error state: %s", reason)
        return True

    def recover(self, note: str = "manual recovery") -> None:
        """The explicit Error → Idle recovery call.

        Raises:
            InvalidTransition: If the agent is not in Error.
        """
        with self._lock:
            current = self._snapshot.state
            if not current.is_error:
                raise InvalidTransition(
                    str(current), "Idle", f"recover() requires Error state, agent is {current}"
                )
            self._swap(AgentState.idle(), note)
        logger.info("Agent recovered from %s (%s)", current, note)

    def set_metadata(self, key: str, value: Any) -> None:
        json.dumps(value, default=str)  # must stay checkpointable
        with self._lock:
            snap = self._snapshot
            metadata = copy.deepcopy(snap.metadata)
            metadata[key] = copy.deepcopy(value)
            self._snapshot = StateSnapshot(
                state=snap.state, metadata=metadata, entered_at=snap.entered_at
            )

    # ------------------------------------------------------------------
    # Checkpoint / restore
    # ------------------------------------------------------------------

    def checkpoint(self, label: str = "", metadata: Optional[dict[str, Any]] = None) -> str:
        """Snapshot the current observable state and return the checkpoint id.

        Raises:
            CheckpointError: If the store cannot create the checkpoint.
        """
        with self._lock:
            snap = self._snapshot
            cp = self.store.create(
                snap.state,
                state_metadata=snap.metadata,
                metadata=metadata or {},
                label=label,
            )
        logger.debug("Checkpoint %s taken in state %s (%s)", cp.id, snap.state, label)
        return cp.id

    def restore(self, checkpoint_id: str) -> None:
        """Replace the observable state with the checkpoint's.

        Restoring is not a transition; it bypasses the table. Restoring the
        same checkpoint repeatedly always yields the same observable state.

        Raises:
            RestoreError: If the checkpoint is missing or fails verification.
        """
        cp = self.store.get(checkpoint_id)
        if cp is None:
            raise RestoreError(checkpoint_id, "checkpoint not found")
        if not self.store.verify(cp):
            raise RestoreError(checkpoint_id, "digest mismatch, checkpoint content is corrupted")

        with self._lock:
            previous = self._snapshot.state
            self._snapshot = StateSnapshot(
                state=cp.state, metadata=copy.deepcopy(cp.state_metadata)
            )
            self._history.append(
                TransitionRecord(
                    from_state=previous,
                    to_state=cp.state,
                    at=datetime.now(UTC),
                    note=f"restore {checkpoint_id}",
                )
            )
        logger.info("Restored checkpoint %s: %s → %s", checkpoint_id, previous, cp.state)

    def verify_integrity(self) -> bool:
        """True when the current snapshot is well-formed and checkpointable."""
        snap = self._snapshot
        if snap.state.kind not in VALID_TRANSITIONS:
            return False
        try:
            json.dumps(snap.metadata, default=str)
        except (TypeError, ValueError):
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _swap(self, next_state: AgentState, note: str) -> None:
        previous = self._snapshot.state
        self._snapshot = StateSnapshot(state=next_state, metadata=self._snapshot.metadata)
        self._history.append(
            TransitionRecord(
                from_state=previous, to_state=next_state, at=datetime.now(UTC), note=note
            )
        )
        log_msg = f"State: {previous} → {next_state}"
        if note:
            log_msg += f" ({note})"
        logger.info(log_msg)
        for listener in list(self._listeners):
            try:
                listener(previous, next_state)
            except Exception as e:
                logger.warning("State listener %r failed: %s", listener, e)
