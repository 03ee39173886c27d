"""Session State - Per-session turn state and the session store.

Each agent session moves through a small state machine:

    AWAITING_INTENT --select_intent--> CONTEXT_LOADED --allow_action--> ACTION_ALLOWED
          any state --block--> BLOCKED  (terminal until reset)

All per-session mutable state (turn state and fingerprint table) lives in
a ``SessionStore`` keyed strictly by session id. Nothing is shared across
sessions and nothing lives at module level.

INVARIANTS:
1. Exactly one SessionState per live session id
2. SessionState snapshots are immutable; transitions store a new snapshot
3. An unknown session is never allowed to mutate
"""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from .decision import Decision, DenialCode

if TYPE_CHECKING:
    from .intents import IntentCatalog

logger = logging.getLogger(__name__)


class TurnState(Enum):
    """Handshake state of a session."""

    AWAITING_INTENT = "AWAITING_INTENT"
    CONTEXT_LOADED = "CONTEXT_LOADED"
    ACTION_ALLOWED = "ACTION_ALLOWED"
    BLOCKED = "BLOCKED"


MUTATING_STATES = frozenset({TurnState.CONTEXT_LOADED, TurnState.ACTION_ALLOWED})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of one session's handshake state."""

    session_id: str
    current_state: TurnState = TurnState.AWAITING_INTENT
    active_intent_id: str | None = None
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_state": self.current_state.value,
            "active_intent_id": self.active_intent_id,
            "updated_at": self.updated_at,
        }


class SessionStore(abc.ABC):
    """Storage for per-session state, injected into the engine.

    Implementations must keep sessions fully isolated: two session ids never
    share a SessionState or a fingerprint table.
    """

    @abc.abstractmethod
    def get(self, session_id: str) -> SessionState | None:
        ...

    @abc.abstractmethod
    def save(self, state: SessionState) -> None:
        ...

    @abc.abstractmethod
    def fingerprints(self, session_id: str) -> dict[str, str]:
        """Live path -> hash table for ``session_id`` (created on demand)."""
        ...

    @abc.abstractmethod
    def remove(self, session_id: str) -> None:
        ...

    @abc.abstractmethod
    def session_ids(self) -> list[str]:
        ...

    def get_or_create(self, session_id: str) -> SessionState:
        state = self.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id)
            self.save(state)
        return state


class InMemorySessionStore(SessionStore):
    """Process-local session store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, SessionState] = {}
        self._fingerprints: dict[str, dict[str, str]] = {}

    def get(self, session_id: str) -> SessionState | None:
        with self._lock:
            return self._states.get(session_id)

    def save(self, state: SessionState) -> None:
        with self._lock:
            self._states[state.session_id] = state

    def get_or_create(self, session_id: str) -> SessionState:
        with self._lock:
            state = self._states.get(session_id)
            if state is None:
                state = SessionState(session_id=session_id)
                self._states[session_id] = state
            return state

    def fingerprints(self, session_id: str) -> dict[str, str]:
        with self._lock:
            return self._fingerprints.setdefault(session_id, {})

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._states.pop(session_id, None)
            self._fingerprints.pop(session_id, None)

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._states)


class TurnStateMachine:
    """Per-session handshake state machine.

    Usage:
        machine = TurnStateMachine(store, catalog)
        machine.start("session-1")
        decision = machine.select_intent("session-1", "INT-001")
        if machine.can_mutate("session-1"):
            ...
    """

    def __init__(self, store: SessionStore, catalog: IntentCatalog):
        self._store = store
        self._catalog = catalog

    def start(self, session_id: str) -> SessionState:
        """Begin (or restart) a session in AWAITING_INTENT."""
        state = SessionState(session_id=session_id)
        self._store.save(state)
        logger.debug(f"Session {session_id} started")
        return state

    def reset(self, session_id: str) -> SessionState:
        """Return a session to AWAITING_INTENT. The only exit from BLOCKED."""
        return self.start(session_id)

    def get_state(self, session_id: str) -> TurnState | None:
        state = self._store.get(session_id)
        return state.current_state if state else None

    def active_intent(self, session_id: str) -> str | None:
        state = self._store.get(session_id)
        return state.active_intent_id if state else None

    def select_intent(self, session_id: str, intent_id: str | None) -> Decision:
        """Handshake: bind a declared intent to the session.

        Transitions to CONTEXT_LOADED on success. On failure the session is
        left exactly as it was.

        Args:
            session_id: Session performing the handshake.
            intent_id: Intent to check out.

        Returns:
            Allow, or Deny with MISSING_INTENT_ID / INVALID_INTENT_ID /
            NO_ACTIVE_INTENT (blocked session).
        """
        valid_ids = self._catalog.ids()
        if not intent_id:
            return Decision.deny(
                DenialCode.MISSING_INTENT_ID,
                "Missing required parameter: intent_id. You must provide a valid Intent ID. "
                f"Available intents: {', '.join(valid_ids)}",
                {"valid_intent_ids": valid_ids},
                gate="state",
            )

        if intent_id not in self._catalog:
            return Decision.deny(
                DenialCode.INVALID_INTENT_ID,
                f'Intent "{intent_id}" is not declared. Available intents: {", ".join(valid_ids)}',
                {"intent_id": intent_id, "valid_intent_ids": valid_ids},
                gate="state",
            )

        state = self._store.get_or_create(session_id)
        if state.current_state is TurnState.BLOCKED:
            return Decision.deny(
                DenialCode.NO_ACTIVE_INTENT,
                f"Session {session_id} is blocked; it must be reset before selecting an intent.",
                {"session_id": session_id, "state": state.current_state.value},
                gate="state",
            )

        self._store.save(replace(
            state,
            current_state=TurnState.CONTEXT_LOADED,
            active_intent_id=intent_id,
            updated_at=_now(),
        ))
        logger.info(f"Session {session_id} selected intent {intent_id}")
        return Decision.allow(
            f"Intent {intent_id} selected",
            {"intent_id": intent_id},
            gate="state",
        )

    def allow_action(self, session_id: str) -> bool:
        """CONTEXT_LOADED -> ACTION_ALLOWED. Returns False if not applicable."""
        return self._transition(session_id, {TurnState.CONTEXT_LOADED}, TurnState.ACTION_ALLOWED)

    def reset_to_context_loaded(self, session_id: str) -> bool:
        """ACTION_ALLOWED -> CONTEXT_LOADED after a completed write."""
        return self._transition(session_id, {TurnState.ACTION_ALLOWED}, TurnState.CONTEXT_LOADED)

    def block(self, session_id: str) -> None:
        """Any state -> BLOCKED."""
        state = self._store.get_or_create(session_id)
        self._store.save(replace(state, current_state=TurnState.BLOCKED, updated_at=_now()))
        logger.warning(f"Session {session_id} blocked")

    def can_mutate(self, session_id: str) -> bool:
        state = self._store.get(session_id)
        if state is None:
            return False
        return state.current_state in MUTATING_STATES

    def _transition(self, session_id: str, sources: set[TurnState], target: TurnState) -> bool:
        state = self._store.get(session_id)
        if state is None or state.current_state not in sources:
            return False
        self._store.save(replace(state, current_state=target, updated_at=_now()))
        return True
