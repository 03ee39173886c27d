"""Gates - Pre-action checks composed by explicit priority.

A gate inspects an action before it runs and returns a Decision. The
engine runs applicable gates in ascending ``priority`` and stops at the
first denial; the order in which gates are passed in does not matter.

Default chain:
    10  state        handshake done? (essential)
    20  concurrency  target unchanged since last read? (observational)
    30  scope        target inside the intent's owned scope? (essential)

An essential gate that raises is converted to a GATE_FAULT denial. An
observational gate that raises is logged and skipped.

INVARIANTS:
1. Gates never mutate session state, fingerprints, or the ledger
2. Essential gates fail closed
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .actions import ActionFamily, ActionRequest, ToolClassification
from .decision import Decision, DenialCode
from .paths import WorkspacePath

if TYPE_CHECKING:
    from .concurrency import ConcurrencyGuard
    from .intents import Intent, IntentCatalog
    from .scope import ScopeMatcher
    from .state import TurnState, TurnStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionContext:
    """Everything a gate or recorder needs about one action, resolved once."""

    session_id: str
    request: ActionRequest
    target: WorkspacePath | None
    turn_state: TurnState | None
    intent_id: str | None
    intent: Intent | None


class Gate(abc.ABC):
    """Pre-check capability.

    Subclasses set ``name``, ``priority`` and ``essential`` and implement
    ``applies_to`` and ``check``.
    """

    name: str = "gate"
    priority: int = 100
    essential: bool = True

    @abc.abstractmethod
    def applies_to(self, ctx: ActionContext) -> bool:
        ...

    @abc.abstractmethod
    def check(self, ctx: ActionContext) -> Decision:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority}, essential={self.essential})"


class StateGate(Gate):
    """Require a completed handshake for every non-safe action."""

    name = "state"
    priority = 10
    essential = True

    def __init__(self, machine: TurnStateMachine, catalog: IntentCatalog):
        self._machine = machine
        self._catalog = catalog

    def applies_to(self, ctx: ActionContext) -> bool:
        if ctx.request.family is ActionFamily.INTENT_SELECTION:
            return False
        return ctx.request.classification is ToolClassification.DESTRUCTIVE

    def check(self, ctx: ActionContext) -> Decision:
        if self._machine.can_mutate(ctx.session_id):
            return Decision.allow("Handshake complete", gate=self.name)

        valid_ids = self._catalog.ids()
        state = ctx.turn_state.value if ctx.turn_state else None
        return Decision.deny(
            DenialCode.NO_ACTIVE_INTENT,
            f'You must call select_active_intent before using "{ctx.request.action_name}". '
            f"Available intents: {', '.join(valid_ids)}. Call select_active_intent(intent_id) first.",
            {
                "action_name": ctx.request.action_name,
                "session_state": state,
                "valid_intent_ids": valid_ids,
            },
            gate=self.name,
        )


class ConcurrencyGate(Gate):
    """Deny writes to files that changed since this session last read them."""

    name = "concurrency"
    priority = 20
    essential = False

    def __init__(self, guard: ConcurrencyGuard):
        self._guard = guard

    def applies_to(self, ctx: ActionContext) -> bool:
        return ctx.request.mutates_file and ctx.target is not None and ctx.target.within_workspace

    def check(self, ctx: ActionContext) -> Decision:
        return self._guard.check(ctx.session_id, ctx.target)


class ScopeGate(Gate):
    """Deny writes outside the active intent's owned scope."""

    name = "scope"
    priority = 30
    essential = True

    def __init__(self, matcher: ScopeMatcher):
        self._matcher = matcher

    def applies_to(self, ctx: ActionContext) -> bool:
        return ctx.request.mutates_file

    def check(self, ctx: ActionContext) -> Decision:
        if ctx.intent is None:
            return Decision.deny(
                DenialCode.NO_ACTIVE_INTENT,
                "No active intent is bound to this session; select one before writing.",
                {"intent_id": ctx.intent_id},
                gate=self.name,
            )

        target = ctx.target
        allowed_scope = list(ctx.intent.owned_scope)
        if target is None or not target.within_workspace:
            return self._violation(ctx, target.relative if target else None, allowed_scope,
                                   "is outside the workspace")

        if not self._matcher.is_authorized(ctx.intent, target.relative):
            return self._violation(ctx, target.relative, allowed_scope, "is not in its owned scope")

        return Decision.allow("Target within owned scope", {"target": target.relative}, gate=self.name)

    def _violation(self, ctx: ActionContext, relative: str | None, allowed_scope: list[str], why: str) -> Decision:
        return Decision.deny(
            DenialCode.SCOPE_VIOLATION,
            f'Scope Violation: Intent "{ctx.intent.id}" ({ctx.intent.name}) is not authorized to edit '
            f'"{relative}": it {why}. Allowed scope: {", ".join(allowed_scope)}. '
            "Request scope expansion or select a different intent.",
            {
                "intent_id": ctx.intent.id,
                "target_file": relative,
                "allowed_scope": allowed_scope,
            },
            gate=self.name,
        )


def order_gates(gates: list[Gate]) -> list[Gate]:
    """Sort by explicit priority; ties keep their given order."""
    return sorted(gates, key=lambda g: g.priority)
