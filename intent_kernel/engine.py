"""Governance Engine - Orchestrates the handshake protocol.

Every governed action goes through:

    evaluate(session, action, payload) -> Decision
        gates by priority: state -> concurrency -> scope
        first denial short-circuits; nothing is written before an Allow
    <caller runs the action>
    record(session, action, payload, outcome)
        recorders by priority: fingerprint refresh -> audit append

``execute`` bundles the three steps for callers that hand the engine the
tool itself.

INVARIANTS:
1. Denials are returned, never raised
2. Essential gate faults deny with GATE_FAULT; they never allow
3. Recorder faults are logged and isolated; an Allow is never rescinded
4. "Blocked by policy" (DENIED) and "action failed" (FAILED) stay distinct
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .actions import ActionFamily, ActionRequest, ActionRequestError
from .concurrency import ConcurrencyGuard
from .decision import Decision, DenialCode
from .gates import ActionContext, ConcurrencyGate, Gate, ScopeGate, StateGate, order_gates
from .intents import (
    DEFAULT_IGNORE_FILE,
    DEFAULT_INTENTS_FILE,
    IntentCatalog,
    build_intent_context,
)
from .ledger import AuditLedger, git_revision
from .paths import normalize_target
from .recorders import (
    ActionOutcome,
    FingerprintRecorder,
    IntentMapRecorder,
    LedgerRecorder,
    Recorder,
)
from .scope import ScopeMatcher
from .state import InMemorySessionStore, SessionState, SessionStore, TurnStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernanceConfig:
    """Immutable engine configuration.

    Relative file names resolve inside ``orchestration_dir``, which itself
    resolves against ``workspace_root`` when relative.
    """

    workspace_root: str = "."
    orchestration_dir: str = ".orchestration"
    intents_file: str = DEFAULT_INTENTS_FILE
    ignore_file: str = DEFAULT_IGNORE_FILE
    ledger_file: str = "agent_trace.jsonl"
    intent_map_file: str = "intent_map.md"

    # Attribution
    model_identifier: str | None = None
    record_revision: bool = True

    # Behavior
    audit_denials: bool = False
    maintain_intent_map: bool = False

    # Logging
    verbose: bool = False
    log_level: str = "INFO"

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace_root).resolve()

    @property
    def orchestration_path(self) -> Path:
        path = Path(self.orchestration_dir)
        return path if path.is_absolute() else self.workspace_path / path

    @property
    def ledger_path(self) -> Path:
        return self.orchestration_path / self.ledger_file

    @property
    def intent_map_path(self) -> Path:
        return self.orchestration_path / self.intent_map_file

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for audit logging."""
        return {
            "workspace_root": self.workspace_root,
            "orchestration_dir": self.orchestration_dir,
            "intents_file": self.intents_file,
            "ignore_file": self.ignore_file,
            "ledger_file": self.ledger_file,
            "intent_map_file": self.intent_map_file,
            "model_identifier": self.model_identifier,
            "record_revision": self.record_revision,
            "audit_denials": self.audit_denials,
            "maintain_intent_map": self.maintain_intent_map,
            "verbose": self.verbose,
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GovernanceConfig:
        """Deserialize from dictionary; unknown keys are rejected."""
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**dict(data))


class ResultStatus(Enum):
    """Outcome class of a governed execution."""

    DENIED = "denied"        # blocked by policy, the action never ran
    FAILED = "failed"        # the action ran and raised or reported an error
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class GovernedResult:
    """Result of ``GovernanceEngine.execute``."""

    status: ResultStatus
    decision: Decision
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "decision": self.decision.to_dict(),
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


class GovernanceEngine:
    """Mediates every action an agent session attempts.

    Usage:
        engine = GovernanceEngine(GovernanceConfig(workspace_root="."))
        engine.start_session("s1")
        engine.evaluate("s1", "select_active_intent", {"intent_id": "INT-001"})

        decision = engine.evaluate("s1", "write_to_file", {"path": "src/api/x.ts", "content": "..."})
        if decision.allowed:
            ...  # perform the write
            engine.record("s1", "write_to_file", payload, ActionOutcome.succeeded())
    """

    def __init__(
        self,
        config: GovernanceConfig | None = None,
        catalog: IntentCatalog | None = None,
        store: SessionStore | None = None,
        ledger: AuditLedger | None = None,
        gates: list[Gate] | None = None,
        recorders: list[Recorder] | None = None,
        revision_provider: Callable[[], str] | None = None,
    ):
        """Wire the engine.

        Args:
            config: Engine configuration. Uses defaults if not provided.
            catalog: Intent catalog; loaded from the orchestration dir if omitted.
            store: Session store; a fresh in-memory store if omitted.
            ledger: Audit ledger; opened at ``config.ledger_path`` if omitted.
            gates: Replacement gate list (default: state, concurrency, scope).
            recorders: Replacement recorder list (default: fingerprint, ledger).
            revision_provider: Returns the VCS revision for trace records.

        Raises:
            IntentCatalogError: If the catalog must be loaded and cannot be.
        """
        self.config = config or GovernanceConfig()
        if self.config.verbose:
            logging.basicConfig(level=getattr(logging, self.config.log_level))

        self.workspace_root = self.config.workspace_path
        self.catalog = catalog if catalog is not None else IntentCatalog.load(
            self.config.orchestration_path,
            intents_file=self.config.intents_file,
            ignore_file=self.config.ignore_file,
        )
        self.store = store if store is not None else InMemorySessionStore()
        self.machine = TurnStateMachine(self.store, self.catalog)
        self.guard = ConcurrencyGuard(self.store)
        self.matcher = ScopeMatcher(self.catalog)
        self.ledger = ledger if ledger is not None else AuditLedger(self.config.ledger_path)

        if revision_provider is None and self.config.record_revision:
            workspace = self.workspace_root
            revision_provider = lambda: git_revision(workspace)  # noqa: E731

        if gates is None:
            gates = [
                StateGate(self.machine, self.catalog),
                ConcurrencyGate(self.guard),
                ScopeGate(self.matcher),
            ]
        if recorders is None:
            recorders = [
                FingerprintRecorder(self.guard),
                LedgerRecorder(self.ledger, revision_provider, self.config.model_identifier),
            ]
            if self.config.maintain_intent_map:
                recorders.append(IntentMapRecorder(self.config.intent_map_path))

        self._gates = order_gates(gates)
        self._recorders = sorted(recorders, key=lambda r: r.priority)

    @property
    def gates(self) -> list[Gate]:
        return list(self._gates)

    @property
    def recorders(self) -> list[Recorder]:
        return list(self._recorders)

    # Sessions

    def start_session(self, session_id: str) -> SessionState:
        return self.machine.start(session_id)

    def end_session(self, session_id: str) -> None:
        """Drop the session's state and fingerprint table."""
        self.store.remove(session_id)
        logger.debug(f"Session {session_id} ended")

    def select_intent(self, session_id: str, intent_id: str | None) -> Decision:
        """Perform the handshake; an Allow carries the ``intent_context`` block."""
        decision = self.machine.select_intent(session_id, intent_id)
        if decision.denied:
            logger.info(f"[{session_id}] intent selection denied: {decision.code.value}")
            return decision

        intent = self.catalog.get(intent_id)
        details = decision.details_dict
        details["intent_context"] = build_intent_context(intent)
        return Decision.allow(decision.message, details, gate=decision.gate)

    # Evaluation

    def evaluate(self, session_id: str, action_name: str, payload: Mapping[str, Any] | None) -> Decision:
        """Run the gate chain for one action.

        Args:
            session_id: Calling session.
            action_name: Tool name.
            payload: Tool arguments.

        Returns:
            Allow, or the first gate's denial.
        """
        try:
            request = ActionRequest.from_payload(action_name, payload)
        except ActionRequestError as e:
            logger.info(f"[{session_id}] malformed {action_name!r} request: {e}")
            return Decision.deny(
                DenialCode.MALFORMED_REQUEST,
                str(e),
                {"action_name": action_name, "field": e.field},
                gate="boundary",
            )

        # Session lookups belong to the state check; a store fault fails closed.
        try:
            if request.family is ActionFamily.INTENT_SELECTION:
                decision = self.select_intent(session_id, request.argument)
                if decision.denied:
                    self._audit_denial(self._context(session_id, request), decision)
                return decision
            ctx = self._context(session_id, request)
        except Exception as e:
            logger.exception(f"[{session_id}] session lookup faulted on {action_name}")
            return self._gate_fault("state", e)

        passed = []
        for gate in self._gates:
            if not gate.applies_to(ctx):
                continue
            try:
                decision = gate.check(ctx)
            except Exception as e:
                logger.exception(f"[{session_id}] gate {gate.name!r} faulted on {action_name}")
                if not gate.essential:
                    continue
                decision = self._gate_fault(gate.name, e)

            if decision.denied:
                logger.info(
                    f"[{session_id}] {action_name} denied by {gate.name}: {decision.code.value}"
                )
                self._audit_denial(ctx, decision)
                return decision
            passed.append(gate.name)

        return Decision.allow("All governance checks passed", {"gates_passed": passed})

    # Recording

    def record(
        self,
        session_id: str,
        action_name: str,
        payload: Mapping[str, Any] | None,
        outcome: ActionOutcome,
    ) -> None:
        """Run every recorder for an action the caller performed.

        Never raises: recorder faults are logged per recorder.
        """
        try:
            request = ActionRequest.from_payload(action_name, payload)
        except ActionRequestError as e:
            logger.error(f"[{session_id}] cannot record malformed {action_name!r} request: {e}")
            return

        try:
            ctx = self._context(session_id, request)
        except Exception:
            logger.exception(f"[{session_id}] session lookup faulted while recording {action_name}")
            return

        for recorder in self._recorders:
            try:
                recorder.record(ctx, outcome)
            except Exception:
                logger.exception(f"[{session_id}] recorder {recorder.name!r} failed on {action_name}")

        if outcome.success and request.mutates_file:
            try:
                self.machine.reset_to_context_loaded(session_id)
            except Exception:
                logger.exception(f"[{session_id}] turn reset failed after {action_name}")

    def execute(
        self,
        session_id: str,
        action_name: str,
        payload: Mapping[str, Any] | None,
        tool: Callable[[Mapping[str, Any]], Any],
    ) -> GovernedResult:
        """Evaluate, run ``tool(payload)`` if allowed, then record.

        A tool that raises, or returns a mapping with a non-empty ``error``,
        yields FAILED; the exception is captured, not re-raised.
        """
        decision = self.evaluate(session_id, action_name, payload)
        if decision.denied:
            return GovernedResult(status=ResultStatus.DENIED, decision=decision, error=decision.message)

        payload = payload or {}
        start = time.perf_counter()
        try:
            result = tool(payload)
        except Exception as e:
            duration = (time.perf_counter() - start) * 1000
            logger.exception(f"[{session_id}] {action_name} failed")
            outcome = ActionOutcome.failed(f"{type(e).__name__}: {e}", duration)
        else:
            duration = (time.perf_counter() - start) * 1000
            error = result.get("error") if isinstance(result, Mapping) else None
            if error:
                outcome = ActionOutcome.failed(str(error), duration, result)
            else:
                outcome = ActionOutcome.succeeded(result, duration)

        self.record(session_id, action_name, payload, outcome)
        return GovernedResult(
            status=ResultStatus.SUCCEEDED if outcome.success else ResultStatus.FAILED,
            decision=decision,
            result=outcome.result,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
        )

    # Internals

    @staticmethod
    def _gate_fault(gate_name: str, error: Exception) -> Decision:
        return Decision.deny(
            DenialCode.GATE_FAULT,
            f"Governance check '{gate_name}' failed internally; the action was not permitted.",
            {"gate": gate_name, "error": f"{type(error).__name__}: {error}"},
            gate=gate_name,
        )

    def _context(self, session_id: str, request: ActionRequest) -> ActionContext:
        state = self.store.get(session_id)
        intent_id = state.active_intent_id if state else None
        target = None
        if request.target is not None:
            target = normalize_target(request.target, self.workspace_root)
        return ActionContext(
            session_id=session_id,
            request=request,
            target=target,
            turn_state=state.current_state if state else None,
            intent_id=intent_id,
            intent=self.catalog.get(intent_id) if intent_id else None,
        )

    def _audit_denial(self, ctx: ActionContext, decision: Decision) -> None:
        if not self.config.audit_denials:
            return
        for recorder in self._recorders:
            try:
                recorder.record_denial(ctx, decision)
            except Exception:
                logger.exception(f"[{ctx.session_id}] recorder {recorder.name!r} failed to record denial")
