"""Intent Kernel - Governance middleware for coding agents.

Every action an agent attempts is mediated:
- Handshake first (no writes before an intent is selected)
- Writes confined to the active intent's owned scope
- Stale writes detected by content hash, never by locking
- Every governed action appended to an audit ledger

Non-Negotiable Invariants:
1. Denials are values, never exceptions
2. No write is performed or recorded before an Allow
3. Sessions never share state or fingerprints
4. The ledger is append-only
5. Essential checks fail closed
6. Unknown actions are treated as destructive
"""

from .actions import (
    SELECT_ACTIVE_INTENT,
    ActionFamily,
    ActionRequest,
    ActionRequestError,
    MutationClass,
    ToolClassification,
    classify_mutation,
    classify_tool,
)
from .concurrency import ConcurrencyGuard, compute_content_hash, hash_file
from .decision import Decision, DenialCode
from .engine import GovernanceConfig, GovernanceEngine, GovernedResult, ResultStatus
from .gates import ActionContext, ConcurrencyGate, Gate, ScopeGate, StateGate
from .intents import Intent, IntentCatalog, IntentCatalogError, IntentStatus, build_intent_context
from .ledger import AuditLedger, Contributor, FileEntry, LedgerError, TraceRecord
from .paths import WorkspacePath, normalize_target
from .protocol import intent_protocol_section, select_active_intent_tool
from .recorders import ActionOutcome, FingerprintRecorder, IntentMapRecorder, LedgerRecorder, Recorder
from .scope import ScopeMatcher, glob_match
from .state import InMemorySessionStore, SessionState, SessionStore, TurnState, TurnStateMachine

__version__ = "1.0.0"
__all__ = [
    # Intents
    "Intent",
    "IntentStatus",
    "IntentCatalog",
    "IntentCatalogError",
    "build_intent_context",
    # Scope
    "ScopeMatcher",
    "glob_match",
    "WorkspacePath",
    "normalize_target",
    # Actions
    "SELECT_ACTIVE_INTENT",
    "ActionFamily",
    "ActionRequest",
    "ActionRequestError",
    "MutationClass",
    "ToolClassification",
    "classify_mutation",
    "classify_tool",
    # Decision
    "Decision",
    "DenialCode",
    # State
    "TurnState",
    "SessionState",
    "SessionStore",
    "InMemorySessionStore",
    "TurnStateMachine",
    # Concurrency
    "ConcurrencyGuard",
    "compute_content_hash",
    "hash_file",
    # Ledger
    "AuditLedger",
    "Contributor",
    "FileEntry",
    "LedgerError",
    "TraceRecord",
    # Gates / Recorders
    "ActionContext",
    "Gate",
    "StateGate",
    "ConcurrencyGate",
    "ScopeGate",
    "ActionOutcome",
    "Recorder",
    "FingerprintRecorder",
    "LedgerRecorder",
    "IntentMapRecorder",
    # Engine
    "GovernanceConfig",
    "GovernanceEngine",
    "GovernedResult",
    "ResultStatus",
    # Protocol
    "intent_protocol_section",
    "select_active_intent_tool",
]
