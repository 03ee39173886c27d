"""Agent-facing handshake protocol.

Prompt text and the ``select_active_intent`` tool definition, for callers
that wire the governance core into an agent's system prompt and tool list.
"""

from __future__ import annotations

import copy
from typing import Any

from .actions import SELECT_ACTIVE_INTENT

PROTOCOL_TEMPLATE = """====

INTENT-DRIVEN PROTOCOL (MANDATORY)

Every change you make must be attributable to a declared intent:

1. HANDSHAKE: Before making any changes or performing write operations, you MUST call '{tool}' with a valid intent_id from {intents_path}.
2. CONTEXT LOADING: Once an intent is selected, you will receive an <intent_context> block containing the owned_scope, constraints, and acceptance criteria. You MUST adhere to these.
3. SCOPE ENFORCEMENT: Write operations (write_to_file, apply_diff, etc.) are restricted to the 'owned_scope' (glob patterns) defined for the active intent.
4. TRACEABILITY: Every mutation is hashed (SHA-256) and recorded in {ledger_path}, linked to your active intent.
5. RECOVERY: If a tool call is denied (e.g. SCOPE_VIOLATION or STALE_FILE), read the denial code and take corrective action (request scope expansion, or re-read the file and retry).

Failure to call '{tool}' before writing code will result in the tool call being denied."""


def intent_protocol_section(
    intents_path: str = ".orchestration/active_intents.yaml",
    ledger_path: str = ".orchestration/agent_trace.jsonl",
) -> str:
    """System prompt section describing the handshake."""
    return PROTOCOL_TEMPLATE.format(
        tool=SELECT_ACTIVE_INTENT,
        intents_path=intents_path,
        ledger_path=ledger_path,
    )


_SELECT_ACTIVE_INTENT_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SELECT_ACTIVE_INTENT,
        "description": (
            "Check out an active intent to load its context (owned_scope, constraints, "
            "acceptance_criteria). This tool MUST be called before performing any write "
            "operations. The result contains the intent context block that guides the "
            "subsequent implementation."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "intent_id": {
                    "type": "string",
                    "description": "The unique ID of the intent to check out (e.g. 'INT-001').",
                },
            },
            "required": ["intent_id"],
        },
    },
}


def select_active_intent_tool() -> dict[str, Any]:
    """Function-calling tool definition (a fresh copy on every call)."""
    return copy.deepcopy(_SELECT_ACTIVE_INTENT_TOOL)
