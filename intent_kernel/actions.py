"""Action Requests - Normalized, tagged view of governed tool calls.

Agents call tools by name with a free-form payload, and the field that
names the target differs per tool family (``path`` for whole-file writes,
``file_path`` for in-place edits). Each family declares its extraction
rule once here; everything downstream works on an ``ActionRequest``.

INVARIANTS:
- Payloads are validated once, at the boundary
- Unknown action names are never classified as safe
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

SELECT_ACTIVE_INTENT = "select_active_intent"


class ActionFamily(Enum):
    """Families of actions sharing a payload shape."""

    INTENT_SELECTION = "intent_selection"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_EDIT = "file_edit"
    COMMAND = "command"
    OTHER = "other"


class MutationClass(Enum):
    """Audit significance of an action."""

    READ_ONLY = "READ_ONLY"
    MUTATION = "MUTATION"
    EXTERNAL_EFFECT = "EXTERNAL_EFFECT"
    UNKNOWN = "UNKNOWN"


class ToolClassification(Enum):
    """Whether an action needs a handshake before it may run."""

    SAFE = "SAFE"
    DESTRUCTIVE = "DESTRUCTIVE"


ACTION_FAMILIES: dict[str, ActionFamily] = {
    SELECT_ACTIVE_INTENT: ActionFamily.INTENT_SELECTION,
    "read_file": ActionFamily.FILE_READ,
    "write_to_file": ActionFamily.FILE_WRITE,
    "apply_diff": ActionFamily.FILE_WRITE,
    "edit": ActionFamily.FILE_EDIT,
    "edit_file": ActionFamily.FILE_EDIT,
    "search_and_replace": ActionFamily.FILE_EDIT,
    "search_replace": ActionFamily.FILE_EDIT,
    "execute_command": ActionFamily.COMMAND,
}

# Field holding the family's primary argument
EXTRACTION_RULES: dict[ActionFamily, str] = {
    ActionFamily.INTENT_SELECTION: "intent_id",
    ActionFamily.FILE_READ: "path",
    ActionFamily.FILE_WRITE: "path",
    ActionFamily.FILE_EDIT: "file_path",
    ActionFamily.COMMAND: "command",
}

# Families whose target is a workspace file that gets mutated
FILE_MUTATION_FAMILIES = frozenset({ActionFamily.FILE_WRITE, ActionFamily.FILE_EDIT})

READ_ONLY_ACTIONS = frozenset({
    "read_file",
    "list_files",
    "search_files",
    "codebase_search",
    "list_code_definition_names",
    "inspect_site",
    "ask_followup_question",
    "attempt_completion",
    "switch_mode",
    "read_command_output",
    SELECT_ACTIVE_INTENT,
})

MUTATION_ACTIONS = frozenset({
    "write_to_file",
    "apply_diff",
    "edit",
    "edit_file",
    "search_and_replace",
    "search_replace",
    "replace_in_file",
    "insert_code_block",
    "apply_patch",
})

EXTERNAL_EFFECT_ACTIONS = frozenset({
    "execute_command",
    "browser_action",
})


def classify_mutation(action_name: str) -> MutationClass:
    """Fixed lookup; unrecognized names are UNKNOWN, never READ_ONLY."""
    if action_name in READ_ONLY_ACTIONS:
        return MutationClass.READ_ONLY
    if action_name in MUTATION_ACTIONS:
        return MutationClass.MUTATION
    if action_name in EXTERNAL_EFFECT_ACTIONS:
        return MutationClass.EXTERNAL_EFFECT
    return MutationClass.UNKNOWN


def classify_tool(action_name: str) -> ToolClassification:
    """Only known read-only actions are SAFE; everything else is DESTRUCTIVE."""
    if action_name in READ_ONLY_ACTIONS:
        return ToolClassification.SAFE
    return ToolClassification.DESTRUCTIVE


class ActionRequestError(Exception):
    """Raised when an action payload does not fit its family's shape."""

    def __init__(self, message: str, action_name: str | None = None, field: str | None = None):
        self.action_name = action_name
        self.field = field
        super().__init__(
            f"[ActionRequest] {message}"
            + (f" (action: {action_name})" if action_name else "")
            + (f" (field: {field})" if field else "")
        )


@dataclass(frozen=True)
class ActionRequest:
    """Immutable, validated action request.

    ``argument`` holds the family's primary field: the target path for file
    families, the command line for commands, the intent id for selection.
    """

    action_name: str
    family: ActionFamily
    argument: str | None
    payload: tuple[tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def target(self) -> str | None:
        """Target path for file families, None otherwise."""
        if self.family in (ActionFamily.FILE_READ, ActionFamily.FILE_WRITE, ActionFamily.FILE_EDIT):
            return self.argument
        return None

    @property
    def mutates_file(self) -> bool:
        return self.family in FILE_MUTATION_FAMILIES

    @property
    def mutation_class(self) -> MutationClass:
        return classify_mutation(self.action_name)

    @property
    def classification(self) -> ToolClassification:
        return classify_tool(self.action_name)

    def get(self, key: str, default: Any = None) -> Any:
        return dict(self.payload).get(key, default)

    def content(self) -> str | None:
        """Content the action intends to write, when the payload carries it."""
        for key in ("content", "new_string", "diff"):
            value = self.get(key)
            if isinstance(value, str):
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "action_name": self.action_name,
            "family": self.family.value,
            "argument": self.argument,
            "payload": dict(self.payload),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_payload(cls, action_name: str, payload: Mapping[str, Any] | None) -> ActionRequest:
        """Validate a raw payload against its family's extraction rule.

        For selection, a missing ``intent_id`` is not an error here; it is
        reported to the agent as MISSING_INTENT_ID by the state machine.

        Args:
            action_name: Tool name as the agent called it.
            payload: Flat mapping of tool arguments.

        Returns:
            ActionRequest tagged with its family.

        Raises:
            ActionRequestError: If the payload is not a mapping or a file or
                command family lacks its required string field.
        """
        if not action_name:
            raise ActionRequestError("Action name cannot be empty")
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ActionRequestError(
                f"Payload must be a mapping, got: {type(payload).__name__}", action_name
            )

        family = ACTION_FAMILIES.get(action_name, ActionFamily.OTHER)
        argument = None
        field_name = EXTRACTION_RULES.get(family)
        if field_name is not None:
            value = payload.get(field_name)
            if value is not None and not isinstance(value, str):
                raise ActionRequestError(
                    f"Expected a string, got: {type(value).__name__}", action_name, field_name
                )
            if value is not None and value.strip():
                argument = value.strip()
            elif family is not ActionFamily.INTENT_SELECTION:
                raise ActionRequestError("Missing required field", action_name, field_name)

        return cls(
            action_name=action_name,
            family=family,
            argument=argument,
            payload=tuple(sorted(payload.items())),
        )
