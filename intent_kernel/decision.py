"""Decisions - Structured allow/deny outcomes of governance evaluation.

Denials are values, not exceptions. They are meant for the calling agent
loop to act on (re-read a file, select a valid intent, ask for a wider
scope), so every denial carries a fixed code, a message written for the
agent, and machine-readable details.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class DenialCode(Enum):
    """Fixed denial taxonomy."""

    MISSING_INTENT_ID = "MISSING_INTENT_ID"
    INVALID_INTENT_ID = "INVALID_INTENT_ID"
    NO_ACTIVE_INTENT = "NO_ACTIVE_INTENT"
    SCOPE_VIOLATION = "SCOPE_VIOLATION"
    STALE_FILE = "STALE_FILE"
    GATE_FAULT = "GATE_FAULT"
    MALFORMED_REQUEST = "MALFORMED_REQUEST"


@dataclass(frozen=True)
class Decision:
    """Immutable governance decision.

    INVARIANT: A denial always has a code; an allow never has one.
    """

    allowed: bool
    code: DenialCode | None = None
    message: str = ""
    details: tuple[tuple[str, Any], ...] = field(default_factory=tuple)
    gate: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self) -> None:
        if self.allowed and self.code is not None:
            raise ValueError(f"Allow decision cannot carry a denial code: {self.code}")
        if not self.allowed and self.code is None:
            raise ValueError("Deny decision requires a denial code")

    @property
    def denied(self) -> bool:
        return not self.allowed

    @property
    def details_dict(self) -> dict[str, Any]:
        return dict(self.details)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``{code, message, details}`` boundary shape."""
        return {
            "allowed": self.allowed,
            "code": self.code.value if self.code else None,
            "message": self.message,
            "details": dict(self.details),
            "gate": self.gate,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def allow(cls, message: str = "", details: dict[str, Any] | None = None, gate: str | None = None) -> Decision:
        """Create an allow decision."""
        return cls(
            allowed=True,
            message=message,
            details=tuple(sorted((details or {}).items())),
            gate=gate,
        )

    @classmethod
    def deny(
        cls,
        code: DenialCode,
        message: str,
        details: dict[str, Any] | None = None,
        gate: str | None = None,
    ) -> Decision:
        """Create a deny decision."""
        return cls(
            allowed=False,
            code=code,
            message=message,
            details=tuple(sorted((details or {}).items())),
            gate=gate,
        )
