"""Intent Catalog - Declared units of work.

Intents are loaded once per process from a declarative YAML source and are
never mutated by the kernel. The catalog is the only state shared across
sessions besides the ledger's append target, and it is read-only.

Declaration format (``active_intents.yaml``)::

    active_intents:
      - id: INT-001
        name: Build Weather API
        status: IN_PROGRESS
        owned_scope: ["src/api/**"]
        constraints: ["Use the existing HTTP client"]
        acceptance_criteria: ["GET /weather returns 200"]

Ignore list (``.intentignore``): one glob per line, blank lines and lines
starting with ``#`` are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .scope import glob_match

logger = logging.getLogger(__name__)

DEFAULT_INTENTS_FILE = "active_intents.yaml"
DEFAULT_IGNORE_FILE = ".intentignore"

REQUIRED_INTENT_FIELDS = ("id", "name", "owned_scope")


class IntentStatus(Enum):
    """Lifecycle status of an intent (owned by external tooling)."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class IntentCatalogError(Exception):
    """Raised when the intent declaration source cannot be loaded."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(f"[IntentCatalog] {message}" + (f" (source: {source})" if source else ""))


@dataclass(frozen=True)
class Intent:
    """Immutable declared intent.

    INVARIANT: Loaded once, never mutated by the kernel.
    """

    id: str
    name: str
    status: IntentStatus = IntentStatus.PENDING
    owned_scope: tuple[str, ...] = field(default_factory=tuple)
    constraints: tuple[str, ...] = field(default_factory=tuple)
    acceptance_criteria: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "owned_scope": list(self.owned_scope),
            "constraints": list(self.constraints),
            "acceptance_criteria": list(self.acceptance_criteria),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Intent:
        """Deserialize and validate one declaration record.

        Raises:
            IntentCatalogError: If a required field is missing or malformed.
        """
        if not isinstance(data, Mapping):
            raise IntentCatalogError(f"Intent record must be a mapping, got: {type(data).__name__}")

        missing = [name for name in REQUIRED_INTENT_FIELDS if data.get(name) in (None, "")]
        if missing:
            raise IntentCatalogError(f"Intent missing required fields {missing}: {dict(data)}")

        owned_scope = data["owned_scope"]
        if isinstance(owned_scope, str) or not isinstance(owned_scope, Iterable):
            raise IntentCatalogError(f"owned_scope must be a list of globs for intent {data['id']}")

        raw_status = data.get("status", IntentStatus.PENDING.value)
        try:
            status = IntentStatus(str(raw_status).upper())
        except ValueError as e:
            raise IntentCatalogError(
                f"Invalid status '{raw_status}' for intent {data['id']}. "
                f"Allowed: {[s.value for s in IntentStatus]}"
            ) from e

        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            status=status,
            owned_scope=tuple(str(p) for p in owned_scope),
            constraints=tuple(str(c) for c in data.get("constraints") or ()),
            acceptance_criteria=tuple(str(c) for c in data.get("acceptance_criteria") or ()),
        )


def parse_ignore_list(text: str) -> tuple[str, ...]:
    """Parse newline-delimited ignore globs, skipping blanks and comments."""
    patterns = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return tuple(patterns)


class IntentCatalog:
    """Read-only, session-shared store of declared intents.

    Usage:
        catalog = IntentCatalog.load(Path(".orchestration"))
        intent = catalog.get("INT-001")
        catalog.ids()  # ["INT-001", "INT-002", ...]
    """

    def __init__(self, intents: Iterable[Intent], ignore_patterns: Iterable[str] = ()):
        self._intents: dict[str, Intent] = {}
        for intent in intents:
            if intent.id in self._intents:
                raise IntentCatalogError(f"Duplicate intent id: {intent.id}")
            self._intents[intent.id] = intent
        self._ignore_patterns = tuple(ignore_patterns)

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        ignore_patterns: Iterable[str] = (),
    ) -> IntentCatalog:
        """Build a catalog from raw declaration records."""
        return cls((Intent.from_dict(r) for r in records), ignore_patterns)

    @classmethod
    def from_yaml(cls, text: str, ignore_text: str = "", source: str | None = None) -> IntentCatalog:
        """Build a catalog from YAML declaration text.

        Args:
            text: YAML document with a top-level ``active_intents`` list.
            ignore_text: Contents of the ignore list, if any.
            source: Where the text came from (for error messages).

        Raises:
            IntentCatalogError: On parse errors or an invalid layout.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise IntentCatalogError(f"Invalid YAML: {e}", source) from e

        if not isinstance(data, dict) or not isinstance(data.get("active_intents"), list):
            raise IntentCatalogError("Expected a top-level 'active_intents' list", source)

        try:
            return cls.from_records(data["active_intents"], parse_ignore_list(ignore_text))
        except IntentCatalogError as e:
            if source and e.source is None:
                raise IntentCatalogError(str(e).removeprefix("[IntentCatalog] "), source) from e
            raise

    @classmethod
    def load(
        cls,
        orchestration_dir: Path | str,
        intents_file: str = DEFAULT_INTENTS_FILE,
        ignore_file: str = DEFAULT_IGNORE_FILE,
    ) -> IntentCatalog:
        """Load intents and the ignore list from an orchestration directory.

        A missing intents file is fatal; a missing ignore list is not.
        """
        orchestration_dir = Path(orchestration_dir)
        intents_path = orchestration_dir / intents_file
        if not intents_path.exists():
            raise IntentCatalogError("Intent declarations not found", str(intents_path))

        ignore_path = orchestration_dir / ignore_file
        ignore_text = ignore_path.read_text(encoding="utf-8") if ignore_path.exists() else ""

        catalog = cls.from_yaml(
            intents_path.read_text(encoding="utf-8"),
            ignore_text=ignore_text,
            source=str(intents_path),
        )
        logger.info(
            f"Loaded {len(catalog)} intents from {intents_path} "
            f"({len(catalog.ignore_patterns)} ignore patterns)"
        )
        return catalog

    def __len__(self) -> int:
        return len(self._intents)

    def __contains__(self, intent_id: object) -> bool:
        return intent_id in self._intents

    @property
    def ignore_patterns(self) -> tuple[str, ...]:
        return self._ignore_patterns

    def get(self, intent_id: str) -> Intent | None:
        return self._intents.get(intent_id)

    def ids(self) -> list[str]:
        """All intent ids in declaration order."""
        return list(self._intents)

    def all(self) -> list[Intent]:
        return list(self._intents.values())

    def get_constraints(self, intent_id: str) -> tuple[str, ...]:
        """Get the constraints of an intent.

        Raises:
            KeyError: If the intent is not declared.
        """
        intent = self.get(intent_id)
        if intent is None:
            raise KeyError(f"Intent {intent_id} not found")
        return intent.constraints

    def is_ignored(self, relative_path: str) -> bool:
        """Check the ignore list using anchored glob semantics."""
        return any(glob_match(pattern, relative_path) for pattern in self._ignore_patterns)


def build_intent_context(intent: Intent) -> str:
    """Render the ``<intent_context>`` block returned to the agent on selection."""

    def block(tag: str, item_tag: str, items: tuple[str, ...]) -> str:
        inner = "\n".join(f"    <{item_tag}>{item}</{item_tag}>" for item in items)
        return f"  <{tag}>\n{inner}\n  </{tag}>" if inner else f"  <{tag}/>"

    return "\n".join([
        "<intent_context>",
        f"  <id>{intent.id}</id>",
        f"  <name>{intent.name}</name>",
        f"  <status>{intent.status.value}</status>",
        block("owned_scope", "scope", intent.owned_scope),
        block("constraints", "constraint", intent.constraints),
        block("acceptance_criteria", "criterion", intent.acceptance_criteria),
        "</intent_context>",
    ])
