"""Audit Ledger - Append-only trace of governed actions.

The ledger records every governed action for:
- Attribution (which session, under which intent, touched which file)
- Audit (what was allowed, what was denied, what failed)
- Replay and offline analysis

Format: JSONL, one self-contained record per line. Records carry content
hashes of affected files, never the contents themselves.

INVARIANTS:
1. Records are immutable once written
2. The file is only ever appended to (one record, one write)
3. Readers skip corrupt or truncated lines instead of failing
4. Unknown actions are recorded as UNKNOWN, never as READ_ONLY
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .actions import MutationClass

logger = logging.getLogger(__name__)

UNKNOWN_REVISION = "unknown"

# Legacy scaffold content written by older tooling before the JSONL format
_PLACEHOLDERS = ("", "[]")


class LedgerError(Exception):
    """Raised when the ledger file cannot be written."""

    def __init__(self, message: str, path: Path | str | None = None):
        self.path = str(path) if path is not None else None
        super().__init__(f"[Ledger] {message}" + (f" (path: {path})" if path is not None else ""))


@dataclass(frozen=True)
class Contributor:
    """Who made a change."""

    entity_type: str = "AI"  # "AI" | "HUMAN"
    model_identifier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type, "model_identifier": self.model_identifier}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Contributor:
        return cls(
            entity_type=data.get("entity_type", "AI"),
            model_identifier=data.get("model_identifier"),
        )


@dataclass(frozen=True)
class FileEntry:
    """A file touched by an action, identified by path and content hash."""

    relative_path: str
    content_hash: str | None
    contributor: Contributor = field(default_factory=Contributor)
    related_intent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "relative_path": self.relative_path,
            "content_hash": self.content_hash,
            "contributor": self.contributor.to_dict(),
            "related": [{"type": "intent", "value": self.related_intent}] if self.related_intent else [],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        related_intent = None
        for relation in data.get("related", []):
            if relation.get("type") == "intent":
                related_intent = relation.get("value")
                break
        return cls(
            relative_path=data["relative_path"],
            content_hash=data.get("content_hash"),
            contributor=Contributor.from_dict(data.get("contributor", {})),
            related_intent=related_intent,
        )


@dataclass(frozen=True)
class TraceRecord:
    """Immutable ledger record for one governed action.

    ``allowed`` is False for denied attempts (``denial_code`` set, the
    action never ran). ``success`` is False when the action ran and failed.
    """

    session_id: str
    action_name: str
    mutation_class: MutationClass
    intent_id: str | None = None
    success: bool = True
    allowed: bool = True
    duration_ms: float = 0.0
    error: str | None = None
    denial_code: str | None = None
    files: tuple[FileEntry, ...] = field(default_factory=tuple)
    revision_id: str = UNKNOWN_REVISION
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "vcs": {"revision_id": self.revision_id},
            "session_id": self.session_id,
            "intent_id": self.intent_id,
            "action_name": self.action_name,
            "mutation_class": self.mutation_class.value,
            "duration_ms": self.duration_ms,
            "allowed": self.allowed,
            "success": self.success,
            "files": [f.to_dict() for f in self.files],
        }
        if self.error is not None:
            data["error"] = self.error
        if self.denial_code is not None:
            data["denial_code"] = self.denial_code
        return data

    def to_json(self) -> str:
        """Serialize to a single JSON line (no embedded newlines)."""
        return json.dumps(self.to_dict(), sort_keys=True, default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TraceRecord:
        """Deserialize from dictionary."""
        try:
            mutation_class = MutationClass(data.get("mutation_class", "UNKNOWN"))
        except ValueError:
            mutation_class = MutationClass.UNKNOWN
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            revision_id=data.get("vcs", {}).get("revision_id", UNKNOWN_REVISION),
            session_id=data["session_id"],
            intent_id=data.get("intent_id"),
            action_name=data["action_name"],
            mutation_class=mutation_class,
            duration_ms=data.get("duration_ms", 0.0),
            allowed=data.get("allowed", True),
            success=data.get("success", True),
            error=data.get("error"),
            denial_code=data.get("denial_code"),
            files=tuple(FileEntry.from_dict(f) for f in data.get("files", [])),
        )

    @classmethod
    def from_json(cls, json_str: str) -> TraceRecord:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(json_str))


def git_revision(workspace_root: Path | str) -> str:
    """Short HEAD revision of the workspace, or ``"unknown"``."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            cwd=workspace_root,
            capture_output=True,
            text=True,
            timeout=3.0,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git revision unavailable: {e}")
        return UNKNOWN_REVISION
    if result.returncode != 0:
        return UNKNOWN_REVISION
    return result.stdout.strip() or UNKNOWN_REVISION


class AuditLedger:
    """Durable, append-only JSONL ledger shared by all sessions.

    Appends from different sessions (threads) never interleave: each record
    is encoded up front and written with a single ``os.write`` on an
    ``O_APPEND`` descriptor, under a lock.

    Usage:
        ledger = AuditLedger(".orchestration/agent_trace.jsonl")
        ledger.append(record)

        for record in ledger.iter_records():
            process(record)
    """

    def __init__(self, path: Path | str):
        """Initialize ledger with file path.

        Args:
            path: Path to the JSONL ledger file.

        Raises:
            LedgerError: If the parent directory cannot be created.
        """
        self.path = Path(path)
        self._lock = threading.Lock()
        self._prepared = False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LedgerError(f"Cannot create ledger directory: {e}", self.path) from e

    def append(self, record: TraceRecord) -> TraceRecord:
        """Append one record as one line.

        Raises:
            LedgerError: If the line could not be written in full.
        """
        line = (record.to_json() + "\n").encode("utf-8")
        with self._lock:
            if not self._prepared:
                self._prepare()
                self._prepared = True
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                written = os.write(fd, line)
            finally:
                os.close(fd)
        if written != len(line):
            raise LedgerError(f"Short write: {written} of {len(line)} bytes", self.path)
        return record

    def _prepare(self) -> None:
        """One-time fixups before the first append from this instance.

        - Legacy empty placeholders (``[]``) are cleared; JSONL has no wrapper.
        - A trailing partial line (crash mid-write) is terminated so the next
          record starts on its own line.
        """
        if not self.path.exists():
            return
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            if size == 0:
                return
            if size <= 64:
                f.seek(0)
                if f.read().decode("utf-8", errors="replace").strip() in _PLACEHOLDERS:
                    logger.info(f"Migrating legacy placeholder ledger at {self.path}")
                    with open(self.path, "wb"):
                        pass
                    return
            f.seek(-1, os.SEEK_END)
            last = f.read(1)
        if last != b"\n":
            logger.warning(f"Ledger {self.path} ends with a partial line; terminating it")
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND)
            try:
                os.write(fd, b"\n")
            finally:
                os.close(fd)

    def iter_records(self) -> Iterator[TraceRecord]:
        """Iterate over well-formed records (memory-efficient).

        Corrupt lines, including a truncated final line, are logged and
        skipped.
        """
        for record in self._scan():
            if record is not None:
                yield record

    def replay(self) -> list[TraceRecord]:
        """All well-formed records in append order."""
        return list(self.iter_records())

    def _scan(self) -> Iterator[TraceRecord | None]:
        if not self.path.exists():
            return
        with open(self.path, encoding="utf-8", errors="replace") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line in _PLACEHOLDERS:
                    continue
                try:
                    yield TraceRecord.from_json(line)
                except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValueError) as e:
                    logger.warning(f"Skipping corrupt ledger line {line_no} in {self.path}: {e}")
                    yield None

    def get_rejections(self) -> list[TraceRecord]:
        """Records of denied attempts."""
        return [r for r in self.iter_records() if not r.allowed]

    def get_failures(self) -> list[TraceRecord]:
        """Records of actions that ran and failed."""
        return [r for r in self.iter_records() if r.allowed and not r.success]

    def get_summary(self) -> dict[str, Any]:
        """Summary statistics of the ledger."""
        total = allowed = denied = failed = corrupt = 0
        by_class = {mc.value: 0 for mc in MutationClass}
        sessions: set[str] = set()

        for record in self._scan():
            if record is None:
                corrupt += 1
                continue
            total += 1
            sessions.add(record.session_id)
            by_class[record.mutation_class.value] += 1
            if record.allowed:
                allowed += 1
                if not record.success:
                    failed += 1
            else:
                denied += 1

        return {
            "total_records": total,
            "allowed": allowed,
            "denied": denied,
            "failed": failed,
            "succeeded": allowed - failed,
            "by_mutation_class": by_class,
            "sessions": len(sessions),
            "corrupt_lines": corrupt,
        }
