"""Recorders - Post-action bookkeeping.

Recorders run after the caller has performed an approved action, in
ascending ``priority``: fingerprint refresh first, then the audit append,
then optional extras. Each recorder is isolated by the engine; a fault in
one is logged and never reaches the caller or the other recorders.
"""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .actions import ActionFamily
from .concurrency import compute_content_hash, hash_file
from .ledger import UNKNOWN_REVISION, AuditLedger, Contributor, FileEntry, TraceRecord

if TYPE_CHECKING:
    from .concurrency import ConcurrencyGuard
    from .decision import Decision
    from .gates import ActionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionOutcome:
    """What happened when the caller ran an approved action."""

    success: bool
    duration_ms: float = 0.0
    error: str | None = None
    result: Any = None

    @classmethod
    def succeeded(cls, result: Any = None, duration_ms: float = 0.0) -> ActionOutcome:
        return cls(success=True, duration_ms=duration_ms, result=result)

    @classmethod
    def failed(cls, error: str, duration_ms: float = 0.0, result: Any = None) -> ActionOutcome:
        return cls(success=False, duration_ms=duration_ms, error=error, result=result)


class Recorder(abc.ABC):
    """Post-record capability."""

    name: str = "recorder"
    priority: int = 100

    @abc.abstractmethod
    def record(self, ctx: ActionContext, outcome: ActionOutcome) -> None:
        ...

    def record_denial(self, ctx: ActionContext, decision: Decision) -> None:
        """Called for denied attempts when denial auditing is enabled."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


def target_hash(ctx: ActionContext) -> str | None:
    """``sha256:``-prefixed hash of the target on disk, else of the payload content."""
    if ctx.target is not None and ctx.target.within_workspace:
        on_disk = hash_file(ctx.target.absolute)
        if on_disk is not None:
            return f"sha256:{on_disk}"
    content = ctx.request.content()
    if content is not None:
        return f"sha256:{compute_content_hash(content)}"
    return None


class FingerprintRecorder(Recorder):
    """Keep the session's fingerprint table current."""

    name = "fingerprint"
    priority = 10

    def __init__(self, guard: ConcurrencyGuard):
        self._guard = guard

    def record(self, ctx: ActionContext, outcome: ActionOutcome) -> None:
        if not outcome.success or ctx.target is None or not ctx.target.within_workspace:
            return
        # Ended or unknown sessions keep no fingerprint table
        if ctx.turn_state is None:
            return
        if ctx.request.family is ActionFamily.FILE_READ:
            self._guard.observe(ctx.session_id, ctx.target)
        elif ctx.request.mutates_file:
            self._guard.refresh(ctx.session_id, ctx.target)


class LedgerRecorder(Recorder):
    """Append one TraceRecord per governed action."""

    name = "ledger"
    priority = 20

    def __init__(
        self,
        ledger: AuditLedger,
        revision_provider: Callable[[], str] | None = None,
        model_identifier: str | None = None,
    ):
        self._ledger = ledger
        self._revision_provider = revision_provider
        self._contributor = Contributor(entity_type="AI", model_identifier=model_identifier)

    def record(self, ctx: ActionContext, outcome: ActionOutcome) -> None:
        self._ledger.append(self._build(
            ctx,
            success=outcome.success,
            allowed=True,
            duration_ms=outcome.duration_ms,
            error=outcome.error,
        ))

    def record_denial(self, ctx: ActionContext, decision: Decision) -> None:
        self._ledger.append(self._build(
            ctx,
            success=False,
            allowed=False,
            error=decision.message,
            denial_code=decision.code.value if decision.code else None,
        ))

    def _build(self, ctx: ActionContext, **fields: Any) -> TraceRecord:
        files: tuple[FileEntry, ...] = ()
        if ctx.target is not None:
            files = (FileEntry(
                relative_path=ctx.target.relative,
                content_hash=target_hash(ctx),
                contributor=self._contributor,
                related_intent=ctx.intent_id,
            ),)
        return TraceRecord(
            session_id=ctx.session_id,
            intent_id=ctx.intent_id,
            action_name=ctx.request.action_name,
            mutation_class=ctx.request.mutation_class,
            files=files,
            revision_id=self._revision(),
            **fields,
        )

    def _revision(self) -> str:
        if self._revision_provider is None:
            return UNKNOWN_REVISION
        try:
            return self._revision_provider() or UNKNOWN_REVISION
        except Exception:
            logger.exception("Revision provider failed")
            return UNKNOWN_REVISION


class IntentMapRecorder(Recorder):
    """Maintain a markdown map of which files each intent has touched.

    One section per intent with a table of
    ``| File | Last Action | Last Modified | Content Hash |``; a row is
    replaced when its file is written again.
    """

    name = "intent_map"
    priority = 30

    _TABLE_HEADER = (
        "| File | Last Action | Last Modified | Content Hash |",
        "|------|-------------|---------------|--------------|",
    )

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, ctx: ActionContext, outcome: ActionOutcome) -> None:
        if not outcome.success or not ctx.request.mutates_file:
            return
        if ctx.intent is None or ctx.target is None:
            return

        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        row = f"| {ctx.target.relative} | {ctx.request.action_name} | {date} | {target_hash(ctx) or '-'} |"
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines() if self.path.exists() else []
            lines = self._upsert(lines, ctx, row)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def _upsert(self, lines: list[str], ctx: ActionContext, row: str) -> list[str]:
        intent = ctx.intent
        header = f"## {intent.id}:"
        start = next((i for i, line in enumerate(lines) if line.startswith(header)), None)
        if start is None:
            if lines and lines[-1].strip():
                lines.append("")
            lines.extend([
                f"## {intent.id}: {intent.name}",
                "",
                f"**Status:** {intent.status.value}",
                "",
                *self._TABLE_HEADER,
                row,
            ])
            return lines

        end = next((i for i in range(start + 1, len(lines)) if lines[i].startswith("## ")), len(lines))
        prefix = f"| {ctx.target.relative} |"
        last_row = None
        for i in range(start + 1, end):
            if lines[i].startswith(prefix):
                lines[i] = row
                return lines
            if lines[i].startswith("|"):
                last_row = i

        if last_row is None:
            lines[end:end] = [*self._TABLE_HEADER, row]
        else:
            lines.insert(last_row + 1, row)
        return lines
