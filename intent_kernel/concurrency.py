"""Concurrency Guard - Optimistic concurrency control over workspace files.

When a session reads a file, the guard remembers the SHA-256 of what it
saw. When the same session later tries to write that file, the guard
re-hashes it; if someone else (another agent, a human) changed it in the
meantime the write is denied with STALE_FILE and the session must re-read
before retrying.

No lock is ever held. Conflicts are detected, never prevented: sessions
are long-lived and holding a lock across an agent's think time is not
acceptable.

INVARIANTS:
1. Fingerprint tables are per session; no cross-session sharing
2. No recorded hash means "unknown" and is permissive
3. A successful write refreshes the hash so a session never conflicts
   with itself
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from .decision import Decision, DenialCode
from .paths import WorkspacePath
from .state import SessionStore

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 8192


def compute_content_hash(data: bytes | str) -> str:
    """SHA-256 hex digest of ``data`` (str is hashed as UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str | None:
    """SHA-256 hex digest of a file's bytes, or None if it is not a file.

    Raises:
        OSError: If the file exists but cannot be read.
    """
    if not path.is_file():
        return None
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ConcurrencyGuard:
    """Per-session fingerprint bookkeeping and stale-write detection.

    Usage:
        guard = ConcurrencyGuard(store)
        guard.observe(session_id, target)          # after a read
        decision = guard.check(session_id, target) # before a write
        guard.refresh(session_id, target)          # after a successful write
    """

    def __init__(self, store: SessionStore):
        self._store = store

    def observe(self, session_id: str, target: WorkspacePath) -> str | None:
        """Record the current hash of ``target`` as last observed.

        Returns:
            The recorded hash, or None if the file does not exist.
        """
        current = hash_file(target.absolute)
        if current is None:
            return None
        self._store.fingerprints(session_id)[target.relative] = current
        logger.debug(f"[{session_id}] observed {target.relative} @ {current[:12]}")
        return current

    def check(self, session_id: str, target: WorkspacePath) -> Decision:
        """Compare the last observed hash with the file on disk.

        Args:
            session_id: Session attempting the write.
            target: Normalized write target.

        Returns:
            Allow if unknown, missing on disk, or unchanged; otherwise Deny
            with STALE_FILE carrying the expected and actual hash.
        """
        expected = self._store.fingerprints(session_id).get(target.relative)
        if expected is None:
            return Decision.allow("No prior observation", gate="concurrency")

        actual = hash_file(target.absolute)
        if actual is None:
            return Decision.allow("Target does not exist; treated as creation", gate="concurrency")

        if actual != expected:
            return Decision.deny(
                DenialCode.STALE_FILE,
                f'Stale File: "{target.relative}" has been modified by another agent or process '
                "since you last read it. Re-read the file with read_file before attempting to write.",
                {
                    "file_path": target.relative,
                    "expected_hash": expected,
                    "actual_hash": actual,
                },
                gate="concurrency",
            )

        return Decision.allow("Fingerprint matches", gate="concurrency")

    def refresh(self, session_id: str, target: WorkspacePath) -> str | None:
        """Store the post-write hash, or forget the path if it is gone."""
        table = self._store.fingerprints(session_id)
        current = hash_file(target.absolute)
        if current is None:
            table.pop(target.relative, None)
            return None
        table[target.relative] = current
        return current

    def tracked(self, session_id: str) -> dict[str, str]:
        """Copy of the session's fingerprint table."""
        return dict(self._store.fingerprints(session_id))

    def clear(self, session_id: str) -> None:
        self._store.fingerprints(session_id).clear()
