"""Scope Matching - Anchored glob authorization.

An intent owns a set of glob patterns. A target is authorized when it
matches at least one of them over the WHOLE workspace-relative path.

Glob semantics:
- ``**`` matches any sequence of path segments, including none
- ``*`` matches within a single segment
- ``?`` matches one character within a segment
- a trailing ``/`` means "this directory and everything below it"

INVARIANTS:
1. Matching is anchored start-to-end, never a substring search
2. Ignore-list entries bypass scope checking entirely
3. An empty owned scope authorizes every target
"""

from __future__ import annotations

import functools
import logging
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .intents import Intent, IntentCatalog

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile a glob into a fully anchored regular expression.

    Args:
        pattern: Glob pattern, relative to the workspace root.

    Returns:
        Compiled pattern; use ``fullmatch`` against relative paths.
    """
    pattern = pattern.strip().replace("\\", "/")
    while pattern.startswith("./"):
        pattern = pattern[2:]
    if pattern.endswith("/"):
        pattern += "**"

    parts: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if pattern.startswith("**", i):
            at_start = i == 0 or pattern[i - 1] == "/"
            followed_by_sep = pattern.startswith("/", i + 2)
            at_end = i + 2 == n
            if at_start and followed_by_sep:
                # "**/" -> zero or more leading segments
                parts.append("(?:[^/]+/)*")
                i += 3
                continue
            if at_start and at_end and i > 0 and parts and parts[-1] == "/":
                # "dir/**" -> the directory itself or anything under it
                parts.pop()  # drop the literal "/"
                parts.append("(?:/.*)?")
                i += 2
                continue
            parts.append(".*")
            i += 2
            continue
        if ch == "*":
            parts.append("[^/]*")
        elif ch == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(ch))
        i += 1

    return re.compile("".join(parts))


def glob_match(pattern: str, path: str) -> bool:
    """Return True if ``path`` matches ``pattern`` over its full length."""
    return compile_glob(pattern).fullmatch(path) is not None


class ScopeMatcher:
    """Evaluates targets against an intent's owned scope.

    Usage:
        matcher = ScopeMatcher(catalog)
        if not matcher.is_authorized(intent, "src/api/x.ts"):
            ...
    """

    def __init__(self, catalog: IntentCatalog):
        self._catalog = catalog

    def is_authorized(self, intent: Intent, relative_path: str) -> bool:
        """Check whether ``intent`` may mutate ``relative_path``.

        Args:
            intent: The session's active intent.
            relative_path: Normalized workspace-relative target.

        Returns:
            True if ignored, unscoped, or matched by an owned pattern.
        """
        if self._catalog.is_ignored(relative_path):
            logger.debug(f"{relative_path} is on the ignore list; scope bypassed")
            return True
        if not intent.owned_scope:
            return True
        return self.matching_pattern(intent, relative_path) is not None

    def matching_pattern(self, intent: Intent, relative_path: str) -> str | None:
        """Return the first owned pattern that matches, if any."""
        for pattern in intent.owned_scope:
            if glob_match(pattern, relative_path):
                return pattern
        return None
