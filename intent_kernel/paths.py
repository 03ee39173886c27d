"""Workspace path normalization.

Every gate and recorder sees targets as workspace-relative POSIX paths.
Absolute inputs are relativized, ``..`` segments are collapsed, and a
target that escapes the workspace is flagged so no gate can authorize it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath


@dataclass(frozen=True)
class WorkspacePath:
    """A target resolved against the workspace root."""

    relative: str  # POSIX, no leading "./"
    absolute: Path
    within_workspace: bool

    def __str__(self) -> str:
        return self.relative


def normalize_target(raw: str | Path, workspace_root: Path | str) -> WorkspacePath:
    """Resolve ``raw`` against ``workspace_root``.

    Symlinks are not followed; only the lexical path is normalized, so the
    result names the file the action asked for rather than where it points.

    Args:
        raw: Relative or absolute target path as supplied by the action.
        workspace_root: Root of the governed workspace.

    Returns:
        WorkspacePath with the relative form used for matching and hashing.
    """
    root = Path(os.path.abspath(workspace_root))
    candidate = Path(str(raw).replace("\\", "/"))
    if not candidate.is_absolute():
        candidate = root / candidate
    absolute = Path(os.path.normpath(candidate))

    try:
        relative = absolute.relative_to(root)
    except ValueError:
        rel = os.path.relpath(absolute, root)
        return WorkspacePath(
            relative=PurePosixPath(Path(rel).as_posix()).as_posix(),
            absolute=absolute,
            within_workspace=False,
        )

    rel_str = relative.as_posix()
    return WorkspacePath(
        relative="" if rel_str == "." else rel_str,
        absolute=absolute,
        within_workspace=True,
    )
