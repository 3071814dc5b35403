"""Workspace-relative path handling."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

from ovmemory.exceptions import InvalidPathError

logger = logging.getLogger(__name__)


def normalize_rel_path(raw_path: str) -> str:
    """Normalize a workspace-relative path to forward slashes without a leading slash.

    Raises InvalidPathError if the path is empty or climbs above the workspace root.
    """
    trimmed = raw_path.strip()
    if not trimmed:
        msg = "path required"
        raise InvalidPathError(msg)
    normalized = posixpath.normpath(trimmed.replace("\\", "/").lstrip("/"))
    if normalized in (".", "") or normalized == ".." or normalized.startswith("../"):
        msg = f"invalid path: {raw_path}"
        raise InvalidPathError(msg)
    return normalized


def safe_workspace_path(workspace_dir: Path, raw_path: str) -> tuple[str, Path]:
    """Return the normalized relative path and its absolute location inside the workspace.

    Raises InvalidPathError for paths that climb above the root, go through a symbolic link or
    resolve to a location outside the workspace.
    """
    rel_path = normalize_rel_path(raw_path)
    full_path = workspace_dir / rel_path
    if _crosses_symlink(workspace_dir, rel_path):
        msg = f"path goes through a symbolic link: {raw_path}"
        raise InvalidPathError(msg)
    if not full_path.resolve().is_relative_to(workspace_dir.resolve()):
        msg = f"path resolves outside the workspace: {raw_path}"
        raise InvalidPathError(msg)
    return rel_path, full_path


def escapes_workspace(rel_path: str) -> bool:
    """Whether a scanned relative path is empty, absolute or climbs out of the workspace.

    Unlike ``normalize_rel_path`` this leaves the name alone: backslashes and surrounding
    whitespace are legal in file names.
    """
    parts = PurePosixPath(rel_path).parts
    return not parts or parts[0] == "/" or ".." in parts


def _crosses_symlink(workspace_dir: Path, rel_path: str) -> bool:
    current = workspace_dir
    for part in Path(rel_path).parts:
        current = current / part
        if current.is_symlink():
            return True
    return False


def resolve_extra_path(workspace_dir: Path, raw_path: str) -> str | None:
    """Resolve a configured extra path to a workspace-relative path.

    Absolute paths are accepted when they point inside the workspace. Returns ``"."`` for the
    workspace itself and None (after logging a warning) for blank entries, paths outside the
    workspace and paths that go through a symbolic link.
    """
    trimmed = raw_path.strip()
    if not trimmed:
        return None

    workspace = Path(os.path.normpath(workspace_dir.absolute()))
    candidate = Path(trimmed)
    if not candidate.is_absolute():
        candidate = workspace / candidate
    candidate = Path(os.path.normpath(candidate))

    try:
        rel = candidate.relative_to(workspace)
    except ValueError:
        logger.warning("Skip extra path outside workspace: %s", trimmed)
        return None

    rel_path = rel.as_posix()
    if rel_path == ".":
        return "."
    if _crosses_symlink(workspace, rel_path):
        logger.warning("Skip symlink extra path: %s", trimmed)
        return None
    return rel_path
