"""Workspace scanner: finds markdown memory files eligible for sync and fingerprints them."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ovmemory.filesystem.paths import escapes_workspace, resolve_extra_path

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ovmemory.services.mapper import PathMapper

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIX = ".md"


@dataclass(frozen=True)
class ScanLayout:
    """Where memory files live inside a workspace."""

    root_files: tuple[str, ...] = (
        "MEMORY.md",
        "memory.md",
        "SOUL.md",
        "USER.md",
        "AGENTS.md",
        "TOOLS.md",
        "IDENTITY.md",
        "BOOTSTRAP.md",
    )
    memory_dir: str = "memory"
    skills_dir: str = "skills"
    skill_file: str = "SKILL.md"


DEFAULT_LAYOUT = ScanLayout()


@dataclass(frozen=True)
class LocalSyncCandidate:
    """A local file that should exist remotely, as seen by the current scan."""

    rel_path: str
    full_path: Path
    desired_root_uri: str
    target_parent_uri: str
    fingerprint: str


def compute_fingerprint(path: Path) -> str:
    """Return ``{size}:{mtime in ms}`` for a file.

    This is a change detector, not a content hash: two different contents with the same size
    and mtime produce the same fingerprint.
    """
    stat = path.stat()
    return f"{stat.st_size}:{stat.st_mtime_ns // 1_000_000}"


def _scan_memory_dir(workspace_dir: Path, layout: ScanLayout, files: set[str]) -> None:
    try:
        with os.scandir(workspace_dir / layout.memory_dir) as entries:
            for entry in entries:
                if entry.is_file(follow_symlinks=False) and entry.name.endswith(MARKDOWN_SUFFIX):
                    files.add(f"{layout.memory_dir}/{entry.name}")
    except OSError:
        return


def _scan_skills_dir(workspace_dir: Path, layout: ScanLayout, files: set[str]) -> None:
    try:
        with os.scandir(workspace_dir / layout.skills_dir) as entries:
            skill_dirs = [entry.name for entry in entries if entry.is_dir(follow_symlinks=False)]
    except OSError:
        return
    for name in skill_dirs:
        if (workspace_dir / layout.skills_dir / name / layout.skill_file).is_file():
            files.add(f"{layout.skills_dir}/{name}/{layout.skill_file}")


def _collect_markdown_files(workspace_dir: Path, directory: Path, files: set[str]) -> None:
    """Recursively add markdown files below ``directory``, never following symlinks."""
    for root, dirs, filenames in os.walk(directory):
        root_path = Path(root)
        dirs[:] = sorted(d for d in dirs if not (root_path / d).is_symlink())
        for filename in filenames:
            if not filename.lower().endswith(MARKDOWN_SUFFIX):
                continue
            full = root_path / filename
            if full.is_symlink() or not full.is_file():
                continue
            files.add(full.relative_to(workspace_dir).as_posix())


def _scan_extra_path(workspace_dir: Path, raw_path: str, files: set[str]) -> None:
    rel_path = resolve_extra_path(workspace_dir, raw_path)
    if rel_path is None:
        return

    abs_path = workspace_dir if rel_path == "." else workspace_dir / rel_path
    try:
        mode = abs_path.lstat().st_mode
    except OSError as exc:
        logger.warning("Skip missing/inaccessible extra path %s: %s", raw_path, exc)
        return

    if abs_path.is_symlink():
        logger.warning("Skip symlink extra path: %s", raw_path)
    elif abs_path.is_dir():
        _collect_markdown_files(workspace_dir, abs_path, files)
    elif abs_path.is_file():
        if abs_path.name.lower().endswith(MARKDOWN_SUFFIX):
            files.add(rel_path)
        else:
            logger.warning("Skip non-markdown extra file: %s", raw_path)
    else:
        logger.warning("Skip unsupported extra path type %o: %s", mode, raw_path)


def scan_memory_files(
    workspace_dir: Path,
    extra_paths: Iterable[str] = (),
    layout: ScanLayout = DEFAULT_LAYOUT,
) -> list[str]:
    """Return the sorted, de-duplicated relative paths of markdown files to sync.

    Covers fixed root files, direct ``*.md`` children of the memory directory,
    ``<skills>/<name>/SKILL.md`` and the configured extra paths (directories are scanned
    recursively). Missing inputs are skipped, never raised.
    """
    files: set[str] = set()

    for rel_path in layout.root_files:
        if (workspace_dir / rel_path).is_file():
            files.add(rel_path)

    _scan_memory_dir(workspace_dir, layout, files)
    _scan_skills_dir(workspace_dir, layout, files)

    for raw_path in extra_paths:
        _scan_extra_path(workspace_dir, raw_path, files)

    return sorted(files)


def build_candidates(
    workspace_dir: Path,
    rel_paths: Iterable[str],
    mapper: PathMapper,
    unreadable: list[str] | None = None,
) -> list[LocalSyncCandidate]:
    """Attach URIs and fingerprints to scanned paths.

    Scanned names are used as they are. Paths escaping the workspace are skipped with a warning.
    Files that cannot be stat'ed are skipped and appended to ``unreadable`` when given.
    """
    candidates: list[LocalSyncCandidate] = []
    for rel_path in rel_paths:
        if escapes_workspace(rel_path):
            logger.warning("Skip path outside workspace: %r", rel_path)
            continue
        full_path = workspace_dir / rel_path
        try:
            fingerprint = compute_fingerprint(full_path)
        except OSError as exc:
            logger.warning("Cannot fingerprint %s: %s", rel_path, exc)
            if unreadable is not None:
                unreadable.append(rel_path)
            continue
        candidates.append(
            LocalSyncCandidate(
                rel_path=rel_path,
                full_path=full_path,
                desired_root_uri=mapper.to_root_uri(rel_path),
                target_parent_uri=mapper.to_target_parent_uri(rel_path),
                fingerprint=fingerprint,
            )
        )
    return candidates
