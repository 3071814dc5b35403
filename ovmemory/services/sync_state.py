"""Snapshot store: the durable record of what was last synced where."""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from ovmemory.config import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

STATE_VERSION = 1

_UNSAFE_AGENT_RE = re.compile(r"[^A-Za-z0-9_-]")


class RunStatus(StrEnum):
    """Outcome of the last sync run. ``running`` on load means the previous run never finished."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SyncedFileSnapshot(BaseModel):
    """A file known to have been synced: its fingerprint and root URI at that time."""

    fingerprint: str
    uri: str


class PersistedSyncStateEntry(SyncedFileSnapshot):
    rel_path: str


class PersistedSyncState(BaseModel):
    """On-disk sync state for one (workspace, agent) pair."""

    version: int = STATE_VERSION
    agent_id: str
    entries: list[PersistedSyncStateEntry] = Field(default_factory=list)
    ov_config_path: str | None = None
    ov_config_fingerprint: str | None = None
    last_run_status: RunStatus | None = None
    last_run_reason: str | None = None
    last_run_started_at: datetime | None = None
    last_run_completed_at: datetime | None = None

    def snapshot_map(self) -> dict[str, SyncedFileSnapshot]:
        """Return entries keyed by relative path."""
        return {
            entry.rel_path: SyncedFileSnapshot(fingerprint=entry.fingerprint, uri=entry.uri)
            for entry in self.entries
        }

    def set_entries(self, snapshots: dict[str, SyncedFileSnapshot]) -> None:
        """Replace entries from a path-keyed map, sorted by path."""
        self.entries = [
            PersistedSyncStateEntry(rel_path=rel_path, fingerprint=snap.fingerprint, uri=snap.uri)
            for rel_path, snap in sorted(snapshots.items())
        ]


def sanitize_agent_id(agent_id: str) -> str:
    return _UNSAFE_AGENT_RE.sub("_", agent_id.strip() or "main")


class SyncStateStore:
    """Loads and atomically persists ``PersistedSyncState`` as JSON.

    The file lives at ``<workspace>/<state_dir>/sync-state.<agent>.json``. Writes go to a temporary
    file in the same directory and are renamed over the final path, so readers only ever see the
    previous or the new complete document.
    """

    def __init__(
        self, workspace_dir: Path, agent_id: str, state_dir: str = DEFAULT_STATE_DIR
    ) -> None:
        self.workspace_dir = workspace_dir
        self.agent_id = agent_id
        self._path = workspace_dir / state_dir / f"sync-state.{sanitize_agent_id(agent_id)}.json"

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PersistedSyncState | None:
        """Return the persisted state, or None when missing, unreadable or of another version."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot read sync state %s: %s", self._path, exc)
            return None

        try:
            state = PersistedSyncState.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring corrupt sync state %s: %s", self._path, exc)
            return None

        if state.version != STATE_VERSION:
            logger.warning(
                "Ignoring sync state %s with unsupported version %s", self._path, state.version
            )
            return None
        return state

    def persist(self, state: PersistedSyncState) -> None:
        """Write ``state`` atomically (temp file + fsync + rename)."""
        state.entries = sorted(state.entries, key=lambda entry: entry.rel_path)
        payload = state.model_dump_json(indent=2) + "\n"

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.{os.getpid()}.{time.time_ns()}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
