"""Reconciliation engine: plans and applies one-way sync of workspace memory files."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ovmemory.exceptions import RemoteProtocolError
from ovmemory.filesystem.scanner import DEFAULT_LAYOUT, build_candidates, scan_memory_files
from ovmemory.remote.errors import is_already_exists, is_missing_path
from ovmemory.services.sync_state import (
    PersistedSyncState,
    RunStatus,
    SyncedFileSnapshot,
    SyncStateStore,
)

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ovmemory.config import SyncSettings
    from ovmemory.filesystem.scanner import LocalSyncCandidate, ScanLayout
    from ovmemory.remote.base import MutationClient
    from ovmemory.services.mapper import PathMapper

CONFIG_FILE_ENV = "OPENVIKING_CONFIG_FILE"


# ── Progress ─────────────────────────────────────


@dataclass(frozen=True)
class SyncProgress:
    """A progress event emitted while a run executes."""

    completed: int
    total: int
    label: str


ProgressSink = Callable[[SyncProgress], None]


def queue_progress_sink(queue: asyncio.Queue[SyncProgress]) -> ProgressSink:
    """Return a sink feeding a bounded queue. Events are dropped when the consumer lags."""

    def sink(update: SyncProgress) -> None:
        try:
            queue.put_nowait(update)
        except asyncio.QueueFull:
            logger.debug("Progress queue full, dropping update: %s", update.label)

    return sink


# ── Planning ─────────────────────────────────────


@dataclass
class SyncPlan:
    """What a run has to do."""

    to_upsert: list[LocalSyncCandidate] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    skipped: int = 0


def compute_sync_plan(
    candidates: list[LocalSyncCandidate],
    snapshots: Mapping[str, SyncedFileSnapshot],
    force_full: bool = False,
) -> SyncPlan:
    """Compare scanned candidates with the snapshot.

    A candidate is upserted when a full resync is forced, when it has no snapshot entry, when
    its fingerprint changed or when its mapped URI no longer matches the recorded one. Snapshot
    entries without a candidate are stale.
    """
    plan = SyncPlan()
    for candidate in candidates:
        previous = snapshots.get(candidate.rel_path)
        if (
            force_full
            or previous is None
            or previous.fingerprint != candidate.fingerprint
            or previous.uri != candidate.desired_root_uri
        ):
            plan.to_upsert.append(candidate)

    current = {candidate.rel_path for candidate in candidates}
    plan.stale = sorted(rel_path for rel_path in snapshots if rel_path not in current)
    plan.skipped = len(candidates) - len(plan.to_upsert)
    return plan


# ── Config fingerprint ───────────────────────────


def resolve_ov_config_path(
    configured: Path | None,
    workspace_dir: Path,
    environ: Mapping[str, str] | None = None,
) -> Path | None:
    """Return the external config file whose changes force a full resync.

    An explicitly configured path is used as is. Otherwise the first existing file among
    ``$OPENVIKING_CONFIG_FILE``, ``~/.openviking/ov.conf`` and ``<workspace>/ov.conf`` is used.
    """
    if configured is not None:
        return configured.expanduser()

    env = os.environ if environ is None else environ
    probes: list[Path] = []
    if env.get(CONFIG_FILE_ENV):
        probes.append(Path(env[CONFIG_FILE_ENV]).expanduser())
    probes.append(Path.home() / ".openviking" / "ov.conf")
    probes.append(workspace_dir / "ov.conf")
    for probe in probes:
        if probe.is_file():
            return probe
    return None


def fingerprint_config_file(path: Path | None) -> str | None:
    """SHA-256 of the file content, or None when there is no readable file."""
    if path is None:
        return None
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return None


# ── Engine ───────────────────────────────────────


@dataclass
class SyncReport:
    """Summary of one run."""

    reason: str
    force_full: bool = False
    config_changed: bool = False
    recovered: bool = False
    uploaded: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: int = 0
    failures: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS


def _now() -> datetime:
    return datetime.now(UTC)


def _owned_by_candidate(uri: str, desired_uris: set[str]) -> bool:
    """Whether deleting ``uri`` would delete a current file's location (same URI or an ancestor)."""
    base = uri.rstrip("/")
    return any(
        desired.rstrip("/") == base or desired.startswith(f"{base}/") for desired in desired_uris
    )


class SyncEngine:
    """Reconciles workspace memory files with the remote store for one (workspace, agent).

    The snapshot is loaded once and cached. Each run writes a ``running`` marker before any remote
    call and always persists a final ``success``/``failed`` status, so a crash mid-run is detected
    by the next run and repaired with a full resync.
    """

    def __init__(
        self,
        workspace_dir: Path,
        agent_id: str,
        client: MutationClient,
        mapper: PathMapper,
        settings: SyncSettings,
        store: SyncStateStore | None = None,
        layout: ScanLayout = DEFAULT_LAYOUT,
    ) -> None:
        self.workspace_dir = workspace_dir
        self.agent_id = agent_id
        self._client = client
        self._mapper = mapper
        self._settings = settings
        self._store = store or SyncStateStore(workspace_dir, agent_id, settings.state_dir)
        self._layout = layout
        self._state: PersistedSyncState | None = None
        self._had_prior_state = False
        self.last_sync_at: datetime | None = None

    @property
    def store(self) -> SyncStateStore:
        return self._store

    @property
    def state(self) -> PersistedSyncState:
        """The cached sync state, loaded from disk on first access."""
        if self._state is None:
            loaded = self._store.load()
            self._had_prior_state = loaded is not None
            self._state = loaded or PersistedSyncState(agent_id=self.agent_id)
            self.last_sync_at = self._state.last_run_completed_at
        return self._state

    def preview(self, force: bool = False) -> SyncPlan:
        """Plan a run without touching the remote side or the state file."""
        state = self.state
        config_path = resolve_ov_config_path(self._settings.ov_config_path, self.workspace_dir)
        config_changed = (
            self._had_prior_state
            and fingerprint_config_file(config_path) != state.ov_config_fingerprint
        )
        recovering = state.last_run_status in (RunStatus.RUNNING, RunStatus.FAILED)
        rel_paths = scan_memory_files(self.workspace_dir, self._settings.extra_paths, self._layout)
        unreadable: list[str] = []
        candidates = build_candidates(
            self.workspace_dir, rel_paths, self._mapper, unreadable=unreadable
        )
        plan = compute_sync_plan(
            candidates, state.snapshot_map(), force or config_changed or recovering
        )
        plan.stale = [rel_path for rel_path in plan.stale if rel_path not in unreadable]
        return plan

    async def run(
        self,
        reason: str = "manual",
        force: bool = False,
        progress: ProgressSink | None = None,
    ) -> SyncReport:
        """Execute one sync run.

        Per-file and stale-removal failures are logged and mark the run failed without raising.
        Errors outside that loop (scanning, persisting) propagate after the final status is saved.
        """
        state = self.state
        report = SyncReport(reason=reason)
        report.recovered = state.last_run_status in (RunStatus.RUNNING, RunStatus.FAILED)
        previous_config_fingerprint = state.ov_config_fingerprint
        had_prior_state = self._had_prior_state
        snapshots = state.snapshot_map()

        state.last_run_status = RunStatus.RUNNING
        state.last_run_reason = reason
        state.last_run_started_at = _now()
        state.last_run_completed_at = None
        self._store.persist(state)
        self._had_prior_state = True

        try:
            config_path = resolve_ov_config_path(self._settings.ov_config_path, self.workspace_dir)
            config_fingerprint = fingerprint_config_file(config_path)
            report.config_changed = (
                had_prior_state and config_fingerprint != previous_config_fingerprint
            )
            report.force_full = force or report.config_changed or report.recovered

            emit = progress or (lambda _update: None)
            emit(SyncProgress(0, 0, "Scanning memory files..."))
            rel_paths = scan_memory_files(
                self.workspace_dir, self._settings.extra_paths, self._layout
            )
            unreadable: list[str] = []
            candidates = build_candidates(
                self.workspace_dir, rel_paths, self._mapper, unreadable=unreadable
            )
            plan = compute_sync_plan(candidates, snapshots, report.force_full)
            # An unreadable file still exists locally; keep its snapshot entry.
            plan.stale = [rel_path for rel_path in plan.stale if rel_path not in unreadable]
            report.failures.extend(unreadable)
            report.skipped = plan.skipped
            desired_uris = {candidate.desired_root_uri for candidate in candidates}

            logger.info(
                "Sync started: reason=%s files=%d upsert=%d stale=%d force_full=%s",
                reason,
                len(candidates),
                len(plan.to_upsert),
                len(plan.stale),
                report.force_full,
            )

            total = len(plan.to_upsert) + len(plan.stale)
            completed = 0
            for candidate in plan.to_upsert:
                await self._upsert(candidate, snapshots, report, desired_uris)
                completed += 1
                emit(SyncProgress(completed, total, f"Syncing {candidate.full_path.name}"))

            state.ov_config_path = str(config_path) if config_path is not None else None
            state.ov_config_fingerprint = config_fingerprint

            for rel_path in plan.stale:
                await self._remove_stale(rel_path, snapshots, report, desired_uris)
                completed += 1
                emit(SyncProgress(completed, total, f"Removing {rel_path}"))

            if self._settings.wait_for_processing:
                try:
                    await self._client.wait_processed(self._settings.wait_timeout_sec)
                except Exception as exc:
                    logger.error("Waiting for remote processing failed: %s", exc)
                    report.failures.append(f"wait_processed: {exc}")

            emit(SyncProgress(total, total, "Sync completed"))
        except BaseException:
            report.status = RunStatus.FAILED
            raise
        finally:
            if report.status is RunStatus.RUNNING:
                report.status = RunStatus.FAILED if report.failures else RunStatus.SUCCESS
            state.set_entries(snapshots)
            state.last_run_status = report.status
            state.last_run_completed_at = _now()
            self._store.persist(state)
            self.last_sync_at = state.last_run_completed_at

        logger.info(
            "Sync finished: status=%s uploaded=%d adopted=%d removed=%d skipped=%d failed=%d",
            report.status,
            len(report.uploaded),
            len(report.adopted),
            len(report.removed),
            report.skipped,
            len(report.failures),
        )
        return report

    async def _upsert(
        self,
        candidate: LocalSyncCandidate,
        snapshots: dict[str, SyncedFileSnapshot],
        report: SyncReport,
        desired_uris: set[str],
    ) -> None:
        rel_path = candidate.rel_path
        previous = snapshots.get(rel_path)
        new_snapshot = SyncedFileSnapshot(
            fingerprint=candidate.fingerprint, uri=candidate.desired_root_uri
        )

        if previous is None and not report.force_full and await self._matches_remote(candidate):
            logger.info("Adopted existing remote copy of %s at %s", rel_path, new_snapshot.uri)
            snapshots[rel_path] = new_snapshot
            report.adopted.append(rel_path)
            return

        old_uri = previous.uri if previous and previous.uri != new_snapshot.uri else None
        try:
            await self._sync_file(candidate)
        except Exception as exc:
            logger.error("Failed to sync %s -> %s: %s", rel_path, candidate.desired_root_uri, exc)
            report.failures.append(rel_path)
            return

        if old_uri is not None and not _owned_by_candidate(old_uri, desired_uris):
            try:
                await self._remove_quietly(old_uri)
            except Exception as exc:
                logger.warning(
                    "Could not remove previous location %s of %s: %s", old_uri, rel_path, exc
                )

        snapshots[rel_path] = new_snapshot
        report.uploaded.append(rel_path)

    async def _matches_remote(self, candidate: LocalSyncCandidate) -> bool:
        """Whether the remote content at the desired location already equals the local file."""
        if not self._settings.adopt_existing:
            return False
        content_uri = self._mapper.to_content_uri(candidate.rel_path)
        try:
            local_text = candidate.full_path.read_text(encoding="utf-8")
            remote_text = await self._client.read(content_uri)
        except Exception as exc:
            logger.debug("No adoptable remote copy at %s: %s", content_uri, exc)
            return False
        return remote_text == local_text

    async def _sync_file(self, candidate: LocalSyncCandidate) -> None:
        """Clear the desired location, import the file and move it into place if needed."""
        rel_path = candidate.rel_path
        desired = candidate.desired_root_uri
        logger.debug(
            "Sync file %s parent=%s target=%s", rel_path, candidate.target_parent_uri, desired
        )

        await self._ensure_parent(candidate.target_parent_uri)
        await self._remove_if_exists(desired)

        result = await self._client.add_resource(
            str(candidate.full_path),
            candidate.target_parent_uri,
            reason=f"OpenClaw memory sync: {rel_path}",
            wait=False,
        )
        if not result.root_uri:
            msg = f"Import result missing root_uri: {rel_path}"
            raise RemoteProtocolError(msg)

        landed = result.root_uri.rstrip("/")
        if landed != desired.rstrip("/"):
            logger.warning(
                "Import of %s landed at %s instead of %s; moving it", rel_path, landed, desired
            )
            await self._remove_quietly(desired)
            await self._client.move(landed, desired)

    async def _ensure_parent(self, uri: str) -> None:
        if await self._client.exists(uri):
            logger.debug("mkdir skipped (already exists): %s", uri)
            return
        try:
            await self._client.mkdir(uri)
        except Exception as exc:
            if is_already_exists(exc):
                logger.debug("mkdir skipped (already exists): %s", uri)
                return
            raise

    async def _remove_if_exists(self, uri: str) -> None:
        if not await self._client.exists(uri):
            logger.debug("remove skipped (missing path): %s", uri)
            return
        await self._remove_quietly(uri)

    async def _remove_quietly(self, uri: str) -> None:
        """Delete ``uri`` recursively; a missing path counts as removed."""
        try:
            await self._client.remove(uri, recursive=True)
        except Exception as exc:
            if is_missing_path(exc):
                logger.debug("remove skipped (missing path): %s", uri)
                return
            raise

    async def _remove_stale(
        self,
        rel_path: str,
        snapshots: dict[str, SyncedFileSnapshot],
        report: SyncReport,
        desired_uris: set[str],
    ) -> None:
        uri = snapshots[rel_path].uri
        if _owned_by_candidate(uri, desired_uris):
            logger.info("Keeping %s of stale %s: a current file maps there", uri, rel_path)
            del snapshots[rel_path]
            report.removed.append(rel_path)
            return
        try:
            await self._remove_quietly(uri)
        except Exception as exc:
            logger.error("Failed to remove stale %s at %s: %s", rel_path, uri, exc)
            report.failures.append(rel_path)
            return
        del snapshots[rel_path]
        report.removed.append(rel_path)
