"""Memory manager: search, read, sync and status for one (workspace, agent) pair."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx

from ovmemory.exceptions import ManagerClosedError
from ovmemory.filesystem.paths import safe_workspace_path
from ovmemory.remote.client import OpenVikingClient
from ovmemory.remote.errors import OpenVikingHttpError
from ovmemory.services.mapper import PathMapper
from ovmemory.services.sync_service import SyncEngine

if TYPE_CHECKING:
    from pathlib import Path

    from ovmemory.config import Settings
    from ovmemory.remote.base import MatchedContext
    from ovmemory.services.sync_service import ProgressSink, SyncReport

logger = logging.getLogger(__name__)

PROVIDER_NAME = "openviking"
SNIPPET_MAX_CHARS = 1200
SESSION_URI_MARKER = "viking://session/"

_REMOTE_ERRORS = (OpenVikingHttpError, httpx.HTTPError)


@dataclass
class MemorySearchResult:
    """A search hit presented in local terms."""

    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str
    citation: str


@dataclass
class MemoryReadResult:
    path: str
    text: str


@dataclass
class ProbeResult:
    ok: bool
    error: str | None = None


@dataclass
class MemoryProviderStatus:
    """Configuration echo plus the last sync outcome."""

    provider: str
    mode: str
    workspace_dir: str
    base_url: str
    agent_id: str
    root_prefix: str
    tiered_loading: bool
    last_sync_at: datetime | None = None
    last_run_status: str | None = None
    last_run_reason: str | None = None
    synced_files: int = 0
    custom: dict[str, Any] = field(default_factory=dict)


def build_client(settings: Settings) -> OpenVikingClient:
    """Create an HTTP client from resolved settings."""
    return OpenVikingClient(
        settings.base_url,
        api_key=settings.api_key,
        timeout=settings.request_timeout,
    )


def slice_lines(content: str, from_line: int | None = None, lines: int | None = None) -> str:
    """Return ``lines`` lines from 1-based ``from_line``; the whole text when both are None."""
    if from_line is None and lines is None:
        return content
    all_lines = content.split("\n")
    start = max(0, (from_line or 1) - 1)
    end = len(all_lines) if lines is None else max(start, min(len(all_lines), start + lines))
    return "\n".join(all_lines[start:end])


class MemoryManager:
    """Serves memory search and reads from the remote store and keeps it in sync.

    Only one sync run is in flight at a time; concurrent ``sync`` calls join the running one.
    """

    def __init__(
        self,
        settings: Settings,
        workspace_dir: Path,
        agent_id: str = "main",
        client: OpenVikingClient | None = None,
    ) -> None:
        self.settings = settings
        self.workspace_dir = workspace_dir
        self.agent_id = agent_id
        self._client = client or build_client(settings)
        self.mapper = PathMapper(settings.uri_base, agent_id, settings.mappings)
        self.engine = SyncEngine(
            workspace_dir,
            agent_id,
            self._client,
            self.mapper,
            settings.sync,
        )
        self._sync_task: asyncio.Task[SyncReport] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            msg = "OpenViking memory manager is closed"
            raise ManagerClosedError(msg)

    # ── Search ───────────────────────────────────────

    async def search(
        self,
        query: str,
        *,
        max_results: int | None = None,
        min_score: float | None = None,
        session_key: str | None = None,
    ) -> list[MemorySearchResult]:
        """Semantic search over synced memory, best hits first.

        Raises ValueError for an empty query.
        """
        self._ensure_open()
        cleaned = query.strip()
        if not cleaned:
            msg = "query required"
            raise ValueError(msg)

        search_settings = self.settings.search
        limit = max(1, max_results or search_settings.default_limit)
        threshold = min_score if min_score is not None else search_settings.score_threshold
        target_uri = search_settings.target_uri or self.mapper.root_prefix

        logger.debug(
            "Search mode=%s query=%r target=%s limit=%d",
            search_settings.mode,
            cleaned,
            target_uri,
            limit,
        )
        if search_settings.mode == "search":
            result = await self._client.search(
                cleaned,
                target_uri=target_uri,
                limit=limit,
                score_threshold=threshold,
                session_id=session_key,
            )
        else:
            result = await self._client.find(
                cleaned, target_uri=target_uri, limit=limit, score_threshold=threshold
            )

        hits = [self._to_search_result(match) for match in result.all_matches()]
        hits = [hit for hit in hits if hit.score >= threshold]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    def _to_search_result(self, match: MatchedContext) -> MemorySearchResult:
        path_hint = self.mapper.from_root_uri(match.uri)
        snippet = (match.abstract.strip() or (match.match_reason or "").strip() or match.uri)[
            :SNIPPET_MAX_CHARS
        ]
        source = "sessions" if SESSION_URI_MARKER in match.uri else "memory"
        return MemorySearchResult(
            path=path_hint,
            start_line=1,
            end_line=1,
            score=match.score,
            snippet=snippet,
            source=source,
            citation=f"{path_hint}#L1",
        )

    # ── Read ─────────────────────────────────────────

    async def read_file(
        self,
        rel_path: str,
        from_line: int | None = None,
        lines: int | None = None,
    ) -> MemoryReadResult:
        """Read a memory file, preferring the remote copy.

        Line-sliced reads (and all reads when tiered loading is off) fetch the full content;
        otherwise the overview tier is tried first. Remote failures fall back to the local file.
        """
        self._ensure_open()
        safe_rel, full_path = safe_workspace_path(self.workspace_dir, rel_path)
        root_uri = self.mapper.to_root_uri(safe_rel)
        content_uri = self.mapper.to_content_uri(safe_rel)
        logger.debug("Read %s root=%s content=%s", safe_rel, root_uri, content_uri)

        exact_lines = from_line is not None or lines is not None
        try:
            if exact_lines or not self.settings.tiered_loading:
                text = await self._client.read(content_uri)
            else:
                text = await self._read_tiered(root_uri, content_uri)
        except _REMOTE_ERRORS as exc:
            logger.warning("Remote read failed for %s, using local file: %s", safe_rel, exc)
            text = full_path.read_text(encoding="utf-8")

        return MemoryReadResult(path=safe_rel, text=slice_lines(text, from_line, lines))

    async def _read_tiered(self, root_uri: str, content_uri: str) -> str:
        try:
            return await self._client.overview(root_uri)
        except _REMOTE_ERRORS as exc:
            logger.debug("Overview unavailable for %s: %s", root_uri, exc)
        return await self._client.read(content_uri)

    # ── Sync ─────────────────────────────────────────

    async def sync(
        self,
        reason: str = "manual",
        force: bool = False,
        progress: ProgressSink | None = None,
    ) -> SyncReport:
        """Run a sync, or join the one already in flight.

        A caller that joins gets the in-flight run's report; its own ``force`` and ``progress``
        arguments are ignored.
        """
        self._ensure_open()
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(
                self.engine.run(reason=reason, force=force, progress=progress)
            )
        else:
            logger.debug("Sync already in flight, joining (reason=%s)", reason)
        return await asyncio.shield(self._sync_task)

    @property
    def sync_in_flight(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    # ── Status & probes ──────────────────────────────

    def status(self) -> MemoryProviderStatus:
        state = self.engine.state
        return MemoryProviderStatus(
            provider=PROVIDER_NAME,
            mode=self.settings.search.mode,
            workspace_dir=str(self.workspace_dir),
            base_url=self.settings.base_url,
            agent_id=self.agent_id,
            root_prefix=self.mapper.root_prefix,
            tiered_loading=self.settings.tiered_loading,
            last_sync_at=self.engine.last_sync_at,
            last_run_status=state.last_run_status,
            last_run_reason=state.last_run_reason,
            synced_files=len(state.entries),
            custom={"state_file": str(self.engine.store.path)},
        )

    async def probe_embedding_availability(self) -> ProbeResult:
        """Healthy and initialized remote service."""
        try:
            health = await self._client.health()
            if health != "ok":
                return ProbeResult(ok=False, error=f"health={health}")
            system = await self._client.system_status()
        except _REMOTE_ERRORS as exc:
            return ProbeResult(ok=False, error=str(exc))
        if not system.initialized:
            return ProbeResult(ok=False, error="OpenViking is not initialized")
        return ProbeResult(ok=True)

    async def probe_vector_availability(self) -> bool:
        try:
            system = await self._client.system_status()
        except _REMOTE_ERRORS as exc:
            logger.debug("Vector probe failed: %s", exc)
            return False
        return system.initialized

    # ── Lifecycle ────────────────────────────────────

    async def close(self) -> None:
        """Wait for an in-flight sync, then release the HTTP client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._sync_task is not None and not self._sync_task.done():
            try:
                await self._sync_task
            except Exception as exc:
                logger.warning("Sync in flight during close failed: %s", exc)
        await self._client.aclose()
        logger.info("OpenViking memory manager closed (agent=%s)", self.agent_id)
