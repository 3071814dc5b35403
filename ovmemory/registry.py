"""Manager registry: one memory manager per (workspace, agent), plus boot and interval sync."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from ovmemory.services.memory_manager import MemoryManager, build_client

if TYPE_CHECKING:
    from pathlib import Path

    from ovmemory.config import Settings
    from ovmemory.remote.client import OpenVikingClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[["Settings"], "OpenVikingClient"]
ManagerKey = tuple[str, str]


class ManagerRegistry:
    """Owns every memory manager created for one plugin activation.

    Tool handlers receive managers from here instead of reaching for module-level state.
    """

    def __init__(self, settings: Settings, client_factory: ClientFactory | None = None) -> None:
        self.settings = settings
        self._client_factory = client_factory or build_client
        self._managers: dict[ManagerKey, MemoryManager] = {}
        self._boot_tasks: dict[ManagerKey, asyncio.Task[None]] = {}
        self._boot_done: set[ManagerKey] = set()
        self._interval_task: asyncio.Task[None] | None = None

    @staticmethod
    def _key(workspace_dir: Path, agent_id: str | None) -> ManagerKey:
        return (str(workspace_dir.resolve()), (agent_id or "main").strip() or "main")

    async def get_manager(self, workspace_dir: Path, agent_id: str | None = None) -> MemoryManager:
        """Return the manager for a workspace and agent, creating it on first use.

        A new manager gets a background boot sync when ``sync.on_boot`` is enabled.
        """
        key = self._key(workspace_dir, agent_id)
        manager = self._managers.get(key)
        if manager is None:
            manager = MemoryManager(
                self.settings,
                workspace_dir,
                key[1],
                client=self._client_factory(self.settings),
            )
            self._managers[key] = manager
            logger.info("Created memory manager for %s (agent=%s)", key[0], key[1])
        if self.settings.sync.on_boot:
            self._schedule_boot_sync(key, manager)
        return manager

    def managers(self) -> list[MemoryManager]:
        return list(self._managers.values())

    def _schedule_boot_sync(self, key: ManagerKey, manager: MemoryManager) -> None:
        if key in self._boot_done or key in self._boot_tasks:
            return
        self._boot_tasks[key] = asyncio.create_task(self._boot_sync(key, manager))

    async def _boot_sync(self, key: ManagerKey, manager: MemoryManager) -> None:
        try:
            await manager.sync(reason="boot")
            self._boot_done.add(key)
        except Exception:
            logger.exception("Boot sync failed for %s (agent=%s)", key[0], key[1])
        finally:
            self._boot_tasks.pop(key, None)

    async def wait_for_boot_syncs(self) -> None:
        """Wait until every scheduled boot sync has finished."""
        while self._boot_tasks:
            await asyncio.gather(*self._boot_tasks.values(), return_exceptions=True)

    # ── Interval sync ────────────────────────────────

    def start(self) -> None:
        """Start the periodic sync task when an interval is configured."""
        seconds = self.settings.sync.interval_seconds
        if seconds <= 0 or self._interval_task is not None:
            return
        self._interval_task = asyncio.create_task(self._interval_loop(seconds))
        logger.info("Interval sync every %d seconds", seconds)

    async def _interval_loop(self, seconds: int) -> None:
        while True:
            await asyncio.sleep(seconds)
            await self.sync_all(reason="interval")

    async def sync_all(self, reason: str = "interval") -> None:
        """Sync every open manager in turn. Failures are logged, not raised."""
        for (workspace, agent_id), manager in list(self._managers.items()):
            if manager.closed:
                continue
            try:
                await manager.sync(reason=reason)
            except Exception:
                logger.exception("%s sync failed for %s (agent=%s)", reason, workspace, agent_id)

    # ── Shutdown ─────────────────────────────────────

    async def close(self) -> None:
        """Stop the timer, let boot syncs finish and close every manager."""
        if self._interval_task is not None:
            self._interval_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._interval_task
            self._interval_task = None

        await self.wait_for_boot_syncs()

        for manager in self._managers.values():
            await manager.close()
        self._managers.clear()
        self._boot_done.clear()
