"""Shared test fixtures for OpenViking memory sync."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from ovmemory.config import SearchSettings, Settings, SyncSettings
from ovmemory.remote.base import FindResult, ImportResult, SystemStatus
from ovmemory.remote.errors import OpenVikingHttpError

if TYPE_CHECKING:
    from collections.abc import Callable

TEST_BASE_URL = "http://ov.test:1933"


class FakeRemote:
    """In-memory remote store that records every call.

    Nodes map URIs to content (``None`` for directories). Errors mimic the real service:
    404 ``NOT_FOUND`` for missing paths and 409 ``ALREADY_EXISTS`` for duplicate directories.
    """

    def __init__(self) -> None:
        self.nodes: dict[str, str | None] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.landing: dict[str, str] = {}
        self.fail_imports: set[str] = set()
        self.overviews: dict[str, str] = {}
        self.find_result = FindResult()
        self.health_status = "ok"
        self.initialized = True
        self.import_gate: asyncio.Event | None = None
        self.closed = False

    def calls_of(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def _present(self, uri: str) -> bool:
        return uri in self.nodes or any(key.startswith(f"{uri}/") for key in self.nodes)

    @staticmethod
    def _missing(uri: str) -> OpenVikingHttpError:
        return OpenVikingHttpError(f"path not found: {uri}", status_code=404, code="NOT_FOUND")

    async def exists(self, uri: str) -> bool:
        self.calls.append(("exists", uri))
        return self._present(uri)

    async def mkdir(self, uri: str) -> None:
        self.calls.append(("mkdir", uri))
        if self._present(uri):
            msg = f"directory exists: {uri}"
            raise OpenVikingHttpError(msg, status_code=409, code="ALREADY_EXISTS")
        self.nodes[uri] = None

    async def remove(self, uri: str, recursive: bool = False) -> None:
        self.calls.append(("remove", uri))
        if not self._present(uri):
            raise self._missing(uri)
        for key in [k for k in self.nodes if k == uri or k.startswith(f"{uri}/")]:
            del self.nodes[key]

    async def add_resource(
        self,
        path: str,
        target: str,
        reason: str = "",
        wait: bool = False,
    ) -> ImportResult:
        self.calls.append(("add_resource", path, target))
        source = Path(path)
        if source.name in self.fail_imports:
            msg = f"import failed: {source.name}"
            raise OpenVikingHttpError(msg, status_code=500, code="INTERNAL")
        if self.import_gate is not None:
            await self.import_gate.wait()
        landed = self.landing.get(source.name, f"{target}/{source.stem}")
        self.nodes[landed] = None
        self.nodes[f"{landed}/{source.stem}.md"] = source.read_text(encoding="utf-8")
        return ImportResult(root_uri=landed, status="success", source_path=path)

    async def move(self, from_uri: str, to_uri: str) -> None:
        self.calls.append(("move", from_uri, to_uri))
        if not self._present(from_uri):
            raise self._missing(from_uri)
        for key in [k for k in self.nodes if k == from_uri or k.startswith(f"{from_uri}/")]:
            self.nodes[to_uri + key[len(from_uri) :]] = self.nodes.pop(key)

    async def read(self, uri: str) -> str:
        self.calls.append(("read", uri))
        content = self.nodes.get(uri)
        if content is None:
            raise self._missing(uri)
        return content

    async def overview(self, uri: str) -> str:
        self.calls.append(("overview", uri))
        if uri not in self.overviews:
            raise self._missing(uri)
        return self.overviews[uri]

    async def wait_processed(self, timeout: float | None = None) -> None:
        self.calls.append(("wait_processed", timeout))

    async def find(self, query: str, **kwargs: Any) -> FindResult:
        self.calls.append(("find", query, kwargs))
        return self.find_result

    async def search(self, query: str, **kwargs: Any) -> FindResult:
        self.calls.append(("search", query, kwargs))
        return self.find_result

    async def health(self) -> str:
        self.calls.append(("health",))
        return self.health_status

    async def system_status(self) -> SystemStatus:
        self.calls.append(("system_status",))
        return SystemStatus(initialized=self.initialized)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _isolate_environment(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Keep the real home directory and OPENVIKING_* variables out of tests."""
    monkeypatch.setenv("HOME", str(tmp_path_factory.mktemp("home")))
    for key in list(os.environ):
        if key.startswith("OPENVIKING_"):
            monkeypatch.delenv(key)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    workspace_dir = tmp_path / "workspace"
    workspace_dir.mkdir()
    return workspace_dir


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for settings that ignore ``.env`` files."""

    def _make(
        sync: dict[str, Any] | None = None,
        search: dict[str, Any] | None = None,
        **overrides: Any,
    ) -> Settings:
        return Settings(
            _env_file=None,
            base_url=overrides.pop("base_url", TEST_BASE_URL),
            sync=SyncSettings(**(sync or {})),
            search=SearchSettings(**(search or {})),
            **overrides,
        )

    return _make


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()
