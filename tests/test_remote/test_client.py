"""Tests for the OpenViking HTTP client."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from ovmemory.remote.base import MutationClient
from ovmemory.remote.client import OpenVikingClient, OpenVikingHttpError

if TYPE_CHECKING:
    from collections.abc import Callable

BASE_URL = "http://ov.test:1933"


def _ok(result: Any) -> httpx.Response:
    return httpx.Response(200, json={"status": "ok", "result": result})


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(
        status, json={"status": "error", "error": {"code": code, "message": message}}
    )


class _Recorder:
    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict[str, Any]:
        body: dict[str, Any] = json.loads(self.last.content)
        return body


def _client(
    handler: Callable[[httpx.Request], httpx.Response], api_key: str | None = None
) -> tuple[OpenVikingClient, _Recorder]:
    recorder = _Recorder(handler)
    client = OpenVikingClient(BASE_URL, api_key=api_key, transport=httpx.MockTransport(recorder))
    return client, recorder


class TestEnvelope:
    async def test_result_is_unwrapped(self) -> None:
        client, recorder = _client(lambda _: _ok({"uri": "viking://a", "type": "dir"}))
        async with client:
            assert await client.stat("viking://a") == {"uri": "viking://a", "type": "dir"}
        assert recorder.last.url.path == "/api/v1/fs/stat"
        assert recorder.last.url.params["uri"] == "viking://a"

    async def test_api_key_header(self) -> None:
        client, recorder = _client(lambda _: _ok({}), api_key="secret")
        async with client:
            await client.stat("viking://a")
        assert recorder.last.headers["X-API-Key"] == "secret"

    async def test_no_api_key_header_by_default(self) -> None:
        client, recorder = _client(lambda _: _ok({}))
        async with client:
            await client.stat("viking://a")
        assert "X-API-Key" not in recorder.last.headers

    async def test_error_envelope_raises(self) -> None:
        client, _ = _client(lambda _: _error(404, "NOT_FOUND", "path not found"))
        async with client:
            with pytest.raises(OpenVikingHttpError) as exc_info:
                await client.stat("viking://missing")
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "NOT_FOUND"
        assert "path not found" in str(exc_info.value)

    async def test_error_status_in_ok_http_response(self) -> None:
        client, _ = _client(lambda _: _error(200, "INTERNAL", "boom"))
        async with client:
            with pytest.raises(OpenVikingHttpError) as exc_info:
                await client.mkdir("viking://a")
        assert exc_info.value.code == "INTERNAL"

    async def test_non_json_error_body(self) -> None:
        client, _ = _client(lambda _: httpx.Response(502, text="Bad Gateway"))
        async with client:
            with pytest.raises(OpenVikingHttpError) as exc_info:
                await client.read("viking://a")
        assert exc_info.value.status_code == 502
        assert exc_info.value.code is None
        assert "Bad Gateway" in exc_info.value.message


class TestFilesystem:
    async def test_exists_true(self) -> None:
        client, _ = _client(lambda _: _ok({"uri": "viking://a"}))
        async with client:
            assert await client.exists("viking://a") is True

    async def test_exists_false_on_missing(self) -> None:
        client, _ = _client(lambda _: _error(404, "NOT_FOUND", "no such file or directory"))
        async with client:
            assert await client.exists("viking://a") is False

    async def test_exists_raises_on_other_errors(self) -> None:
        client, _ = _client(lambda _: _error(401, "UNAUTHENTICATED", "bad api key"))
        async with client:
            with pytest.raises(OpenVikingHttpError):
                await client.exists("viking://a")

    async def test_mkdir(self) -> None:
        client, recorder = _client(lambda _: _ok(None))
        async with client:
            await client.mkdir("viking://a/b")
        assert recorder.last.method == "POST"
        assert recorder.last.url.path == "/api/v1/fs/mkdir"
        assert recorder.last_json() == {"uri": "viking://a/b"}

    async def test_remove(self) -> None:
        client, recorder = _client(lambda _: _ok(None))
        async with client:
            await client.remove("viking://a", recursive=True)
        assert recorder.last.method == "DELETE"
        assert recorder.last.url.path == "/api/v1/fs"
        assert recorder.last.url.params["uri"] == "viking://a"
        assert recorder.last.url.params["recursive"] == "true"

    async def test_move(self) -> None:
        client, recorder = _client(lambda _: _ok(None))
        async with client:
            await client.move("viking://a", "viking://b")
        assert recorder.last.url.path == "/api/v1/fs/mv"
        assert recorder.last_json() == {"from_uri": "viking://a", "to_uri": "viking://b"}


class TestResources:
    async def test_add_resource(self) -> None:
        client, recorder = _client(
            lambda _: _ok({"status": "success", "root_uri": "viking://r/MEMORY", "errors": []})
        )
        async with client:
            result = await client.add_resource(
                "/ws/MEMORY.md", "viking://r", reason="memory sync", wait=False
            )
        assert result.root_uri == "viking://r/MEMORY"
        assert result.status == "success"
        assert recorder.last.url.path == "/api/v1/resources"
        assert recorder.last_json() == {
            "path": "/ws/MEMORY.md",
            "target": "viking://r",
            "reason": "memory sync",
            "wait": False,
        }

    async def test_add_resource_without_root_uri(self) -> None:
        client, _ = _client(lambda _: _ok({"status": "error", "errors": ["bad file"]}))
        async with client:
            result = await client.add_resource("/ws/a.md", "viking://r")
        assert result.root_uri == ""
        assert result.errors == ["bad file"]


class TestRetrieval:
    async def test_find(self) -> None:
        payload = {
            "memories": [{"uri": "viking://m/1", "score": 0.9, "abstract": "one"}],
            "resources": [{"uri": "viking://r/1", "score": "0.5"}],
            "skills": [],
            "total": 2,
        }
        client, recorder = _client(lambda _: _ok(payload))
        async with client:
            result = await client.find("hello", target_uri="viking://r", limit=3)
        assert [m.uri for m in result.all_matches()] == ["viking://m/1", "viking://r/1"]
        assert result.resources[0].score == 0.5
        assert recorder.last.url.path == "/api/v1/search/find"
        assert recorder.last_json() == {"query": "hello", "target_uri": "viking://r", "limit": 3}

    async def test_search_sends_session(self) -> None:
        client, recorder = _client(lambda _: _ok({}))
        async with client:
            result = await client.search("hello", session_id="s-1", score_threshold=0.2)
        assert result.total == 0
        assert recorder.last.url.path == "/api/v1/search/search"
        assert recorder.last_json() == {
            "query": "hello",
            "score_threshold": 0.2,
            "session_id": "s-1",
        }

    async def test_read_and_overview(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/content/read":
                return _ok("full text")
            return _ok({"content": "summary"})

        client, _ = _client(handler)
        async with client:
            assert await client.read("viking://a/a.md") == "full text"
            assert await client.overview("viking://a") == "summary"


class TestSystem:
    async def test_health_is_not_wrapped(self) -> None:
        client, recorder = _client(lambda _: httpx.Response(200, json={"status": "ok"}))
        async with client:
            assert await client.health() == "ok"
        assert recorder.last.url.path == "/health"

    async def test_system_status(self) -> None:
        client, _ = _client(lambda _: _ok({"initialized": True, "user": "default"}))
        async with client:
            status = await client.system_status()
        assert status.initialized is True
        assert status.user == "default"

    async def test_wait_processed_timeout(self) -> None:
        client, recorder = _client(lambda _: _ok({}))
        async with client:
            await client.wait_processed(timeout=5)
        assert recorder.last.url.path == "/api/v1/system/wait"
        assert recorder.last_json() == {"timeout": 5}


def test_client_satisfies_mutation_contract() -> None:
    client = OpenVikingClient(BASE_URL, transport=httpx.MockTransport(lambda _: _ok({})))
    assert isinstance(client, MutationClient)
