"""OpenViking HTTP client.

All API responses except ``/health`` are wrapped in an envelope::

    {"status": "ok", "result": ...}
    {"status": "error", "error": {"code": "...", "message": "...", "details": {...}}}

Error envelopes and non-2xx responses are raised as ``OpenVikingHttpError``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from ovmemory.remote.base import FindResult, ImportResult, SystemStatus
from ovmemory.remote.errors import OpenVikingHttpError, is_missing_path

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

__all__ = ["OpenVikingClient", "OpenVikingHttpError"]

DEFAULT_TIMEOUT = 30.0
_WAIT_TIMEOUT_MARGIN = 10.0


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _build_http_error(
    method: str, path: str, response: httpx.Response, body: Any
) -> OpenVikingHttpError:
    code: str | None = None
    message = ""
    details: dict[str, Any] | None = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        code = str(error["code"]) if error.get("code") is not None else None
        message = str(error.get("message") or "")
        raw_details = error.get("details")
        details = raw_details if isinstance(raw_details, dict) else None
    if not message:
        message = response.text[:500] or response.reason_phrase
    return OpenVikingHttpError(
        f"OpenViking {method} {path} failed ({response.status_code}): {message}",
        status_code=response.status_code,
        code=code,
        details=details,
    )


class OpenVikingClient:
    """Async client for the OpenViking HTTP API.

    Args:
        base_url: Service root, e.g. ``http://127.0.0.1:1933``.
        api_key: Sent as ``X-API-Key`` when set.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    async def __aenter__(self) -> OpenVikingClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and unwrap the ``result`` field of the response envelope."""
        logger.debug("OpenViking %s %s params=%s", method, path, params)
        response = await self._http.request(
            method,
            path,
            params=params,
            json=json,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        body = _decode_body(response)
        if response.is_error or (isinstance(body, dict) and body.get("status") == "error"):
            raise _build_http_error(method, path, response, body)
        if isinstance(body, dict) and "result" in body:
            return body["result"]
        return body

    # ── Retrieval ────────────────────────────────────

    async def find(
        self,
        query: str,
        *,
        target_uri: str | None = None,
        limit: int | None = None,
        score_threshold: float | None = None,
    ) -> FindResult:
        """Stateless semantic retrieval."""
        payload: dict[str, Any] = {"query": query}
        if target_uri:
            payload["target_uri"] = target_uri
        if limit is not None:
            payload["limit"] = limit
        if score_threshold is not None:
            payload["score_threshold"] = score_threshold
        result = await self._request("POST", "/api/v1/search/find", json=payload)
        return FindResult.from_payload(result or {})

    async def search(
        self,
        query: str,
        *,
        target_uri: str | None = None,
        limit: int | None = None,
        score_threshold: float | None = None,
        session_id: str | None = None,
    ) -> FindResult:
        """Session-aware retrieval."""
        payload: dict[str, Any] = {"query": query}
        if target_uri:
            payload["target_uri"] = target_uri
        if limit is not None:
            payload["limit"] = limit
        if score_threshold is not None:
            payload["score_threshold"] = score_threshold
        if session_id:
            payload["session_id"] = session_id
        result = await self._request("POST", "/api/v1/search/search", json=payload)
        return FindResult.from_payload(result or {})

    async def read(self, uri: str) -> str:
        """Read the full content of a leaf resource."""
        result = await self._request("GET", "/api/v1/content/read", params={"uri": uri})
        return self._as_text(result)

    async def overview(self, uri: str) -> str:
        """Read the overview (summary tier) of a resource directory."""
        result = await self._request("GET", "/api/v1/content/overview", params={"uri": uri})
        return self._as_text(result)

    @staticmethod
    def _as_text(result: Any) -> str:
        if isinstance(result, str):
            return result
        if isinstance(result, dict):
            return str(result.get("content") or "")
        return ""

    # ── Filesystem ───────────────────────────────────

    async def stat(self, uri: str) -> dict[str, Any]:
        result = await self._request("GET", "/api/v1/fs/stat", params={"uri": uri})
        return result if isinstance(result, dict) else {}

    async def exists(self, uri: str) -> bool:
        """Return True if ``uri`` exists. Missing paths return False; other errors propagate."""
        try:
            await self.stat(uri)
        except (OpenVikingHttpError, httpx.HTTPError) as exc:
            if is_missing_path(exc):
                return False
            raise
        return True

    async def mkdir(self, uri: str) -> None:
        await self._request("POST", "/api/v1/fs/mkdir", json={"uri": uri})

    async def remove(self, uri: str, recursive: bool = False) -> None:
        await self._request(
            "DELETE",
            "/api/v1/fs",
            params={"uri": uri, "recursive": "true" if recursive else "false"},
        )

    async def move(self, from_uri: str, to_uri: str) -> None:
        await self._request("POST", "/api/v1/fs/mv", json={"from_uri": from_uri, "to_uri": to_uri})

    # ── Resources ────────────────────────────────────

    async def add_resource(
        self,
        path: str,
        target: str,
        reason: str = "",
        wait: bool = False,
    ) -> ImportResult:
        """Import a local file under ``target`` and report where it landed."""
        payload: dict[str, Any] = {"path": path, "target": target, "wait": wait}
        if reason:
            payload["reason"] = reason
        result = await self._request("POST", "/api/v1/resources", json=payload)
        data = result if isinstance(result, dict) else {}
        errors = data.get("errors") or []
        return ImportResult(
            root_uri=str(data.get("root_uri") or ""),
            status=str(data.get("status") or ""),
            source_path=str(data.get("source_path") or path),
            errors=[str(error) for error in errors],
        )

    # ── System ───────────────────────────────────────

    async def wait_processed(self, timeout: float | None = None) -> None:
        """Block until the remote processing queues are drained."""
        payload: dict[str, Any] = {}
        http_timeout: float | None = None
        if timeout is not None:
            payload["timeout"] = timeout
            http_timeout = timeout + _WAIT_TIMEOUT_MARGIN
        await self._request("POST", "/api/v1/system/wait", json=payload, timeout=http_timeout)

    async def health(self) -> str:
        """Return the raw health status string (``"ok"`` when healthy)."""
        response = await self._http.get("/health")
        body = _decode_body(response)
        if response.is_error:
            raise _build_http_error("GET", "/health", response, body)
        if isinstance(body, dict):
            return str(body.get("status", "unknown"))
        return "unknown"

    async def system_status(self) -> SystemStatus:
        result = await self._request("GET", "/api/v1/system/status")
        data = result if isinstance(result, dict) else {}
        return SystemStatus(
            initialized=bool(data.get("initialized", False)),
            user=str(data.get("user") or ""),
        )
