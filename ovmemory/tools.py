"""Host-facing tool handlers: ``memory_search`` and ``memory_get``.

Handlers validate raw tool arguments, call the memory manager and always return a JSON-ready
dict. Failures are reported in the payload (``disabled`` + ``error``) instead of being raised,
so a broken remote service never crashes the host agent.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ovmemory.exceptions import OVMemoryError
from ovmemory.remote.errors import OpenVikingHttpError
from ovmemory.services.memory_manager import PROVIDER_NAME

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ovmemory.services.memory_manager import MemoryManager

logger = logging.getLogger(__name__)

_HANDLED_ERRORS = (ValueError, OSError, OVMemoryError, OpenVikingHttpError, httpx.HTTPError)


class MemorySearchParams(BaseModel):
    """Arguments of the ``memory_search`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(max_length=4000)
    max_results: int | None = Field(default=None, ge=1, le=100, alias="maxResults")
    min_score: float | None = Field(default=None, ge=0.0, le=1.0, alias="minScore")
    session_key: str | None = Field(default=None, alias="sessionKey")

    @field_validator("query", mode="before")
    @classmethod
    def strip_query(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class MemoryGetParams(BaseModel):
    """Arguments of the ``memory_get`` tool."""

    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(min_length=1, max_length=1000)
    from_line: int | None = Field(default=None, ge=1, alias="from")
    lines: int | None = Field(default=None, ge=1)


def _disabled(error: str, **extra: Any) -> dict[str, Any]:
    return {**extra, "disabled": True, "error": error}


async def memory_search(manager: MemoryManager, raw_params: Mapping[str, Any]) -> dict[str, Any]:
    """Search synced memory and return ranked snippets with local path hints."""
    try:
        params = MemorySearchParams.model_validate(raw_params)
    except ValidationError as exc:
        return _disabled(f"invalid arguments: {exc}", results=[])

    try:
        results = await manager.search(
            params.query,
            max_results=params.max_results,
            min_score=params.min_score,
            session_key=params.session_key,
        )
    except _HANDLED_ERRORS as exc:
        logger.warning("memory_search failed: %s", exc)
        return _disabled(str(exc), results=[])

    return {
        "results": [asdict(result) for result in results],
        "provider": PROVIDER_NAME,
        "mode": manager.settings.search.mode,
    }


async def memory_get(manager: MemoryManager, raw_params: Mapping[str, Any]) -> dict[str, Any]:
    """Read a memory file, optionally a slice of its lines."""
    try:
        params = MemoryGetParams.model_validate(raw_params)
    except ValidationError as exc:
        return _disabled(f"invalid arguments: {exc}", path=str(raw_params.get("path", "")), text="")

    try:
        result = await manager.read_file(params.path, params.from_line, params.lines)
    except _HANDLED_ERRORS as exc:
        logger.warning("memory_get failed for %s: %s", params.path, exc)
        return _disabled(str(exc), path=params.path, text="")

    return {"path": result.path, "text": result.text}
