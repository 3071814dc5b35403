"""Remote contract and data classes shared by the OpenViking client and the sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class MatchedContext:
    """A single retrieval hit returned by find/search."""

    uri: str
    context_type: str = "resource"
    is_leaf: bool = False
    abstract: str = ""
    score: float = 0.0
    category: str | None = None
    match_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> MatchedContext:
        raw_score = payload.get("score", 0.0)
        try:
            score = float(raw_score)
        except (TypeError, ValueError):
            score = 0.0
        return cls(
            uri=str(payload.get("uri", "")),
            context_type=str(payload.get("context_type", "resource")),
            is_leaf=bool(payload.get("is_leaf", False)),
            abstract=str(payload.get("abstract") or ""),
            score=score,
            category=payload.get("category"),
            match_reason=payload.get("match_reason"),
        )


@dataclass
class FindResult:
    """Grouped retrieval hits."""

    memories: list[MatchedContext] = field(default_factory=list)
    resources: list[MatchedContext] = field(default_factory=list)
    skills: list[MatchedContext] = field(default_factory=list)
    total: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FindResult:
        def _rows(key: str) -> list[MatchedContext]:
            return [MatchedContext.from_payload(row) for row in payload.get(key) or []]

        return cls(
            memories=_rows("memories"),
            resources=_rows("resources"),
            skills=_rows("skills"),
            total=int(payload.get("total") or 0),
        )

    def all_matches(self) -> list[MatchedContext]:
        """Return memories, resources and skills as one list."""
        return [*self.memories, *self.resources, *self.skills]


@dataclass
class ImportResult:
    """Outcome of an import: where the resource actually landed."""

    root_uri: str
    status: str = ""
    source_path: str = ""
    errors: list[str] = field(default_factory=list)


@dataclass
class SystemStatus:
    initialized: bool
    user: str = ""


@runtime_checkable
class MutationClient(Protocol):
    """Remote operations the reconciliation engine depends on.

    Expectations relied upon by the engine:
    - ``exists`` returns False for a missing path and raises for anything else.
    - ``mkdir`` raises an "already exists" error when the path is present.
    - ``remove`` raises a "not found" error when the path is absent.
    - ``add_resource`` reports the URI the import actually landed at.
    """

    async def exists(self, uri: str) -> bool: ...

    async def mkdir(self, uri: str) -> None: ...

    async def remove(self, uri: str, recursive: bool = False) -> None: ...

    async def add_resource(
        self,
        path: str,
        target: str,
        reason: str = "",
        wait: bool = False,
    ) -> ImportResult: ...

    async def move(self, from_uri: str, to_uri: str) -> None: ...

    async def read(self, uri: str) -> str: ...

    async def wait_processed(self, timeout: float | None = None) -> None: ...
