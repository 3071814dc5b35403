"""Local path <-> OpenViking URI mapping."""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote

from ovmemory.config import DEFAULT_URI_BASE

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

VIKING_SCHEME = "viking://"
ROOT_FILE_STEMS = ("MEMORY", "SOUL", "USER", "AGENTS", "TOOLS", "IDENTITY", "BOOTSTRAP")
AGENT_ID_PLACEHOLDERS = ("{agent_id}", "{agentId}")

_DAILY_RE = re.compile(r"^memory/(\d{4}-\d{2}-\d{2})\.md$")
_SKILL_RE = re.compile(r"^skills/([^/]+)/SKILL\.md$")
_MEMORY_MISC_RE = re.compile(r"^memory/(.+)\.md$")
_SKILL_DATA_RE = re.compile(r"^skills/([^/]+)/data/(.+)$")
_MD_SUFFIX_RE = re.compile(r"\.md$", re.IGNORECASE)
_LEAF_MD_RE = re.compile(r"/([^/]+)\.md$", re.IGNORECASE)
_UNSAFE_SEGMENT_RE = re.compile(r"[^\w\s-]")


@dataclass(frozen=True)
class MappingRule:
    """A default mapping: ``resolve`` returns the URI suffix below the root prefix, or None."""

    name: str
    resolve: Callable[[str], str | None]


def _match(pattern: re.Pattern[str], template: str) -> Callable[[str], str | None]:
    def resolve(path: str) -> str | None:
        match = pattern.match(path)
        return template.format(*match.groups()) if match else None

    return resolve


def _root_file(path: str) -> str | None:
    stem = path.removesuffix(".md")
    if "/" in path or not path.endswith(".md") or stem not in ROOT_FILE_STEMS:
        return None
    return f"root/{stem}"


def _fallback(path: str) -> str:
    return "files/" + _MD_SUFFIX_RE.sub("", path.lstrip("/"))


DEFAULT_RULES: tuple[MappingRule, ...] = (
    MappingRule("root-file", _root_file),
    MappingRule("daily-memory", _match(_DAILY_RE, "memory/{0}")),
    MappingRule("skill", _match(_SKILL_RE, "skills/{0}/SKILL")),
    MappingRule("memory-misc", _match(_MEMORY_MISC_RE, "memory/misc/{0}")),
    MappingRule("skill-data", _match(_SKILL_DATA_RE, "skills/{0}/data/{1}")),
)


def _normalize_local_path(path: str) -> str:
    return path.replace("\\", "/").lstrip("/")


def _normalize_uri(uri: str) -> str:
    return uri.rstrip("/")


def _sanitize_segment(value: str) -> str:
    stripped = _UNSAFE_SEGMENT_RE.sub("", value)
    collapsed = re.sub(r"\s+", "_", stripped).strip("_")
    return collapsed or "content"


def resolve_uri_base(uri_base: str | None, agent_id: str | None) -> str:
    """Substitute ``{agent_id}`` (or ``{agentId}``) into the URI base, or append the agent id."""
    raw = (uri_base or DEFAULT_URI_BASE).strip().rstrip("/")
    agent = quote((agent_id or "main").strip() or "main", safe="")
    if not any(placeholder in raw for placeholder in AGENT_ID_PLACEHOLDERS):
        return f"{raw}/{agent}"
    for placeholder in AGENT_ID_PLACEHOLDERS:
        raw = raw.replace(placeholder, agent)
    return raw


class PathMapper:
    """Maps workspace-relative paths to remote URIs and back.

    Every local file owns a root URI (a remote directory); the imported content sits inside it as
    ``<root>/<stem>.md``. Imports target the root URI's parent, because the remote side names the
    imported directory after the file stem.
    """

    def __init__(
        self,
        uri_base: str | None = None,
        agent_id: str | None = None,
        mappings: Mapping[str, str] | None = None,
    ) -> None:
        self.uri_base = resolve_uri_base(uri_base, agent_id)
        self.root_prefix = f"{self.uri_base}/memory-sync"
        self.custom_mappings: dict[str, str] = {}
        for local_path, uri in (mappings or {}).items():
            self.add_custom_mapping(local_path, uri)

    def add_custom_mapping(self, local_path: str, uri: str) -> None:
        self.custom_mappings[_normalize_local_path(local_path)] = _normalize_uri(uri)

    def to_root_uri(self, local_path: str) -> str:
        """Local path -> root URI (remote directory node for the file)."""
        path = _normalize_local_path(local_path)
        custom = self.custom_mappings.get(path)
        if custom:
            return custom
        for rule in DEFAULT_RULES:
            suffix = rule.resolve(path)
            if suffix is not None:
                return f"{self.root_prefix}/{suffix}"
        return f"{self.root_prefix}/{_fallback(path)}"

    def to_content_uri(self, local_path: str) -> str:
        """Local path -> leaf URI holding the file content (used for direct reads)."""
        basename = _normalize_local_path(local_path).rsplit("/", 1)[-1]
        stem = _sanitize_segment(posixpath.splitext(basename)[0])
        return f"{self.to_root_uri(local_path)}/{stem}.md"

    def to_target_parent_uri(self, local_path: str) -> str:
        """Local path -> directory an import should target."""
        root_uri = self.to_root_uri(local_path)
        idx = root_uri.rfind("/")
        if idx <= len(VIKING_SCHEME):
            return root_uri
        return root_uri[:idx]

    def from_root_uri(self, uri: str) -> str:
        """Best-effort inverse mapping, for presenting search hits as local paths."""
        normalized = _normalize_uri(uri)

        for local_path, custom_uri in self.custom_mappings.items():
            if normalized == custom_uri or normalized.startswith(f"{custom_uri}/"):
                return local_path

        prefix = f"{self.root_prefix}/"
        if normalized.startswith(prefix):
            rel = normalized[len(prefix) :].lstrip("/")
            parts = [part for part in _LEAF_MD_RE.sub("", rel).split("/") if part]
            hint = self._local_hint(parts)
            if hint is not None:
                return hint

        return normalized.removeprefix(VIKING_SCHEME)

    @staticmethod
    def _local_hint(parts: list[str]) -> str | None:
        if not parts:
            return "MEMORY.md"
        head = parts[0]
        if head == "root" and len(parts) >= 2:
            return f"{parts[1]}.md"
        if head == "memory" and len(parts) >= 2:
            if parts[1] == "misc" and len(parts) >= 3:
                return "memory/" + "/".join(parts[2:]) + ".md"
            return f"memory/{parts[1]}.md"
        if head == "skills" and len(parts) >= 3:
            if parts[2] == "SKILL":
                return f"skills/{parts[1]}/SKILL.md"
            if parts[2] == "data":
                return f"skills/{parts[1]}/data/" + "/".join(parts[3:])
        if head == "files" and len(parts) >= 2:
            raw = "/".join(parts[1:])
            return raw if raw.endswith(".md") else f"{raw}.md"
        return None
