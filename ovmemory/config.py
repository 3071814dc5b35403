"""Plugin configuration loaded from environment variables and an optional TOML file."""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import tomli_w
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ovmemory.exceptions import ConfigError

DEFAULT_URI_BASE = "viking://resources/openclaw/{agent_id}"
DEFAULT_STATE_DIR = ".openviking-memory"

_INTERVAL_RE = re.compile(r"^(\d+)\s*([smhd])$", re.IGNORECASE)
_INTERVAL_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(interval: str | None) -> int:
    """Parse an interval such as ``30s``, ``5m``, ``1h`` or ``1d`` into seconds.

    Empty or malformed values return 0, which disables interval sync.
    """
    if not interval:
        return 0
    match = _INTERVAL_RE.match(interval.strip())
    if match is None:
        return 0
    return int(match.group(1)) * _INTERVAL_SECONDS[match.group(2).lower()]


class SyncSettings(BaseModel):
    """Sync scheduling and scanning options."""

    interval: str | None = None
    on_boot: bool = True
    ov_config_path: Path | None = None
    extra_paths: list[str] = Field(default_factory=list)
    wait_for_processing: bool = False
    wait_timeout_sec: float | None = Field(default=None, ge=0)
    adopt_existing: bool = True
    state_dir: str = DEFAULT_STATE_DIR

    @field_validator("extra_paths")
    @classmethod
    def _clean_extra_paths(cls, value: list[str]) -> list[str]:
        cleaned = [entry.strip() for entry in value if entry.strip()]
        return list(dict.fromkeys(cleaned))

    @field_validator("state_dir")
    @classmethod
    def _validate_state_dir(cls, value: str) -> str:
        name = value.strip()
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            msg = f"state_dir must be a single directory name, got {value!r}"
            raise ValueError(msg)
        return name

    @property
    def interval_seconds(self) -> int:
        """Interval in seconds; 0 when interval sync is disabled."""
        return parse_interval(self.interval)


class SearchSettings(BaseModel):
    """Retrieval options."""

    mode: Literal["find", "search"] = "find"
    default_limit: int = Field(default=6, ge=1)
    score_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    target_uri: str | None = None


class Settings(BaseSettings):
    """Fully resolved plugin settings."""

    model_config = SettingsConfigDict(
        env_prefix="OPENVIKING_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote service
    base_url: str
    api_key: str | None = None
    request_timeout: float = Field(default=30.0, gt=0)

    # URI layout
    uri_base: str = DEFAULT_URI_BASE
    mappings: dict[str, str] = Field(default_factory=dict)

    # Read path
    tiered_loading: bool = True

    debug: bool = False

    sync: SyncSettings = Field(default_factory=SyncSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)

    @field_validator("base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        parsed = urlparse(normalized)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            msg = "base_url must include scheme and host (e.g. http://127.0.0.1:1933)"
            raise ValueError(msg)
        return normalized

    @field_validator("api_key")
    @classmethod
    def _blank_api_key_is_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


def load_settings(config_file: Path | None = None, **overrides: Any) -> Settings:
    """Build settings from an optional TOML file, the environment and explicit overrides.

    Values from the file and from ``overrides`` take precedence over environment variables.
    Raises ConfigError when the result is invalid.
    """
    data: dict[str, Any] = {}
    if config_file is not None and config_file.exists():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            msg = f"Invalid config file {config_file}: {exc}"
            raise ConfigError(msg) from exc
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return Settings(**data)
    except ValidationError as exc:
        msg = f"Invalid OpenViking memory configuration: {exc}"
        raise ConfigError(msg) from exc


def write_settings_file(config_file: Path, settings: Settings) -> None:
    """Write non-default settings to a TOML file."""
    data = settings.model_dump(mode="json", exclude_none=True, exclude_defaults=True)
    data["base_url"] = settings.base_url
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(tomli_w.dumps(data), encoding="utf-8")
