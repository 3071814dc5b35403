"""Tests for plugin configuration."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from ovmemory.config import (
    DEFAULT_URI_BASE,
    Settings,
    SyncSettings,
    load_settings,
    parse_interval,
    write_settings_file,
)
from ovmemory.exceptions import ConfigError


class TestSettings:
    def test_defaults(self) -> None:
        s = Settings(_env_file=None, base_url="http://127.0.0.1:1933/")
        assert s.base_url == "http://127.0.0.1:1933"
        assert s.api_key is None
        assert s.uri_base == DEFAULT_URI_BASE
        assert s.tiered_loading is True
        assert s.request_timeout == 30.0
        assert s.sync.on_boot is True
        assert s.sync.interval_seconds == 0
        assert s.sync.adopt_existing is True
        assert s.search.mode == "find"
        assert s.search.default_limit == 6

    def test_blank_api_key_is_none(self) -> None:
        s = Settings(_env_file=None, base_url="http://ov.test", api_key="  ")
        assert s.api_key is None

    @pytest.mark.parametrize("url", ["ov.test", "ftp://ov.test", "http://"])
    def test_invalid_base_url(self, url: str) -> None:
        with pytest.raises(ValueError, match="scheme and host"):
            Settings(_env_file=None, base_url=url)

    def test_environment_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OPENVIKING_BASE_URL", "https://ov.example.com")
        monkeypatch.setenv("OPENVIKING_API_KEY", "k")
        monkeypatch.setenv("OPENVIKING_SYNC__INTERVAL", "5m")
        monkeypatch.setenv("OPENVIKING_SEARCH__MODE", "search")

        s = Settings(_env_file=None)

        assert s.base_url == "https://ov.example.com"
        assert s.api_key == "k"
        assert s.sync.interval_seconds == 300
        assert s.search.mode == "search"


class TestSyncSettings:
    def test_extra_paths_cleaned(self) -> None:
        sync = SyncSettings(extra_paths=[" notes ", "", "notes", "docs"])
        assert sync.extra_paths == ["notes", "docs"]

    @pytest.mark.parametrize("state_dir", ["", "..", "a/b", "a\\b"])
    def test_state_dir_must_be_single_name(self, state_dir: str) -> None:
        with pytest.raises(ValueError, match="single directory name"):
            SyncSettings(state_dir=state_dir)

    def test_negative_wait_timeout_rejected(self) -> None:
        with pytest.raises(ValueError):
            SyncSettings(wait_timeout_sec=-1)


class TestParseInterval:
    @pytest.mark.parametrize(
        ("value", "seconds"),
        [("30s", 30), ("5m", 300), ("2h", 7200), ("1d", 86400), (" 10 M ", 600)],
    )
    def test_valid(self, value: str, seconds: int) -> None:
        assert parse_interval(value) == seconds

    @pytest.mark.parametrize("value", [None, "", "soon", "5w", "-1m"])
    def test_invalid_disables(self, value: str | None) -> None:
        assert parse_interval(value) == 0


class TestLoadSettings:
    def test_file_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "ovmemory.toml"
        config_file.write_text(
            'base_url = "http://ov.test"\n'
            "[sync]\n"
            'extra_paths = ["notes"]\n'
            "wait_for_processing = true\n"
            "[search]\n"
            "default_limit = 3\n",
            encoding="utf-8",
        )

        s = load_settings(config_file)

        assert s.base_url == "http://ov.test"
        assert s.sync.extra_paths == ["notes"]
        assert s.sync.wait_for_processing is True
        assert s.search.default_limit == 3

    def test_file_wins_over_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("OPENVIKING_BASE_URL", "http://from-env")
        config_file = tmp_path / "ovmemory.toml"
        config_file.write_text('base_url = "http://from-file"\n', encoding="utf-8")

        assert load_settings(config_file).base_url == "http://from-file"

    def test_missing_file_uses_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("OPENVIKING_BASE_URL", "http://from-env")
        assert load_settings(tmp_path / "none.toml").base_url == "http://from-env"

    def test_invalid_toml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "ovmemory.toml"
        config_file.write_text("base_url = ", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid config file"):
            load_settings(config_file)

    def test_missing_base_url(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Invalid OpenViking memory configuration"):
            load_settings(None)


class TestWriteSettingsFile:
    def test_writes_non_defaults(self, tmp_path: Path) -> None:
        settings = Settings(
            _env_file=None,
            base_url="http://ov.test",
            api_key="secret",
            sync=SyncSettings(interval="10m"),
        )
        config_file = tmp_path / "nested" / "ovmemory.toml"

        write_settings_file(config_file, settings)

        data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        assert data["base_url"] == "http://ov.test"
        assert data["api_key"] == "secret"
        assert data["sync"] == {"interval": "10m"}
        assert "debug" not in data
        assert load_settings(config_file) == settings
