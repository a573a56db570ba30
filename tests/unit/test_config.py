"""Unit tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from berth import config as config_module
from berth.config import Settings, _load_config_file, get_settings


class TestSettingsDefaults:
    def test_defaults(self):
        settings = Settings()

        assert settings.web.port == 8088
        assert settings.web.image == "nginx:alpine"
        assert settings.workspace.mount_path == "/workspace"
        assert settings.workspace.materialize_mode == "tempdir"
        assert settings.images.default == "node:20-alpine"
        assert settings.docker.labels == {"berth.managed": "true"}
        assert settings.warm_pool.harden is True

    def test_state_paths(self, tmp_path: Path):
        settings = Settings(state={"state_dir": str(tmp_path)})

        assert settings.state.snapshot_path == tmp_path / "sessions.json"
        assert settings.state.web_config_dir == tmp_path / "web"


class TestSettingsSources:
    def test_env_overrides_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BERTH_WEB__PORT", "9099")
        monkeypatch.setenv("BERTH_WORKSPACE__MATERIALIZE_MODE", "volume")

        settings = Settings()

        assert settings.web.port == 9099
        assert settings.workspace.materialize_mode == "volume"

    def test_env_wins_over_file_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BERTH_WEB__PORT", "9099")

        settings = Settings(web={"port": 7000, "host": "preview.local"})

        assert settings.web.port == 9099

    def test_load_config_file_from_env_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "custom.yaml"
        path.write_text("web:\n  host: preview.local\nrunner:\n  default_timeout: 5\n")
        monkeypatch.setenv("BERTH_CONFIG_FILE", str(path))

        data = _load_config_file()

        assert data == {"web": {"host": "preview.local"}, "runner": {"default_timeout": 5}}

    def test_load_config_file_empty_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        monkeypatch.setenv("BERTH_CONFIG_FILE", str(path))

        assert _load_config_file() == {}

    def test_get_settings_is_cached(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        path = tmp_path / "berth.yaml"
        path.write_text("web:\n  host: cached.local\n")
        monkeypatch.setenv("BERTH_CONFIG_FILE", str(path))
        get_settings.cache_clear()
        try:
            first = get_settings()
            second = get_settings()
        finally:
            config_module.get_settings.cache_clear()

        assert first is second
        assert first.web.host == "cached.local"
