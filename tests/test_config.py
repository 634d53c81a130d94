"""Tests for environment-driven settings."""

import pytest

from linkwizard.config import load_settings


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        for name in ("LINKWIZARD_API_BASE_URL", "MAX_CONSECUTIVE_ERRORS", "TERM_SELECTION_MODE", "SESSIONS_PATH"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("PERSIST_SESSIONS", "0")
        settings = load_settings()
        assert settings.max_consecutive_errors == 3
        assert settings.manual_flow_url == "/new-campaign"
        assert settings.term_selection_mode == "multi"
        assert settings.sessions_path is None

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LINKWIZARD_API_BASE_URL", "https://api.example.com/v1/")
        monkeypatch.setenv("TERM_SELECTION_MODE", "Single")
        monkeypatch.setenv("SESSIONS_PATH", str(tmp_path / "s.json"))
        settings = load_settings()
        assert settings.api_base_url == "https://api.example.com/v1"
        assert settings.term_selection_mode == "single"
        assert settings.sessions_path == tmp_path / "s.json"

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("TERM_SELECTION_MODE", "many")
        with pytest.raises(ValueError):
            load_settings()
        monkeypatch.setenv("TERM_SELECTION_MODE", "multi")
        monkeypatch.setenv("MAX_CONSECUTIVE_ERRORS", "three")
        with pytest.raises(ValueError):
            load_settings()
