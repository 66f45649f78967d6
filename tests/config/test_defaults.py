"""
Unit tests for config.defaults and config.models.

Tests cover:
- Backend URL, journal path and server bind defaults with env overrides
- build_config / load_config end to end
- validate_config errors and warnings
"""

import pytest
from structlog.testing import capture_logs

from openjournal.config import (
    DEFAULT_GREETING,
    DEFAULT_VOICE_ID,
    build_config,
    load_config,
    validate_config,
)
from openjournal.config.defaults import (
    apply_backend_defaults,
    apply_journal_defaults,
    apply_server_defaults,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "OPENJOURNAL_API_URL",
        "OPENJOURNAL_JOURNAL_DB",
        "API_HOST",
        "API_PORT",
        "PORT",
        "OPENROUTER_API_KEY",
        "ELEVENLABS_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


class TestApplyBackendDefaults:

    def test_default_url(self):
        config_data = {}
        apply_backend_defaults(config_data)
        assert config_data["backend"]["base_url"] == "http://127.0.0.1:3001"

    def test_env_override_strips_trailing_slash(self, monkeypatch):
        monkeypatch.setenv("OPENJOURNAL_API_URL", "https://journal.example.com/")
        config_data = {"backend": {"base_url": "http://ignored"}}

        apply_backend_defaults(config_data)

        assert config_data["backend"]["base_url"] == "https://journal.example.com"


class TestApplyJournalDefaults:

    def test_default_path(self):
        config_data = {}
        apply_journal_defaults(config_data)
        assert config_data["journal"]["db_path"] == "data/journal.db"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("OPENJOURNAL_JOURNAL_DB", "/tmp/entries.db")
        config_data = {}
        apply_journal_defaults(config_data)
        assert config_data["journal"]["db_path"] == "/tmp/entries.db"


class TestApplyServerDefaults:

    def test_defaults(self):
        config_data = {}
        apply_server_defaults(config_data)
        assert config_data["server"]["host"] == "127.0.0.1"
        assert config_data["server"]["port"] == 3001

    def test_api_port_wins_over_port(self, monkeypatch):
        monkeypatch.setenv("API_PORT", "4001")
        monkeypatch.setenv("PORT", "5001")
        config_data = {}
        apply_server_defaults(config_data)
        assert config_data["server"]["port"] == 4001

    def test_port_fallback(self, monkeypatch):
        monkeypatch.setenv("PORT", "5001")
        config_data = {}
        apply_server_defaults(config_data)
        assert config_data["server"]["port"] == 5001

    def test_invalid_port_env_keeps_default(self, monkeypatch):
        monkeypatch.setenv("API_PORT", "not-a-port")
        config_data = {}
        apply_server_defaults(config_data)
        assert config_data["server"]["port"] == 3001

    def test_api_host_overrides_configured_host(self, monkeypatch):
        monkeypatch.setenv("API_HOST", "0.0.0.0")
        config_data = {"server": {"host": "127.0.0.1"}}
        apply_server_defaults(config_data)
        assert config_data["server"]["host"] == "0.0.0.0"

    def test_blank_api_host_keeps_configured_host(self, monkeypatch):
        monkeypatch.setenv("API_HOST", "  ")
        config_data = {"server": {"host": "10.0.0.5"}}
        apply_server_defaults(config_data)
        assert config_data["server"]["host"] == "10.0.0.5"


class TestBuildConfig:

    def test_empty_dict_gives_documented_defaults(self):
        config = build_config({})

        assert config.session.greeting == DEFAULT_GREETING
        assert config.session.voice_id == DEFAULT_VOICE_ID
        assert config.session.manual_mode is False
        assert config.session.post_speech_delay_ms == 700
        assert config.session.manual_commit_timeout_ms == 1500
        assert config.session.commit_silence_samples == 1024
        assert config.scribe.model_id == "scribe_v2_realtime"
        assert config.scribe.sample_rate_hz == 16000
        assert config.scribe.vad.silence_threshold_secs == 2.0
        assert config.scribe.vad.threshold == 0.55
        assert config.scribe.vad.min_speech_duration_ms == 250
        assert config.server.interviewer_max_tokens == 4096

    def test_keys_injected(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
        config = build_config({})
        assert config.server.openrouter_api_key == "sk-or-test"
        assert config.server.elevenlabs_api_key is None

    def test_shipped_yaml_loads(self):
        config = load_config("config/openjournal.yaml")
        assert config.backend.base_url.startswith("http")
        assert config.server.openrouter_api_key is None

    def test_shipped_yaml_honors_bind_env(self, monkeypatch):
        monkeypatch.setenv("API_HOST", "0.0.0.0")
        monkeypatch.setenv("API_PORT", "4000")
        config = load_config("config/openjournal.yaml")
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 4000

    def test_load_is_logged_without_credentials(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-secret")
        with capture_logs() as logs:
            load_config("config/openjournal.yaml")

        loaded = [e for e in logs if e["event"] == "Configuration loaded"]
        assert len(loaded) == 1
        assert loaded[0]["path"].endswith("openjournal.yaml")
        assert "sk-or-secret" not in repr(loaded[0])


class TestValidateConfig:

    def test_defaults_are_valid(self):
        errors, warnings = validate_config(build_config({}))
        assert errors == []
        assert warnings == []

    def test_bad_urls_are_errors(self):
        config = build_config({
            "backend": {"base_url": "ftp://nope"},
            "scribe": {"ws_url": "https://not-a-socket"},
        })
        errors, _ = validate_config(config)
        assert any("base_url" in e for e in errors)
        assert any("ws_url" in e for e in errors)

    def test_empty_prompt_is_error(self):
        errors, _ = validate_config(build_config({"session": {"system_prompt": "   "}}))
        assert any("system_prompt" in e for e in errors)

    def test_small_timings_and_public_bind_warn(self):
        config = build_config({
            "session": {"manual_commit_timeout_ms": 100, "post_speech_delay_ms": 50},
            "server": {"host": "0.0.0.0"},
        })
        errors, warnings = validate_config(config)
        assert errors == []
        assert len(warnings) == 3
