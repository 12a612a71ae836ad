"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from src.swarm.config import DEFAULT_RUNTIME_DIR, SwarmSettings, get_settings


class TestSwarmSettings:
    """Tests for SwarmSettings defaults and environment loading."""

    def test_defaults(self):
        """Test that default values are used when env vars are not set."""
        settings = SwarmSettings()

        assert settings.max_agents == 7
        assert settings.research_concurrency == 0.3
        assert settings.development_concurrency == 0.4
        assert settings.parallel_execution is True
        assert settings.auto_retry is True
        assert settings.max_retries == 3
        assert settings.retry_base_delay_ms == 1000
        assert settings.retry_max_delay_ms == 30000
        assert settings.coverage_target == 80
        assert settings.github_enabled is False
        assert settings.github_labels == ["swarm-blocked", "needs-human-intervention"]
        assert settings.blocked_webhook_url is None
        assert settings.runtime_dir == DEFAULT_RUNTIME_DIR
        assert settings.port == 8080

    def test_load_from_env(self, monkeypatch, tmp_path):
        """Test that settings load from SWARM_ prefixed variables."""
        monkeypatch.setenv("SWARM_MAX_AGENTS", "12")
        monkeypatch.setenv("SWARM_MAX_RETRIES", "5")
        monkeypatch.setenv("SWARM_PARALLEL_EXECUTION", "false")
        monkeypatch.setenv("SWARM_GITHUB_REPOSITORY", "acme/swarm")
        monkeypatch.setenv("SWARM_GITHUB_ASSIGNEES", '["alice", "bob"]')
        monkeypatch.setenv("SWARM_COMPLIANCE", '["hipaa"]')
        monkeypatch.setenv("SWARM_RUNTIME_DIR", str(tmp_path))

        settings = get_settings()

        assert settings.max_agents == 12
        assert settings.max_retries == 5
        assert settings.parallel_execution is False
        assert settings.github_assignees == ["alice", "bob"]
        assert settings.compliance == ["hipaa"]
        assert settings.runtime_dir == str(tmp_path)

    def test_repository_parts(self):
        settings = SwarmSettings(github_repository="acme/swarm-app")

        assert settings.github_owner == "acme"
        assert settings.github_repo == "swarm-app"

    def test_repository_parts_unset(self):
        settings = SwarmSettings()

        assert settings.github_owner is None
        assert settings.github_repo is None


class TestSwarmSettingsValidation:
    """Tests for field validators."""

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_agents", 0),
            ("research_concurrency", 0.0),
            ("development_concurrency", 1.2),
            ("max_retries", -1),
            ("retry_base_delay_ms", -5),
            ("coverage_target", 101),
            ("github_repository", "not-a-repo"),
            ("github_base_url", "api.github.com"),
            ("blocked_webhook_url", "ftp://hooks.example.com"),
            ("runtime_dir", "relative/metrics"),
            ("port", 70000),
        ],
    )
    def test_invalid_values_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            SwarmSettings(**{field: value})

    def test_invalid_env_value_is_rejected(self, monkeypatch):
        monkeypatch.setenv("SWARM_MAX_RETRIES", "-2")

        with pytest.raises(ValidationError):
            get_settings()

    def test_zero_retries_is_allowed(self):
        assert SwarmSettings(max_retries=0).max_retries == 0
