"""
Configuration Tests

Tests for:
- Autopilot configuration loading and validation
- Project configuration loading and phase helpers
- Credential store precedence and rotation
"""

import os
import stat
from datetime import timedelta

import pytest
import yaml

from autopilot.config import (
    CONFIG_ENV_VAR,
    AutopilotConfig,
    ConfigError,
    CredentialStore,
    load_config,
    load_project_config,
    repo_name_from_url,
)


class TestLoadConfig:
    def test_defaults_without_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        monkeypatch.setenv("AUTOPILOT_STATE_DIR", str(tmp_path / "state"))
        config = load_config()
        assert config.state_dir == tmp_path / "state"
        assert config.sessions_dir == tmp_path / "state" / "sessions"
        assert config.orchestrator.quarantine_threshold == 5
        assert config.executor.max_retries == 3
        assert config.reasoning.enabled is False

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text(yaml.safe_dump({
            "state_dir": str(tmp_path / "s"),
            "orchestrator": {"poll_interval_seconds": 5, "concurrent_projects": True},
            "cost": {"daily_limit_usd": 1.5},
        }))
        config = load_config(path)
        assert config.orchestrator.poll_interval_seconds == 5
        assert config.orchestrator.concurrent_projects is True
        assert config.cost.daily_limit_usd == 1.5

    def test_env_var_path(self, monkeypatch, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text(yaml.safe_dump({"decision": {"loop_window": 4}}))
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().decision.loop_window == 4

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text(yaml.safe_dump({"orchestrator": {"poll_every": 5}}))
        with pytest.raises(ConfigError) as exc:
            load_config(path)
        assert "orchestrator.poll_every" in exc.value.message

    def test_wrong_type_rejected(self, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text(yaml.safe_dump({"executor": {"max_retries": -1}}))
        with pytest.raises(ConfigError):
            load_config(path)

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "autopilot.yaml"
        path.write_text("")
        assert isinstance(load_config(path), AutopilotConfig)


class TestProjectConfig:
    def test_load(self, project_file):
        config = load_project_config(project_file)
        assert config.name == "demo-app"
        assert config.first_phase == "design"
        assert config.stall_threshold == timedelta(minutes=10)

    def test_next_phase(self, project_config):
        assert project_config.next_phase("design").name == "build"
        assert project_config.next_phase("release") is None
        assert project_config.next_phase("unknown") is None

    def test_get_skill(self, project_config):
        assert project_config.get_skill("fix-tests").resolved_command() == "/fix-tests"
        assert project_config.get_skill("nope") is None

    def test_identity_hints_include_repo_name(self, project_config):
        assert project_config.identity_hints() == ["demo-app", "demo-app"]

    def test_duplicate_phases_rejected(self, tmp_path, project_data):
        project_data["phases"].append({"name": "design"})
        path = tmp_path / "dup.yaml"
        path.write_text(yaml.safe_dump(project_data))
        with pytest.raises(ConfigError, match="Phase names must be unique"):
            load_project_config(path)

    def test_phases_required(self, tmp_path):
        path = tmp_path / "p.yaml"
        path.write_text(yaml.safe_dump({"name": "x", "phases": []}))
        with pytest.raises(ConfigError):
            load_project_config(path)

    def test_repo_name_from_url(self):
        assert repo_name_from_url("https://github.com/org/tool.git") == "tool"
        assert repo_name_from_url("https://github.com/org/tool/") == "tool"


class TestCredentialStore:
    def test_environment_wins(self, monkeypatch, tmp_path):
        store = CredentialStore(tmp_path)
        store.set("stored-key-123456")
        monkeypatch.setenv("TEST_KEY_ENV", "env-key")
        assert store.resolve("TEST_KEY_ENV") == "env-key"

    def test_stored_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("TEST_KEY_ENV", raising=False)
        store = CredentialStore(tmp_path)
        assert store.resolve("TEST_KEY_ENV") is None
        store.set("stored-key-123456")
        assert store.resolve("TEST_KEY_ENV") == "stored-key-123456"

    def test_rotation_metadata(self, tmp_path):
        store = CredentialStore(tmp_path)
        first = store.set("first-key-0001")
        assert first["stored"] is True
        assert first["rotated_at"] is None
        assert first["fingerprint"] == "...0001"

        second = store.set("second-key-0002")
        assert second["rotated_at"] is not None
        assert second["created_at"] == first["created_at"]

    def test_file_is_owner_only(self, tmp_path):
        store = CredentialStore(tmp_path)
        store.set("secret-key-9999")
        mode = stat.S_IMODE(os.stat(tmp_path / "credentials.json").st_mode)
        assert mode == 0o600

    def test_empty_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            CredentialStore(tmp_path).set("   ")
