"""Tests for configuration loading and the retry policy."""

from __future__ import annotations

import json

import pytest

from tollgate.runtime.approval import ApprovalRule, ToolApprovalMode
from tollgate.runtime.config import DEFAULT_SYSTEM_PROMPT, AgentConfig, ConfigError, RetryPolicy, load_config


def _write(path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_delay_capped(self):
        assert RetryPolicy().delay_for(10) == 8.0

    def test_backoff_bounds_checked(self):
        with pytest.raises(ValueError):
            AgentConfig(retry=RetryPolicy(initial_backoff_s=5, max_backoff_s=1))


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path):
        config = load_config(cwd=tmp_path, env={})

        assert config.max_tool_rounds == 30
        assert config.approval.mode is ToolApprovalMode.STANDARD
        assert config.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert config.audit_dir is None

    def test_project_file(self, tmp_path):
        _write(
            tmp_path / ".tollgate" / "config.json",
            {
                "model": {"base_url": "http://127.0.0.1:9/v1", "model_name": "local", "credential_ref": "env:LOCAL_KEY"},
                "approval": {
                    "mode": "strict",
                    "allow": [{"tool": "run_shell_command", "prefix": "git status"}],
                    "deny": [{"tool": "web_fetch"}],
                },
                "max_tool_rounds": 5,
                "audit_dir": "logs/audit",
            },
        )

        config = load_config(cwd=tmp_path, env={})

        assert config.model.model_name == "local"
        assert config.model.credential_ref.identifier == "LOCAL_KEY"
        assert config.approval.mode is ToolApprovalMode.STRICT
        assert config.approval.allow == [ApprovalRule(tool="run_shell_command", prefix="git status")]
        assert config.approval.deny[0].tool == "web_fetch"
        assert config.max_tool_rounds == 5
        assert config.audit_dir == tmp_path / "logs" / "audit"

    def test_env_overrides(self, tmp_path):
        env = {"TOLLGATE_MODEL": "m2", "TOLLGATE_BASE_URL": "http://h/v1", "TOLLGATE_API_KEY_ENV": "MY_KEY"}

        config = load_config(cwd=tmp_path, env=env)

        assert config.model.model_name == "m2"
        assert config.model.base_url == "http://h/v1"
        assert config.model.credential_ref.to_redacted_string() == "env:MY_KEY"

    def test_overrides_win(self, tmp_path):
        _write(tmp_path / ".tollgate" / "config.json", {"max_tool_rounds": 5})

        config = load_config(cwd=tmp_path, env={}, overrides={"max_tool_rounds": 7, "system_prompt": "  "})

        assert config.max_tool_rounds == 7
        assert config.system_prompt is None

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.json", cwd=tmp_path, env={})

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "c.json"
        _write(path, "{not json")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_config(path, env={})

    def test_root_must_be_object(self, tmp_path):
        path = tmp_path / "c.json"
        _write(path, [1, 2])
        with pytest.raises(ConfigError, match="JSON object"):
            load_config(path, env={})

    @pytest.mark.parametrize(
        "data",
        [
            {"max_tool_rounds": 0},
            {"max_tool_rounds": 257},
            {"approval": {"mode": "yolo"}},
            {"approval": {"allow": [{"tool": ""}]}},
            {"retry": {"max_attempts": 0}},
        ],
    )
    def test_validation_errors(self, tmp_path, data):
        path = tmp_path / "c.json"
        _write(path, data)
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path, env={})
