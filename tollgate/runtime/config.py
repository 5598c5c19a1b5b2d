from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .approval import ApprovalRule, ToolApprovalMode
from .llm.types import CredentialRef, ModelProfile

DEFAULT_CONFIG_RELPATH = Path(".tollgate") / "config.json"

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful assistant working in the user's project directory. "
    "Use the available tools when they help; destructive tools need the user's approval. "
    "If a tool call is denied, follow the user's note instead of retrying the same call."
)


class ConfigError(ValueError):
    pass


class RetryPolicy(BaseModel):
    """Exponential backoff for retryable model-call failures."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=20)
    initial_backoff_s: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_backoff_s: float = Field(default=8.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1` (attempts are 1-based)."""

        delay = self.initial_backoff_s * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_backoff_s)


class ApprovalConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: ToolApprovalMode = ToolApprovalMode.STANDARD
    allow: list[ApprovalRule] = Field(default_factory=list)
    deny: list[ApprovalRule] = Field(default_factory=list)


class AgentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: ModelProfile = Field(default_factory=ModelProfile)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    max_tool_rounds: int = Field(default=30, ge=1, le=256)
    system_prompt: str | None = DEFAULT_SYSTEM_PROMPT
    audit_dir: Path | None = None

    @field_validator("system_prompt")
    @classmethod
    def _blank_prompt_is_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v if v.strip() else None

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> "AgentConfig":
        if self.retry.max_backoff_s < self.retry.initial_backoff_s:
            raise ValueError("retry.max_backoff_s must be >= retry.initial_backoff_s")
        return self


def _apply_env_overrides(raw: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    model = dict(raw.get("model") or {})
    if env.get("TOLLGATE_MODEL"):
        model["model_name"] = env["TOLLGATE_MODEL"]
    if env.get("TOLLGATE_BASE_URL"):
        model["base_url"] = env["TOLLGATE_BASE_URL"]
    if env.get("TOLLGATE_API_KEY_ENV"):
        model["credential_ref"] = CredentialRef(kind="env", identifier=env["TOLLGATE_API_KEY_ENV"]).model_dump()
    if model:
        raw = dict(raw, model=model)
    return raw


def load_config(
    path: Path | None = None,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> AgentConfig:
    """
    Load `AgentConfig` from JSON.

    Without `path`, `<cwd>/.tollgate/config.json` is used when it exists; otherwise defaults
    apply. Environment overrides (`TOLLGATE_MODEL`, `TOLLGATE_BASE_URL`,
    `TOLLGATE_API_KEY_ENV`) are applied on top, then `overrides` (top-level keys).
    """

    env = os.environ if env is None else env
    root = Path(cwd) if cwd is not None else Path.cwd()

    raw: dict[str, Any] = {}
    config_path = Path(path) if path is not None else root / DEFAULT_CONFIG_RELPATH
    if path is not None and not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    if config_path.exists():
        try:
            loaded = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config root must be a JSON object: {config_path}")
        raw = loaded

    raw = _apply_env_overrides(raw, env)
    if overrides:
        raw = {**raw, **dict(overrides)}

    try:
        config = AgentConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {e}") from e

    if config.audit_dir is not None and not config.audit_dir.is_absolute():
        config = config.model_copy(update={"audit_dir": root / config.audit_dir})
    return config
