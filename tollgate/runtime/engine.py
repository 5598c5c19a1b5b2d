from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from .approval import ApprovalEngine, ApprovalPolicy, Approver
from .audit import AuditLog
from .config import AgentConfig
from .ids import new_session_id
from .llm.client import LLMClient
from .llm.types import ModelClient
from .session import Session
from .tools.builtins import default_registry
from .tools.executor import ToolExecutor
from .tools.registry import ToolRegistry


def build_session(
    config: AgentConfig,
    *,
    approver: Approver,
    cwd: Path | None = None,
    client: ModelClient | None = None,
    registry: ToolRegistry | None = None,
    env: Mapping[str, str] | None = None,
    session_id: str | None = None,
) -> Session:
    """
    Factory wiring a `Session` from config.

    Front ends depend on `Session` only; `client` and `registry` are injectable for tests.
    """

    root = Path(cwd) if cwd is not None else Path.cwd()
    session_id = session_id or new_session_id()
    registry = registry if registry is not None else default_registry()
    tool_env = dict(os.environ) if env is None else dict(env)

    policy = ApprovalPolicy(mode=config.approval.mode, allow=config.approval.allow, deny=config.approval.deny)
    audit = AuditLog(config.audit_dir, session_id=session_id) if config.audit_dir is not None else None

    return Session(
        client=client if client is not None else LLMClient(config.model),
        registry=registry,
        approvals=ApprovalEngine(policy=policy, approver=approver),
        executor=ToolExecutor(registry=registry.freeze(), cwd=root, env=tool_env, session_id=session_id),
        system_prompt=config.system_prompt,
        retry=config.retry,
        max_tool_rounds=config.max_tool_rounds,
        audit=audit,
        session_id=session_id,
    )
