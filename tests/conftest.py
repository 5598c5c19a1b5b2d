"""Shared pytest fixtures: a scripted model client, approvers and test tools."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Iterator

import pytest

from tollgate.runtime.approval import ApprovalDecision, ApprovalEngine, ApprovalPolicy, ApprovalRequest, ToolApprovalMode
from tollgate.runtime.config import RetryPolicy
from tollgate.runtime.error_codes import ErrorCode
from tollgate.runtime.llm.errors import CancellationToken
from tollgate.runtime.llm.types import CanonicalRequest, LLMStreamEvent
from tollgate.runtime.models import ToolDescriptor
from tollgate.runtime.session import Session
from tollgate.runtime.tools.base import ToolError, ToolExecutionContext
from tollgate.runtime.tools.builtins import default_registry

# Sentinel step: block until the turn is cancelled, then stop without an end marker.
HANG = object()


def call(tool_call_id: str | None, name: str, raw_arguments: str = "{}") -> LLMStreamEvent:
    return LLMStreamEvent.call(tool_call_id, name, raw_arguments)


def text(delta: str) -> LLMStreamEvent:
    return LLMStreamEvent.text(delta)


def end(reason: str = "stop") -> LLMStreamEvent:
    return LLMStreamEvent.end(reason)


class ScriptedModelClient:
    """
    `ModelClient` that replays scripted steps, one per model call.

    A step is a list of fragments, an exception to raise, or `HANG`. When the script runs out,
    `fallback` builds the next step (default: a plain final answer).
    """

    def __init__(self, *steps: Any, fallback: Callable[[int], Any] | None = None) -> None:
        self._steps = list(steps)
        self._fallback = fallback
        self.requests: list[CanonicalRequest] = []
        self.started = threading.Event()

    @property
    def calls(self) -> int:
        return len(self.requests)

    def stream(self, request: CanonicalRequest, *, cancel: CancellationToken | None = None) -> Iterator[LLMStreamEvent]:
        self.requests.append(request)
        self.started.set()
        if self._steps:
            step = self._steps.pop(0)
        elif self._fallback is not None:
            step = self._fallback(len(self.requests))
        else:
            step = [text("done"), end()]

        if step is HANG:
            while cancel is not None and not cancel.cancelled:
                time.sleep(0.01)
            return
        if isinstance(step, BaseException):
            raise step
        yield from step


class RecordingApprover:
    """Answers with queued decisions (approve once the queue is empty) and records requests."""

    def __init__(self, *decisions: ApprovalDecision) -> None:
        self.decisions = list(decisions)
        self.requests: list[ApprovalRequest] = []

    async def decide(self, request: ApprovalRequest) -> ApprovalDecision:
        self.requests.append(request)
        if self.decisions:
            return self.decisions.pop(0)
        return ApprovalDecision.approve()


class BlockingApprover:
    """Never answers; used to cancel a turn while an approval is pending."""

    def __init__(self) -> None:
        self.requests: list[ApprovalRequest] = []

    async def decide(self, request: ApprovalRequest) -> ApprovalDecision:
        self.requests.append(request)
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class FailingApprover:
    async def decide(self, request: ApprovalRequest) -> ApprovalDecision:
        raise RuntimeError("approver crashed")


@dataclass(frozen=True, slots=True)
class EchoTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="echo",
        description="Return the given text.",
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
            "additionalProperties": False,
        },
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        return {"echo": args["text"], "cwd": context.cwd}


@dataclass(frozen=True, slots=True)
class SleepTool:
    """Async tool that sleeps `delay_s` and reports its label; used to check result ordering."""

    finished: list[str] = field(default_factory=list)

    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="sleep",
        parameters={
            "type": "object",
            "properties": {"label": {"type": "string"}, "delay_s": {"type": "number", "minimum": 0}},
            "required": ["label"],
        },
    )

    async def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        await asyncio.sleep(float(args.get("delay_s", 0)))
        self.finished.append(args["label"])
        return {"label": args["label"]}


@dataclass(frozen=True, slots=True)
class HangTool:
    """Async tool that never returns on its own."""

    started: asyncio.Event = field(default_factory=asyncio.Event)

    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(name="hang")

    async def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> Any:
        self.started.set()
        await asyncio.Event().wait()


@dataclass(frozen=True, slots=True)
class BoomTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(name="boom")

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> Any:
        raise RuntimeError("boom")


@dataclass(frozen=True, slots=True)
class GuardedTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(name="guarded")

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> Any:
        raise ToolError("not allowed here", code=ErrorCode.PERMISSION)


@pytest.fixture(autouse=True)
def reset_tollgate_logger():
    """`cli.main()` installs its own handler; undo it so caplog keeps working."""

    yield
    logger = logging.getLogger("tollgate")
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = []
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Keep local stub traffic off any proxy and ignore the developer's model overrides."""

    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    for name in ("TOLLGATE_MODEL", "TOLLGATE_BASE_URL", "TOLLGATE_API_KEY_ENV"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    (tmp_path / "a.txt").write_text("alpha\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("beta\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_backoff_s=0.0, max_backoff_s=0.0)


@pytest.fixture
def make_session(workdir: Path, fast_retry: RetryPolicy):
    def _make(
        client: Any,
        *,
        tools: list[Any] | None = None,
        approver: Any = None,
        mode: ToolApprovalMode = ToolApprovalMode.STANDARD,
        policy: ApprovalPolicy | None = None,
        **kwargs: Any,
    ) -> Session:
        kwargs.setdefault("retry", fast_retry)
        return Session(
            client=client,
            registry=default_registry(extra_tools=tools),
            approvals=ApprovalEngine(
                policy=policy or ApprovalPolicy(mode=mode),
                approver=approver if approver is not None else RecordingApprover(),
            ),
            cwd=workdir,
            env={},
            **kwargs,
        )

    return _make
