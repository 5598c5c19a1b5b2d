from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from .ids import new_id, now_ts_ms
from .llm.errors import CancellationToken, OperationCancelledError, run_cancellable
from .models import ToolCallRequest, ToolDescriptor
from .tools.previews import build_call_preview, summarize_tool_call

logger = logging.getLogger(__name__)


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    DENIED_WITH_FEEDBACK = "denied_with_feedback"
    CANCELLED = "cancelled"


_ALLOWED_APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset(
        {
            ApprovalStatus.APPROVED,
            ApprovalStatus.DENIED,
            ApprovalStatus.DENIED_WITH_FEEDBACK,
            ApprovalStatus.CANCELLED,
        }
    ),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.DENIED: frozenset(),
    ApprovalStatus.DENIED_WITH_FEEDBACK: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
}


class ApprovalTransitionError(ValueError):
    pass


def validate_approval_transition(*, before: ApprovalStatus, after: ApprovalStatus) -> None:
    allowed = _ALLOWED_APPROVAL_TRANSITIONS.get(before, frozenset())
    if after in allowed:
        return
    if before == after:
        raise ApprovalTransitionError(f"Illegal approval transition: {before.value} -> {after.value} (no-op not allowed)")
    rendered = ", ".join(sorted(s.value for s in allowed))
    raise ApprovalTransitionError(
        f"Illegal approval transition: {before.value} -> {after.value} (allowed: {rendered or '∅'})"
    )


class ToolApprovalMode(StrEnum):
    """
    Tool approval policy for a session.

    - strict: require approval for every tool call (including reads).
    - standard: require approval only for destructive or unknown tools (default).
    - trusted: auto-approve destructive registered tools (dangerous).
    """

    STRICT = "strict"
    STANDARD = "standard"
    TRUSTED = "trusted"


class DecidedBy(StrEnum):
    USER = "user"
    POLICY = "policy"


def _normalize_command(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split())


def _normalize_directory(value: Any) -> str:
    if not isinstance(value, str):
        return "."
    cleaned = value.strip().rstrip("/")
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned or "."


# Characters that chain, substitute or redirect commands in a POSIX shell.
_SHELL_CONTROL_RE = re.compile(r"[;&|`<>\n\r]|\$\(")
_SHELL_SEGMENT_RE = re.compile(r"[;&|`\n\r()]|\$\(")


def _starts_with_words(value: str, prefix: str) -> bool:
    return value == prefix or value.startswith(prefix + " ")


class ApprovalRule(BaseModel):
    """
    Allow/deny rule over tool calls.

    `tool` is a glob over tool names. When `prefix` is set, the string argument named
    `argument` (default `command`) must start with it after whitespace normalisation, e.g.
    `{"tool": "run_shell_command", "prefix": "git status"}`.

    Commands match on whole words. An allow rule never matches a command that chains,
    substitutes or redirects (`;`, `&`, `|`, backticks, `$(`, `<`, `>`, newlines) unless `exact`
    is set and the command is exactly `prefix`. A deny rule matches when any chained segment
    starts with `prefix`. `directory`, when set, pins the call's `directory` argument.
    """

    model_config = ConfigDict(frozen=True)

    tool: str
    argument: str | None = None
    prefix: str | None = None
    exact: bool = False
    directory: str | None = None

    @field_validator("tool")
    @classmethod
    def _validate_tool(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("ApprovalRule.tool must be a non-empty string.")
        return v

    @field_validator("prefix")
    @classmethod
    def _validate_prefix(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = _normalize_command(v)
        return v or None

    @field_validator("directory")
    @classmethod
    def _validate_directory(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return _normalize_directory(v)

    def matches(self, tool_name: str, arguments: dict[str, Any], *, deny: bool = False) -> bool:
        if not fnmatchcase(tool_name, self.tool):
            return False
        if self.directory is not None and _normalize_directory(arguments.get("directory")) != self.directory:
            return False
        if self.prefix is None:
            return True

        argument = self.argument or "command"
        raw = arguments.get(argument)
        if not isinstance(raw, str) or not raw.strip():
            return False
        if argument != "command":
            return _normalize_command(raw).startswith(self.prefix)

        if deny:
            return any(
                _starts_with_words(_normalize_command(segment), self.prefix) for segment in _SHELL_SEGMENT_RE.split(raw)
            )
        if "\n" in raw or "\r" in raw:
            return False
        value = _normalize_command(raw)
        if self.exact:
            return value == self.prefix
        if _SHELL_CONTROL_RE.search(raw):
            return False
        return _starts_with_words(value, self.prefix)


@dataclass(frozen=True, slots=True)
class ApprovalRequest:
    approval_id: str
    tool_call: ToolCallRequest
    descriptor: ToolDescriptor | None
    action_summary: str
    rationale: str | None = None
    risk_level: str = "high"
    preview: str | None = None

    @property
    def tool_call_id(self) -> str:
        return self.tool_call.tool_call_id

    @property
    def tool_name(self) -> str:
        return self.tool_call.tool_name


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    status: ApprovalStatus
    feedback: str | None = None
    remember_for_session: bool = False
    rationale: str | None = None

    def __post_init__(self) -> None:
        if self.status is ApprovalStatus.PENDING:
            raise ValueError("ApprovalDecision must be terminal.")

    @property
    def approved(self) -> bool:
        return self.status is ApprovalStatus.APPROVED

    @classmethod
    def approve(cls, *, remember_for_session: bool = False, rationale: str | None = None) -> "ApprovalDecision":
        return cls(status=ApprovalStatus.APPROVED, remember_for_session=remember_for_session, rationale=rationale)

    @classmethod
    def deny(cls, feedback: str | None = None, *, rationale: str | None = None) -> "ApprovalDecision":
        note = feedback.strip() if isinstance(feedback, str) else ""
        if note:
            return cls(status=ApprovalStatus.DENIED_WITH_FEEDBACK, feedback=note, rationale=rationale)
        return cls(status=ApprovalStatus.DENIED, rationale=rationale)

    @classmethod
    def cancel(cls, reason: str | None = None) -> "ApprovalDecision":
        return cls(status=ApprovalStatus.CANCELLED, rationale=reason)


@dataclass(slots=True)
class ApprovalRecord:
    request: ApprovalRequest
    status: ApprovalStatus = ApprovalStatus.PENDING
    decided_by: DecidedBy | None = None
    feedback: str | None = None
    rationale: str | None = None
    created_at_ms: int = field(default_factory=now_ts_ms)
    decided_at_ms: int | None = None

    @property
    def terminal(self) -> bool:
        return self.status is not ApprovalStatus.PENDING

    def resolve(self, decision: ApprovalDecision, *, decided_by: DecidedBy) -> None:
        validate_approval_transition(before=self.status, after=decision.status)
        self.status = decision.status
        self.decided_by = decided_by
        self.feedback = decision.feedback
        self.rationale = decision.rationale
        self.decided_at_ms = now_ts_ms()

    def decision(self) -> ApprovalDecision:
        if not self.terminal:
            raise ApprovalTransitionError(f"Approval {self.request.approval_id} is still pending.")
        return ApprovalDecision(status=self.status, feedback=self.feedback, rationale=self.rationale)


class ApprovalPolicy:
    """Approval mode, operator allow/deny rules and rules remembered for the session."""

    def __init__(
        self,
        *,
        mode: ToolApprovalMode = ToolApprovalMode.STANDARD,
        allow: list[ApprovalRule] | None = None,
        deny: list[ApprovalRule] | None = None,
    ) -> None:
        self.mode = mode
        self._allow = list(allow or [])
        self._deny = list(deny or [])
        self._session_allow: list[ApprovalRule] = []

    @property
    def session_rules(self) -> list[ApprovalRule]:
        return list(self._session_allow)

    def is_denied(self, tool_name: str, arguments: dict[str, Any]) -> bool:
        return any(rule.matches(tool_name, arguments, deny=True) for rule in self._deny)

    def requires_approval(self, descriptor: ToolDescriptor | None, tool_call: ToolCallRequest | None = None) -> bool:
        if descriptor is None:
            return True
        if descriptor.destructive or self.mode is ToolApprovalMode.STRICT:
            return True
        if tool_call is not None and self.is_denied(tool_call.tool_name, tool_call.arguments):
            return True
        return False

    def evaluate(self, tool_call: ToolCallRequest, descriptor: ToolDescriptor | None) -> ApprovalDecision | None:
        """Return the automatic decision for `tool_call`, or None when a human has to decide."""

        name, args = tool_call.tool_name, tool_call.arguments
        for rule in self._deny:
            if rule.matches(name, args, deny=True):
                return ApprovalDecision.deny(rationale=f"Matched deny rule for {rule.tool}.")
        if descriptor is None:
            # Unknown tools are never auto-approved.
            return None
        for rule in self._session_allow:
            if rule.matches(name, args):
                return ApprovalDecision.approve(rationale="Approved earlier in this session.")
        for rule in self._allow:
            if rule.matches(name, args):
                return ApprovalDecision.approve(rationale="Matched allow rule.")
        if self.mode is ToolApprovalMode.TRUSTED:
            return ApprovalDecision.approve(rationale="Approval mode is trusted (auto-allow).")
        return None

    def remember(self, tool_call: ToolCallRequest) -> ApprovalRule | None:
        """
        Allow calls like `tool_call` for the rest of the session.

        Shell calls are remembered as the exact command in the same directory; other tools by name.
        """

        if tool_call.tool_name == "run_shell_command":
            command = _normalize_command(tool_call.arguments.get("command"))
            if not command:
                return None
            rule = ApprovalRule(
                tool=tool_call.tool_name,
                prefix=command,
                exact=True,
                directory=_normalize_directory(tool_call.arguments.get("directory")),
            )
        else:
            rule = ApprovalRule(tool=tool_call.tool_name)
        self._session_allow.append(rule)
        return rule


class Approver(Protocol):
    """Front-end side of approvals: shows the request and returns the human's decision."""

    async def decide(self, request: ApprovalRequest) -> ApprovalDecision: ...


@dataclass(slots=True)
class PolicyApprover:
    """Answers every request the same way (headless runs and tests)."""

    decision: ApprovalDecision = field(default_factory=ApprovalDecision.deny)
    seen: list[ApprovalRequest] = field(default_factory=list)

    async def decide(self, request: ApprovalRequest) -> ApprovalDecision:
        self.seen.append(request)
        return self.decision


PendingHook = Callable[[ApprovalRecord], Awaitable[None]]


class ApprovalEngine:
    """
    Gates tool calls behind policy and human approval.

    One record per `(turn_id, tool_call_id)`. Once a record is terminal, asking again returns
    the stored decision without consulting the policy or the approver.
    """

    def __init__(self, *, policy: ApprovalPolicy | None = None, approver: Approver | None = None) -> None:
        self.policy = policy or ApprovalPolicy()
        self.approver: Approver = approver or PolicyApprover()
        self._records: dict[tuple[str, str], ApprovalRecord] = {}

    def requires_approval(self, descriptor: ToolDescriptor | None, tool_call: ToolCallRequest | None = None) -> bool:
        return self.policy.requires_approval(descriptor, tool_call)

    def record_for(self, tool_call: ToolCallRequest) -> ApprovalRecord | None:
        return self._records.get((tool_call.turn_id, tool_call.tool_call_id))

    def records(self) -> list[ApprovalRecord]:
        return list(self._records.values())

    def _build_request(self, tool_call: ToolCallRequest, descriptor: ToolDescriptor | None) -> ApprovalRequest:
        if descriptor is None:
            rationale = "Tool is not registered; treated as destructive."
        elif descriptor.destructive:
            rationale = "Tool is marked destructive."
        else:
            rationale = f"Approval mode is {self.policy.mode.value}."
        return ApprovalRequest(
            approval_id=new_id("appr"),
            tool_call=tool_call,
            descriptor=descriptor,
            action_summary=summarize_tool_call(tool_call.tool_name, tool_call.arguments),
            rationale=rationale,
            risk_level="high" if descriptor is None or descriptor.destructive else "low",
            preview=build_call_preview(tool_call.tool_name, tool_call.arguments),
        )

    async def request_approval(
        self,
        tool_call: ToolCallRequest,
        descriptor: ToolDescriptor | None,
        cancel: CancellationToken | None = None,
        *,
        on_pending: PendingHook | None = None,
    ) -> ApprovalDecision:
        key = (tool_call.turn_id, tool_call.tool_call_id)
        record = self._records.get(key)
        if record is not None and record.terminal:
            return record.decision()

        if record is None:
            record = ApprovalRecord(request=self._build_request(tool_call, descriptor))
            self._records[key] = record
            auto = self.policy.evaluate(tool_call, descriptor)
            if auto is not None:
                record.resolve(auto, decided_by=DecidedBy.POLICY)
                logger.info("Approval %s for %s resolved by policy: %s", record.request.approval_id, tool_call.tool_name, auto.status)
                return record.decision()

        if cancel is not None and cancel.cancelled:
            record.resolve(ApprovalDecision.cancel(cancel.reason), decided_by=DecidedBy.USER)
            return record.decision()

        if on_pending is not None:
            await on_pending(record)

        try:
            decision = await run_cancellable(self.approver.decide(record.request), cancel)
        except OperationCancelledError as e:
            decision = ApprovalDecision.cancel(str(e))
        except Exception as e:
            logger.warning("Approver failed for %s: %s", tool_call.tool_name, e)
            decision = ApprovalDecision.deny(rationale=f"Approver error: {e}")

        record.resolve(decision, decided_by=DecidedBy.USER)
        if decision.approved and decision.remember_for_session and descriptor is not None:
            rule = self.policy.remember(tool_call)
            if rule is not None:
                logger.info("Remembered approval rule for session: %s", rule)
        logger.info("Approval %s for %s resolved by user: %s", record.request.approval_id, tool_call.tool_name, decision.status)
        return record.decision()
