"""
Turn events.

Transcript events (`TranscriptEvent`) are the append-only, ordered record of a turn and are
replayed to the model on every follow-up call. Notifications (`TurnNotification`) are only
yielded to the front end while a turn runs and are never part of the transcript.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..error_codes import ErrorCode
from ..ids import new_id, now_ts_ms


class ToolCallOrigin(StrEnum):
    MODEL = "model"
    USER = "user"


class _TurnEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_id: str
    timestamp_ms: int = Field(default_factory=now_ts_ms)


class _TranscriptEventBase(_TurnEventBase):
    event_id: str = Field(default_factory=lambda: new_id("evt"))
    # Assigned by the session when the event is appended.
    sequence: int = 0
    # Model response that produced the event (None for user input and turn markers).
    step_id: str | None = None


class UserMessage(_TranscriptEventBase):
    kind: Literal["user_message"] = "user_message"
    text: str


class ModelText(_TranscriptEventBase):
    kind: Literal["model_text"] = "model_text"
    text: str


class ToolCallRequest(_TranscriptEventBase):
    kind: Literal["tool_call_request"] = "tool_call_request"
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    origin: ToolCallOrigin = ToolCallOrigin.MODEL


class ToolCallResult(_TranscriptEventBase):
    kind: Literal["tool_call_result"] = "tool_call_result"
    tool_call_id: str
    tool_name: str
    payload: Any = None
    duration_ms: int = 0


class ToolCallError(_TranscriptEventBase):
    kind: Literal["tool_call_error"] = "tool_call_error"
    tool_call_id: str
    tool_name: str
    error_code: ErrorCode
    message: str
    feedback: str | None = None
    # Set for malformed payloads so the projection can echo what the model sent.
    raw_arguments: str | None = None
    duration_ms: int = 0


class Cancelled(_TranscriptEventBase):
    kind: Literal["cancelled"] = "cancelled"
    reason: str = "cancelled"


TranscriptEvent = Annotated[
    Union[UserMessage, ModelText, ToolCallRequest, ToolCallResult, ToolCallError, Cancelled],
    Field(discriminator="kind"),
]

TRANSCRIPT_EVENT_ADAPTER: TypeAdapter[TranscriptEvent] = TypeAdapter(TranscriptEvent)


class ModelTextDelta(_TurnEventBase):
    kind: Literal["model_text_delta"] = "model_text_delta"
    step_id: str
    text: str


class ModelCallRetrying(_TurnEventBase):
    kind: Literal["model_call_retrying"] = "model_call_retrying"
    attempt: int
    max_attempts: int
    delay_s: float
    error_code: str
    message: str


class ApprovalRequested(_TurnEventBase):
    kind: Literal["approval_requested"] = "approval_requested"
    approval_id: str
    tool_call_id: str
    tool_name: str
    action_summary: str
    rationale: str | None = None
    risk_level: str = "high"
    preview: str | None = None


class ApprovalResolved(_TurnEventBase):
    kind: Literal["approval_resolved"] = "approval_resolved"
    approval_id: str
    tool_call_id: str
    status: str
    decided_by: str
    feedback: str | None = None


class ToolCallStarted(_TurnEventBase):
    kind: Literal["tool_call_started"] = "tool_call_started"
    tool_call_id: str
    tool_name: str
    summary: str


class TurnClosed(_TurnEventBase):
    kind: Literal["turn_closed"] = "turn_closed"
    final_text: str = ""


class TurnCancelled(_TurnEventBase):
    kind: Literal["turn_cancelled"] = "turn_cancelled"
    reason: str = "cancelled"


class TurnFailed(_TurnEventBase):
    kind: Literal["turn_failed"] = "turn_failed"
    error_code: ErrorCode
    message: str


TurnNotification = Union[
    ModelTextDelta,
    ModelCallRetrying,
    ApprovalRequested,
    ApprovalResolved,
    ToolCallStarted,
    TurnClosed,
    TurnCancelled,
    TurnFailed,
]

TurnEvent = Union[UserMessage, ModelText, ToolCallRequest, ToolCallResult, ToolCallError, Cancelled, TurnNotification]

TERMINAL_EVENT_TYPES: tuple[type[BaseModel], ...] = (TurnClosed, TurnCancelled, TurnFailed)


def is_terminal(event: BaseModel) -> bool:
    return isinstance(event, TERMINAL_EVENT_TYPES)
