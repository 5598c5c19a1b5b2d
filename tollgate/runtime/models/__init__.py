from __future__ import annotations

from .audit_event import AuditEvent, AuditEventType
from .events import (
    TRANSCRIPT_EVENT_ADAPTER,
    ApprovalRequested,
    ApprovalResolved,
    Cancelled,
    ModelCallRetrying,
    ModelText,
    ModelTextDelta,
    ToolCallError,
    ToolCallOrigin,
    ToolCallRequest,
    ToolCallResult,
    ToolCallStarted,
    TranscriptEvent,
    TurnCancelled,
    TurnClosed,
    TurnEvent,
    TurnFailed,
    TurnNotification,
    UserMessage,
    is_terminal,
)
from .tool_descriptor import ToolDescriptor

__all__ = [
    "ApprovalRequested",
    "ApprovalResolved",
    "AuditEvent",
    "AuditEventType",
    "Cancelled",
    "ModelCallRetrying",
    "ModelText",
    "ModelTextDelta",
    "TRANSCRIPT_EVENT_ADAPTER",
    "ToolCallError",
    "ToolCallOrigin",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallStarted",
    "ToolDescriptor",
    "TranscriptEvent",
    "TurnCancelled",
    "TurnClosed",
    "TurnEvent",
    "TurnFailed",
    "TurnNotification",
    "UserMessage",
    "is_terminal",
]
