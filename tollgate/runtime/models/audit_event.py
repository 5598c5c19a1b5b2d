from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class AuditEventType(StrEnum):
    TURN_OPENED = "turn_opened"
    TRANSCRIPT_EVENT = "transcript_event"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    MODEL_CALL_RETRIED = "model_call_retried"
    TURN_CLOSED = "turn_closed"


class AuditEvent(BaseModel):
    """
    One line of the session audit log.

    Stored as JSONL (one JSON object per line) by `AuditLog`.
    """

    event_type: AuditEventType
    timestamp: datetime
    session_id: str
    turn_id: str | None = None
    tool_call_id: str | None = None

    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("turn_id", "tool_call_id")
    @classmethod
    def _strip_empty_optional_ids(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = v.strip()
        return s or None
