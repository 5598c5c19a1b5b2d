from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    # Turn-terminating
    TRANSIENT_NETWORK = "transient_network"
    AUTH_FAILURE = "auth_failure"
    MODEL_REQUEST_FAILED = "model_request_failed"
    MAX_TOOL_ROUNDS_EXCEEDED = "max_tool_rounds_exceeded"
    CANCELLED = "cancelled"
    BUSY = "busy"

    # Local to a single tool call; reported to the model
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_EXECUTION_FAILURE = "tool_execution_failure"
    MALFORMED_TOOL_CALL_PAYLOAD = "malformed_tool_call_payload"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_DENIED_WITH_FEEDBACK = "approval_denied_with_feedback"
    UNKNOWN_TOOL = "unknown_tool"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"

    UNKNOWN = "unknown"
