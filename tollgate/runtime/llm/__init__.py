from __future__ import annotations

from .client import LLMClient
from .errors import (
    CancellationToken,
    CredentialResolutionError,
    LLMErrorCode,
    LLMRequestError,
    OperationCancelledError,
    ProviderAdapterError,
    run_cancellable,
)
from .types import (
    CanonicalMessage,
    CanonicalMessageRole,
    CanonicalRequest,
    CredentialRef,
    LLMStreamEvent,
    LLMStreamEventKind,
    ModelClient,
    ModelProfile,
    ProviderKind,
    ToolCall,
    ToolSpec,
)

__all__ = [
    "CancellationToken",
    "CanonicalMessage",
    "CanonicalMessageRole",
    "CanonicalRequest",
    "CredentialRef",
    "CredentialResolutionError",
    "LLMClient",
    "LLMErrorCode",
    "LLMRequestError",
    "LLMStreamEvent",
    "LLMStreamEventKind",
    "ModelClient",
    "ModelProfile",
    "OperationCancelledError",
    "ProviderAdapterError",
    "ProviderKind",
    "ToolCall",
    "ToolSpec",
    "run_cancellable",
]
