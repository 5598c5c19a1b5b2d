from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Iterator, Protocol, TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from .errors import CancellationToken


class ProviderKind(StrEnum):
    OPENAI_COMPATIBLE = "openai_compatible"


class CredentialRef(BaseModel):
    """
    Pointer to a secret, never the secret itself (except `inline`, meant for local stubs).

    Serialized as `<kind>:<identifier>`, e.g. `env:OPENAI_API_KEY`.
    """

    kind: str
    identifier: str

    @classmethod
    def parse(cls, raw: str) -> "CredentialRef":
        kind, sep, identifier = str(raw).partition(":")
        if not sep:
            # Bare names are environment variables.
            return cls(kind="env", identifier=kind.strip())
        return cls(kind=kind.strip().lower(), identifier=identifier.strip())

    def to_redacted_string(self) -> str:
        if self.kind == "env":
            return f"env:{self.identifier}"
        return f"{self.kind}:***"


class ModelProfile(BaseModel):
    profile_id: str = "default"
    provider_kind: ProviderKind = ProviderKind.OPENAI_COMPATIBLE
    base_url: str = "https://api.openai.com/v1"
    model_name: str = "gpt-4o-mini"
    credential_ref: CredentialRef | None = Field(default_factory=lambda: CredentialRef(kind="env", identifier="OPENAI_API_KEY"))
    timeout_s: float = Field(default=120.0, gt=0)
    default_params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("credential_ref", mode="before")
    @classmethod
    def _parse_credential_ref(cls, v: Any) -> Any:
        if isinstance(v, str):
            return CredentialRef.parse(v)
        return v


class CanonicalMessageRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool_call_id: str | None
    name: str
    # Raw JSON text exactly as the provider streamed it; parsed by the streaming handler.
    raw_arguments: str = ""


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    role: CanonicalMessageRole
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True, slots=True)
class CanonicalRequest:
    system: str | None
    messages: list[CanonicalMessage]
    tools: list[ToolSpec] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)


class LLMStreamEventKind(StrEnum):
    TEXT_DELTA = "text_delta"
    TOOL_CALL = "tool_call"
    END_OF_TURN = "end_of_turn"


@dataclass(frozen=True, slots=True)
class LLMStreamEvent:
    kind: LLMStreamEventKind
    text_delta: str | None = None
    tool_call: ToolCall | None = None
    finish_reason: str | None = None

    @classmethod
    def text(cls, delta: str) -> "LLMStreamEvent":
        return cls(kind=LLMStreamEventKind.TEXT_DELTA, text_delta=delta)

    @classmethod
    def call(cls, tool_call_id: str | None, name: str, raw_arguments: str) -> "LLMStreamEvent":
        return cls(
            kind=LLMStreamEventKind.TOOL_CALL,
            tool_call=ToolCall(tool_call_id=tool_call_id, name=name, raw_arguments=raw_arguments),
        )

    @classmethod
    def end(cls, finish_reason: str | None = "stop") -> "LLMStreamEvent":
        return cls(kind=LLMStreamEventKind.END_OF_TURN, finish_reason=finish_reason)


class ModelClient(Protocol):
    """
    Model call boundary.

    `stream()` returns a synchronous iterator of fragments; it may block on I/O and is
    consumed on a worker thread. Implementations should check `cancel` between fragments.
    """

    def stream(self, request: CanonicalRequest, *, cancel: "CancellationToken | None" = None) -> Iterator[LLMStreamEvent]: ...
