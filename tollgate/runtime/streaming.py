"""
Turns raw model stream fragments into typed items.

The handler is a single-use, lazy iterator: it pulls fragments only as the caller consumes
items and refuses a second pass. A new model call gets a new handler.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Union

from .error_codes import ErrorCode
from .llm.errors import LLMErrorCode, LLMRequestError
from .llm.types import LLMStreamEvent, LLMStreamEventKind


class StreamConsumedError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class TextChunk:
    text: str


@dataclass(frozen=True, slots=True)
class ParsedToolCall:
    tool_call_id: str | None
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass(frozen=True, slots=True)
class MalformedToolCall:
    tool_call_id: str | None
    tool_name: str
    raw_arguments: str
    message: str
    error_code: ErrorCode = ErrorCode.MALFORMED_TOOL_CALL_PAYLOAD


@dataclass(frozen=True, slots=True)
class EndOfTurn:
    finish_reason: str | None = None


StreamItem = Union[TextChunk, ParsedToolCall, MalformedToolCall, EndOfTurn]


def parse_tool_arguments(raw: str | None) -> dict[str, Any]:
    """
    Parse a streamed tool-call argument payload.

    Empty or whitespace-only payloads mean "no arguments". Raises `ValueError` for invalid
    JSON or a JSON value that is not an object.
    """

    text = (raw or "").strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Tool arguments are not valid JSON: {e.msg} (line {e.lineno} column {e.colno})") from e
    if not isinstance(value, dict):
        raise ValueError(f"Tool arguments must be a JSON object, got {type(value).__name__}.")
    return value


class StreamingResponseHandler:
    def __init__(self, fragments: Iterable[LLMStreamEvent]) -> None:
        self._fragments = fragments
        self._consumed = False
        self._parts: list[str] = []
        self._ended = False

    @property
    def text(self) -> str:
        """Text accumulated so far (display only)."""

        return "".join(self._parts)

    @property
    def ended(self) -> bool:
        return self._ended

    def __iter__(self) -> Iterator[StreamItem]:
        if self._consumed:
            raise StreamConsumedError("Stream already consumed; start a new model call to retry.")
        self._consumed = True
        return self._iterate()

    def _iterate(self) -> Iterator[StreamItem]:
        for fragment in self._fragments:
            if fragment.kind is LLMStreamEventKind.TEXT_DELTA:
                if fragment.text_delta:
                    self._parts.append(fragment.text_delta)
                    yield TextChunk(fragment.text_delta)
            elif fragment.kind is LLMStreamEventKind.TOOL_CALL:
                if fragment.tool_call is not None:
                    yield self._parse_call(fragment)
            elif fragment.kind is LLMStreamEventKind.END_OF_TURN:
                self._ended = True
                yield EndOfTurn(fragment.finish_reason)
                # Anything after the end marker is ignored.
                return

        raise LLMRequestError(
            "Model stream ended without an end-of-turn marker.",
            code=LLMErrorCode.NETWORK_ERROR,
            retryable=True,
            details={"operation": "stream", "partial_text_chars": len(self.text)},
        )

    @staticmethod
    def _parse_call(fragment: LLMStreamEvent) -> ParsedToolCall | MalformedToolCall:
        call = fragment.tool_call
        assert call is not None
        name = (call.name or "").strip()
        raw = call.raw_arguments or ""
        if not name:
            return MalformedToolCall(
                tool_call_id=call.tool_call_id,
                tool_name="",
                raw_arguments=raw,
                message="Tool call is missing a tool name.",
            )
        try:
            arguments = parse_tool_arguments(raw)
        except ValueError as e:
            return MalformedToolCall(tool_call_id=call.tool_call_id, tool_name=name, raw_arguments=raw, message=str(e))
        return ParsedToolCall(tool_call_id=call.tool_call_id, tool_name=name, arguments=arguments, raw_arguments=raw)
