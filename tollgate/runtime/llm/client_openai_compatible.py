from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import urljoin, urlparse

import httpx

from .client_httpx_errors import _wrap_httpx_like_exception
from .errors import CancellationToken, LLMErrorCode, LLMRequestError, ProviderAdapterError
from .secrets import resolve_credential
from .types import CanonicalMessageRole, CanonicalRequest, LLMStreamEvent, ModelProfile, ProviderKind

logger = logging.getLogger(__name__)

_DONE: dict[str, Any] = {"__done__": True}


@dataclass(frozen=True, slots=True)
class PreparedRequest:
    url: str
    headers: dict[str, str]
    payload: dict[str, Any]


def _validate_base_url(base_url: str) -> str:
    parsed = urlparse(base_url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ProviderAdapterError(f"Invalid base_url for model profile: {base_url!r}")
    return base_url.strip()


def prepare_request(profile: ModelProfile, request: CanonicalRequest) -> PreparedRequest:
    """Build an OpenAI-compatible `/chat/completions` streaming payload."""

    if profile.provider_kind is not ProviderKind.OPENAI_COMPATIBLE:
        raise ProviderAdapterError("Profile provider_kind mismatch for openai_compatible client.")

    base_url = _validate_base_url(profile.base_url)
    url = urljoin(base_url.rstrip("/") + "/", "chat/completions")

    headers: dict[str, str] = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if profile.credential_ref is not None:
        token = resolve_credential(profile.credential_ref)
        headers["Authorization"] = f"Bearer {token}"

    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    for msg in request.messages:
        if msg.role is CanonicalMessageRole.TOOL:
            messages.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
            continue
        if msg.role is CanonicalMessageRole.ASSISTANT:
            item: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
            if msg.tool_calls:
                item["tool_calls"] = [
                    {
                        "id": tc.tool_call_id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.raw_arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ]
            messages.append(item)
            continue
        messages.append({"role": msg.role.value, "content": msg.content})

    payload: dict[str, Any] = dict(profile.default_params)
    payload.update(request.params)
    payload["model"] = profile.model_name
    payload["stream"] = True
    payload["messages"] = messages
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
            }
            for t in request.tools
        ]
    return PreparedRequest(url=url, headers=headers, payload=payload)


def _iter_sse_json(lines: Iterator[str]) -> Iterator[dict[str, Any]]:
    """
    Yield JSON objects from an SSE-ish response.

    Supports:
    - standard SSE framing: `data: {...}` separated by blank lines
    - newline-delimited JSON objects (some gateways omit SSE framing)

    The `[DONE]` sentinel is yielded as `_DONE`.
    """

    buf: list[str] = []

    def _flush() -> dict[str, Any] | None:
        if not buf:
            return None
        raw = "\n".join(buf).strip()
        buf.clear()
        if not raw:
            return None
        if raw == "[DONE]":
            return _DONE
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Dropping undecodable SSE frame: %.200s", raw)
            return None
        return data if isinstance(data, dict) else None

    for line in lines:
        s = str(line).strip()
        if not s:
            data = _flush()
            if data is not None:
                yield data
            continue
        if s.startswith(":") or s.startswith("event:"):
            continue
        if s.startswith("data:"):
            buf.append(s[len("data:") :].lstrip())
            continue
        if s.startswith("{"):
            try:
                loaded = json.loads(s)
            except json.JSONDecodeError:
                continue
            if isinstance(loaded, dict):
                yield loaded
            continue
        buf.append(s)

    data = _flush()
    if data is not None:
        yield data


def chat_chunks_to_events(chunks: Iterator[dict[str, Any]]) -> Iterator[LLMStreamEvent]:
    """
    Convert chat-completions stream chunks to fragments.

    Tool-call argument deltas are accumulated per `index` and emitted whole once the provider
    signals completion. A stream that stops without `finish_reason` or `[DONE]` yields no
    end-of-turn marker, leaving the caller to treat it as truncated.
    """

    calls: dict[int, dict[str, Any]] = {}
    finish_reason: str | None = None
    finished = False

    for chunk in chunks:
        if chunk is _DONE:
            finished = True
            break
        err = chunk.get("error")
        if isinstance(err, dict):
            raise LLMRequestError(
                str(err.get("message") or "Provider reported an error mid-stream."),
                code=LLMErrorCode.SERVER_ERROR,
                details={"operation": "stream", "error": err},
            )
        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices:
            continue
        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}

        content = delta.get("content")
        if isinstance(content, str) and content:
            yield LLMStreamEvent.text(content)

        for raw_call in delta.get("tool_calls") or []:
            if not isinstance(raw_call, dict):
                continue
            index = raw_call.get("index")
            index = index if isinstance(index, int) else len(calls)
            acc = calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
            if isinstance(raw_call.get("id"), str) and raw_call["id"]:
                acc["id"] = raw_call["id"]
            fn = raw_call.get("function") if isinstance(raw_call.get("function"), dict) else {}
            if isinstance(fn.get("name"), str):
                acc["name"] += fn["name"]
            if isinstance(fn.get("arguments"), str):
                acc["arguments"] += fn["arguments"]

        reason = choice.get("finish_reason")
        if isinstance(reason, str) and reason:
            finish_reason = reason
            finished = True

    if not finished:
        return

    for index in sorted(calls):
        acc = calls[index]
        yield LLMStreamEvent.call(acc["id"], acc["name"], acc["arguments"])
    yield LLMStreamEvent.end(finish_reason or "stop")


def stream_openai_compatible(
    *,
    profile: ModelProfile,
    request: CanonicalRequest,
    timeout_s: float | None = None,
    cancel: CancellationToken | None = None,
    transport: httpx.BaseTransport | None = None,
) -> Iterator[LLMStreamEvent]:
    prepared = prepare_request(profile, request)
    timeout_value = float(timeout_s if timeout_s is not None else profile.timeout_s)
    timeout = httpx.Timeout(timeout_value, read=timeout_value)

    def _wrap(exc: BaseException) -> LLMRequestError:
        return _wrap_httpx_like_exception(
            exc,
            provider_kind=profile.provider_kind,
            profile_id=profile.profile_id,
            model=profile.model_name,
            operation="stream",
        )

    def _cancelled() -> LLMRequestError:
        return LLMRequestError(
            "Model request cancelled.",
            code=LLMErrorCode.CANCELLED,
            provider_kind=profile.provider_kind,
            profile_id=profile.profile_id,
            model=profile.model_name,
            retryable=False,
            details={"operation": "stream"},
        )

    if cancel is not None and cancel.cancelled:
        raise _cancelled()

    with httpx.Client(timeout=timeout, transport=transport) as client:
        try:
            with client.stream("POST", prepared.url, headers=prepared.headers, json=prepared.payload) as resp:
                # Closing the response unblocks a read stuck on the socket.
                remove = cancel.add_callback(resp.close) if cancel is not None else (lambda: None)
                try:
                    if resp.is_error:
                        resp.read()
                    resp.raise_for_status()
                    for ev in chat_chunks_to_events(_iter_sse_json(resp.iter_lines())):
                        if cancel is not None and cancel.cancelled:
                            raise _cancelled()
                        yield ev
                finally:
                    remove()
        except httpx.HTTPError as e:
            if cancel is not None and cancel.cancelled:
                raise _cancelled() from e
            raise _wrap(e) from e
        except httpx.StreamError as e:
            if cancel is not None and cancel.cancelled:
                raise _cancelled() from e
            raise _wrap(e) from e
