from __future__ import annotations

import httpx

from .errors import LLMErrorCode, LLMRequestError, classify_status_code, is_retryable_error_code
from .types import ProviderKind


def _wrap_httpx_like_exception(
    exc: BaseException,
    *,
    provider_kind: ProviderKind,
    profile_id: str,
    model: str | None,
    operation: str,
) -> LLMRequestError:
    status_code: int | None = None
    body_snippet: str | None = None
    if isinstance(exc, httpx.TimeoutException):
        code = LLMErrorCode.TIMEOUT
    elif isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        code = LLMErrorCode.NETWORK_ERROR
    elif isinstance(exc, httpx.HTTPStatusError):
        status_code = int(exc.response.status_code)
        try:
            text = exc.response.text
        except httpx.ResponseNotRead:
            text = None
        if isinstance(text, str) and text.strip():
            body_snippet = text.strip()[:2000]
        code = classify_status_code(status_code)
    else:
        code = LLMErrorCode.UNKNOWN

    message = str(exc) or exc.__class__.__name__
    if body_snippet:
        message = f"{message}\n\nProvider response (truncated):\n{body_snippet}"
    return LLMRequestError(
        message,
        code=code,
        provider_kind=provider_kind,
        profile_id=profile_id,
        model=model,
        status_code=status_code,
        request_id=None,
        retryable=is_retryable_error_code(code),
        details={"operation": operation},
        cause=exc,
    )
