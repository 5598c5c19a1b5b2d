from __future__ import annotations

from typing import Iterator

import httpx

from .errors import CancellationToken, LLMErrorCode, LLMRequestError, ProviderAdapterError
from .types import CanonicalRequest, LLMStreamEvent, ModelProfile, ProviderKind


class LLMClient:
    """
    `ModelClient` backed by a single model profile.

    Streams fragments synchronously; the session consumes them on a worker thread.
    """

    def __init__(self, profile: ModelProfile, *, transport: httpx.BaseTransport | None = None) -> None:
        self._profile = profile
        self._transport = transport

    @property
    def profile(self) -> ModelProfile:
        return self._profile

    @staticmethod
    def _assert_profile_base_url(*, profile: ModelProfile, operation: str) -> None:
        if not profile.base_url.strip():
            raise LLMRequestError(
                "Model profile base_url is empty. Edit .tollgate/config.json and set model.base_url.",
                code=LLMErrorCode.BAD_REQUEST,
                provider_kind=profile.provider_kind,
                profile_id=profile.profile_id,
                model=profile.model_name,
                retryable=False,
                details={"operation": operation, "missing": "base_url"},
            )

    def stream(
        self,
        request: CanonicalRequest,
        *,
        cancel: CancellationToken | None = None,
        timeout_s: float | None = None,
    ) -> Iterator[LLMStreamEvent]:
        profile = self._profile
        self._assert_profile_base_url(profile=profile, operation="stream")

        if profile.provider_kind is ProviderKind.OPENAI_COMPATIBLE:
            from .client_openai_compatible import stream_openai_compatible

            yield from stream_openai_compatible(
                profile=profile,
                request=request,
                timeout_s=timeout_s,
                cancel=cancel,
                transport=self._transport,
            )
            return

        raise ProviderAdapterError(f"Unsupported provider_kind: {profile.provider_kind}")
