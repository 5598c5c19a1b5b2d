from __future__ import annotations

import asyncio
import contextlib
import threading
from enum import StrEnum
from typing import Any, Awaitable, Callable, TypeVar

from ..error_codes import ErrorCode
from .types import ProviderKind

T = TypeVar("T")


class CredentialResolutionError(RuntimeError):
    def __init__(self, message: str, *, credential_ref: str | None = None) -> None:
        super().__init__(message)
        self.credential_ref = credential_ref


class ProviderAdapterError(RuntimeError):
    pass


class LLMErrorCode(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    BAD_REQUEST = "bad_request"
    UNPROCESSABLE = "unprocessable"
    RESPONSE_VALIDATION = "response_validation"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class OperationCancelledError(RuntimeError):
    """Raised by `run_cancellable` when the token fires before the awaitable finishes."""


class CancellationToken:
    """
    Cooperative cancellation flag shared by one turn.

    Safe to cancel from any thread (e.g. a SIGINT handler or a UI thread). Worker threads poll
    `cancelled`; coroutines `await token.wait()` or use `run_cancellable`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason or "cancelled"
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """
        Register `cb` to run once on cancel. Runs immediately if already cancelled.

        Returns a function that unregisters the callback.
        """

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)

                def _remove() -> None:
                    with self._lock:
                        with contextlib.suppress(ValueError):
                            self._callbacks.remove(cb)

                return _remove
        cb()
        return lambda: None

    async def wait(self) -> None:
        if self.cancelled:
            return
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()

        def _resolve() -> None:
            if not fut.done():
                fut.set_result(None)

        def _wake() -> None:
            # May fire from a foreign thread, or after the loop has shut down.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(_resolve)

        remove = self.add_callback(_wake)
        try:
            await fut
        finally:
            remove()


async def run_cancellable(aw: Awaitable[T], cancel: CancellationToken | None) -> T:
    """
    Await `aw` unless `cancel` fires first.

    On cancellation the inner task is cancelled (best effort: a worker thread behind it keeps
    running until it notices the token) and `OperationCancelledError` is raised.
    """

    if cancel is None:
        return await aw
    if cancel.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise OperationCancelledError(cancel.reason or "cancelled")

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if not waiter.done():
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter

    if task.done():
        return task.result()

    task.cancel()
    # Do not wait for the task: a hung tool must never hang the turn.
    task.add_done_callback(_consume_task_result)
    raise OperationCancelledError(cancel.reason or "cancelled")


def _consume_task_result(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    # Retrieve the exception so asyncio does not log "exception was never retrieved".
    task.exception()


class LLMRequestError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: LLMErrorCode,
        provider_kind: ProviderKind | None = None,
        profile_id: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        request_id: str | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider_kind = provider_kind
        self.profile_id = profile_id
        self.model = model
        self.status_code = status_code
        self.request_id = request_id
        self.retryable = is_retryable_error_code(code) if retryable is None else retryable
        self.details = details
        self.__cause__ = cause


def is_retryable_error_code(code: LLMErrorCode) -> bool:
    return code in {
        LLMErrorCode.TIMEOUT,
        LLMErrorCode.RATE_LIMIT,
        LLMErrorCode.SERVER_ERROR,
        LLMErrorCode.NETWORK_ERROR,
    }


def classify_status_code(status_code: int) -> LLMErrorCode:
    if status_code == 400:
        return LLMErrorCode.BAD_REQUEST
    if status_code == 401:
        return LLMErrorCode.AUTH
    if status_code == 403:
        return LLMErrorCode.PERMISSION
    if status_code == 404:
        return LLMErrorCode.NOT_FOUND
    if status_code in {408, 504}:
        return LLMErrorCode.TIMEOUT
    if status_code == 409:
        return LLMErrorCode.CONFLICT
    if status_code == 422:
        return LLMErrorCode.UNPROCESSABLE
    if status_code == 429:
        return LLMErrorCode.RATE_LIMIT
    if 500 <= status_code <= 599:
        return LLMErrorCode.SERVER_ERROR
    return LLMErrorCode.UNKNOWN


def classify_provider_exception(exc: BaseException) -> LLMErrorCode:
    if isinstance(exc, LLMRequestError):
        return exc.code
    if isinstance(exc, CredentialResolutionError):
        return LLMErrorCode.AUTH
    if isinstance(exc, TimeoutError):
        return LLMErrorCode.TIMEOUT
    if isinstance(exc, ConnectionError):
        return LLMErrorCode.NETWORK_ERROR

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_status_code(status_code)

    return LLMErrorCode.UNKNOWN


def turn_error_code(code: LLMErrorCode) -> ErrorCode:
    """Collapse a provider error code into the turn-level taxonomy."""

    if code in {LLMErrorCode.AUTH, LLMErrorCode.PERMISSION}:
        return ErrorCode.AUTH_FAILURE
    if code is LLMErrorCode.CANCELLED:
        return ErrorCode.CANCELLED
    if is_retryable_error_code(code):
        return ErrorCode.TRANSIENT_NETWORK
    return ErrorCode.MODEL_REQUEST_FAILED
