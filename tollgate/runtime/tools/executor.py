from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterable, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, best_match

from ..error_codes import ErrorCode
from ..llm.errors import CancellationToken, OperationCancelledError, run_cancellable
from ..models import ToolCallRequest, ToolDescriptor
from .base import ToolError, ToolExecutionContext
from .registry import ToolRegistry

logger = logging.getLogger(__name__)


class ExecutionStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    tool_call_id: str
    tool_name: str
    status: ExecutionStatus
    payload: Any = None
    error_code: ErrorCode | None = None
    message: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ExecutionStatus.SUCCEEDED

    @classmethod
    def success(cls, request: ToolCallRequest, payload: Any, *, duration_ms: int = 0) -> "ExecutionResult":
        return cls(
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            status=ExecutionStatus.SUCCEEDED,
            payload=payload,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(
        cls,
        request: ToolCallRequest,
        code: ErrorCode,
        message: str,
        *,
        duration_ms: int = 0,
    ) -> "ExecutionResult":
        return cls(
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            status=ExecutionStatus.FAILED,
            error_code=code,
            message=message,
            duration_ms=duration_ms,
        )

    @classmethod
    def cancelled(cls, request: ToolCallRequest, reason: str | None = None, *, duration_ms: int = 0) -> "ExecutionResult":
        return cls(
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            status=ExecutionStatus.CANCELLED,
            error_code=ErrorCode.CANCELLED,
            message=reason or "cancelled",
            duration_ms=duration_ms,
        )


def _classify_tool_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, ToolError):
        return exc.code
    if isinstance(exc, PermissionError):
        return ErrorCode.PERMISSION
    if isinstance(exc, FileNotFoundError):
        return ErrorCode.NOT_FOUND
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT
    if isinstance(exc, ValueError):
        return ErrorCode.INVALID_ARGUMENTS
    return ErrorCode.TOOL_EXECUTION_FAILURE


def _jsonable(value: Any) -> Any:
    """Best-effort conversion of a tool payload into JSON-compatible data."""

    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return _jsonable(model_dump(mode="json"))
    return str(value)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ToolExecutor:
    """
    Runs validated tool calls against the registry.

    `execute()` never raises: every outcome (unknown tool, bad arguments, tool exception,
    cancellation) is reported as an `ExecutionResult`.
    """

    def __init__(
        self,
        *,
        registry: ToolRegistry,
        cwd: Path,
        env: Mapping[str, str] | None = None,
        session_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._cwd = Path(cwd)
        self._env = dict(env or {})
        self._session_id = session_id
        self._validators: dict[str, Draft202012Validator] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def _validator_for(self, descriptor: ToolDescriptor) -> Draft202012Validator:
        validator = self._validators.get(descriptor.name)
        if validator is None:
            Draft202012Validator.check_schema(descriptor.parameters)
            validator = Draft202012Validator(descriptor.parameters)
            self._validators[descriptor.name] = validator
        return validator

    def validate_arguments(self, descriptor: ToolDescriptor, arguments: dict[str, Any]) -> str | None:
        """Return a human readable validation message, or None when `arguments` are valid."""

        try:
            validator = self._validator_for(descriptor)
        except SchemaError as e:
            return f"Tool {descriptor.name} has an invalid parameter schema: {e.message}"
        error = best_match(validator.iter_errors(arguments))
        if error is None:
            return None
        where = "/".join(str(p) for p in error.absolute_path)
        return f"{where}: {error.message}" if where else error.message

    async def execute(
        self,
        request: ToolCallRequest,
        cancel: CancellationToken,
        *,
        turn_id: str | None = None,
    ) -> ExecutionResult:
        tool = self._registry.get(request.tool_name)
        if tool is None:
            return ExecutionResult.failure(request, ErrorCode.UNKNOWN_TOOL, f"Unknown tool: {request.tool_name}")

        if cancel.cancelled:
            return ExecutionResult.cancelled(request, cancel.reason)

        problem = self.validate_arguments(tool.descriptor, request.arguments)
        if problem is not None:
            return ExecutionResult.failure(request, ErrorCode.INVALID_ARGUMENTS, f"Invalid arguments: {problem}")

        context = ToolExecutionContext(
            cwd=self._cwd,
            cancel=cancel,
            env=self._env,
            session_id=self._session_id,
            turn_id=turn_id or request.turn_id,
            tool_call_id=request.tool_call_id,
        )
        args = dict(request.arguments)

        started = time.monotonic()
        try:
            if inspect.iscoroutinefunction(tool.invoke):
                payload = await run_cancellable(tool.invoke(args, context), cancel)
            else:
                payload = await run_cancellable(asyncio.to_thread(tool.invoke, args, context), cancel)
        except OperationCancelledError as e:
            logger.info("Tool %s (%s) cancelled", request.tool_name, request.tool_call_id)
            return ExecutionResult.cancelled(request, str(e), duration_ms=_elapsed_ms(started))
        except Exception as e:
            code = _classify_tool_exception(e)
            logger.warning("Tool %s (%s) failed: %s: %s", request.tool_name, request.tool_call_id, code, e)
            return ExecutionResult.failure(request, code, str(e) or type(e).__name__, duration_ms=_elapsed_ms(started))

        if cancel.cancelled:
            # The tool returned, but only after the turn was cancelled.
            return ExecutionResult.cancelled(request, cancel.reason, duration_ms=_elapsed_ms(started))
        return ExecutionResult.success(request, _jsonable(payload), duration_ms=_elapsed_ms(started))

    async def execute_batch(
        self,
        requests: Iterable[ToolCallRequest],
        cancel: CancellationToken,
        *,
        turn_id: str | None = None,
    ) -> list[ExecutionResult]:
        """Run `requests` concurrently; results come back in request order."""

        batch = list(requests)
        if not batch:
            return []
        return list(await asyncio.gather(*(self.execute(r, cancel, turn_id=turn_id) for r in batch)))
