from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from ..error_codes import ErrorCode
from ..llm.errors import CancellationToken
from ..models import ToolDescriptor


class ToolError(RuntimeError):
    """Expected tool failure carrying an error code for the transcript."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.TOOL_EXECUTION_FAILURE) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True, slots=True)
class ToolExecutionContext:
    """
    Explicit execution context passed to every tool invocation.

    Tools resolve relative paths against `cwd`, build subprocess environments from `env`, and
    poll `cancel` during long operations instead of reading process-wide state.
    """

    cwd: Path
    cancel: CancellationToken
    env: Mapping[str, str] = field(default_factory=dict)
    session_id: str | None = None
    turn_id: str | None = None
    tool_call_id: str | None = None

    def resolve_path(self, raw: str) -> Path:
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = self.cwd / p
        return p.resolve()


@runtime_checkable
class Tool(Protocol):
    """
    Uniform invocation contract for registered tools.

    `invoke` may be a plain function (run on a worker thread) or `async def`. It returns a
    JSON-serialisable payload or raises (`ToolError` for expected failures).
    """

    descriptor: ToolDescriptor

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> Any: ...
