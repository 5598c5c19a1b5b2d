from __future__ import annotations

from .base import Tool, ToolError, ToolExecutionContext
from .builtins import (
    DeleteFileTool,
    ListDirTool,
    ReadFileTool,
    RunShellCommandTool,
    WebFetchTool,
    WriteFileTool,
    builtin_tools,
    default_registry,
)
from .executor import ExecutionResult, ExecutionStatus, ToolExecutor
from .previews import build_call_preview, summarize_tool_call
from .registry import RegistryFrozenError, ToolAlreadyRegisteredError, ToolRegistry

__all__ = [
    "DeleteFileTool",
    "ExecutionResult",
    "ExecutionStatus",
    "ListDirTool",
    "ReadFileTool",
    "RegistryFrozenError",
    "RunShellCommandTool",
    "Tool",
    "ToolAlreadyRegisteredError",
    "ToolError",
    "ToolExecutionContext",
    "ToolExecutor",
    "ToolRegistry",
    "WebFetchTool",
    "WriteFileTool",
    "build_call_preview",
    "builtin_tools",
    "default_registry",
    "summarize_tool_call",
]
