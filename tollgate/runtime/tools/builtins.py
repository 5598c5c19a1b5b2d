from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

import httpx

from ..error_codes import ErrorCode
from ..models import ToolDescriptor
from .base import ToolError, ToolExecutionContext
from .registry import ToolRegistry

_SHELL_POLL_S = 0.1


def _resolve_in_cwd(context: ToolExecutionContext, raw: Any, *, field_name: str = "path") -> Path:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"Missing or invalid '{field_name}' (expected non-empty string).")
    candidate = context.resolve_path(raw.strip())
    root = context.cwd.resolve()
    if candidate != root and root not in candidate.parents:
        raise PermissionError(f"Path escapes the working directory: {raw}")
    return candidate


def _relative(context: ToolExecutionContext, path: Path) -> str:
    try:
        rel = path.relative_to(context.cwd.resolve())
    except ValueError:
        return str(path)
    return str(rel) or "."


def _truncate_text(text: str, max_chars: int) -> tuple[str, bool]:
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars] + "…", True


@dataclass(frozen=True, slots=True)
class ListDirTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="list_dir",
        display_name="List directory",
        description="List the entries of a directory relative to the working directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory to list (default '.')."},
                "include_hidden": {"type": "boolean", "description": "Include dot-files (default false)."},
            },
            "additionalProperties": False,
        },
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        target = _resolve_in_cwd(context, args.get("path") or ".")
        if not target.exists():
            raise FileNotFoundError(f"No such directory: {_relative(context, target)}")
        if not target.is_dir():
            raise ValueError(f"Not a directory: {_relative(context, target)}")
        include_hidden = bool(args.get("include_hidden", False))

        entries: list[dict[str, Any]] = []
        for child in sorted(target.iterdir(), key=lambda p: p.name):
            if not include_hidden and child.name.startswith("."):
                continue
            kind = "dir" if child.is_dir() else "file"
            item: dict[str, Any] = {"name": child.name, "type": kind}
            if kind == "file":
                with contextlib.suppress(OSError):
                    item["size"] = child.stat().st_size
            entries.append(item)
        return {"path": _relative(context, target), "entries": entries}


@dataclass(frozen=True, slots=True)
class ReadFileTool:
    max_chars: int = 64_000

    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="read_file",
        display_name="Read file",
        description="Read a UTF-8 text file relative to the working directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "max_chars": {"type": "integer", "minimum": 1, "description": "Truncate content (default 64000)."},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        target = _resolve_in_cwd(context, args.get("path"))
        if not target.is_file():
            raise FileNotFoundError(f"No such file: {_relative(context, target)}")
        text = target.read_text(encoding="utf-8", errors="replace")
        content, truncated = _truncate_text(text, int(args.get("max_chars") or self.max_chars))
        return {"path": _relative(context, target), "content": content, "truncated": truncated}


@dataclass(frozen=True, slots=True)
class WriteFileTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="write_file",
        display_name="Write file",
        description="Create or overwrite a UTF-8 text file relative to the working directory.",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
                "create_dirs": {"type": "boolean", "description": "Create missing parent directories (default true)."},
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        },
        destructive=True,
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        target = _resolve_in_cwd(context, args.get("path"))
        content = args.get("content")
        if not isinstance(content, str):
            raise ValueError("Missing or invalid 'content' (expected string).")
        if target.is_dir():
            raise ValueError(f"Path is a directory: {_relative(context, target)}")
        if args.get("create_dirs", True):
            target.parent.mkdir(parents=True, exist_ok=True)
        existed = target.exists()
        target.write_text(content, encoding="utf-8")
        return {"path": _relative(context, target), "bytes": len(content.encode("utf-8")), "created": not existed}


@dataclass(frozen=True, slots=True)
class DeleteFileTool:
    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="delete_file",
        display_name="Delete file",
        description="Delete a single file relative to the working directory. Directories are refused.",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
            "additionalProperties": False,
        },
        destructive=True,
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        target = _resolve_in_cwd(context, args.get("path"))
        if target.is_dir():
            raise ValueError(f"Refusing to delete a directory: {_relative(context, target)}")
        if not target.exists():
            raise FileNotFoundError(f"No such file: {_relative(context, target)}")
        target.unlink()
        return {"path": _relative(context, target), "deleted": True}


def _kill_process_tree(proc: subprocess.Popen[bytes]) -> None:
    if proc.poll() is not None:
        return
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


@dataclass(frozen=True, slots=True)
class RunShellCommandTool:
    default_timeout_s: float = 120.0
    max_output_chars: int = 16_000

    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="run_shell_command",
        display_name="Run shell command",
        description=(
            "Run a shell command in the working directory (or a subdirectory). "
            "Returns exit code, stdout and stderr. Requires user approval."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "description": {"type": "string", "description": "Short note on what the command is for."},
                "directory": {"type": "string", "description": "Relative working directory (default '.')."},
                "timeout_s": {"type": "number", "exclusiveMinimum": 0, "description": "Timeout seconds (default 120)."},
            },
            "required": ["command"],
            "additionalProperties": False,
        },
        destructive=True,
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        command = args.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValueError("Missing or invalid 'command' (expected non-empty string).")
        workdir = _resolve_in_cwd(context, args.get("directory") or ".", field_name="directory")
        if not workdir.is_dir():
            raise FileNotFoundError(f"No such directory: {_relative(context, workdir)}")
        timeout_s = float(args.get("timeout_s") or self.default_timeout_s)

        started = time.monotonic()
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(workdir),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=dict(context.env) if context.env else None,
            start_new_session=(os.name == "posix"),
        )
        deadline = started + timeout_s
        while True:
            try:
                stdout_b, stderr_b = proc.communicate(timeout=_SHELL_POLL_S)
                break
            except subprocess.TimeoutExpired:
                if context.cancel.cancelled:
                    _kill_process_tree(proc)
                    proc.communicate()
                    raise ToolError("Shell command cancelled.", code=ErrorCode.CANCELLED)
                if time.monotonic() >= deadline:
                    _kill_process_tree(proc)
                    proc.communicate()
                    raise TimeoutError(f"Shell command timed out after {timeout_s:g}s.")

        stdout, stdout_truncated = _truncate_text((stdout_b or b"").decode("utf-8", errors="replace"), self.max_output_chars)
        stderr, stderr_truncated = _truncate_text((stderr_b or b"").decode("utf-8", errors="replace"), self.max_output_chars)
        return {
            "command": command,
            "directory": _relative(context, workdir),
            "exit_code": proc.returncode,
            "stdout": stdout,
            "stderr": stderr,
            "stdout_truncated": stdout_truncated,
            "stderr_truncated": stderr_truncated,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }


@dataclass(frozen=True, slots=True)
class WebFetchTool:
    timeout_s: float = 20.0
    max_chars: int = 32_000
    transport: httpx.BaseTransport | None = None

    descriptor: ClassVar[ToolDescriptor] = ToolDescriptor(
        name="web_fetch",
        display_name="Fetch URL",
        description="HTTP GET a URL (http/https only) and return the status and a truncated text body.",
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "max_chars": {"type": "integer", "minimum": 1, "description": "Truncate body (default 32000)."},
            },
            "required": ["url"],
            "additionalProperties": False,
        },
    )

    def invoke(self, args: dict[str, Any], context: ToolExecutionContext) -> dict[str, Any]:
        url = str(args.get("url") or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"Only absolute http(s) URLs are allowed: {url!r}")
        max_chars = int(args.get("max_chars") or self.max_chars)

        chunks: list[str] = []
        size = 0
        truncated = False
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=True, transport=self.transport) as client:
                with client.stream("GET", url) as resp:
                    for text in resp.iter_text():
                        if context.cancel.cancelled:
                            raise ToolError("Fetch cancelled.", code=ErrorCode.CANCELLED)
                        chunks.append(text)
                        size += len(text)
                        if size > max_chars:
                            truncated = True
                            break
                    status_code = resp.status_code
                    content_type = resp.headers.get("content-type")
                    final_url = str(resp.url)
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Fetch timed out: {url}") from e
        except httpx.HTTPError as e:
            raise ToolError(f"Fetch failed: {type(e).__name__}: {e}") from e

        body = "".join(chunks)
        if truncated:
            body = body[:max_chars] + "…"
        return {
            "url": final_url,
            "status_code": status_code,
            "content_type": content_type,
            "body": body,
            "truncated": truncated,
        }


def builtin_tools() -> list[Any]:
    return [ListDirTool(), ReadFileTool(), WriteFileTool(), DeleteFileTool(), RunShellCommandTool(), WebFetchTool()]


def default_registry(*, extra_tools: list[Any] | None = None) -> ToolRegistry:
    """Registry with the built-in tools (plus `extra_tools`), frozen."""

    registry = ToolRegistry()
    for tool in builtin_tools():
        registry.register(tool)
    for tool in extra_tools or []:
        registry.register(tool)
    return registry.freeze()
