from __future__ import annotations

import json
from typing import Any


def _elide_tail(s: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(s) <= max_chars:
        return s
    return s[: max(0, max_chars - 1)].rstrip() + "…"


def _one_line(value: Any, *, max_chars: int) -> str:
    if not isinstance(value, str):
        return ""
    one_line = " ".join(value.splitlines()).strip()
    one_line = " ".join(one_line.split())
    return _elide_tail(one_line, max_chars)


def _summarize_shell_run_args(args: dict[str, Any], *, max_chars: int = 120) -> str:
    command = _one_line(args.get("command"), max_chars=max_chars)
    if not command:
        return "Run shell command"
    return f"Run $ {command}"


def summarize_tool_call(tool_name: str, args: dict[str, Any], *, max_chars: int = 120) -> str:
    """One-line, human readable summary of a tool call (approval prompts and progress lines)."""

    if tool_name == "run_shell_command":
        return _summarize_shell_run_args(args, max_chars=max_chars)
    path = _one_line(args.get("path"), max_chars=max_chars)
    if tool_name == "delete_file":
        return f"Delete {path}" if path else "Delete file"
    if tool_name == "write_file":
        return f"Write {path}" if path else "Write file"
    if tool_name == "read_file":
        return f"Read {path}" if path else "Read file"
    if tool_name == "list_dir":
        return f"List {path or '.'}"
    if tool_name == "web_fetch":
        url = _one_line(args.get("url"), max_chars=max_chars)
        return f"Fetch {url}" if url else "Fetch URL"
    return f"Execute tool: {tool_name}"


def build_call_preview(tool_name: str, args: dict[str, Any], *, max_chars: int = 4000) -> str:
    """Multi-line preview shown under an approval prompt."""

    if tool_name == "run_shell_command":
        command = args.get("command")
        cwd = args.get("directory") or "."
        timeout_s = args.get("timeout_s")
        lines = [f"$ {command}", f"(cwd: {cwd})"]
        if timeout_s is not None:
            lines.append(f"(timeout_s: {timeout_s})")
        return _elide_tail("\n".join(lines), max_chars)
    if tool_name == "write_file":
        content = args.get("content")
        body = content if isinstance(content, str) else ""
        return _elide_tail(f"{args.get('path')}\n---\n{body}", max_chars)
    try:
        text = json.dumps(args, ensure_ascii=False, sort_keys=True, indent=2)
    except (TypeError, ValueError):
        text = repr(args)
    return _elide_tail(text, max_chars)
