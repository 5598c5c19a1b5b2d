from __future__ import annotations

import asyncio
import json
import queue
import sys
import threading
from concurrent.futures import Future
from typing import Any, Callable, TextIO

from pydantic import BaseModel

from ..runtime.approval import ApprovalDecision, ApprovalRequest
from ..runtime.models import (
    ApprovalRequested,
    ApprovalResolved,
    Cancelled,
    ModelCallRetrying,
    ModelText,
    ModelTextDelta,
    ToolCallError,
    ToolCallRequest,
    ToolCallResult,
    ToolCallStarted,
    TurnCancelled,
    TurnClosed,
    TurnFailed,
    UserMessage,
)
from ..runtime.tools.previews import _elide_tail


def _one_line_preview(value: Any, *, max_chars: int) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        try:
            value = json.dumps(value, ensure_ascii=False, sort_keys=True)
        except (TypeError, ValueError):
            value = str(value)
    return _elide_tail(" ".join(value.split()), max_chars)


class ConsoleUI:
    """
    Line-mode renderer for turn events.

    Streams model text as it arrives under an `Assistant:` prefix and prints one compact line
    per tool call, approval and terminal event. All writes go through `_write`.
    """

    def __init__(self, *, stream: TextIO | None = None, enable_color: bool | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        if enable_color is None:
            enable_color = bool(getattr(self._stream, "isatty", lambda: False)())
        self._enable_color = bool(enable_color)
        self._io_lock = threading.RLock()
        self._assistant_open = False
        self._assistant_last_newline = True

    # --- event rendering ---
    def render(self, event: BaseModel) -> None:
        if isinstance(event, ModelTextDelta):
            self._start_assistant_if_needed()
            self._write(event.text)
            self._assistant_last_newline = event.text.endswith("\n")
            return

        if isinstance(event, (UserMessage, ModelText)):
            # Already shown: the prompt echoes user input and deltas carry model text.
            return

        self._ensure_newline_if_streaming()

        if isinstance(event, ModelCallRetrying):
            self._println_yellow(
                f"[retry] model call failed ({event.error_code}); attempt {event.attempt + 1}/{event.max_attempts} "
                f"in {event.delay_s:.1f}s"
            )
        elif isinstance(event, ToolCallRequest):
            args = _one_line_preview(event.arguments, max_chars=160)
            self._println_dim(f"• {event.tool_name} {args}".rstrip())
        elif isinstance(event, ToolCallStarted):
            self._println_dim(f"  running: {event.summary}")
        elif isinstance(event, ApprovalRequested):
            # The approver prints the prompt itself.
            return
        elif isinstance(event, ApprovalResolved):
            if event.decided_by == "policy":
                self._println_dim(f"  approval: {event.status} (policy)")
        elif isinstance(event, ToolCallResult):
            self._println(f"  {self._format_badge('OK', '32')} {event.tool_name} ({event.duration_ms} ms)")
        elif isinstance(event, ToolCallError):
            self._println(f"  {self._tool_error_badge(event)} {event.tool_name or '?'}: {_elide_tail(event.message, 240)}")
        elif isinstance(event, Cancelled):
            return
        elif isinstance(event, TurnClosed):
            return
        elif isinstance(event, TurnCancelled):
            self._println_yellow(f"[cancel] {event.reason}")
        elif isinstance(event, TurnFailed):
            self._println_red(f"[error] {event.error_code}: {event.message}")

    def info(self, message: str) -> None:
        self._ensure_newline_if_streaming()
        for line in message.splitlines() or [""]:
            self._println_dim(line)

    def error(self, message: str) -> None:
        self._ensure_newline_if_streaming()
        self._println_red(message)

    def _tool_error_badge(self, event: ToolCallError) -> str:
        code = event.error_code.value
        if code.startswith("approval_denied"):
            return self._format_badge("DENIED", "33")
        if code == "cancelled":
            return self._format_badge("CANCELLED", "33")
        return self._format_badge("FAILED", "31")

    # --- low-level printing ---
    def _color(self, s: str, code: str) -> str:
        if not self._enable_color:
            return s
        return f"\x1b[{code}m{s}\x1b[0m"

    def _format_badge(self, text: str, color_code: str) -> str:
        return self._color(f"[{text}]", f"1;{color_code}")

    def _write(self, s: str) -> None:
        with self._io_lock:
            self._stream.write(s)
            self._stream.flush()

    def _println(self, s: str = "") -> None:
        self._write(s + "\n")

    def _println_dim(self, s: str) -> None:
        self._println(self._color(s, "2"))

    def _println_red(self, s: str) -> None:
        self._println(self._color(s, "31"))

    def _println_yellow(self, s: str) -> None:
        self._println(self._color(s, "33"))

    def _start_assistant_if_needed(self) -> None:
        if self._assistant_open:
            return
        prefix = self._color("Assistant: ", "1;36") if self._enable_color else "Assistant: "
        self._write(prefix)
        self._assistant_open = True
        self._assistant_last_newline = False

    def _ensure_newline_if_streaming(self) -> None:
        if not self._assistant_open:
            return
        if not self._assistant_last_newline:
            self._println()
        self._assistant_open = False
        self._assistant_last_newline = True


PromptFn = Callable[[str], str]


class ConsoleApprover:
    """
    Interactive approver: y = approve once, a = approve for this session, n = deny
    (then an optional note that is passed back to the model).

    `decide()` runs on the session's event loop and only queues the request; the thread that
    owns the terminal answers it with `serve_pending()`. Keeping every read of stdin on one
    thread lets Ctrl+C cancel a turn while a prompt is open.
    """

    def __init__(self, *, ui: ConsoleUI, prompt: PromptFn | None = None) -> None:
        self._ui = ui
        self._prompt: PromptFn = prompt or input
        self._pending: "queue.Queue[tuple[ApprovalRequest, Future[ApprovalDecision]]]" = queue.Queue()

    async def decide(self, request: ApprovalRequest) -> ApprovalDecision:
        fut: Future[ApprovalDecision] = Future()
        self._pending.put((request, fut))
        return await asyncio.wrap_future(fut)

    def serve_pending(self) -> bool:
        """Answer queued requests on the calling thread. Returns True if any was handled."""

        handled = False
        while True:
            try:
                request, fut = self._pending.get_nowait()
            except queue.Empty:
                return handled
            handled = True
            if fut.done():
                continue
            try:
                decision = self.prompt_decision(request)
            except KeyboardInterrupt:
                if not fut.done():
                    fut.set_result(ApprovalDecision.cancel("interrupted"))
                raise
            if not fut.done():
                fut.set_result(decision)

    def prompt_decision(self, request: ApprovalRequest) -> ApprovalDecision:
        ui = self._ui
        ui._ensure_newline_if_streaming()
        if request.tool_name == "run_shell_command":
            ui._println("Would you like to run the following command?")
        else:
            ui._println("Approval required:")
        ui._println(f"  {request.action_summary}")
        if request.rationale:
            ui._println_dim(f"  ({request.rationale})")
        if request.preview and request.tool_name != "run_shell_command":
            for line in request.preview.splitlines()[:40]:
                ui._println_dim(f"  {line}")

        while True:
            try:
                ans = self._prompt("Proceed? [y/n/a] > ").strip().lower()
            except EOFError:
                return ApprovalDecision.deny(rationale="No input available.")
            if ans in {"y", "yes"}:
                return ApprovalDecision.approve()
            if ans in {"a", "always"}:
                return ApprovalDecision.approve(remember_for_session=True)
            if ans in {"n", "no"}:
                try:
                    note = self._prompt("Tell assistant what to do differently (optional)> ").strip()
                except EOFError:
                    note = ""
                return ApprovalDecision.deny(note or None)
            ui._println("Please type y, n or a.")
