from __future__ import annotations

import argparse
import asyncio
import logging
import os
import queue
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Coroutine, TypeVar

from pydantic import BaseModel

from . import __version__
from .runtime.actions import ActionKind, CommandRegistry, UnknownCommandError, default_commands
from .runtime.approval import ApprovalDecision, Approver, PolicyApprover, ToolApprovalMode
from .runtime.config import AgentConfig, ConfigError, load_config
from .runtime.engine import build_session
from .runtime.error_codes import ErrorCode
from .runtime.models import ToolCallError, ToolCallResult, TurnCancelled, TurnFailed, is_terminal
from .runtime.session import Session, TurnStream
from .ui.console_ui import ConsoleApprover, ConsoleUI

T = TypeVar("T")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_DENIED = 2
EXIT_TOOL_FAILED = 4
EXIT_CONFIG_ERROR = 5
EXIT_INTERRUPTED = 130

_DENIAL_CODES = {ErrorCode.APPROVAL_DENIED, ErrorCode.APPROVAL_DENIED_WITH_FEEDBACK}


def _configure_text_io() -> None:
    """
    Best-effort I/O normalization for interactive terminals.

    On WSL/Linux it's common to have sys.stdin.errors='surrogateescape'. Invalid byte sequences
    read from the terminal then survive as surrogate codepoints and crash later when encoded.
    """

    for stream, errors in ((sys.stdin, "replace"), (sys.stdout, "backslashreplace"), (sys.stderr, "backslashreplace")):
        reconfigure = getattr(stream, "reconfigure", None)
        if reconfigure is None:
            continue
        try:
            reconfigure(encoding="utf-8", errors=errors)
        except (ValueError, OSError):
            return


def _sanitize_text(text: str) -> str:
    # Replace illegal Unicode surrogate codepoints (U+D800..U+DFFF) with U+FFFD.
    out: list[str] = []
    changed = False
    for ch in text:
        o = ord(ch)
        if 0xD800 <= o <= 0xDFFF:
            out.append("\uFFFD")
            changed = True
        else:
            out.append(ch)
    return "".join(out) if changed else text


def _configure_logging(level: str, log_file: str | None) -> None:
    handler: logging.Handler
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("tollgate")
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.WARNING))
    root.propagate = False


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tollgate",
        description="Interactive agent loop with approval-gated tools.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: warning).",
    )
    parser.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help="Write logs to this file instead of stderr.",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a JSON config file (default: .tollgate/config.json if present).",
    )
    common.add_argument(
        "--cwd",
        dest="cwd",
        default=None,
        help="Working directory for tools (default: current directory).",
    )
    common.add_argument(
        "--approval-mode",
        dest="approval_mode",
        default=None,
        choices=[m.value for m in ToolApprovalMode],
        help="Override the tool approval mode.",
    )
    common.add_argument(
        "--system",
        dest="system_prompt",
        default=None,
        help="Optional system prompt override.",
    )
    common.add_argument(
        "--max-tool-rounds",
        dest="max_tool_rounds",
        type=int,
        default=None,
        help="Max model+tool rounds per user message (default: 30, max: 256).",
    )
    common.add_argument(
        "--color",
        dest="color_mode",
        default="auto",
        choices=["auto", "always", "never"],
        help="Colorize output (default: auto).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    chat_parser = subparsers.add_parser("chat", parents=[common], help="Start an interactive session.")
    chat_parser.set_defaults(func=_cmd_chat)

    run_parser = subparsers.add_parser("run", parents=[common], help="Run a single turn and exit.")
    run_parser.add_argument("prompt", help="User message for the turn.")
    run_parser.add_argument(
        "--approve",
        dest="approve",
        default="ask",
        choices=["ask", "deny", "allow"],
        help="How to answer approval requests (default: ask on the terminal).",
    )
    run_parser.set_defaults(func=_cmd_run)

    return parser


class _LoopThread:
    """Runs an asyncio loop on a daemon thread; the main thread keeps stdin and Ctrl+C."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="tollgate-loop", daemon=True)

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "_LoopThread":
        self._thread.start()
        return self

    def submit(self, coro: Coroutine[Any, Any, T]) -> Future[T]:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, fn: Callable[[], T]) -> T:
        async def _call() -> T:
            return fn()

        return self.submit(_call()).result()

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=2.0)


def _load_agent_config(args: argparse.Namespace, cwd: Path) -> AgentConfig:
    overrides: dict[str, Any] = {}
    if args.system_prompt is not None:
        overrides["system_prompt"] = args.system_prompt
    if args.max_tool_rounds is not None:
        overrides["max_tool_rounds"] = args.max_tool_rounds
    config = load_config(Path(args.config_path) if args.config_path else None, cwd=cwd, overrides=overrides)
    if args.approval_mode is not None:
        config = config.model_copy(
            update={"approval": config.approval.model_copy(update={"mode": ToolApprovalMode(args.approval_mode)})}
        )
    return config


def _make_ui(args: argparse.Namespace) -> ConsoleUI:
    cm = str(args.color_mode or "auto").strip().lower()
    enable_color: bool | None = None
    if cm == "never":
        enable_color = False
    elif cm == "always":
        enable_color = True
    return ConsoleUI(enable_color=enable_color)


def _drive_turn(
    runner: _LoopThread,
    session: Session,
    start: Callable[[], TurnStream],
    *,
    ui: ConsoleUI,
    approver: Approver,
) -> BaseModel:
    """Start a turn on the loop thread and render its events until the terminal one."""

    events: "queue.Queue[BaseModel | BaseException]" = queue.Queue()

    async def _pump(stream: TurnStream) -> None:
        try:
            async for ev in stream:
                events.put(ev)
        except Exception as e:
            events.put(e)

    stream = runner.call(start)
    runner.submit(_pump(stream))

    while True:
        try:
            if isinstance(approver, ConsoleApprover):
                approver.serve_pending()
            try:
                item = events.get(timeout=0.05)
            except queue.Empty:
                continue
            if isinstance(item, BaseException):
                raise item
            ui.render(item)
            if is_terminal(item):
                return item
        except KeyboardInterrupt:
            ui.info("Cancelling…")
            session.cancel("cancelled by user (Ctrl+C)")


def _exit_code_for_turn(session: Session, terminal: BaseModel) -> int:
    if isinstance(terminal, TurnCancelled):
        return EXIT_INTERRUPTED
    if isinstance(terminal, TurnFailed):
        return EXIT_ERROR
    turn = session.turns[-1] if session.turns else None
    if turn is None:
        return EXIT_OK
    outcomes = [ev for ev in turn.events if isinstance(ev, (ToolCallResult, ToolCallError))]
    if not outcomes or isinstance(outcomes[-1], ToolCallResult):
        return EXIT_OK
    last = outcomes[-1]
    if last.error_code in _DENIAL_CODES:
        return EXIT_DENIED
    if last.error_code is ErrorCode.CANCELLED:
        return EXIT_INTERRUPTED
    return EXIT_TOOL_FAILED


def _cmd_run(args: argparse.Namespace) -> int:
    cwd = Path(args.cwd).expanduser().resolve() if args.cwd else Path.cwd()
    try:
        config = _load_agent_config(args, cwd)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    ui = _make_ui(args)
    approver: Approver
    if args.approve == "allow":
        approver = PolicyApprover(decision=ApprovalDecision.approve(rationale="--approve allow"))
    elif args.approve == "deny":
        approver = PolicyApprover(decision=ApprovalDecision.deny(rationale="--approve deny"))
    else:
        approver = ConsoleApprover(ui=ui)

    prompt = _sanitize_text(args.prompt).strip()
    if not prompt:
        print("Empty prompt.", file=sys.stderr)
        return EXIT_ERROR

    runner = _LoopThread().start()
    try:
        session = runner.call(lambda: build_session(config, approver=approver, cwd=cwd))
        terminal = _drive_turn(runner, session, lambda: session.submit(prompt), ui=ui, approver=approver)
        ui._ensure_newline_if_streaming()
        return _exit_code_for_turn(session, terminal)
    finally:
        runner.stop()


def _cmd_chat(args: argparse.Namespace) -> int:
    cwd = Path(args.cwd).expanduser().resolve() if args.cwd else Path.cwd()
    try:
        config = _load_agent_config(args, cwd)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    ui = _make_ui(args)
    read_line = _make_line_reader()
    approver = ConsoleApprover(ui=ui, prompt=read_line)
    commands = default_commands()

    runner = _LoopThread().start()
    try:
        session = runner.call(lambda: build_session(config, approver=approver, cwd=cwd))
        ui.info(f"tollgate {__version__} · session {session.session_id} · model {config.model.model_name}")
        ui.info(f"Approval mode: {config.approval.mode.value}. Type /help for commands, /quit to leave.")
        return _chat_loop(runner, session, ui=ui, approver=approver, commands=commands, read_line=read_line)
    finally:
        runner.stop()


def _chat_loop(
    runner: _LoopThread,
    session: Session,
    *,
    ui: ConsoleUI,
    approver: ConsoleApprover,
    commands: CommandRegistry,
    read_line: Callable[[str], str],
) -> int:
    while True:
        try:
            user_text = read_line("You> ")
        except (EOFError, KeyboardInterrupt):
            break

        user_text = _sanitize_text(user_text).strip("\n")
        if not user_text.strip():
            continue

        if commands.is_command(user_text):
            try:
                action = commands.resolve(user_text)
            except UnknownCommandError as e:
                ui.error(str(e))
                continue
            if action.kind is ActionKind.QUIT:
                break
            if action.kind is ActionKind.HELP:
                ui.info(commands.help_text())
                continue
            if action.kind is ActionKind.MESSAGE:
                ui.info(action.message or "")
                continue
            _drive_turn(runner, session, lambda: session.submit_action(action), ui=ui, approver=approver)
            continue

        text = user_text.strip()
        _drive_turn(runner, session, lambda: session.submit(text), ui=ui, approver=approver)
    return EXIT_OK


def _make_line_reader() -> Callable[[str], str]:
    """prompt_toolkit when attached to a terminal, plain `input()` otherwise."""

    def _is_tty() -> bool:
        try:
            return bool(sys.stdin.isatty() and sys.stdout.isatty())
        except (AttributeError, ValueError):
            return False

    if str(os.environ.get("TOLLGATE_PLAIN_INPUT") or "").strip() in {"1", "true", "yes", "on"} or not _is_tty():
        return input

    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter

    prompt_session: PromptSession[str] = PromptSession(
        completer=WordCompleter(["/help", "/quit", "/exit", "/run", "/ls", "/cat"], sentence=True),
    )

    def _read(message: str) -> str:
        return prompt_session.prompt(message)

    return _read


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level, args.log_file)

    try:
        func = getattr(args, "func")
        return int(func(args))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
