from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterator


class ActionKind(StrEnum):
    TOOL = "tool"
    MESSAGE = "message"
    QUIT = "quit"
    HELP = "help"


@dataclass(frozen=True, slots=True)
class Action:
    """
    What a slash command asks the front end to do.

    Tool actions are submitted with `Session.submit_action` and go through the same approval
    gating as model-issued calls.
    """

    kind: ActionKind
    tool_name: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    @classmethod
    def tool(cls, tool_name: str, arguments: dict[str, Any] | None = None) -> "Action":
        return cls(kind=ActionKind.TOOL, tool_name=tool_name, arguments=dict(arguments or {}))

    @classmethod
    def info(cls, message: str) -> "Action":
        return cls(kind=ActionKind.MESSAGE, message=message)


CommandHandler = Callable[[str], Action]


@dataclass(frozen=True, slots=True)
class SlashCommand:
    name: str
    description: str
    action: CommandHandler
    alt_names: tuple[str, ...] = ()
    usage: str | None = None

    def names(self) -> tuple[str, ...]:
        return (self.name, *self.alt_names)


class UnknownCommandError(ValueError):
    pass


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: list[SlashCommand] = []
        self._by_name: dict[str, SlashCommand] = {}

    def register(self, command: SlashCommand) -> None:
        for name in command.names():
            if name in self._by_name:
                raise ValueError(f"Slash command already registered: /{name}")
        self._commands.append(command)
        for name in command.names():
            self._by_name[name] = command

    def get(self, name: str) -> SlashCommand | None:
        return self._by_name.get(name.lstrip("/").lower())

    def __iter__(self) -> Iterator[SlashCommand]:
        return iter(self._commands)

    @staticmethod
    def is_command(line: str) -> bool:
        s = line.strip()
        return s.startswith("/") and len(s) > 1 and not s.startswith("//")

    def resolve(self, line: str) -> Action:
        """Resolve `/name args...` to an `Action`. Raises `UnknownCommandError`."""

        s = line.strip()
        if not self.is_command(s):
            raise UnknownCommandError(f"Not a slash command: {line!r}")
        head, _, rest = s[1:].partition(" ")
        command = self.get(head)
        if command is None:
            raise UnknownCommandError(f"Unknown command: /{head}. Type /help for the list.")
        return command.action(rest.strip())

    def help_text(self) -> str:
        lines = ["Commands:"]
        for cmd in self._commands:
            label = "/" + cmd.name
            if cmd.usage:
                label += " " + cmd.usage
            if cmd.alt_names:
                label += " (" + ", ".join("/" + n for n in cmd.alt_names) + ")"
            lines.append(f"  {label:<28} {cmd.description}")
        lines.append("  Ctrl+C cancels the running turn.")
        return "\n".join(lines)


def _run_action(args: str) -> Action:
    if not args:
        return Action.info("Usage: /run <command>")
    return Action.tool("run_shell_command", {"command": args, "description": "Command typed by the user."})


def _path_argument(args: str) -> str | None:
    try:
        parts = shlex.split(args)
    except ValueError:
        return None
    return parts[0] if parts else None


def _ls_action(args: str) -> Action:
    if not args:
        return Action.tool("list_dir", {"path": "."})
    path = _path_argument(args)
    if path is None:
        return Action.info("Usage: /ls [path] (check the quoting)")
    return Action.tool("list_dir", {"path": path})


def _cat_action(args: str) -> Action:
    path = _path_argument(args) if args else None
    if path is None:
        return Action.info("Usage: /cat <path> (quote paths with spaces)")
    return Action.tool("read_file", {"path": path})


def default_commands() -> CommandRegistry:
    registry = CommandRegistry()
    registry.register(SlashCommand(name="help", alt_names=("?",), description="Show this help.", action=lambda _a: Action(kind=ActionKind.HELP)))
    registry.register(SlashCommand(name="quit", alt_names=("exit",), description="Leave the session.", action=lambda _a: Action(kind=ActionKind.QUIT)))
    registry.register(SlashCommand(name="run", usage="<command>", description="Run a shell command (asks for approval).", action=_run_action))
    registry.register(SlashCommand(name="ls", usage="[path]", description="List a directory.", action=_ls_action))
    registry.register(SlashCommand(name="cat", usage="<path>", description="Print a text file.", action=_cat_action))
    return registry
