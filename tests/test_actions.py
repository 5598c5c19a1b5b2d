"""Tests for slash commands and canned actions."""

from __future__ import annotations

import pytest

from tollgate.runtime.actions import Action, ActionKind, CommandRegistry, SlashCommand, UnknownCommandError, default_commands


@pytest.fixture
def commands() -> CommandRegistry:
    return default_commands()


class TestCommandRegistry:
    def test_is_command(self):
        assert CommandRegistry.is_command("/help")
        assert CommandRegistry.is_command("  /run ls")
        assert not CommandRegistry.is_command("/")
        assert not CommandRegistry.is_command("//comment")
        assert not CommandRegistry.is_command("list files")

    def test_run_builds_shell_action(self, commands):
        action = commands.resolve("/run rm -rf build")

        assert action.kind is ActionKind.TOOL
        assert action.tool_name == "run_shell_command"
        assert action.arguments["command"] == "rm -rf build"
        assert action.arguments["description"]

    def test_run_without_command(self, commands):
        action = commands.resolve("/run")
        assert action.kind is ActionKind.MESSAGE
        assert "Usage" in action.message

    def test_ls_and_cat(self, commands):
        assert commands.resolve("/ls").arguments == {"path": "."}
        assert commands.resolve('/ls "my dir"').arguments == {"path": "my dir"}
        assert commands.resolve("/cat README.md") == Action.tool("read_file", {"path": "README.md"})

    @pytest.mark.parametrize("line", ['/ls "foo', "/cat 'x", "/cat"])
    def test_bad_path_arguments_show_usage(self, commands, line):
        action = commands.resolve(line)
        assert action.kind is ActionKind.MESSAGE
        assert action.message.startswith("Usage: /" + line[1:4])

    def test_alt_names_and_case(self, commands):
        assert commands.resolve("/exit").kind is ActionKind.QUIT
        assert commands.resolve("/QUIT").kind is ActionKind.QUIT
        assert commands.resolve("/?").kind is ActionKind.HELP

    def test_unknown(self, commands):
        with pytest.raises(UnknownCommandError, match="/nope"):
            commands.resolve("/nope")
        with pytest.raises(UnknownCommandError):
            commands.resolve("plain text")

    def test_duplicate_names_rejected(self, commands):
        with pytest.raises(ValueError):
            commands.register(SlashCommand(name="bye", alt_names=("exit",), description="", action=lambda a: Action.info("")))

    def test_help_lists_every_command(self, commands):
        help_text = commands.help_text()
        for cmd in commands:
            assert "/" + cmd.name in help_text
        assert "/run <command>" in help_text
