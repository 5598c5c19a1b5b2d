"""Tests for the line-mode renderer and the terminal approver."""

from __future__ import annotations

import asyncio
import io

import pytest

from tollgate.runtime.approval import ApprovalDecision, ApprovalRequest, ApprovalStatus
from tollgate.runtime.error_codes import ErrorCode
from tollgate.runtime.models import (
    ModelCallRetrying,
    ModelTextDelta,
    ToolCallError,
    ToolCallRequest,
    ToolCallResult,
    TurnCancelled,
    TurnFailed,
)
from tollgate.ui.console_ui import ConsoleApprover, ConsoleUI


def _scripted(*answers):
    """Prompt function returning `answers` in order; EOFError once they run out."""

    remaining = list(answers)
    prompts = []

    def _prompt(message: str) -> str:
        prompts.append(message)
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    _prompt.prompts = prompts
    return _prompt


def _approval_request(tool_name="delete_file", **arguments) -> ApprovalRequest:
    tool_call = ToolCallRequest(turn_id="t1", tool_call_id="c1", tool_name=tool_name, arguments=arguments)
    return ApprovalRequest(
        approval_id="appr_1",
        tool_call=tool_call,
        descriptor=None,
        action_summary="Delete a.txt",
        rationale="Tool is marked destructive.",
        preview='{\n  "path": "a.txt"\n}',
    )


@pytest.fixture
def out() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def ui(out) -> ConsoleUI:
    return ConsoleUI(stream=out, enable_color=False)


class TestConsoleUI:
    def test_streams_assistant_text(self, ui, out):
        ui.render(ModelTextDelta(turn_id="t1", step_id="s1", text="Hel"))
        ui.render(ModelTextDelta(turn_id="t1", step_id="s1", text="lo"))
        ui.render(ToolCallResult(turn_id="t1", tool_call_id="c1", tool_name="list_dir", duration_ms=3))

        assert out.getvalue() == "Assistant: Hello\n  [OK] list_dir (3 ms)\n"

    def test_tool_error_badges(self, ui, out):
        for code in (ErrorCode.APPROVAL_DENIED_WITH_FEEDBACK, ErrorCode.CANCELLED, ErrorCode.NOT_FOUND):
            ui.render(ToolCallError(turn_id="t1", tool_call_id="c1", tool_name="rm", error_code=code, message="m"))

        lines = out.getvalue().splitlines()
        assert lines[0].startswith("  [DENIED] rm")
        assert lines[1].startswith("  [CANCELLED] rm")
        assert lines[2].startswith("  [FAILED] rm")

    def test_terminal_and_retry_lines(self, ui, out):
        ui.render(
            ModelCallRetrying(turn_id="t1", attempt=1, max_attempts=3, delay_s=0.5, error_code="server_error", message="x")
        )
        ui.render(TurnCancelled(turn_id="t1", reason="ctrl-c"))
        ui.render(TurnFailed(turn_id="t1", error_code=ErrorCode.AUTH_FAILURE, message="bad key"))

        text = out.getvalue()
        assert "[retry] model call failed (server_error); attempt 2/3 in 0.5s" in text
        assert "[cancel] ctrl-c" in text
        assert "[error] auth_failure: bad key" in text

    def test_color_codes(self, out):
        ConsoleUI(stream=out, enable_color=True).error("boom")
        assert out.getvalue() == "\x1b[31mboom\x1b[0m\n"


class TestConsoleApprover:
    def test_yes(self, ui):
        approver = ConsoleApprover(ui=ui, prompt=_scripted("y"))
        assert approver.prompt_decision(_approval_request()).approved

    def test_always_remembers(self, ui):
        decision = ConsoleApprover(ui=ui, prompt=_scripted("a")).prompt_decision(_approval_request())
        assert decision.approved and decision.remember_for_session

    def test_no_with_note(self, ui):
        prompt = _scripted("n", "move it to trash instead")

        decision = ConsoleApprover(ui=ui, prompt=prompt).prompt_decision(_approval_request())

        assert decision.status is ApprovalStatus.DENIED_WITH_FEEDBACK
        assert decision.feedback == "move it to trash instead"
        assert len(prompt.prompts) == 2

    def test_no_without_note(self, ui):
        decision = ConsoleApprover(ui=ui, prompt=_scripted("no", "")).prompt_decision(_approval_request())
        assert decision.status is ApprovalStatus.DENIED

    def test_reprompts_on_garbage(self, ui, out):
        prompt = _scripted("maybe", "Y")

        assert ConsoleApprover(ui=ui, prompt=prompt).prompt_decision(_approval_request()).approved
        assert "Please type y, n or a." in out.getvalue()

    def test_eof_denies(self, ui):
        decision = ConsoleApprover(ui=ui, prompt=_scripted()).prompt_decision(_approval_request())
        assert decision.status is ApprovalStatus.DENIED

    def test_shell_prompt_shows_command(self, ui, out):
        request = ApprovalRequest(
            approval_id="appr_2",
            tool_call=ToolCallRequest(turn_id="t1", tool_call_id="c2", tool_name="run_shell_command", arguments={"command": "ls"}),
            descriptor=None,
            action_summary="Run $ ls",
        )

        ConsoleApprover(ui=ui, prompt=_scripted("y")).prompt_decision(request)

        assert out.getvalue().startswith("Would you like to run the following command?\n  Run $ ls\n")

    async def test_decide_is_answered_by_serve_pending(self, ui):
        approver = ConsoleApprover(ui=ui, prompt=_scripted("n", "later"))

        task = asyncio.ensure_future(approver.decide(_approval_request()))
        await asyncio.sleep(0)
        assert approver.serve_pending() is True
        decision = await asyncio.wait_for(task, 2)

        assert decision == ApprovalDecision.deny("later")
        assert approver.serve_pending() is False

    async def test_interrupt_cancels_pending_request(self, ui):
        def _interrupt(message: str) -> str:
            raise KeyboardInterrupt

        approver = ConsoleApprover(ui=ui, prompt=_interrupt)
        task = asyncio.ensure_future(approver.decide(_approval_request()))
        await asyncio.sleep(0)

        with pytest.raises(KeyboardInterrupt):
            approver.serve_pending()
        decision = await asyncio.wait_for(task, 2)

        assert decision.status is ApprovalStatus.CANCELLED
