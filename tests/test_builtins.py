"""Tests for the built-in tools and the tool registry."""

from __future__ import annotations

import os
import sys
import threading

import httpx
import pytest

from conftest import EchoTool
from tollgate.runtime.error_codes import ErrorCode
from tollgate.runtime.llm.errors import CancellationToken
from tollgate.runtime.tools.base import ToolError, ToolExecutionContext
from tollgate.runtime.tools.builtins import (
    DeleteFileTool,
    ListDirTool,
    ReadFileTool,
    RunShellCommandTool,
    WebFetchTool,
    WriteFileTool,
    builtin_tools,
    default_registry,
)
from tollgate.runtime.tools.previews import build_call_preview, summarize_tool_call
from tollgate.runtime.tools.registry import RegistryFrozenError, ToolAlreadyRegisteredError, ToolRegistry

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses POSIX shell commands")


@pytest.fixture
def context(workdir) -> ToolExecutionContext:
    return ToolExecutionContext(cwd=workdir, cancel=CancellationToken())


class TestToolRegistry:
    def test_register_and_resolve(self):
        registry = ToolRegistry()
        registry.register(EchoTool())

        assert "echo" in registry
        assert registry.resolve("echo").name == "echo"
        assert registry.resolve("missing") is None
        assert registry.names() == ["echo"]
        assert len(registry) == 1

    def test_duplicate_name(self):
        registry = ToolRegistry()
        registry.register(EchoTool())
        with pytest.raises(ToolAlreadyRegisteredError):
            registry.register(EchoTool())

    def test_frozen(self):
        registry = ToolRegistry().freeze()
        assert registry.frozen
        with pytest.raises(RegistryFrozenError):
            registry.register(EchoTool())

    def test_rejects_tool_without_descriptor(self):
        class NotATool:
            descriptor = {"name": "x"}

        with pytest.raises(TypeError):
            ToolRegistry().register(NotATool())

    def test_default_registry(self):
        registry = default_registry(extra_tools=[EchoTool()])

        assert registry.frozen
        assert registry.names() == [t.descriptor.name for t in builtin_tools()] + ["echo"]
        destructive = {d.name for d in registry if d.destructive}
        assert destructive == {"write_file", "delete_file", "run_shell_command"}


class TestFileTools:
    def test_list_dir_skips_hidden(self, workdir, context):
        (workdir / ".secret").write_text("x", encoding="utf-8")
        (workdir / "sub").mkdir()

        result = ListDirTool().invoke({}, context)

        assert result["path"] == "."
        assert [e["name"] for e in result["entries"]] == ["a.txt", "b.txt", "sub"]
        assert result["entries"][2] == {"name": "sub", "type": "dir"}
        assert result["entries"][0]["size"] == len("alpha\n")

        hidden = ListDirTool().invoke({"include_hidden": True}, context)
        assert ".secret" in [e["name"] for e in hidden["entries"]]

    def test_list_dir_not_a_directory(self, context):
        with pytest.raises(ValueError):
            ListDirTool().invoke({"path": "a.txt"}, context)

    def test_read_file_truncates(self, context):
        result = ReadFileTool().invoke({"path": "a.txt", "max_chars": 3}, context)

        assert result == {"path": "a.txt", "content": "alp…", "truncated": True}

    def test_read_file_outside_cwd(self, context):
        with pytest.raises(PermissionError):
            ReadFileTool().invoke({"path": "../elsewhere.txt"}, context)

    def test_write_file_creates_dirs(self, workdir, context):
        result = WriteFileTool().invoke({"path": "out/new.txt", "content": "héllo"}, context)

        assert result == {"path": os.path.join("out", "new.txt"), "bytes": 6, "created": True}
        assert (workdir / "out" / "new.txt").read_text(encoding="utf-8") == "héllo"

    def test_write_file_overwrite(self, context):
        result = WriteFileTool().invoke({"path": "a.txt", "content": "x"}, context)
        assert result["created"] is False

    def test_delete_file(self, workdir, context):
        assert DeleteFileTool().invoke({"path": "a.txt"}, context) == {"path": "a.txt", "deleted": True}
        assert not (workdir / "a.txt").exists()

        with pytest.raises(FileNotFoundError):
            DeleteFileTool().invoke({"path": "a.txt"}, context)

    def test_delete_refuses_directory(self, workdir, context):
        (workdir / "sub").mkdir()
        with pytest.raises(ValueError):
            DeleteFileTool().invoke({"path": "sub"}, context)


@posix_only
class TestRunShellCommand:
    def test_runs_in_directory(self, workdir, context):
        (workdir / "sub").mkdir()

        result = RunShellCommandTool().invoke({"command": "pwd && echo err 1>&2", "directory": "sub"}, context)

        assert result["exit_code"] == 0
        assert result["stdout"].strip() == str((workdir / "sub").resolve())
        assert result["stderr"].strip() == "err"
        assert result["directory"] == "sub"

    def test_nonzero_exit_is_a_result(self, context):
        result = RunShellCommandTool().invoke({"command": "exit 3"}, context)
        assert result["exit_code"] == 3

    def test_output_truncated(self, context):
        result = RunShellCommandTool(max_output_chars=5).invoke({"command": "echo 0123456789"}, context)

        assert result["stdout"] == "01234…"
        assert result["stdout_truncated"] is True

    def test_timeout(self, context):
        with pytest.raises(TimeoutError):
            RunShellCommandTool().invoke({"command": "sleep 5", "timeout_s": 0.3}, context)

    def test_cancel_kills_process(self, context):
        timer = threading.Timer(0.2, context.cancel.cancel, args=("stop",))
        timer.start()
        try:
            with pytest.raises(ToolError) as excinfo:
                RunShellCommandTool().invoke({"command": "sleep 5"}, context)
        finally:
            timer.cancel()

        assert excinfo.value.code is ErrorCode.CANCELLED

    def test_uses_context_env(self, workdir):
        env = {"PATH": os.environ.get("PATH", ""), "TOLLGATE_TEST_VALUE": "42"}
        context = ToolExecutionContext(cwd=workdir, cancel=CancellationToken(), env=env)

        result = RunShellCommandTool().invoke({"command": "echo $TOLLGATE_TEST_VALUE"}, context)

        assert result["stdout"].strip() == "42"


class TestWebFetch:
    def _tool(self, handler) -> WebFetchTool:
        return WebFetchTool(transport=httpx.MockTransport(handler))

    def test_fetch(self, context):
        tool = self._tool(lambda request: httpx.Response(200, text="hello world", headers={"content-type": "text/plain"}))

        result = tool.invoke({"url": "https://example.test/page"}, context)

        assert result["status_code"] == 200
        assert result["body"] == "hello world"
        assert result["content_type"] == "text/plain"
        assert result["truncated"] is False

    def test_truncates(self, context):
        tool = self._tool(lambda request: httpx.Response(200, text="x" * 100))

        result = tool.invoke({"url": "http://example.test/", "max_chars": 10}, context)

        assert result["body"] == "x" * 10 + "…"
        assert result["truncated"] is True

    @pytest.mark.parametrize("url", ["file:///etc/passwd", "ftp://example.test/", "example.test"])
    def test_rejects_non_http(self, context, url):
        with pytest.raises(ValueError):
            WebFetchTool().invoke({"url": url}, context)

    def test_transport_error(self, context):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ToolError, match="Fetch failed"):
            self._tool(handler).invoke({"url": "https://example.test/"}, context)


class TestPreviews:
    def test_summaries(self):
        assert summarize_tool_call("run_shell_command", {"command": "ls\n  -la"}) == "Run $ ls -la"
        assert summarize_tool_call("delete_file", {"path": "a.txt"}) == "Delete a.txt"
        assert summarize_tool_call("web_fetch", {"url": "https://x.test"}) == "Fetch https://x.test"
        assert summarize_tool_call("custom", {}) == "Execute tool: custom"

    def test_shell_summary_elided(self):
        summary = summarize_tool_call("run_shell_command", {"command": "x" * 500}, max_chars=20)
        assert len(summary) <= len("Run $ ") + 20
        assert summary.endswith("…")

    def test_shell_preview(self):
        preview = build_call_preview("run_shell_command", {"command": "make", "directory": "src", "timeout_s": 5})
        assert preview.splitlines() == ["$ make", "(cwd: src)", "(timeout_s: 5)"]

    def test_generic_preview_is_json(self):
        assert build_call_preview("custom", {"b": 1, "a": 2}) == '{\n  "a": 2,\n  "b": 1\n}'


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX path semantics")
def test_context_resolve_path(workdir):
    context = ToolExecutionContext(cwd=workdir, cancel=CancellationToken())
    assert context.resolve_path("sub/../a.txt") == (workdir / "a.txt").resolve()
