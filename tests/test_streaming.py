"""Tests for StreamingResponseHandler and tool-argument parsing."""

from __future__ import annotations

import pytest

from conftest import call, end, text
from tollgate.runtime.error_codes import ErrorCode
from tollgate.runtime.llm.errors import LLMErrorCode, LLMRequestError
from tollgate.runtime.streaming import (
    EndOfTurn,
    MalformedToolCall,
    ParsedToolCall,
    StreamConsumedError,
    StreamingResponseHandler,
    TextChunk,
    parse_tool_arguments,
)


class TestParseToolArguments:
    def test_empty_means_no_arguments(self):
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments("   ") == {}
        assert parse_tool_arguments(None) == {}

    def test_object(self):
        assert parse_tool_arguments('{"path": "."}') == {"path": "."}

    def test_invalid_json(self):
        with pytest.raises(ValueError, match="not valid JSON"):
            parse_tool_arguments('{"path": ')

    def test_non_object(self):
        with pytest.raises(ValueError, match="JSON object"):
            parse_tool_arguments("[1, 2]")


class TestStreamingResponseHandler:
    """Fragments to typed items."""

    def test_text_and_calls(self):
        handler = StreamingResponseHandler(
            [text("Hi "), text("there"), call("c1", "list_dir", '{"path": "src"}'), end("tool_calls")]
        )

        items = list(handler)

        assert items == [
            TextChunk("Hi "),
            TextChunk("there"),
            ParsedToolCall(tool_call_id="c1", tool_name="list_dir", arguments={"path": "src"}, raw_arguments='{"path": "src"}'),
            EndOfTurn("tool_calls"),
        ]
        assert handler.text == "Hi there"
        assert handler.ended

    def test_malformed_arguments(self):
        (item, _) = list(StreamingResponseHandler([call("c1", "read_file", "{oops"), end()]))

        assert isinstance(item, MalformedToolCall)
        assert item.tool_name == "read_file"
        assert item.raw_arguments == "{oops"
        assert item.error_code is ErrorCode.MALFORMED_TOOL_CALL_PAYLOAD

    def test_missing_tool_name(self):
        (item, _) = list(StreamingResponseHandler([call("c1", "  ", "{}"), end()]))

        assert isinstance(item, MalformedToolCall)
        assert "missing a tool name" in item.message

    def test_stream_without_end_marker(self):
        handler = StreamingResponseHandler([text("partial")])
        seen = []

        with pytest.raises(LLMRequestError) as excinfo:
            for item in handler:
                seen.append(item)

        assert seen == [TextChunk("partial")]
        assert excinfo.value.code is LLMErrorCode.NETWORK_ERROR
        assert excinfo.value.retryable
        assert not handler.ended

    def test_fragments_after_end_are_ignored(self):
        items = list(StreamingResponseHandler([text("done"), end(), text("late"), call("c9", "list_dir")]))

        assert items == [TextChunk("done"), EndOfTurn("stop")]

    def test_single_use(self):
        handler = StreamingResponseHandler([end()])
        list(handler)

        with pytest.raises(StreamConsumedError):
            iter(handler)

    def test_lazy_consumption(self):
        pulled = []

        def fragments():
            for ev in (text("a"), text("b"), end()):
                pulled.append(ev)
                yield ev

        it = iter(StreamingResponseHandler(fragments()))
        assert next(it) == TextChunk("a")
        assert len(pulled) == 1

    def test_empty_text_deltas_skipped(self):
        items = list(StreamingResponseHandler([text(""), end()]))

        assert items == [EndOfTurn("stop")]
