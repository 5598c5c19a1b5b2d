"""Tests for the JSONL audit log."""

from __future__ import annotations

import logging

from conftest import RecordingApprover, ScriptedModelClient, call, end, text
from tollgate.runtime.approval import ApprovalDecision
from tollgate.runtime.audit import AuditLog
from tollgate.runtime.models import AuditEventType, ToolCallRequest


class TestAuditLog:
    def test_write_and_read(self, tmp_path):
        log = AuditLog(tmp_path / "audit", session_id="sess_1")

        log.write(AuditEventType.TURN_OPENED, turn_id="t1")
        log.record_transcript_event(
            ToolCallRequest(turn_id="t1", tool_call_id="c1", tool_name="list_dir", arguments={"path": "."})
        )

        events = list(log.read())
        assert log.path == tmp_path / "audit" / "sess_1.jsonl"
        assert [e.event_type for e in events] == [AuditEventType.TURN_OPENED, AuditEventType.TRANSCRIPT_EVENT]
        assert events[1].tool_call_id == "c1"
        assert events[1].payload["kind"] == "tool_call_request"
        assert events[1].payload["arguments"] == {"path": "."}
        assert all(e.session_id == "sess_1" for e in events)

    def test_read_missing_file(self, tmp_path):
        assert list(AuditLog(tmp_path, session_id="none").read()) == []

    def test_unreadable_lines_skipped(self, tmp_path):
        log = AuditLog(tmp_path, session_id="s")
        log.write(AuditEventType.TURN_OPENED, turn_id="t1")
        with log.path.open("a", encoding="utf-8") as f:
            f.write("garbage\n\n")

        assert len(list(log.read())) == 1

    def test_write_failure_logged_once(self, tmp_path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        log = AuditLog(blocker, session_id="s")

        with caplog.at_level(logging.WARNING, logger="tollgate.runtime.audit"):
            log.write(AuditEventType.TURN_OPENED)
            log.write(AuditEventType.TURN_CLOSED)

        assert len([r for r in caplog.records if "Audit log write failed" in r.getMessage()]) == 1


class TestSessionAudit:
    async def test_turn_is_audited(self, make_session, tmp_path):
        log = AuditLog(tmp_path / "audit", session_id="sess_a")
        client = ScriptedModelClient(
            [call("c1", "delete_file", '{"path": "a.txt"}'), end("tool_calls")],
            [text("ok"), end()],
        )
        session = make_session(client, approver=RecordingApprover(ApprovalDecision.deny("keep it")), audit=log)

        await session.submit("delete a.txt").wait()

        types = [e.event_type for e in log.read()]
        assert types[0] is AuditEventType.TURN_OPENED
        assert types[-1] is AuditEventType.TURN_CLOSED
        assert AuditEventType.APPROVAL_REQUESTED in types
        decided = [e for e in log.read() if e.event_type is AuditEventType.APPROVAL_DECIDED]
        assert decided[0].payload["status"] == "denied_with_feedback"
        assert decided[0].payload["feedback"] == "keep it"
        kinds = [e.payload["kind"] for e in log.read() if e.event_type is AuditEventType.TRANSCRIPT_EVENT]
        assert kinds == ["user_message", "tool_call_request", "tool_call_error", "model_text"]
