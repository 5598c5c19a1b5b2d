from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel

from .models import TRANSCRIPT_EVENT_ADAPTER, AuditEvent, AuditEventType

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append-only JSONL audit trail for one session (`<dir>/<session_id>.jsonl`).

    Write failures are logged and swallowed: auditing never breaks a turn.
    """

    def __init__(self, directory: Path, *, session_id: str) -> None:
        self._path = Path(directory) / f"{session_id}.jsonl"
        self._session_id = session_id
        self._lock = threading.Lock()
        self._failed = False

    @property
    def path(self) -> Path:
        return self._path

    def write(
        self,
        event_type: AuditEventType,
        *,
        turn_id: str | None = None,
        tool_call_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            session_id=self._session_id,
            turn_id=turn_id,
            tool_call_id=tool_call_id,
            payload=payload or {},
        )
        line = event.model_dump_json() + "\n"
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as e:
                if not self._failed:
                    logger.warning("Audit log write failed (%s): %s", self._path, e)
                self._failed = True

    def record_transcript_event(self, event: BaseModel) -> None:
        data = TRANSCRIPT_EVENT_ADAPTER.dump_python(event, mode="json")
        self.write(
            AuditEventType.TRANSCRIPT_EVENT,
            turn_id=data.get("turn_id"),
            tool_call_id=data.get("tool_call_id"),
            payload=data,
        )

    def read(self) -> Iterator[AuditEvent]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield AuditEvent.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.debug("Skipping unreadable audit line in %s: %s", self._path, e)
