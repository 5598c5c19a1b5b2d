"""
Session and turn state machine.

A session holds an ordered list of turns and at most one in-flight turn. Each turn runs as a
background task that feeds a `TurnStream`:

    append UserMessage
    loop:
        check cancellation
        project the whole transcript into a model request and stream the response (with retry)
        append ModelText and each ToolCallRequest (malformed calls become ToolCallError)
        no tool calls -> close the turn
        gate each request through the approval engine, in request order
        execute approved requests concurrently; append outcomes in request order
        cancelled -> append Cancelled and stop

Every ToolCallRequest in the transcript is answered by exactly one ToolCallResult or
ToolCallError, whatever way the turn ends.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel

from .actions import Action, ActionKind
from .approval import ApprovalEngine, ApprovalRecord, ApprovalStatus
from .audit import AuditLog
from .config import RetryPolicy
from .error_codes import ErrorCode
from .ids import new_id, new_session_id, new_tool_call_id, new_turn_id
from .llm.errors import (
    CancellationToken,
    LLMErrorCode,
    LLMRequestError,
    OperationCancelledError,
    classify_provider_exception,
    run_cancellable,
    turn_error_code,
)
from .llm.types import CanonicalMessage, CanonicalMessageRole, CanonicalRequest, ModelClient, ToolCall
from .models import (
    ApprovalRequested,
    ApprovalResolved,
    AuditEventType,
    Cancelled,
    ModelCallRetrying,
    ModelText,
    ModelTextDelta,
    ToolCallError,
    ToolCallOrigin,
    ToolCallRequest,
    ToolCallResult,
    ToolCallStarted,
    TranscriptEvent,
    TurnCancelled,
    TurnClosed,
    TurnFailed,
    UserMessage,
    is_terminal,
)
from .streaming import EndOfTurn, MalformedToolCall, ParsedToolCall, StreamingResponseHandler, TextChunk
from .tools.executor import ExecutionResult, ExecutionStatus, ToolExecutor
from .tools.previews import summarize_tool_call
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CANCELLED_NOTE = "[turn cancelled by user]"


class SessionBusyError(RuntimeError):
    """Raised by `submit` while another turn is still open."""


class TurnStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class Turn:
    turn_id: str
    cancel: CancellationToken = field(default_factory=CancellationToken)
    status: TurnStatus = TurnStatus.OPEN
    events: list[TranscriptEvent] = field(default_factory=list)
    tool_call_ids: set[str] = field(default_factory=set)
    error_code: ErrorCode | None = None
    error_message: str | None = None
    final_text: str = ""

    @property
    def is_open(self) -> bool:
        return self.status is TurnStatus.OPEN


class TurnStream:
    """
    Async iterator over one turn's events, ending with exactly one terminal event
    (`TurnClosed`, `TurnCancelled` or `TurnFailed`).
    """

    def __init__(self, turn: Turn) -> None:
        self.turn = turn
        self._queue: asyncio.Queue[BaseModel] = asyncio.Queue()
        self._done = False
        self._terminal: BaseModel | None = None

    def _put(self, event: BaseModel) -> None:
        self._queue.put_nowait(event)

    def __aiter__(self) -> "TurnStream":
        return self

    async def __anext__(self) -> BaseModel:
        if self._done:
            raise StopAsyncIteration
        event = await self._queue.get()
        if is_terminal(event):
            self._done = True
            self._terminal = event
        return event

    async def collect(self) -> list[BaseModel]:
        return [event async for event in self]

    async def wait(self) -> BaseModel:
        """Drain the stream and return its terminal event."""

        async for _ in self:
            pass
        assert self._terminal is not None
        return self._terminal


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _tool_message_content(event: ToolCallResult | ToolCallError) -> str:
    if isinstance(event, ToolCallResult):
        return _json_text({"ok": True, "tool": event.tool_name, "result": event.payload})
    return _json_text({"ok": False, "tool": event.tool_name, "error_code": event.error_code.value, "error": event.message})


@dataclass(slots=True)
class _PendingAssistant:
    key: str
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    deferred: list[CanonicalMessage] = field(default_factory=list)


def project_transcript(events: Iterable[TranscriptEvent]) -> list[CanonicalMessage]:
    """
    Project transcript events onto provider-neutral chat messages.

    Text and tool calls from one model response (same `step_id`) become a single assistant
    message; results and errors become tool messages correlated by `tool_call_id`.
    """

    messages: list[CanonicalMessage] = []
    pending: _PendingAssistant | None = None

    def _flush() -> None:
        nonlocal pending
        if pending is None:
            return
        messages.append(
            CanonicalMessage(
                role=CanonicalMessageRole.ASSISTANT,
                content=pending.text,
                tool_calls=list(pending.tool_calls) or None,
            )
        )
        messages.extend(pending.deferred)
        pending = None

    def _assistant_for(key: str) -> _PendingAssistant:
        nonlocal pending
        if pending is None or pending.key != key:
            _flush()
            pending = _PendingAssistant(key=key)
        return pending

    for ev in events:
        if isinstance(ev, UserMessage):
            _flush()
            messages.append(CanonicalMessage(role=CanonicalMessageRole.USER, content=ev.text))
        elif isinstance(ev, ModelText):
            current = _assistant_for(ev.step_id or ev.event_id)
            current.text += ev.text
        elif isinstance(ev, ToolCallRequest):
            current = _assistant_for(ev.step_id or ev.event_id)
            current.tool_calls.append(
                ToolCall(tool_call_id=ev.tool_call_id, name=ev.tool_name, raw_arguments=_json_text(ev.arguments))
            )
        elif isinstance(ev, ToolCallError) and ev.raw_arguments is not None:
            # Malformed call: echo what the model sent so the error stays correlated.
            current = _assistant_for(ev.step_id or ev.event_id)
            current.tool_calls.append(
                ToolCall(tool_call_id=ev.tool_call_id, name=ev.tool_name or "unknown", raw_arguments=ev.raw_arguments)
            )
            current.deferred.append(
                CanonicalMessage(
                    role=CanonicalMessageRole.TOOL,
                    content=_tool_message_content(ev),
                    tool_call_id=ev.tool_call_id,
                    tool_name=ev.tool_name,
                )
            )
        elif isinstance(ev, (ToolCallResult, ToolCallError)):
            _flush()
            messages.append(
                CanonicalMessage(
                    role=CanonicalMessageRole.TOOL,
                    content=_tool_message_content(ev),
                    tool_call_id=ev.tool_call_id,
                    tool_name=ev.tool_name,
                )
            )
        elif isinstance(ev, Cancelled):
            _flush()
            messages.append(CanonicalMessage(role=CanonicalMessageRole.USER, content=CANCELLED_NOTE))
    _flush()
    return messages


def _denial_message(status: ApprovalStatus, feedback: str | None, rationale: str | None) -> str:
    if status is ApprovalStatus.DENIED_WITH_FEEDBACK:
        return f"Approval denied. User note: {feedback}"
    if rationale:
        return f"Approval denied. {rationale}"
    return "Approval denied by user."


class Session:
    def __init__(
        self,
        *,
        client: ModelClient,
        registry: ToolRegistry,
        approvals: ApprovalEngine | None = None,
        executor: ToolExecutor | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        system_prompt: str | None = None,
        retry: RetryPolicy | None = None,
        max_tool_rounds: int = 30,
        model_params: Mapping[str, Any] | None = None,
        audit: AuditLog | None = None,
        session_id: str | None = None,
    ) -> None:
        if not 1 <= int(max_tool_rounds) <= 256:
            raise ValueError("max_tool_rounds must be between 1 and 256.")
        self.session_id = session_id or new_session_id()
        self._client = client
        self._registry = registry.freeze()
        self._approvals = approvals or ApprovalEngine()
        self._executor = executor or ToolExecutor(
            registry=self._registry,
            cwd=Path(cwd) if cwd is not None else Path.cwd(),
            env=env,
            session_id=self.session_id,
        )
        self._system_prompt = system_prompt
        self._retry = retry or RetryPolicy()
        self._max_tool_rounds = int(max_tool_rounds)
        self._model_params = dict(model_params or {})
        self._audit = audit

        self._turns: list[Turn] = []
        self._current: Turn | None = None
        self._streams: dict[str, TurnStream] = {}
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._sequence = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def approvals(self) -> ApprovalEngine:
        return self._approvals

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def current_turn(self) -> Turn | None:
        return self._current

    @property
    def busy(self) -> bool:
        return self._current is not None

    def history(self) -> list[TranscriptEvent]:
        return [ev for turn in self._turns for ev in turn.events]

    def submit(self, user_input: str) -> TurnStream:
        """
        Open a turn for `user_input` and return its event stream.

        Must be called with a running event loop. Raises `SessionBusyError` if a turn is open.
        """

        if not isinstance(user_input, str) or not user_input.strip():
            raise ValueError("User input must be a non-empty string.")
        turn, stream = self._open_turn()
        self._task = asyncio.get_running_loop().create_task(self._run(turn, stream, self._model_loop(turn, stream, user_input)))
        return stream

    def submit_action(self, action: Action) -> TurnStream:
        """Run a canned tool action through the approval and execution pipeline, without a model call."""

        if action.kind is not ActionKind.TOOL or not action.tool_name:
            raise ValueError(f"Only tool actions can be submitted, got {action.kind.value}.")
        turn, stream = self._open_turn()
        self._task = asyncio.get_running_loop().create_task(self._run(turn, stream, self._action_turn(turn, stream, action)))
        return stream

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Cancel the in-flight turn. Safe to call from any thread."""

        turn = self._current
        if turn is None:
            return False
        logger.info("Cancelling turn %s: %s", turn.turn_id, reason)
        turn.cancel.cancel(reason)
        return True

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None and not task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)

    # ---- turn lifecycle ----

    def _open_turn(self) -> tuple[Turn, TurnStream]:
        if self._current is not None:
            raise SessionBusyError(f"Turn {self._current.turn_id} is still in progress.")
        turn = Turn(turn_id=new_turn_id())
        stream = TurnStream(turn)
        self._current = turn
        self._turns.append(turn)
        self._streams[turn.turn_id] = stream
        logger.info("Opened turn %s (session %s)", turn.turn_id, self.session_id)
        self._audit_write(AuditEventType.TURN_OPENED, turn_id=turn.turn_id)
        return turn, stream

    async def _run(self, turn: Turn, stream: TurnStream, body: Any) -> None:
        try:
            await body
        except OperationCancelledError:
            await self._finish_cancelled(turn, stream)
        except Exception as e:
            logger.exception("Turn %s crashed", turn.turn_id)
            await self._finish_failed(turn, stream, ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")
        finally:
            if turn.is_open:
                await self._finish_failed(turn, stream, ErrorCode.UNKNOWN, "Turn ended without a terminal state.")
            self._streams.pop(turn.turn_id, None)
            if self._current is turn:
                self._current = None

    async def _append(self, turn: Turn, event: TranscriptEvent, stream: TurnStream | None = None) -> TranscriptEvent:
        async with self._lock:
            self._sequence += 1
            event = event.model_copy(update={"sequence": self._sequence})
            turn.events.append(event)
        if self._audit is not None:
            self._audit.record_transcript_event(event)
        if stream is not None:
            stream._put(event)
        return event

    def _emit(self, stream: TurnStream, event: BaseModel) -> None:
        stream._put(event)

    def _audit_write(self, event_type: AuditEventType, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit.write(event_type, **kwargs)

    async def _answer_dangling(self, turn: Turn, stream: TurnStream, code: ErrorCode, message: str) -> None:
        answered = {ev.tool_call_id for ev in turn.events if isinstance(ev, (ToolCallResult, ToolCallError))}
        for ev in list(turn.events):
            if isinstance(ev, ToolCallRequest) and ev.tool_call_id not in answered:
                await self._append(
                    turn,
                    ToolCallError(
                        turn_id=turn.turn_id,
                        step_id=ev.step_id,
                        tool_call_id=ev.tool_call_id,
                        tool_name=ev.tool_name,
                        error_code=code,
                        message=message,
                    ),
                    stream,
                )

    async def _finish_closed(self, turn: Turn, stream: TurnStream, final_text: str) -> None:
        turn.status = TurnStatus.CLOSED
        turn.final_text = final_text
        logger.info("Closed turn %s", turn.turn_id)
        self._audit_write(AuditEventType.TURN_CLOSED, turn_id=turn.turn_id, payload={"status": turn.status.value})
        self._emit(stream, TurnClosed(turn_id=turn.turn_id, final_text=final_text))

    async def _finish_cancelled(self, turn: Turn, stream: TurnStream) -> None:
        if not turn.is_open:
            return
        reason = turn.cancel.reason or "cancelled"
        await self._answer_dangling(turn, stream, ErrorCode.CANCELLED, "Tool call cancelled.")
        await self._append(turn, Cancelled(turn_id=turn.turn_id, reason=reason), stream)
        turn.status = TurnStatus.CANCELLED
        turn.error_code = ErrorCode.CANCELLED
        logger.info("Cancelled turn %s: %s", turn.turn_id, reason)
        self._audit_write(
            AuditEventType.TURN_CLOSED,
            turn_id=turn.turn_id,
            payload={"status": turn.status.value, "reason": reason},
        )
        self._emit(stream, TurnCancelled(turn_id=turn.turn_id, reason=reason))

    async def _finish_failed(self, turn: Turn, stream: TurnStream, code: ErrorCode, message: str) -> None:
        if not turn.is_open:
            return
        await self._answer_dangling(turn, stream, code, message)
        turn.status = TurnStatus.FAILED
        turn.error_code = code
        turn.error_message = message
        logger.warning("Turn %s failed: %s: %s", turn.turn_id, code, message)
        self._audit_write(
            AuditEventType.TURN_CLOSED,
            turn_id=turn.turn_id,
            payload={"status": turn.status.value, "error_code": code.value, "error": message},
        )
        self._emit(stream, TurnFailed(turn_id=turn.turn_id, error_code=code, message=message))

    # ---- model loop ----

    async def _model_loop(self, turn: Turn, stream: TurnStream, user_input: str) -> None:
        await self._append(turn, UserMessage(turn_id=turn.turn_id, text=user_input), stream)
        rounds = 0
        while True:
            if turn.cancel.cancelled:
                await self._finish_cancelled(turn, stream)
                return

            step_id = new_id("step")
            try:
                text, items = await self._call_model(turn, stream, step_id)
            except LLMRequestError as e:
                if e.code is LLMErrorCode.CANCELLED or turn.cancel.cancelled:
                    await self._finish_cancelled(turn, stream)
                    return
                await self._finish_failed(turn, stream, turn_error_code(e.code), str(e))
                return

            if text:
                await self._append(turn, ModelText(turn_id=turn.turn_id, step_id=step_id, text=text), stream)

            requests: list[ToolCallRequest] = []
            for item in items:
                tool_call_id = self._unique_tool_call_id(turn, item.tool_call_id)
                if isinstance(item, ParsedToolCall):
                    request = ToolCallRequest(
                        turn_id=turn.turn_id,
                        step_id=step_id,
                        tool_call_id=tool_call_id,
                        tool_name=item.tool_name,
                        arguments=item.arguments,
                        origin=ToolCallOrigin.MODEL,
                    )
                    requests.append(await self._append(turn, request, stream))
                else:
                    logger.info("Malformed tool call from model (%s): %s", item.tool_name or "?", item.message)
                    await self._append(
                        turn,
                        ToolCallError(
                            turn_id=turn.turn_id,
                            step_id=step_id,
                            tool_call_id=tool_call_id,
                            tool_name=item.tool_name,
                            error_code=item.error_code,
                            message=item.message,
                            raw_arguments=item.raw_arguments,
                        ),
                        stream,
                    )

            if not items:
                await self._finish_closed(turn, stream, text)
                return

            rounds += 1
            if rounds > self._max_tool_rounds:
                await self._finish_failed(
                    turn,
                    stream,
                    ErrorCode.MAX_TOOL_ROUNDS_EXCEEDED,
                    f"Exceeded max_tool_rounds ({self._max_tool_rounds}).",
                )
                return

            await self._dispatch(turn, stream, requests)
            if turn.cancel.cancelled:
                await self._finish_cancelled(turn, stream)
                return

    def _unique_tool_call_id(self, turn: Turn, raw: str | None) -> str:
        tool_call_id = raw.strip() if isinstance(raw, str) else ""
        if not tool_call_id or tool_call_id in turn.tool_call_ids:
            tool_call_id = new_tool_call_id()
        turn.tool_call_ids.add(tool_call_id)
        return tool_call_id

    def _build_request(self) -> CanonicalRequest:
        return CanonicalRequest(
            system=self._system_prompt,
            messages=project_transcript(self.history()),
            tools=[d.to_tool_spec() for d in self._registry.descriptors()],
            params=dict(self._model_params),
        )

    async def _call_model(
        self, turn: Turn, stream: TurnStream, step_id: str
    ) -> tuple[str, list[ParsedToolCall | MalformedToolCall]]:
        request = self._build_request()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._stream_once(turn, stream, request, step_id)
            except LLMRequestError as e:
                if turn.cancel.cancelled or not e.retryable or attempt >= self._retry.max_attempts:
                    raise
                delay = self._retry.delay_for(attempt)
                logger.warning(
                    "Model call failed (attempt %d/%d, %s): %s; retrying in %.2fs",
                    attempt,
                    self._retry.max_attempts,
                    e.code,
                    e,
                    delay,
                )
                self._audit_write(
                    AuditEventType.MODEL_CALL_RETRIED,
                    turn_id=turn.turn_id,
                    payload={"attempt": attempt, "error_code": e.code.value, "error": str(e), "delay_s": delay},
                )
                self._emit(
                    stream,
                    ModelCallRetrying(
                        turn_id=turn.turn_id,
                        attempt=attempt,
                        max_attempts=self._retry.max_attempts,
                        delay_s=delay,
                        error_code=e.code.value,
                        message=str(e),
                    ),
                )
                await run_cancellable(asyncio.sleep(delay), turn.cancel)

    async def _stream_once(
        self, turn: Turn, stream: TurnStream, request: CanonicalRequest, step_id: str
    ) -> tuple[str, list[ParsedToolCall | MalformedToolCall]]:
        loop = asyncio.get_running_loop()
        q: asyncio.Queue[Any] = asyncio.Queue()
        client = self._client
        cancel = turn.cancel

        def _put(item: Any) -> None:
            # The loop may already be closed if the turn was abandoned.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(q.put_nowait, item)

        def _producer() -> None:
            try:
                handler = StreamingResponseHandler(client.stream(request, cancel=cancel))
                for item in handler:
                    if cancel.cancelled:
                        break
                    _put(item)
                _put(None)
            except BaseException as e:
                _put(e)

        threading.Thread(target=_producer, name="tollgate-llm-stream", daemon=True).start()

        parts: list[str] = []
        calls: list[ParsedToolCall | MalformedToolCall] = []
        while True:
            item = await run_cancellable(q.get(), cancel)
            if item is None:
                break
            if isinstance(item, LLMRequestError):
                raise item
            if isinstance(item, BaseException):
                raise LLMRequestError(
                    f"Model call failed: {type(item).__name__}: {item}",
                    code=classify_provider_exception(item),
                    details={"operation": "stream"},
                    cause=item,
                )
            if isinstance(item, TextChunk):
                parts.append(item.text)
                self._emit(stream, ModelTextDelta(turn_id=turn.turn_id, step_id=step_id, text=item.text))
            elif isinstance(item, (ParsedToolCall, MalformedToolCall)):
                calls.append(item)
            elif isinstance(item, EndOfTurn):
                logger.debug("Model step %s finished: %s", step_id, item.finish_reason)

        if cancel.cancelled:
            raise OperationCancelledError(cancel.reason or "cancelled")
        return "".join(parts), calls

    # ---- approvals and execution ----

    async def _dispatch(self, turn: Turn, stream: TurnStream, requests: list[ToolCallRequest]) -> None:
        outcomes: dict[str, ToolCallResult | ToolCallError] = {}
        approved: list[ToolCallRequest] = []

        async def _on_pending(record: ApprovalRecord) -> None:
            req = record.request
            self._audit_write(
                AuditEventType.APPROVAL_REQUESTED,
                turn_id=turn.turn_id,
                tool_call_id=req.tool_call_id,
                payload={"approval_id": req.approval_id, "tool_name": req.tool_name, "summary": req.action_summary},
            )
            self._emit(
                stream,
                ApprovalRequested(
                    turn_id=turn.turn_id,
                    approval_id=req.approval_id,
                    tool_call_id=req.tool_call_id,
                    tool_name=req.tool_name,
                    action_summary=req.action_summary,
                    rationale=req.rationale,
                    risk_level=req.risk_level,
                    preview=req.preview,
                ),
            )

        for request in requests:
            if turn.cancel.cancelled:
                break
            descriptor = self._registry.resolve(request.tool_name)
            if not self._approvals.requires_approval(descriptor, request):
                approved.append(request)
                continue

            decision = await self._approvals.request_approval(request, descriptor, turn.cancel, on_pending=_on_pending)
            record = self._approvals.record_for(request)
            if record is not None:
                self._audit_write(
                    AuditEventType.APPROVAL_DECIDED,
                    turn_id=turn.turn_id,
                    tool_call_id=request.tool_call_id,
                    payload={
                        "approval_id": record.request.approval_id,
                        "status": record.status.value,
                        "decided_by": record.decided_by.value if record.decided_by else None,
                        "feedback": record.feedback,
                        "rationale": record.rationale,
                    },
                )
                self._emit(
                    stream,
                    ApprovalResolved(
                        turn_id=turn.turn_id,
                        approval_id=record.request.approval_id,
                        tool_call_id=request.tool_call_id,
                        status=record.status.value,
                        decided_by=record.decided_by.value if record.decided_by else "user",
                        feedback=record.feedback,
                    ),
                )

            if decision.approved:
                approved.append(request)
                continue
            if decision.status is ApprovalStatus.CANCELLED:
                break
            code = (
                ErrorCode.APPROVAL_DENIED_WITH_FEEDBACK
                if decision.status is ApprovalStatus.DENIED_WITH_FEEDBACK
                else ErrorCode.APPROVAL_DENIED
            )
            outcomes[request.tool_call_id] = ToolCallError(
                turn_id=turn.turn_id,
                step_id=request.step_id,
                tool_call_id=request.tool_call_id,
                tool_name=request.tool_name,
                error_code=code,
                message=_denial_message(decision.status, decision.feedback, decision.rationale),
                feedback=decision.feedback,
            )

        if approved and not turn.cancel.cancelled:
            for request in approved:
                self._emit(
                    stream,
                    ToolCallStarted(
                        turn_id=turn.turn_id,
                        tool_call_id=request.tool_call_id,
                        tool_name=request.tool_name,
                        summary=summarize_tool_call(request.tool_name, request.arguments),
                    ),
                )
            results = await self._executor.execute_batch(approved, turn.cancel, turn_id=turn.turn_id)
            for request, result in zip(approved, results):
                outcomes[request.tool_call_id] = self._result_event(turn, request, result)

        for request in requests:
            event = outcomes.get(request.tool_call_id)
            if event is None:
                event = ToolCallError(
                    turn_id=turn.turn_id,
                    step_id=request.step_id,
                    tool_call_id=request.tool_call_id,
                    tool_name=request.tool_name,
                    error_code=ErrorCode.CANCELLED,
                    message="Tool call cancelled.",
                )
            await self._append(turn, event, stream)

    @staticmethod
    def _result_event(turn: Turn, request: ToolCallRequest, result: ExecutionResult) -> ToolCallResult | ToolCallError:
        if result.status is ExecutionStatus.SUCCEEDED:
            return ToolCallResult(
                turn_id=turn.turn_id,
                step_id=request.step_id,
                tool_call_id=request.tool_call_id,
                tool_name=request.tool_name,
                payload=result.payload,
                duration_ms=result.duration_ms,
            )
        return ToolCallError(
            turn_id=turn.turn_id,
            step_id=request.step_id,
            tool_call_id=request.tool_call_id,
            tool_name=request.tool_name,
            error_code=result.error_code or ErrorCode.TOOL_EXECUTION_FAILURE,
            message=result.message or "Tool failed.",
            duration_ms=result.duration_ms,
        )

    # ---- canned actions ----

    async def _action_turn(self, turn: Turn, stream: TurnStream, action: Action) -> None:
        request = ToolCallRequest(
            turn_id=turn.turn_id,
            tool_call_id=self._unique_tool_call_id(turn, None),
            tool_name=str(action.tool_name),
            arguments=dict(action.arguments),
            origin=ToolCallOrigin.USER,
        )
        request = await self._append(turn, request, stream)
        await self._dispatch(turn, stream, [request])
        if turn.cancel.cancelled:
            await self._finish_cancelled(turn, stream)
            return
        await self._finish_closed(turn, stream, "")
