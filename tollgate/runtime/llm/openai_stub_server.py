from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    length_raw = handler.headers.get("content-length")
    try:
        length = int(length_raw) if length_raw else 0
    except ValueError:
        length = 0
    body = handler.rfile.read(max(0, length)) if length > 0 else b""
    try:
        data = json.loads(body.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _json_response(handler: BaseHTTPRequestHandler, status: int, payload: dict[str, Any]) -> None:
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("content-type", "application/json; charset=utf-8")
    handler.send_header("content-length", str(len(data)))
    handler.end_headers()
    handler.wfile.write(data)


def _find_last_tool_message(messages: Any) -> dict[str, Any] | None:
    if not isinstance(messages, list) or not messages:
        return None
    last = messages[-1]
    if isinstance(last, dict) and last.get("role") == "tool":
        return last
    return None


def _build_final_answer_from_tool_message(tool_msg: dict[str, Any]) -> str:
    content = tool_msg.get("content")
    if not isinstance(content, str) or not content.strip():
        return "Tool finished."
    try:
        obj = json.loads(content)
    except json.JSONDecodeError:
        return f"Tool finished (raw): {content[:500]}"
    if not isinstance(obj, dict):
        return "Tool finished."
    if obj.get("ok") is not True:
        return f"Tool failed: {obj.get('error_code')}: {obj.get('error')}"
    result = obj.get("result")
    if isinstance(result, dict) and isinstance(result.get("entries"), list):
        names = [str(e.get("name")) for e in result["entries"] if isinstance(e, dict)]
        return "Files: " + ", ".join(names)
    return f"Tool finished: {json.dumps(result, ensure_ascii=False)[:500]}"


@dataclass(slots=True)
class StubBehavior:
    """Knobs for tests: which tool the stub asks for and how many requests fail first."""

    tool_name: str = "list_dir"
    tool_args: dict[str, Any] = field(default_factory=lambda: {"path": "."})
    fail_first: int = 0
    fail_status: int = 503


class _StubHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], behavior: StubBehavior) -> None:
        super().__init__(address, _OpenAIStubHandler)
        self.behavior = behavior
        self.requests: list[dict[str, Any]] = []
        self.lock = threading.Lock()


class _OpenAIStubHandler(BaseHTTPRequestHandler):
    server_version = "TollgateOpenAIStub/0.1"
    server: _StubHTTPServer

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
        # Keep smoke tests quiet by default.
        return

    def do_GET(self) -> None:  # noqa: N802
        if self.path.rstrip("/") in {"/health", "/v1/health"}:
            _json_response(self, 200, {"ok": True})
            return
        _json_response(self, 404, {"error": {"message": "not found"}})

    def do_POST(self) -> None:  # noqa: N802
        if self.path.rstrip("/") != "/v1/chat/completions":
            _json_response(self, 404, {"error": {"message": "not found"}})
            return

        req = _read_json_body(self)
        behavior = self.server.behavior
        with self.server.lock:
            self.server.requests.append(req)
            attempt = len(self.server.requests)
        if attempt <= behavior.fail_first:
            _json_response(self, behavior.fail_status, {"error": {"message": f"stub failure #{attempt}"}})
            return

        messages = req.get("messages")
        tools = req.get("tools")
        model = req.get("model") or "stub"
        tool_msg = _find_last_tool_message(messages)

        tool_call: dict[str, Any] | None = None
        if tool_msg is None and isinstance(tools, list) and tools:
            tool_call = {
                "index": 0,
                "id": "call_stub_0",
                "type": "function",
                "function": {"name": behavior.tool_name, "arguments": json.dumps(behavior.tool_args)},
            }
            text = ""
        elif tool_msg is None:
            text = "stub: ok\n"
        else:
            text = _build_final_answer_from_tool_message(tool_msg)

        now = int(time.time())
        self.send_response(200)
        self.send_header("content-type", "text/event-stream; charset=utf-8")
        self.send_header("cache-control", "no-cache")
        # Close after `[DONE]` so clients don't hang until timeout.
        self.send_header("connection", "close")
        self.end_headers()

        def _send(data: dict[str, Any]) -> None:
            chunk = json.dumps(data, ensure_ascii=False)
            self.wfile.write(f"data: {chunk}\n\n".encode("utf-8"))
            self.wfile.flush()

        base: dict[str, Any] = {
            "id": f"chatcmpl_stub_{now}",
            "object": "chat.completion.chunk",
            "created": now,
            "model": model,
        }

        if tool_call is not None:
            # Split the arguments to exercise client-side delta accumulation.
            args_text = tool_call["function"]["arguments"]
            head, tail = args_text[: len(args_text) // 2], args_text[len(args_text) // 2 :]
            first_delta = dict(tool_call, function={"name": tool_call["function"]["name"], "arguments": head})
            _send({**base, "choices": [{"index": 0, "delta": {"role": "assistant", "tool_calls": [first_delta]}, "finish_reason": None}]})
            _send({**base, "choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": tail}}]}, "finish_reason": None}]})
            _send({**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]})
        else:
            first = True
            for part in (text[:20], text[20:]):
                if not part:
                    continue
                delta: dict[str, Any] = {"content": part}
                if first:
                    delta["role"] = "assistant"
                    first = False
                _send({**base, "choices": [{"index": 0, "delta": delta, "finish_reason": None}]})
            _send({**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})

        self.wfile.write(b"data: [DONE]\n\n")
        self.wfile.flush()
        self.close_connection = True


@dataclass(slots=True)
class OpenAIStubServer:
    host: str = "127.0.0.1"
    port: int = 0
    behavior: StubBehavior = field(default_factory=StubBehavior)

    _server: _StubHTTPServer | None = None
    _thread: threading.Thread | None = None

    def start(self) -> None:
        if self._server is not None:
            return
        httpd = _StubHTTPServer((self.host, int(self.port)), self.behavior)
        self._server = httpd
        self.port = int(httpd.server_address[1])
        t = threading.Thread(target=httpd.serve_forever, name="openai-stub", daemon=True)
        self._thread = t
        t.start()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None
        self._thread = None

    @property
    def requests(self) -> list[dict[str, Any]]:
        if self._server is None:
            return []
        with self._server.lock:
            return list(self._server.requests)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/v1"

    def __enter__(self) -> "OpenAIStubServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.stop()


def main() -> None:
    srv = OpenAIStubServer(host="127.0.0.1", port=19840)
    srv.start()
    try:
        print(srv.base_url)
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        srv.stop()


if __name__ == "__main__":
    main()
