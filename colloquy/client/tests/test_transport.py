"""Unit tests for colloquy.client.transport: exception translation, SSE streaming, and the ChatHub handshake.

No network I/O: the HTTP session and the WebSocket are replaced by fakes.
"""

import json
import threading

import pytest

import requests
import websocket

from colloquy.client import transport
from colloquy.client.errors import CancellationError, ProtocolError, ResponseTimeoutError, TransportError


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeResponse:
    def __init__(self, status_code=200, chunks=(), text="", reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self.chunks = list(chunks)
        self.text = text
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def json(self):
        return json.loads(self.text)

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def _call(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response

    def post(self, url, **kwargs):
        return self._call("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._call("GET", url, **kwargs)


class FakeWebSocket:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    def send(self, data):
        self.sent.append(data)

    def recv(self):
        if not self.frames:
            return ""
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame

    def close(self):
        self.closed = True


def sse_bytes(*data):
    return [f"data: {item}\n\n".encode("utf-8") for item in data]


def make_http(response=None, exc=None):
    return transport.HTTPTransport(timeout=5, connect_timeout=5, session=FakeSession(response=response, exc=exc))


@pytest.fixture
def fake_websocket(monkeypatch):
    """Install a fake `websocket.create_connection`; set `.frames` on the returned holder before use."""
    holder = type("Holder", (), {"frames": [], "ws": None, "kwargs": None})()
    def create_connection(url, **kwargs):
        holder.ws = FakeWebSocket(holder.frames)
        holder.kwargs = kwargs
        return holder.ws
    monkeypatch.setattr(websocket, "create_connection", create_connection)
    return holder


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestStreamEvents:
    def test_yields_events(self):
        response = FakeResponse(chunks=sse_bytes('{"x": 1}', "[DONE]"))
        http = make_http(response)
        events = list(http.stream_events("https://example.invalid/v1", {}, {"stream": True}))
        assert [event.data for event in events] == ['{"x": 1}', "[DONE]"]
        method, url, kwargs = http.session.calls[0]
        assert (method, url) == ("POST", "https://example.invalid/v1")
        assert kwargs["stream"] is True
        assert kwargs["json"] == {"stream": True}
        assert kwargs["timeout"] == (5, 5)

    def test_error_status(self):
        response = FakeResponse(status_code=429, text='{"error": {"message": "rate limited"}}', reason="Too Many Requests")
        http = make_http(response)
        with pytest.raises(TransportError) as excinfo:
            list(http.stream_events("https://example.invalid/v1", {}, {}))
        assert excinfo.value.code == 429
        assert excinfo.value.retryable
        assert excinfo.value.details == {"error": {"message": "rate limited"}}
        assert "rate limited" in str(excinfo.value)
        assert response.closed

    def test_unauthorized_is_not_retryable(self):
        http = make_http(FakeResponse(status_code=401, text="nope", reason="Unauthorized"))
        with pytest.raises(TransportError) as excinfo:
            list(http.stream_events("https://example.invalid/v1", {}, {}))
        assert not excinfo.value.retryable
        assert excinfo.value.details is None

    def test_read_timeout(self):
        http = make_http(exc=requests.exceptions.ReadTimeout("read timed out"))
        with pytest.raises(ResponseTimeoutError):
            list(http.stream_events("https://example.invalid/v1", {}, {}))

    def test_connection_error(self):
        http = make_http(exc=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(TransportError) as excinfo:
            list(http.stream_events("https://example.invalid/v1", {}, {}))
        assert excinfo.value.retryable

    def test_connection_lost_mid_stream(self):
        chunks = sse_bytes('{"x": 1}') + [requests.exceptions.ChunkedEncodingError("connection broken")]
        http = make_http(FakeResponse(chunks=chunks))
        with pytest.raises(TransportError) as excinfo:
            list(http.stream_events("https://example.invalid/v1", {}, {}))
        assert excinfo.value.retryable

    def test_abort_before_start(self):
        abort = threading.Event()
        abort.set()
        http = make_http(FakeResponse(chunks=sse_bytes("[DONE]")))
        with pytest.raises(CancellationError):
            list(http.stream_events("https://example.invalid/v1", {}, {}, abort))
        assert http.session.calls == []

    def test_abort_mid_stream(self):
        abort = threading.Event()
        http = make_http(FakeResponse(chunks=sse_bytes("one", "two", "three")))
        received = []
        with pytest.raises(CancellationError):
            for event in http.stream_events("https://example.invalid/v1", {}, {}, abort):
                received.append(event.data)
                abort.set()
        assert received == ["one"]


class TestOneShotRequests:
    def test_post_json(self):
        http = make_http(FakeResponse(text='{"choices": []}'))
        assert http.post_json("https://example.invalid/v1", {}, {"x": 1}) == {"choices": []}
        method, url, kwargs = http.session.calls[0]
        assert kwargs["stream"] is False

    def test_post_json_error_status(self):
        http = make_http(FakeResponse(status_code=500, text="oops", reason="Internal Server Error"))
        with pytest.raises(TransportError) as excinfo:
            http.post_json("https://example.invalid/v1", {}, {})
        assert excinfo.value.code == 500

    def test_get_json_unparseable(self):
        http = make_http(FakeResponse(text="<html>"))
        with pytest.raises(ProtocolError):
            http.get_json("https://example.invalid/create", {})

    def test_get_json_without_status_check(self):
        http = make_http(FakeResponse(status_code=401, text='{"result": {"value": "UnauthorizedRequest"}}'))
        assert http.get_json("https://example.invalid/create", {}, check_status=False) == {"result": {"value": "UnauthorizedRequest"}}


class TestAbortWatcher:
    def test_closes_on_abort(self):
        abort = threading.Event()
        closed = threading.Event()
        with transport.abort_watcher(abort, closed.set):
            abort.set()
            assert closed.wait(timeout=5)

    def test_no_close_without_abort(self):
        abort = threading.Event()
        closed = threading.Event()
        with transport.abort_watcher(abort, closed.set):
            pass
        abort.set()
        assert not closed.wait(timeout=0.3)


# ---------------------------------------------------------------------------
# ChatHub
# ---------------------------------------------------------------------------

class TestChatHubTransport:
    def test_handshake_request_and_frames(self, fake_websocket):
        fake_websocket.frames = ["{}\x1e", '{"type": 1}\x1e', '{"type": 2}\x1e']
        chathub = transport.ChatHubTransport(timeout=5, ping_interval=60)
        frames = list(chathub.stream_frames("wss://example.invalid/ChatHub", {"type": 4}))
        assert frames == ['{"type": 1}\x1e', '{"type": 2}\x1e']
        assert fake_websocket.ws.sent == ['{"protocol": "json", "version": 1}\x1e', '{"type": 4}\x1e']
        assert fake_websocket.ws.closed
        assert fake_websocket.kwargs["timeout"] == 5

    def test_keepalive_thread_is_joined(self, fake_websocket):
        fake_websocket.frames = ["{}\x1e", '{"type": 2}\x1e']
        chathub = transport.ChatHubTransport(ping_interval=60)
        list(chathub.stream_frames("wss://example.invalid/ChatHub", {}))
        assert not any(thread.name == "colloquy-chathub-keepalive" for thread in threading.enumerate())

    def test_proxy(self, fake_websocket):
        fake_websocket.frames = ["{}\x1e"]
        chathub = transport.ChatHubTransport(proxy="http://127.0.0.1:8080", ping_interval=60)
        list(chathub.stream_frames("wss://example.invalid/ChatHub", {}))
        assert fake_websocket.kwargs["http_proxy_host"] == "127.0.0.1"
        assert fake_websocket.kwargs["http_proxy_port"] == 8080

    def test_closed_during_handshake(self, fake_websocket):
        fake_websocket.frames = []
        chathub = transport.ChatHubTransport(ping_interval=60)
        with pytest.raises(TransportError) as excinfo:
            list(chathub.stream_frames("wss://example.invalid/ChatHub", {}))
        assert excinfo.value.retryable
        assert fake_websocket.ws.closed

    def test_timeout(self, fake_websocket):
        fake_websocket.frames = ["{}\x1e", websocket.WebSocketTimeoutException("timed out")]
        chathub = transport.ChatHubTransport(ping_interval=60)
        with pytest.raises(ResponseTimeoutError):
            list(chathub.stream_frames("wss://example.invalid/ChatHub", {}))
        assert fake_websocket.ws.closed

    def test_closing_generator_closes_socket(self, fake_websocket):
        fake_websocket.frames = ["{}\x1e", "one\x1e", "two\x1e"]
        chathub = transport.ChatHubTransport(ping_interval=60)
        frames = chathub.stream_frames("wss://example.invalid/ChatHub", {})
        assert next(frames) == "one\x1e"
        frames.close()
        assert fake_websocket.ws.closed
