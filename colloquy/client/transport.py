"""Transports: move bytes between us and the backends.

  - `HTTPTransport`: plain JSON requests, and Server-Sent Events streams (requests + sseclient-py).
  - `ChatHubTransport`: the ChatHub WebSocket protocol (websocket-client).

Both translate the underlying libraries' exceptions into `client.errors`:

  - no data within the inactivity window -> `ResponseTimeoutError`
  - connection lost -> `TransportError` (retryable)
  - non-success HTTP status -> `TransportError` with `code` set to the status
  - the abort signal was raised -> `CancellationError`

Cancellation is cooperative. The abort signal is a `threading.Event`; when it is set, a watcher thread
closes the connection, which makes the blocking read in the consuming thread return or raise.
"""

__all__ = ["HTTPTransport", "ChatHubTransport"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import contextlib
import json
import threading
from typing import Any, Callable, Dict, Generator, Optional
import urllib.parse

import requests
import sseclient  # pip install sseclient-py
import urllib3
import websocket  # pip install websocket-client

from . import config as client_config
from . import streaming
from .errors import CancellationError, ProtocolError, ResponseTimeoutError, TransportError

# HTTP statuses after which it makes sense for the caller to try again later.
retryable_statuses = (408, 429, 500, 502, 503, 504)

@contextlib.contextmanager
def abort_watcher(abort: Optional[threading.Event], close: Callable) -> Generator[None, None, None]:
    """Context manager: while the `with` block runs, call `close()` as soon as `abort` is set.

    The watcher runs in a daemon thread. It exits when the `with` block exits, whether or not `abort` was set.
    If `abort is None`, this does nothing.
    """
    if abort is None:
        yield
        return
    finished = threading.Event()
    def watch():
        while not finished.is_set():
            if abort.wait(timeout=0.1) and not finished.is_set():
                logger.info("abort_watcher: abort signal raised; closing connection.")
                close()
                return
    thread = threading.Thread(target=watch, name="colloquy-abort-watcher", daemon=True)
    thread.start()
    try:
        yield
    finally:
        finished.set()
        thread.join()

def _check_abort(abort: Optional[threading.Event]) -> None:
    if abort is not None and abort.is_set():
        raise CancellationError("Request aborted")

def _is_read_timeout(exc: Exception) -> bool:
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    # While streaming, `requests` wraps urllib3's read timeout into a plain `ConnectionError`.
    return isinstance(exc, requests.exceptions.ConnectionError) and any(isinstance(arg, urllib3.exceptions.ReadTimeoutError) for arg in exc.args)

class HTTPTransport:
    def __init__(self,
                 timeout: Optional[float] = None,
                 connect_timeout: Optional[float] = None,
                 proxy: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        """HTTP transport for the completion API and the browser-session backend.

        `timeout`: Inactivity timeout in seconds: how long to wait for the next piece of data
                   before giving up. Default `client.config.response_timeout`.

        `connect_timeout`: Seconds to wait for the connection itself. Default `client.config.connect_timeout`.

        `proxy`: Optional proxy URL, used for both http and https.

        `session`: Optional `requests.Session` to use (e.g. for connection pooling across clients).
        """
        self.timeout = timeout if timeout is not None else client_config.response_timeout
        self.connect_timeout = connect_timeout if connect_timeout is not None else client_config.connect_timeout
        self.proxies = {"http": proxy, "https": proxy} if proxy else None
        self.session = session if session is not None else requests.Session()

    def _translate(self, exc: Exception, url: str) -> Exception:
        """Map a `requests` exception to our error taxonomy."""
        if _is_read_timeout(exc):
            return ResponseTimeoutError(f"Timed out waiting for response from {url} (no data in {self.timeout} seconds).")
        if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.ChunkedEncodingError, requests.exceptions.ConnectTimeout)):
            return TransportError(f"Connection to {url} failed: {exc}", retryable=True)
        return TransportError(f"Request to {url} failed: {type(exc)}: {exc}")

    def _check_status(self, response: requests.Response) -> None:
        if response.status_code == 200:
            return
        body = response.text
        try:
            details = json.loads(body)
        except ValueError:
            details = None
        logger.error(f"HTTPTransport: backend returned error: {response.status_code} {response.reason}. Content of error response follows.")
        logger.error(body)
        raise TransportError(f"Failed to send message. HTTP {response.status_code} - {body}",
                             code=response.status_code,
                             retryable=response.status_code in retryable_statuses,
                             details=details)

    def _post(self, url: str, headers: Dict[str, str], payload: Any, stream: bool) -> requests.Response:
        try:
            response = self.session.post(url,
                                         headers=headers,
                                         json=payload,
                                         stream=stream,
                                         proxies=self.proxies,
                                         timeout=(self.connect_timeout, self.timeout))
        except requests.exceptions.RequestException as exc:
            raise self._translate(exc, url) from exc
        return response

    def stream_events(self,
                      url: str,
                      headers: Dict[str, str],
                      payload: Any,
                      abort: Optional[threading.Event] = None) -> Generator:
        """POST `payload` as JSON to `url`, and yield the SSE events of the response as they arrive.

        Each yielded event has the attributes `.event` (event type, "message" by default) and `.data` (str).

        Closing the generator closes the connection.
        """
        _check_abort(abort)
        response = self._post(url, headers, payload, stream=True)
        try:
            self._check_status(response)
        except TransportError:
            response.close()
            raise
        client = sseclient.SSEClient(response)
        with abort_watcher(abort, client.close):
            try:
                for event in client.events():
                    _check_abort(abort)
                    yield event
                _check_abort(abort)  # closing the connection may end the stream quietly
            except CancellationError:
                raise
            except requests.exceptions.RequestException as exc:
                _check_abort(abort)
                raise self._translate(exc, url) from exc
            except Exception as exc:  # reading from a connection that the watcher just closed fails in various ways
                if abort is not None and abort.is_set():
                    raise CancellationError("Request aborted") from exc
                raise
            finally:
                client.close()

    def post_json(self,
                  url: str,
                  headers: Dict[str, str],
                  payload: Any,
                  abort: Optional[threading.Event] = None) -> Any:
        """POST `payload` as JSON to `url`, and return the decoded JSON response.

        The abort signal is checked before and after the request; a request already in flight runs to completion.
        """
        _check_abort(abort)
        response = self._post(url, headers, payload, stream=False)
        _check_abort(abort)
        self._check_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(f"{url}: failed to parse response body as JSON.", details=response.text) from exc

    def get_json(self,
                 url: str,
                 headers: Dict[str, str],
                 check_status: bool = True) -> Any:
        """GET `url` and return the decoded JSON response.

        `check_status`: If `False`, decode the body regardless of the HTTP status. Some backends
                        report errors in a JSON body with a non-success status.
        """
        try:
            response = self.session.get(url,
                                        headers=headers,
                                        proxies=self.proxies,
                                        timeout=(self.connect_timeout, self.timeout))
        except requests.exceptions.RequestException as exc:
            raise self._translate(exc, url) from exc
        if check_status:
            self._check_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(f"{url}: failed to parse response body as JSON.", code=response.status_code, details=response.text) from exc

class ChatHubTransport:
    def __init__(self,
                 timeout: Optional[float] = None,
                 proxy: Optional[str] = None,
                 ping_interval: Optional[float] = None):
        """WebSocket transport for the ChatHub protocol.

        `timeout`: Inactivity timeout in seconds. Default `client.config.response_timeout`.

        `proxy`: Optional HTTP proxy URL, e.g. "http://127.0.0.1:8080".

        `ping_interval`: Seconds between keepalive pings. Default `client.config.chathub_ping_interval`.
        """
        self.timeout = timeout if timeout is not None else client_config.response_timeout
        self.proxy = proxy
        self.ping_interval = ping_interval if ping_interval is not None else client_config.chathub_ping_interval

    def _send(self, ws: websocket.WebSocket, record: Any) -> None:
        ws.send(f"{json.dumps(record)}{streaming.chathub_record_separator}")

    def _connect(self, url: str, headers: Optional[Dict[str, str]]) -> websocket.WebSocket:
        kwargs = {}
        if self.proxy:
            parts = urllib.parse.urlsplit(self.proxy)
            kwargs.update(http_proxy_host=parts.hostname,
                          http_proxy_port=parts.port,
                          proxy_type=parts.scheme or "http")
        try:
            ws = websocket.create_connection(url,
                                             timeout=self.timeout,
                                             header=headers or {},
                                             **kwargs)
        except websocket.WebSocketTimeoutException as exc:
            raise TransportError(f"Timed out connecting to {url}.", retryable=True) from exc
        except (websocket.WebSocketException, OSError) as exc:
            raise TransportError(f"Could not connect to {url}: {type(exc)}: {exc}", retryable=True) from exc

        # Protocol handshake; the server acknowledges with an empty record.
        try:
            self._send(ws, {"protocol": "json", "version": 1})
            while True:
                frame = ws.recv()
                if not frame:
                    raise TransportError(f"{url}: connection closed during handshake.", retryable=True)
                if isinstance(frame, bytes):
                    frame = frame.decode("utf-8")
                if any(record == {} for record in streaming.ChatHubDecoder.split_records(frame)):
                    break
        except websocket.WebSocketTimeoutException as exc:
            ws.close()
            raise ResponseTimeoutError(f"{url}: timed out waiting for handshake.") from exc
        except (websocket.WebSocketException, OSError) as exc:
            ws.close()
            raise TransportError(f"{url}: handshake failed: {type(exc)}: {exc}", retryable=True) from exc
        except TransportError:
            ws.close()
            raise
        logger.info(f"ChatHubTransport: connected to {url}.")
        return ws

    def _keepalive(self, ws: websocket.WebSocket, stop: threading.Event) -> None:
        while not stop.wait(timeout=self.ping_interval):
            try:
                self._send(ws, {"type": 6})
            except (websocket.WebSocketException, OSError) as exc:
                logger.debug(f"ChatHubTransport._keepalive: ping failed, stopping pings: {type(exc)}: {exc}")
                return

    def stream_frames(self,
                      url: str,
                      request: Any,
                      abort: Optional[threading.Event] = None,
                      headers: Optional[Dict[str, str]] = None) -> Generator[str, None, None]:
        """Connect to `url`, send `request` (JSON-able), and yield the raw text frames received, until the connection closes.

        Closing the generator closes the connection.
        """
        _check_abort(abort)
        ws = self._connect(url, headers)
        stop_pinging = threading.Event()
        pinger = threading.Thread(target=self._keepalive, args=(ws, stop_pinging), name="colloquy-chathub-keepalive", daemon=True)
        pinger.start()
        with abort_watcher(abort, ws.close):
            try:
                self._send(ws, request)
                while True:
                    frame = ws.recv()
                    _check_abort(abort)
                    if not frame:  # close frame
                        return
                    if isinstance(frame, bytes):
                        frame = frame.decode("utf-8")
                    yield frame
            except CancellationError:
                raise
            except websocket.WebSocketTimeoutException as exc:
                raise ResponseTimeoutError(f"Timed out waiting for response from {url} (no data in {self.timeout} seconds).") from exc
            except websocket.WebSocketConnectionClosedException as exc:
                _check_abort(abort)
                raise TransportError(f"{url}: connection closed unexpectedly.", retryable=True) from exc
            except (websocket.WebSocketException, OSError) as exc:
                _check_abort(abort)
                raise TransportError(f"{url}: {type(exc)}: {exc}", retryable=True) from exc
            finally:
                stop_pinging.set()
                ws.close()
                pinger.join()
