"""HTTP server exposing port control operations."""

from __future__ import annotations

import io
import json
import os
import socket
import socketserver
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional

from .client import (
    DUMP_STATE_PATH,
    EXPOSE_PIPE_PATH,
    EXPOSE_PORT_PATH,
    LIST_PATH,
    UNEXPOSE_PIPE_PATH,
    UNEXPOSE_PORT_PATH,
    Client,
    ExposeError,
)
from .port import Port, Protocol
from .transport import UnixTransport, choose

Response = tuple[int, str, bytes]

_JSON = "application/json; charset=UTF-8"
_TEXT = "text/plain"
_PORTS_ONLY = "exposed ports can only be TCP or UDP"
_PIPES_ONLY = "exposed pipes can only have proto=Unix"


class _BadRequest(Exception):
    pass


def _json(status: int, value: Any) -> Response:
    return status, _JSON, json.dumps(value).encode("utf-8")


def _bind(body: bytes) -> Port:
    if not body.strip():
        return Port()
    try:
        data = json.loads(body)
        if not isinstance(data, dict):
            raise ValueError("request body must be a JSON object")
        return Port.from_dict(data)
    except (ValueError, TypeError) as exc:
        raise _BadRequest(str(exc)) from exc


def _is_port(port: Port) -> bool:
    return port.proto in (Protocol.TCP, Protocol.UDP)


class _Handler(BaseHTTPRequestHandler):
    server_version = "vpnkit"

    def _dispatch(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        status, content_type, payload = self.server.app.handle(self.command, self.path, body)
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if payload:
            self.wfile.write(payload)

    do_GET = do_PUT = do_POST = do_DELETE = _dispatch

    def log_message(self, format: str, *args: Any) -> None:
        pass


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, listener: socket.socket, app: "Server") -> None:
        socketserver.BaseServer.__init__(self, listener.getsockname(), _Handler)
        self.socket = listener
        self.app = app


class Server:
    """Serves port control requests for an implementation over HTTP."""

    def __init__(self, path: str, impl: Client) -> None:
        self.path = path
        self.impl = impl
        self._transport = choose(path)
        listener = self._transport.listen(path)
        self._httpd = _HTTPServer(listener, self)
        self._thread: Optional[threading.Thread] = None
        self._stopped = False
        self._routes: dict[str, dict[str, Callable[[bytes], Response]]] = {
            EXPOSE_PORT_PATH: {"PUT": self._expose_port, "POST": self._expose_port},
            EXPOSE_PIPE_PATH: {"PUT": self._expose_pipe, "POST": self._expose_pipe},
            UNEXPOSE_PORT_PATH: {"DELETE": self._unexpose_port, "POST": self._unexpose_port},
            UNEXPOSE_PIPE_PATH: {"DELETE": self._unexpose_pipe, "POST": self._unexpose_pipe},
            LIST_PATH: {"GET": self._list},
            DUMP_STATE_PATH: {"GET": self._dump_state},
        }

    def handle(self, method: str, path: str, body: bytes) -> Response:
        """Answer one request with (status, content type, body)."""
        methods = self._routes.get(path.split("?", 1)[0])
        if methods is None:
            return _json(404, {"message": "Not Found"})
        handler = methods.get(method.upper())
        if handler is None:
            return _json(405, {"message": "Method Not Allowed"})
        try:
            return handler(body)
        except _BadRequest as exc:
            return _json(400, {"message": str(exc)})
        except Exception:
            return _json(500, {"message": "Internal Server Error"})

    def _expose(self, port: Port) -> Response:
        try:
            self.impl.expose(port)
        except ExposeError as exc:
            return _json(400, exc.to_dict())
        return 200, "", b""

    def _expose_port(self, body: bytes) -> Response:
        port = _bind(body)
        if not _is_port(port):
            return _json(400, _PORTS_ONLY)
        return self._expose(port)

    def _expose_pipe(self, body: bytes) -> Response:
        port = _bind(body)
        if port.proto != Protocol.UNIX:
            return _json(400, _PIPES_ONLY)
        return self._expose(port)

    def _unexpose_port(self, body: bytes) -> Response:
        port = _bind(body)
        if not _is_port(port):
            return _json(400, _PORTS_ONLY)
        self.impl.unexpose(port)
        return 200, "", b""

    def _unexpose_pipe(self, body: bytes) -> Response:
        port = _bind(body)
        if port.proto != Protocol.UNIX:
            return _json(400, _PIPES_ONLY)
        self.impl.unexpose(port)
        return 200, "", b""

    def _list(self, body: bytes) -> Response:
        ports = self.impl.list_exposed()
        return _json(200, [port.to_dict() for port in ports])

    def _dump_state(self, body: bytes) -> Response:
        buffer = io.BytesIO()
        try:
            self.impl.dump_state(buffer)
        except Exception:
            pass
        return 200, _TEXT, buffer.getvalue()

    def start(self) -> None:
        """Serve requests on a background thread."""
        if self._thread is not None or self._stopped:
            return
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop serving and close the listener."""
        if self._stopped:
            return
        self._stopped = True
        if self._thread is not None:
            self._httpd.shutdown()
            self._thread.join()
        self._httpd.server_close()
        if isinstance(self._transport, UnixTransport):
            try:
                os.remove(self.path)
            except OSError:
                pass

    def __enter__(self) -> "Server":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()