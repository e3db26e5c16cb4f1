import io
import json
import socketserver
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from vpnkit.client import ExposeError, HttpClient, new_client
from vpnkit.port import Port, Protocol


class _Recorder(BaseHTTPRequestHandler):
    def _serve(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        self.server.requests.append(
            (self.command, self.path, self.headers.get("Content-Type"), body)
        )
        status, payload = self.server.reply
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    do_GET = do_PUT = do_POST = do_DELETE = _serve

    def log_message(self, format, *args):
        pass


@pytest.fixture
def fake():
    with tempfile.TemporaryDirectory(prefix="vpk") as directory:
        path = directory + "/ctl.sock"
        server = socketserver.ThreadingUnixStreamServer(path, _Recorder)
        server.daemon_threads = True
        server.requests = []
        server.reply = (200, b"")
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            yield server, new_client(path)
        finally:
            server.shutdown()
            server.server_close()


TCP_PORT = Port(proto=Protocol.TCP, out_ip="127.0.0.1", out_port=8081, in_ip="127.0.0.1", in_port=8080)
UNIX_PORT = Port(proto=Protocol.UNIX, out_path="/tmp/bar", in_path="/tmp/foo")


def test_new_client_keeps_path():
    client = new_client("/tmp/some.sock")
    assert isinstance(client, HttpClient)
    assert client.path == "/tmp/some.sock"


def test_expose_tcp_puts_json(fake):
    server, client = fake
    client.expose(TCP_PORT)
    method, path, content_type, body = server.requests[0]
    assert (method, path, content_type) == ("PUT", "/forwards/expose/port", "application/json")
    assert json.loads(body) == TCP_PORT.to_dict()


def test_expose_unix_uses_pipe_path(fake):
    server, client = fake
    client.expose(UNIX_PORT)
    assert server.requests[0][:2] == ("PUT", "/forwards/expose/pipe")
    assert Port.from_dict(json.loads(server.requests[0][3])) == UNIX_PORT


def test_unexpose_paths(fake):
    server, client = fake
    client.unexpose(TCP_PORT)
    client.unexpose(UNIX_PORT)
    assert [r[:2] for r in server.requests] == [
        ("DELETE", "/forwards/unexpose/port"),
        ("DELETE", "/forwards/unexpose/pipe"),
    ]


def test_expose_error_from_400(fake):
    server, client = fake
    server.reply = (400, b'{"message":"EADDRESSINUSE"}')
    with pytest.raises(ExposeError) as info:
        client.expose(TCP_PORT)
    assert info.value.message == "EADDRESSINUSE"
    assert info.value == ExposeError("EADDRESSINUSE")


def test_expose_400_with_string_body_fails_to_decode(fake):
    server, client = fake
    server.reply = (400, b'"exposed ports can only be TCP or UDP"')
    with pytest.raises(ValueError):
        client.expose(TCP_PORT)


def test_expose_unexpected_status(fake):
    server, client = fake
    server.reply = (500, b"")
    with pytest.raises(RuntimeError, match="/forwards/expose/port returned unexpected status: 500"):
        client.expose(TCP_PORT)


def test_unexpose_400_is_unexpected(fake):
    server, client = fake
    server.reply = (400, b'{"message":"x"}')
    with pytest.raises(RuntimeError, match="/forwards/unexpose/port returned unexpected status: 400"):
        client.unexpose(TCP_PORT)


def test_list_exposed_round_trip(fake):
    server, client = fake
    server.reply = (200, json.dumps([TCP_PORT.to_dict(), UNIX_PORT.to_dict()]).encode())
    assert client.list_exposed() == [TCP_PORT, UNIX_PORT]
    assert server.requests[0][:2] == ("GET", "/forwards/list")


def test_list_exposed_null_is_empty(fake):
    server, client = fake
    server.reply = (200, b"null")
    assert client.list_exposed() == []


def test_list_exposed_unexpected_status(fake):
    server, client = fake
    server.reply = (503, b"")
    with pytest.raises(RuntimeError, match="/forwards/list returned unexpected status: 503"):
        client.list_exposed()


def test_dump_state_copies_body(fake):
    server, client = fake
    server.reply = (200, b"state dump")
    out = io.BytesIO()
    client.dump_state(out)
    assert out.getvalue() == b"state dump"
    assert server.requests[0][:2] == ("GET", "/forwards/dump")


def test_dump_state_unexpected_status(fake):
    server, client = fake
    server.reply = (404, b"")
    with pytest.raises(RuntimeError, match="/forwards/dump returned unexpected status: 404"):
        client.dump_state(io.BytesIO())


def test_expose_error_str_and_dict():
    err = ExposeError("EADDRESSINUSE")
    assert str(err) == "EADDRESSINUSE"
    assert err.to_dict() == {"message": "EADDRESSINUSE"}
    assert err != ExposeError("other")