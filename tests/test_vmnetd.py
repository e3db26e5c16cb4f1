import io
import ipaddress
import os
import shutil
import socket
import tempfile
import threading

import pytest

from vpnkit import vmnetd
from vpnkit.vmnetd import (
    BindIpv4,
    HandshakeMessage,
    VmnetdError,
    is_permission_denied,
    listen_tcp_vmnet,
    listen_udp_vmnet,
    listen_vmnet,
    outgoing_message,
    read_bind_ipv4,
    read_command,
    read_init_message,
    read_result,
    send_command,
    write_bind_ipv4,
    write_command,
    write_init_message,
)


@pytest.fixture
def short_dir():
    path = tempfile.mkdtemp(prefix="vd")
    yield path
    shutil.rmtree(path, ignore_errors=True)


class FakeVmnetd:
    def __init__(self, path, respond):
        self.respond = respond
        self.command = None
        self.bind = None
        self.bound_port = None
        self.listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.listener.bind(path)
        self.listener.listen()
        self.listener.settimeout(5)
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        conn, _ = self.listener.accept()
        with conn:
            with conn.makefile("rwb", buffering=0) as stream:
                read_init_message(stream)
                write_init_message(stream, outgoing_message())
                self.command = read_command(stream)
                self.bind = read_bind_ipv4(stream)
            self.respond(self, conn)

    def join(self):
        self.thread.join(5)
        self.listener.close()


def _pass_socket(kind):
    def respond(server, conn):
        sock = socket.socket(socket.AF_INET, kind)
        sock.bind(("127.0.0.1", 0))
        if kind == socket.SOCK_STREAM:
            sock.listen()
        server.bound_port = sock.getsockname()[1]
        socket.send_fds(conn, [b"\x00"], [sock.fileno()])
        sock.close()

    return respond


def _reply(code):
    def respond(server, conn):
        conn.sendall(bytes((code,)))

    return respond


def test_marshal_init_round_trip():
    message = outgoing_message()
    buf = io.BytesIO()
    write_init_message(buf, message)
    buf.seek(0)
    assert read_init_message(buf) == message


def test_init_message_bytes():
    buf = io.BytesIO()
    write_init_message(buf, outgoing_message())
    data = buf.getvalue()
    assert data[:5] == b"VMN3T"
    assert data[5:9] == b"\x16\x00\x00\x00"
    assert data[9:] == b"0d4854a28a379fbe8341b753ae2eb05fc3446f38"


def test_old_hello_stops_reading():
    message = read_init_message(io.BytesIO(b"VMNET"))
    assert message == HandshakeMessage("VMNET", 0, "")


def test_unparseable_version():
    with pytest.raises(VmnetdError, match="Could not parse version"):
        read_init_message(io.BytesIO(b"VMN3T" + b"\x80" * 4 + b"x" * 40))


def test_truncated_init_message():
    with pytest.raises(EOFError):
        read_init_message(io.BytesIO(b"VMN3T\x16\x00"))


def test_version_too_large():
    with pytest.raises(ValueError):
        write_init_message(io.BytesIO(), HandshakeMessage("VMN3T", 1 << 30, ""))


def test_marshal_command():
    buf = io.BytesIO()
    write_command(buf, vmnetd.BIND_IPV4_COMMAND)
    assert buf.getvalue() == b"\x06"
    buf.seek(0)
    assert read_command(buf) == vmnetd.BIND_IPV4_COMMAND


def test_read_command_empty():
    with pytest.raises(EOFError):
        read_command(io.BytesIO())


@pytest.mark.parametrize("tcp", [False, True])
def test_marshal_bind_ipv4(tcp):
    bind = BindIpv4(ipaddress.IPv4Address("127.0.0.1"), 1234, tcp)
    buf = io.BytesIO()
    write_bind_ipv4(buf, bind)
    buf.seek(0)
    assert read_bind_ipv4(buf) == bind


def test_bind_ipv4_bytes():
    buf = io.BytesIO()
    write_bind_ipv4(buf, BindIpv4("127.0.0.1", 1234, False))
    assert buf.getvalue() == b"\x01\x00\x00\x7f\xd2\x04\x01"


def test_read_bind_unknown_kind():
    with pytest.raises(VmnetdError, match="unknown stream/tcp value"):
        read_bind_ipv4(io.BytesIO(b"\x01\x00\x00\x7f\xd2\x04\x02"))


def test_bind_rejects_ipv6():
    with pytest.raises(ValueError):
        BindIpv4("::1", 80, True)


def test_is_permission_denied():
    assert is_permission_denied(OSError("listen tcp 127.0.0.1:80: bind: permission denied"))
    assert is_permission_denied(PermissionError(13, "Permission denied"))
    assert not is_permission_denied(OSError("bind: address already in use"))


@pytest.mark.parametrize(
    "code, message",
    [
        (48, "port is already allocated."),
        (49, "bind: cannot assign requested address."),
        (1, "command failed"),
        (7, "failed to unmarshal command result"),
    ],
)
def test_read_result_errors(code, message):
    a, b = socket.socketpair()
    with a, b:
        a.sendall(bytes((code,)))
        with pytest.raises(VmnetdError) as info:
            read_result(b)
    assert str(info.value) == message


def test_read_result_success_without_fd():
    a, b = socket.socketpair()
    with a, b:
        a.sendall(b"\x00")
        with pytest.raises(VmnetdError, match="no file descriptor"):
            read_result(b)


def test_read_result_empty():
    a, b = socket.socketpair()
    with b:
        a.close()
        with pytest.raises(VmnetdError, match="failed to read result"):
            read_result(b)


def test_read_result_passes_fd():
    a, b = socket.socketpair()
    r, w = os.pipe()
    try:
        with a, b:
            socket.send_fds(a, [b"\x00"], [r])
            fd = read_result(b)
        os.write(w, b"x")
        assert os.read(fd, 1) == b"x"
        os.close(fd)
    finally:
        os.close(r)
        os.close(w)


def test_send_command_no_helper(short_dir):
    path = os.path.join(short_dir, "missing")
    with pytest.raises(VmnetdError, match="is vmnetd running"):
        send_command(vmnetd.BIND_IPV4_COMMAND, path)


def test_send_command_handshake_failed(short_dir):
    path = os.path.join(short_dir, "s")
    listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    listener.bind(path)
    listener.listen()

    def serve():
        conn, _ = listener.accept()
        conn.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        with pytest.raises(VmnetdError, match="handshake failed"):
            send_command(vmnetd.BIND_IPV4_COMMAND, path)
    finally:
        thread.join(5)
        listener.close()


def test_listen_tcp_vmnet(short_dir, monkeypatch):
    path = os.path.join(short_dir, "s")
    monkeypatch.setattr(vmnetd, "VMNETD_SOCKET_PATH", path)
    server = FakeVmnetd(path, _pass_socket(socket.SOCK_STREAM))
    listener = listen_tcp_vmnet("127.0.0.1", 8081)
    server.join()
    assert server.command == vmnetd.BIND_IPV4_COMMAND
    assert server.bind == BindIpv4(ipaddress.IPv4Address("127.0.0.1"), 8081, True)
    with listener:
        listener.settimeout(5)
        assert listener.getsockname()[1] == server.bound_port
        hello = b"hello\n"
        with socket.create_connection(("127.0.0.1", server.bound_port), timeout=5) as client:
            client.sendall(hello)
        conn, _ = listener.accept()
        with conn:
            conn.settimeout(5)
            received = b""
            while True:
                chunk = conn.recv(1024)
                if not chunk:
                    break
                received += chunk
    assert received == hello


def test_listen_udp_vmnet(short_dir, monkeypatch):
    path = os.path.join(short_dir, "s")
    monkeypatch.setattr(vmnetd, "VMNETD_SOCKET_PATH", path)
    server = FakeVmnetd(path, _pass_socket(socket.SOCK_DGRAM))
    conn = listen_udp_vmnet("0.0.0.0", 8081)
    server.join()
    assert server.bind == BindIpv4(ipaddress.IPv4Address("0.0.0.0"), 8081, False)
    with conn:
        assert conn.local_addr == ("0.0.0.0", 8081)
        conn.settimeout(5)
        hello = b"hello\n"
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(hello, ("127.0.0.1", server.bound_port))
            data, _ = conn.recvfrom(1024)
    assert data == hello


def test_listen_vmnet_port_in_use(short_dir, monkeypatch):
    path = os.path.join(short_dir, "s")
    monkeypatch.setattr(vmnetd, "VMNETD_SOCKET_PATH", path)
    server = FakeVmnetd(path, _reply(48))
    try:
        with pytest.raises(VmnetdError, match="port is already allocated"):
            listen_vmnet("127.0.0.1", 8081, True)
    finally:
        server.join()
    assert server.bind.tcp is True