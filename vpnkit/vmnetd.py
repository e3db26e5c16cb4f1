"""Client for the privileged helper that binds low TCP and UDP ports on the host."""

from __future__ import annotations

import array
import ipaddress
import socket
import struct
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Union

BIND_IPV4_COMMAND = 6
# The helper's current protocol version.
CURRENT_VERSION = 22

VMNETD_SOCKET_PATH = "/var/run/com.docker.vmnetd.sock"

OLD_HELLO = "VMNET"
HELLO = "VMN3T"
_COMMIT = "0d4854a28a379fbe8341b753ae2eb05fc3446f38"

_HELLO_LEN = 5
_VERSION_LEN = 4
_COMMIT_LEN = 40
_RESULT_BUFFER = 100

_RESULT_OK = 0
_RESULT_FAILED = 1
_RESULT_IN_USE = 48
_RESULT_CANNOT_ASSIGN = 49

IPv4Like = Union[ipaddress.IPv4Address, str, bytes, int]


class VmnetdError(Exception):
    """The helper could not be reached or refused a request."""


@dataclass
class HandshakeMessage:
    """The version exchange sent by both sides on connection."""

    hello: str
    version: int = 0
    commit: str = ""


@dataclass
class BindIpv4:
    """A request to bind a (probably privileged) TCP or UDP port."""

    ip: ipaddress.IPv4Address
    port: int
    tcp: bool

    def __post_init__(self) -> None:
        self.ip = _to_ipv4(self.ip)
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port number out of range: {self.port}")


def _to_ipv4(value: Any) -> ipaddress.IPv4Address:
    if isinstance(value, ipaddress.IPv4Address):
        return value
    address = ipaddress.ip_address(value)
    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is None:
            raise ValueError(f"not an IPv4 address: {value}")
        return address.ipv4_mapped
    return address


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = stream.read(size - len(buffer))
        if not chunk:
            raise EOFError(f"stream ended after {len(buffer)} of {size} bytes")
        buffer += chunk
    return bytes(buffer)


def _put_uvarint(value: int, size: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    if len(out) > size:
        raise ValueError(f"version does not fit in {size} bytes")
    return bytes(out) + bytes(size - len(out))


def _uvarint(data: bytes) -> tuple[int, int]:
    value = 0
    shift = 0
    for index, byte in enumerate(data):
        if byte < 0x80:
            return value | (byte << shift), index + 1
        value |= (byte & 0x7F) << shift
        shift += 7
    return 0, 0


def outgoing_message() -> HandshakeMessage:
    """Return the handshake this client sends."""
    return HandshakeMessage(HELLO, CURRENT_VERSION, _COMMIT)


def write_init_message(stream: BinaryIO, msg: HandshakeMessage) -> None:
    """Write a handshake message."""
    stream.write(msg.hello.encode("latin-1"))
    stream.write(_put_uvarint(msg.version, _VERSION_LEN))
    stream.write(msg.commit.encode("latin-1"))


def read_init_message(stream: BinaryIO) -> HandshakeMessage:
    """Read a handshake message; the old protocol sends only the hello."""
    hello = _read_exact(stream, _HELLO_LEN).decode("latin-1")
    if hello == OLD_HELLO:
        return HandshakeMessage(hello, 0, "")
    version, count = _uvarint(_read_exact(stream, _VERSION_LEN))
    if count <= 0:
        raise VmnetdError("Could not parse version")
    commit = _read_exact(stream, _COMMIT_LEN).decode("latin-1")
    return HandshakeMessage(hello, version & 0xFFFFFFFF, commit)


def write_command(stream: BinaryIO, command: int) -> None:
    """Write a one-byte command code."""
    stream.write(bytes((command & 0xFF,)))


def read_command(stream: BinaryIO) -> int:
    """Read a one-byte command code."""
    return _read_exact(stream, 1)[0]


def write_bind_ipv4(stream: BinaryIO, bind: BindIpv4) -> None:
    """Write a bind request."""
    address = bind.ip.packed[::-1]
    stream.write(address + struct.pack("<HB", bind.port, 0 if bind.tcp else 1))


def read_bind_ipv4(stream: BinaryIO) -> BindIpv4:
    """Read a bind request."""
    address = ipaddress.IPv4Address(_read_exact(stream, 4)[::-1])
    port, kind = struct.unpack("<HB", _read_exact(stream, 3))
    if kind == 0:
        tcp = True
    elif kind == 1:
        tcp = False
    else:
        raise VmnetdError("unknown stream/tcp value")
    return BindIpv4(address, port, tcp)


def _perform_client(stream: BinaryIO, command: int) -> None:
    try:
        write_init_message(stream, outgoing_message())
    except OSError as exc:
        raise VmnetdError(f"cannot send handshake message: {exc}") from exc
    read_init_message(stream)
    write_command(stream, command)


def send_command(code: int, socket_path: Optional[str] = None) -> socket.socket:
    """Connect to the helper, perform the handshake and send a command."""
    path = VMNETD_SOCKET_PATH if socket_path is None else socket_path
    conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        conn.connect(path)
    except OSError as exc:
        conn.close()
        raise VmnetdError(f"failed to connect to {path}: is vmnetd running?") from exc
    try:
        with conn.makefile("rwb", buffering=0) as stream:
            _perform_client(stream, code)
    except (OSError, EOFError, ValueError, VmnetdError) as exc:
        conn.close()
        raise VmnetdError(f"handshake failed: {exc}") from exc
    return conn


def read_result(conn: socket.socket) -> int:
    """Read a command result, returning the file descriptor passed on success."""
    try:
        data, ancdata, _flags, _addr = conn.recvmsg(
            _RESULT_BUFFER, socket.CMSG_SPACE(array.array("i").itemsize)
        )
    except OSError as exc:
        raise VmnetdError(f"failed to receive message: {exc}") from exc
    if not data:
        raise VmnetdError("failed to read result")
    code = data[0]
    if code == _RESULT_OK:
        if len(ancdata) != 1:
            raise VmnetdError("no file descriptor")
        level, kind, payload = ancdata[0]
        if level != socket.SOL_SOCKET or kind != socket.SCM_RIGHTS:
            raise VmnetdError("control message does not carry file descriptors")
        fds = array.array("i")
        fds.frombytes(payload[: len(payload) - len(payload) % fds.itemsize])
        if len(fds) != 1:
            raise VmnetdError("array of fds was empty")
        return fds[0]
    if code == _RESULT_IN_USE:
        raise VmnetdError("port is already allocated.")
    if code == _RESULT_CANNOT_ASSIGN:
        raise VmnetdError("bind: cannot assign requested address.")
    if code == _RESULT_FAILED:
        raise VmnetdError("command failed")
    raise VmnetdError("failed to unmarshal command result")


def listen_vmnet(ip: IPv4Like, port: int, tcp: bool) -> int:
    """Ask the helper to bind a port and return the bound socket's descriptor."""
    bind = BindIpv4(_to_ipv4(ip), port, tcp)
    conn = send_command(BIND_IPV4_COMMAND)
    with conn:
        with conn.makefile("wb", buffering=0) as stream:
            write_bind_ipv4(stream, bind)
        return read_result(conn)


def _adopt(fd: int) -> socket.socket:
    try:
        return socket.socket(fileno=fd)
    except OSError:
        socket.close(fd)
        raise


def listen_tcp_vmnet(ip: IPv4Like, port: int) -> socket.socket:
    """Return a listening TCP socket bound by the helper."""
    return _adopt(listen_vmnet(ip, port, True))


class _UdpPacketConn:
    """A UDP socket bound by the helper, reporting the requested local address."""

    def __init__(self, sock: socket.socket, local_addr: tuple[str, int]) -> None:
        self.sock = sock
        self.local_addr = local_addr

    def recvfrom(self, bufsize: int) -> tuple[bytes, Any]:
        return self.sock.recvfrom(bufsize)

    def sendto(self, data: bytes, address: Any) -> int:
        return self.sock.sendto(data, address)

    def settimeout(self, timeout: Optional[float]) -> None:
        self.sock.settimeout(timeout)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "_UdpPacketConn":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def listen_udp_vmnet(ip: IPv4Like, port: int) -> _UdpPacketConn:
    """Return a UDP socket bound by the helper."""
    address = _to_ipv4(ip)
    sock = _adopt(listen_vmnet(address, port, False))
    return _UdpPacketConn(sock, (str(address), port))


def is_permission_denied(err: BaseException) -> bool:
    """Report whether an error means the bind needs privileges."""
    if isinstance(err, PermissionError):
        return True
    return str(err).lower().endswith("permission denied")