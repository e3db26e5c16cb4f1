"""Transports that carry control and data connections."""

from __future__ import annotations

import os
import re
import socket
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass

# AF_VSOCK port the control-plane interface listens on.
DEFAULT_CONTROL_VSOCK = 0x1002
# AF_VSOCK port the data-plane interface listens on.
DEFAULT_DATA_VSOCK = 0xF3A4

CID_ANY = 0xFFFFFFFF
CID_HOST = 2

# Room in a socket address for the path, less the terminating NUL.
MAX_UNIX_SOCKET_PATH_LEN = (104 if sys.platform == "darwin" else 108) - 1

_DIGITS = re.compile(r"[0-9]+")


def _parse_uint32(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value > 0xFFFFFFFF:
        raise ValueError(f"value out of range: {text!r}")
    return value


class Transport(ABC):
    """Carries port control messages and data connections."""

    @abstractmethod
    def dial(self, path: str) -> socket.socket:
        """Connect to the given address."""

    @abstractmethod
    def listen(self, path: str) -> socket.socket:
        """Return a listening socket bound to the given address."""

    def set_security_descriptor(self, sddl: str) -> None:
        """Set the security descriptor; only named pipes make use of it."""


def _relative(path: str) -> str:
    parent = os.path.realpath(os.path.dirname(path) or ".", strict=True)
    cwd = os.path.realpath(os.getcwd(), strict=True)
    rel = os.path.relpath(parent, cwd)
    return os.path.normpath(os.path.join(rel, os.path.basename(path)))


def shorten_unix_socket_path(path: str) -> str:
    """Return a path short enough to fit inside a socket address."""
    if len(os.fsencode(path)) <= MAX_UNIX_SOCKET_PATH_LEN:
        return path
    shorter = _relative(path)
    if len(os.fsencode(shorter)) > MAX_UNIX_SOCKET_PATH_LEN:
        raise ValueError(
            f"absolute and relative socket path {shorter} longer than"
            f" {MAX_UNIX_SOCKET_PATH_LEN} characters"
        )
    return shorter


class UnixTransport(Transport):
    """Unix domain socket transport."""

    def dial(self, path: str) -> socket.socket:
        shorter = shorten_unix_socket_path(path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(shorter)
        except OSError:
            sock.close()
            raise
        return sock

    def listen(self, path: str) -> socket.socket:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        shorter = shorten_unix_socket_path(path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(shorter)
            sock.listen()
        except OSError:
            sock.close()
            raise
        return sock

    def __str__(self) -> str:
        return "Unix domain socket"


@dataclass(frozen=True)
class VsockAddress:
    """An AF_VSOCK context id and port."""

    cid: int = CID_ANY
    port: int = 0


def parse_addr(path: str) -> VsockAddress:
    """Parse "[<cid>/]<port>" into a VsockAddress."""
    bits = path.split("/", 1)
    port_text = bits[-1]
    try:
        port = _parse_uint32(port_text)
    except ValueError:
        raise ValueError(
            f"cannot parse {port_text} as service GUID or AF_VSOCK port"
        ) from None
    if len(bits) == 1:
        return VsockAddress(CID_ANY, port)
    try:
        cid = _parse_uint32(bits[0])
    except ValueError:
        raise ValueError(
            "unable to parse the <vm>/ as either a GUID or AF_VSOCK port number"
        ) from None
    return VsockAddress(cid, port)


def _vsock_socket() -> socket.socket:
    family = getattr(socket, "AF_VSOCK", None)
    if family is None:
        raise OSError("AF_VSOCK is not supported on this platform")
    return socket.socket(family, socket.SOCK_STREAM)


class VsockTransport(Transport):
    """Linux AF_VSOCK transport."""

    def dial(self, path: str) -> socket.socket:
        addr = parse_addr(path)
        cid = CID_HOST if addr.cid == CID_ANY else addr.cid
        sock = _vsock_socket()
        try:
            sock.connect((cid, addr.port))
        except OSError:
            sock.close()
            raise
        return sock

    def listen(self, path: str) -> socket.socket:
        addr = parse_addr(path)
        sock = _vsock_socket()
        try:
            sock.bind((CID_ANY, addr.port))
            sock.listen()
        except OSError:
            sock.close()
            raise
        return sock

    def __str__(self) -> str:
        return "Linux AF_VSOCK"


def choose(path: str) -> Transport:
    """Pick a vsock transport for port-like addresses, a Unix one otherwise."""
    try:
        parse_addr(path)
    except ValueError:
        return UnixTransport()
    return VsockTransport()