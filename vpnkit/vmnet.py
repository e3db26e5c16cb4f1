"""Client for the vmnet protocol, which carries Ethernet frames to and from the server."""

from __future__ import annotations

import ipaddress
import socket
import struct
import threading
import uuid as uuidlib
from dataclasses import dataclass, field
from typing import Optional, Union

from .packets import ETHERTYPE_IPV4, DhcpRequest, EthernetFrame, Ipv4, Udpv4

MAGIC = b"VMN3T"
PROTOCOL_VERSION = 22
DEFAULT_COMMIT = b"0123456789012345678901234567890123456789"

_COMMAND_ETHERNET = 1
_COMMAND_ETHERNET_WITH_IP = 8
_RESPONSE_VIF = 1
_VIF_PADDING = 1 + 256 - 6 - 2 - 2

_BROADCAST_MAC = b"\xff" * 6
_BROADCAST_IP = b"\xff" * 4
_UNKNOWN_IP = b"\x00" * 4
_DHCP_SERVER_PORT = 67
_DHCP_CLIENT_PORT = 68
_DHCP_RETRY_SECONDS = 1.0

UuidLike = Union[uuidlib.UUID, str]
IPv4Like = Union[ipaddress.IPv4Address, str, bytes, int]


class VmnetError(Exception):
    """The server refused a request."""


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = conn.recv(size - len(buffer))
        if not chunk:
            raise EOFError(f"connection closed after {len(buffer)} of {size} bytes")
        buffer += chunk
    return bytes(buffer)


def _go_bytes(data: bytes) -> str:
    return "[" + " ".join(str(b) for b in data) + "]"


@dataclass(frozen=True)
class InitMessage:
    """The initial version exchange."""

    magic: bytes
    version: int
    commit: bytes

    @classmethod
    def default(cls) -> "InitMessage":
        """Return the message this client sends."""
        return cls(MAGIC, PROTOCOL_VERSION, DEFAULT_COMMIT)

    def to_bytes(self) -> bytes:
        """Return the marshalled message."""
        return self.magic + struct.pack("<I", self.version) + self.commit

    @classmethod
    def read(cls, conn: socket.socket) -> "InitMessage":
        """Read a message from a connected socket."""
        magic = _recv_exact(conn, 5)
        (version,) = struct.unpack("<I", _recv_exact(conn, 4))
        commit = _recv_exact(conn, 40)
        return cls(magic, version, commit)

    def __str__(self) -> str:
        return (
            f"magic={_go_bytes(self.magic)} version={self.version}"
            f" commit={_go_bytes(self.commit)}"
        )


@dataclass(frozen=True)
class EthernetRequest:
    """Requests a network connection with a given uuid and optional IP."""

    uuid: UuidLike
    ip: Optional[IPv4Like] = None

    def __post_init__(self) -> None:
        if not isinstance(self.uuid, uuidlib.UUID):
            object.__setattr__(self, "uuid", uuidlib.UUID(str(self.uuid)))
        if self.ip is not None and not isinstance(self.ip, ipaddress.IPv4Address):
            object.__setattr__(self, "ip", ipaddress.IPv4Address(self.ip))

    def to_bytes(self) -> bytes:
        """Return the marshalled request."""
        command = _COMMAND_ETHERNET if self.ip is None else _COMMAND_ETHERNET_WITH_IP
        address = 0 if self.ip is None else int(self.ip)
        # The protocol uses little endian, not network order.
        return bytes((command,)) + str(self.uuid).encode("ascii") + struct.pack("<I", address)


def _offered_address(response: bytes) -> Optional[ipaddress.IPv4Address]:
    try:
        frame = EthernetFrame.parse(response)
        ipv4 = Ipv4.parse(frame.data)
        udp = Udpv4.parse(ipv4.data)
    except ValueError:
        return None
    if udp.src != _DHCP_SERVER_PORT or udp.dst != _DHCP_CLIENT_PORT:
        return None
    if len(udp.data) < 243:
        return None
    if udp.data[240:243] != bytes((53, 1, 2)):
        return None
    return ipaddress.IPv4Address(udp.data[16:20])


@dataclass
class Vif:
    """A virtual Ethernet device."""

    mtu: int
    max_packet_size: int
    client_mac: bytes
    ip: Optional[ipaddress.IPv4Address] = None
    conn: Optional[socket.socket] = field(default=None, repr=False, compare=False)

    def _socket(self) -> socket.socket:
        if self.conn is None:
            raise VmnetError("interface is not connected")
        return self.conn

    def write(self, packet: bytes) -> None:
        """Send one packet."""
        if len(packet) > 0xFFFF:
            raise ValueError("packet too large")
        self._socket().sendall(struct.pack("<H", len(packet)) + bytes(packet))

    def read(self) -> bytes:
        """Receive the next packet."""
        conn = self._socket()
        (length,) = struct.unpack("<H", _recv_exact(conn, 2))
        return _recv_exact(conn, length)

    def dhcp(self) -> ipaddress.IPv4Address:
        """Query the interface's IP address by DHCP."""
        request = DhcpRequest(self.client_mac).to_bytes()
        udp = Udpv4(src=_DHCP_CLIENT_PORT, dst=_DHCP_SERVER_PORT, data=request)
        ipv4 = Ipv4(dst=_BROADCAST_IP, src=_UNKNOWN_IP)
        ipv4.set_data(udp.to_bytes())
        frame = EthernetFrame(_BROADCAST_MAC, self.client_mac, ETHERTYPE_IPV4, ipv4.to_bytes())
        discover = frame.to_bytes()

        finished = threading.Event()

        def resend() -> None:
            while not finished.is_set():
                try:
                    self.write(discover)
                except OSError:
                    return
                finished.wait(_DHCP_RETRY_SECONDS)

        sender = threading.Thread(target=resend, daemon=True)
        sender.start()
        try:
            while True:
                offered = _offered_address(self.read())
                if offered is not None:
                    return offered
        finally:
            finished.set()


class Vmnet:
    """A vmnet protocol connection."""

    def __init__(self, conn: socket.socket) -> None:
        self._conn = conn
        self.remote_version: Optional[InitMessage] = None

    @classmethod
    def connect(cls, path: str) -> "Vmnet":
        """Connect to the Unix socket at path and exchange versions."""
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(path)
            vmnet = cls(sock)
            vmnet._negotiate()
        except BaseException:
            sock.close()
            raise
        return vmnet

    def _negotiate(self) -> None:
        self._conn.sendall(InitMessage.default().to_bytes())
        self.remote_version = InitMessage.read(self._conn)

    def close(self) -> None:
        """Close the connection."""
        self._conn.close()

    def __enter__(self) -> "Vmnet":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request_vif(self, uuid: UuidLike, ip: Optional[IPv4Like]) -> Vif:
        self._conn.sendall(EthernetRequest(uuid, ip).to_bytes())
        (response,) = _recv_exact(self._conn, 1)
        if response != _RESPONSE_VIF:
            (length,) = _recv_exact(self._conn, 1)
            message = _recv_exact(self._conn, length)
            raise VmnetError(message.decode("utf-8", "replace"))
        mtu, max_packet_size = struct.unpack("<HH", _recv_exact(self._conn, 4))
        mac = _recv_exact(self._conn, 6)
        _recv_exact(self._conn, _VIF_PADDING)
        return Vif(mtu, max_packet_size, mac, None, self._conn)

    def connect_vif(self, uuid: UuidLike) -> Vif:
        """Return a connected interface for uuid, its address found by DHCP."""
        vif = self._request_vif(uuid, None)
        vif.ip = vif.dhcp()
        return vif

    def connect_vif_ip(self, uuid: UuidLike, ip: IPv4Like) -> Vif:
        """Return a connected interface for uuid with the given IP."""
        address = ipaddress.IPv4Address(ip)
        vif = self._request_vif(uuid, address)
        vif.ip = address
        return vif