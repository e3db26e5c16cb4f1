"""Minimal Ethernet, IPv4, UDP and DHCP packets, and a pcap stream writer."""

from __future__ import annotations

import datetime
import struct
from dataclasses import dataclass
from typing import BinaryIO

ETHERTYPE_IPV4 = 0x0800
ETHERNET_HEADER_LEN = 6 + 6 + 2
IPV4_HEADER_LEN = 20
UDP_HEADER_LEN = 8

PCAP_MAGIC = 0xA1B2C3D4
PCAP_VERSION = (2, 4)
PCAP_SNAPLEN = 1500
PCAP_LINKTYPE_ETHERNET = 1

_DHCP_PADDING = 202
_DHCP_MAGIC_COOKIE = bytes((0x63, 0x82, 0x53, 0x63))


@dataclass
class EthernetFrame:
    """An Ethernet frame."""

    dst: bytes
    src: bytes
    ethertype: int
    data: bytes = b""

    def __post_init__(self) -> None:
        self.dst = bytes(self.dst)
        self.src = bytes(self.src)
        self.data = bytes(self.data)

    def write(self, stream: BinaryIO) -> None:
        """Write the marshalled frame to a binary stream."""
        stream.write(self.to_bytes())

    def to_bytes(self) -> bytes:
        """Return the marshalled frame."""
        return self.dst + self.src + struct.pack(">H", self.ethertype) + self.data

    @classmethod
    def parse(cls, frame: bytes) -> "EthernetFrame":
        """Parse an Ethernet frame."""
        if len(frame) < ETHERNET_HEADER_LEN:
            raise ValueError("Ethernet frame is too small")
        (ethertype,) = struct.unpack(">H", frame[12:14])
        return cls(frame[0:6], frame[6:12], ethertype, frame[14:])


@dataclass
class Ipv4:
    """An IPv4 packet whose checksum is left to offload."""

    dst: bytes
    src: bytes
    data: bytes = b""
    checksum: int = 0

    def __post_init__(self) -> None:
        self.dst = bytes(self.dst)
        self.src = bytes(self.src)
        self.data = bytes(self.data)

    def set_data(self, data: bytes) -> None:
        """Replace the payload and reset the checksum as if offloaded."""
        self.data = bytes(data)
        self.checksum = 0

    def header_bytes(self) -> bytes:
        """Return the marshalled header of a UDP broadcast from 0.0.0.0."""
        total = (len(self.data) + IPV4_HEADER_LEN) & 0xFFFF
        return bytes(
            (
                0x45,  # version + IHL
                0x00,  # DSCP + ECN
                total >> 8, total & 0xFF,
                0x7F, 0x61,  # identification
                0x00, 0x00,  # flags + fragment offset
                0x40,  # TTL
                0x11,  # protocol: UDP
                (self.checksum >> 8) & 0xFF, self.checksum & 0xFF,
                0x00, 0x00, 0x00, 0x00,  # source
                0xFF, 0xFF, 0xFF, 0xFF,  # destination
            )
        )

    def to_bytes(self) -> bytes:
        """Return the marshalled packet."""
        return self.header_bytes() + self.data

    @classmethod
    def parse(cls, packet: bytes) -> "Ipv4":
        """Parse an IPv4 packet; the checksum is assumed offloaded."""
        if len(packet) < IPV4_HEADER_LEN:
            raise ValueError("IPv4 packet too small")
        ihl = (packet[0] & 0x0F) * 4
        if len(packet) < ihl:
            raise ValueError("IPv4 packet too small")
        return cls(dst=packet[12:16], src=packet[16:20], data=packet[ihl:])


@dataclass
class Udpv4:
    """A UDP datagram carried over IPv4."""

    src: int
    dst: int
    data: bytes = b""
    checksum: int = 0

    def __post_init__(self) -> None:
        self.data = bytes(self.data)

    def write(self, stream: BinaryIO) -> None:
        """Write the marshalled datagram to a binary stream."""
        stream.write(self.to_bytes())

    def to_bytes(self) -> bytes:
        """Return the marshalled datagram."""
        length = (UDP_HEADER_LEN + len(self.data)) & 0xFFFF
        return struct.pack(">HHHH", self.src, self.dst, length, self.checksum) + self.data

    @classmethod
    def parse(cls, packet: bytes) -> "Udpv4":
        """Parse a UDP datagram."""
        if len(packet) < UDP_HEADER_LEN:
            raise ValueError("UDPv4 is too short")
        src, dst, _length, checksum = struct.unpack(">HHHH", packet[:UDP_HEADER_LEN])
        return cls(src=src, dst=dst, data=packet[UDP_HEADER_LEN:], checksum=checksum)


@dataclass(frozen=True)
class DhcpRequest:
    """A DHCP discover message from a given MAC address."""

    mac: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "mac", bytes(self.mac))
        if len(self.mac) != 6:
            raise ValueError("MAC address must be 6 bytes")

    def to_bytes(self) -> bytes:
        """Return the marshalled request."""
        header = bytes(
            (
                0x01,  # OP
                0x01,  # HTYPE
                0x06,  # HLEN
                0x00,  # HOPS
                0x01, 0x00, 0x00, 0x00,  # XID
                0x00, 0x00,  # SECS
                0x80, 0x00,  # FLAGS: broadcast
            )
        )
        addresses = bytes(16)  # CIADDR, YIADDR, SIADDR, GIADDR
        options = _DHCP_MAGIC_COOKIE + bytes((0x35, 0x01, 0x01, 0xFF))  # discover, end
        return header + addresses + self.mac + bytes(_DHCP_PADDING) + options


class PcapWriter:
    """Writes packets to a binary stream in pcap format."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.snaplen = PCAP_SNAPLEN
        major, minor = PCAP_VERSION
        stream.write(
            struct.pack(
                "<IHHIIII",
                PCAP_MAGIC,
                major,
                minor,
                0,  # GMT to local correction
                0,  # accuracy of timestamps
                self.snaplen,
                PCAP_LINKTYPE_ETHERNET,
            )
        )

    def write(self, packet: bytes) -> None:
        """Append a packet with its record header, truncated to the snap length."""
        now = datetime.datetime.now()
        captured = bytes(packet[: self.snaplen])
        record = struct.pack("<IIII", now.second, now.microsecond, len(captured), len(packet))
        self._stream.write(record + captured)