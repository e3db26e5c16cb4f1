"""Descriptions of TCP, UDP and Unix domain socket forwards."""

from __future__ import annotations

import base64
import binascii
import ipaddress
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_DIGITS = re.compile(r"[0-9]+")
_MAX_PORT = 0xFFFF


class Protocol(str, Enum):
    """Protocol used by an exposed port."""

    TCP = "tcp"
    UDP = "udp"
    UNIX = "unix"

    def __str__(self) -> str:
        return self.value


def _parse_uint(text: str, bits: int) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value >= 1 << bits:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _coerce_proto(value: Union[Protocol, str]) -> Union[Protocol, str]:
    if isinstance(value, Protocol):
        return value
    try:
        return Protocol(value)
    except ValueError:
        return value


def _coerce_ip(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(value)


def _lenient_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _ip_text(ip: Optional[IPAddress]) -> str:
    return "<nil>" if ip is None else str(ip)


def _check_port(value: Any) -> int:
    number = int(value)
    if not 0 <= number <= _MAX_PORT:
        raise ValueError(f"port number out of range: {value!r}")
    return number


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8", "surrogateescape")).decode("ascii")


def _b64decode(text: str) -> str:
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Failed to base64 decode {text}") from exc
    return raw.decode("utf-8", "surrogateescape")


@dataclass(frozen=True)
class Port:
    """A UDP or TCP port forward, or a Unix domain socket forward."""

    proto: Union[Protocol, str] = ""
    out_ip: Optional[IPAddress] = None
    out_port: int = 0
    out_path: str = ""
    in_ip: Optional[IPAddress] = None
    in_port: int = 0
    in_path: str = ""
    annotation: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "proto", _coerce_proto(self.proto))
        object.__setattr__(self, "out_ip", _coerce_ip(self.out_ip))
        object.__setattr__(self, "in_ip", _coerce_ip(self.in_ip))
        object.__setattr__(self, "out_port", _check_port(self.out_port))
        object.__setattr__(self, "in_port", _check_port(self.in_port))

    def __str__(self) -> str:
        prefix = f"{self.annotation} " if self.annotation else ""
        proto = str(self.proto)
        if self.proto == Protocol.UNIX:
            return f"{prefix}{proto} forward from {self.out_path} to {self.in_path}"
        return (
            f"{prefix}{proto} forward from {_ip_text(self.out_ip)}:{self.out_port}"
            f" to {_ip_text(self.in_ip)}:{self.in_port}"
        )

    def spec(self) -> str:
        """Return the proto:outIP:outPort:proto:inIP:inPort form understood by the server."""
        proto = str(self.proto)
        if self.proto in (Protocol.TCP, Protocol.UDP):
            return (
                f"{proto}:{_ip_text(self.out_ip)}:{self.out_port}:"
                f"{proto}:{_ip_text(self.in_ip)}:{self.in_port}"
            )
        if self.proto == Protocol.UNIX:
            return f"unix:{_b64encode(self.out_path)}:unix:{_b64encode(self.in_path)}"
        return "unknown protocol"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form, leaving out empty fields."""
        candidates: list[tuple[str, Any]] = [
            ("proto", str(self.proto)),
            ("out_ip", "" if self.out_ip is None else str(self.out_ip)),
            ("out_port", self.out_port),
            ("out_path", self.out_path),
            ("in_ip", "" if self.in_ip is None else str(self.in_ip)),
            ("in_port", self.in_port),
            ("in_path", self.in_path),
            ("annotation", self.annotation),
        ]
        return {key: value for key, value in candidates if value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Port":
        """Build a Port from its JSON object form."""
        return cls(
            proto=data.get("proto") or "",
            out_ip=data.get("out_ip"),
            out_port=data.get("out_port") or 0,
            out_path=data.get("out_path") or "",
            in_ip=data.get("in_ip"),
            in_port=data.get("in_port") or 0,
            in_path=data.get("in_path") or "",
            annotation=data.get("annotation") or "",
        )


def parse_spec(name: str) -> Port:
    """Parse a spec string as produced by Port.spec."""
    bits = name.split(":")
    if len(bits) == 6:
        out_proto, out_ip, out_port, in_proto, in_ip, in_port = bits
        parsed_out_port = _parse_uint(out_port, 16)
        parsed_in_port = _parse_uint(in_port, 16)
        if out_proto != in_proto:
            raise ValueError(
                f"Failed to parse port: external proto is {out_proto}"
                f" but internal proto is {in_proto}"
            )
        return Port(
            proto=out_proto,
            out_ip=_lenient_ip(out_ip),
            out_port=parsed_out_port,
            in_ip=_lenient_ip(in_ip),
            in_port=parsed_in_port,
        )
    if len(bits) == 4:
        out_proto, out_enc, in_proto, in_enc = bits
        out_path = _b64decode(out_enc)
        in_path = _b64decode(in_enc)
        if out_proto != "unix" or in_proto != "unix":
            raise ValueError(
                f"Failed to parse path: external proto is {out_proto}"
                f" and internal proto is {in_proto}"
            )
        return Port(proto=out_proto, out_path=out_path, in_path=in_path)
    raise ValueError(f"Failed to parse port spec: {name}")