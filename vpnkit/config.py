"""Configuration documents for the DHCP server, HTTP proxy and gateway forwards."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, TextIO, Union

from .port import Protocol

_HTML_ESCAPES = (
    ("&", "\\u0026"),
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _encode(value: Any, indent: Optional[int]) -> str:
    if indent is None:
        text = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    else:
        text = json.dumps(value, ensure_ascii=False, indent=indent)
    for char, escape in _HTML_ESCAPES:
        text = text.replace(char, escape)
    return text + "\n"


@dataclass
class DHCPConfiguration:
    """Configures the built-in DHCP server."""

    search_domains: Optional[list[str]] = None
    domain_name: str = ""

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        document = {"searchDomains": self.search_domains, "domainName": self.domain_name}
        stream.write(_encode(document, 2))


@dataclass
class HTTPConfiguration:
    """Configures the built-in HTTP proxy."""

    http: str = ""
    https: str = ""
    exclude: str = ""
    transparent_http_ports: Optional[list[int]] = None
    transparent_https_ports: Optional[list[int]] = None
    allow_enabled: bool = False
    allow: Optional[list[str]] = None
    allow_error_msg: str = ""

    def write(self, stream: TextIO) -> None:
        """Write the configuration as indented JSON."""
        document: dict[str, Any] = {}
        for key in ("http", "https", "exclude"):
            value = getattr(self, key)
            if value:
                document[key] = value
        document["transparent_http_ports"] = self.transparent_http_ports
        document["transparent_https_ports"] = self.transparent_https_ports
        document["allow_enabled"] = self.allow_enabled
        document["allow"] = self.allow
        document["allow_error_msg"] = self.allow_error_msg
        stream.write(_encode(document, 2))


@dataclass
class Forward:
    """A forward from the gateway's external port to an internal address."""

    protocol: Union[Protocol, str]
    external_port: int
    internal_ip: str
    internal_port: int

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form."""
        return {
            "protocol": str(self.protocol),
            "external_port": self.external_port,
            "internal_ip": self.internal_ip,
            "internal_port": self.internal_port,
        }


class GatewayForwards(list):
    """A list of Forward entries."""

    def write(self, stream: TextIO) -> None:
        """Write the forwards as a single line of JSON."""
        stream.write(_encode([forward.to_dict() for forward in self], None))