"""HTTP client for exposing and unexposing ports on a running server."""

from __future__ import annotations

import http.client
import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional

from .port import Port, Protocol
from .transport import choose

LIST_PATH = "/forwards/list"
EXPOSE_PORT_PATH = "/forwards/expose/port"
EXPOSE_PIPE_PATH = "/forwards/expose/pipe"
UNEXPOSE_PORT_PATH = "/forwards/unexpose/port"
UNEXPOSE_PIPE_PATH = "/forwards/unexpose/pipe"
DUMP_STATE_PATH = "/forwards/dump"

HTTP_TIMEOUT = 120.0
_CHUNK = 65536


class ExposeError(Exception):
    """An error exposing a port that should be reported to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ExposeError) and other.message == self.message

    def __hash__(self) -> int:
        return hash(self.message)

    def to_dict(self) -> dict[str, str]:
        """Return the JSON object form."""
        return {"message": self.message}


class Client(ABC):
    """Exposes and unexposes ports."""

    @abstractmethod
    def expose(self, port: Port) -> None:
        """Start forwarding the given port."""

    @abstractmethod
    def unexpose(self, port: Port) -> None:
        """Stop forwarding the given port."""

    @abstractmethod
    def list_exposed(self) -> list[Port]:
        """Return the ports currently forwarded."""

    @abstractmethod
    def dump_state(self, stream: BinaryIO) -> None:
        """Write a diagnostic dump of the internal state to stream."""


class _TransportConnection(http.client.HTTPConnection):
    """An HTTP connection carried over a Unix socket or vsock transport."""

    def __init__(self, path: str, timeout: float) -> None:
        super().__init__("unix", timeout=timeout)
        self._path = path
        self._transport = choose(path)

    def connect(self) -> None:
        sock = self._transport.dial(self._path)
        sock.settimeout(self.timeout)
        self.sock = sock


def _encode_port(port: Port) -> bytes:
    return (json.dumps(port.to_dict()) + "\n").encode("utf-8")


def _unexpected(path: str, status: int) -> RuntimeError:
    return RuntimeError(f"{path} returned unexpected status: {status}")


class HttpClient(Client):
    """Talks to the port control server over HTTP."""

    def __init__(self, path: str, timeout: float = HTTP_TIMEOUT) -> None:
        self.path = path
        self.timeout = timeout

    @contextmanager
    def _open(
        self, method: str, path: str, body: Optional[bytes] = None
    ) -> Iterator[http.client.HTTPResponse]:
        conn = _TransportConnection(self.path, self.timeout)
        try:
            headers = {} if body is None else {"Content-Type": "application/json"}
            conn.request(method, path, body=body, headers=headers)
            yield conn.getresponse()
        finally:
            conn.close()

    def expose(self, port: Port) -> None:
        path = EXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else EXPOSE_PORT_PATH
        with self._open("PUT", path, _encode_port(port)) as response:
            payload = response.read()
            if response.status == 400:
                data = json.loads(payload)
                if not isinstance(data, dict):
                    raise ValueError(f"failed to decode expose error: {data!r}")
                raise ExposeError(str(data.get("message", "")))
            if response.status != 200:
                raise _unexpected(path, response.status)

    def unexpose(self, port: Port) -> None:
        path = UNEXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else UNEXPOSE_PORT_PATH
        with self._open("DELETE", path, _encode_port(port)) as response:
            response.read()
            if response.status != 200:
                raise _unexpected(path, response.status)

    def list_exposed(self) -> list[Port]:
        with self._open("GET", LIST_PATH) as response:
            payload = response.read()
            if response.status != 200:
                raise _unexpected(LIST_PATH, response.status)
        data = json.loads(payload)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError(f"expected a list of ports, got {data!r}")
        return [Port.from_dict(item) for item in data]

    def dump_state(self, stream: BinaryIO) -> None:
        with self._open("GET", DUMP_STATE_PATH) as response:
            if response.status != 200:
                response.read()
                raise _unexpected(DUMP_STATE_PATH, response.status)
            while True:
                chunk = response.read(_CHUNK)
                if not chunk:
                    break
                stream.write(chunk)


def new_client(path: str) -> HttpClient:
    """Return a client for the server listening at path."""
    return HttpClient(path)