# vpnkit

Python helpers for working with a running VPNKit service. The package has no
runtime dependencies.

## Modules

- `vpnkit.port`: `Port` describes a TCP, UDP or Unix-socket forward and
  `Protocol` names its kind. `Port.spec()` gives the
  `proto:ip:port:proto:ip:port` form (Unix paths are base64-encoded) and
  `parse_spec()` reads it back. `Port.to_dict()` and `Port.from_dict()` convert
  to and from the JSON object used by the control API.
- `vpnkit.config`: `DHCPConfiguration`, `HTTPConfiguration` and
  `GatewayForwards` (a list of `Forward`) write their JSON configuration
  documents to a text stream with `write()`.
- `vpnkit.transport`: `choose(path)` returns a `VsockTransport` when the path
  looks like `[<cid>/]<port>` (see `parse_addr`) and a `UnixTransport`
  otherwise. Both offer `dial()` and `listen()`, returning sockets.
  `shorten_unix_socket_path()` falls back to a relative path when an absolute
  one is too long for a socket address.
- `vpnkit.client`: `new_client(path)` returns an `HttpClient` with `expose`,
  `unexpose`, `list_exposed` and `dump_state`. A refused expose raises
  `ExposeError` with the message the service reported.
- `vpnkit.server`: `Server(path, impl)` serves the same HTTP control API,
  passing each request to `impl`, any object implementing the abstract
  `vpnkit.client.Client`. `start()` serves on a background thread, `stop()`
  shuts it down; `handle(method, path, body)` answers a single request directly.
- `vpnkit.vmnet`: `Vmnet.connect(path)` opens a vmnet connection over a Unix
  socket and exchanges versions. `connect_vif(uuid)` attaches a `Vif` and finds
  its address by DHCP; `connect_vif_ip(uuid, ip)` asks for a given address.
  `Vif.write()` and `Vif.read()` exchange Ethernet frames.
- `vpnkit.packets`: minimal `EthernetFrame`, `Ipv4`, `Udpv4` and `DhcpRequest`
  encoders and parsers, and `PcapWriter`, which writes a pcap header and then
  one record per packet (truncated to 1500 bytes) to a binary stream.
- `vpnkit.vmnetd`: asks the privileged vmnetd helper to bind a port and hands
  back the socket: `listen_tcp_vmnet()`, `listen_udp_vmnet()`, or the raw
  descriptor from `listen_vmnet()`. The handshake and bind-request encoders
  (`write_init_message`, `read_init_message`, `write_bind_ipv4`,
  `read_bind_ipv4`, ...) are available too. Failures raise `VmnetdError`.

## Installing

```
pip install .
```

With the test extra, then running the tests:

```
pip install ".[test]"
pytest
```

## Examples

Port specs:

```python
from vpnkit.port import Port, Protocol, parse_spec

port = Port(proto=Protocol.TCP, out_ip="192.168.0.2", out_port=8081,
            in_ip="192.168.0.1", in_port=8080)
print(port)          # tcp forward from 192.168.0.2:8081 to 192.168.0.1:8080
print(port.spec())   # tcp:192.168.0.2:8081:tcp:192.168.0.1:8080
assert parse_spec(port.spec()).spec() == port.spec()
```

Gateway forwards configuration:

```python
import sys
from vpnkit.config import Forward, GatewayForwards
from vpnkit.port import Protocol

GatewayForwards([Forward(Protocol.UDP, 53, "127.0.0.1", 5353)]).write(sys.stdout)
```

Serving the control API from an in-memory table and talking to it:

```python
from vpnkit.client import Client, new_client
from vpnkit.port import Port, Protocol
from vpnkit.server import Server


class Table(Client):
    def __init__(self):
        self.ports = []

    def expose(self, port):
        self.ports.append(port)

    def unexpose(self, port):
        self.ports = [p for p in self.ports if str(p) != str(port)]

    def list_exposed(self):
        return list(self.ports)

    def dump_state(self, stream):
        stream.write(b"%d forwards\n" % len(self.ports))


with Server("/tmp/vpnkit-control.sock", Table()) as server:
    server.start()
    client = new_client("/tmp/vpnkit-control.sock")
    client.expose(Port(proto=Protocol.TCP, out_port=8080, in_port=80))
    for exposed in client.list_exposed():
        print(exposed)
```

Attaching a virtual interface:

```python
import uuid
from vpnkit.vmnet import Vmnet

with Vmnet.connect("/path/to/vmnet.sock") as vmnet:
    vif = vmnet.connect_vif(uuid.uuid4())
    print(vif.ip, vif.mtu)
```

## What this package does not do

- It does not forward traffic itself. `Server` only relays control requests to
  the `Client` implementation you give it; listening on exposed ports and
  carrying connections into the VM is left to that implementation.
- There is no command-line program.
- Transports cover Unix domain sockets and Linux `AF_VSOCK` only; Windows named
  pipes and Hyper-V sockets are not supported, and `set_security_descriptor`
  has no effect.