[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpnkit"
version = "0.1.0"
description = "Port-forward descriptions, control-API client and server, transports, and vmnet/vmnetd protocol helpers for a VPNKit service"
requires-python = ">=3.10"
dependencies = []
keywords = ["vpnkit", "port-forwarding", "vsock", "vmnet", "networking", "pcap", "dhcp"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vpnkit"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
