"""Port-forward descriptions, control-API client and server, transports, and vmnet/vmnetd helpers."""

__version__ = "0.1.0"