"""
shellbridge - interactive access to a host shell over a WebSocket.

A pseudo-terminal process on the host is bridged to any number of
clients. Connections are gated by a semantic-version handshake before any
terminal traffic flows; clients reconnect with exponential backoff.
"""

__version__ = "1.0.0"
