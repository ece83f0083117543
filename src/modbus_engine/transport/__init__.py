"""Byte-stream transports carrying Modbus frames."""

from .base import Transport, deadline_after, remaining
from .serial import RtsMode, SerialMode, SerialTransport
from .tcp import TcpListener, TcpTransport

__all__ = [
    "Transport",
    "SerialTransport",
    "SerialMode",
    "RtsMode",
    "TcpTransport",
    "TcpListener",
    "deadline_after",
    "remaining",
]
