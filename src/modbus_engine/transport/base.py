"""Byte-stream transport abstraction consumed by the protocol engine."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Optional


class Transport(ABC):
    """Common interface implemented by serial and socket transports.

    Transports know nothing about Modbus. ``read`` blocks until at least one
    byte is available or *deadline* (a ``time.monotonic()`` value, ``None``
    for no limit) passes, and raises
    :class:`~modbus_engine.errors.ModbusTimeoutError` in the latter case.
    End of stream raises :class:`~modbus_engine.errors.ConnectionClosedError`.
    """

    @abstractmethod
    def open(self) -> None:
        """Establish connectivity (connect a socket, open a serial port)."""

    @abstractmethod
    def close(self) -> None:
        """Release the underlying resource; pending reads are unblocked."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the transport is currently usable."""

    @abstractmethod
    def read(self, size: int, deadline: Optional[float]) -> bytes:
        """Read between 1 and *size* bytes before *deadline*."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Send *data* completely and return the number of bytes written."""

    @abstractmethod
    def flush(self) -> int:
        """Discard unread input and return the number of bytes dropped."""

    def describe(self) -> str:
        return self.__class__.__name__

    def __enter__(self) -> "Transport":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def remaining(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until *deadline*, never negative; ``None`` stays ``None``."""

    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def deadline_after(seconds: Optional[float]) -> Optional[float]:
    if seconds is None:
        return None
    return time.monotonic() + seconds


__all__ = ["Transport", "remaining", "deadline_after"]
