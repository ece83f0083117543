"""Error taxonomy shared by the client and server engines.

Every failure raised by the package derives from :class:`ModbusError`. The
``kind`` attribute lets callers branch on the category without matching on
concrete classes, while the subclasses keep ``except`` clauses readable::

    try:
        client.read_holding_registers(0x160, 3)
    except ModbusExceptionError as exc:      # the slave answered with an exception
        ...
    except ModbusTimeoutError:               # nothing (complete) came back in time
        ...
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional


class ErrorKind(Enum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    INVALID_CRC = "invalid_crc"
    INVALID_TID_OR_SLAVE = "invalid_tid_or_slave"
    INVALID_DATA = "invalid_data"
    TOO_MANY_DATA = "too_many_data"
    EXCEPTION = "exception"
    INVALID_EXCEPTION_CODE = "invalid_exception_code"
    INVALID_PARAMETER = "invalid_parameter"


class ExceptionCode(IntEnum):
    """Exception codes carried in ``[function | 0x80][code]`` responses."""

    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SLAVE_OR_SERVER_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SLAVE_OR_SERVER_BUSY = 0x06
    NEGATIVE_ACKNOWLEDGE = 0x07
    MEMORY_PARITY = 0x08
    GATEWAY_PATH = 0x0A
    GATEWAY_TARGET = 0x0B

    @property
    def description(self) -> str:
        return _EXCEPTION_DESCRIPTIONS[self]


_EXCEPTION_DESCRIPTIONS = {
    ExceptionCode.ILLEGAL_FUNCTION: "Illegal function",
    ExceptionCode.ILLEGAL_DATA_ADDRESS: "Illegal data address",
    ExceptionCode.ILLEGAL_DATA_VALUE: "Illegal data value",
    ExceptionCode.SLAVE_OR_SERVER_FAILURE: "Slave device or server failure",
    ExceptionCode.ACKNOWLEDGE: "Acknowledge",
    ExceptionCode.SLAVE_OR_SERVER_BUSY: "Slave device or server is busy",
    ExceptionCode.NEGATIVE_ACKNOWLEDGE: "Negative acknowledge",
    ExceptionCode.MEMORY_PARITY: "Memory parity error",
    ExceptionCode.GATEWAY_PATH: "Gateway path unavailable",
    ExceptionCode.GATEWAY_TARGET: "Target device failed to respond",
}


class ModbusError(RuntimeError):
    """Base class for all protocol engine failures."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        function: Optional[int] = None,
        address: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.function = function
        self.address = address

    def __str__(self) -> str:
        message = super().__str__()
        details = []
        if self.function is not None:
            details.append(f"function=0x{self.function:02X}")
        if self.address is not None:
            details.append(f"address=0x{self.address:04X}")
        if details:
            return f"{message} ({', '.join(details)})"
        return message


# ----------------------------------------------------------------------
# Transport errors
# ----------------------------------------------------------------------


class TransportError(ModbusError):
    """The underlying byte stream failed (refused, reset, broken pipe)."""

    kind = ErrorKind.TRANSPORT


class ConnectionClosedError(TransportError):
    """The peer closed the connection or the transport was closed locally."""


class ModbusTimeoutError(ModbusError):
    """No complete frame arrived before the response or byte timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, received: int = 0, **context: Optional[int]) -> None:
        super().__init__(message, **context)
        # Bytes of the discarded partial frame; 0 when nothing arrived.
        self.received = received


# ----------------------------------------------------------------------
# Framing errors
# ----------------------------------------------------------------------


class FramingError(ModbusError):
    """A received frame was malformed and has been discarded."""

    kind = ErrorKind.INVALID_DATA


class InvalidCRCError(FramingError):
    kind = ErrorKind.INVALID_CRC


class InvalidTIDOrSlaveError(FramingError):
    """Response transaction id or unit id does not match the request."""

    kind = ErrorKind.INVALID_TID_OR_SLAVE


class InvalidDataError(FramingError):
    """Frame or confirmation content is inconsistent with the request."""

    kind = ErrorKind.INVALID_DATA


class TooManyDataError(ModbusError):
    """Quantity above the protocol maximum, or a frame above the max ADU."""

    kind = ErrorKind.TOO_MANY_DATA


# ----------------------------------------------------------------------
# Protocol exceptions
# ----------------------------------------------------------------------


class ModbusExceptionError(ModbusError):
    """The remote slave answered with an exception response."""

    kind = ErrorKind.EXCEPTION

    def __init__(
        self,
        code: ExceptionCode,
        *,
        function: Optional[int] = None,
        address: Optional[int] = None,
    ) -> None:
        self.code = ExceptionCode(code)
        super().__init__(self.code.description, function=function, address=address)


class InvalidExceptionCodeError(ModbusError):
    kind = ErrorKind.INVALID_EXCEPTION_CODE

    def __init__(self, raw_code: int, *, function: Optional[int] = None) -> None:
        self.raw_code = raw_code
        super().__init__(f"Invalid exception code 0x{raw_code:02X}", function=function)


class InvalidParameterError(ModbusError, ValueError):
    """A configuration call received an out-of-range value."""

    kind = ErrorKind.INVALID_PARAMETER


__all__ = [
    "ErrorKind",
    "ExceptionCode",
    "ModbusError",
    "TransportError",
    "ConnectionClosedError",
    "ModbusTimeoutError",
    "FramingError",
    "InvalidCRCError",
    "InvalidTIDOrSlaveError",
    "InvalidDataError",
    "TooManyDataError",
    "ModbusExceptionError",
    "InvalidExceptionCodeError",
    "InvalidParameterError",
]
