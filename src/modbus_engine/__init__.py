"""Modbus RTU / TCP protocol engine: framing, client and server."""

from .client import ModbusClient
from .constants import VERSION, Backend, FunctionCode, MessageType
from .context import ErrorRecovery, ModbusContext
from .errors import (
    ConnectionClosedError,
    ErrorKind,
    ExceptionCode,
    FramingError,
    InvalidCRCError,
    InvalidDataError,
    InvalidExceptionCodeError,
    InvalidParameterError,
    InvalidTIDOrSlaveError,
    ModbusError,
    ModbusExceptionError,
    ModbusTimeoutError,
    TooManyDataError,
    TransportError,
)
from .framing import Frame
from .mapping import BlockKind, DataBlock, ModbusMapping
from .server import Indication, ModbusServer, ModbusTcpServer
from .timeout import Timeout

__version__ = VERSION

__all__ = [
    "Backend",
    "BlockKind",
    "ConnectionClosedError",
    "DataBlock",
    "ErrorKind",
    "ErrorRecovery",
    "ExceptionCode",
    "Frame",
    "FramingError",
    "FunctionCode",
    "Indication",
    "InvalidCRCError",
    "InvalidDataError",
    "InvalidExceptionCodeError",
    "InvalidParameterError",
    "InvalidTIDOrSlaveError",
    "MessageType",
    "ModbusClient",
    "ModbusContext",
    "ModbusError",
    "ModbusExceptionError",
    "ModbusMapping",
    "ModbusServer",
    "ModbusTcpServer",
    "ModbusTimeoutError",
    "Timeout",
    "TooManyDataError",
    "TransportError",
    "__version__",
]
