"""Protocol constants shared by the framing, client and server layers."""

from __future__ import annotations

from enum import Enum, IntEnum


class Backend(Enum):
    """Wire backend of a context."""

    RTU = "rtu"
    TCP = "tcp"
    TCP_PI = "tcp-pi"

    @classmethod
    def parse(cls, value: "str | Backend") -> "Backend":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        if normalized in ("tcppi", "tcp-pi"):
            return cls.TCP_PI
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown backend {value!r}; expected rtu, tcp or tcp-pi") from exc


class MessageType(Enum):
    """Direction of a frame, needed to compute RTU frame lengths."""

    INDICATION = "indication"  # request as seen by a server
    CONFIRMATION = "confirmation"  # response as seen by a client


class FunctionCode(IntEnum):
    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    READ_EXCEPTION_STATUS = 0x07
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10
    REPORT_SLAVE_ID = 0x11
    MASK_WRITE_REGISTER = 0x16
    WRITE_AND_READ_REGISTERS = 0x17


# MODBUS function code constants
FC_READ_COILS = FunctionCode.READ_COILS
FC_READ_DISCRETE_INPUTS = FunctionCode.READ_DISCRETE_INPUTS
FC_READ_HOLDING_REGISTERS = FunctionCode.READ_HOLDING_REGISTERS
FC_READ_INPUT_REGISTERS = FunctionCode.READ_INPUT_REGISTERS
FC_WRITE_SINGLE_COIL = FunctionCode.WRITE_SINGLE_COIL
FC_WRITE_SINGLE_REGISTER = FunctionCode.WRITE_SINGLE_REGISTER
FC_READ_EXCEPTION_STATUS = FunctionCode.READ_EXCEPTION_STATUS
FC_WRITE_MULTIPLE_COILS = FunctionCode.WRITE_MULTIPLE_COILS
FC_WRITE_MULTIPLE_REGISTERS = FunctionCode.WRITE_MULTIPLE_REGISTERS
FC_REPORT_SLAVE_ID = FunctionCode.REPORT_SLAVE_ID
FC_MASK_WRITE_REGISTER = FunctionCode.MASK_WRITE_REGISTER
FC_WRITE_AND_READ_REGISTERS = FunctionCode.WRITE_AND_READ_REGISTERS

EXCEPTION_FLAG = 0x80

BROADCAST_ADDRESS = 0
# TCP contexts default to this unit id (cf. Modbus Messaging Implementation Guide).
TCP_SLAVE = 0xFF
MAX_RTU_SLAVE = 247

TCP_DEFAULT_PORT = 502

VERSION = "0.1.0"
# Identification bytes returned by report slave id unless configured otherwise.
DEFAULT_IDENTIFICATION = b"MBE" + VERSION.encode("ascii")

# Protocol maxima (Modbus Application Protocol V1.1b, section 6).
MAX_READ_BITS = 2000
MAX_WRITE_BITS = 1968
MAX_READ_REGISTERS = 125
MAX_WRITE_REGISTERS = 123
MAX_WR_WRITE_REGISTERS = 121
MAX_WR_READ_REGISTERS = 125

MAX_PDU_LENGTH = 253
RTU_MAX_ADU_LENGTH = 256
TCP_MAX_ADU_LENGTH = 260
MAX_ADU_LENGTH = TCP_MAX_ADU_LENGTH

RTU_HEADER_LENGTH = 1
RTU_CHECKSUM_LENGTH = 2
TCP_HEADER_LENGTH = 7
TCP_CHECKSUM_LENGTH = 0

COIL_ON = 0xFF00
COIL_OFF = 0x0000

# Run indicator status carried in report slave id responses.
RUN_INDICATOR_ON = 0xFF
RUN_INDICATOR_OFF = 0x00


__all__ = [name for name in dir() if name.isupper()] + [
    "Backend",
    "FunctionCode",
    "MessageType",
]
