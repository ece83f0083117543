"""Helpers converting between Python values, bit tables and 16-bit registers."""

from __future__ import annotations

import struct
from typing import Any, Iterable, List, MutableSequence, Sequence

from .errors import InvalidParameterError


# ----------------------------------------------------------------------
# Bits
# ----------------------------------------------------------------------


def pack_bits(bits: Iterable[Any]) -> bytes:
    """Pack truthy values LSB first, eight per byte, as on the wire."""

    packed = bytearray()
    for index, bit in enumerate(bits):
        if index % 8 == 0:
            packed.append(0)
        if bit:
            packed[-1] |= 1 << (index % 8)
    return bytes(packed)


def unpack_bits(data: bytes, count: int) -> List[bool]:
    if count > len(data) * 8:
        raise InvalidParameterError(f"{len(data)} bytes cannot hold {count} bits")
    return [bool(data[i // 8] >> (i % 8) & 1) for i in range(count)]


def set_bits_from_byte(dest: MutableSequence, index: int, value: int) -> None:
    """Spread the eight bits of *value* over ``dest[index:index + 8]``."""

    for offset in range(8):
        dest[index + offset] = bool(value >> offset & 1)


def set_bits_from_bytes(dest: MutableSequence, index: int, nb_bits: int, data: bytes) -> None:
    for offset, bit in enumerate(unpack_bits(data, nb_bits)):
        dest[index + offset] = bit


def get_byte_from_bits(src: Sequence, index: int, nb_bits: int) -> int:
    """Gather up to eight bits starting at ``src[index]`` into one byte."""

    if not 0 <= nb_bits <= 8:
        raise InvalidParameterError("get_byte_from_bits handles at most 8 bits")
    value = 0
    for offset in range(nb_bits):
        if src[index + offset]:
            value |= 1 << offset
    return value


# ----------------------------------------------------------------------
# Floats over two registers
# ----------------------------------------------------------------------

# Position of each IEEE-754 byte (A = most significant) in the register pair.
_FLOAT_ORDERS = {
    "abcd": (0, 1, 2, 3),
    "badc": (1, 0, 3, 2),
    "cdab": (2, 3, 0, 1),
    "dcba": (3, 2, 1, 0),
}


def _float_order(order: str) -> tuple:
    try:
        return _FLOAT_ORDERS[order.lower()]
    except KeyError as exc:
        raise InvalidParameterError(f"Unknown float byte order {order!r}") from exc


def float_to_registers(value: float, order: str = "abcd") -> List[int]:
    raw = struct.pack(">f", float(value))
    arranged = bytes(raw[position] for position in _float_order(order))
    return list(struct.unpack(">HH", arranged))


def registers_to_float(registers: Sequence[int], order: str = "abcd") -> float:
    if len(registers) < 2:
        raise InvalidParameterError("Need 2 registers for a float")
    arranged = struct.pack(">HH", registers[0] & 0xFFFF, registers[1] & 0xFFFF)
    raw = bytearray(4)
    for wire_index, position in enumerate(_float_order(order)):
        raw[position] = arranged[wire_index]
    return struct.unpack(">f", bytes(raw))[0]


def get_float_abcd(registers: Sequence[int]) -> float:
    return registers_to_float(registers, "abcd")


def get_float_badc(registers: Sequence[int]) -> float:
    return registers_to_float(registers, "badc")


def get_float_cdab(registers: Sequence[int]) -> float:
    return registers_to_float(registers, "cdab")


def get_float_dcba(registers: Sequence[int]) -> float:
    return registers_to_float(registers, "dcba")


def set_float_abcd(value: float) -> List[int]:
    return float_to_registers(value, "abcd")


def set_float_badc(value: float) -> List[int]:
    return float_to_registers(value, "badc")


def set_float_cdab(value: float) -> List[int]:
    return float_to_registers(value, "cdab")


def set_float_dcba(value: float) -> List[int]:
    return float_to_registers(value, "dcba")


# ----------------------------------------------------------------------
# Typed register values
# ----------------------------------------------------------------------


def encode_value(value: Any, data_type: str) -> List[int]:
    """Encode a Python value to MODBUS register values based on data type.

    Args:
        value: Python value to encode (int, float, bool)
        data_type: Type specifier (uint16, int16, uint32_be, float32_abcd, etc.)

    Returns:
        List of 16-bit register values

    Raises:
        InvalidParameterError: If data type is unknown or value cannot be encoded
    """
    try:
        if data_type == "uint16":
            val = int(value)
            if not (0 <= val <= 65535):
                raise InvalidParameterError(f"uint16 value {val} out of range [0, 65535]")
            return [val]

        elif data_type == "int16":
            val = int(value)
            if not (-32768 <= val <= 32767):
                raise InvalidParameterError(f"int16 value {val} out of range [-32768, 32767]")
            return [val & 0xFFFF]

        elif data_type in ("uint32_be", "uint32_le"):
            val = int(value)
            if not (0 <= val <= 0xFFFFFFFF):
                raise InvalidParameterError(f"uint32 value {val} out of range")
            hi, lo = (val >> 16) & 0xFFFF, val & 0xFFFF
            return [hi, lo] if data_type == "uint32_be" else [lo, hi]

        elif data_type == "int32_be":
            val = int(value)
            if not (-0x80000000 <= val <= 0x7FFFFFFF):
                raise InvalidParameterError(f"int32 value {val} out of range")
            return list(struct.unpack(">HH", struct.pack(">i", val)))

        elif data_type == "float32_be":
            return float_to_registers(value, "abcd")

        elif data_type == "float32_le":
            # Word swapped: low word first, each word big-endian.
            return float_to_registers(value, "cdab")

        elif data_type.startswith("float32_"):
            return float_to_registers(value, data_type[len("float32_"):])

        elif data_type == "bool":
            return [1 if value else 0]

        else:
            raise InvalidParameterError(f"Unknown data type: {data_type}")

    except InvalidParameterError:
        raise
    except (ValueError, TypeError, struct.error) as exc:
        raise InvalidParameterError(f"Cannot encode value {value!r} as {data_type}: {exc}") from exc


def decode_registers(registers: Sequence[int], data_type: str) -> Any:
    """Decode MODBUS register values to a Python value.

    Raises:
        InvalidParameterError: If data type is unknown or too few registers are given
    """
    width = 1 if data_type in ("uint16", "int16", "bool") else 2
    if len(registers) < width:
        raise InvalidParameterError(f"Need {width} register(s) for {data_type}")

    if data_type == "uint16":
        return registers[0] & 0xFFFF
    if data_type == "int16":
        val = registers[0] & 0xFFFF
        return val - 0x10000 if val >= 0x8000 else val
    if data_type == "bool":
        return bool(registers[0])
    if data_type == "uint32_be":
        return ((registers[0] & 0xFFFF) << 16) | (registers[1] & 0xFFFF)
    if data_type == "uint32_le":
        return ((registers[1] & 0xFFFF) << 16) | (registers[0] & 0xFFFF)
    if data_type == "int32_be":
        return struct.unpack(">i", struct.pack(">HH", registers[0] & 0xFFFF, registers[1] & 0xFFFF))[0]
    if data_type == "float32_be":
        return registers_to_float(registers, "abcd")
    if data_type == "float32_le":
        return registers_to_float(registers, "cdab")
    if data_type.startswith("float32_"):
        return registers_to_float(registers, data_type[len("float32_"):])
    raise InvalidParameterError(f"Unknown data type: {data_type}")


__all__ = [
    "pack_bits",
    "unpack_bits",
    "set_bits_from_byte",
    "set_bits_from_bytes",
    "get_byte_from_bits",
    "float_to_registers",
    "registers_to_float",
    "get_float_abcd",
    "get_float_badc",
    "get_float_cdab",
    "get_float_dcba",
    "set_float_abcd",
    "set_float_badc",
    "set_float_cdab",
    "set_float_dcba",
    "encode_value",
    "decode_registers",
]
