"""MODBUS-RTU framing: unit address, PDU and a little-endian CRC16."""

from __future__ import annotations

import struct

from .base import Frame, Framer, data_length_after_meta, meta_length_after_function
from ..constants import (
	RTU_CHECKSUM_LENGTH,
	RTU_HEADER_LENGTH,
	RTU_MAX_ADU_LENGTH,
	Backend,
	MessageType,
)
from ..errors import InvalidCRCError, InvalidDataError


def crc16(data: bytes) -> int:
	"""Compute MODBUS RTU CRC16 (polynomial 0xA001, reflected)."""

	crc = 0xFFFF
	for byte in data:
		crc ^= byte
		for _ in range(8):
			if crc & 0x0001:
				crc = (crc >> 1) ^ 0xA001
			else:
				crc >>= 1
	return crc & 0xFFFF


class RtuFramer(Framer):
	backend = Backend.RTU
	header_length = RTU_HEADER_LENGTH
	checksum_length = RTU_CHECKSUM_LENGTH
	max_adu_length = RTU_MAX_ADU_LENGTH

	def encode(self, frame: Frame) -> bytes:
		body = bytes([frame.unit_id & 0xFF, frame.function_code & 0xFF]) + frame.payload
		self._check_size(len(body) + RTU_CHECKSUM_LENGTH, frame.function_code)
		return body + struct.pack("<H", crc16(body))

	def decode(self, adu: bytes) -> Frame:
		minimum = RTU_HEADER_LENGTH + 1 + RTU_CHECKSUM_LENGTH
		if len(adu) < minimum:
			raise InvalidDataError(f"RTU frame of {len(adu)} bytes is too short")
		self._check_size(len(adu), adu[1])
		crc_expected = crc16(adu[:-2])
		crc_received = adu[-2] | (adu[-1] << 8)
		if crc_expected != crc_received:
			raise InvalidCRCError(
				f"CRC mismatch: received 0x{crc_received:04X}, computed 0x{crc_expected:04X}",
				function=adu[1],
			)
		return Frame(adu[0], adu[1], bytes(adu[2:-2]))

	def bytes_needed(self, buffer: bytes, msg_type: MessageType) -> int:
		# unit + function first, then the fixed meta part, then the announced data
		length = RTU_HEADER_LENGTH + 1
		if len(buffer) >= length:
			length += meta_length_after_function(buffer[RTU_HEADER_LENGTH], msg_type)
			if len(buffer) >= length:
				length += data_length_after_meta(buffer, RTU_HEADER_LENGTH, msg_type)
				length += RTU_CHECKSUM_LENGTH
				self._check_size(length, buffer[RTU_HEADER_LENGTH])
		return max(0, length - len(buffer))


__all__ = ["RtuFramer", "crc16"]
