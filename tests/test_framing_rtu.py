"""Unit tests for the RTU codec and the CRC16 helper."""

from __future__ import annotations

import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
	sys.path.insert(0, str(SRC_DIR))

from modbus_engine.constants import MessageType
from modbus_engine.errors import (
	InvalidCRCError,
	InvalidDataError,
	InvalidParameterError,
	InvalidTIDOrSlaveError,
	TooManyDataError,
)
from modbus_engine.framing import Frame, RtuFramer, crc16


class Crc16Tests(unittest.TestCase):
	def test_known_vectors(self) -> None:
		self.assertEqual(crc16(bytes.fromhex("010300000001")), 0x0A84)
		self.assertEqual(crc16(bytes.fromhex("01030000000A")), 0xCDC5)
		self.assertEqual(crc16(bytes.fromhex("1103006B0003")), 0x8776)

	def test_empty_input_is_initial_value(self) -> None:
		self.assertEqual(crc16(b""), 0xFFFF)


class RtuFramerTests(unittest.TestCase):
	def setUp(self) -> None:
		self.framer = RtuFramer()

	def test_encode_appends_crc_low_byte_first(self) -> None:
		frame = Frame(0x11, 0x03, bytes.fromhex("006B0003"))
		self.assertEqual(self.framer.encode(frame), bytes.fromhex("1103006B00037687"))

	def test_decode_valid_frame(self) -> None:
		frame = self.framer.decode(bytes.fromhex("010300000001840A"))
		self.assertEqual(frame.unit_id, 1)
		self.assertEqual(frame.function_code, 0x03)
		self.assertEqual(frame.payload, bytes.fromhex("00000001"))
		self.assertIsNone(frame.transaction_id)

	def test_every_single_bit_flip_is_rejected(self) -> None:
		adu = bytearray(self.framer.encode(Frame(0x11, 0x03, bytes.fromhex("006B0003"))))
		for index in range(len(adu)):
			for bit in range(8):
				corrupted = bytearray(adu)
				corrupted[index] ^= 1 << bit
				with self.subTest(index=index, bit=bit):
					with self.assertRaises(InvalidCRCError):
						self.framer.decode(bytes(corrupted))

	def test_decode_too_short(self) -> None:
		with self.assertRaises(InvalidDataError):
			self.framer.decode(b"\x01\x03\x00")

	def test_encode_rejects_oversized_pdu(self) -> None:
		with self.assertRaises(TooManyDataError):
			self.framer.encode(Frame(1, 0x10, bytes(254)))

	def test_frame_from_pdu_rejects_empty(self) -> None:
		with self.assertRaises(InvalidParameterError):
			Frame.from_pdu(1, b"")

	def test_bytes_needed_for_read_request(self) -> None:
		adu = self.framer.encode(Frame(1, 0x03, bytes.fromhex("00000001")))
		self.assertEqual(self.framer.bytes_needed(b"", MessageType.INDICATION), 2)
		# unit + function known: 4 bytes of address/quantity, then the CRC
		self.assertEqual(self.framer.bytes_needed(adu[:2], MessageType.INDICATION), 4)
		self.assertEqual(self.framer.bytes_needed(adu[:6], MessageType.INDICATION), 2)
		self.assertEqual(self.framer.bytes_needed(adu, MessageType.INDICATION), 0)

	def test_bytes_needed_for_write_multiple_request_uses_byte_count(self) -> None:
		pdu = bytes.fromhex("100001000204000A0102")
		adu = self.framer.encode(Frame.from_pdu(1, pdu))
		self.assertEqual(self.framer.bytes_needed(adu[:7], MessageType.INDICATION), 4 + 2)
		self.assertEqual(self.framer.bytes_needed(adu, MessageType.INDICATION), 0)

	def test_bytes_needed_rejects_announced_oversize_request(self) -> None:
		# Write multiple registers announcing 250 data bytes: 259 byte ADU.
		header = bytes.fromhex("01100000007DFA")
		with self.assertRaises(TooManyDataError):
			self.framer.bytes_needed(header, MessageType.INDICATION)
		# 246 data bytes still fit in 256.
		self.assertEqual(
			self.framer.bytes_needed(bytes.fromhex("01100000007BF6"), MessageType.INDICATION),
			246 + 2,
		)

	def test_bytes_needed_for_read_confirmation_uses_byte_count(self) -> None:
		adu = self.framer.encode(Frame.from_pdu(1, bytes.fromhex("0306022B00000064")))
		self.assertEqual(self.framer.bytes_needed(adu[:2], MessageType.CONFIRMATION), 1)
		self.assertEqual(self.framer.bytes_needed(adu[:3], MessageType.CONFIRMATION), 8)
		self.assertEqual(self.framer.bytes_needed(adu, MessageType.CONFIRMATION), 0)

	def test_bytes_needed_for_exception_confirmation(self) -> None:
		adu = self.framer.encode(Frame.from_pdu(1, b"\x83\x02"))
		self.assertEqual(len(adu), 5)
		self.assertEqual(self.framer.bytes_needed(adu[:2], MessageType.CONFIRMATION), 1)
		self.assertEqual(self.framer.bytes_needed(adu[:3], MessageType.CONFIRMATION), 2)

	def test_confirmation_from_other_unit_is_rejected(self) -> None:
		request = Frame(1, 0x03, bytes.fromhex("00000001"))
		response = Frame(2, 0x03, bytes.fromhex("020000"))
		with self.assertRaises(InvalidTIDOrSlaveError):
			self.framer.check_confirmation(request, response)


if __name__ == "__main__":
	unittest.main()
