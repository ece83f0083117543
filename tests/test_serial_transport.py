"""Unit tests for SerialTransport using pyserial's loop:// URL handler."""

from __future__ import annotations

import sys
import time
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
	sys.path.insert(0, str(SRC_DIR))

from modbus_engine import Backend, ModbusContext, ModbusMapping, ModbusServer
from modbus_engine.constants import MessageType
from modbus_engine.errors import ConnectionClosedError, InvalidParameterError, ModbusTimeoutError
from modbus_engine.framing import Frame
from modbus_engine.transport import RtsMode, SerialMode, SerialTransport, deadline_after


class SerialTransportTests(unittest.TestCase):
	def setUp(self) -> None:
		self.transport = SerialTransport("loop://", 115200)

	def tearDown(self) -> None:
		self.transport.close()

	def test_parameter_validation(self) -> None:
		with self.assertRaises(InvalidParameterError):
			SerialTransport("loop://", 9600, parity="X")
		with self.assertRaises(InvalidParameterError):
			SerialTransport("loop://", 9600, bytesize=9)
		with self.assertRaises(InvalidParameterError):
			SerialTransport("loop://", 9600, stopbits=3)
		with self.assertRaises(InvalidParameterError):
			SerialTransport("", 9600)

	def test_defaults(self) -> None:
		self.assertEqual(self.transport.device, "loop://")
		self.assertEqual(self.transport.baudrate, 115200)
		self.assertIs(self.transport.serial_mode, SerialMode.RS232)
		self.assertIs(self.transport.rts_mode, RtsMode.NONE)
		self.assertEqual(self.transport.rts_delay_us, 8)

	def test_mode_setters(self) -> None:
		self.transport.rts_mode = "up"
		self.assertIs(self.transport.rts_mode, RtsMode.UP)
		self.transport.serial_mode = "rs485"
		self.assertIs(self.transport.serial_mode, SerialMode.RS485)
		with self.assertRaises(InvalidParameterError):
			self.transport.rts_mode = "sideways"
		with self.assertRaises(InvalidParameterError):
			self.transport.rts_delay_us = -1

	def test_normalize_port_keeps_urls(self) -> None:
		self.assertEqual(SerialTransport.normalize_port("socket://localhost:5020"), "socket://localhost:5020")

	def test_write_then_read_back(self) -> None:
		self.transport.open()
		self.assertTrue(self.transport.is_open)
		self.assertEqual(self.transport.write(b"\x01\x02\x03"), 3)
		received = b""
		deadline = deadline_after(1.0)
		while len(received) < 3:
			received += self.transport.read(3 - len(received), deadline)
		self.assertEqual(received, b"\x01\x02\x03")

	def test_read_times_out(self) -> None:
		self.transport.open()
		started = time.monotonic()
		with self.assertRaises(ModbusTimeoutError):
			self.transport.read(1, deadline_after(0.05))
		self.assertLess(time.monotonic() - started, 1.0)

	def test_flush_drops_pending_input(self) -> None:
		self.transport.open()
		self.transport.write(b"garbage")
		time.sleep(0.01)
		self.assertEqual(self.transport.flush(), 7)
		with self.assertRaises(ModbusTimeoutError):
			self.transport.read(1, deadline_after(0.02))

	def test_rts_toggling_write(self) -> None:
		self.transport.open()
		self.transport.rts_mode = RtsMode.DOWN
		self.transport.rts_delay_us = 0
		self.assertEqual(self.transport.write(b"\xAA"), 1)
		self.assertEqual(self.transport.read(1, deadline_after(1.0)), b"\xAA")

	def test_rts_callback_replaces_rts_line(self) -> None:
		levels = []
		self.transport.rts_callback = levels.append
		self.transport.rts_delay_us = 0
		self.transport.open()
		self.transport.rts_mode = RtsMode.UP
		self.assertEqual(self.transport.write(b"\x55"), 1)
		self.assertEqual(self.transport.read(1, deadline_after(1.0)), b"\x55")
		# Idle level on mode change, active while sending, idle again after.
		self.assertEqual(levels, [False, True, False])

	def test_rts_callback_must_be_callable(self) -> None:
		with self.assertRaises(InvalidParameterError):
			SerialTransport("loop://", 9600, rts_callback="gpio17")
		self.transport.rts_callback = None
		self.assertIsNone(self.transport.rts_callback)

	def test_closed_transport(self) -> None:
		with self.assertRaises(ConnectionClosedError):
			self.transport.read(1, deadline_after(0.01))
		with self.assertRaises(ConnectionClosedError):
			self.transport.write(b"\x00")
		self.assertEqual(self.transport.flush(), 0)


class SerialServerLoopTests(unittest.TestCase):
	"""The loop device hands each frame back, so one context plays both sides."""

	def test_indication_and_reply_over_serial(self) -> None:
		context = ModbusContext.rtu("loop://", 115200, unit_id=17, response_timeout=0.5).connect()
		try:
			mapping = ModbusMapping(nb_registers=4)
			mapping.load("holding_registers", [10, 20, 30, 40])
			server = ModbusServer(context, mapping)

			context.send(Frame.from_pdu(17, bytes.fromhex("0300010002")))
			indication = server.receive()
			self.assertEqual(indication.address, 1)
			server.reply(indication)
			confirmation = context.receive(MessageType.CONFIRMATION)
			self.assertEqual(confirmation.pdu, bytes.fromhex("03 04 0014 001E"))
			self.assertIs(context.backend, Backend.RTU)
		finally:
			context.close()


if __name__ == "__main__":
	unittest.main()
