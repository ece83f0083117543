"""End-to-end RTU tests: client and unit test server joined by a socket pair.

RTU framing does not care what carries the bytes, so a connected socket pair
stands in for the serial line.
"""

from __future__ import annotations

import socket
import sys
import threading
import time
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
TOOLS_DIR = PROJECT_ROOT / "tools"
for path in (SRC_DIR, TOOLS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from modbus_engine import Backend, ModbusClient, ModbusContext
from modbus_engine.errors import (
    ExceptionCode,
    InvalidTIDOrSlaveError,
    ModbusExceptionError,
    ModbusTimeoutError,
)
from modbus_engine.transport import TcpTransport

import unit_test_server as uts


class RtuEndToEndTests(unittest.TestCase):
    def setUp(self) -> None:
        server_sock, client_sock = socket.socketpair()
        server_context = ModbusContext(
            Backend.RTU, TcpTransport.from_socket(server_sock), unit_id=uts.SERVER_ID, byte_timeout=0.05
        )
        self.server = uts.UnitTestServer(server_context, uts.create_mapping())
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        client_context = ModbusContext(
            Backend.RTU, TcpTransport.from_socket(client_sock), unit_id=uts.SERVER_ID, response_timeout=0.3
        )
        self.client = ModbusClient(client_context)

    def tearDown(self) -> None:
        self.client.close()
        self.server.shutdown()
        self.thread.join(2.0)

    def test_read_and_write(self) -> None:
        self.client.write_multiple_registers(uts.REGISTERS_ADDRESS, uts.REGISTERS_TAB)
        self.assertEqual(
            self.client.read_holding_registers(uts.REGISTERS_ADDRESS, uts.REGISTERS_NB), uts.REGISTERS_TAB
        )
        self.assertEqual(self.client.read_input_registers(uts.INPUT_REGISTERS_ADDRESS, 1), [0x000A])
        self.client.write_single_coil(uts.BITS_ADDRESS + 1, True)
        self.assertEqual(self.client.read_coils(uts.BITS_ADDRESS, 2), [False, True])

    def test_report_slave_id_uses_unit(self) -> None:
        self.assertEqual(self.client.report_slave_id(2), bytes([uts.SERVER_ID, 0xFF]))

    def test_frames_for_other_units_are_ignored(self) -> None:
        self.client.context.unit_id = uts.SERVER_ID + 1
        with self.assertRaises(ModbusTimeoutError):
            self.client.read_holding_registers(uts.REGISTERS_ADDRESS, 1)
        self.client.context.unit_id = uts.SERVER_ID
        self.assertEqual(self.client.read_input_registers(uts.INPUT_REGISTERS_ADDRESS, 1), [0x000A])

    def test_broadcast_write_is_applied(self) -> None:
        self.client.context.unit_id = 0
        self.assertIsNone(self.client.write_single_register(uts.REGISTERS_ADDRESS + 1, 0x4242))
        self.client.context.unit_id = uts.SERVER_ID
        self.assertEqual(self.client.read_holding_registers(uts.REGISTERS_ADDRESS + 1, 1), [0x4242])

    def test_reply_from_wrong_slave(self) -> None:
        with self.assertRaises(InvalidTIDOrSlaveError):
            self.client.read_holding_registers(uts.REGISTERS_ADDRESS_INVALID_TID_OR_SLAVE, 1)

    def test_exception_reply(self) -> None:
        with self.assertRaises(ModbusExceptionError) as ctx:
            self.client.read_holding_registers(uts.REGISTERS_ADDRESS_SPECIAL, 1)
        self.assertEqual(ctx.exception.code, ExceptionCode.SLAVE_OR_SERVER_BUSY)

    def test_server_survives_corrupted_frame(self) -> None:
        # Read request whose CRC bytes have been zeroed.
        self.client.context.transport.write(bytes.fromhex("110301600001") + b"\x00\x00")
        time.sleep(0.1)
        self.assertEqual(self.client.read_input_registers(uts.INPUT_REGISTERS_ADDRESS, 1), [0x000A])

    def test_byte_by_byte_reply(self) -> None:
        self.assertEqual(self.client.read_holding_registers(uts.REGISTERS_ADDRESS_BYTE_SLEEP_5_MS, 1), [0])


if __name__ == "__main__":
    unittest.main()
