#!/usr/bin/env python3
"""Modbus server with the special behaviours used by the client unit tests.

Reads of holding registers at a few reserved addresses trigger deliberate
misbehaviour so that clients can exercise their error paths:

* ``0x170`` answers with a SLAVE_OR_SERVER_BUSY exception
* ``0x171`` answers with a wrong transaction id (TCP) or unit id (RTU)
* ``0x172`` sleeps 500 ms before replying
* ``0x173`` sends the reply one byte every 5 ms
* a quantity of ``2`` gets a response carrying one register too few
"""

from __future__ import annotations

import argparse
import logging
import struct
import sys
import time
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from modbus_engine import (  # noqa: E402
    Backend,
    ExceptionCode,
    Frame,
    Indication,
    ModbusContext,
    ModbusMapping,
    ModbusServer,
    ModbusTcpServer,
)
from modbus_engine.constants import FC_READ_HOLDING_REGISTERS  # noqa: E402
from modbus_engine.data import set_bits_from_bytes  # noqa: E402

SERVER_ID = 17
INVALID_SERVER_ID = 18

BITS_ADDRESS = 0x130
BITS_NB = 0x25
BITS_TAB = bytes([0xCD, 0x6B, 0xB2, 0x0E, 0x1B])

INPUT_BITS_ADDRESS = 0x1C4
INPUT_BITS_NB = 0x16
INPUT_BITS_TAB = bytes([0xAC, 0xDB, 0x35])

REGISTERS_ADDRESS = 0x160
REGISTERS_NB = 0x3
REGISTERS_NB_MAX = 0x20
REGISTERS_TAB = [0x022B, 0x0001, 0x0064]

REGISTERS_ADDRESS_SPECIAL = 0x170
REGISTERS_ADDRESS_INVALID_TID_OR_SLAVE = 0x171
REGISTERS_ADDRESS_SLEEP_500_MS = 0x172
REGISTERS_ADDRESS_BYTE_SLEEP_5_MS = 0x173
REGISTERS_NB_SPECIAL = 0x2

INPUT_REGISTERS_ADDRESS = 0x108
INPUT_REGISTERS_NB = 0x1
INPUT_REGISTERS_TAB = [0x000A]

LOGGER = logging.getLogger("unit_test_server")


def create_mapping() -> ModbusMapping:
    mapping = ModbusMapping.with_start_address(
        BITS_ADDRESS,
        BITS_NB,
        INPUT_BITS_ADDRESS,
        INPUT_BITS_NB,
        REGISTERS_ADDRESS,
        REGISTERS_NB_MAX,
        INPUT_REGISTERS_ADDRESS,
        INPUT_REGISTERS_NB,
    )
    # Only the read-only tables are initialised; clients write the others.
    inputs = [False] * INPUT_BITS_NB
    set_bits_from_bytes(inputs, 0, INPUT_BITS_NB, INPUT_BITS_TAB)
    mapping.load("discrete_inputs", inputs)
    mapping.load("input_registers", INPUT_REGISTERS_TAB)
    return mapping


class UnitTestServer(ModbusServer):
    """ModbusServer answering the reserved addresses in special ways."""

    byte_delay = 0.005
    reply_delay = 0.5

    def handle(self, indication: Indication) -> None:
        if indication.function_code != FC_READ_HOLDING_REGISTERS or len(indication.payload) < 4:
            self.reply(indication)
            return

        address, quantity = struct.unpack_from(">HH", indication.payload)
        if quantity == REGISTERS_NB_SPECIAL and self.mapping.holding_registers.contains(address, quantity):
            LOGGER.info("Set an incorrect number of values")
            self._send_pdu(indication, self._short_read(address, quantity))
        elif address == REGISTERS_ADDRESS_SPECIAL:
            LOGGER.info("Reply to this special register address by an exception")
            self.reply_exception(indication, ExceptionCode.SLAVE_OR_SERVER_BUSY)
        elif address == REGISTERS_ADDRESS_INVALID_TID_OR_SLAVE:
            LOGGER.info("Reply with an invalid TID or slave")
            self._reply_with_wrong_origin(indication)
        elif address == REGISTERS_ADDRESS_SLEEP_500_MS:
            LOGGER.info("Sleep %.1f s before replying", self.reply_delay)
            time.sleep(self.reply_delay)
            self.reply(indication)
        elif address == REGISTERS_ADDRESS_BYTE_SLEEP_5_MS:
            LOGGER.info("Reply byte by byte every %d ms", int(self.byte_delay * 1000))
            frame = Frame(indication.unit_id, FC_READ_HOLDING_REGISTERS, b"\x02\x00\x00",
                          indication.transaction_id)
            for byte in self.context.framer.encode(frame):
                time.sleep(self.byte_delay)
                self.context.transport.write(bytes([byte]))
        else:
            self.reply(indication)

    def _short_read(self, address: int, quantity: int) -> bytes:
        values = self.mapping.holding_registers.read(address, quantity - 1)
        count = quantity - 1
        return struct.pack(f">BB{count}H", FC_READ_HOLDING_REGISTERS, count * 2, *values)

    def _reply_with_wrong_origin(self, indication: Indication) -> None:
        if self.context.backend is Backend.RTU:
            frame = Frame(INVALID_SERVER_ID, FC_READ_HOLDING_REGISTERS, b"\x02\x00\x00")
        else:
            frame = Frame(
                indication.unit_id,
                FC_READ_HOLDING_REGISTERS,
                b"\x02\x00\x00",
                ((indication.transaction_id or 0) + 1) & 0xFFFF,
            )
        self.context.send(frame)

    def _send_pdu(self, indication: Indication, pdu: bytes) -> None:
        if not indication.is_broadcast:
            self.context.send(Frame.from_pdu(indication.unit_id, pdu, indication.transaction_id))


def main() -> None:
    parser = argparse.ArgumentParser(description="Modbus server for client unit testing")
    parser.add_argument("backend", nargs="?", default="tcp", help="tcp, tcp-pi or rtu")
    parser.add_argument("--host", default=None, help="Bind address (default 127.0.0.1, ::0 for tcp-pi)")
    parser.add_argument("--port", default="1502", help="TCP port or service name")
    parser.add_argument("--device", default="/dev/ttyUSB0", help="Serial device or pyserial URL for RTU")
    parser.add_argument("--baudrate", type=int, default=115200)
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")

    backend = Backend.parse(args.backend)
    mapping = create_mapping()
    if backend is Backend.RTU:
        context = ModbusContext.rtu(args.device, args.baudrate, "N", 8, 1, unit_id=SERVER_ID, debug=args.verbose)
        server = UnitTestServer(context.connect(), mapping)
    else:
        pi = backend is Backend.TCP_PI
        host = args.host or ("::0" if pi else "127.0.0.1")
        server = ModbusTcpServer(
            mapping,
            host,
            args.port,
            protocol_independent=pi,
            debug=args.verbose,
            handler_class=UnitTestServer,
            slave_id=SERVER_ID,
        )
        LOGGER.info("Listening on %s", server.listen())

    try:
        server.serve_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        LOGGER.info("Unit test server stopped")
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
