"""Unit tests for ModbusClient using a scripted in-memory transport."""

from __future__ import annotations

import struct
import sys
import unittest
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from modbus_engine import Backend, ModbusClient, ModbusContext
from modbus_engine.errors import (
    ConnectionClosedError,
    ExceptionCode,
    InvalidCRCError,
    InvalidDataError,
    InvalidExceptionCodeError,
    InvalidParameterError,
    InvalidTIDOrSlaveError,
    ModbusExceptionError,
    ModbusTimeoutError,
    TooManyDataError,
    TransportError,
)
from modbus_engine.framing import Frame, RtuFramer, TcpFramer
from modbus_engine.transport import Transport


def rtu(unit: int, pdu: bytes) -> bytes:
    return RtuFramer().encode(Frame.from_pdu(unit, pdu))


def tcp(tid: int, unit: int, pdu: bytes) -> bytes:
    return TcpFramer().encode(Frame.from_pdu(unit, pdu, tid))


class FakeTransport(Transport):
    """Replays one scripted reply per write, or asks ``responder``."""

    def __init__(self, replies=(), responder: Optional[Callable[[bytes], bytes]] = None) -> None:
        self.replies: Deque[bytes] = deque(replies)
        self.responder = responder
        self.incoming = bytearray()
        self.written: List[bytes] = []
        self.opened = 0
        self.closed = 0
        self.flushed = 0
        self.fail_writes = 0
        self._open = False

    def open(self) -> None:
        self._open = True
        self.opened += 1

    def close(self) -> None:
        self._open = False
        self.closed += 1

    @property
    def is_open(self) -> bool:
        return self._open

    def read(self, size: int, deadline: Optional[float]) -> bytes:
        if not self._open:
            raise ConnectionClosedError("closed")
        if not self.incoming:
            raise ModbusTimeoutError("Timed out waiting for data")
        chunk = bytes(self.incoming[:size])
        del self.incoming[:size]
        return chunk

    def write(self, data: bytes) -> int:
        if not self._open:
            raise ConnectionClosedError("closed")
        if self.fail_writes:
            self.fail_writes -= 1
            raise TransportError("Broken pipe")
        self.written.append(bytes(data))
        if self.responder is not None:
            self.incoming += self.responder(bytes(data))
        elif self.replies:
            self.incoming += self.replies.popleft()
        return len(data)

    def flush(self) -> int:
        self.flushed += 1
        dropped = len(self.incoming)
        self.incoming.clear()
        return dropped


def rtu_client(*replies: bytes, unit_id: int = 1, **options) -> ModbusClient:
    options.setdefault("response_timeout", 0.01)
    context = ModbusContext(Backend.RTU, FakeTransport(replies), unit_id=unit_id, **options)
    return ModbusClient(context).connect()


class ClientReadTests(unittest.TestCase):
    def test_read_holding_registers(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0306022B00010064")))
        self.assertEqual(client.read_holding_registers(0x160, 3), [0x022B, 0x0001, 0x0064])
        self.assertEqual(client.context.transport.written, [rtu(1, bytes.fromhex("0301600003"))])

    def test_read_input_registers(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0402000A")))
        self.assertEqual(client.read_input_registers(0x108, 1), [0x000A])

    def test_read_coils_unpacks_bits(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0105CD6BB20E1B")))
        bits = client.read_coils(0x130, 0x25)
        self.assertEqual(len(bits), 0x25)
        self.assertEqual(bits[:8], [True, False, True, True, False, False, True, True])
        self.assertEqual(bits[32:], [True, True, False, True, True])

    def test_read_discrete_inputs(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0203ACDB35")))
        bits = client.read_discrete_inputs(0x1C4, 0x16)
        self.assertEqual(len(bits), 0x16)
        self.assertEqual(bits[:4], [False, False, True, True])

    def test_maxima_are_checked_before_sending(self) -> None:
        client = rtu_client()
        calls = [
            lambda: client.read_coils(0, 2001),
            lambda: client.read_discrete_inputs(0, 2001),
            lambda: client.read_holding_registers(0, 126),
            lambda: client.read_input_registers(0, 126),
            lambda: client.write_multiple_coils(0, [True] * 1969),
            lambda: client.write_multiple_registers(0, [0] * 124),
            lambda: client.write_and_read_registers(0, [0] * 122, 0, 1),
            lambda: client.write_and_read_registers(0, [0], 0, 126),
        ]
        for index, call in enumerate(calls):
            with self.subTest(call=index):
                with self.assertRaises(TooManyDataError):
                    call()
        self.assertEqual(client.context.transport.written, [])

    def test_invalid_arguments(self) -> None:
        client = rtu_client()
        with self.assertRaises(InvalidParameterError):
            client.read_holding_registers(0x10000, 1)
        with self.assertRaises(InvalidParameterError):
            client.write_single_register(0, 0x10000)
        with self.assertRaises(InvalidParameterError):
            client.report_slave_id(-1)

    def test_exception_response(self) -> None:
        client = rtu_client(rtu(1, b"\x83\x02"))
        with self.assertRaises(ModbusExceptionError) as ctx:
            client.read_holding_registers(0x200, 1)
        self.assertEqual(ctx.exception.code, ExceptionCode.ILLEGAL_DATA_ADDRESS)
        self.assertEqual(ctx.exception.function, 0x03)
        self.assertEqual(ctx.exception.address, 0x200)

    def test_unknown_exception_code(self) -> None:
        client = rtu_client(rtu(1, b"\x83\x09"))
        with self.assertRaises(InvalidExceptionCodeError) as ctx:
            client.read_holding_registers(0, 1)
        self.assertEqual(ctx.exception.raw_code, 0x09)

    def test_function_mismatch(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0402000A")))
        with self.assertRaises(InvalidDataError):
            client.read_holding_registers(0, 1)

    def test_byte_count_mismatch(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("03020000")))
        with self.assertRaises(InvalidDataError):
            client.read_holding_registers(0x160, 2)

    def test_corrupted_crc(self) -> None:
        reply = bytearray(rtu(1, bytes.fromhex("03020001")))
        reply[-1] ^= 0xFF
        client = rtu_client(bytes(reply))
        with self.assertRaises(InvalidCRCError):
            client.read_holding_registers(0, 1)

    def test_reply_from_other_unit(self) -> None:
        client = rtu_client(rtu(18, bytes.fromhex("03020000")), unit_id=17)
        with self.assertRaises(InvalidTIDOrSlaveError):
            client.read_holding_registers(0x171, 1)

    def test_no_reply(self) -> None:
        client = rtu_client()
        with self.assertRaises(ModbusTimeoutError) as ctx:
            client.read_holding_registers(0, 1)
        self.assertEqual(ctx.exception.received, 0)

    def test_truncated_reply(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0306022B00010064"))[:6])
        with self.assertRaises(ModbusTimeoutError) as ctx:
            client.read_holding_registers(0x160, 3)
        self.assertEqual(ctx.exception.received, 6)

    def test_quantity_zero_is_sent(self) -> None:
        client = rtu_client(rtu(1, b"\x83\x03"))
        with self.assertRaises(ModbusExceptionError) as ctx:
            client.read_holding_registers(0x160, 0)
        self.assertEqual(ctx.exception.code, ExceptionCode.ILLEGAL_DATA_VALUE)
        self.assertEqual(len(client.context.transport.written), 1)


class ClientWriteTests(unittest.TestCase):
    def test_write_single_coil(self) -> None:
        request = bytes.fromhex("050130FF00")
        client = rtu_client(rtu(1, request))
        self.assertIsNone(client.write_single_coil(0x130, True))
        self.assertEqual(client.context.transport.written, [rtu(1, request)])

    def test_write_single_coil_off(self) -> None:
        request = bytes.fromhex("0501300000")
        client = rtu_client(rtu(1, request))
        client.write_single_coil(0x130, False)
        self.assertEqual(client.context.transport.written, [rtu(1, request)])

    def test_echo_mismatch(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0601601234")))
        with self.assertRaises(InvalidDataError):
            client.write_single_register(0x160, 0x1235)

    def test_write_multiple_coils(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("0F0130000A")))
        bits = [True, False, True, True, False, False, True, True, True, False]
        self.assertEqual(client.write_multiple_coils(0x130, bits), 10)
        self.assertEqual(client.context.transport.written, [rtu(1, bytes.fromhex("0F0130000A02CD01"))])

    def test_write_multiple_registers(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("1001600003")))
        self.assertEqual(client.write_multiple_registers(0x160, [0x022B, 1, 0x64]), 3)
        self.assertEqual(
            client.context.transport.written,
            [rtu(1, bytes.fromhex("100160000306022B00010064"))],
        )

    def test_write_multiple_registers_wrong_quantity(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("1001600002")))
        with self.assertRaises(InvalidDataError):
            client.write_multiple_registers(0x160, [1, 2, 3])

    def test_mask_write_register(self) -> None:
        request = bytes.fromhex("16000400F20025")
        client = rtu_client(rtu(1, request))
        client.mask_write_register(4, 0x00F2, 0x0025)
        self.assertEqual(client.context.transport.written, [rtu(1, request)])

    def test_write_and_read_registers(self) -> None:
        client = rtu_client(rtu(1, bytes.fromhex("170400010002")))
        values = client.write_and_read_registers(0x160, [1, 2], 0x160, 2)
        self.assertEqual(values, [1, 2])
        expected = struct.pack(">BHHHHBHH", 0x17, 0x160, 2, 0x160, 2, 4, 1, 2)
        self.assertEqual(client.context.transport.written, [rtu(1, expected)])

    def test_broadcast_write_does_not_wait(self) -> None:
        client = rtu_client(unit_id=0)
        self.assertIsNone(client.write_single_register(0x160, 7))
        self.assertEqual(client.write_multiple_registers(0x160, [1, 2]), 2)
        self.assertEqual(len(client.context.transport.written), 2)

    def test_broadcast_read_is_refused(self) -> None:
        client = rtu_client(unit_id=0)
        with self.assertRaises(InvalidParameterError):
            client.read_holding_registers(0, 1)
        with self.assertRaises(InvalidParameterError):
            client.report_slave_id(10)
        self.assertEqual(client.context.transport.written, [])


class ClientDiagnosticTests(unittest.TestCase):
    def test_report_slave_id_truncates(self) -> None:
        data = bytes([17, 0xFF]) + b"MBE0.1.0"
        reply = rtu(1, bytes([0x11, len(data)]) + data)
        self.assertEqual(rtu_client(reply).report_slave_id(3), bytes([17, 0xFF]) + b"M")
        self.assertEqual(rtu_client(reply).report_slave_id(64), data)

    def test_report_slave_id_request(self) -> None:
        client = rtu_client(rtu(1, b"\x11\x02\x01\x00"))
        self.assertEqual(client.report_slave_id(1), b"\x01")
        self.assertEqual(client.context.transport.written, [rtu(1, b"\x11")])

    def test_raw_request_and_confirmation(self) -> None:
        client = rtu_client(rtu(1, b"\xC2\x01"))
        self.assertEqual(client.send_raw_request(b"\x42\x00\x00"), 6)
        self.assertEqual(client.receive_confirmation(), b"\xC2\x01")
        with self.assertRaises(InvalidParameterError):
            client.receive_confirmation()

    def test_raw_broadcast_needs_no_confirmation(self) -> None:
        client = rtu_client()
        client.send_raw_request(b"\x06\x00\x01\x00\x02", unit_id=0)
        with self.assertRaises(InvalidParameterError):
            client.receive_confirmation()

    def test_scan_units(self) -> None:
        framer = RtuFramer()

        def responder(adu: bytes) -> bytes:
            unit = framer.decode(adu).unit_id
            if unit == 2:
                return rtu(2, b"\x03\x02\x00\x00")
            if unit == 3:
                return rtu(3, b"\x83\x02")
            return b""

        context = ModbusContext(
            Backend.RTU, FakeTransport(responder=responder), unit_id=9, response_timeout=0.01
        )
        client = ModbusClient(context).connect()
        self.assertEqual(client.scan_units(1, 4), [2, 3])
        self.assertEqual(context.unit_id, 9)
        self.assertEqual(len(context.transport.written), 4)


class ClientTcpTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transport = FakeTransport()
        self.context = ModbusContext(Backend.TCP, self.transport, response_timeout=0.01)
        self.client = ModbusClient(self.context).connect()

    def test_transaction_ids_follow_requests(self) -> None:
        self.transport.replies.extend([tcp(1, 0xFF, b"\x03\x02\x00\x05"), tcp(2, 0xFF, b"\x03\x02\x00\x06")])
        self.assertEqual(self.client.read_holding_registers(0, 1), [5])
        self.assertEqual(self.client.read_holding_registers(0, 1), [6])
        self.assertEqual(self.transport.written[0], bytes.fromhex("000100000006FF0300000001"))
        self.assertEqual(self.transport.written[1][:2], b"\x00\x02")

    def test_stale_transaction_id(self) -> None:
        self.transport.replies.append(tcp(9, 0xFF, b"\x03\x02\x00\x05"))
        with self.assertRaises(InvalidTIDOrSlaveError):
            self.client.read_holding_registers(0, 1)

    def test_context_manager_closes(self) -> None:
        with ModbusClient(ModbusContext(Backend.TCP, FakeTransport())) as client:
            self.assertTrue(client.context.is_connected)
        self.assertFalse(client.context.is_connected)


class ClientErrorRecoveryTests(unittest.TestCase):
    def test_transport_failure_propagates_without_link_recovery(self) -> None:
        client = rtu_client(rtu(1, b"\x03\x02\x00\x07"))
        client.context.transport.fail_writes = 1
        with self.assertRaises(TransportError):
            client.read_holding_registers(0, 1)
        self.assertEqual(client.context.transport.opened, 1)

    def test_link_recovery_reconnects_and_retries_once(self) -> None:
        client = rtu_client(rtu(1, b"\x03\x02\x00\x07"), error_recovery="link")
        transport = client.context.transport
        transport.fail_writes = 1
        self.assertEqual(client.read_holding_registers(0, 1), [7])
        self.assertEqual(transport.opened, 2)
        self.assertEqual(transport.closed, 1)

    def test_link_recovery_gives_up_after_one_retry(self) -> None:
        client = rtu_client(error_recovery="link")
        client.context.transport.fail_writes = 2
        with self.assertRaises(TransportError):
            client.read_holding_registers(0, 1)
        self.assertEqual(client.context.transport.opened, 2)

    def test_protocol_recovery_flushes_after_bad_frame(self) -> None:
        reply = bytearray(rtu(1, b"\x03\x02\x00\x07"))
        reply[-1] ^= 0xFF
        client = rtu_client(bytes(reply) + b"\x01\x02\x03", error_recovery="protocol")
        transport = client.context.transport
        with self.assertRaises(InvalidCRCError):
            client.read_holding_registers(0, 1)
        self.assertEqual(transport.flushed, 1)
        self.assertEqual(transport.incoming, bytearray())

    def test_protocol_recovery_flushes_after_timeout(self) -> None:
        client = rtu_client(error_recovery="protocol")
        with self.assertRaises(ModbusTimeoutError):
            client.read_holding_registers(0, 1)
        self.assertEqual(client.context.transport.flushed, 1)

    def test_without_protocol_recovery_nothing_is_flushed(self) -> None:
        reply = bytearray(rtu(1, b"\x03\x02\x00\x07"))
        reply[-1] ^= 0xFF
        client = rtu_client(bytes(reply) + b"\x01\x02\x03")
        with self.assertRaises(InvalidCRCError):
            client.read_holding_registers(0, 1)
        self.assertEqual(client.context.transport.flushed, 0)
        self.assertEqual(bytes(client.context.transport.incoming), b"\x01\x02\x03")

    def test_exception_responses_are_not_protocol_errors(self) -> None:
        client = rtu_client(rtu(1, b"\x83\x02"), error_recovery="protocol")
        with self.assertRaises(ModbusExceptionError):
            client.read_holding_registers(0, 1)
        self.assertEqual(client.context.transport.flushed, 0)

    def test_raw_confirmation_recovers_too(self) -> None:
        client = rtu_client(rtu(2, b"\xC2\x01"), error_recovery="protocol")
        client.send_raw_request(b"\x42")
        with self.assertRaises(InvalidTIDOrSlaveError):
            client.receive_confirmation()
        self.assertEqual(client.context.transport.flushed, 1)


if __name__ == "__main__":
    unittest.main()
