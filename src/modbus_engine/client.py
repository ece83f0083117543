"""Master side of the protocol: one method per supported function code.

Every call is a complete request/response transaction on the context's unit
id. Local validation (protocol maxima) happens before anything is written;
confirmations are checked against the request before values are returned.
"""

from __future__ import annotations

import logging
import struct
from typing import Callable, List, Optional, Sequence, TypeVar

from .constants import (
    BROADCAST_ADDRESS,
    COIL_OFF,
    COIL_ON,
    EXCEPTION_FLAG,
    FC_MASK_WRITE_REGISTER,
    FC_READ_COILS,
    FC_READ_DISCRETE_INPUTS,
    FC_READ_HOLDING_REGISTERS,
    FC_READ_INPUT_REGISTERS,
    FC_REPORT_SLAVE_ID,
    FC_WRITE_AND_READ_REGISTERS,
    FC_WRITE_MULTIPLE_COILS,
    FC_WRITE_MULTIPLE_REGISTERS,
    FC_WRITE_SINGLE_COIL,
    FC_WRITE_SINGLE_REGISTER,
    MAX_READ_BITS,
    MAX_READ_REGISTERS,
    MAX_RTU_SLAVE,
    MAX_WR_READ_REGISTERS,
    MAX_WR_WRITE_REGISTERS,
    MAX_WRITE_BITS,
    MAX_WRITE_REGISTERS,
    MessageType,
)
from .context import ErrorRecovery, ModbusContext
from .data import pack_bits, unpack_bits
from .errors import (
    ExceptionCode,
    FramingError,
    InvalidDataError,
    InvalidExceptionCodeError,
    InvalidParameterError,
    ModbusExceptionError,
    ModbusTimeoutError,
    TooManyDataError,
    TransportError,
)
from .framing import Frame

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Failures after which protocol recovery sleeps and flushes.
_PROTOCOL_FAILURES = (FramingError, ModbusTimeoutError, TooManyDataError)


def _check_u16(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise InvalidParameterError(f"{name} must be within 0..65535 (got {value!r})")
    return value


def _check_quantity(quantity: int, maximum: int, function: int, address: int) -> None:
    _check_u16(quantity, "quantity")
    if quantity > maximum:
        raise TooManyDataError(
            f"Too many data: {quantity} requested, at most {maximum} allowed",
            function=function,
            address=address,
        )


class ModbusClient:
    """Typed requests issued through a :class:`ModbusContext`."""

    def __init__(self, context: ModbusContext) -> None:
        self._context = context
        self._pending_raw: Optional[Frame] = None

    @property
    def context(self) -> ModbusContext:
        return self._context

    def connect(self) -> "ModbusClient":
        self._context.connect()
        return self

    def close(self) -> None:
        self._context.close()

    def __enter__(self) -> "ModbusClient":
        self._context.__enter__()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._context.__exit__(*exc_info)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_coils(self, address: int, quantity: int) -> List[bool]:
        """Read *quantity* coils (0x01) starting at *address*."""
        return self._read_bits(FC_READ_COILS, address, quantity)

    def read_discrete_inputs(self, address: int, quantity: int) -> List[bool]:
        """Read *quantity* discrete inputs (0x02); limits are those of coils."""
        return self._read_bits(FC_READ_DISCRETE_INPUTS, address, quantity)

    def read_holding_registers(self, address: int, quantity: int) -> List[int]:
        return self._read_registers(FC_READ_HOLDING_REGISTERS, address, quantity)

    def read_input_registers(self, address: int, quantity: int) -> List[int]:
        return self._read_registers(FC_READ_INPUT_REGISTERS, address, quantity)

    def _read_bits(self, function: int, address: int, quantity: int) -> List[bool]:
        _check_u16(address, "address")
        _check_quantity(quantity, MAX_READ_BITS, function, address)
        self._refuse_broadcast(function)

        def decode(response: Frame) -> List[bool]:
            data = self._byte_counted(response, address)
            if len(data) != (quantity + 7) // 8:
                raise InvalidDataError(
                    f"Received {len(data)} bytes for {quantity} bits",
                    function=function,
                    address=address,
                )
            return unpack_bits(data, quantity)

        pdu = struct.pack(">BHH", function, address, quantity)
        return self._transact(pdu, decode, address=address)

    def _read_registers(self, function: int, address: int, quantity: int) -> List[int]:
        _check_u16(address, "address")
        _check_quantity(quantity, MAX_READ_REGISTERS, function, address)
        self._refuse_broadcast(function)

        def decode(response: Frame) -> List[int]:
            return self._decode_registers(response, quantity, address)

        pdu = struct.pack(">BHH", function, address, quantity)
        return self._transact(pdu, decode, address=address)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_single_coil(self, address: int, value: bool) -> None:
        _check_u16(address, "address")
        pdu = struct.pack(">BHH", FC_WRITE_SINGLE_COIL, address, COIL_ON if value else COIL_OFF)
        self._transact(pdu, self._expect_echo(pdu, address), address=address)

    def write_single_register(self, address: int, value: int) -> None:
        _check_u16(address, "address")
        _check_u16(value, "value")
        pdu = struct.pack(">BHH", FC_WRITE_SINGLE_REGISTER, address, value)
        self._transact(pdu, self._expect_echo(pdu, address), address=address)

    def write_multiple_coils(self, address: int, values: Sequence[bool]) -> int:
        """Write ``len(values)`` coils (0x0F); returns the confirmed quantity."""
        _check_u16(address, "address")
        quantity = len(values)
        _check_quantity(quantity, MAX_WRITE_BITS, FC_WRITE_MULTIPLE_COILS, address)
        packed = pack_bits(values)
        pdu = struct.pack(">BHHB", FC_WRITE_MULTIPLE_COILS, address, quantity, len(packed)) + packed
        return self._transact(
            pdu,
            self._expect_quantity(FC_WRITE_MULTIPLE_COILS, address, quantity),
            address=address,
            broadcast_result=quantity,
        )

    def write_multiple_registers(self, address: int, values: Sequence[int]) -> int:
        """Write ``len(values)`` holding registers (0x10); returns the confirmed quantity."""
        _check_u16(address, "address")
        quantity = len(values)
        _check_quantity(quantity, MAX_WRITE_REGISTERS, FC_WRITE_MULTIPLE_REGISTERS, address)
        for value in values:
            _check_u16(value, "register value")
        pdu = struct.pack(
            f">BHHB{quantity}H", FC_WRITE_MULTIPLE_REGISTERS, address, quantity, quantity * 2, *values
        )
        return self._transact(
            pdu,
            self._expect_quantity(FC_WRITE_MULTIPLE_REGISTERS, address, quantity),
            address=address,
            broadcast_result=quantity,
        )

    def mask_write_register(self, address: int, and_mask: int, or_mask: int) -> None:
        """Apply ``(current & and_mask) | (or_mask & ~and_mask)`` on the slave (0x16)."""
        _check_u16(address, "address")
        _check_u16(and_mask, "and_mask")
        _check_u16(or_mask, "or_mask")
        pdu = struct.pack(">BHHH", FC_MASK_WRITE_REGISTER, address, and_mask, or_mask)
        self._transact(pdu, self._expect_echo(pdu, address), address=address)

    def write_and_read_registers(
        self,
        write_address: int,
        values: Sequence[int],
        read_address: int,
        read_count: int,
    ) -> List[int]:
        """Write then read holding registers in a single 0x17 transaction.

        The slave applies the write before evaluating the read, so an
        overlapping read returns the values just written.
        """
        _check_u16(write_address, "write_address")
        _check_u16(read_address, "read_address")
        write_count = len(values)
        _check_quantity(write_count, MAX_WR_WRITE_REGISTERS, FC_WRITE_AND_READ_REGISTERS, write_address)
        _check_quantity(read_count, MAX_WR_READ_REGISTERS, FC_WRITE_AND_READ_REGISTERS, read_address)
        for value in values:
            _check_u16(value, "register value")
        self._refuse_broadcast(FC_WRITE_AND_READ_REGISTERS)

        def decode(response: Frame) -> List[int]:
            return self._decode_registers(response, read_count, read_address)

        pdu = struct.pack(
            f">BHHHHB{write_count}H",
            FC_WRITE_AND_READ_REGISTERS,
            read_address,
            read_count,
            write_address,
            write_count,
            write_count * 2,
            *values,
        )
        return self._transact(pdu, decode, address=read_address)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def report_slave_id(self, max_length: int) -> bytes:
        """Return at most *max_length* bytes of the slave id response.

        The data starts with the slave id and the run indicator (0xFF when
        running) followed by device specific identification bytes.
        """
        if max_length < 0:
            raise InvalidParameterError("max_length must not be negative")
        self._refuse_broadcast(FC_REPORT_SLAVE_ID)

        def decode(response: Frame) -> bytes:
            return self._byte_counted(response, None)[:max_length]

        return self._transact(bytes([FC_REPORT_SLAVE_ID]), decode)

    def scan_units(self, first: int = 1, last: int = MAX_RTU_SLAVE, address: int = 0) -> List[int]:
        """Return the unit ids in ``[first, last]`` that answer a one-register read.

        Exception responses count as answers; timeouts and garbled frames do
        not. The context's unit id is restored afterwards.
        """
        if first < 1 or last < first:
            raise InvalidParameterError(f"Invalid scan range {first}..{last}")
        found: List[int] = []
        previous = self._context.unit_id
        try:
            for unit in range(first, last + 1):
                self._context.unit_id = unit
                try:
                    self.read_holding_registers(address, 1)
                except ModbusExceptionError as exc:
                    LOGGER.debug("Unit %d answered with %s", unit, exc.code.name)
                except (ModbusTimeoutError, FramingError):
                    LOGGER.debug("No valid answer from unit %d", unit)
                    continue
                LOGGER.info("Found unit %d", unit)
                found.append(unit)
        finally:
            self._context.unit_id = previous
        return found

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def send_raw_request(self, pdu: bytes, unit_id: Optional[int] = None) -> int:
        """Frame *pdu* for the backend and send it; returns the ADU length.

        No reply is awaited here; call :meth:`receive_confirmation` unless
        the request went to the broadcast address.
        """
        frame = self._context.build_request(bytes(pdu), unit_id)
        sent = self._context.send(frame)
        self._pending_raw = None if frame.is_broadcast else frame
        return sent

    def receive_confirmation(self) -> bytes:
        """Receive the reply to the last raw request and return its PDU.

        Exception responses are returned as they are, e.g. ``b"\\xc2\\x01"``.
        """
        request = self._pending_raw
        if request is None:
            raise InvalidParameterError("No raw request is awaiting a confirmation")
        self._pending_raw = None
        with_recovery = ErrorRecovery.PROTOCOL in self._context.error_recovery
        try:
            response = self._context.receive(MessageType.CONFIRMATION)
            self._context.framer.check_confirmation(request, response)
        except _PROTOCOL_FAILURES:
            if with_recovery:
                self._context.recover_from_protocol_error()
            raise
        return response.pdu

    # ------------------------------------------------------------------
    # Transaction machinery
    # ------------------------------------------------------------------

    def _transact(
        self,
        pdu: bytes,
        decode: Callable[[Frame], T],
        *,
        address: Optional[int] = None,
        broadcast_result: Optional[T] = None,
    ) -> T:
        retries = 1 if ErrorRecovery.LINK in self._context.error_recovery else 0
        while True:
            try:
                return self._exchange(pdu, decode, address, broadcast_result)
            except TransportError as exc:
                if not retries:
                    raise
                retries -= 1
                LOGGER.warning(
                    "Transport failure on %s (%s); reconnecting and retrying",
                    self._context.transport.describe(),
                    exc,
                )
                self._context.reconnect()

    def _exchange(
        self,
        pdu: bytes,
        decode: Callable[[Frame], T],
        address: Optional[int],
        broadcast_result: Optional[T],
    ) -> T:
        request = self._context.build_request(pdu)
        self._context.send(request)
        if request.is_broadcast:
            return broadcast_result  # type: ignore[return-value]
        try:
            response = self._context.receive(MessageType.CONFIRMATION)
            self._context.framer.check_confirmation(request, response)
            self._raise_for_exception(request, response, address)
            return decode(response)
        except _PROTOCOL_FAILURES:
            if ErrorRecovery.PROTOCOL in self._context.error_recovery:
                LOGGER.debug("Protocol error; sleeping for the response timeout and flushing")
                self._context.recover_from_protocol_error()
            raise

    @staticmethod
    def _raise_for_exception(request: Frame, response: Frame, address: Optional[int]) -> None:
        function = request.function_code
        if response.function_code == function | EXCEPTION_FLAG:
            raw_code = response.payload[0] if response.payload else 0
            try:
                code = ExceptionCode(raw_code)
            except ValueError as exc:
                raise InvalidExceptionCodeError(raw_code, function=function) from exc
            raise ModbusExceptionError(code, function=function, address=address)
        if response.function_code != function:
            raise InvalidDataError(
                f"Response function 0x{response.function_code:02X} does not match the request",
                function=function,
                address=address,
            )

    def _refuse_broadcast(self, function: int) -> None:
        if self._context.unit_id == BROADCAST_ADDRESS:
            raise InvalidParameterError(
                "Broadcast requests get no reply; use a unit id for reads", function=function
            )

    @staticmethod
    def _byte_counted(response: Frame, address: Optional[int]) -> bytes:
        payload = response.payload
        if not payload or payload[0] != len(payload) - 1:
            raise InvalidDataError(
                "Byte count does not match the response length",
                function=response.function_code,
                address=address,
            )
        return payload[1:]

    def _decode_registers(self, response: Frame, quantity: int, address: int) -> List[int]:
        data = self._byte_counted(response, address)
        if len(data) != quantity * 2:
            raise InvalidDataError(
                f"Received {len(data)} bytes for {quantity} registers",
                function=response.function_code,
                address=address,
            )
        return list(struct.unpack(f">{quantity}H", data))

    @staticmethod
    def _expect_echo(pdu: bytes, address: int) -> Callable[[Frame], None]:
        def check(response: Frame) -> None:
            if response.pdu != pdu:
                raise InvalidDataError(
                    "Confirmation does not echo the request",
                    function=pdu[0],
                    address=address,
                )

        return check

    @staticmethod
    def _expect_quantity(function: int, address: int, quantity: int) -> Callable[[Frame], int]:
        def check(response: Frame) -> int:
            if len(response.payload) != 4:
                raise InvalidDataError("Malformed write confirmation", function=function, address=address)
            confirmed_address, confirmed_quantity = struct.unpack(">HH", response.payload)
            if confirmed_address != address or confirmed_quantity != quantity:
                raise InvalidDataError(
                    f"Confirmed {confirmed_quantity} at 0x{confirmed_address:04X}, "
                    f"requested {quantity} at 0x{address:04X}",
                    function=function,
                    address=address,
                )
            return confirmed_quantity

        return check


__all__ = ["ModbusClient"]
