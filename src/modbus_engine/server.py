"""Slave side of the protocol: receive indications, execute them, reply."""

from __future__ import annotations

import logging
import signal
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .constants import (
    BROADCAST_ADDRESS,
    COIL_OFF,
    COIL_ON,
    DEFAULT_IDENTIFICATION,
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
    MAX_PDU_LENGTH,
    MAX_READ_BITS,
    MAX_READ_REGISTERS,
    MAX_WR_READ_REGISTERS,
    MAX_WR_WRITE_REGISTERS,
    MAX_WRITE_BITS,
    MAX_WRITE_REGISTERS,
    RUN_INDICATOR_OFF,
    RUN_INDICATOR_ON,
    TCP_DEFAULT_PORT,
    Backend,
    MessageType,
)
from .config import build_context, build_mapping, load_config
from .context import ModbusContext
from .data import pack_bits, unpack_bits
from .errors import (
    ConnectionClosedError,
    ExceptionCode,
    FramingError,
    InvalidParameterError,
    ModbusExceptionError,
    ModbusTimeoutError,
    TooManyDataError,
    TransportError,
)
from .framing import Frame
from .mapping import DataBlock, ModbusMapping
from .timeout import DEFAULT_BYTE_TIMEOUT, DEFAULT_RESPONSE_TIMEOUT, TimeoutLike
from .transport import TcpListener, TcpTransport

LOGGER = logging.getLogger(__name__)

# Functions whose request starts with a starting address.
_ADDRESSED_FUNCTIONS = {
    FC_READ_COILS,
    FC_READ_DISCRETE_INPUTS,
    FC_READ_HOLDING_REGISTERS,
    FC_READ_INPUT_REGISTERS,
    FC_WRITE_SINGLE_COIL,
    FC_WRITE_SINGLE_REGISTER,
    FC_WRITE_MULTIPLE_COILS,
    FC_WRITE_MULTIPLE_REGISTERS,
    FC_MASK_WRITE_REGISTER,
    FC_WRITE_AND_READ_REGISTERS,
}


@dataclass(slots=True)
class Indication:
    """A request received by a server, addressed to it or broadcast."""

    frame: Frame

    @property
    def unit_id(self) -> int:
        return self.frame.unit_id

    @property
    def function_code(self) -> int:
        return self.frame.function_code

    @property
    def payload(self) -> bytes:
        return self.frame.payload

    @property
    def transaction_id(self) -> Optional[int]:
        return self.frame.transaction_id

    @property
    def is_broadcast(self) -> bool:
        return self.frame.unit_id == BROADCAST_ADDRESS

    @property
    def address(self) -> Optional[int]:
        """Starting address of the request, when the function carries one."""
        if self.function_code in _ADDRESSED_FUNCTIONS and len(self.payload) >= 2:
            return struct.unpack_from(">H", self.payload)[0]
        return None


def _illegal_value(function: int, address: Optional[int] = None) -> ModbusExceptionError:
    return ModbusExceptionError(ExceptionCode.ILLEGAL_DATA_VALUE, function=function, address=address)


def _illegal_address(function: int, address: int) -> ModbusExceptionError:
    return ModbusExceptionError(ExceptionCode.ILLEGAL_DATA_ADDRESS, function=function, address=address)


def _unpack(fmt: str, payload: bytes, function: int) -> Tuple[int, ...]:
    # A request too short for its function is malformed, not a crash.
    if len(payload) < struct.calcsize(fmt):
        raise _illegal_value(function)
    return struct.unpack_from(fmt, payload)


class ModbusServer:
    """Serve one mapping over one context (an RTU bus or one TCP connection).

    ``receive`` and ``reply`` can be driven by hand, which lets an
    application inspect an indication and answer with ``reply_exception``
    instead; ``serve_forever`` runs the usual loop and calls :meth:`handle`
    for every indication.
    """

    def __init__(
        self,
        context: ModbusContext,
        mapping: ModbusMapping,
        *,
        identification: bytes = DEFAULT_IDENTIFICATION,
        slave_id: Optional[int] = None,
        running: bool = True,
    ) -> None:
        identification = bytes(identification)
        if len(identification) > MAX_PDU_LENGTH - 4:
            raise InvalidParameterError(
                f"Identification of {len(identification)} bytes does not fit a PDU"
            )
        self._context = context
        self._mapping = mapping
        self._identification = identification
        self._slave_id = slave_id
        self.running = running
        self._stopped = threading.Event()
        self._handlers: Dict[int, Callable[[int, bytes], bytes]] = {
            FC_READ_COILS: self._read_bits,
            FC_READ_DISCRETE_INPUTS: self._read_bits,
            FC_READ_HOLDING_REGISTERS: self._read_registers,
            FC_READ_INPUT_REGISTERS: self._read_registers,
            FC_WRITE_SINGLE_COIL: self._write_single_coil,
            FC_WRITE_SINGLE_REGISTER: self._write_single_register,
            FC_WRITE_MULTIPLE_COILS: self._write_multiple_coils,
            FC_WRITE_MULTIPLE_REGISTERS: self._write_multiple_registers,
            FC_REPORT_SLAVE_ID: self._report_slave_id,
            FC_MASK_WRITE_REGISTER: self._mask_write_register,
            FC_WRITE_AND_READ_REGISTERS: self._write_and_read_registers,
        }

    @property
    def context(self) -> ModbusContext:
        return self._context

    @property
    def mapping(self) -> ModbusMapping:
        return self._mapping

    # ------------------------------------------------------------------
    # Receive / reply
    # ------------------------------------------------------------------

    def receive(self) -> Optional[Indication]:
        """Wait for the next indication.

        Returns ``None`` when an RTU frame addressed to another unit was read
        and skipped. Timeouts and framing errors propagate.
        """

        frame = self._context.receive(MessageType.INDICATION)
        if (
            self._context.backend is Backend.RTU
            and frame.unit_id not in (self._context.unit_id, BROADCAST_ADDRESS)
        ):
            LOGGER.debug("Ignoring frame for unit %d", frame.unit_id)
            return None
        return Indication(frame)

    def reply(self, indication: Indication) -> int:
        """Execute *indication* against the mapping and send the response.

        Returns the number of bytes sent, 0 for broadcast requests.
        """

        return self._send_response(indication, self.process(indication))

    def reply_exception(self, indication: Indication, code: ExceptionCode | int) -> int:
        try:
            code = ExceptionCode(code)
        except ValueError as exc:
            raise InvalidParameterError(f"Invalid exception code {code!r}") from exc
        pdu = bytes([(indication.function_code | EXCEPTION_FLAG) & 0xFF, code])
        return self._send_response(indication, pdu)

    def _send_response(self, indication: Indication, pdu: bytes) -> int:
        if indication.is_broadcast:
            return 0
        frame = Frame.from_pdu(indication.unit_id, pdu, indication.transaction_id)
        return self._context.send(frame)

    def process(self, indication: Indication) -> bytes:
        """Build the response PDU for *indication*, applying any write."""

        function = indication.function_code
        handler = self._handlers.get(function)
        try:
            if handler is None:
                raise ModbusExceptionError(ExceptionCode.ILLEGAL_FUNCTION, function=function)
            with self._mapping.lock:
                return handler(function, indication.payload)
        except ModbusExceptionError as exc:
            LOGGER.debug("Answering unit %d with exception: %s", indication.unit_id, exc)
            return bytes([(function | EXCEPTION_FLAG) & 0xFF, exc.code])

    # ------------------------------------------------------------------
    # Function handlers; the mapping lock is held by ``process``
    # ------------------------------------------------------------------

    @staticmethod
    def _check_range(block: DataBlock, function: int, address: int, quantity: int) -> None:
        if not block.contains(address, quantity):
            raise _illegal_address(function, address)

    def _bit_block(self, function: int) -> DataBlock:
        if function == FC_READ_DISCRETE_INPUTS:
            return self._mapping.discrete_inputs
        return self._mapping.coils

    def _register_block(self, function: int) -> DataBlock:
        if function == FC_READ_INPUT_REGISTERS:
            return self._mapping.input_registers
        return self._mapping.holding_registers

    def _read_bits(self, function: int, payload: bytes) -> bytes:
        address, quantity = _unpack(">HH", payload, function)
        if not 1 <= quantity <= MAX_READ_BITS:
            raise _illegal_value(function, address)
        block = self._bit_block(function)
        self._check_range(block, function, address, quantity)
        packed = pack_bits(block.read(address, quantity))
        return bytes([function, len(packed)]) + packed

    def _read_registers(self, function: int, payload: bytes) -> bytes:
        address, quantity = _unpack(">HH", payload, function)
        if not 1 <= quantity <= MAX_READ_REGISTERS:
            raise _illegal_value(function, address)
        block = self._register_block(function)
        self._check_range(block, function, address, quantity)
        values = block.read(address, quantity)
        return struct.pack(f">BB{quantity}H", function, quantity * 2, *values)

    def _write_single_coil(self, function: int, payload: bytes) -> bytes:
        address, value = _unpack(">HH", payload, function)
        self._check_range(self._mapping.coils, function, address, 1)
        if value not in (COIL_ON, COIL_OFF):
            raise _illegal_value(function, address)
        self._mapping.coils.write(address, [value == COIL_ON])
        return struct.pack(">BHH", function, address, value)

    def _write_single_register(self, function: int, payload: bytes) -> bytes:
        address, value = _unpack(">HH", payload, function)
        self._check_range(self._mapping.holding_registers, function, address, 1)
        self._mapping.holding_registers.write(address, [value])
        return struct.pack(">BHH", function, address, value)

    def _write_multiple_coils(self, function: int, payload: bytes) -> bytes:
        address, quantity, byte_count = _unpack(">HHB", payload, function)
        if (
            not 1 <= quantity <= MAX_WRITE_BITS
            or byte_count != (quantity + 7) // 8
            or len(payload) - 5 < byte_count
        ):
            raise _illegal_value(function, address)
        self._check_range(self._mapping.coils, function, address, quantity)
        self._mapping.coils.write(address, unpack_bits(payload[5:5 + byte_count], quantity))
        return struct.pack(">BHH", function, address, quantity)

    def _write_multiple_registers(self, function: int, payload: bytes) -> bytes:
        address, quantity, byte_count = _unpack(">HHB", payload, function)
        if (
            not 1 <= quantity <= MAX_WRITE_REGISTERS
            or byte_count != quantity * 2
            or len(payload) - 5 < byte_count
        ):
            raise _illegal_value(function, address)
        self._check_range(self._mapping.holding_registers, function, address, quantity)
        values = struct.unpack_from(f">{quantity}H", payload, 5)
        self._mapping.holding_registers.write(address, values)
        return struct.pack(">BHH", function, address, quantity)

    def _report_slave_id(self, function: int, payload: bytes) -> bytes:
        slave_id = self._context.unit_id if self._slave_id is None else self._slave_id
        run = RUN_INDICATOR_ON if self.running else RUN_INDICATOR_OFF
        data = bytes([slave_id & 0xFF, run]) + self._identification
        return bytes([function, len(data)]) + data

    def _mask_write_register(self, function: int, payload: bytes) -> bytes:
        address, and_mask, or_mask = _unpack(">HHH", payload, function)
        registers = self._mapping.holding_registers
        self._check_range(registers, function, address, 1)
        current = registers.read(address)[0]
        registers.write(address, [(current & and_mask) | (or_mask & ~and_mask & 0xFFFF)])
        return struct.pack(">BHHH", function, address, and_mask, or_mask)

    def _write_and_read_registers(self, function: int, payload: bytes) -> bytes:
        read_address, read_count, write_address, write_count, byte_count = _unpack(
            ">HHHHB", payload, function
        )
        if (
            not 1 <= write_count <= MAX_WR_WRITE_REGISTERS
            or not 1 <= read_count <= MAX_WR_READ_REGISTERS
            or byte_count != write_count * 2
            or len(payload) - 9 < byte_count
        ):
            raise _illegal_value(function, read_address)
        registers = self._mapping.holding_registers
        self._check_range(registers, function, read_address, read_count)
        self._check_range(registers, function, write_address, write_count)
        registers.write(write_address, struct.unpack_from(f">{write_count}H", payload, 9))
        values = registers.read(read_address, read_count)
        return struct.pack(f">BB{read_count}H", function, read_count * 2, *values)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def handle(self, indication: Indication) -> None:
        """Answer one indication; override to add application checks."""

        self.reply(indication)

    def serve_forever(self) -> None:
        """Receive and answer requests until the transport closes or shutdown."""

        describe = self._context.transport.describe()
        while not self._stopped.is_set():
            try:
                indication = self.receive()
            except ModbusTimeoutError as exc:
                # Idle line, or a partial frame cut short by the byte timeout.
                if exc.received:
                    LOGGER.debug("Discarded partial frame on %s: %s", describe, exc)
                    self._context.flush()
                continue
            except (FramingError, TooManyDataError) as exc:
                LOGGER.warning("Discarded invalid frame on %s: %s", describe, exc)
                self._context.flush()
                continue
            except ConnectionClosedError:
                LOGGER.info("Connection %s closed", describe)
                break
            except TransportError as exc:
                if not self._stopped.is_set():
                    LOGGER.warning("Transport failure on %s: %s", describe, exc)
                break
            if indication is None:
                continue
            try:
                self.handle(indication)
            except TransportError as exc:
                LOGGER.info("Connection %s lost while replying: %s", describe, exc)
                break

    def shutdown(self) -> None:
        """Stop ``serve_forever``; closes the transport to unblock it."""

        self._stopped.set()
        self._context.close()


class ModbusTcpServer:
    """Accept loop running one :class:`ModbusServer` worker per connection.

    Workers own their context and transport; all of them share ``mapping``
    under its lock.
    """

    def __init__(
        self,
        mapping: ModbusMapping,
        host: Optional[str] = "127.0.0.1",
        port: int | str = TCP_DEFAULT_PORT,
        *,
        protocol_independent: bool = False,
        max_connections: int = 5,
        response_timeout: TimeoutLike = DEFAULT_RESPONSE_TIMEOUT,
        byte_timeout: TimeoutLike = DEFAULT_BYTE_TIMEOUT,
        debug: bool = False,
        handler_class: Type[ModbusServer] = ModbusServer,
        **handler_options: Any,
    ) -> None:
        if max_connections < 1:
            raise InvalidParameterError("max_connections must be at least 1")
        self._mapping = mapping
        self._backend = Backend.TCP_PI if protocol_independent else Backend.TCP
        self._listener = TcpListener(
            host, port, backlog=max_connections, protocol_independent=protocol_independent
        )
        self._max_connections = max_connections
        self._context_options = {
            "response_timeout": response_timeout,
            "byte_timeout": byte_timeout,
            "debug": debug,
        }
        self._handler_class = handler_class
        self._handler_options = handler_options
        self._sessions: Dict[threading.Thread, ModbusServer] = {}
        self._sessions_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.poll_interval = 0.5

    @property
    def mapping(self) -> ModbusMapping:
        return self._mapping

    @property
    def address(self) -> Tuple:
        return self._listener.address

    @property
    def connection_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    def listen(self) -> Tuple:
        self._listener.listen()
        return self._listener.address

    def start(self) -> Tuple:
        """Listen and run :meth:`serve_forever` in a background thread."""

        address = self.listen()
        self._thread = threading.Thread(target=self.serve_forever, name="modbus-accept", daemon=True)
        self._thread.start()
        return address

    def serve_forever(self) -> None:
        self.listen()
        while not self._stopped.is_set():
            try:
                transport = self._listener.accept(timeout=self.poll_interval)
            except ModbusTimeoutError:
                continue
            except ConnectionClosedError:
                break
            if self.connection_count >= self._max_connections:
                LOGGER.warning(
                    "Refusing %s: %d connections already open",
                    transport.describe(),
                    self._max_connections,
                )
                transport.close()
                continue
            self._start_session(transport)

    def _start_session(self, transport: TcpTransport) -> None:
        context = ModbusContext(self._backend, transport, **self._context_options)
        server = self._handler_class(context, self._mapping, **self._handler_options)
        worker = threading.Thread(
            target=self._session_worker, args=(server,), name="modbus-session", daemon=True
        )
        with self._sessions_lock:
            self._sessions[worker] = server
        worker.start()

    def _session_worker(self, server: ModbusServer) -> None:
        try:
            server.serve_forever()
        finally:
            server.context.close()
            with self._sessions_lock:
                self._sessions.pop(threading.current_thread(), None)

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stopped.set()
        self._listener.close()
        with self._sessions_lock:
            sessions = list(self._sessions.items())
        for _, server in sessions:
            server.shutdown()
        for worker, _ in sessions:
            worker.join(timeout)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "ModbusTcpServer":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


def run_from_cli(config_path: Path, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
    )
    config = load_config(config_path)
    mapping = build_mapping(config)

    server: ModbusServer | ModbusTcpServer
    if config.backend is Backend.RTU:
        context = build_context(config).connect()
        server = ModbusServer(context, mapping, identification=config.identification)
        LOGGER.info(
            "Serving unit %d on %s", context.unit_id, context.transport.describe()
        )
    else:
        server = ModbusTcpServer(
            mapping,
            config.tcp.host,
            config.tcp.port,
            protocol_independent=config.backend is Backend.TCP_PI,
            max_connections=config.tcp.max_connections,
            response_timeout=config.response_timeout,
            byte_timeout=config.byte_timeout,
            debug=config.debug,
            identification=config.identification,
        )
        LOGGER.info("Modbus %s server listening on %s", config.backend.value, server.listen())

    def _handle_shutdown(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        server.shutdown()

    signal.signal(signal.SIGTERM, _handle_shutdown)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        LOGGER.info("Shutting down server (Ctrl+C)")
    finally:
        server.shutdown()


__all__ = ["Indication", "ModbusServer", "ModbusTcpServer", "run_from_cli"]
