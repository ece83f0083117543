"""Per-connection protocol state shared by the client and server engines.

A :class:`ModbusContext` owns one transport and the framer for its backend,
and carries everything that is configured between transactions: the unit id,
the response and byte timeouts, the error-recovery flags and the debug flag.
It knows how to put one frame on the wire and how to collect one complete
frame from it; what the frames mean is left to :mod:`modbus_engine.client`
and :mod:`modbus_engine.server`.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Flag
from typing import Any, Iterable, Optional

from .constants import (
    BROADCAST_ADDRESS,
    MAX_RTU_SLAVE,
    TCP_DEFAULT_PORT,
    TCP_SLAVE,
    Backend,
    MessageType,
)
from .errors import (
    InvalidParameterError,
    ModbusTimeoutError,
)
from .framing import Frame, Framer, framer_for
from .timeout import (
    DEFAULT_BYTE_TIMEOUT,
    DEFAULT_RESPONSE_TIMEOUT,
    Timeout,
    TimeoutLike,
    byte_window,
    coerce_timeout,
)
from .transport import SerialTransport, TcpTransport, Transport, deadline_after


_LOG = logging.getLogger(__name__)


class ErrorRecovery(Flag):
    """Opt-in recovery behaviour applied by the client engine."""

    NONE = 0
    LINK = 1
    PROTOCOL = 2

    @classmethod
    def parse(cls, value: "ErrorRecovery | str | Iterable[str] | None") -> "ErrorRecovery":
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            value = [part for part in value.replace("|", ",").split(",") if part.strip()]
        flags = cls.NONE
        for item in value:
            name = str(item).strip().upper()
            if name == "NONE":
                continue
            try:
                flags |= cls[name]
            except KeyError as exc:
                raise InvalidParameterError(f"Unknown error recovery mode {item!r}") from exc
        return flags


class ModbusContext:
    """Owned transport plus the state of one Modbus connection."""

    def __init__(
        self,
        backend: Backend | str,
        transport: Transport,
        *,
        unit_id: Optional[int] = None,
        response_timeout: TimeoutLike = DEFAULT_RESPONSE_TIMEOUT,
        byte_timeout: TimeoutLike = DEFAULT_BYTE_TIMEOUT,
        error_recovery: ErrorRecovery | str | Iterable[str] | None = ErrorRecovery.NONE,
        debug: bool = False,
    ) -> None:
        self._backend = Backend.parse(backend)
        self._framer: Framer = framer_for(self._backend)
        self._transport = transport
        if unit_id is None:
            unit_id = 1 if self._backend is Backend.RTU else TCP_SLAVE
        self._unit_id = self._validate_unit_id(unit_id)
        self._response_timeout = DEFAULT_RESPONSE_TIMEOUT
        self.response_timeout = response_timeout
        self._byte_timeout = coerce_timeout(byte_timeout)
        self._error_recovery = ErrorRecovery.parse(error_recovery)
        self.debug = bool(debug)
        self._transaction_id = 0
        self._tid_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Constructors per backend
    # ------------------------------------------------------------------

    @classmethod
    def rtu(
        cls,
        device: str,
        baudrate: int = 19200,
        parity: str = "N",
        bytesize: int = 8,
        stopbits: float = 1,
        **options: Any,
    ) -> "ModbusContext":
        transport = SerialTransport(device, baudrate, parity, bytesize, stopbits)
        return cls(Backend.RTU, transport, **options)

    @classmethod
    def tcp(
        cls, host: str = "127.0.0.1", port: int = TCP_DEFAULT_PORT, **options: Any
    ) -> "ModbusContext":
        return cls(Backend.TCP, TcpTransport(host, port), **options)

    @classmethod
    def tcp_pi(
        cls, node: str = "::1", service: str = str(TCP_DEFAULT_PORT), **options: Any
    ) -> "ModbusContext":
        transport = TcpTransport(node, service, protocol_independent=True)
        return cls(Backend.TCP_PI, transport, **options)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> "ModbusContext":
        self._transport.open()
        _LOG.debug("Connected %s backend via %s", self._backend.value, self._transport.describe())
        return self

    def close(self) -> None:
        self._transport.close()

    def reconnect(self) -> None:
        _LOG.info("Reconnecting %s", self._transport.describe())
        self._transport.close()
        self._transport.open()

    @property
    def is_connected(self) -> bool:
        return self._transport.is_open

    def __enter__(self) -> "ModbusContext":
        if not self.is_connected:
            self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def framer(self) -> Framer:
        return self._framer

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def header_length(self) -> int:
        return self._framer.header_length

    @property
    def checksum_length(self) -> int:
        return self._framer.checksum_length

    @property
    def max_adu_length(self) -> int:
        return self._framer.max_adu_length

    @property
    def unit_id(self) -> int:
        return self._unit_id

    @unit_id.setter
    def unit_id(self, value: int) -> None:
        self._unit_id = self._validate_unit_id(value)

    def _validate_unit_id(self, value: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidParameterError(f"Unit id must be an integer (got {value!r})")
        if BROADCAST_ADDRESS <= value <= MAX_RTU_SLAVE:
            return value
        if self._backend is not Backend.RTU and value == TCP_SLAVE:
            return value
        raise InvalidParameterError(
            f"Invalid unit id {value} for the {self._backend.value} backend"
        )

    @property
    def response_timeout(self) -> Timeout:
        return self._response_timeout

    @response_timeout.setter
    def response_timeout(self, value: TimeoutLike) -> None:
        timeout = coerce_timeout(value)
        if timeout.is_zero:
            raise InvalidParameterError("The response timeout cannot be zero")
        self._response_timeout = timeout

    @property
    def byte_timeout(self) -> Timeout:
        return self._byte_timeout

    @byte_timeout.setter
    def byte_timeout(self, value: TimeoutLike) -> None:
        self._byte_timeout = coerce_timeout(value)

    @property
    def error_recovery(self) -> ErrorRecovery:
        return self._error_recovery

    @error_recovery.setter
    def error_recovery(self, value: ErrorRecovery | str | Iterable[str] | None) -> None:
        self._error_recovery = ErrorRecovery.parse(value)

    def next_transaction_id(self) -> int:
        """Generate next MODBUS transaction ID."""
        with self._tid_lock:
            self._transaction_id = (self._transaction_id + 1) & 0xFFFF
            return self._transaction_id

    # ------------------------------------------------------------------
    # Frame exchange
    # ------------------------------------------------------------------

    def build_request(self, pdu: bytes, unit_id: Optional[int] = None) -> Frame:
        unit = self._unit_id if unit_id is None else self._validate_unit_id(unit_id)
        transaction_id = None
        if self._backend is not Backend.RTU:
            transaction_id = self.next_transaction_id()
        return Frame.from_pdu(unit, pdu, transaction_id)

    def send(self, frame: Frame) -> int:
        adu = self._framer.encode(frame)
        if self.debug:
            _LOG.debug("[%s] > %s", self._backend.value, adu.hex(" ").upper())
        return self._transport.write(adu)

    def receive(self, msg_type: MessageType) -> Frame:
        """Collect and decode one complete frame.

        The first byte must arrive within the response timeout; every further
        byte within the byte timeout of the previous one (no limit when the
        byte timeout is zero).
        """

        buffer = bytearray()
        deadline = deadline_after(self._response_timeout.total_seconds)
        while True:
            missing = self._framer.bytes_needed(buffer, msg_type)
            if not missing:
                break
            try:
                chunk = self._transport.read(missing, deadline)
            except ModbusTimeoutError as exc:
                if self.debug and buffer:
                    _LOG.debug("[%s] < %s (incomplete)", self._backend.value, buffer.hex(" ").upper())
                if buffer:
                    raise ModbusTimeoutError(
                        f"Byte timeout after {len(buffer)} bytes of a frame",
                        received=len(buffer),
                        function=buffer[self.header_length] if len(buffer) > self.header_length else None,
                    ) from exc
                raise ModbusTimeoutError("No response within the response timeout") from exc
            buffer += chunk
            deadline = deadline_after(byte_window(self._byte_timeout))

        if self.debug:
            _LOG.debug("[%s] < %s", self._backend.value, buffer.hex(" ").upper())
        return self._framer.decode(bytes(buffer))

    def flush(self) -> int:
        dropped = self._transport.flush()
        if dropped:
            _LOG.debug("Flushed %d unread bytes from %s", dropped, self._transport.describe())
        return dropped

    def sleep_response_timeout(self) -> None:
        time.sleep(self._response_timeout.total_seconds)

    def recover_from_protocol_error(self) -> int:
        """Let a confused peer finish talking, then drop whatever it sent."""

        self.sleep_response_timeout()
        return self.flush()


__all__ = ["ModbusContext", "ErrorRecovery"]
