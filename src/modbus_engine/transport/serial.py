"""Serial line transport for the RTU backend, built on ``pyserial``."""

from __future__ import annotations

import logging
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import serial
import serial.rs485

from .base import Transport, remaining
from ..errors import (
	ConnectionClosedError,
	InvalidParameterError,
	ModbusTimeoutError,
	TransportError,
)


_LOG = logging.getLogger(__name__)

_VALID_PARITY = {"N", "E", "O", "M", "S"}
_ALLOWED_BYTESIZE = {5, 6, 7, 8}
_ALLOWED_STOPBITS = {1, 1.5, 2}


class SerialMode(Enum):
	RS232 = "rs232"
	RS485 = "rs485"


class RtsMode(Enum):
	"""Software RTS toggling around each transmitted frame."""

	NONE = "none"
	UP = "up"  # RTS high while sending
	DOWN = "down"  # RTS low while sending


class SerialTransport(Transport):
	"""RTU bus access through a ``pyserial`` port.

	*device* may be an OS device path (``/dev/ttyUSB0``, ``COM3``) or any
	``pyserial`` URL such as ``socket://host:port`` or ``loop://``.
	"""

	def __init__(
		self,
		device: str,
		baudrate: int = 19200,
		parity: str = "N",
		bytesize: int = 8,
		stopbits: float = 1,
		*,
		xonxoff: bool = False,
		rtscts: bool = False,
		dsrdtr: bool = False,
		rts_callback: Optional[Callable[[bool], None]] = None,
	) -> None:
		if not device:
			raise InvalidParameterError("Serial transport requires a device")

		parity = str(parity).upper()
		if parity not in _VALID_PARITY:
			raise InvalidParameterError(f"Invalid parity {parity!r}; expected one of {sorted(_VALID_PARITY)}")

		try:
			baudrate = int(baudrate)
			bytesize = int(bytesize)
			stopbits = float(stopbits)
		except (TypeError, ValueError) as exc:
			raise InvalidParameterError("baudrate, bytesize and stopbits must be numeric") from exc
		if baudrate <= 0:
			raise InvalidParameterError(f"Invalid baudrate {baudrate}")
		if bytesize not in _ALLOWED_BYTESIZE:
			raise InvalidParameterError("bytesize must be one of 5, 6, 7, 8")
		if stopbits not in _ALLOWED_STOPBITS:
			raise InvalidParameterError("stopbits must be one of 1, 1.5, 2")

		self._device = self.normalize_port(str(device))
		self._serial_kwargs: Dict[str, Any] = {
			"baudrate": baudrate,
			"bytesize": bytesize,
			"parity": parity,
			"stopbits": stopbits if stopbits == 1.5 else int(stopbits),
			"timeout": None,
			"write_timeout": None,
			"xonxoff": bool(xonxoff),
			"rtscts": bool(rtscts),
			"dsrdtr": bool(dsrdtr),
		}
		self._serial: Optional[Any] = None
		self._serial_mode = SerialMode.RS232
		self._rts_mode = RtsMode.NONE
		self._rts_delay_us = self._default_rts_delay(baudrate)
		self._rts_callback: Optional[Callable[[bool], None]] = None
		self.rts_callback = rts_callback

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------

	def open(self) -> None:
		if self._serial is not None and getattr(self._serial, "is_open", True):
			return
		try:
			serial_obj = serial.serial_for_url(self._device, **self._serial_kwargs)
		except (serial.SerialException, ValueError, OSError) as exc:
			raise TransportError(f"Failed to open serial port {self._device!r}: {exc}") from exc
		# Best effort cleanup of residual buffers before first use.
		try:
			serial_obj.reset_input_buffer()
			serial_obj.reset_output_buffer()
		except (serial.SerialException, OSError):
			_LOG.debug("Serial buffer reset failed for port %s", self._device, exc_info=True)
		self._serial = serial_obj
		self._apply_serial_mode()
		if self._rts_mode is not RtsMode.NONE:
			self._set_rts(not self._rts_active_level)

	def close(self) -> None:
		serial_obj = self._serial
		self._serial = None
		if serial_obj is None:
			return
		cancel = getattr(serial_obj, "cancel_read", None)
		if cancel is not None:
			try:
				cancel()
			except (serial.SerialException, OSError):
				pass
		try:
			serial_obj.close()
		except (serial.SerialException, OSError):
			_LOG.debug("Serial close failed for port %s", self._device, exc_info=True)

	@property
	def is_open(self) -> bool:
		return self._serial is not None and bool(getattr(self._serial, "is_open", True))

	@property
	def device(self) -> str:
		return self._device

	@property
	def baudrate(self) -> int:
		return int(self._serial_kwargs["baudrate"])

	def describe(self) -> str:
		return self._device

	# ------------------------------------------------------------------
	# RS-485 / RTS settings
	# ------------------------------------------------------------------

	@property
	def serial_mode(self) -> SerialMode:
		return self._serial_mode

	@serial_mode.setter
	def serial_mode(self, mode: SerialMode | str) -> None:
		try:
			self._serial_mode = SerialMode(mode)
		except ValueError as exc:
			raise InvalidParameterError(f"Unknown serial mode {mode!r}") from exc
		if self._serial is not None:
			self._apply_serial_mode()

	@property
	def rts_mode(self) -> RtsMode:
		return self._rts_mode

	@rts_mode.setter
	def rts_mode(self, mode: RtsMode | str) -> None:
		try:
			self._rts_mode = RtsMode(mode)
		except ValueError as exc:
			raise InvalidParameterError(f"Unknown RTS mode {mode!r}") from exc
		if self._serial is not None and self._rts_mode is not RtsMode.NONE:
			self._set_rts(not self._rts_active_level)

	@property
	def rts_delay_us(self) -> int:
		return self._rts_delay_us

	@rts_delay_us.setter
	def rts_delay_us(self, value: int) -> None:
		if int(value) < 0:
			raise InvalidParameterError("RTS delay must not be negative")
		self._rts_delay_us = int(value)

	@property
	def rts_callback(self) -> Optional[Callable[[bool], None]]:
		return self._rts_callback

	@rts_callback.setter
	def rts_callback(self, callback: Optional[Callable[[bool], None]]) -> None:
		if callback is not None and not callable(callback):
			raise InvalidParameterError("RTS callback must be callable")
		self._rts_callback = callback

	@staticmethod
	def _default_rts_delay(baudrate: int) -> int:
		# One character time at the configured speed.
		return int(1_000_000 / baudrate) if baudrate else 0

	@property
	def _rts_active_level(self) -> bool:
		return self._rts_mode is RtsMode.UP

	def _apply_serial_mode(self) -> None:
		serial_obj = self._serial
		if serial_obj is None:
			return
		try:
			if self._serial_mode is SerialMode.RS485:
				serial_obj.rs485_mode = serial.rs485.RS485Settings()
			else:
				serial_obj.rs485_mode = None
		except (serial.SerialException, ValueError, OSError, NotImplementedError) as exc:
			raise TransportError(f"Unable to set serial mode {self._serial_mode.value}: {exc}") from exc

	def _set_rts(self, level: bool) -> None:
		if self._rts_callback is not None:
			self._rts_callback(level)
			return
		try:
			self._serial.rts = level  # type: ignore[union-attr]
		except (serial.SerialException, OSError) as exc:
			raise TransportError(f"Unable to drive RTS: {exc}") from exc

	# ------------------------------------------------------------------
	# Byte stream
	# ------------------------------------------------------------------

	def _require_serial(self) -> Any:
		if self._serial is None:
			raise ConnectionClosedError("Serial port is not open")
		return self._serial

	def read(self, size: int, deadline: Optional[float]) -> bytes:
		serial_obj = self._require_serial()
		wait = remaining(deadline)
		if wait is not None and wait <= 0:
			raise ModbusTimeoutError("Timed out waiting for data")
		try:
			serial_obj.timeout = wait
			data = serial_obj.read(1)
			if data and size > 1:
				pending = serial_obj.in_waiting
				if pending:
					data += serial_obj.read(min(pending, size - 1))
		except (serial.SerialException, OSError) as exc:
			if self._serial is None:
				raise ConnectionClosedError("Serial port closed while reading") from exc
			raise TransportError(f"Serial read failed: {exc}") from exc
		if not data:
			if self._serial is None:
				raise ConnectionClosedError("Serial port closed while reading")
			raise ModbusTimeoutError("Timed out waiting for data")
		return bytes(data)

	def write(self, data: bytes) -> int:
		serial_obj = self._require_serial()
		delay = self._rts_delay_us / 1_000_000
		try:
			if self._rts_mode is not RtsMode.NONE:
				self._set_rts(self._rts_active_level)
				time.sleep(delay)
			written = serial_obj.write(data)
			if self._rts_mode is not RtsMode.NONE:
				serial_obj.flush()
				time.sleep(delay)
				self._set_rts(not self._rts_active_level)
		except (serial.SerialException, OSError) as exc:
			raise TransportError(f"Serial write failed: {exc}") from exc
		if written is not None and written != len(data):
			raise TransportError("Incomplete serial write")
		return len(data)

	def flush(self) -> int:
		serial_obj = self._serial
		if serial_obj is None:
			return 0
		try:
			dropped = serial_obj.in_waiting
			serial_obj.reset_input_buffer()
		except (serial.SerialException, OSError) as exc:
			raise TransportError(f"Serial flush failed: {exc}") from exc
		return int(dropped)

	# ------------------------------------------------------------------
	# Utility functions
	# ------------------------------------------------------------------

	@staticmethod
	def normalize_port(port: str) -> str:
		"""Normalize platform-specific serial port names."""

		if "://" in port:
			# URL-style transports (socket://, loop://, etc.) must remain intact
			return port
		if os.name == "nt":
			if port.startswith("\\\\.\\"):
				return port
			return f"\\\\.\\{port}"
		return port


__all__ = ["SerialTransport", "SerialMode", "RtsMode"]
