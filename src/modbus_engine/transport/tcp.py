"""Socket transports for the TCP and TCP-PI backends.

The TCP backend is IPv4 only and takes a dotted address; the TCP-PI
("protocol independent") backend resolves a node/service pair with
``getaddrinfo`` and therefore accepts IPv6 addresses and host names. Both
expose the same read/write contract, so the framing layer does not care which
one it talks to.
"""

from __future__ import annotations

import logging
import socket
from typing import List, Optional, Tuple

from .base import Transport, remaining
from ..constants import TCP_DEFAULT_PORT
from ..errors import (
    ConnectionClosedError,
    InvalidParameterError,
    ModbusTimeoutError,
    TransportError,
)


_LOG = logging.getLogger(__name__)


class TcpTransport(Transport):
    """Stream socket carrying MBAP frames."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int | str = TCP_DEFAULT_PORT,
        *,
        protocol_independent: bool = False,
        connect_timeout: float = 5.0,
        sock: Optional[socket.socket] = None,
    ) -> None:
        self._host = str(host)
        self._port = port
        self._protocol_independent = protocol_independent
        self._connect_timeout = connect_timeout
        self._socket: Optional[socket.socket] = sock
        self._peer: Optional[Tuple] = None
        self._accepted = sock is not None
        if sock is not None:
            self._configure(sock)
            try:
                self._peer = sock.getpeername()
            except OSError:
                self._peer = None

    @classmethod
    def from_socket(cls, sock: socket.socket) -> "TcpTransport":
        """Wrap an already connected socket (accepted connection, socketpair)."""

        return cls(sock=sock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        if self._socket is not None:
            return
        if self._accepted:
            raise ConnectionClosedError("An accepted connection cannot be reopened")
        try:
            if self._protocol_independent:
                sock = self._connect_any(self._host, str(self._port))
            else:
                if not (1 <= int(self._port) <= 65535):
                    raise InvalidParameterError(f"Invalid port: {self._port}")
                sock = socket.create_connection(
                    (self._host, int(self._port)), self._connect_timeout
                )
        except OSError as exc:
            raise TransportError(
                f"Failed to connect to {self._host}:{self._port}: {exc}"
            ) from exc
        self._configure(sock)
        self._socket = sock
        self._peer = sock.getpeername()
        _LOG.debug("Connected to %s", self._peer)

    def _connect_any(self, node: str, service: str) -> socket.socket:
        last_error: Optional[OSError] = None
        for family, socktype, proto, _, address in socket.getaddrinfo(
            node, service, socket.AF_UNSPEC, socket.SOCK_STREAM
        ):
            sock = socket.socket(family, socktype, proto)
            try:
                sock.settimeout(self._connect_timeout)
                sock.connect(address)
                return sock
            except OSError as exc:
                last_error = exc
                sock.close()
        raise last_error or OSError(f"No address found for {node}:{service}")

    @staticmethod
    def _configure(sock: socket.socket) -> None:
        # Modbus frames are tiny; do not let Nagle delay them.
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

    def close(self) -> None:
        sock = self._socket
        self._socket = None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    def describe(self) -> str:
        if self._peer:
            return f"tcp://{self._peer[0]}:{self._peer[1]}"
        return f"tcp://{self._host}:{self._port}"

    # ------------------------------------------------------------------
    # Byte stream
    # ------------------------------------------------------------------

    def _require_socket(self) -> socket.socket:
        if self._socket is None:
            raise ConnectionClosedError("Socket not connected")
        return self._socket

    def read(self, size: int, deadline: Optional[float]) -> bytes:
        sock = self._require_socket()
        wait = remaining(deadline)
        if wait is not None and wait <= 0:
            raise ModbusTimeoutError("Timed out waiting for data")
        try:
            sock.settimeout(wait)
            data = sock.recv(size)
        except socket.timeout as exc:
            raise ModbusTimeoutError("Timed out waiting for data") from exc
        except OSError as exc:
            if self._socket is None:
                raise ConnectionClosedError("Socket closed while reading") from exc
            raise TransportError(f"Socket read failed: {exc}") from exc
        if not data:
            raise ConnectionClosedError("Connection closed by peer")
        return data

    def write(self, data: bytes) -> int:
        sock = self._require_socket()
        try:
            sock.settimeout(None)
            sock.sendall(data)
        except OSError as exc:
            raise TransportError(f"Socket write failed: {exc}") from exc
        return len(data)

    def flush(self) -> int:
        sock = self._socket
        if sock is None:
            return 0
        dropped = 0
        try:
            sock.setblocking(False)
            while True:
                chunk = sock.recv(4096)
                if not chunk:
                    break
                dropped += len(chunk)
        except (BlockingIOError, InterruptedError):
            pass
        except OSError as exc:
            raise TransportError(f"Socket flush failed: {exc}") from exc
        finally:
            if self._socket is not None:
                sock.setblocking(True)
        return dropped


class TcpListener:
    """Listening socket handing out :class:`TcpTransport` connections."""

    def __init__(
        self,
        host: Optional[str] = "127.0.0.1",
        port: int | str = TCP_DEFAULT_PORT,
        *,
        backlog: int = 1,
        protocol_independent: bool = False,
    ) -> None:
        self._host = host
        self._port = port
        self._backlog = backlog
        self._protocol_independent = protocol_independent
        self._socket: Optional[socket.socket] = None

    def listen(self) -> "TcpListener":
        if self._socket is not None:
            return self
        try:
            if self._protocol_independent:
                sock = self._bind_any()
            else:
                sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self._host or "0.0.0.0", int(self._port)))
            sock.listen(self._backlog)
        except OSError as exc:
            raise TransportError(f"Unable to listen on {self._host}:{self._port}: {exc}") from exc
        self._socket = sock
        _LOG.info("Listening on %s", self.address)
        return self

    def _bind_any(self) -> socket.socket:
        candidates: List[Tuple] = socket.getaddrinfo(
            self._host, str(self._port), socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )
        last_error: Optional[OSError] = None
        for family, socktype, proto, _, address in candidates:
            sock = socket.socket(family, socktype, proto)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                if family == socket.AF_INET6:
                    # Accept IPv4-mapped peers on the same socket where allowed.
                    try:
                        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                    except OSError:
                        pass
                sock.bind(address)
                return sock
            except OSError as exc:
                last_error = exc
                sock.close()
        raise last_error or OSError(f"No address to bind for {self._host}:{self._port}")

    @property
    def address(self) -> Tuple:
        if self._socket is None:
            raise ConnectionClosedError("Listener is not bound")
        return self._socket.getsockname()

    @property
    def protocol_independent(self) -> bool:
        return self._protocol_independent

    def accept(self, timeout: Optional[float] = None) -> TcpTransport:
        """Wait for a client; ``timeout`` bounds the wait in seconds."""

        sock = self._socket
        if sock is None:
            raise ConnectionClosedError("Listener is not bound")
        try:
            sock.settimeout(timeout)
            connection, peer = sock.accept()
        except socket.timeout as exc:
            raise ModbusTimeoutError("No connection accepted in time") from exc
        except OSError as exc:
            raise ConnectionClosedError(f"Listener closed: {exc}") from exc
        connection.settimeout(None)
        _LOG.info("Accepted connection from %s", peer)
        return TcpTransport.from_socket(connection)

    def close(self) -> None:
        sock = self._socket
        self._socket = None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def __enter__(self) -> "TcpListener":
        return self.listen()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["TcpTransport", "TcpListener"]
