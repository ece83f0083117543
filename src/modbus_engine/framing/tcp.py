"""MODBUS-TCP framing: 7-byte MBAP header followed by the PDU.

The TCP-PI backend uses exactly the same framing; only the transport differs.
"""

from __future__ import annotations

import struct

from .base import Frame, Framer
from ..constants import (
    MAX_PDU_LENGTH,
    TCP_CHECKSUM_LENGTH,
    TCP_HEADER_LENGTH,
    TCP_MAX_ADU_LENGTH,
    Backend,
    MessageType,
)
from ..errors import InvalidDataError, InvalidParameterError, InvalidTIDOrSlaveError

MBAP = struct.Struct(">HHHB")
PROTOCOL_ID = 0


def build_mbap_header(transaction_id: int, unit_id: int, pdu_length: int) -> bytes:
    """Build MODBUS Application Protocol (MBAP) header.

    Args:
        transaction_id: Transaction identifier
        unit_id: Unit identifier carried after the length field
        pdu_length: Length of PDU (Protocol Data Unit)

    Returns:
        7-byte MBAP header
    """
    # MBAP length = unit_id (1 byte) + PDU
    return MBAP.pack(transaction_id & 0xFFFF, PROTOCOL_ID, 1 + pdu_length, unit_id & 0xFF)


class TcpFramer(Framer):
    backend = Backend.TCP
    header_length = TCP_HEADER_LENGTH
    checksum_length = TCP_CHECKSUM_LENGTH
    max_adu_length = TCP_MAX_ADU_LENGTH

    def __init__(self, backend: Backend = Backend.TCP) -> None:
        if backend is Backend.RTU:
            raise InvalidParameterError("TcpFramer cannot frame the RTU backend")
        self.backend = backend

    def encode(self, frame: Frame) -> bytes:
        if frame.transaction_id is None:
            raise InvalidParameterError("TCP frames need a transaction id")
        pdu = frame.pdu
        self._check_size(TCP_HEADER_LENGTH + len(pdu), frame.function_code)
        return build_mbap_header(frame.transaction_id, frame.unit_id, len(pdu)) + pdu

    def decode(self, adu: bytes) -> Frame:
        if len(adu) < TCP_HEADER_LENGTH + 1:
            raise InvalidDataError(f"TCP frame of {len(adu)} bytes is too short")
        self._check_size(len(adu), adu[TCP_HEADER_LENGTH])
        transaction_id, protocol_id, length, unit_id = MBAP.unpack_from(adu)
        if protocol_id != PROTOCOL_ID:
            raise InvalidDataError(f"Invalid protocol ID: {protocol_id}")
        if length != len(adu) - 6:
            raise InvalidDataError(
                f"MBAP length {length} does not match the {len(adu) - 6} bytes received"
            )
        return Frame(
            unit_id,
            adu[TCP_HEADER_LENGTH],
            bytes(adu[TCP_HEADER_LENGTH + 1:]),
            transaction_id,
        )

    def bytes_needed(self, buffer: bytes, msg_type: MessageType) -> int:
        if len(buffer) < TCP_HEADER_LENGTH:
            return TCP_HEADER_LENGTH - len(buffer)
        _, protocol_id, length, _ = MBAP.unpack_from(buffer)
        if protocol_id != PROTOCOL_ID:
            raise InvalidDataError(f"Invalid protocol ID: {protocol_id}")
        if length < 2:
            raise InvalidDataError(f"MBAP length {length} leaves no room for a function code")
        if length > 1 + MAX_PDU_LENGTH:
            self._check_size(6 + length)
        return max(0, 6 + length - len(buffer))

    def check_confirmation(self, request: Frame, response: Frame) -> None:
        if response.transaction_id != request.transaction_id:
            raise InvalidTIDOrSlaveError(
                f"Transaction ID mismatch: sent {request.transaction_id}, "
                f"received {response.transaction_id}",
                function=request.function_code,
            )
        super().check_confirmation(request, response)


__all__ = ["TcpFramer", "build_mbap_header", "MBAP", "PROTOCOL_ID"]
