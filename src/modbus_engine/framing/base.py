"""Backend-neutral frame value and codec interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..constants import (
    BROADCAST_ADDRESS,
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
    Backend,
    MessageType,
)
from ..errors import InvalidParameterError, InvalidTIDOrSlaveError, TooManyDataError


@dataclass(slots=True)
class Frame:
    """One decoded request or response.

    ``transaction_id`` is only meaningful for the TCP backends; RTU frames
    leave it as ``None`` once their CRC has been verified.
    """

    unit_id: int
    function_code: int
    payload: bytes = b""
    transaction_id: Optional[int] = None

    @classmethod
    def from_pdu(
        cls, unit_id: int, pdu: bytes, transaction_id: Optional[int] = None
    ) -> "Frame":
        if not pdu:
            raise InvalidParameterError("A PDU needs at least a function code")
        if len(pdu) > MAX_PDU_LENGTH:
            raise TooManyDataError(
                f"PDU of {len(pdu)} bytes exceeds {MAX_PDU_LENGTH}", function=pdu[0]
            )
        return cls(unit_id, pdu[0], bytes(pdu[1:]), transaction_id)

    @property
    def pdu(self) -> bytes:
        return bytes([self.function_code]) + self.payload

    @property
    def is_exception(self) -> bool:
        return bool(self.function_code & EXCEPTION_FLAG)

    @property
    def is_broadcast(self) -> bool:
        return self.unit_id == BROADCAST_ADDRESS


# Fixed part following the function code, per direction.
_INDICATION_META = {
    FC_READ_COILS: 4,
    FC_READ_DISCRETE_INPUTS: 4,
    FC_READ_HOLDING_REGISTERS: 4,
    FC_READ_INPUT_REGISTERS: 4,
    FC_WRITE_SINGLE_COIL: 4,
    FC_WRITE_SINGLE_REGISTER: 4,
    FC_WRITE_MULTIPLE_COILS: 5,
    FC_WRITE_MULTIPLE_REGISTERS: 5,
    FC_MASK_WRITE_REGISTER: 6,
    FC_WRITE_AND_READ_REGISTERS: 9,
}

_CONFIRMATION_META = {
    FC_READ_COILS: 1,
    FC_READ_DISCRETE_INPUTS: 1,
    FC_READ_HOLDING_REGISTERS: 1,
    FC_READ_INPUT_REGISTERS: 1,
    FC_REPORT_SLAVE_ID: 1,
    FC_WRITE_AND_READ_REGISTERS: 1,
    FC_WRITE_SINGLE_COIL: 4,
    FC_WRITE_SINGLE_REGISTER: 4,
    FC_WRITE_MULTIPLE_COILS: 4,
    FC_WRITE_MULTIPLE_REGISTERS: 4,
    FC_MASK_WRITE_REGISTER: 6,
}

_BYTE_COUNT_CONFIRMATIONS = {
    FC_READ_COILS,
    FC_READ_DISCRETE_INPUTS,
    FC_READ_HOLDING_REGISTERS,
    FC_READ_INPUT_REGISTERS,
    FC_REPORT_SLAVE_ID,
    FC_WRITE_AND_READ_REGISTERS,
}


def meta_length_after_function(function: int, msg_type: MessageType) -> int:
    """Number of fixed bytes between the function code and any variable data."""

    if msg_type is MessageType.INDICATION:
        return _INDICATION_META.get(function, 0)
    if function & EXCEPTION_FLAG:
        return 1
    return _CONFIRMATION_META.get(function, 0)


def data_length_after_meta(
    message: bytes, header_length: int, msg_type: MessageType
) -> int:
    """Read the byte count announced by *message* once its meta part is in."""

    function = message[header_length]
    if msg_type is MessageType.INDICATION:
        if function in (FC_WRITE_MULTIPLE_COILS, FC_WRITE_MULTIPLE_REGISTERS):
            return message[header_length + 5]
        if function == FC_WRITE_AND_READ_REGISTERS:
            return message[header_length + 9]
        return 0
    if not function & EXCEPTION_FLAG and function in _BYTE_COUNT_CONFIRMATIONS:
        return message[header_length + 1]
    return 0


class Framer(ABC):
    """Encodes frames to ADUs and decides how many bytes are still missing."""

    backend: Backend
    header_length: int
    checksum_length: int
    max_adu_length: int

    @abstractmethod
    def encode(self, frame: Frame) -> bytes:
        """Serialize *frame* to a complete ADU."""

    @abstractmethod
    def decode(self, adu: bytes) -> Frame:
        """Validate a complete ADU and return its frame."""

    @abstractmethod
    def bytes_needed(self, buffer: bytes, msg_type: MessageType) -> int:
        """How many more bytes complete the next stage of the frame in *buffer*.

        A frame is read in steps: header and function code, then the fixed
        part for that function, then any announced data. The count covers
        only the stage in progress; zero means the frame is complete.
        """

    def check_confirmation(self, request: Frame, response: Frame) -> None:
        """Reject a response that does not belong to *request*."""

        if response.unit_id != request.unit_id:
            raise InvalidTIDOrSlaveError(
                f"Response from unit {response.unit_id}, expected {request.unit_id}",
                function=request.function_code,
            )

    def _check_size(self, size: int, function: Optional[int] = None) -> None:
        if size > self.max_adu_length:
            raise TooManyDataError(
                f"Frame of {size} bytes exceeds the {self.backend.value} maximum of "
                f"{self.max_adu_length}",
                function=function,
            )


__all__ = [
    "Frame",
    "Framer",
    "meta_length_after_function",
    "data_length_after_meta",
]
