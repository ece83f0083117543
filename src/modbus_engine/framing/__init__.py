"""Frame codecs for the RTU, TCP and TCP-PI backends."""

from __future__ import annotations

from .base import Frame, Framer, data_length_after_meta, meta_length_after_function
from .rtu import RtuFramer, crc16
from .tcp import TcpFramer, build_mbap_header
from ..constants import Backend


def framer_for(backend: Backend) -> Framer:
    """Return the codec used by *backend*."""

    if backend is Backend.RTU:
        return RtuFramer()
    return TcpFramer(backend)


__all__ = [
    "Frame",
    "Framer",
    "RtuFramer",
    "TcpFramer",
    "crc16",
    "build_mbap_header",
    "framer_for",
    "meta_length_after_function",
    "data_length_after_meta",
]
