"""Timeout value used for the response and byte clocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .errors import InvalidParameterError


@dataclass(frozen=True, slots=True)
class Timeout:
    """A ``(seconds, microseconds)`` duration.

    ``Timeout(0, 0)`` used as a byte timeout disables the inter-byte clock.
    """

    seconds: int = 0
    microseconds: int = 0

    def __post_init__(self) -> None:
        if self.seconds < 0 or self.microseconds < 0:
            raise InvalidParameterError("Timeout values must not be negative")
        if self.microseconds >= 1_000_000:
            raise InvalidParameterError(
                f"Timeout microseconds must be below 1000000 (got {self.microseconds})"
            )

    @classmethod
    def from_seconds(cls, value: float) -> "Timeout":
        if value < 0:
            raise InvalidParameterError("Timeout values must not be negative")
        whole = int(value)
        micros = int(round((value - whole) * 1_000_000))
        if micros >= 1_000_000:
            whole += 1
            micros -= 1_000_000
        return cls(whole, micros)

    @property
    def total_seconds(self) -> float:
        return self.seconds + self.microseconds / 1_000_000

    @property
    def is_zero(self) -> bool:
        return self.seconds == 0 and self.microseconds == 0


TimeoutLike = Union[Timeout, float, int]


def coerce_timeout(value: TimeoutLike) -> Timeout:
    if isinstance(value, Timeout):
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidParameterError(f"Unsupported timeout value {value!r}")
    return Timeout.from_seconds(float(value))


def byte_window(timeout: Timeout) -> Optional[float]:
    """Return the inter-byte wait in seconds, or ``None`` when disabled."""

    if timeout.is_zero:
        return None
    return timeout.total_seconds


DEFAULT_RESPONSE_TIMEOUT = Timeout(0, 500_000)
DEFAULT_BYTE_TIMEOUT = Timeout(0, 500_000)


__all__ = [
    "Timeout",
    "TimeoutLike",
    "coerce_timeout",
    "byte_window",
    "DEFAULT_RESPONSE_TIMEOUT",
    "DEFAULT_BYTE_TIMEOUT",
]
