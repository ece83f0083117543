"""Slave-side data model: coils, discrete inputs, holding and input registers."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from .errors import ExceptionCode, InvalidParameterError, ModbusExceptionError

ADDRESS_SPACE = 0x10000


class BlockKind(Enum):
    COILS = "coils"
    DISCRETE_INPUTS = "discrete_inputs"
    HOLDING_REGISTERS = "holding_registers"
    INPUT_REGISTERS = "input_registers"

    @property
    def is_bits(self) -> bool:
        return self in (BlockKind.COILS, BlockKind.DISCRETE_INPUTS)


class DataBlock:
    """Fixed-size table addressed from ``start_address``.

    Index ``i`` holds protocol address ``start_address + i``. All access goes
    through the lock of the owning :class:`ModbusMapping`.
    """

    def __init__(
        self,
        kind: BlockKind,
        start_address: int,
        count: int,
        lock: threading.RLock,
    ) -> None:
        if start_address < 0 or count < 0:
            raise InvalidParameterError(f"{kind.value}: start and count must not be negative")
        if start_address + count > ADDRESS_SPACE:
            raise InvalidParameterError(
                f"{kind.value}: start 0x{start_address:04X} + count {count} exceeds the address space"
            )
        self.kind = kind
        self.start_address = start_address
        self.count = count
        self._lock = lock
        self._values: List = [False] * count if kind.is_bits else [0] * count

    def __len__(self) -> int:
        return self.count

    def __repr__(self) -> str:
        return f"DataBlock({self.kind.value}, start=0x{self.start_address:04X}, count={self.count})"

    def contains(self, address: int, quantity: int = 1) -> bool:
        offset = address - self.start_address
        return offset >= 0 and quantity >= 0 and offset + quantity <= self.count

    def _offset(self, address: int, quantity: int) -> int:
        if not self.contains(address, quantity):
            raise ModbusExceptionError(ExceptionCode.ILLEGAL_DATA_ADDRESS, address=address)
        return address - self.start_address

    def read(self, address: int, quantity: int = 1) -> List:
        with self._lock:
            offset = self._offset(address, quantity)
            return list(self._values[offset:offset + quantity])

    def write(self, address: int, values: Sequence) -> None:
        values = [self._coerce(value) for value in values]
        with self._lock:
            offset = self._offset(address, len(values))
            self._values[offset:offset + len(values)] = values

    def _coerce(self, value):
        if self.kind.is_bits:
            return bool(value)
        value = int(value)
        if not 0 <= value <= 0xFFFF:
            raise InvalidParameterError(f"Register value {value} is outside 0..65535")
        return value

    def snapshot(self) -> List:
        with self._lock:
            return list(self._values)


class ModbusMapping:
    """The four data blocks served by a slave, guarded by a single lock."""

    def __init__(
        self,
        nb_bits: int = 0,
        nb_input_bits: int = 0,
        nb_registers: int = 0,
        nb_input_registers: int = 0,
    ) -> None:
        self._init_blocks(0, nb_bits, 0, nb_input_bits, 0, nb_registers, 0, nb_input_registers)

    @classmethod
    def with_start_address(
        cls,
        start_bits: int = 0,
        nb_bits: int = 0,
        start_input_bits: int = 0,
        nb_input_bits: int = 0,
        start_registers: int = 0,
        nb_registers: int = 0,
        start_input_registers: int = 0,
        nb_input_registers: int = 0,
    ) -> "ModbusMapping":
        mapping = cls.__new__(cls)
        mapping._init_blocks(
            start_bits,
            nb_bits,
            start_input_bits,
            nb_input_bits,
            start_registers,
            nb_registers,
            start_input_registers,
            nb_input_registers,
        )
        return mapping

    def _init_blocks(
        self,
        start_bits: int,
        nb_bits: int,
        start_input_bits: int,
        nb_input_bits: int,
        start_registers: int,
        nb_registers: int,
        start_input_registers: int,
        nb_input_registers: int,
    ) -> None:
        self._lock = threading.RLock()
        self.coils = DataBlock(BlockKind.COILS, start_bits, nb_bits, self._lock)
        self.discrete_inputs = DataBlock(
            BlockKind.DISCRETE_INPUTS, start_input_bits, nb_input_bits, self._lock
        )
        self.holding_registers = DataBlock(
            BlockKind.HOLDING_REGISTERS, start_registers, nb_registers, self._lock
        )
        self.input_registers = DataBlock(
            BlockKind.INPUT_REGISTERS, start_input_registers, nb_input_registers, self._lock
        )

    @property
    def lock(self) -> threading.RLock:
        """Lock to hold when several block operations must appear atomic."""
        return self._lock

    def block(self, kind: BlockKind | str) -> DataBlock:
        return getattr(self, BlockKind(kind).value)

    def blocks(self) -> Iterable[DataBlock]:
        return (self.coils, self.discrete_inputs, self.holding_registers, self.input_registers)

    def load(self, kind: BlockKind | str, values: Sequence, address: Optional[int] = None) -> None:
        """Preload *values* into a block, from its start address by default."""

        block = self.block(kind)
        block.write(block.start_address if address is None else address, values)

    def __repr__(self) -> str:
        parts = ", ".join(repr(block) for block in self.blocks())
        return f"ModbusMapping({parts})"


__all__ = ["ModbusMapping", "DataBlock", "BlockKind", "ADDRESS_SPACE"]
