"""Configuration loading utilities for the Modbus engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .constants import DEFAULT_IDENTIFICATION, TCP_DEFAULT_PORT, Backend
from .context import ErrorRecovery, ModbusContext
from .errors import ModbusError
from .mapping import BlockKind, ModbusMapping
from .timeout import DEFAULT_BYTE_TIMEOUT, DEFAULT_RESPONSE_TIMEOUT
from .transport import SerialTransport


@dataclass(slots=True)
class TcpSettings:
    """Listener (server) or peer (client) address for the TCP backends."""

    host: str = "127.0.0.1"
    port: int = TCP_DEFAULT_PORT
    max_connections: int = 5


@dataclass(slots=True)
class RtuSettings:
    """Serial line parameters for the RTU backend."""

    device: str = "/dev/ttyUSB0"
    baudrate: int = 19200
    parity: str = "N"
    bytesize: int = 8
    stopbits: float = 1
    serial_mode: str = "rs232"
    rts: str = "none"
    rts_delay_us: Optional[int] = None


@dataclass(slots=True)
class BlockSettings:
    """One data block of the served mapping."""

    start: int = 0
    count: int = 0
    values: List[int] = field(default_factory=list)


@dataclass(slots=True)
class MappingSettings:
    coils: BlockSettings = field(default_factory=BlockSettings)
    discrete_inputs: BlockSettings = field(default_factory=BlockSettings)
    holding_registers: BlockSettings = field(default_factory=BlockSettings)
    input_registers: BlockSettings = field(default_factory=BlockSettings)


@dataclass(slots=True)
class Config:
    """Top-level configuration container."""

    backend: Backend = Backend.TCP
    unit_id: Optional[int] = None
    response_timeout: float = DEFAULT_RESPONSE_TIMEOUT.total_seconds
    byte_timeout: float = DEFAULT_BYTE_TIMEOUT.total_seconds
    error_recovery: ErrorRecovery = ErrorRecovery.NONE
    debug: bool = False
    tcp: TcpSettings = field(default_factory=TcpSettings)
    rtu: RtuSettings = field(default_factory=RtuSettings)
    mapping: MappingSettings = field(default_factory=MappingSettings)
    identification: bytes = DEFAULT_IDENTIFICATION


class ConfigurationError(RuntimeError):
    """Raised when configuration parsing fails."""


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in configuration file: {path}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    return data


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    section = raw.get(name, {})
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"{name} section must be a mapping")
    return section


def _parse_block(name: str, raw: Any) -> BlockSettings:
    if raw is None:
        return BlockSettings()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"mapping.{name} must be a mapping")
    values = raw.get("values", []) or []
    if not isinstance(values, list):
        raise ConfigurationError(f"mapping.{name}.values must be a list")
    try:
        start = int(raw.get("start", 0))
        count = int(raw.get("count", len(values)))
        values = [int(value) for value in values]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"mapping.{name} contains a non-integer value") from exc
    if len(values) > count:
        raise ConfigurationError(f"mapping.{name} lists {len(values)} values for {count} entries")
    return BlockSettings(start=start, count=count, values=values)


def parse_config_dict(raw: Mapping[str, Any]) -> Config:
    """Parse configuration from an in-memory mapping."""

    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")

    try:
        backend = Backend.parse(raw.get("backend", Backend.TCP.value))
        error_recovery = ErrorRecovery.parse(raw.get("error_recovery"))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc

    tcp_raw = _section(raw, "tcp")
    rtu_raw = _section(raw, "rtu")
    mapping_raw = _section(raw, "mapping")

    try:
        unit_id = raw.get("unit_id")
        tcp = TcpSettings(
            host=str(tcp_raw.get("host", "127.0.0.1")),
            port=int(tcp_raw.get("port", TCP_DEFAULT_PORT)),
            max_connections=int(tcp_raw.get("max_connections", 5)),
        )
        rtu_delay = rtu_raw.get("rts_delay_us")
        rtu = RtuSettings(
            device=str(rtu_raw.get("device", "/dev/ttyUSB0")),
            baudrate=int(rtu_raw.get("baudrate", 19200)),
            parity=str(rtu_raw.get("parity", "N")).upper(),
            bytesize=int(rtu_raw.get("bytesize", 8)),
            stopbits=float(rtu_raw.get("stopbits", 1)),
            serial_mode=str(rtu_raw.get("serial_mode", "rs232")).lower(),
            rts=str(rtu_raw.get("rts", "none")).lower(),
            rts_delay_us=None if rtu_delay is None else int(rtu_delay),
        )
        config = Config(
            backend=backend,
            unit_id=None if unit_id is None else int(unit_id),
            response_timeout=float(raw.get("response_timeout", DEFAULT_RESPONSE_TIMEOUT.total_seconds)),
            byte_timeout=float(raw.get("byte_timeout", DEFAULT_BYTE_TIMEOUT.total_seconds)),
            error_recovery=error_recovery,
            debug=bool(raw.get("debug", False)),
            tcp=tcp,
            rtu=rtu,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration value: {exc}") from exc

    config.mapping = MappingSettings(
        **{kind.value: _parse_block(kind.value, mapping_raw.get(kind.value)) for kind in BlockKind}
    )

    identification = raw.get("identification", DEFAULT_IDENTIFICATION)
    if isinstance(identification, str):
        identification = identification.encode("utf-8")
    if not isinstance(identification, bytes):
        raise ConfigurationError("identification must be a string")
    config.identification = identification

    return config


def load_config(path: Path) -> Config:
    """Load and validate configuration from a YAML file."""

    raw = _load_yaml(path)
    return parse_config_dict(raw)


def config_to_dict(config: Config) -> Dict[str, Any]:
    """Convert a Config instance back into a serialisable mapping."""

    recovery = [
        flag.name.lower()
        for flag in (ErrorRecovery.LINK, ErrorRecovery.PROTOCOL)
        if flag in config.error_recovery
    ]
    mapping_dict: Dict[str, Dict[str, Any]] = {}
    for kind in BlockKind:
        block: BlockSettings = getattr(config.mapping, kind.value)
        if block.count:
            mapping_dict[kind.value] = {
                "start": block.start,
                "count": block.count,
                "values": list(block.values),
            }

    data: Dict[str, Any] = {
        "backend": config.backend.value,
        "response_timeout": config.response_timeout,
        "byte_timeout": config.byte_timeout,
        "error_recovery": recovery,
        "debug": config.debug,
    }
    if config.unit_id is not None:
        data["unit_id"] = config.unit_id
    if config.backend is Backend.RTU:
        data["rtu"] = {
            "device": config.rtu.device,
            "baudrate": config.rtu.baudrate,
            "parity": config.rtu.parity,
            "bytesize": config.rtu.bytesize,
            "stopbits": config.rtu.stopbits,
            "serial_mode": config.rtu.serial_mode,
            "rts": config.rtu.rts,
        }
        if config.rtu.rts_delay_us is not None:
            data["rtu"]["rts_delay_us"] = config.rtu.rts_delay_us
    else:
        data["tcp"] = {
            "host": config.tcp.host,
            "port": config.tcp.port,
            "max_connections": config.tcp.max_connections,
        }
    data["mapping"] = mapping_dict
    data["identification"] = config.identification.decode("utf-8", errors="replace")
    return data


def save_config(path: Path, raw: Mapping[str, Any]) -> Config:
    """Validate and write configuration data to disk.

    Returns the parsed Config instance on success.
    """

    config = parse_config_dict(raw)
    serialisable = config_to_dict(config)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(serialisable, handle, sort_keys=False)
    return config


def build_mapping(config: Config) -> ModbusMapping:
    """Allocate the mapping described by ``config.mapping`` and preload values."""

    settings = config.mapping
    try:
        mapping = ModbusMapping.with_start_address(
            settings.coils.start,
            settings.coils.count,
            settings.discrete_inputs.start,
            settings.discrete_inputs.count,
            settings.holding_registers.start,
            settings.holding_registers.count,
            settings.input_registers.start,
            settings.input_registers.count,
        )
        for kind in BlockKind:
            values = getattr(settings, kind.value).values
            if values:
                mapping.load(kind, values)
    except ModbusError as exc:
        raise ConfigurationError(f"Invalid mapping: {exc}") from exc
    return mapping


def build_context(config: Config) -> ModbusContext:
    """Create an unconnected context for the configured backend."""

    options: Dict[str, Any] = {
        "unit_id": config.unit_id,
        "response_timeout": config.response_timeout,
        "byte_timeout": config.byte_timeout,
        "error_recovery": config.error_recovery,
        "debug": config.debug,
    }
    try:
        if config.backend is Backend.RTU:
            rtu = config.rtu
            transport = SerialTransport(
                rtu.device, rtu.baudrate, rtu.parity, rtu.bytesize, rtu.stopbits
            )
            transport.serial_mode = rtu.serial_mode
            transport.rts_mode = rtu.rts
            if rtu.rts_delay_us is not None:
                transport.rts_delay_us = rtu.rts_delay_us
            return ModbusContext(Backend.RTU, transport, **options)
        if config.backend is Backend.TCP_PI:
            return ModbusContext.tcp_pi(config.tcp.host, str(config.tcp.port), **options)
        return ModbusContext.tcp(config.tcp.host, config.tcp.port, **options)
    except ModbusError as exc:
        raise ConfigurationError(f"Invalid connection settings: {exc}") from exc


__all__ = [
    "Config",
    "TcpSettings",
    "RtuSettings",
    "BlockSettings",
    "MappingSettings",
    "ConfigurationError",
    "load_config",
    "parse_config_dict",
    "config_to_dict",
    "save_config",
    "build_mapping",
    "build_context",
]
