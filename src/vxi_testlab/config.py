"""Configuration loading utilities for the VXI-11 client."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

PMAP_PORT = 111
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class PortMapperSettings:
    """Where and how long to wait for the remote portmapper."""

    port: int = PMAP_PORT
    timeout: Optional[float] = 5.0


@dataclass(slots=True)
class TransportSettings:
    """TCP connection parameters for the core channel.

    ``io_timeout`` is the read deadline applied to every RPC reply; ``None``
    blocks until the instrument answers or the connection drops.
    """

    connect_timeout: Optional[float] = 5.0
    io_timeout: Optional[float] = 10.0
    notify_queue_size: int = 5
    disconnect_poll_interval: float = 0.5


@dataclass(slots=True)
class LinkSettings:
    """Defaults used when opening a link from the command line."""

    device: str = "inst0"
    client_id: int = 1887
    lock_device: bool = False
    lock_timeout: int = 0


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(slots=True)
class ClientSettings:
    """Top-level configuration container."""

    portmapper: PortMapperSettings = field(default_factory=PortMapperSettings)
    transport: TransportSettings = field(default_factory=TransportSettings)
    link: LinkSettings = field(default_factory=LinkSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


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


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = raw.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"{name} section must be a mapping")
    return section


def _timeout(section: Mapping[str, Any], key: str, default: Optional[float], where: str) -> Optional[float]:
    value = section.get(key, default)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}.{key} must be a number or null") from exc
    if value < 0:
        raise ConfigurationError(f"{where}.{key} must not be negative")
    return value


def _int(section: Mapping[str, Any], key: str, default: int, where: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool):
        raise ConfigurationError(f"{where}.{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}.{key} must be an integer") from exc


def parse_config_dict(raw: Mapping[str, Any]) -> ClientSettings:
    """Parse configuration from an in-memory mapping."""

    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")

    pmap_raw = _section(raw, "portmapper")
    pmap_port = _int(pmap_raw, "port", PMAP_PORT, "portmapper")
    if not 0 < pmap_port <= 0xFFFF:
        raise ConfigurationError("portmapper.port must be in 1..65535")
    portmapper = PortMapperSettings(
        port=pmap_port,
        timeout=_timeout(pmap_raw, "timeout", 5.0, "portmapper"),
    )

    transport_raw = _section(raw, "transport")
    queue_size = _int(transport_raw, "notify_queue_size", 5, "transport")
    if queue_size < 1:
        raise ConfigurationError("transport.notify_queue_size must be at least 1")
    poll_interval = _timeout(transport_raw, "disconnect_poll_interval", 0.5, "transport")
    if not poll_interval:
        raise ConfigurationError("transport.disconnect_poll_interval must be a positive number")
    transport = TransportSettings(
        connect_timeout=_timeout(transport_raw, "connect_timeout", 5.0, "transport"),
        io_timeout=_timeout(transport_raw, "io_timeout", 10.0, "transport"),
        notify_queue_size=queue_size,
        disconnect_poll_interval=poll_interval,
    )

    link_raw = _section(raw, "link")
    device = link_raw.get("device", "inst0")
    if not isinstance(device, str) or not device:
        raise ConfigurationError("link.device must be a non-empty string")
    client_id = _int(link_raw, "client_id", 1887, "link")
    if not -(2**31) <= client_id < 2**31:
        raise ConfigurationError("link.client_id must fit in a signed 32-bit integer")
    lock_timeout = _int(link_raw, "lock_timeout", 0, "link")
    if not 0 <= lock_timeout <= 0xFFFFFFFF:
        raise ConfigurationError("link.lock_timeout must fit in an unsigned 32-bit integer")
    link = LinkSettings(
        device=device,
        client_id=client_id,
        lock_device=bool(link_raw.get("lock_device", False)),
        lock_timeout=lock_timeout,
    )

    logging_raw = _section(raw, "logging")
    level = str(logging_raw.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

    return ClientSettings(
        portmapper=portmapper,
        transport=transport,
        link=link,
        logging=LoggingSettings(level=level),
    )


def load_config(path: Path) -> ClientSettings:
    """Load and validate configuration from a YAML file."""

    raw = _load_yaml(path)
    return parse_config_dict(raw)


def config_to_dict(settings: ClientSettings) -> Dict[str, Any]:
    """Convert a ClientSettings instance back into a serialisable mapping."""

    return {
        "portmapper": {
            "port": settings.portmapper.port,
            "timeout": settings.portmapper.timeout,
        },
        "transport": {
            "connect_timeout": settings.transport.connect_timeout,
            "io_timeout": settings.transport.io_timeout,
            "notify_queue_size": settings.transport.notify_queue_size,
            "disconnect_poll_interval": settings.transport.disconnect_poll_interval,
        },
        "link": {
            "device": settings.link.device,
            "client_id": settings.link.client_id,
            "lock_device": settings.link.lock_device,
            "lock_timeout": settings.link.lock_timeout,
        },
        "logging": {"level": settings.logging.level},
    }
