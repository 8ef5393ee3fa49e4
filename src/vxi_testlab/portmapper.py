"""Resolve VXI-11 channel ports through the remote portmapper.

The portmapper (rpcbind) on TCP port 111 maps (program, version, protocol)
triples to the port currently serving them. A VXI-11 instrument registers up
to three programs:

- 0x0607AF (395183) - DEVICE_CORE, the link/read/write channel
- 0x0607B0 (395184) - DEVICE_ASYNC, the abort channel
- 0x0607B1 (395185) - DEVICE_INTR, the interrupt (SRQ) channel

Ports are resolved on every call and never cached, since an instrument may
rebind its services whenever its firmware restarts them.
"""
from __future__ import annotations

import logging
import socket
import xdrlib
from typing import List, NamedTuple, Optional

from vxi11 import rpc

from .config import PMAP_PORT
from .errors import DiscoveryError

LOGGER = logging.getLogger(__name__)

CHANNEL_CORE = 0x0607AF
CHANNEL_ABORT = 0x0607B0
CHANNEL_IRQ = 0x0607B1
CHANNEL_VERSION = 1

CHANNELS = (
    ("core", CHANNEL_CORE),
    ("abort", CHANNEL_ABORT),
    ("irq", CHANNEL_IRQ),
)


class ChannelPorts(NamedTuple):
    core: int
    abort: int
    irq: int


class PortMapperClient(rpc.PartialPortMapperClient, rpc.RawTCPClient):
    """TCP portmapper client with a configurable port and socket timeout."""

    def __init__(self, host: str, port: int = PMAP_PORT, timeout: Optional[float] = None) -> None:
        self.timeout = timeout
        rpc.RawTCPClient.__init__(self, host, rpc.PMAP_PROG, rpc.PMAP_VERS, port)
        rpc.PartialPortMapperClient.__init__(self)

    def connect(self) -> None:
        self.sock = socket.create_connection((self.host, self.port), timeout=self.timeout)


def get_port(
    host: str,
    program: int,
    version: int = CHANNEL_VERSION,
    pmap_port: int = PMAP_PORT,
    timeout: Optional[float] = None,
) -> int:
    """Ask the portmapper on *host* for the TCP port of *program*.

    Each query uses its own connection. Raises :class:`DiscoveryError` when
    the portmapper is unreachable, misbehaves, or reports the program as
    unregistered (port 0).
    """

    mapping = (program, version, rpc.IPPROTO_TCP, 0)
    try:
        pmap = PortMapperClient(host, port=pmap_port, timeout=timeout)
    except OSError as exc:
        raise DiscoveryError(
            f"Portmapper on {host}:{pmap_port} unreachable: {exc}", host, program
        ) from exc
    try:
        port = pmap.get_port(mapping)
    except (OSError, EOFError, xdrlib.Error, rpc.RPCError) as exc:
        raise DiscoveryError(
            f"GETPORT for program {program:#x} on {host} failed: {exc!r}", host, program
        ) from exc
    finally:
        pmap.close()

    if not 0 < port <= 0xFFFF:
        raise DiscoveryError(
            f"Program {program:#x} version {version} is not registered on {host}",
            host,
            program,
        )
    LOGGER.debug("Program %#x on %s is served on port %d", program, host, port)
    return port


def find_ports(
    host: str,
    pmap_port: int = PMAP_PORT,
    timeout: Optional[float] = None,
) -> ChannelPorts:
    """Resolve the core, abort and interrupt channel ports of *host*.

    Queries run in core/abort/irq order and stop at the first failure; the
    raised :class:`DiscoveryError` carries the ports resolved up to then.
    """

    ports: List[int] = []
    for name, program in CHANNELS:
        try:
            ports.append(get_port(host, program, CHANNEL_VERSION, pmap_port, timeout))
        except DiscoveryError as exc:
            LOGGER.debug("Resolving %s channel on %s failed: %s", name, host, exc)
            raise DiscoveryError(
                f"Unable to resolve {name} channel port on {host}: {exc}",
                host,
                program,
                ports,
            ) from exc
    result = ChannelPorts(*ports)
    LOGGER.info(
        "Resolved VXI-11 ports on %s: core=%d abort=%d irq=%d",
        host,
        result.core,
        result.abort,
        result.irq,
    )
    return result
