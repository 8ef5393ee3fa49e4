"""VXI-11 instrument control client: port discovery and link lifecycle."""

from .client import ClientState, Vxi11Client, open_client
from .errors import (
    ClientStateError,
    CodecError,
    ConnectionClosedError,
    DeviceErrCode,
    DeviceError,
    DiscoveryError,
    ProcedureError,
    TransportError,
    Vxi11Error,
)
from .link_manager import Link
from .portmapper import ChannelPorts, find_ports
from .procedures import Procedure, ProcedureRegistry

__all__ = [
    "ChannelPorts",
    "ClientState",
    "ClientStateError",
    "CodecError",
    "ConnectionClosedError",
    "DeviceErrCode",
    "DeviceError",
    "DiscoveryError",
    "Link",
    "Procedure",
    "ProcedureError",
    "ProcedureRegistry",
    "TransportError",
    "Vxi11Client",
    "Vxi11Error",
    "find_ports",
    "open_client",
]
