"""Error taxonomy for the VXI-11 client.

Three failure classes are kept apart so callers can tell "the instrument
rejected this" from "we could not talk to the instrument":

* :class:`DiscoveryError` - the portmapper could not resolve a channel port.
* :class:`TransportError` - TCP, RPC or XDR failures on an open channel.
* :class:`DeviceError` - the instrument answered with a non-zero
  ``Device_ErrorCode``.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional, Sequence


class DeviceErrCode(IntEnum):
    """Device_ErrorCode values defined by the VXI-11 standard."""

    NO_ERROR = 0
    SYNTAX_ERROR = 1
    DEVICE_NOT_ACCESSIBLE = 3
    INVALID_LINK_IDENTIFIER = 4
    PARAMETER_ERROR = 5
    CHANNEL_NOT_ESTABLISHED = 6
    OPERATION_NOT_SUPPORTED = 8
    OUT_OF_RESOURCES = 9
    DEVICE_LOCKED_BY_ANOTHER_LINK = 11
    NO_LOCK_HELD_BY_THIS_LINK = 12
    IO_TIMEOUT = 15
    IO_ERROR = 17
    INVALID_ADDRESS = 21
    ABORT = 23
    CHANNEL_ALREADY_ESTABLISHED = 29

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    DeviceErrCode.NO_ERROR: "no error",
    DeviceErrCode.SYNTAX_ERROR: "syntax error",
    DeviceErrCode.DEVICE_NOT_ACCESSIBLE: "device not accessible",
    DeviceErrCode.INVALID_LINK_IDENTIFIER: "invalid link identifier",
    DeviceErrCode.PARAMETER_ERROR: "parameter error",
    DeviceErrCode.CHANNEL_NOT_ESTABLISHED: "channel not established",
    DeviceErrCode.OPERATION_NOT_SUPPORTED: "operation not supported",
    DeviceErrCode.OUT_OF_RESOURCES: "out of resources",
    DeviceErrCode.DEVICE_LOCKED_BY_ANOTHER_LINK: "device locked by another link",
    DeviceErrCode.NO_LOCK_HELD_BY_THIS_LINK: "no lock held by this link",
    DeviceErrCode.IO_TIMEOUT: "I/O timeout",
    DeviceErrCode.IO_ERROR: "I/O error",
    DeviceErrCode.INVALID_ADDRESS: "invalid address",
    DeviceErrCode.ABORT: "abort",
    DeviceErrCode.CHANNEL_ALREADY_ESTABLISHED: "channel already established",
}


class Vxi11Error(RuntimeError):
    """Base class for every error raised by this package."""


class DiscoveryError(Vxi11Error):
    """Raised when the portmapper cannot resolve a channel port.

    ``ports`` holds the ports resolved before the failing query, in
    core/abort/irq order; channels after the failure are never queried.
    """

    def __init__(
        self,
        message: str,
        host: str,
        program: int,
        ports: Sequence[int] = (),
    ) -> None:
        super().__init__(message)
        self.host = host
        self.program = program
        self.ports = tuple(ports)


class TransportError(Vxi11Error):
    """Raised when an RPC exchange with the instrument fails."""


class ConnectionClosedError(TransportError):
    """Raised when the RPC connection has been closed or lost."""


class CodecError(TransportError):
    """Raised when a request or reply cannot be (de)serialised."""


class ProcedureError(Vxi11Error):
    """Raised for procedure registration conflicts and unknown procedures."""


class ClientStateError(Vxi11Error):
    """Raised when an operation is not valid in the client's current state."""


class DeviceError(Vxi11Error):
    """Raised when the instrument returns a non-zero Device_ErrorCode."""

    def __init__(self, code: int, operation: str, note: Optional[str] = None) -> None:
        self.code = int(code)
        self.operation = operation
        self.note = note
        try:
            known = DeviceErrCode(self.code)
        except ValueError:
            self.err_code: Optional[DeviceErrCode] = None
            self.name = "UNKNOWN"
            self.description = "unknown error"
        else:
            self.err_code = known
            self.name = known.name
            self.description = known.description
        message = f"{operation} failed with error {self.code}: {self.description}"
        if note:
            message = f"{message} [{note}]"
        super().__init__(message)


def raise_for_error(code: int, operation: str) -> None:
    """Raise :class:`DeviceError` unless *code* is ``NO_ERROR``."""

    if code != DeviceErrCode.NO_ERROR:
        raise DeviceError(code, operation)
