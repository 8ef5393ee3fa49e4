"""VXI-11 core channel client and link lifecycle."""

from __future__ import annotations

import enum
import logging
import threading
import weakref
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .config import ClientSettings
from .errors import (
    ClientStateError,
    ConnectionClosedError,
    DeviceErrCode,
    DeviceError,
    raise_for_error,
)
from .link_manager import Link, LinkManager
from .portmapper import CHANNEL_CORE, CHANNEL_VERSION, ChannelPorts, find_ports
from .procedures import CORE_PROCEDURES, Procedure, ProcedureRegistry
from .transport import DisconnectEvent, RpcConnection, connect

LOGGER = logging.getLogger(__name__)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
UINT32_MAX = 2**32 - 1


class ClientState(enum.Enum):
    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    LINKED = "linked"
    CLOSED = "closed"


class Vxi11Client:
    """Client bound to the core channel of one instrument.

    ``open()`` resolves the channel ports, connects to the core channel and
    registers the core procedures. Link operations and ``close()`` are
    serialised by an internal lock, so one client may be shared between
    threads. ``close()`` does not wait for that lock and interrupts a call
    blocked on the network.
    """

    def __init__(self, host: str, settings: Optional[ClientSettings] = None) -> None:
        self.host = host
        self._settings = settings or ClientSettings()
        self._registry = ProcedureRegistry()
        self._links = LinkManager()
        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._connection: Optional[RpcConnection] = None
        self._ports: Optional[ChannelPorts] = None
        self._closed = False

    # Lifecycle -----------------------------------------------------------

    @property
    def state(self) -> ClientState:
        if self._closed:
            return ClientState.CLOSED
        if self._connection is None:
            return ClientState.UNCONNECTED
        if self._connection.closed:
            return ClientState.CLOSED
        if len(self._links):
            return ClientState.LINKED
        return ClientState.CONNECTED

    @property
    def ports(self) -> Optional[ChannelPorts]:
        return self._ports

    @property
    def links(self) -> Dict[int, Link]:
        return self._links.active_links()

    @property
    def registry(self) -> ProcedureRegistry:
        return self._registry

    def open(self) -> "Vxi11Client":
        """Discover the channel ports and connect to the core channel.

        On failure nothing stays attached to the client and it remains
        UNCONNECTED.
        """

        with self._lock:
            if self.state is not ClientState.UNCONNECTED:
                raise ClientStateError(f"Cannot open client in state {self.state.value}")
            pmap = self._settings.portmapper
            ports = find_ports(self.host, pmap_port=pmap.port, timeout=pmap.timeout)
            connection = connect(
                self.host,
                ports.core,
                self._registry,
                self._settings.transport,
                program=CHANNEL_CORE,
                version=CHANNEL_VERSION,
            )
            try:
                self._registry.register(CHANNEL_CORE, CHANNEL_VERSION, CORE_PROCEDURES)
            except Exception:
                connection.close()
                raise
            connection.add_disconnect_listener(self._on_disconnect)
            with self._state_lock:
                if self._closed:
                    connection.close()
                    raise ClientStateError(f"Client for {self.host} was closed while opening")
                self._connection = connection
                self._ports = ports
        LOGGER.info("Client created for %s (core port %d)", self.host, ports.core)
        return self

    def close(self) -> None:
        """Close the core channel connection.

        Links still open are dropped from the client but not destroyed on
        the instrument.
        """

        # Not taken under the call lock so a call blocked in another thread
        # is interrupted by the socket shutdown.
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            orphaned = self._links.clear()
            connection = self._connection
        if orphaned:
            LOGGER.warning(
                "Closing client for %s with %d open link(s): %s",
                self.host,
                len(orphaned),
                sorted(orphaned),
            )
        if connection is not None:
            connection.close()
        LOGGER.info("Client for %s closed", self.host)

    def __enter__(self) -> "Vxi11Client":
        if self.state is ClientState.UNCONNECTED:
            self.open()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # Extension points ----------------------------------------------------

    def register_procedures(
        self, program: int, version: int, procedures: Iterable[Procedure]
    ) -> None:
        """Register additional procedures for use with :meth:`call`."""

        self._registry.register(program, version, procedures)

    def call(self, name: str, args: Any = None) -> Any:
        """Invoke a registered procedure and return the raw decoded reply."""

        with self._lock:
            return self._require_connection().call(name, args)

    def device_call(self, name: str, args: Any = None) -> Tuple[Any, ...]:
        """Invoke a procedure whose reply starts with a Device_ErrorCode.

        Raises :class:`DeviceError` for any code other than ``NO_ERROR`` and
        returns the remaining reply fields.
        """

        reply = self.call(name, args)
        if isinstance(reply, tuple):
            code, rest = reply[0], reply[1:]
        else:
            code, rest = reply, ()
        raise_for_error(code, name)
        return tuple(rest)

    # Link lifecycle ------------------------------------------------------

    def create_link(
        self,
        device: str,
        client_id: int,
        lock_device: bool = False,
        lock_timeout: int = 0,
    ) -> Link:
        """Open a link to *device* on the instrument.

        ``lock_timeout`` is in milliseconds; 0 means do not wait for a lock.
        """

        if not device:
            raise ValueError("device name must not be empty")
        device_raw = device.encode("ascii")
        if not INT32_MIN <= client_id <= INT32_MAX:
            raise ValueError(f"client_id {client_id} does not fit in a signed 32-bit integer")
        if not 0 <= lock_timeout <= UINT32_MAX:
            raise ValueError(f"lock_timeout {lock_timeout} does not fit in an unsigned 32-bit integer")

        with self._lock:
            lid, abort_port, max_recv_size = self.device_call(
                "create_link", (client_id, bool(lock_device), lock_timeout, device_raw)
            )
            link = Link(
                lid=lid,
                device=device,
                client_id=client_id,
                abort_port=abort_port,
                max_recv_size=max_recv_size,
                _client_ref=weakref.ref(self),
            )
            # close() and disconnects clear the table under _state_lock.
            with self._state_lock:
                if self.state is ClientState.CLOSED:
                    link._destroyed = True
                    raise ConnectionClosedError(
                        f"Client for {self.host} closed while link {lid} was being created"
                    )
                self._links.add(link)
        LOGGER.info(
            "Link ID: %d, abortPort: %d, maxRecv: %d (device %s)",
            link.lid,
            link.abort_port,
            link.max_recv_size,
            device,
        )
        return link

    def destroy_link(self, link: Union[Link, int]) -> None:
        """Destroy a link, given as a :class:`Link` or a raw link id.

        A :class:`Link` counts as destroyed as soon as the attempt is made;
        destroying it again raises ``DeviceError(INVALID_LINK_IDENTIFIER)``
        without contacting the instrument. Raw ids are always sent, so the
        instrument decides whether they are valid.
        """

        if isinstance(link, Link):
            if link._client_ref() is not self:
                raise ValueError(f"Link {link.lid} belongs to another client")
            if link.destroyed:
                raise DeviceError(
                    DeviceErrCode.INVALID_LINK_IDENTIFIER,
                    "destroy_link",
                    note=f"link {link.lid} already destroyed",
                )
            lid = link.lid
        else:
            lid = int(link)

        with self._lock:
            connection = self._require_connection()
            if isinstance(link, Link):
                link._destroyed = True
            tracked = self._links.discard(lid)
            if tracked is not None:
                tracked._destroyed = True
            code = connection.call("destroy_link", lid)
            raise_for_error(code, "destroy_link")
        LOGGER.info("Link %d destroyed", lid)

    def get_link(self, lid: int) -> Link:
        return self._links.get(lid)

    # Internal helpers ----------------------------------------------------

    def _require_connection(self) -> RpcConnection:
        state = self.state
        if state is ClientState.UNCONNECTED:
            raise ClientStateError(f"Client for {self.host} is not connected")
        if state is ClientState.CLOSED:
            raise ConnectionClosedError(f"Client for {self.host} is closed")
        assert self._connection is not None
        return self._connection

    def _on_disconnect(self, event: DisconnectEvent) -> None:
        with self._state_lock:
            dropped = self._links.clear()
        if dropped:
            LOGGER.warning(
                "Links %s on %s invalidated by disconnect", sorted(dropped), event.host
            )


def open_client(host: str, settings: Optional[ClientSettings] = None) -> Vxi11Client:
    """Create a client for *host* and open it."""

    return Vxi11Client(host, settings).open()
