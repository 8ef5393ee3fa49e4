"""TCP transport for VXI-11 channels built on the python-vxi11 RPC client."""

from __future__ import annotations

import logging
import queue
import select
import socket
import threading
import xdrlib
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from vxi11 import rpc
from vxi11 import vxi11 as vxi11_proto

from .config import TransportSettings
from .errors import CodecError, ConnectionClosedError, ProcedureError, TransportError
from .portmapper import CHANNEL_CORE, CHANNEL_VERSION
from .procedures import ProcedureRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DisconnectEvent:
    """Notification that the remote side closed or broke the connection."""

    host: str
    port: int
    reason: str


DisconnectListener = Callable[[DisconnectEvent], None]


class DisconnectMonitor:
    """Drain disconnect notifications on a dedicated thread.

    Notifications are handed over through a bounded queue with
    ``put_nowait`` so a burst never blocks the connection's read path; when
    the queue is full the extra notification is dropped. While the queue is
    idle the monitor asks the connection to probe its socket so a peer close
    is noticed even when no call is in flight. The thread exits once the
    connection is closed or lost, releasing its listeners.
    """

    def __init__(self, connection: "RpcConnection", queue_size: int, poll_interval: float) -> None:
        self._connection = connection
        self._queue: "queue.Queue[Optional[DisconnectEvent]]" = queue.Queue(maxsize=queue_size)
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._listeners: List[DisconnectListener] = []
        self._listeners_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run,
            name=f"vxi11-disconnect-{connection.host}:{connection.port}",
            daemon=True,
        )

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def add_listener(self, listener: DisconnectListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def notify(self, event: DisconnectEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            LOGGER.debug("Disconnect notification queue full, dropping %s", event)

    def stop(self) -> None:
        self._stop.set()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass  # the stop flag is checked after every dequeue
        if threading.current_thread() is not self._thread and self._thread.is_alive():
            self._thread.join(timeout=self._poll_interval + 1.0)

    def _run(self) -> None:
        # A lost connection never reopens, so the monitor ends with it.
        while not self._stop.is_set():
            try:
                event = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._connection.closed:
                    break
                self._connection.probe_idle()
                continue
            if event is None:
                break
            self._dispatch(event)
            if self._connection.closed:
                break
        # Deliver anything that was queued before the stop request.
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            if event is not None:
                self._dispatch(event)
        with self._listeners_lock:
            self._listeners.clear()

    def _dispatch(self, event: DisconnectEvent) -> None:
        LOGGER.warning("Server %s:%d disconnected (%s)", event.host, event.port, event.reason)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Disconnect listener %r failed", listener)


class RpcConnection(rpc.RawTCPClient):
    """One RPC channel to an instrument, dispatching procedures by name.

    Calls are serialised by an internal mutex. Any socket failure, including
    an expired read deadline, marks the connection lost; every later call
    then raises :class:`ConnectionClosedError`.
    """

    def __init__(
        self,
        host: str,
        port: int,
        registry: ProcedureRegistry,
        settings: Optional[TransportSettings] = None,
        program: int = CHANNEL_CORE,
        version: int = CHANNEL_VERSION,
    ) -> None:
        self.settings = settings or TransportSettings()
        self.packer = vxi11_proto.Packer()
        self.unpacker = vxi11_proto.Unpacker(b"")
        self.registry = registry
        self._call_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._closed = False
        rpc.RawTCPClient.__init__(self, host, program, version, port)
        self._monitor = DisconnectMonitor(
            self,
            queue_size=self.settings.notify_queue_size,
            poll_interval=self.settings.disconnect_poll_interval,
        )
        self._monitor.start()

    # rpc.RawTCPClient hooks ---------------------------------------------

    def connect(self) -> None:
        self.sock = socket.create_connection(
            (self.host, self.port), timeout=self.settings.connect_timeout
        )
        self.sock.settimeout(self.settings.io_timeout)

    def close(self) -> None:
        """Close the connection and stop the disconnect monitor.

        Safe to call repeatedly and from another thread than the one
        blocked in :meth:`call`; that call fails with
        :class:`ConnectionClosedError`.
        """

        with self._state_lock:
            already_closed = self._closed
            self._closed = True
        if not already_closed:
            self._shutdown_socket()
            LOGGER.debug("Closed RPC connection to %s:%d", self.host, self.port)
        self._monitor.stop()

    # Public API ----------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def monitor(self) -> DisconnectMonitor:
        return self._monitor

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._monitor.add_listener(listener)

    def call(self, name: str, args: Any = None) -> Any:
        """Invoke the registered procedure *name* and return its decoded reply."""

        proc_id, procedure = self.registry.lookup(name)
        if (proc_id.program, proc_id.version) != (self.prog, self.vers):
            raise ProcedureError(
                f"Procedure {name!r} belongs to program {proc_id.program:#x} "
                f"version {proc_id.version}, not to this channel"
            )
        if procedure.pack is None and args is not None:
            raise TypeError(f"Procedure {name!r} takes no arguments")
        pack_func = getattr(self.packer, procedure.pack) if procedure.pack else None
        unpack_func = getattr(self.unpacker, procedure.unpack) if procedure.unpack else None

        with self._call_lock:
            if self._closed:
                raise ConnectionClosedError(
                    f"Connection to {self.host}:{self.port} is closed"
                )
            LOGGER.debug(
                "RPC call %s (proc %d) to %s:%d args=%r",
                name,
                proc_id.number,
                self.host,
                self.port,
                args,
            )
            try:
                self.start_call(proc_id.number)
                if pack_func is not None:
                    pack_func(args)
            except xdrlib.Error as exc:
                raise CodecError(f"Cannot encode arguments for {name}: {exc}") from exc

            try:
                self.do_call()
            except (EOFError, OSError) as exc:
                if self._closed:
                    raise ConnectionClosedError(
                        f"Connection to {self.host}:{self.port} closed during {name}"
                    ) from exc
                reason = "read deadline expired" if isinstance(exc, socket.timeout) else repr(exc)
                self._mark_lost(reason)
                raise ConnectionClosedError(
                    f"Connection to {self.host}:{self.port} lost during {name}: {reason}"
                ) from exc
            except rpc.RPCError as exc:
                raise TransportError(f"RPC {name} to {self.host}:{self.port} failed: {exc}") from exc

            try:
                result = unpack_func() if unpack_func is not None else None
                self.unpacker.done()
            except (EOFError, xdrlib.Error) as exc:
                raise CodecError(f"Cannot decode reply for {name}: {exc!r}") from exc

        LOGGER.debug("RPC reply %s -> %r", name, result)
        return result

    def probe_idle(self) -> None:
        """Detect a peer close while no call is in flight."""

        if self._closed or not self._call_lock.acquire(blocking=False):
            return
        try:
            if self._closed:
                return
            try:
                readable, _, _ = select.select([self.sock], [], [], 0)
                if not readable:
                    return
                peeked = self.sock.recv(1, socket.MSG_PEEK)
            except (OSError, ValueError) as exc:
                if not self._closed:
                    self._mark_lost(f"socket error: {exc!r}")
                return
            if not peeked:
                self._mark_lost("peer closed the connection")
        finally:
            self._call_lock.release()

    # Internal helpers ----------------------------------------------------

    def _mark_lost(self, reason: str) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._shutdown_socket()
        self._monitor.notify(DisconnectEvent(self.host, self.port, reason))

    def _shutdown_socket(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            LOGGER.debug("Socket shutdown for %s:%d failed: %s", self.host, self.port, exc)
        self.sock.close()


def connect(
    address: str,
    port: int,
    registry: ProcedureRegistry,
    settings: Optional[TransportSettings] = None,
    program: int = CHANNEL_CORE,
    version: int = CHANNEL_VERSION,
) -> RpcConnection:
    """Open a TCP connection to ``address:port`` and wrap it in an RPC client."""

    if not 0 < port <= 0xFFFF:
        raise ValueError(f"Invalid port {port}")
    try:
        connection = RpcConnection(address, port, registry, settings, program, version)
    except OSError as exc:
        raise TransportError(f"Unable to connect to {address}:{port}: {exc}") from exc
    LOGGER.info("Connected to %s:%d (program %#x)", address, port, program)
    return connection
