"""In-process stand-ins for a VXI-11 instrument and its portmapper."""

from __future__ import annotations

import logging
import socket
import threading
import time
import sys
from typing import Any, Dict, List, Optional, Tuple
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from vxi11 import rpc
from vxi11 import vxi11 as vxi11_proto
from xdrlib import Packer, Unpacker

from vxi_testlab.config import ClientSettings, PortMapperSettings, TransportSettings

_LOG = logging.getLogger(__name__)

# ONC RPC constants
MSG_CALL = 0
MSG_REPLY = 1
REPLY_MSG_ACCEPTED = 0
AUTH_NULL = 0
ACCEPTSTAT_SUCCESS = 0

PMAPPROC_NULL = 0
PMAPPROC_GETPORT = 3


def _close_listener(sock: socket.socket) -> None:
    # shutdown() wakes a thread blocked in accept()
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _pack_reply_header(xid: int, packer: Packer) -> None:
    packer.pack_uint(xid)
    packer.pack_uint(MSG_REPLY)
    packer.pack_uint(REPLY_MSG_ACCEPTED)
    packer.pack_uint(AUTH_NULL)
    packer.pack_uint(0)
    packer.pack_uint(ACCEPTSTAT_SUCCESS)


def _read_rpc_call(data: bytes):
    up = Unpacker(data)
    xid = up.unpack_uint()
    if up.unpack_uint() != MSG_CALL:
        raise ValueError("Not an RPC CALL message")
    if up.unpack_uint() != 2:
        raise ValueError("Unsupported RPC version")
    prog = up.unpack_uint()
    vers = up.unpack_uint()
    proc = up.unpack_uint()
    for _ in range(2):  # credentials, verifier
        up.unpack_uint()
        up.unpack_fopaque(up.unpack_uint())
    return xid, prog, vers, proc, up


class FakePortMapper:
    """Threaded TCP portmapper answering GETPORT from a fixed mapping.

    Every connection carries a single call, like a client that opens one
    connection per query. Unknown programs map to port 0.
    """

    def __init__(self, mapping: Optional[Dict[int, int]] = None, host: str = "127.0.0.1") -> None:
        self.mapping: Dict[int, int] = dict(mapping or {})
        self.queries: List[Tuple[int, int, int]] = []
        self._host = host
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind((host, 0))
        self.port = self._sock.getsockname()[1]
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> "FakePortMapper":
        self._sock.listen(16)
        t = threading.Thread(target=self._tcp_loop, daemon=True)
        t.start()
        self._threads.append(t)
        return self

    def stop(self) -> None:
        self._stop.set()
        _close_listener(self._sock)
        for t in self._threads:
            t.join(timeout=1.0)

    def _tcp_loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _addr = self._sock.accept()
            except OSError:
                break
            t = threading.Thread(target=self._tcp_client, args=(conn,), daemon=True)
            t.start()
            self._threads.append(t)

    def _tcp_client(self, conn: socket.socket) -> None:
        with conn:
            try:
                data = rpc.recvrecord(conn)
            except (EOFError, OSError) as exc:
                _LOG.debug("Portmapper client error: %s", exc)
                return
            reply = self._handle_call(data)
            if reply is not None:
                rpc.sendrecord(conn, reply)

    def _handle_call(self, data: bytes) -> Optional[bytes]:
        xid, prog, vers, proc, up = _read_rpc_call(data)
        if prog != rpc.PMAP_PROG or vers != rpc.PMAP_VERS:
            return None
        p = Packer()
        _pack_reply_header(xid, p)
        if proc == PMAPPROC_GETPORT:
            m_prog = up.unpack_uint()
            m_vers = up.unpack_uint()
            m_prot = up.unpack_uint()
            up.unpack_uint()
            self.queries.append((m_prog, m_vers, m_prot))
            port = self.mapping.get(m_prog, 0) if m_prot == rpc.IPPROTO_TCP else 0
            p.pack_uint(port)
        return p.get_buffer()


class TrailingDataPortMapper(FakePortMapper):
    """Portmapper whose GETPORT replies carry an extra XDR word."""

    def _handle_call(self, data: bytes) -> Optional[bytes]:
        reply = super()._handle_call(data)
        return None if reply is None else reply + b"\x00\x00\x00\x01"


class SimulatedInstrument(rpc.TCPServer):
    """Minimal DEVICE_CORE server handing out sequential link ids."""

    def __init__(
        self,
        devices: Tuple[str, ...] = ("inst0",),
        first_lid: int = 7,
        abort_port: int = 1025,
        max_recv_size: int = 4096,
        host: str = "127.0.0.1",
    ) -> None:
        super().__init__(host, vxi11_proto.DEVICE_CORE_PROG, vxi11_proto.DEVICE_CORE_VERS, 0)
        self.devices = set(devices)
        self.abort_port = abort_port
        self.max_recv_size = max_recv_size
        self.create_link_error: Optional[int] = None
        self.reply_delay = 0.0
        self.links: Dict[int, Tuple[int, str]] = {}
        self.requests: List[Tuple[str, Any]] = []
        self._next_lid = first_lid
        self._handle_lock = threading.Lock()
        self._clients: List[socket.socket] = []
        self._clients_lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    # rpc.TCPServer hooks ------------------------------------------------

    def addpackers(self) -> None:
        self.packer = vxi11_proto.Packer()
        self.unpacker = vxi11_proto.Unpacker(b"")

    def loop(self) -> None:
        while True:
            try:
                sock, _address = self.sock.accept()
            except OSError:
                break
            with self._clients_lock:
                self._clients.append(sock)
            worker = threading.Thread(target=self._session_worker, args=(sock,), daemon=True)
            self._threads.append(worker)
            worker.start()

    def _session_worker(self, sock: socket.socket) -> None:
        with sock:
            while True:
                try:
                    call = rpc.recvrecord(sock)
                except (EOFError, OSError):
                    break
                if self.reply_delay:
                    time.sleep(self.reply_delay)
                with self._handle_lock:
                    reply = self.handle(call)
                if reply is None:
                    continue
                try:
                    rpc.sendrecord(sock, reply)
                except OSError:
                    break

    # Lifecycle --------------------------------------------------------

    def start(self) -> "SimulatedInstrument":
        self.sock.listen(8)
        t = threading.Thread(target=self.loop, daemon=True)
        t.start()
        self._threads.append(t)
        return self

    def drop_connections(self) -> None:
        """Close every client connection from the instrument side."""

        with self._clients_lock:
            clients, self._clients = self._clients, []
        for sock in clients:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def stop(self) -> None:
        _close_listener(self.sock)
        self.drop_connections()
        for t in self._threads:
            t.join(timeout=1.0)

    # RPC method handlers ----------------------------------------------

    def handle_10(self) -> None:
        """Handle CREATE_LINK."""

        client_id, lock_device, lock_timeout, device_raw = self.unpacker.unpack_create_link_parms()
        device = device_raw.decode("ascii")
        self.requests.append(("create_link", (client_id, lock_device, lock_timeout, device)))

        error = vxi11_proto.ERR_NO_ERROR
        lid = 0
        if self.create_link_error is not None:
            error = self.create_link_error
        elif device not in self.devices:
            error = vxi11_proto.ERR_DEVICE_NOT_ACCESSIBLE
        else:
            lid = self._next_lid
            self._next_lid += 1
            self.links[lid] = (client_id, device)

        self.turn_around()
        self.packer.pack_create_link_resp((error, lid, self.abort_port, self.max_recv_size))

    def handle_15(self) -> None:
        """Handle DEVICE_CLEAR (not supported)."""

        self.unpacker.unpack_device_generic_parms()
        self.turn_around()
        self.packer.pack_device_error(vxi11_proto.ERR_OPERATION_NOT_SUPPORTED)

    def handle_23(self) -> None:
        """Handle DESTROY_LINK."""

        lid = self.unpacker.unpack_device_link()
        self.requests.append(("destroy_link", lid))
        error = vxi11_proto.ERR_NO_ERROR
        if self.links.pop(lid, None) is None:
            error = vxi11_proto.ERR_INVALID_LINK_IDENTIFIER
        self.turn_around()
        self.packer.pack_device_error(error)


def unused_port() -> int:
    """Return a local TCP port with nothing listening on it."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def settings_for(pmap_port: int, io_timeout: Optional[float] = 2.0) -> ClientSettings:
    """Client settings pointing at a local portmapper with short timeouts."""

    return ClientSettings(
        portmapper=PortMapperSettings(port=pmap_port, timeout=2.0),
        transport=TransportSettings(
            connect_timeout=2.0,
            io_timeout=io_timeout,
            disconnect_poll_interval=0.05,
        ),
    )
