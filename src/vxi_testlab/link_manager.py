"""Client-side state tracking for active VXI-11 links."""

from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from .errors import ConnectionClosedError, Vxi11Error

if TYPE_CHECKING:
    from .client import Vxi11Client


@dataclass(slots=True, eq=False)
class Link:
    """An instrument-assigned session created by ``Vxi11Client.create_link``.

    The link only holds a weak reference to its client; it never keeps the
    client's connection alive.
    """

    lid: int
    device: str
    client_id: int
    abort_port: int
    max_recv_size: int
    _client_ref: "weakref.ReferenceType[Vxi11Client]" = field(repr=False)
    _destroyed: bool = field(default=False, repr=False)

    @property
    def client(self) -> "Vxi11Client":
        client = self._client_ref()
        if client is None:
            raise ConnectionClosedError(f"Client owning link {self.lid} no longer exists")
        return client

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        """Destroy this link on the instrument."""

        self.client.destroy_link(self)

    def __enter__(self) -> "Link":
        return self

    def __exit__(self, *_exc: object) -> None:
        if not self._destroyed:
            self.destroy()


class LinkNotFoundError(Vxi11Error):
    """Raised when a requested link is not tracked by the client."""


class LinkManager:
    """Track the links a client currently holds, keyed by link id."""

    def __init__(self) -> None:
        self._links: Dict[int, Link] = {}
        self._lock = threading.Lock()

    def add(self, link: Link) -> None:
        with self._lock:
            self._links[link.lid] = link

    def discard(self, lid: int) -> Optional[Link]:
        with self._lock:
            return self._links.pop(lid, None)

    def get(self, lid: int) -> Link:
        with self._lock:
            link = self._links.get(lid)
        if link is None:
            raise LinkNotFoundError(f"Link {lid} does not exist")
        return link

    def active_links(self) -> Dict[int, Link]:
        with self._lock:
            return dict(self._links)

    def clear(self) -> Dict[int, Link]:
        """Forget every link and return what was tracked."""

        with self._lock:
            links, self._links = self._links, {}
        return links

    def __len__(self) -> int:
        with self._lock:
            return len(self._links)
