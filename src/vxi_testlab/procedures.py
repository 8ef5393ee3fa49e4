"""Instance-scoped registry binding procedure names to RPC identifiers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from vxi11 import vxi11 as vxi11_proto

from .errors import ProcedureError

LOGGER = logging.getLogger(__name__)

UINT32_MAX = 0xFFFFFFFF


@dataclass(frozen=True, slots=True)
class Procedure:
    """Static description of one RPC procedure.

    ``pack`` and ``unpack`` name the python-vxi11 ``Packer``/``Unpacker``
    methods that marshal the request and the reply. ``None`` means void.
    """

    name: str
    number: int
    pack: Optional[str] = None
    unpack: Optional[str] = None


class ProcedureID(NamedTuple):
    program: int
    version: int
    number: int


CORE_PROCEDURES: Tuple[Procedure, ...] = (
    Procedure(
        "create_link",
        vxi11_proto.CREATE_LINK,
        pack="pack_create_link_parms",
        unpack="unpack_create_link_resp",
    ),
    Procedure(
        "destroy_link",
        vxi11_proto.DESTROY_LINK,
        pack="pack_device_link",
        unpack="unpack_device_error",
    ),
)


class ProcedureRegistry:
    """Map procedure names to (program, version, number) triples."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[ProcedureID, Procedure]] = {}
        self._lock = threading.Lock()

    def register(self, program: int, version: int, procedures: Iterable[Procedure]) -> None:
        """Bind every procedure in *procedures* to *program*/*version*.

        Registering the same name with the same triple again is a no-op. A
        name already bound to a different triple is rejected.
        """

        for procedure in procedures:
            self._validate(program, version, procedure)
            proc_id = ProcedureID(program, version, procedure.number)
            with self._lock:
                existing = self._entries.get(procedure.name)
                if existing is not None:
                    if existing[0] == proc_id:
                        LOGGER.debug("Procedure %s already registered as %s", procedure.name, proc_id)
                        continue
                    raise ProcedureError(
                        f"Procedure {procedure.name!r} already registered as {existing[0]}, "
                        f"cannot rebind to {proc_id}"
                    )
                self._entries[procedure.name] = (proc_id, procedure)
            LOGGER.debug("Registered procedure %s as %s", procedure.name, proc_id)

    def lookup(self, name: str) -> Tuple[ProcedureID, Procedure]:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise ProcedureError(f"Procedure {name!r} is not registered")
        return entry

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _validate(program: int, version: int, procedure: Procedure) -> None:
        for label, value in (
            ("program", program),
            ("version", version),
            ("procedure number", procedure.number),
        ):
            if not 0 <= value <= UINT32_MAX:
                raise ProcedureError(
                    f"Invalid {label} {value} for procedure {procedure.name!r}"
                )
        if procedure.pack is not None and not hasattr(vxi11_proto.Packer, procedure.pack):
            raise ProcedureError(
                f"Unknown pack method {procedure.pack!r} for procedure {procedure.name!r}"
            )
        if procedure.unpack is not None and not hasattr(vxi11_proto.Unpacker, procedure.unpack):
            raise ProcedureError(
                f"Unknown unpack method {procedure.unpack!r} for procedure {procedure.name!r}"
            )
