"""
Host port allocation for sandbox previews.

The lowest port at or above the floor that no live session records and no
in-flight setup has reserved wins. Scan and reservation happen under one
lock, so two concurrent setups can never pick the same port; the orchestrator
releases the reservation once the port is recorded on the session (or the
bind failed).
"""

import threading
from typing import Iterable, Optional, Set

from pilot.core.config import settings
from pilot.core.logging_config import logger
from pilot.services.session_store import SessionStore

MAX_PORT = 65535


def lowest_free_port(used: Iterable[int], floor: int) -> int:
    taken = set(used)
    port = floor
    while port in taken:
        port += 1
    if port > MAX_PORT:
        raise RuntimeError(f"No free host port at or above {floor}")
    return port


class PortAllocator:
    """Claim-and-verify allocator backed by the session registry"""

    def __init__(self, session_store: SessionStore, floor: Optional[int] = None):
        self.session_store = session_store
        self.floor = settings.PREVIEW_PORT_FLOOR if floor is None else floor
        self._lock = threading.Lock()
        self._reserved: Set[int] = set()

    def claim(self, exclude: Iterable[int] = ()) -> int:
        """Reserve the lowest free port; `exclude` skips ports known to be bound on the host"""
        with self._lock:
            used = self.session_store.used_ports() | self._reserved | set(exclude)
            port = lowest_free_port(used, self.floor)
            self._reserved.add(port)
        logger.debug(f"[PortAllocator] Claimed port {port}")
        return port

    def release(self, port: int) -> None:
        with self._lock:
            self._reserved.discard(port)

    @property
    def reserved(self) -> Set[int]:
        with self._lock:
            return set(self._reserved)
