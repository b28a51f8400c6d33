"""Host port selection for game server containers.

``find_free_port`` is advisory: it scans the ports every container on the
host currently claims and returns the lowest one at or above ``base`` that is
not claimed. Nothing is held between that answer and the later bind, so two
callers racing on the same base can be handed the same port.

``reserve`` closes that gap inside this process. It consults a
``PortReservations`` table as well as the runtime, and places a provisional
hold on the port it returns. The caller releases the hold once the bind has
either succeeded or failed; holds that are never released expire after a TTL.
Other processes binding host ports are still not visible to either path.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Set

import docker

from config import MAX_HOST_PORT, MIN_HOST_PORT, PORT_RESERVATION_TTL
from errors import InvalidPort, RuntimeFailure

logger = logging.getLogger(__name__)


def validate_port(value) -> int:
    """Return ``value`` as an int in [MIN_HOST_PORT, MAX_HOST_PORT] or raise InvalidPort."""
    if isinstance(value, bool):
        raise InvalidPort(f"Port must be an integer, got {value!r}")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and value.strip().isdigit():
        port = int(value.strip())
    else:
        raise InvalidPort(f"Port must be an integer, got {value!r}")
    if not (MIN_HOST_PORT <= port <= MAX_HOST_PORT):
        raise InvalidPort(f"Port {port} is outside the allowed range {MIN_HOST_PORT}-{MAX_HOST_PORT}")
    return port


def _host_ports_from_bindings(bindings) -> Iterable[int]:
    if not isinstance(bindings, dict):
        return
    for entries in bindings.values():
        if not entries or not isinstance(entries, list):
            continue
        for entry in entries:
            hp = (entry or {}).get("HostPort")
            if hp and str(hp).isdigit():
                yield int(hp)


def used_host_ports_from_attrs(attrs: dict) -> Set[int]:
    """Host ports one container claims, published or merely declared."""
    used: Set[int] = set()
    used.update(_host_ports_from_bindings((attrs.get("NetworkSettings") or {}).get("Ports")))
    # Stopped containers no longer publish ports but keep their declared bindings.
    used.update(_host_ports_from_bindings((attrs.get("HostConfig") or {}).get("PortBindings")))
    return used


class PortReservations:
    """In-process table of provisional port holds (port -> expiry)."""

    def __init__(self, ttl: float = PORT_RESERVATION_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._holds: Dict[int, float] = {}
        self._lock = threading.Lock()

    def _prune(self) -> None:
        now = self._clock()
        for port in [p for p, expires in self._holds.items() if expires <= now]:
            logger.info(f"Port reservation for {port} expired")
            del self._holds[port]

    def held(self) -> Set[int]:
        with self._lock:
            self._prune()
            return set(self._holds)

    def hold(self, port: int) -> None:
        with self._lock:
            self._holds[port] = self._clock() + self.ttl

    def release(self, ports: Iterable[int]) -> None:
        with self._lock:
            for port in ports:
                self._holds.pop(port, None)

    def claim_lowest(self, base: int, used: Set[int]) -> int:
        """Hold and return the lowest port >= base absent from ``used`` and the table."""
        with self._lock:
            self._prune()
            port = _lowest_free(base, used | set(self._holds))
            self._holds[port] = self._clock() + self.ttl
            return port


def _lowest_free(base: int, used: Set[int]) -> int:
    port = max(int(base), MIN_HOST_PORT)
    while port in used:
        port += 1
    if port > MAX_HOST_PORT:
        raise RuntimeFailure(f"No free host port at or above {base}")
    return port


class PortAllocator:
    def __init__(self, client: docker.DockerClient, reservations: Optional[PortReservations] = None):
        self.client = client
        self.reservations = reservations if reservations is not None else PortReservations()

    def used_host_ports(self) -> Set[int]:
        """Host ports claimed by any container on the host, managed or not."""
        used: Set[int] = set()
        try:
            containers = self.client.containers.list(all=True)
        except docker.errors.DockerException as e:
            raise RuntimeFailure(str(e), e) from e
        for c in containers:
            try:
                used.update(used_host_ports_from_attrs(c.attrs or {}))
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping port scan of container {getattr(c, 'id', '?')}: {e}")
        return used

    def find_free_port(self, base: int) -> int:
        """Lowest port >= base not currently bound. Advisory only; see module docstring."""
        return _lowest_free(base, self.used_host_ports())

    def reserve(self, base: int) -> int:
        """Like ``find_free_port`` but skips held ports and holds the result."""
        used = self.used_host_ports()
        port = self.reservations.claim_lowest(base, used)
        logger.info(f"Reserved host port {port} (base {base})")
        return port

    def hold(self, port: int) -> None:
        """Hold an explicitly requested port so later reservations skip it."""
        self.reservations.hold(port)
        logger.info(f"Holding requested host port {port}")

    def release(self, ports: Iterable[int]) -> None:
        ports = list(ports)
        if ports:
            self.reservations.release(ports)
            logger.debug(f"Released host port reservations {ports}")
