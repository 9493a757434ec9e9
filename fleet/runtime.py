from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator

from .errors import PortExhaustedError
from .ports import next_port

UNKNOWN = "unknown"
DOWN = "down"
ACTIVE = "active"
DOWN_TO_ERROR = "down-to-error"
STATUSES = (UNKNOWN, DOWN, ACTIVE, DOWN_TO_ERROR)


@dataclass(frozen=True)
class InstanceStats:
    """Read-only view of an instance handed out beyond the orchestrator."""

    id: str
    name: str
    port: int
    status: str
    previous_status: str
    alive: bool
    safe_mode: bool
    last_error: str


@dataclass
class Instance:
    id: str
    name: str
    port: int
    status: str = UNKNOWN  # unknown|down|active|down-to-error
    previous_status: str = UNKNOWN
    alive: bool = False
    safe_mode: bool = False
    last_error: str = ""

    def set_status(self, status: str) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown instance status {status!r}")
        if status != self.status:
            self.previous_status = self.status
            self.status = status

    def stats(self) -> InstanceStats:
        return InstanceStats(
            id=self.id,
            name=self.name,
            port=self.port,
            status=self.status,
            previous_status=self.previous_status,
            alive=self.alive,
            safe_mode=self.safe_mode,
            last_error=self.last_error,
        )


class InstanceRegistry:
    """In-memory instance-id -> Instance map with one lock per instance."""

    def __init__(self) -> None:
        self.lock = Lock()
        self._instances: dict[str, Instance] = {}
        self._locks: dict[str, Lock] = {}

    def add(self, inst: Instance) -> None:
        with self.lock:
            if inst.id in self._instances:
                raise ValueError(f"Instance '{inst.id}' already registered")
            taken = {i.port for i in self._instances.values()}
            if inst.port in taken:
                raise ValueError(f"Port {inst.port} already used by another instance")
            self._instances[inst.id] = inst
            self._locks[inst.id] = Lock()

    def create(
        self,
        instance_id: str,
        name: str,
        port_from: int,
        port_to: int,
        preferred_port: int | None = None,
    ) -> Instance:
        """Register a new instance on a free port from [port_from, port_to).

        `preferred_port` is kept when it lies in the range and is free.
        """
        with self.lock:
            if instance_id in self._instances:
                raise ValueError(f"Instance '{instance_id}' already registered")
            taken = {i.port for i in self._instances.values()}
            if preferred_port is not None and port_from <= preferred_port < port_to and preferred_port not in taken:
                port: int | None = preferred_port
            else:
                port = next_port(taken, port_from, port_to)
            if port is None:
                raise PortExhaustedError(
                    f"No free port in [{port_from}, {port_to}) for instance '{instance_id}'"
                )
            inst = Instance(id=instance_id, name=name, port=port)
            self._instances[instance_id] = inst
            self._locks[instance_id] = Lock()
            return inst

    def get(self, instance_id: str) -> Instance | None:
        with self.lock:
            return self._instances.get(instance_id)

    def __contains__(self, instance_id: object) -> bool:
        with self.lock:
            return instance_id in self._instances

    def ids(self) -> list[str]:
        with self.lock:
            return list(self._instances)

    def taken_ports(self) -> set[int]:
        with self.lock:
            return {i.port for i in self._instances.values()}

    def stats(self) -> list[InstanceStats]:
        with self.lock:
            return [i.stats() for i in self._instances.values()]

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[Instance | None]:
        """Exclusive access to one instance for the duration of the block."""
        with self.lock:
            lock = self._locks.get(instance_id)
        if lock is None:
            yield None
            return
        with lock:
            yield self.get(instance_id)
