"""SYNC producers driven by the layer cycle, and master factories that create them."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import CanOpenError
from .frames import BufferedReader, CommInterface, Frame, Header
from .layer import Layer, LayerReport, LayerState, LayerStatus

MAX_SYNC_OVERFLOW = 240


@dataclass(frozen=True, eq=False)
class SyncProperties:
    """Header, period and counter overflow of a SYNC message."""

    header: Header
    period_ms: int
    overflow: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SyncProperties):
            return NotImplemented
        return (
            self.header.key() == other.header.key()
            and self.overflow == other.overflow
            and self.period_ms == other.period_ms
        )

    def __hash__(self) -> int:
        return hash((self.header.key(), self.period_ms, self.overflow))


class SyncCounter(ABC):
    """Something that keeps track of the nodes that need SYNC messages."""

    def __init__(self, properties: SyncProperties) -> None:
        self.properties = properties

    @abstractmethod
    def add_node(self, node: Any) -> None:
        """Register a node that is operational."""

    @abstractmethod
    def remove_node(self, node: Any) -> None:
        """Forget a node that left the operational state."""


class SyncLayer(Layer, SyncCounter):
    """A layer that produces or follows SYNC messages."""

    def __init__(self, properties: SyncProperties) -> None:
        Layer.__init__(self, "Sync layer")
        SyncCounter.__init__(self, properties)


def _sleep_until(deadline: float) -> None:
    remaining = deadline - time.monotonic()
    if remaining > 0:
        time.sleep(remaining)


class ManagingSyncLayer(SyncLayer):
    """A sync layer that keeps the set of registered nodes."""

    def __init__(self, properties: SyncProperties, interface: CommInterface) -> None:
        super().__init__(properties)
        self.interface = interface
        self._step = properties.period_ms / 1000.0
        self._half_step = (properties.period_ms // 2) / 1000.0
        self._nodes: set[Any] = set()
        self._nodes_lock = threading.Lock()

    @property
    def node_count(self) -> int:
        with self._nodes_lock:
            return len(self._nodes)

    def add_node(self, node: Any) -> None:
        with self._nodes_lock:
            self._nodes.add(node)

    def remove_node(self, node: Any) -> None:
        with self._nodes_lock:
            self._nodes.discard(node)

    def handle_shutdown(self, status: LayerStatus) -> None:
        return None

    def handle_halt(self, status: LayerStatus) -> None:
        return None

    def handle_diag(self, report: LayerReport) -> None:
        return None

    def handle_recover(self, status: LayerStatus) -> None:
        return None


class SimpleSyncLayer(ManagingSyncLayer):
    """Sends SYNC every period while nodes are registered; reads happen mid-period."""

    def __init__(self, properties: SyncProperties, interface: CommInterface) -> None:
        super().__init__(properties, interface)
        overflow = properties.overflow
        if overflow == 1 or overflow < 0 or overflow > MAX_SYNC_OVERFLOW:
            raise CanOpenError("SYNC counter overflow is invalid")
        self._overflow = overflow
        self._counter: Optional[int] = 1 if overflow > 1 else None
        now = time.monotonic()
        self._read_time = now
        self._write_time = now

    def _next_frame(self) -> Frame:
        header = self.properties.header
        if self._counter is None:
            data = b""
        else:
            self._counter = 1 if self._counter >= self._overflow else self._counter + 1
            data = bytes([self._counter])
        return Frame(
            id=header.id,
            is_extended=header.is_extended,
            is_rtr=header.is_rtr,
            is_error=header.is_error,
            data=data,
        )

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.INIT:
            _sleep_until(self._read_time)
            self._write_time += self._step

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.INIT:
            _sleep_until(self._write_time)
            frame = self._next_frame()
            if self.node_count:
                self.interface.send(frame)
            self._read_time = time.monotonic() + self._half_step

    def handle_init(self, status: LayerStatus) -> None:
        now = time.monotonic()
        self._write_time = now + self._step
        self._read_time = now + self._half_step


class ExternalSyncLayer(ManagingSyncLayer):
    """Follows SYNC messages produced elsewhere on the bus."""

    def __init__(self, properties: SyncProperties, interface: CommInterface) -> None:
        super().__init__(properties, interface)
        self._reader = BufferedReader(True, 1)

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.INIT:
            if self._reader.read(self._step) is not None:
                time.sleep(self._half_step)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        return None

    def handle_init(self, status: LayerStatus) -> None:
        self._reader.listen(self.interface, self.properties.header)


class Master(ABC):
    """Creates the sync layer used by the nodes of one bus."""

    def __init__(self, interface: CommInterface) -> None:
        self.interface = interface

    @abstractmethod
    def get_sync(self, properties: SyncProperties) -> SyncLayer:
        """A sync layer for ``properties``."""


class SimpleMaster(Master):
    """Produces SYNC messages itself."""

    def get_sync(self, properties: SyncProperties) -> SyncLayer:
        return SimpleSyncLayer(properties, self.interface)


class ExternalMaster(Master):
    """Waits for SYNC messages from another producer."""

    def get_sync(self, properties: SyncProperties) -> SyncLayer:
        return ExternalSyncLayer(properties, self.interface)


MASTERS: dict[str, type[Master]] = {"simple": SimpleMaster, "external": ExternalMaster}


def create_master(name: str, interface: CommInterface) -> Master:
    """Create the master registered under ``name`` ("simple" or "external")."""
    try:
        master_type = MASTERS[name.lower()]
    except KeyError:
        raise ValueError(f"unknown master type {name!r}") from None
    return master_type(interface)