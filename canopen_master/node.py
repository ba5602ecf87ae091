"""A remote CANopen node: NMT state handling, heartbeat supervision, SDO and PDO."""

from __future__ import annotations

import logging
import threading
import time
from enum import IntEnum
from typing import Any, Callable, Iterable, Optional, Union

from .exceptions import CanOpenTimeout
from .frames import CommInterface, Frame, Header, Listener
from .layer import Layer, LayerReport, LayerState, LayerStatus
from .objdict import DataType, Key, ObjectDict
from .pdo import PDOMapper
from .sdo import SDOClient
from .storage import ObjectStorage, StorageEntry
from .sync import SyncCounter

_log = logging.getLogger(__name__)

HEARTBEAT_INDEX = 0x1017
NMT_ERROR_CONTROL_BASE = 0x700


class NodeState(IntEnum):
    UNKNOWN = 255
    BOOT_UP = 0
    STOPPED = 4
    OPERATIONAL = 5
    PRE_OPERATIONAL = 127


class _NMTCommand(IntEnum):
    START = 1
    STOP = 2
    PREPARE = 128
    RESET = 129
    RESET_COM = 130


StateCallback = Callable[[NodeState], None]


class _StateListener:
    """Registration of a state callback; closing it stops delivery."""

    def __init__(self, owner: "Node", callback: StateCallback) -> None:
        self._owner = owner
        self.callback = callback

    def close(self) -> None:
        self._owner._remove_state_listener(self)

    def __enter__(self) -> "_StateListener":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class Node(Layer):
    """One node on the bus, driven through NMT commands and monitored by heartbeat."""

    def __init__(
        self,
        interface: CommInterface,
        object_dict: ObjectDict,
        node_id: int,
        sync: Optional[SyncCounter] = None,
    ) -> None:
        super().__init__("Node 301")
        self.node_id = node_id
        self.interface = interface
        self.reset_timeout = 10.0
        self.state_timeout = 2.0
        self.sdo = SDOClient(interface, object_dict, node_id)
        self._sync = sync
        self._pdo = PDOMapper(interface)
        self._nmt_lock = threading.Lock()
        self._state_cond = threading.Condition()
        self._nmt_state = NodeState.UNKNOWN
        self._state_listeners: list[_StateListener] = []
        self._nmt_listener: Optional[Listener] = None
        self._heartbeat_deadline = 0.0
        try:
            self._heartbeat = self.storage.entry(HEARTBEAT_INDEX, DataType.UNSIGNED16)
        except KeyError:
            self._heartbeat = StorageEntry()

    @property
    def storage(self) -> ObjectStorage:
        return self.sdo.storage

    def get_state(self) -> NodeState:
        with self._nmt_lock:
            return self._nmt_state

    def get(self, key: Union[Key, int], type_tag: Union[int, DataType]) -> Any:
        """Read an object's value from the device."""
        return self.storage.entry(key, type_tag).get()

    def add_state_listener(self, callback: StateCallback) -> _StateListener:
        """Call ``callback`` with every new NMT state; close the result to stop."""
        listener = _StateListener(self, callback)
        with self._state_cond:
            self._state_listeners.append(listener)
        return listener

    def _remove_state_listener(self, listener: _StateListener) -> None:
        with self._state_cond:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

    def _send_command(self, command: _NMTCommand) -> None:
        self.interface.send(Frame(id=0, data=bytes([command, self.node_id])))

    def _heartbeat_interval(self) -> int:
        return self._heartbeat.get_cached() if self._heartbeat.valid() else 0

    def _set_heartbeat_interval(self) -> None:
        if self._heartbeat.valid():
            self._heartbeat.set(self._heartbeat.desc().value().get(DataType.UNSIGNED16))

    def _reset(self, command: _NMTCommand) -> bool:
        with self._nmt_lock:
            self.storage.reset()
            self._send_command(command)
            if self._wait_for(NodeState.BOOT_UP, self.reset_timeout) != 1:
                return False
            self._nmt_state = NodeState.PRE_OPERATIONAL
            self._set_heartbeat_interval()
            return True

    def reset_com(self) -> bool:
        """Reset the node's communication and wait for its boot-up."""
        return self._reset(_NMTCommand.RESET_COM)

    def reset(self) -> bool:
        """Reset the node and wait for its boot-up."""
        return self._reset(_NMTCommand.RESET)

    def prepare(self) -> bool:
        """Switch the node to pre-operational."""
        with self._nmt_lock:
            self._send_command(_NMTCommand.PREPARE)
            return self._wait_for(NodeState.PRE_OPERATIONAL, self.state_timeout) != 0

    def start(self) -> bool:
        """Switch the node to operational."""
        with self._nmt_lock:
            self._send_command(_NMTCommand.START)
            return self._wait_for(NodeState.OPERATIONAL, self.state_timeout) != 0

    def stop(self) -> bool:
        """Stop the node."""
        with self._nmt_lock:
            if self._sync is not None:
                self._sync.remove_node(self)
            self._send_command(_NMTCommand.STOP)
            return True

    def _switch_state(self, value: int) -> None:
        """Apply a state reported by the node; the caller holds the state condition."""
        changed = self._nmt_state != value
        if value == NodeState.OPERATIONAL:
            if changed and self._sync is not None:
                self._sync.add_node(self)
        elif value in (NodeState.BOOT_UP, NodeState.PRE_OPERATIONAL, NodeState.STOPPED):
            if changed and self._sync is not None:
                self._sync.remove_node(self)
        if not changed:
            return
        try:
            state = NodeState(value)
        except ValueError:
            _log.warning("node %d reported unknown state %d", self.node_id, value)
            return
        self._nmt_state = state
        for listener in list(self._state_listeners):
            listener.callback(state)
        self._state_cond.notify_all()

    def _handle_nmt(self, frame: Frame) -> None:
        if frame.dlc < 1:
            return
        with self._state_cond:
            interval = self._heartbeat_interval()
            if interval:
                self._heartbeat_deadline = time.monotonic() + 3 * interval / 1000.0
            self._switch_state(frame.data[0])

    def _wait_for(self, state: NodeState, timeout: float) -> int:
        """1 if reached, -1 if assumed for lack of heartbeat, 0 on timeout."""
        with self._state_cond:
            self._state_cond.wait_for(lambda: self._nmt_state == state, timeout)
            if self._nmt_state != state:
                if self._heartbeat_interval() == 0:
                    self._switch_state(state)
                    return -1
                return 0
            return 1

    def _check_heartbeat(self) -> bool:
        if self._heartbeat_interval() == 0:
            return True  # disabled
        with self._state_cond:
            return self._heartbeat_deadline >= time.monotonic()

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.INIT:
            if not self._check_heartbeat():
                status.error("heartbeat problem")
            elif self.get_state() != NodeState.OPERATIONAL:
                status.error("not operational")
            else:
                self._pdo.read(status)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state > LayerState.INIT:
            if self.get_state() != NodeState.OPERATIONAL:
                status.error("not operational")
            elif not self._pdo.write():
                status.error("PDO write problem")

    def handle_diag(self, report: LayerReport) -> None:
        state = self.get_state()
        if state != NodeState.OPERATIONAL:
            report.error("Mode not operational")
            report.add("Node state", int(state))
        elif not self._check_heartbeat():
            report.error("Heartbeat timeout")

    def handle_init(self, status: LayerStatus) -> None:
        if self._nmt_listener is not None:
            self._nmt_listener.close()
        self._nmt_listener = self.interface.create_listener(
            self._handle_nmt, Header(NMT_ERROR_CONTROL_BASE + self.node_id)
        )
        self.sdo.init()
        try:
            if not self.reset_com():
                raise CanOpenTimeout("reset_timeout")
        except CanOpenTimeout:
            status.error(f"could not reset node '{self.node_id}'")
            return
        if not self._pdo.init(self.storage, status):
            return
        self.storage.init_all()
        self.sdo.init()  # reread SDO parameters
        try:
            if not self.start():
                raise CanOpenTimeout("start timeout")
        except CanOpenTimeout:
            status.error(f"could not start node '{self.node_id}'")

    def handle_recover(self, status: LayerStatus) -> None:
        try:
            self.start()
        except CanOpenTimeout:
            status.error(f"could not start node '{self.node_id}'")

    def handle_shutdown(self, status: LayerStatus) -> None:
        if self._heartbeat_interval() > 0:
            self._heartbeat.set(0)
        self.stop()
        if self._nmt_listener is not None:
            self._nmt_listener.close()
            self._nmt_listener = None
        with self._state_cond:
            self._switch_state(NodeState.UNKNOWN)

    def handle_halt(self, status: LayerStatus) -> None:
        return None


class NodeChain:
    """A sequence of nodes that receive NMT commands together."""

    def __init__(self, nodes: Iterable[Node] = ()) -> None:
        self._elements: list[Node] = list(nodes)

    @property
    def elements(self) -> tuple[Node, ...]:
        return tuple(self._elements)

    def add(self, node: Node) -> None:
        self._elements.append(node)

    def start(self) -> None:
        for node in self._elements:
            node.start()

    def stop(self) -> None:
        for node in self._elements:
            node.stop()

    def reset(self) -> None:
        for node in self._elements:
            node.reset()

    def reset_com(self) -> None:
        for node in self._elements:
            node.reset_com()

    def prepare(self) -> None:
        for node in self._elements:
            node.prepare()