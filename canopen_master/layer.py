"""Layered life cycle (init, read, write, diag, halt, recover, shutdown) and layer groups."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any, Callable, Iterator, Union


class StatusLevel(IntEnum):
    OK = 0
    WARN = 1
    ERROR = 2
    STALE = 3
    UNBOUNDED = 3


class LayerStatus:
    """Accumulates the worst status level and the reasons reported for it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._level = StatusLevel.OK
        self._reason = ""

    def _set(self, level: StatusLevel, reason: str) -> None:
        with self._lock:
            if level > self._level:
                self._level = level
            if reason:
                self._reason = reason if not self._reason else f"{self._reason}; {reason}"

    @property
    def level(self) -> StatusLevel:
        return self._level

    @property
    def reason(self) -> str:
        with self._lock:
            return self._reason

    def warn(self, reason: str) -> None:
        self._set(StatusLevel.WARN, reason)

    def error(self, reason: str) -> None:
        self._set(StatusLevel.ERROR, reason)

    def stale(self, reason: str) -> None:
        self._set(StatusLevel.STALE, reason)

    def bounded(self, level: StatusLevel) -> bool:
        """True if the current level is not worse than ``level``."""
        return self._level <= level

    def equals(self, level: StatusLevel) -> bool:
        return self._level == level

    def __repr__(self) -> str:
        return f"{type(self).__name__}(level={self._level.name}, reason={self._reason!r})"


class LayerReport(LayerStatus):
    """A status that also carries key/value diagnostic entries."""

    def __init__(self) -> None:
        super().__init__()
        self.values: list[tuple[str, str]] = []

    def add(self, key: str, value: Any) -> None:
        self.values.append((key, str(value)))


class LayerState(IntEnum):
    OFF = 0
    INIT = 1
    SHUTDOWN = 2
    ERROR = 3
    HALT = 4
    RECOVER = 5
    READY = 6


class Layer(ABC):
    """A component with a guarded life cycle; subclasses supply the handlers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = LayerState.OFF

    @property
    def layer_state(self) -> LayerState:
        return self._state

    @staticmethod
    def _guarded(status: LayerStatus, handler: Callable[..., Any], *args: Any) -> None:
        try:
            handler(*args)
        except Exception as exc:  # handler failures become status errors
            status.error(f"{type(exc).__name__}: {exc}")

    def read(self, status: LayerStatus) -> None:
        if self._state > LayerState.OFF:
            self._guarded(status, self.handle_read, status, self._state)

    def write(self, status: LayerStatus) -> None:
        if self._state > LayerState.OFF:
            self._guarded(status, self.handle_write, status, self._state)

    def diag(self, report: LayerReport) -> None:
        if self._state > LayerState.SHUTDOWN:
            self._guarded(report, self.handle_diag, report)

    def init(self, status: LayerStatus) -> None:
        if self._state != LayerState.OFF:
            return
        if status.bounded(StatusLevel.WARN):
            self._state = LayerState.INIT
            self._guarded(status, self.handle_init, status)
        if not status.bounded(StatusLevel.WARN):
            self.shutdown(status)
        else:
            self._state = LayerState.READY

    def shutdown(self, status: LayerStatus) -> None:
        if self._state != LayerState.OFF:
            self._state = LayerState.SHUTDOWN
            self._guarded(status, self.handle_shutdown, status)
            self._state = LayerState.OFF

    def halt(self, status: LayerStatus) -> None:
        if self._state > LayerState.HALT:
            self._state = LayerState.HALT
            self._guarded(status, self.handle_halt, status)
            self._state = LayerState.ERROR

    def recover(self, status: LayerStatus) -> None:
        if self._state != LayerState.ERROR:
            return
        if status.bounded(StatusLevel.WARN):
            self._state = LayerState.RECOVER
            self._guarded(status, self.handle_recover, status)
        if not status.bounded(StatusLevel.WARN):
            self.halt(status)
        else:
            self._state = LayerState.READY

    @abstractmethod
    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        """Process inputs."""

    @abstractmethod
    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        """Process outputs."""

    @abstractmethod
    def handle_diag(self, report: LayerReport) -> None:
        """Fill in diagnostics."""

    @abstractmethod
    def handle_init(self, status: LayerStatus) -> None:
        """Bring the layer up."""

    @abstractmethod
    def handle_shutdown(self, status: LayerStatus) -> None:
        """Tear the layer down."""

    @abstractmethod
    def handle_halt(self, status: LayerStatus) -> None:
        """Stop activity after an error."""

    @abstractmethod
    def handle_recover(self, status: LayerStatus) -> None:
        """Resume after a halt."""


LayerCall = Union[str, Callable[[Any, LayerStatus], Any]]


class _LayerVector:
    """An ordered, thread-safe collection of layers that calls them in turn."""

    def __init__(self) -> None:
        self._layers: list[Any] = []
        self._layers_lock = threading.RLock()

    def _add_layer(self, layer: Any) -> None:
        with self._layers_lock:
            self._layers.append(layer)

    def __iter__(self) -> Iterator[Any]:
        with self._layers_lock:
            return iter(list(self._layers))

    def __len__(self) -> int:
        with self._layers_lock:
            return len(self._layers)

    def _call(
        self,
        func: LayerCall,
        status: LayerStatus,
        bound: StatusLevel = StatusLevel.UNBOUNDED,
        reverse: bool = False,
    ) -> bool:
        with self._layers_lock:
            layers = list(self._layers)
        if reverse:
            layers.reverse()
        okay_on_start = status.bounded(bound)
        for layer in layers:
            if isinstance(func, str):
                getattr(layer, func)(status)
            else:
                func(layer, status)
            if okay_on_start and not status.bounded(bound):
                return False
        return True


class LayerGroup(Layer, _LayerVector):
    """A layer that drives a list of sub-layers in order."""

    def __init__(self, name: str) -> None:
        Layer.__init__(self, name)
        _LayerVector.__init__(self)

    def add(self, layer: Any) -> None:
        """Append a sub-layer."""
        self._add_layer(layer)

    def call_func(
        self, func: LayerCall, status: LayerStatus, bound: StatusLevel = StatusLevel.UNBOUNDED
    ) -> bool:
        """Call ``func`` on every layer; False if the status left ``bound`` on the way."""
        return self._call(func, status, bound)

    def _call_or_fail(self, func: str, status: LayerStatus, reverse: bool = False) -> None:
        self._call(func, status, reverse=reverse)
        if not status.bounded(StatusLevel.WARN):
            self._call("halt", status, reverse=reverse)
            self.halt(status)

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        self._call_or_fail("read", status)

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        self._call_or_fail("write", status)

    def handle_diag(self, report: LayerReport) -> None:
        self._call("diag", report)

    def handle_init(self, status: LayerStatus) -> None:
        self._call("init", status, StatusLevel.WARN)

    def handle_shutdown(self, status: LayerStatus) -> None:
        self._call("shutdown", status)

    def handle_halt(self, status: LayerStatus) -> None:
        self._call("halt", status)

    def handle_recover(self, status: LayerStatus) -> None:
        self._call("recover", status, StatusLevel.WARN)


class LayerStack(LayerGroup):
    """A group that writes and shuts down in reverse order."""

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        self._call_or_fail("write", status, reverse=True)

    def handle_shutdown(self, status: LayerStatus) -> None:
        self._call("shutdown", status, reverse=True)


class LayerGroupNoDiag(LayerGroup):
    """A group that reports no diagnostics of its members."""

    def handle_diag(self, report: LayerReport) -> None:
        return None


class DiagGroup(_LayerVector):
    """A collection of layers whose diagnostics are gathered together."""

    def add(self, layer: Any) -> None:
        """Append a layer whose diagnostics are gathered."""
        self._add_layer(layer)

    def diag(self, report: LayerReport) -> None:
        self._call("diag", report)