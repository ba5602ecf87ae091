"""CAN headers and frames, an in-process communication interface and a buffered reader."""

from __future__ import annotations

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

STANDARD_ID_MASK = 0x7FF
EXTENDED_ID_MASK = 0x1FFFFFFF
MAX_DLC = 8

FrameCallback = Callable[["Frame"], None]


@dataclass(frozen=True)
class Header:
    """Identifier and flags of a CAN message."""

    id: int = 0
    is_extended: bool = False
    is_rtr: bool = False
    is_error: bool = False

    def key(self) -> int:
        """A value that is equal for equal identifiers and flags."""
        return (
            self.id
            | (int(self.is_extended) << 31)
            | (int(self.is_rtr) << 30)
            | (int(self.is_error) << 29)
        )

    def is_valid(self) -> bool:
        limit = EXTENDED_ID_MASK if self.is_extended else STANDARD_ID_MASK
        return 0 <= self.id <= limit


@dataclass(frozen=True)
class Frame(Header):
    """A CAN message: a header plus up to eight data bytes."""

    data: bytes = b""

    def __post_init__(self) -> None:
        payload = bytes(self.data)
        if len(payload) > MAX_DLC:
            raise ValueError(f"CAN frame carries at most {MAX_DLC} bytes, got {len(payload)}")
        object.__setattr__(self, "data", payload)

    @property
    def dlc(self) -> int:
        return len(self.data)

    @property
    def header(self) -> Header:
        return Header(self.id, self.is_extended, self.is_rtr, self.is_error)

    def __str__(self) -> str:
        ident = f"{self.id:08x}" if self.is_extended else f"{self.id:x}"
        if self.is_rtr:
            return f"{ident}#R"
        return f"{ident}#{self.data.hex()}"


class Listener:
    """Registration of a callback; closing it stops delivery."""

    def __init__(
        self, interface: "CommInterface", callback: FrameCallback, header: Optional[Header]
    ) -> None:
        self._interface = interface
        self.callback = callback
        self.header = header

    def matches(self, frame: Frame) -> bool:
        return self.header is None or self.header.key() == frame.key()

    def close(self) -> None:
        self._interface._remove(self)

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class CommInterface:
    """Sends frames through a transmit callable and dispatches received frames to listeners."""

    def __init__(
        self, transmit: Optional[Callable[[Frame], object]] = None, loopback: bool = False
    ) -> None:
        self._transmit = transmit
        self._loopback = loopback
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def send(self, frame: Frame) -> bool:
        result = self._transmit(frame) if self._transmit is not None else True
        if self._loopback:
            self.dispatch(frame)
        return result is not False

    def create_listener(
        self, callback: FrameCallback, header: Optional[Header] = None
    ) -> Listener:
        """Deliver frames with ``header`` (or all frames if None) to ``callback``."""
        listener = Listener(self, callback, header)
        with self._lock:
            self._listeners.append(listener)
        return listener

    def dispatch(self, frame: Frame) -> None:
        """Hand a received frame to every matching listener."""
        with self._lock:
            targets = [listener for listener in self._listeners if listener.matches(frame)]
        for listener in targets:
            listener.callback(frame)

    def _remove(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)


class BufferedReader:
    """Queues frames of one header for blocking reads."""

    def __init__(self, enabled: bool = True, max_len: int = 0) -> None:
        self._enabled = enabled
        self._buffer: deque[Frame] = deque(maxlen=max_len or None)
        self._cond = threading.Condition()
        self._listener: Optional[Listener] = None

    def listen(self, interface: CommInterface, header: Optional[Header] = None) -> None:
        with self._cond:
            if self._listener is not None:
                self._listener.close()
            self._buffer.clear()
            self._listener = interface.create_listener(self._handle, header)

    def _handle(self, frame: Frame) -> None:
        with self._cond:
            if self._enabled:
                self._buffer.append(frame)
                self._cond.notify_all()

    def read(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """Return the oldest buffered frame, or None if none arrives within ``timeout`` seconds."""
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._buffer), timeout):
                return None
            return self._buffer.popleft()

    @contextmanager
    def enabled(self) -> Iterator["BufferedReader"]:
        """Buffer frames for the duration of the block."""
        with self._cond:
            previous = self._enabled
            self._enabled = True
        try:
            yield self
        finally:
            with self._cond:
                self._enabled = previous
                if not previous:
                    self._buffer.clear()