"""A periodic timer that runs its callback on a background thread."""

from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Callable, Optional, Union

Period = Union[float, int, timedelta]


def _seconds(period: Period) -> float:
    value = period.total_seconds() if isinstance(period, timedelta) else float(period)
    if value < 0:
        raise ValueError("timer period must not be negative")
    return value


class Timer:
    """Calls a function every period for as long as it returns True."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._func: Optional[Callable[[], bool]] = None
        self._period = 0.0
        self._deadline: Optional[float] = None
        self._generation = 0
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="canopen-timer", daemon=True)
        self._thread.start()

    @property
    def period(self) -> float:
        with self._cond:
            return self._period

    def _schedule(self, deadline: Optional[float]) -> None:
        self._generation += 1
        self._deadline = deadline
        self._cond.notify_all()

    def start(self, func: Callable[[], bool], period: Period, start_now: bool = True) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("timer is closed")
            self._func = func
            self._period = _seconds(period)
            if start_now:
                self._schedule(time.monotonic() + self._period)

    def stop(self) -> None:
        with self._cond:
            self._schedule(None)

    def restart(self) -> None:
        with self._cond:
            if self._closed:
                raise RuntimeError("timer is closed")
            self._schedule(time.monotonic() + self._period)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._schedule(None)
        if self._thread is not threading.current_thread():
            self._thread.join()

    def __enter__(self) -> "Timer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._closed and (
                    self._deadline is None or self._deadline > time.monotonic()
                ):
                    timeout = None if self._deadline is None else self._deadline - time.monotonic()
                    self._cond.wait(timeout)
                if self._closed:
                    return
                func, expired_at, generation = self._func, self._deadline, self._generation
                self._deadline = None
            if func is not None and func():
                with self._cond:
                    if generation == self._generation and not self._closed:
                        self._deadline = expired_at + self._period
                        self._cond.notify_all()