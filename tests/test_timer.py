import threading
import time
from datetime import timedelta

import pytest

from canopen_master.timer import Timer


def test_repeats_while_callback_returns_true():
    done = threading.Event()
    calls = []

    def tick():
        calls.append(1)
        if len(calls) >= 3:
            done.set()
            return False
        return True

    with Timer() as timer:
        timer.start(tick, 0.01)
        assert timer.period == pytest.approx(0.01)
        assert done.wait(2.0)
        time.sleep(0.05)
    assert len(calls) == 3


def test_single_shot_when_callback_returns_false():
    calls = []
    with Timer() as timer:
        timer.start(lambda: calls.append(1) and False, timedelta(milliseconds=10))
        time.sleep(0.1)
    assert calls == [1]


def test_stop_prevents_firing():
    calls = []
    with Timer() as timer:
        timer.start(lambda: calls.append(1) or True, 0.05)
        timer.stop()
        time.sleep(0.15)
    assert calls == []


def test_deferred_start_and_restart():
    fired = threading.Event()
    with Timer() as timer:
        timer.start(lambda: fired.set() or False, 0.01, start_now=False)
        assert not fired.wait(0.05)
        assert timer.period == pytest.approx(0.01)
        timer.restart()
        assert fired.wait(2.0)


def test_closed_timer_rejects_start():
    timer = Timer()
    timer.close()
    with pytest.raises(RuntimeError):
        timer.start(lambda: True, 0.01)


def test_negative_period_rejected():
    with Timer() as timer:
        with pytest.raises(ValueError):
            timer.start(lambda: True, -1)