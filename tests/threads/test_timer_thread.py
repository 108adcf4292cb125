"""
Tests for the TimerThread
"""
# Standard
import time

# Third Party
import pytest

# Local
from kloop.threads import TimerThread
from kloop.test_helpers.helpers import wait_for

## Helpers #####################################################################


class Counter:
    def __init__(self, initial_value=0):
        self.value = initial_value

    def increment(self, value=1):
        self.value += value


## Tests #######################################################################


@pytest.mark.timeout(5)
def test_timer_thread_happy_path():
    timer = TimerThread()
    timer.start_thread()

    value_tracker = Counter()
    now = time.monotonic()
    timer.put_event(now, value_tracker.increment)
    timer.put_event(now + 0.1, value_tracker.increment)
    timer.put_event(now + 0.2, value_tracker.increment, 2)
    timer.put_event(now + 0.3, value_tracker.increment, value=2)
    assert wait_for(lambda: value_tracker.value == 6, timeout=2)
    assert len(timer) == 0
    timer.stop_thread()


@pytest.mark.timeout(5)
def test_timer_thread_canceled():
    timer = TimerThread()

    value_tracker = Counter()
    timer.put_event(time.monotonic(), value_tracker.increment)
    canceled_event = timer.put_event_after(0.2, value_tracker.increment)
    canceled_event.cancel()
    assert len(timer) == 1

    timer.start_thread()
    time.sleep(0.5)
    timer.stop_thread()
    assert value_tracker.value == 1


@pytest.mark.timeout(5)
def test_timer_thread_runs_in_due_order():
    timer = TimerThread()
    order = []
    timer.put_event_after(0.2, order.append, "late")
    timer.put_event_after(0.05, order.append, "early")
    timer.start_thread()
    assert wait_for(lambda: len(order) == 2, timeout=2)
    timer.stop_thread()
    assert order == ["early", "late"]


@pytest.mark.timeout(5)
def test_timer_thread_action_error():
    """Make sure a failing action does not stop the timer"""
    timer = TimerThread()
    timer.start_thread()

    def fail():
        raise RuntimeError("boom")

    value_tracker = Counter()
    timer.put_event_after(0, fail)
    timer.put_event_after(0.05, value_tracker.increment)
    assert wait_for(lambda: value_tracker.value == 1, timeout=2)
    timer.stop_thread()


def test_timer_thread_stopped():
    timer = TimerThread()
    timer.stop_thread()
    assert timer.put_event_after(0, print) is None
