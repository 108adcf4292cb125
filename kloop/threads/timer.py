"""
The TimerThread is a helper class used to run scheduled events
"""

# Standard
from dataclasses import dataclass, field
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, Optional
import threading
import time

# First Party
import alog

# Local
from ..constants import MIN_SLEEP_TIME
from .base import ThreadBase

log = alog.use_channel("TMRTHRD")


@dataclass(order=True)
class TimerEvent:
    """Class for keeping track of an item in the timer queue. The due time is
    the only comparable field to support the TimerThread's priority queue"""

    due: float
    action: Callable = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        queue"""
        self.stale = True


class TimerThread(ThreadBase):
    """The TimerThread class is a helper class to run scheduled actions. This is
    very similar to the threading.Timer stdlib class except that it uses one
    thread for all events instead of a thread per event. Due times are
    time.monotonic() values."""

    def __init__(self, name: Optional[str] = None):
        """Initialize a priorityqueue like object and a synchronization object"""
        super().__init__(name=name or "timer_thread", daemon=True)

        # Use a heap queue instead of a queue.PriorityQueue as we're already
        # handling synchronization with the notify condition
        self.timer_heap: List[TimerEvent] = []
        self.notify_condition = threading.Condition()

    def run(self):
        """The TimerThread's control loop sleeps until the next scheduled
        event and executes all pending actions."""
        while not self.should_stop():
            # Wait until the next event or a new event is pushed
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                log.debug4("Timer waiting %ss", time_to_sleep)
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            # Run actions outside the lock so they may schedule new events
            for event in self._get_all_current_events():
                log.debug3("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception:  # pylint: disable=broad-except
                    log.error("Timer action %s failed", event.action, exc_info=True)

    ## Class Interface #########################################################

    def stop_thread(self):
        """Override stop_thread to wake the control loop"""
        super().stop_thread()
        with self.notify_condition:
            log.debug2("Notifying TimerThread of shutdown")
            self.notify_condition.notify_all()

    ## Public Interface ########################################################

    def put_event(
        self, due: float, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            due: float
                The time.monotonic() value to execute the event at
            action: Callable
                The action to execute
            *args: Any
                Args to pass to the action
            **kwargs: Dict
                Kwargs to pass to the action

        Returns:
            event: Optional[TimerEvent]
                TimerEvent describing the event which can be cancelled. None if
                the timer is stopped
        """
        # Don't allow pushing to a stopped thread
        if self.should_stop():
            return None

        event = TimerEvent(due=due, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    def put_event_after(
        self, delay: float, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to run delay seconds from now"""
        return self.put_event(time.monotonic() + delay, action, *args, **kwargs)

    def __len__(self):
        with self.notify_condition:
            return len([event for event in self.timer_heap if not event.stale])

    ## Time Functions  #########################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        """Calculate the time to sleep based on the current queue

        Returns:
            time_to_wait: Optional[float]
               The time to wait if there's an object in the queue"""
        with self.notify_condition:
            if self.timer_heap:
                return max(self.timer_heap[0].due - time.monotonic(), MIN_SLEEP_TIME)
            return None

    ## Queue Functions  ########################################################

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop every event that is due

        Returns:
            current_events: List[TimerEvent]
                List of timer events to execute
        """
        event_list = []
        now = time.monotonic()
        with self.notify_condition:
            while self.timer_heap and self.timer_heap[0].due <= now:
                event = heappop(self.timer_heap)
                if event.stale:
                    log.debug3("Skipping timer event %s", event)
                    continue
                event_list.append(event)
        return event_list
