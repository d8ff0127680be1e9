"""
The TimerThread is a helper class used to run scheduled events
"""

# Standard
from datetime import datetime
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, Optional
import threading

# First Party
import alog

# Local
from ..types import TimerEvent
from .base import ThreadBase

log = alog.use_channel("TMRTHRD")

# Shortest time the timer sleeps for, in seconds
MIN_SLEEP_TIME = 0.1


class TimerThread(ThreadBase):
    """The TimerThread class is a helper class to run scheduled actions. This is very similar
    to threading.Timer stdlib class except that it uses one shared thread for all events
    instead of a thread per event."""

    def __init__(self, name: Optional[str] = None):
        """Initialize a priorityqueue like object and a synchronization object"""
        super().__init__(name=name or "timer_thread", daemon=True)

        # A heap is used instead of a queue.PriorityQueue since synchronization
        # is already handled by the notify condition
        self.timer_heap = []
        self.notify_condition = threading.Condition()

    def run(self):
        """The TimerThread's control loop sleeps until the next scheduled
        event and executes all pending actions."""
        while not self.should_stop():
            # Wait until the next event or a new event is pushed
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep:
                    log.debug2(
                        "Timer waiting %ss until next scheduled event", time_to_sleep
                    )
                else:
                    log.debug2("Timer waiting until event queued")
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception as err:  # pylint: disable=broad-exception-caught
                    log.warning(
                        "Timer action %s raised: %s", event.action, err, exc_info=True
                    )

    ## Class Interface #########################################################

    def stop_thread(self):
        """Override stop_thread to wake the control loop"""
        super().stop_thread()
        with self.notify_condition:
            log.debug("Notifying TimerThread of shutdown")
            self.notify_condition.notify_all()

    ## Public Interface ########################################################

    def put_event(
        self, time: datetime, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time: datetime
                The datetime to execute the event at
            action: Callable
                The action to execute
            *args: Any
                Args to pass to the action
            **kwargs: Dict
                Kwargs to pass to the action

        Returns:
            event: Optional[TimerEvent]
                TimerEvent describing the event and can be cancelled
        """
        # Don't allow pushing to a stopped thread
        if self.should_stop():
            return None

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    ## Implementation ##########################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        with self.notify_condition:
            obj = self._peek_next_event()
            if obj:
                time_to_sleep = (obj.time - datetime.now()).total_seconds()
                return max(time_to_sleep, MIN_SLEEP_TIME)
            return None

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop every event that is due, skipping cancelled ones"""
        event_list = []
        with self.notify_condition:
            while self.timer_heap:
                if self.timer_heap[0].time >= datetime.now():
                    break
                obj = heappop(self.timer_heap)
                if obj.stale:
                    log.debug2("Skipping timer event %s", obj)
                    continue
                event_list.append(obj)
        return event_list

    def _peek_next_event(self) -> Optional[TimerEvent]:
        with self.notify_condition:
            if self.timer_heap:
                return self.timer_heap[0]
            return None
