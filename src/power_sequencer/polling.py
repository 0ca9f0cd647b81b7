"""
Bounded polling for Power Sequencer.

Every "wait until X" in the orchestrator goes through wait_until: VM power
convergence, host maintenance entry and exit, host reconnection after boot.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger("power-sequencer")


class Clock:
    """Wall clock used for all waits. Tests substitute a fake one."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, seconds: float, cancel_event: Optional[threading.Event] = None) -> bool:
        """Sleep, waking early on cancellation. Returns False if cancelled."""
        if cancel_event is None:
            self.sleep(seconds)
            return True
        return not cancel_event.wait(max(seconds, 0))


@dataclass
class WaitResult:
    state: Any
    satisfied: bool
    cancelled: bool = False
    elapsed: float = 0.0


def wait_until(
    fetch: Callable[[], Any],
    is_satisfied: Callable[[Any], bool],
    interval: float,
    timeout: float,
    clock: Optional[Clock] = None,
    cancel_event: Optional[threading.Event] = None,
) -> WaitResult:
    """
    Poll until a condition holds or the timeout elapses.

    Args:
        fetch: Returns freshly observed remote state on every call.
        is_satisfied: Predicate over the observed state.
        interval: Seconds between polls.
        timeout: Overall bound in seconds.
        clock: Time source, defaults to the wall clock.
        cancel_event: Ends the wait early when set.

    Returns:
        WaitResult with the last observed state, whether it satisfied the
        predicate, and whether the wait was cut short by cancellation.
    """
    clock = clock or Clock()
    started = clock.now()
    deadline = started + timeout

    while True:
        state = fetch()
        now = clock.now()
        if is_satisfied(state):
            return WaitResult(state, True, elapsed=now - started)
        if now >= deadline:
            logger.debug(f"Condition not met after {now - started:.0f}s")
            return WaitResult(state, False, elapsed=now - started)
        if cancel_event is not None and cancel_event.is_set():
            return WaitResult(state, False, cancelled=True, elapsed=now - started)
        clock.sleep(min(interval, deadline - now))
