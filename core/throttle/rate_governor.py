"""Per-retailer request admission.

Every outbound request to a retailer passes through :class:`RateGovernor`.
Each retailer gets two independent limits (requests per minute and per
hour) plus a floor on the spacing between consecutive requests. Admissions
are kept as a sliding-window log, so no 60-second window can ever contain
more than ``requests_per_minute`` requests. A token bucket that refills
continuously would let one extra request through at the window boundary.

Running out of capacity is never an error. Callers get an :class:`Admission`
saying whether to proceed and, if not, how long to wait.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from core.domain import Retailer

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0


@dataclass(frozen=True)
class Admission:
    proceed: bool
    wait: float = 0.0


@dataclass(frozen=True)
class RateLimits:
    per_minute: int = 10
    per_hour: int = 300
    min_delay: float = 2.0

    @classmethod
    def for_retailer(cls, retailer: Retailer) -> "RateLimits":
        return cls(
            per_minute=retailer.requests_per_minute,
            per_hour=retailer.requests_per_hour,
            min_delay=retailer.min_delay_seconds,
        )


class _RetailerWindow:
    """Admission log for a single retailer. Callers hold the governor lock."""

    def __init__(self, limits: RateLimits):
        self.limits = limits
        self.minute: Deque[float] = deque()
        self.hour: Deque[float] = deque()
        self.last: Optional[float] = None

    def _trim(self, now: float) -> None:
        while self.minute and self.minute[0] <= now - MINUTE:
            self.minute.popleft()
        while self.hour and self.hour[0] <= now - HOUR:
            self.hour.popleft()

    def wait_needed(self, now: float) -> float:
        self._trim(now)
        wait = 0.0
        if self.limits.per_minute > 0 and len(self.minute) >= self.limits.per_minute:
            wait = max(wait, self.minute[0] + MINUTE - now)
        if self.limits.per_hour > 0 and len(self.hour) >= self.limits.per_hour:
            wait = max(wait, self.hour[0] + HOUR - now)
        if self.last is not None and self.limits.min_delay > 0:
            wait = max(wait, self.last + self.limits.min_delay - now)
        return wait

    def record(self, now: float) -> None:
        self.minute.append(now)
        self.hour.append(now)
        self.last = now


class RateGovernor:
    """Sliding-window throttle keyed by retailer id.

    Args:
        default_limits: Limits for retailers that were never configured
        max_wait: Default cap (seconds) on how long ``acquire`` blocks
        clock: Monotonic clock in seconds
        sleep: Sleep function; tests pass one that advances a fake clock
    """

    def __init__(
        self,
        default_limits: Optional[RateLimits] = None,
        max_wait: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.default_limits = default_limits or RateLimits()
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._windows: Dict[str, _RetailerWindow] = {}

    def configure(self, retailer: Retailer) -> None:
        """Apply (or refresh) a retailer's limits, keeping its history."""
        limits = RateLimits.for_retailer(retailer)
        with self._lock:
            window = self._windows.get(retailer.id)
            if window is None:
                self._windows[retailer.id] = _RetailerWindow(limits)
            elif window.limits != limits:
                logger.info("Rate limits for %s changed to %s", retailer.id, limits)
                window.limits = limits

    def _window(self, retailer_id: str) -> _RetailerWindow:
        window = self._windows.get(retailer_id)
        if window is None:
            window = _RetailerWindow(self.default_limits)
            self._windows[retailer_id] = window
        return window

    def try_acquire(self, retailer_id: str) -> Admission:
        """Take a slot if one is free right now, without blocking."""
        with self._lock:
            now = self._clock()
            window = self._window(retailer_id)
            wait = window.wait_needed(now)
            if wait <= 0:
                window.record(now)
                return Admission(True)
            return Admission(False, wait)

    def acquire(self, retailer_id: str, max_wait: Optional[float] = None) -> Admission:
        """Block until the retailer admits a request or ``max_wait`` runs out.

        Returns:
            ``Admission(True)`` once a slot was consumed, or
            ``Admission(False, wait)`` when the next slot is further away than
            the remaining wait budget. The caller defers its work; nothing is
            dropped.
        """
        budget = self.max_wait if max_wait is None else max_wait
        deadline = self._clock() + budget
        while True:
            admission = self.try_acquire(retailer_id)
            if admission.proceed:
                return admission
            remaining = deadline - self._clock()
            if admission.wait > remaining:
                logger.debug(
                    "Deferring %s: next slot in %.1fs, budget %.1fs",
                    retailer_id, admission.wait, max(remaining, 0.0),
                )
                return admission
            self._sleep(admission.wait)

    def wait_hint(self, retailer_id: str) -> float:
        """Seconds until the retailer would admit a request (0 if now)."""
        with self._lock:
            return max(0.0, self._window(retailer_id).wait_needed(self._clock()))
