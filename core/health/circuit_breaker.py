"""Per-retailer circuit breakers driven by the trailing fetch failure rate."""

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, Optional

from core.domain import Retailer

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, dispatch suspended
    HALF_OPEN = "half_open"  # Cooldown over, one trial request allowed


class CircuitBreaker:
    """Breaker for a single retailer.

    The failure rate is measured over the last ``window`` fetch outcomes and
    only once ``min_samples`` have been seen. Crossing ``tolerance`` opens the
    circuit for ``cooldown`` seconds. After that one trial request is let
    through: success closes the circuit, failure reopens it.
    """

    def __init__(
        self,
        retailer_id: str,
        tolerance: float = 0.15,
        window: int = 100,
        min_samples: int = 20,
        cooldown: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retailer_id = retailer_id
        self.tolerance = tolerance
        self.min_samples = min_samples
        self.cooldown = cooldown
        self._clock = clock
        self.outcomes: Deque[bool] = deque(maxlen=window)
        self.state = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        self.trial_started: Optional[float] = None
        self.trips = 0

    @property
    def failure_rate(self) -> float:
        if not self.outcomes:
            return 0.0
        return self.outcomes.count(False) / len(self.outcomes)

    def _refresh(self) -> None:
        if self.state == CircuitState.OPEN and self._clock() - self.opened_at >= self.cooldown:
            logger.info("Circuit for %s half-open after cooldown", self.retailer_id)
            self.state = CircuitState.HALF_OPEN
            self.trial_started = None

    def can_dispatch(self) -> bool:
        self._refresh()
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.HALF_OPEN:
            # A trial request whose outcome never arrived does not block forever.
            return self.trial_started is None or self._clock() - self.trial_started >= self.cooldown
        return False

    def on_dispatch(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.trial_started = self._clock()

    def record(self, success: bool) -> bool:
        """Record a fetch outcome. Returns True when this outcome tripped the breaker."""
        self._refresh()
        if self.state == CircuitState.HALF_OPEN:
            if success:
                logger.info("Circuit for %s closed (trial request succeeded)", self.retailer_id)
                self.state = CircuitState.CLOSED
                self.outcomes.clear()
                self.trial_started = None
                return False
            self._open("trial request failed")
            return True

        self.outcomes.append(success)
        if self.state == CircuitState.CLOSED and not success:
            if len(self.outcomes) >= self.min_samples and self.failure_rate > self.tolerance:
                self._open(f"failure rate {self.failure_rate:.1%} over {len(self.outcomes)} requests")
                return True
        return False

    def _open(self, reason: str) -> None:
        logger.warning("Circuit for %s OPEN: %s", self.retailer_id, reason)
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.trial_started = None
        self.outcomes.clear()
        self.trips += 1

    def current_state(self) -> CircuitState:
        self._refresh()
        return self.state


class BreakerBoard:
    """All retailers' breakers behind one lock."""

    def __init__(
        self,
        window: int = 100,
        min_samples: int = 20,
        cooldown: float = 900.0,
        default_tolerance: float = 0.15,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Optional[Callable[[str, float], None]] = None,
    ):
        self.window = window
        self.min_samples = min_samples
        self.cooldown = cooldown
        self.default_tolerance = default_tolerance
        self._clock = clock
        self._on_trip = on_trip
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def _breaker(self, retailer_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(retailer_id)
        if breaker is None:
            breaker = CircuitBreaker(
                retailer_id,
                tolerance=self.default_tolerance,
                window=self.window,
                min_samples=self.min_samples,
                cooldown=self.cooldown,
                clock=self._clock,
            )
            self._breakers[retailer_id] = breaker
        return breaker

    def configure(self, retailer: Retailer) -> None:
        with self._lock:
            self._breaker(retailer.id).tolerance = retailer.max_failure_rate_percent / 100.0

    def can_dispatch(self, retailer_id: str) -> bool:
        with self._lock:
            return self._breaker(retailer_id).can_dispatch()

    def on_dispatch(self, retailer_id: str) -> None:
        with self._lock:
            self._breaker(retailer_id).on_dispatch()

    def record(self, retailer_id: str, success: bool) -> None:
        with self._lock:
            breaker = self._breaker(retailer_id)
            tripped = breaker.record(success)
            cooldown = breaker.cooldown
        if tripped and self._on_trip is not None:
            self._on_trip(retailer_id, cooldown)

    def state(self, retailer_id: str) -> CircuitState:
        with self._lock:
            return self._breaker(retailer_id).current_state()

    def states(self) -> Dict[str, CircuitState]:
        with self._lock:
            return {rid: b.current_state() for rid, b in self._breakers.items()}
