"""Engine health bookkeeping: per-retailer success rates and escalations.

Task-level failures are handled inside the scheduler. Only two things are
escalated here: tasks that exhausted their attempts and circuit breaker
trips.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

from core.domain import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RetailerHealth:
    retailer_id: str
    success_rate: Optional[float]
    samples: int
    breaker_state: str


@dataclass
class Escalation:
    kind: str  # "retries_exhausted" or "circuit_open"
    retailer_id: str
    detail: str
    task_id: Optional[str] = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class EngineHealth:
    queue_depth: int
    in_progress: int
    retailers: Dict[str, RetailerHealth]
    escalations: List[Escalation]
    workers_running: bool = False


class HealthMonitor:
    """Trailing-window success rates per retailer plus recent escalations.

    Args:
        window_seconds: Length of the trailing window for success rates
        max_escalations: How many recent escalations to keep
    """

    def __init__(
        self,
        window_seconds: float = 3600.0,
        max_escalations: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Deque[Tuple[float, bool]]] = {}
        self._escalations: Deque[Escalation] = deque(maxlen=max_escalations)

    def _trim(self, outcomes: Deque[Tuple[float, bool]], now: float) -> None:
        while outcomes and outcomes[0][0] <= now - self.window_seconds:
            outcomes.popleft()

    def record(self, retailer_id: str, success: bool) -> None:
        now = self._clock()
        with self._lock:
            outcomes = self._outcomes.setdefault(retailer_id, deque())
            outcomes.append((now, success))
            self._trim(outcomes, now)

    def success_rate(self, retailer_id: str) -> Tuple[Optional[float], int]:
        now = self._clock()
        with self._lock:
            outcomes = self._outcomes.get(retailer_id)
            if not outcomes:
                return None, 0
            self._trim(outcomes, now)
            if not outcomes:
                return None, 0
            successes = sum(1 for _, ok in outcomes if ok)
            return successes / len(outcomes), len(outcomes)

    def retailer_ids(self) -> List[str]:
        with self._lock:
            return list(self._outcomes)

    def escalate(self, kind: str, retailer_id: str, detail: str, task_id: Optional[str] = None) -> None:
        logger.warning("Escalation [%s] %s: %s", kind, retailer_id, detail)
        with self._lock:
            self._escalations.append(
                Escalation(kind=kind, retailer_id=retailer_id, detail=detail, task_id=task_id)
            )

    def escalations(self) -> List[Escalation]:
        with self._lock:
            return list(self._escalations)
