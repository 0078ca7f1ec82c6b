"""In-memory scrape task queue.

Tasks live in an arena keyed by id. Two heaps index the pending ones:

- ready:   (-priority, scheduled_for, seq) for tasks that are due
- delayed: (scheduled_for, seq) for tasks scheduled in the future

Heap entries are never removed in place. Each task remembers the sequence
number of its current entry and anything else popped off a heap is stale
and dropped. All state sits behind a single lock that is never held across
network I/O.

A listing is never claimed while another task for it is in progress, and
there is at most one pending task per listing: new demand for a listing
that is already pending is merged into the existing task.
"""

import heapq
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

from core.domain import FailureKind, ScrapeTask, TaskSource, TaskStatus, new_id, utcnow
from core.throttle.rate_governor import Admission

logger = logging.getLogger(__name__)

Admit = Callable[[str], Admission]


@dataclass
class Lease:
    """Exclusive right to run one attempt of a task.

    ``task`` is a snapshot taken at claim time. The lease stops counting once
    it expires or is cancelled; anything reported against it afterwards is
    ignored by the queue.
    """

    task: ScrapeTask
    token: str
    expires_at: datetime
    cancel: threading.Event = field(default_factory=threading.Event)

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


@dataclass
class ClaimResult:
    lease: Optional[Lease] = None
    # Seconds until something might become claimable; None when unknown
    wait: Optional[float] = None


class TaskQueue:
    """Priority queue of scrape tasks with per-listing mutual exclusion.

    Args:
        lease_seconds: How long a claimed task may run before it is reaped
        max_finished: Finished tasks kept around for status lookups
    """

    def __init__(self, lease_seconds: float = 120.0, max_finished: int = 10000):
        self.lease_seconds = lease_seconds
        self.max_finished = max_finished
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._seq = itertools.count()

        self._tasks: Dict[str, ScrapeTask] = {}
        self._entry: Dict[str, int] = {}
        self._ready: List[Tuple[int, datetime, int, str]] = []
        self._delayed: List[Tuple[datetime, int, str]] = []
        self._pending_by_listing: Dict[str, str] = {}
        self._in_progress: Dict[str, str] = {}
        self._leases: Dict[str, Lease] = {}
        self._finished: Deque[str] = deque()

    # -- internal helpers, lock held ------------------------------------

    def _push(self, task: ScrapeTask, now: datetime) -> None:
        seq = next(self._seq)
        self._entry[task.id] = seq
        if task.scheduled_for <= now:
            heapq.heappush(self._ready, (-task.priority, task.scheduled_for, seq, task.id))
        else:
            heapq.heappush(self._delayed, (task.scheduled_for, seq, task.id))

    def _is_current(self, task_id: str, seq: int) -> bool:
        task = self._tasks.get(task_id)
        return (
            task is not None
            and task.status == TaskStatus.PENDING
            and self._entry.get(task_id) == seq
        )

    def _promote_due(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            scheduled_for, seq, task_id = heapq.heappop(self._delayed)
            if self._is_current(task_id, seq):
                task = self._tasks[task_id]
                heapq.heappush(self._ready, (-task.priority, scheduled_for, seq, task_id))

    def _finish(self, task: ScrapeTask, status: TaskStatus, now: datetime) -> None:
        task.status = status
        task.completed_at = now
        self._entry.pop(task.id, None)
        if self._pending_by_listing.get(task.listing_id) == task.id:
            del self._pending_by_listing[task.listing_id]
        self._finished.append(task.id)
        while len(self._finished) > self.max_finished:
            self._tasks.pop(self._finished.popleft(), None)

    def _release(self, lease: Lease) -> Optional[ScrapeTask]:
        """Drop a live lease and return its task, or None for a stale lease."""
        current = self._leases.get(lease.task_id)
        if current is None or current.token != lease.token:
            logger.debug("Ignoring stale lease for task %s", lease.task_id)
            return None
        del self._leases[lease.task_id]
        task = self._tasks[lease.task_id]
        if self._in_progress.get(task.listing_id) == task.id:
            del self._in_progress[task.listing_id]
        return task

    def _requeue(self, task: ScrapeTask, scheduled_for: datetime, now: datetime) -> None:
        """Put a task that just left in_progress back to pending."""
        other_id = self._pending_by_listing.get(task.listing_id)
        if other_id is not None and other_id != task.id:
            # Demand arrived while this attempt ran; fold this task into it.
            other = self._tasks[other_id]
            if task.priority > other.priority:
                other.priority = task.priority
                self._push(other, now)
            task.last_error = f"superseded by task {other_id}"
            self._finish(task, TaskStatus.SKIPPED, now)
            return
        task.status = TaskStatus.PENDING
        task.scheduled_for = scheduled_for
        self._pending_by_listing[task.listing_id] = task.id
        self._push(task, now)

    # -- public API -----------------------------------------------------

    def enqueue(
        self,
        listing_id: str,
        retailer_id: str,
        priority: int,
        source: TaskSource,
        scheduled_for: Optional[datetime] = None,
        max_attempts: int = 3,
        now: Optional[datetime] = None,
    ) -> str:
        """Add a task, or merge the demand into the listing's pending task.

        Returns:
            Id of the new or the existing pending task
        """
        now = now or utcnow()
        scheduled_for = scheduled_for or now
        with self._changed:
            existing_id = self._pending_by_listing.get(listing_id)
            if existing_id is not None:
                task = self._tasks[existing_id]
                changed = False
                if priority > task.priority:
                    task.priority = priority
                    task.source = source
                    changed = True
                if scheduled_for < task.scheduled_for:
                    task.scheduled_for = scheduled_for
                    changed = True
                if changed:
                    self._push(task, now)
                    self._changed.notify_all()
                logger.debug("Merged %s demand for listing %s into task %s", source.value, listing_id, task.id)
                return task.id

            task = ScrapeTask(
                listing_id=listing_id,
                retailer_id=retailer_id,
                priority=priority,
                source=source,
                scheduled_for=scheduled_for,
                max_attempts=max_attempts,
                created_at=now,
            )
            self._tasks[task.id] = task
            self._pending_by_listing[listing_id] = task.id
            self._push(task, now)
            self._changed.notify_all()
            return task.id

    def claim(self, admit: Admit, now: Optional[datetime] = None) -> ClaimResult:
        """Claim the best due task whose listing is free and whose retailer admits it.

        ``admit`` is asked at most once per retailer per call and consumes
        the retailer's capacity when it says yes.
        """
        now = now or utcnow()
        with self._lock:
            self._promote_due(now)
            skipped = []
            refused: Dict[str, float] = {}
            lease = None

            while self._ready:
                entry = heapq.heappop(self._ready)
                _, _, seq, task_id = entry
                if not self._is_current(task_id, seq):
                    continue
                task = self._tasks[task_id]
                if task.listing_id in self._in_progress or task.retailer_id in refused:
                    skipped.append(entry)
                    continue

                admission = admit(task.retailer_id)
                if not admission.proceed:
                    refused[task.retailer_id] = admission.wait
                    skipped.append(entry)
                    continue

                task.status = TaskStatus.IN_PROGRESS
                task.attempts += 1
                task.started_at = now
                self._entry.pop(task.id, None)
                del self._pending_by_listing[task.listing_id]
                self._in_progress[task.listing_id] = task.id
                lease = Lease(
                    task=replace(task),
                    token=new_id(),
                    expires_at=now + timedelta(seconds=self.lease_seconds),
                )
                self._leases[task.id] = lease
                break

            for entry in skipped:
                heapq.heappush(self._ready, entry)

            if lease is not None:
                return ClaimResult(lease=lease)

            waits = [w for w in refused.values() if w > 0]
            if self._delayed:
                waits.append(max((self._delayed[0][0] - now).total_seconds(), 0.0))
            return ClaimResult(wait=min(waits) if waits else None)

    def complete(self, lease: Lease, response_time_ms: Optional[int] = None, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._changed:
            task = self._release(lease)
            if task is None:
                return False
            task.response_time_ms = response_time_ms
            task.last_error = None
            self._finish(task, TaskStatus.SUCCEEDED, now)
            self._changed.notify_all()
            return True

    def retry(
        self,
        lease: Lease,
        scheduled_for: datetime,
        kind: FailureKind,
        error: str,
        refund_attempt: bool = False,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return a failed attempt's task to pending for another try."""
        now = now or utcnow()
        with self._changed:
            task = self._release(lease)
            if task is None:
                return False
            task.last_error = error
            task.last_failure_kind = kind
            task.source = TaskSource.RETRY
            if refund_attempt:
                task.attempts -= 1
                task.rate_limit_deferrals += 1
            self._requeue(task, scheduled_for, now)
            self._changed.notify_all()
            return True

    def fail(self, lease: Lease, kind: Optional[FailureKind], error: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._changed:
            task = self._release(lease)
            if task is None:
                return False
            task.last_error = error
            task.last_failure_kind = kind
            self._finish(task, TaskStatus.FAILED, now)
            self._changed.notify_all()
            return True

    def skip(self, lease: Lease, reason: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        with self._changed:
            task = self._release(lease)
            if task is None:
                return False
            task.last_error = reason
            self._finish(task, TaskStatus.SKIPPED, now)
            self._changed.notify_all()
            return True

    def reap_expired(self, now: Optional[datetime] = None) -> List[ScrapeTask]:
        """Cancel leases past their expiry and give their tasks back.

        A task whose attempts are used up fails instead of going back to
        pending.
        """
        now = now or utcnow()
        reaped = []
        with self._changed:
            for lease in [held for held in self._leases.values() if held.expires_at <= now]:
                lease.cancel.set()
                task = self._release(lease)
                if task is None:
                    continue
                task.last_error = "lease expired"
                if task.attempts >= task.max_attempts:
                    self._finish(task, TaskStatus.FAILED, now)
                else:
                    self._requeue(task, now, now)
                logger.warning("Reaped expired lease for task %s (listing %s)", task.id, task.listing_id)
                reaped.append(replace(task))
            if reaped:
                self._changed.notify_all()
        return reaped

    def cancel_all(self) -> int:
        """Signal every outstanding lease to abandon its work."""
        with self._lock:
            for lease in self._leases.values():
                lease.cancel.set()
            return len(self._leases)

    def wait_for_work(self, timeout: float) -> None:
        """Sleep until the queue changes or ``timeout`` passes."""
        with self._changed:
            self._changed.wait(timeout)

    def wake_all(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def wait_for(self, task_id: str, timeout: float) -> Optional[ScrapeTask]:
        """Block until the task is finished or ``timeout`` seconds pass.

        Returns:
            Snapshot of the task (finished or not), None if unknown
        """
        with self._changed:
            self._changed.wait_for(
                lambda: task_id not in self._tasks or self._tasks[task_id].status.is_terminal,
                timeout,
            )
            task = self._tasks.get(task_id)
            return replace(task) if task is not None else None

    def get(self, task_id: str) -> Optional[ScrapeTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task is not None else None

    def is_queued(self, listing_id: str) -> bool:
        """True when the listing has a pending or running task."""
        with self._lock:
            return listing_id in self._pending_by_listing or listing_id in self._in_progress

    def depth(self) -> int:
        with self._lock:
            return len(self._pending_by_listing)

    def in_progress_count(self) -> int:
        with self._lock:
            return len(self._in_progress)
