"""Outbound identity rotation (proxy + user agent) with health tracking."""

import logging
import random
import time
from typing import Callable, Dict, List, Optional

from core.domain import FailureKind, Identity, Retailer

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

USER_AGENTS: List[str] = [
    DEFAULT_USER_AGENT,
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) Gecko/20100101 Firefox/124.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36",
]

# Failures that say something about the identity rather than the page.
ATTRIBUTABLE_FAILURES = {
    FailureKind.BLOCKED,
    FailureKind.RATE_LIMITED,
    FailureKind.NETWORK_TIMEOUT,
    FailureKind.NETWORK_ERROR,
}


class _IdentityHealth:
    __slots__ = ("identity", "consecutive_failures", "demoted_until", "successes", "failures")

    def __init__(self, identity: Identity):
        self.identity = identity
        self.consecutive_failures = 0
        self.demoted_until: Optional[float] = None
        self.successes = 0
        self.failures = 0

    @property
    def weight(self) -> float:
        return 1.0 / (1 + self.consecutive_failures)


class IdentityRotator:
    """Supplies a (proxy, user agent) pair per outbound request.

    Identities that keep failing are demoted for a cooldown and then promoted
    again. Counters are plain attribute updates without a lock; selection only
    needs approximately fresh health.

    Args:
        proxies: Proxy URLs available to retailers with proxy rotation on
        user_agents: User-agent pool for retailers with UA rotation on
        failure_threshold: Consecutive failures before demotion
        cooldown: Seconds a demoted identity sits out
    """

    def __init__(
        self,
        proxies: Optional[List[str]] = None,
        user_agents: Optional[List[str]] = None,
        failure_threshold: int = 3,
        cooldown: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.proxies = list(proxies or [])
        self.user_agents = list(user_agents or USER_AGENTS)
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._rng = rng or random.Random()
        self._pools: Dict[str, Dict[str, _IdentityHealth]] = {}

    def _build_identities(self, use_proxies: bool, use_user_agents: bool) -> List[Identity]:
        proxies = self.proxies if (use_proxies and self.proxies) else [None]
        agents = self.user_agents if use_user_agents else [DEFAULT_USER_AGENT]
        return [Identity(user_agent=ua, proxy=proxy) for proxy in proxies for ua in agents]

    def configure(self, retailer: Retailer) -> None:
        """Build the retailer's pool, keeping health of identities that survive."""
        existing = self._pools.get(retailer.id, {})
        pool = {}
        for identity in self._build_identities(
            retailer.use_proxy_rotation, retailer.use_user_agent_rotation
        ):
            pool[identity.key] = existing.get(identity.key) or _IdentityHealth(identity)
        self._pools[retailer.id] = pool

    def _pool(self, retailer_id: str) -> Dict[str, _IdentityHealth]:
        pool = self._pools.get(retailer_id)
        if pool is None:
            pool = {i.key: _IdentityHealth(i) for i in self._build_identities(True, True)}
            self._pools[retailer_id] = pool
        return pool

    def next(self, retailer_id: str) -> Identity:
        """Pick an identity by weighted random choice among healthy ones."""
        now = self._clock()
        entries = list(self._pool(retailer_id).values())
        healthy = []
        for entry in entries:
            if entry.demoted_until is not None and now >= entry.demoted_until:
                logger.info("Promoting identity %s for %s after cooldown", entry.identity.key, retailer_id)
                entry.demoted_until = None
                entry.consecutive_failures = 0
            if entry.demoted_until is None:
                healthy.append(entry)

        if not healthy:
            # Everything is cooling down; use whichever comes back first.
            return min(entries, key=lambda e: e.demoted_until).identity

        chosen = self._rng.choices(healthy, weights=[e.weight for e in healthy], k=1)[0]
        return chosen.identity

    def report_success(self, retailer_id: str, identity: Identity) -> None:
        entry = self._pool(retailer_id).get(identity.key)
        if entry is None:
            return
        entry.successes += 1
        entry.consecutive_failures = 0

    def report_failure(self, retailer_id: str, identity: Identity, kind: FailureKind) -> None:
        """Record a failure; blocked responses demote the identity at once."""
        if kind not in ATTRIBUTABLE_FAILURES:
            return
        entry = self._pool(retailer_id).get(identity.key)
        if entry is None:
            return
        entry.failures += 1
        entry.consecutive_failures += 1
        if kind == FailureKind.BLOCKED or entry.consecutive_failures >= self.failure_threshold:
            entry.demoted_until = self._clock() + self.cooldown
            logger.warning(
                "Demoting identity %s for %s (%s, %d consecutive failures)",
                identity.key, retailer_id, kind.value, entry.consecutive_failures,
            )

    def healthy_count(self, retailer_id: str) -> int:
        now = self._clock()
        return sum(
            1 for e in self._pool(retailer_id).values()
            if e.demoted_until is None or now >= e.demoted_until
        )
