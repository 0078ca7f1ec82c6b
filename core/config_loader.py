import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from core.domain import CategoryScrapeConfig, Retailer, ValidationRule

logger = logging.getLogger(__name__)


class ConfigLoader:
    """Holds the current retailer and category configuration.

    ``refresh`` reloads everything from persistence and pushes retailer limits
    into the components that enforce them. Readers always see a complete
    snapshot; a refresh swaps it in one step.

    Args:
        persistence: Source of retailers, category configs and validation rules
        on_retailer: Callbacks invoked with each retailer after a reload
            (rate governor, identity rotator, circuit breakers)
        refresh_seconds: Minimum spacing between periodic refreshes
    """

    def __init__(
        self,
        persistence,
        on_retailer: Optional[List[Callable[[Retailer], None]]] = None,
        refresh_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.persistence = persistence
        self.on_retailer = list(on_retailer or [])
        self.refresh_seconds = refresh_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._retailers: Dict[str, Retailer] = {}
        self._categories: Dict[str, CategoryScrapeConfig] = {}
        self._rules: Dict[Optional[str], ValidationRule] = {}
        self._loaded_at: Optional[float] = None

    def refresh(self) -> None:
        retailers = {r.id: r for r in self.persistence.load_retailers(active_only=False)}
        categories = self.persistence.load_category_configs()

        for retailer in retailers.values():
            if retailer.is_active:
                for apply in self.on_retailer:
                    apply(retailer)

        with self._lock:
            self._retailers = retailers
            self._categories = categories
            self._rules = {}
            self._loaded_at = self._clock()

        logger.info(
            "Loaded configuration: %d retailers (%d active), %d categories",
            len(retailers),
            sum(1 for r in retailers.values() if r.is_active),
            len(categories),
        )

    def refresh_due(self) -> bool:
        with self._lock:
            return self._loaded_at is None or self._clock() - self._loaded_at >= self.refresh_seconds

    def retailer(self, retailer_id: str) -> Optional[Retailer]:
        with self._lock:
            return self._retailers.get(retailer_id)

    def active_retailers(self) -> List[Retailer]:
        with self._lock:
            return [r for r in self._retailers.values() if r.is_active]

    def category(self, name: Optional[str]) -> Optional[CategoryScrapeConfig]:
        if not name:
            return None
        with self._lock:
            config = self._categories.get(name)
        return config if config is not None and config.is_active else None

    def validation_rule(self, category: Optional[str]) -> ValidationRule:
        """Validation rule for a category, cached until the next refresh."""
        with self._lock:
            rule = self._rules.get(category)
        if rule is None:
            rule = self.persistence.load_validation_rules(category)
            with self._lock:
                self._rules[category] = rule
        return rule
