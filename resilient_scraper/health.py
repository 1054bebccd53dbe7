import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import Settings
from .models import HealthStatus, LocatorEntry, SelectorHealthSnapshot

logger = logging.getLogger(__name__)


@dataclass
class DegradationAlert:
    element_name: str
    page_category: str
    status: HealthStatus
    success_rate: float
    recent_success_rate: float
    consecutive_failures: int
    attempts: int


AlertListener = Callable[[DegradationAlert], None]


class HealthMonitor:
    """Turns locator counters into health snapshots and degradation alerts.

    Rate thresholds only count once an entry has ``min_samples`` attempts;
    failure streaks count immediately.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or Settings()
        self.degraded_rate = settings.degraded_rate
        self.critical_rate = settings.critical_rate
        self.degraded_streak = settings.degraded_streak
        self.critical_streak = settings.critical_streak
        self.min_samples = settings.min_samples
        self._listeners: List[AlertListener] = []

    def subscribe(self, listener: AlertListener):
        self._listeners.append(listener)

    def snapshot(self, entry: LocatorEntry) -> SelectorHealthSnapshot:
        attempts = entry.attempts
        rate = entry.success_count / attempts if attempts else 1.0
        recent = [h.success for h in entry.history]
        recent_rate = sum(recent) / len(recent) if recent else 1.0
        sampled = attempts >= self.min_samples

        if entry.consecutive_failures >= self.critical_streak or (sampled and rate < self.critical_rate):
            status = HealthStatus.CRITICAL
        elif entry.consecutive_failures >= self.degraded_streak or (sampled and rate < self.degraded_rate):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return SelectorHealthSnapshot(
            element_name=entry.element_name,
            page_category=entry.page_category,
            status=status,
            attempts=attempts,
            successes=entry.success_count,
            failures=entry.failure_count,
            success_rate=round(rate, 4),
            recent_success_rate=round(recent_rate, 4),
            consecutive_failures=entry.consecutive_failures,
            last_success_at=entry.last_success_at,
            last_failure_at=entry.last_failure_at,
            last_used_locator=entry.last_used_locator,
        )

    def check(self, snapshot: SelectorHealthSnapshot) -> Optional[DegradationAlert]:
        """Notify listeners when a sampled entry is unhealthy."""
        if snapshot.attempts < self.min_samples:
            return None
        if snapshot.status == HealthStatus.HEALTHY and snapshot.recent_success_rate >= self.critical_rate:
            return None

        alert = DegradationAlert(
            element_name=snapshot.element_name,
            page_category=snapshot.page_category,
            status=snapshot.status,
            success_rate=snapshot.success_rate,
            recent_success_rate=snapshot.recent_success_rate,
            consecutive_failures=snapshot.consecutive_failures,
            attempts=snapshot.attempts,
        )
        logger.warning(
            "Locator %s/%s is %s (rate=%.0f%%, recent=%.0f%%, streak=%d)",
            alert.page_category, alert.element_name, alert.status.value,
            alert.success_rate * 100, alert.recent_success_rate * 100, alert.consecutive_failures,
        )
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:
                logger.exception("Health alert listener failed for %s/%s", alert.page_category, alert.element_name)
        return alert
