"""
Per (page category, element name) locator lists and their usage statistics.
"""

import logging
from typing import Dict, List, Optional, Set, Tuple

from .config import Settings
from .health import DegradationAlert, HealthMonitor
from .models import (
    AttemptOutcome,
    HealthStatus,
    LocatorEntry,
    LocatorOrigin,
    LocatorVersion,
    SelectorHealthSnapshot,
    utcnow,
)
from .store import RegistryStore

logger = logging.getLogger(__name__)


# Hand-maintained starting points, primary first.
DEFAULT_LOCATORS: Dict[Tuple[str, str], List[str]] = {
    ("login", "username_input"): [
        'input[name="username"]',
        'input[aria-label="Phone number, username, or email"]',
        'input[aria-label="Telefone, nome de usuário ou email"]',
    ],
    ("login", "password_input"): [
        'input[name="password"]',
        'input[type="password"]',
    ],
    ("login", "submit_button"): [
        'button[type="submit"]',
        'form button[type="submit"]',
    ],
    ("two_factor", "code_input"): [
        'input[name="verificationCode"]',
        'input[autocomplete="one-time-code"]',
        'input[aria-label*="code"]',
    ],
    ("two_factor", "confirm_button"): [
        'button[type="button"]',
        'form button',
    ],
    ("post", "comment_item"): [
        'ul ul li',
        'article ul > div',
        '[class*="comment"]',
    ],
    ("post", "view_all_comments"): [
        'a[href$="/comments/"]',
        'span[class*="view-all"]',
    ],
    ("post_modal", "comment_item"): [
        'div[role="dialog"] ul > div',
        'div[role="dialog"] ul ul li',
        'div[role="dialog"] [class*="comment"]',
    ],
    ("post_modal", "load_more_comments"): [
        'div[role="dialog"] button[aria-label="Load more comments"]',
        'div[role="dialog"] svg[aria-label="Load more comments"]',
        'div[role="dialog"] svg[aria-label="Carregar mais comentários"]',
    ],
    ("home_feed", "post_link"): [
        'article a[href^="/p/"]',
        'a[href^="/p/"]',
    ],
    ("profile", "post_link"): [
        'main a[href^="/p/"]',
        'a[href^="/reel/"]',
    ],
}


class SelectorRegistry:
    """Ordered candidate locators with usage statistics.

    Resolution never reorders: the stored order is the order returned, with
    retired locators after the live ones. Only ``upsert_discovered`` and
    ``rollback`` change the primary, and each installed list is kept as a
    numbered version.
    """

    def __init__(
        self,
        store: RegistryStore,
        settings: Optional[Settings] = None,
        monitor: Optional[HealthMonitor] = None,
        seed: bool = True,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.monitor = monitor or HealthMonitor(self.settings)
        if seed:
            self.seed_defaults()

    def seed_defaults(self, table: Optional[Dict[Tuple[str, str], List[str]]] = None) -> int:
        """Insert manual entries that are not stored yet. Returns how many were added."""
        added = 0
        for (category, element), candidates in (table or DEFAULT_LOCATORS).items():
            if self.store.get_locator(category, element) is not None:
                continue
            entry = LocatorEntry(
                page_category=category,
                element_name=element,
                candidates=list(candidates),
                origin=LocatorOrigin.MANUAL,
                confidence=1.0,
            )
            self.store.save_locator(entry)
            self._save_version(entry)
            added += 1
        if added:
            logger.debug("Seeded %d default locator entries", added)
        return added

    def get_entry(self, element_name: str, page_category: str) -> Optional[LocatorEntry]:
        return self.store.get_locator(page_category, element_name)

    def resolve_candidates(self, element_name: str, page_category: str) -> List[str]:
        entry = self.store.get_locator(page_category, element_name)
        if entry is None:
            return []
        return list(entry.candidates) + [r for r in entry.retired if r not in entry.candidates]

    def record_attempt(
        self,
        element_name: str,
        page_category: str,
        success: bool,
        used_locator: Optional[str] = None,
    ) -> SelectorHealthSnapshot:
        entry = self.store.get_locator(page_category, element_name)
        created = False
        if entry is None:
            # A failure on an unknown key has nothing to describe.
            if not (success and used_locator):
                logger.debug("Ignoring attempt on unknown locator %s/%s", page_category, element_name)
                return SelectorHealthSnapshot(
                    element_name=element_name,
                    page_category=page_category,
                    status=HealthStatus.HEALTHY,
                )
            entry = LocatorEntry(page_category=page_category, element_name=element_name, candidates=[used_locator])
            created = True

        now = utcnow()
        if success:
            entry.success_count += 1
            entry.consecutive_failures = 0
            entry.last_success_at = now
        else:
            entry.failure_count += 1
            entry.consecutive_failures += 1
            entry.last_failure_at = now
        if used_locator:
            entry.last_used_locator = used_locator

        entry.history.append(AttemptOutcome(success=success, locator=used_locator, at=now))
        entry.history = entry.history[-self.settings.history_window:]
        entry.updated_at = now
        if created:
            self.store.save_locator(entry)
            self._save_version(entry)
        else:
            self.store.save_locator_stats(entry)

        snapshot = self.monitor.snapshot(entry)
        self.monitor.check(snapshot)
        return snapshot

    def get_health(self, element_name: str, page_category: str) -> SelectorHealthSnapshot:
        entry = self.store.get_locator(page_category, element_name)
        if entry is None:
            return SelectorHealthSnapshot(
                element_name=element_name,
                page_category=page_category,
                status=HealthStatus.HEALTHY,
            )
        return self.monitor.snapshot(entry)

    def upsert_discovered(
        self,
        element_name: str,
        page_category: str,
        primary: str,
        fallbacks: Optional[List[str]] = None,
        confidence: float = 0.5,
    ) -> LocatorEntry:
        """Install a discovered locator as the new primary.

        Previous candidates move to ``retired`` behind it; nothing is dropped.
        Statistics restart because they described the old primary.
        """
        entry = self.store.get_locator(page_category, element_name)
        new_candidates = [primary] + [f for f in (fallbacks or []) if f != primary]

        retired: List[str] = []
        if entry is not None:
            for locator in entry.candidates + entry.retired:
                if locator not in new_candidates and locator not in retired:
                    retired.append(locator)

        updated = LocatorEntry(
            page_category=page_category,
            element_name=element_name,
            candidates=new_candidates,
            retired=retired,
            origin=LocatorOrigin.AI_DISCOVERED,
            confidence=confidence,
        )
        self.store.save_locator(updated)
        self._save_version(updated, "replaced by discovery")
        logger.info(
            "New primary locator for %s/%s: %s (confidence %.2f, %d retired)",
            page_category, element_name, primary, updated.confidence, len(retired),
        )
        return updated

    def _save_version(self, entry: LocatorEntry, reason: Optional[str] = None):
        if not entry.candidates:
            return
        versions = self.store.locator_versions(entry.page_category, entry.element_name)
        self.store.save_locator_version(LocatorVersion(
            page_category=entry.page_category,
            element_name=entry.element_name,
            version=versions[0].version + 1 if versions else 1,
            primary=entry.candidates[0],
            fallbacks=entry.candidates[1:],
            origin=entry.origin,
            confidence=entry.confidence,
        ), reason)

    def locator_history(self, element_name: str, page_category: str) -> List[LocatorVersion]:
        """Installed candidate lists for a key, newest first."""
        return self.store.locator_versions(page_category, element_name)

    def rollback(
        self,
        element_name: str,
        page_category: str,
        to_version: Optional[int] = None,
    ) -> Optional[LocatorEntry]:
        """Reinstall an earlier version's candidate list.

        Without ``to_version`` the newest version older than the active one is
        used. Locators of the abandoned list move to ``retired`` and statistics
        restart. Returns None when there is nothing to roll back to.
        """
        versions = self.store.locator_versions(page_category, element_name)
        active = next((v for v in versions if v.is_active), None)
        if to_version is not None:
            target = next((v for v in versions if v.version == to_version), None)
        else:
            current = active.version if active else (versions[0].version if versions else 0)
            target = next((v for v in versions if v.version < current), None)

        if target is None:
            logger.warning(
                "No locator version to roll back to for %s/%s (requested %s)",
                page_category, element_name, to_version if to_version is not None else "previous",
            )
            return None

        candidates = target.candidates
        retired: List[str] = []
        entry = self.store.get_locator(page_category, element_name)
        if entry is not None:
            for locator in entry.candidates + entry.retired:
                if locator not in candidates and locator not in retired:
                    retired.append(locator)

        restored = LocatorEntry(
            page_category=page_category,
            element_name=element_name,
            candidates=candidates,
            retired=retired,
            origin=target.origin,
            confidence=target.confidence,
        )
        self.store.save_locator(restored)
        self.store.activate_locator_version(page_category, element_name, target.version, f"rolled back to v{target.version}")
        logger.warning(
            "Rolled back %s/%s to locator version %d (primary %s)",
            page_category, element_name, target.version, target.primary,
        )
        return restored

    def health_report(self) -> List[SelectorHealthSnapshot]:
        """Every entry's health, critical first."""
        order = {HealthStatus.CRITICAL: 0, HealthStatus.DEGRADED: 1, HealthStatus.HEALTHY: 2}
        snapshots = [self.monitor.snapshot(e) for e in self.store.list_locators()]
        return sorted(snapshots, key=lambda s: (order[s.status], s.recent_success_rate, s.page_category, s.element_name))

    def summary(self) -> Dict[str, int]:
        report = self.health_report()
        counts = {"total": len(report), "healthy": 0, "degraded": 0, "critical": 0}
        for snap in report:
            counts[snap.status.value] += 1
        return counts

    def reset_metrics(self, element_name: Optional[str] = None, page_category: Optional[str] = None) -> int:
        """Zero the statistics of matching entries (all entries when no filter)."""
        reset = 0
        for entry in self.store.list_locators():
            if element_name and entry.element_name != element_name:
                continue
            if page_category and entry.page_category != page_category:
                continue
            entry.success_count = 0
            entry.failure_count = 0
            entry.consecutive_failures = 0
            entry.last_success_at = None
            entry.last_failure_at = None
            entry.history = []
            entry.updated_at = utcnow()
            self.store.save_locator_stats(entry)
            reset += 1
        return reset


class RediscoveryQueue:
    """Keys whose locators went critical and wait for a fresh discovery."""

    def __init__(self, monitor: HealthMonitor):
        self._pending: Set[Tuple[str, str]] = set()
        monitor.subscribe(self.on_alert)

    def on_alert(self, alert: DegradationAlert):
        if alert.status == HealthStatus.CRITICAL:
            key = (alert.page_category, alert.element_name)
            if key not in self._pending:
                logger.info("Queued %s/%s for rediscovery", *key)
            self._pending.add(key)

    def pending(self) -> List[Tuple[str, str]]:
        return sorted(self._pending)

    def is_pending(self, element_name: str, page_category: str) -> bool:
        return (page_category, element_name) in self._pending

    def resolve(self, element_name: str, page_category: str):
        self._pending.discard((page_category, element_name))
