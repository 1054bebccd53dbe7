import logging
from unittest.mock import MagicMock

import pytest

from resilient_scraper.errors import StoreUnavailableError
from resilient_scraper.models import (
    AttemptOutcome,
    DiscoveryAuditRecord,
    LocatorEntry,
    LocatorOrigin,
    LocatorVersion,
    utcnow,
)
from resilient_scraper.store import (
    CachedRegistryStore,
    RegistryStore,
    SQLRegistryStore,
    build_store,
)


@pytest.fixture
def sql_store():
    return SQLRegistryStore("sqlite:///:memory:")


def make_entry(element="comment_item", category="post", **kwargs):
    return LocatorEntry(page_category=category, element_name=element, candidates=["ul ul li", "article ul > div"], **kwargs)


class TestSQLRegistryStore:
    def test_locator_roundtrip(self, sql_store):
        now = utcnow()
        entry = make_entry(
            retired=["[class*=comment]"],
            origin=LocatorOrigin.AI_DISCOVERED,
            confidence=0.8,
            success_count=4,
            failure_count=1,
            last_success_at=now,
            last_used_locator="ul ul li",
            history=[AttemptOutcome(success=True, locator="ul ul li", at=now)],
        )
        sql_store.save_locator(entry)

        loaded = sql_store.get_locator("post", "comment_item")
        assert loaded.candidates == entry.candidates
        assert loaded.retired == ["[class*=comment]"]
        assert loaded.origin == LocatorOrigin.AI_DISCOVERED
        assert loaded.success_count == 4
        assert loaded.history[0].success
        assert loaded.history[0].at == now
        assert loaded.last_success_at.tzinfo is not None

    def test_save_updates_in_place(self, sql_store):
        sql_store.save_locator(make_entry())
        updated = make_entry(consecutive_failures=2)
        sql_store.save_locator(updated)
        assert len(sql_store.list_locators()) == 1
        assert sql_store.get_locator("post", "comment_item").consecutive_failures == 2

    def test_missing_locator(self, sql_store):
        assert sql_store.get_locator("post", "nope") is None

    def test_stats_write_keeps_candidates(self, sql_store):
        sql_store.save_locator(make_entry())
        stale = sql_store.get_locator("post", "comment_item")
        sql_store.save_locator(LocatorEntry(
            page_category="post",
            element_name="comment_item",
            candidates=['li[data-testid="comment"]'],
            origin=LocatorOrigin.AI_DISCOVERED,
        ))

        stale.failure_count = 3
        stale.consecutive_failures = 3
        sql_store.save_locator_stats(stale)

        loaded = sql_store.get_locator("post", "comment_item")
        assert loaded.candidates == ['li[data-testid="comment"]']
        assert loaded.origin == LocatorOrigin.AI_DISCOVERED
        assert loaded.failure_count == 3

    def test_stats_write_inserts_new_key(self, sql_store):
        sql_store.save_locator_stats(make_entry(success_count=1))
        loaded = sql_store.get_locator("post", "comment_item")
        assert loaded.candidates == ["ul ul li", "article ul > div"]
        assert loaded.success_count == 1

    def test_locator_versions(self, sql_store):
        sql_store.save_locator_version(LocatorVersion(
            page_category="post", element_name="comment_item", version=1,
            primary="ul ul li", fallbacks=["article ul > div"],
        ))
        sql_store.save_locator_version(LocatorVersion(
            page_category="post", element_name="comment_item", version=2,
            primary='li[data-testid="comment"]', origin=LocatorOrigin.AI_DISCOVERED, confidence=0.7,
        ), reason="replaced by discovery")

        newest, oldest = sql_store.locator_versions("post", "comment_item")
        assert (newest.version, newest.is_active, newest.confidence) == (2, True, 0.7)
        assert oldest.candidates == ["ul ul li", "article ul > div"]
        assert not oldest.is_active
        assert oldest.replaced_reason == "replaced by discovery"
        assert oldest.replaced_at.tzinfo is not None

        restored = sql_store.activate_locator_version("post", "comment_item", 1, "rolled back to v1")
        assert restored.is_active and restored.replaced_at is None
        newest, oldest = sql_store.locator_versions("post", "comment_item")
        assert oldest.is_active
        assert not newest.is_active
        assert newest.replaced_reason == "rolled back to v1"
        assert sql_store.activate_locator_version("post", "comment_item", 9) is None

    def test_audit_newest_first(self, sql_store):
        for element in ("comment_item", "load_more_comments", "comment_item"):
            sql_store.append_audit(DiscoveryAuditRecord(element_name=element, page_category="post", prompt="p"))

        latest = sql_store.list_audit(limit=2)
        assert [r.element_name for r in latest] == ["comment_item", "load_more_comments"]
        assert len(sql_store.list_audit(element_name="comment_item")) == 2


class TestCachedRegistryStore:
    def test_memory_only(self):
        store = CachedRegistryStore()
        store.save_locator(make_entry())
        assert store.get_locator("post", "comment_item").primary == "ul ul li"
        assert not store.degraded

    def test_reads_through_to_backend(self, sql_store):
        sql_store.save_locator(make_entry())
        store = CachedRegistryStore(sql_store)
        assert store.get_locator("post", "comment_item") is not None
        assert store.memory.get_locator("post", "comment_item") is not None

    def test_backend_changes_replace_cached_copies(self, sql_store):
        store = CachedRegistryStore(sql_store)
        store.save_locator(make_entry())
        sql_store.save_locator(LocatorEntry(
            page_category="post", element_name="comment_item", candidates=['li[data-testid="comment"]'],
        ))

        assert store.get_locator("post", "comment_item").primary == 'li[data-testid="comment"]'
        sql_store.save_locator(LocatorEntry(
            page_category="post", element_name="comment_item", candidates=["ul li.comment"],
        ))
        assert [e.primary for e in store.list_locators()] == ["ul li.comment"]

    def test_backend_failure_degrades_to_memory(self, caplog):
        backend = MagicMock(spec=RegistryStore)
        backend.save_locator.side_effect = StoreUnavailableError("database is locked")
        backend.append_audit.side_effect = StoreUnavailableError("database is locked")
        store = CachedRegistryStore(backend)

        with caplog.at_level(logging.WARNING, logger="resilient_scraper.store"):
            store.save_locator(make_entry())
            store.save_locator(make_entry(element="load_more_comments"))
            store.append_audit(DiscoveryAuditRecord(element_name="comment_item", page_category="post"))

        assert store.degraded
        assert backend.save_locator.call_count == 1
        backend.append_audit.assert_not_called()
        assert len(store.list_locators()) == 2
        backend.list_locators.assert_not_called()
        assert len(store.list_audit()) == 1
        warnings = [r for r in caplog.records if "continuing from memory" in r.getMessage()]
        assert len(warnings) == 1


class TestBuildStore:
    def test_without_url_is_memory_only(self):
        store = build_store(None)
        assert store.backend is None

    def test_with_sqlite_url(self):
        store = build_store("sqlite:///:memory:")
        assert isinstance(store.backend, SQLRegistryStore)

    def test_unreachable_database_falls_back(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'missing' / 'dir' / 'registry.db'}"
        store = build_store(url)
        assert store.backend is None
        assert store.degraded
