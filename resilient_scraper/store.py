"""
Registry persistence: locators and their version history, versioned
structure fingerprints and the discovery audit log.

``CachedRegistryStore`` is what the engine talks to. It keeps an in-memory
copy of everything it has seen, writes through to an optional durable
backend, and carries on from memory alone if that backend fails.
"""

import abc
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import create_engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailableError
from .models import (
    AttemptOutcome,
    DiscoveryAuditRecord,
    LocatorEntry,
    LocatorOrigin,
    LocatorVersion,
    StructureFingerprint,
    StructureSummary,
    utcnow,
)
from .tables import AuditRow, Base, FingerprintRow, LocatorRow, LocatorVersionRow

logger = logging.getLogger(__name__)

# Columns a usage update may touch. Candidate lists are left alone so a
# concurrent discovery is not overwritten by stale counters.
STATS_FIELDS = (
    "success_count",
    "failure_count",
    "consecutive_failures",
    "last_success_at",
    "last_failure_at",
    "last_used_locator",
    "history",
    "updated_at",
)


class RegistryStore(abc.ABC):
    @abc.abstractmethod
    def get_locator(self, page_category: str, element_name: str) -> Optional[LocatorEntry]: ...
    @abc.abstractmethod
    def save_locator(self, entry: LocatorEntry): ...
    @abc.abstractmethod
    def save_locator_stats(self, entry: LocatorEntry):
        """Persist only usage statistics; inserts the whole entry if the key is new."""
    @abc.abstractmethod
    def list_locators(self) -> List[LocatorEntry]: ...
    @abc.abstractmethod
    def save_locator_version(self, version: LocatorVersion, reason: Optional[str] = None):
        """Store a new active version; earlier versions of the key are marked
        replaced with ``reason``."""
    @abc.abstractmethod
    def locator_versions(self, page_category: str, element_name: str) -> List[LocatorVersion]: ...
    @abc.abstractmethod
    def activate_locator_version(
        self, page_category: str, element_name: str, version: int, reason: Optional[str] = None,
    ) -> Optional[LocatorVersion]: ...
    @abc.abstractmethod
    def get_current_fingerprint(self, page_category: str) -> Optional[StructureFingerprint]: ...
    @abc.abstractmethod
    def save_fingerprint(self, fingerprint: StructureFingerprint):
        """Store a new current version; any previous current version for the
        category stops being current in the same step."""
    @abc.abstractmethod
    def fingerprint_history(self, page_category: str) -> List[StructureFingerprint]: ...
    @abc.abstractmethod
    def tracked_categories(self) -> List[str]: ...
    @abc.abstractmethod
    def append_audit(self, record: DiscoveryAuditRecord): ...
    @abc.abstractmethod
    def list_audit(self, limit: int = 50, element_name: Optional[str] = None) -> List[DiscoveryAuditRecord]: ...


class MemoryRegistryStore(RegistryStore):
    def __init__(self):
        self._locators: Dict[Tuple[str, str], LocatorEntry] = {}
        self._versions: Dict[Tuple[str, str], List[LocatorVersion]] = {}
        self._fingerprints: Dict[str, List[StructureFingerprint]] = {}
        self._audit: List[DiscoveryAuditRecord] = []

    def get_locator(self, page_category, element_name):
        return self._locators.get((page_category, element_name))

    def save_locator(self, entry):
        self._locators[(entry.page_category, entry.element_name)] = entry

    def list_locators(self):
        return list(self._locators.values())

    def save_locator_stats(self, entry):
        current = self._locators.get((entry.page_category, entry.element_name))
        if current is None or current is entry:
            self._locators[(entry.page_category, entry.element_name)] = entry
            return
        for field in STATS_FIELDS:
            setattr(current, field, getattr(entry, field))

    def save_locator_version(self, version, reason=None):
        now = utcnow()
        versions = self._versions.setdefault((version.page_category, version.element_name), [])
        for v in versions:
            if v.is_active:
                v.is_active = False
                v.replaced_at = now
                v.replaced_reason = reason
        version.is_active = True
        versions.append(version)

    def locator_versions(self, page_category, element_name):
        return sorted(self._versions.get((page_category, element_name), []), key=lambda v: v.version, reverse=True)

    def activate_locator_version(self, page_category, element_name, version, reason=None):
        versions = self._versions.get((page_category, element_name), [])
        target = next((v for v in versions if v.version == version), None)
        if target is None:
            return None
        now = utcnow()
        for v in versions:
            if v is target:
                v.is_active = True
                v.replaced_at = None
                v.replaced_reason = None
            elif v.is_active:
                v.is_active = False
                v.replaced_at = now
                v.replaced_reason = reason
        return target

    def get_current_fingerprint(self, page_category):
        for fp in reversed(self._fingerprints.get(page_category, [])):
            if fp.is_current:
                return fp
        return None

    def save_fingerprint(self, fingerprint):
        versions = self._fingerprints.setdefault(fingerprint.page_category, [])
        for fp in versions:
            fp.is_current = False
        fingerprint.is_current = True
        versions.append(fingerprint)

    def fingerprint_history(self, page_category):
        return sorted(self._fingerprints.get(page_category, []), key=lambda fp: fp.version, reverse=True)

    def tracked_categories(self):
        return sorted(self._fingerprints)

    def append_audit(self, record):
        self._audit.append(record)

    def list_audit(self, limit=50, element_name=None):
        rows = [r for r in self._audit if element_name is None or r.element_name == element_name]
        return list(reversed(rows))[:limit]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLRegistryStore(RegistryStore):
    """SQLAlchemy-backed store. Every SQLAlchemy failure surfaces as
    ``StoreUnavailableError``."""

    def __init__(self, url: str = "sqlite:///resilient_registry.db"):
        try:
            self.engine = create_engine(url, future=True)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot open registry store at {url}: {e}") from e
        self.Session = sessionmaker(self.engine, expire_on_commit=False, future=True)

    # -------- Locators --------
    def get_locator(self, page_category, element_name):
        try:
            with self.Session() as s:
                row = s.execute(
                    select(LocatorRow).where(
                        LocatorRow.page_category == page_category,
                        LocatorRow.element_name == element_name,
                    )
                ).scalar_one_or_none()
                return self._locator_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def save_locator(self, entry):
        self._write_locator(entry, stats_only=False)

    def save_locator_stats(self, entry):
        self._write_locator(entry, stats_only=True)

    def _write_locator(self, entry: LocatorEntry, stats_only: bool):
        try:
            with self.Session() as s:
                row = s.execute(
                    select(LocatorRow).where(
                        LocatorRow.page_category == entry.page_category,
                        LocatorRow.element_name == entry.element_name,
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = LocatorRow(page_category=entry.page_category, element_name=entry.element_name)
                    s.add(row)
                    stats_only = False
                if not stats_only:
                    row.candidates = list(entry.candidates)
                    row.retired = list(entry.retired)
                    row.origin = entry.origin.value
                    row.confidence = entry.confidence
                row.success_count = entry.success_count
                row.failure_count = entry.failure_count
                row.consecutive_failures = entry.consecutive_failures
                row.last_success_at = entry.last_success_at
                row.last_failure_at = entry.last_failure_at
                row.last_used_locator = entry.last_used_locator
                row.history = [
                    {"success": h.success, "locator": h.locator, "at": h.at.isoformat()}
                    for h in entry.history
                ]
                row.updated_at = entry.updated_at
                s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def list_locators(self):
        try:
            with self.Session() as s:
                rows = s.execute(
                    select(LocatorRow).order_by(LocatorRow.page_category, LocatorRow.element_name)
                ).scalars().all()
                return [self._locator_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    def _locator_from_row(row: LocatorRow) -> LocatorEntry:
        return LocatorEntry(
            page_category=row.page_category,
            element_name=row.element_name,
            candidates=row.candidates or [],
            retired=row.retired or [],
            origin=LocatorOrigin(row.origin),
            confidence=row.confidence,
            success_count=row.success_count,
            failure_count=row.failure_count,
            consecutive_failures=row.consecutive_failures,
            last_success_at=_aware(row.last_success_at),
            last_failure_at=_aware(row.last_failure_at),
            last_used_locator=row.last_used_locator,
            history=[AttemptOutcome(**h) for h in (row.history or [])],
            updated_at=_aware(row.updated_at),
        )

    # -------- Locator versions --------
    def save_locator_version(self, version, reason=None):
        try:
            with self.Session() as s:
                s.execute(
                    update(LocatorVersionRow)
                    .where(
                        LocatorVersionRow.page_category == version.page_category,
                        LocatorVersionRow.element_name == version.element_name,
                        LocatorVersionRow.is_active.is_(True),
                    )
                    .values(is_active=False, replaced_at=utcnow(), replaced_reason=reason)
                )
                s.add(LocatorVersionRow(
                    page_category=version.page_category,
                    element_name=version.element_name,
                    version=version.version,
                    primary_locator=version.primary,
                    fallbacks=list(version.fallbacks),
                    origin=version.origin.value,
                    confidence=version.confidence,
                    is_active=True,
                    created_at=version.created_at,
                ))
                s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e
        version.is_active = True

    def locator_versions(self, page_category, element_name):
        try:
            with self.Session() as s:
                rows = s.execute(
                    select(LocatorVersionRow)
                    .where(
                        LocatorVersionRow.page_category == page_category,
                        LocatorVersionRow.element_name == element_name,
                    )
                    .order_by(LocatorVersionRow.version.desc())
                ).scalars().all()
                return [self._version_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def activate_locator_version(self, page_category, element_name, version, reason=None):
        try:
            with self.Session() as s:
                rows = s.execute(
                    select(LocatorVersionRow).where(
                        LocatorVersionRow.page_category == page_category,
                        LocatorVersionRow.element_name == element_name,
                    )
                ).scalars().all()
                target = next((r for r in rows if r.version == version), None)
                if target is None:
                    return None
                now = utcnow()
                for row in rows:
                    if row is target:
                        row.is_active = True
                        row.replaced_at = None
                        row.replaced_reason = None
                    elif row.is_active:
                        row.is_active = False
                        row.replaced_at = now
                        row.replaced_reason = reason
                s.commit()
                return self._version_from_row(target)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    def _version_from_row(row: LocatorVersionRow) -> LocatorVersion:
        return LocatorVersion(
            page_category=row.page_category,
            element_name=row.element_name,
            version=row.version,
            primary=row.primary_locator,
            fallbacks=row.fallbacks or [],
            origin=LocatorOrigin(row.origin),
            confidence=row.confidence,
            is_active=row.is_active,
            created_at=_aware(row.created_at),
            replaced_at=_aware(row.replaced_at),
            replaced_reason=row.replaced_reason,
        )

    # -------- Fingerprints --------
    def get_current_fingerprint(self, page_category):
        try:
            with self.Session() as s:
                row = s.execute(
                    select(FingerprintRow)
                    .where(FingerprintRow.page_category == page_category, FingerprintRow.is_current.is_(True))
                    .order_by(FingerprintRow.version.desc())
                ).scalars().first()
                return self._fingerprint_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def save_fingerprint(self, fingerprint):
        try:
            with self.Session() as s:
                s.execute(
                    update(FingerprintRow)
                    .where(FingerprintRow.page_category == fingerprint.page_category)
                    .values(is_current=False)
                )
                s.add(FingerprintRow(
                    page_category=fingerprint.page_category,
                    fingerprint_hash=fingerprint.hash,
                    structure_data=fingerprint.summary.dict(),
                    version=fingerprint.version,
                    is_current=True,
                    previous_hash=fingerprint.previous_hash,
                    captured_at=fingerprint.captured_at,
                ))
                s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e
        fingerprint.is_current = True

    def fingerprint_history(self, page_category):
        try:
            with self.Session() as s:
                rows = s.execute(
                    select(FingerprintRow)
                    .where(FingerprintRow.page_category == page_category)
                    .order_by(FingerprintRow.version.desc())
                ).scalars().all()
                return [self._fingerprint_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def tracked_categories(self):
        try:
            with self.Session() as s:
                rows = s.execute(
                    select(FingerprintRow.page_category).distinct().order_by(FingerprintRow.page_category)
                ).scalars().all()
                return list(rows)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    @staticmethod
    def _fingerprint_from_row(row: FingerprintRow) -> StructureFingerprint:
        return StructureFingerprint(
            page_category=row.page_category,
            hash=row.fingerprint_hash,
            summary=StructureSummary(**(row.structure_data or {})),
            version=row.version,
            is_current=row.is_current,
            previous_hash=row.previous_hash,
            captured_at=_aware(row.captured_at),
        )

    # -------- Audit log --------
    def append_audit(self, record):
        try:
            with self.Session() as s:
                s.add(AuditRow(
                    element_name=record.element_name,
                    page_category=record.page_category,
                    page_url=record.page_url,
                    prompt=record.prompt,
                    excerpt_size=record.excerpt_size,
                    model=record.model,
                    candidates_returned=list(record.candidates_returned),
                    candidates_accepted=list(record.candidates_accepted),
                    accepted_locator=record.accepted_locator,
                    confidence=record.confidence,
                    success=record.success,
                    rejected_reason=record.rejected_reason,
                    created_at=record.created_at,
                ))
                s.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e

    def list_audit(self, limit=50, element_name=None):
        try:
            with self.Session() as s:
                stmt = select(AuditRow)
                if element_name:
                    stmt = stmt.where(AuditRow.element_name == element_name)
                rows = s.execute(stmt.order_by(AuditRow.id.desc()).limit(limit)).scalars().all()
                return [
                    DiscoveryAuditRecord(
                        element_name=r.element_name,
                        page_category=r.page_category,
                        page_url=r.page_url,
                        prompt=r.prompt,
                        excerpt_size=r.excerpt_size,
                        model=r.model,
                        candidates_returned=r.candidates_returned or [],
                        candidates_accepted=r.candidates_accepted or [],
                        accepted_locator=r.accepted_locator,
                        confidence=r.confidence,
                        success=r.success,
                        rejected_reason=r.rejected_reason,
                        created_at=_aware(r.created_at),
                    )
                    for r in rows
                ]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(str(e)) from e


class CachedRegistryStore(RegistryStore):
    """Write-through cache in front of an optional backend. Locator reads
    prefer the backend while it is up so other workers' changes are seen.

    The first backend failure switches the store to memory-only mode for the
    rest of its life; the failure is logged once.
    """

    def __init__(self, backend: Optional[RegistryStore] = None):
        self.backend = backend
        self.memory = MemoryRegistryStore()
        self.degraded = False

    @property
    def _live_backend(self) -> Optional[RegistryStore]:
        return None if self.degraded else self.backend

    def _backend_failed(self, operation: str, error: Exception):
        if not self.degraded:
            logger.warning("Registry store unavailable during %s, continuing from memory: %s", operation, error)
        self.degraded = True

    def _call_backend(self, operation: str, *args, **kwargs):
        backend = self._live_backend
        if backend is None:
            return None
        try:
            return getattr(backend, operation)(*args, **kwargs)
        except StoreUnavailableError as e:
            self._backend_failed(operation, e)
            return None

    def get_locator(self, page_category, element_name):
        # Other workers may have replaced the entry, so the backend wins while it is up.
        entry = self._call_backend("get_locator", page_category, element_name)
        if entry is not None:
            self.memory.save_locator(entry)
            return entry
        return self.memory.get_locator(page_category, element_name)

    def save_locator(self, entry):
        self.memory.save_locator(entry)
        self._call_backend("save_locator", entry)

    def save_locator_stats(self, entry):
        self.memory.save_locator_stats(entry)
        self._call_backend("save_locator_stats", entry)

    def list_locators(self):
        for entry in self._call_backend("list_locators") or []:
            self.memory.save_locator(entry)
        return self.memory.list_locators()

    def save_locator_version(self, version, reason=None):
        self.memory.save_locator_version(version, reason)
        self._call_backend("save_locator_version", version, reason)

    def locator_versions(self, page_category, element_name):
        stored = self._call_backend("locator_versions", page_category, element_name)
        return stored if stored else self.memory.locator_versions(page_category, element_name)

    def activate_locator_version(self, page_category, element_name, version, reason=None):
        local = self.memory.activate_locator_version(page_category, element_name, version, reason)
        stored = self._call_backend("activate_locator_version", page_category, element_name, version, reason)
        return stored or local

    def get_current_fingerprint(self, page_category):
        fp = self.memory.get_current_fingerprint(page_category)
        if fp is None:
            fp = self._call_backend("get_current_fingerprint", page_category)
            if fp is not None:
                self.memory.save_fingerprint(fp)
        return fp

    def save_fingerprint(self, fingerprint):
        self.memory.save_fingerprint(fingerprint)
        self._call_backend("save_fingerprint", fingerprint)

    def fingerprint_history(self, page_category):
        history = self._call_backend("fingerprint_history", page_category)
        return history if history else self.memory.fingerprint_history(page_category)

    def tracked_categories(self):
        stored = self._call_backend("tracked_categories") or []
        return sorted(set(stored) | set(self.memory.tracked_categories()))

    def append_audit(self, record):
        logger.info(
            "Discovery audit: element=%s category=%s success=%s accepted=%s reason=%s candidates=%s",
            record.element_name, record.page_category, record.success,
            record.accepted_locator, record.rejected_reason, record.candidates_returned,
        )
        self.memory.append_audit(record)
        self._call_backend("append_audit", record)

    def list_audit(self, limit=50, element_name=None):
        stored = self._call_backend("list_audit", limit, element_name)
        return stored if stored else self.memory.list_audit(limit, element_name)


def build_store(db_url: Optional[str] = None) -> CachedRegistryStore:
    """Cached store over SQL when a URL is configured, memory-only otherwise."""
    if not db_url:
        return CachedRegistryStore()
    try:
        return CachedRegistryStore(SQLRegistryStore(db_url))
    except StoreUnavailableError as e:
        logger.warning("Falling back to in-memory registry: %s", e)
        store = CachedRegistryStore()
        store.degraded = True
        return store
