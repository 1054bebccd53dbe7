from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from .models import utcnow

Base = declarative_base()


class LocatorRow(Base):
    __tablename__ = "locator_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_category: Mapped[str] = mapped_column(String(64), nullable=False)
    element_name: Mapped[str] = mapped_column(String(128), nullable=False)
    candidates: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    retired: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    origin: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_locator: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("page_category", "element_name", name="uq_locator_key"),
    )


class FingerprintRow(Base):
    __tablename__ = "page_fingerprints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_category: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    structure_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_fingerprint_category_current", "page_category", "is_current"),
    )


class AuditRow(Base):
    __tablename__ = "discovery_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    element_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    page_category: Mapped[str] = mapped_column(String(64), nullable=False)
    page_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    excerpt_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    model: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    candidates_returned: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    candidates_accepted: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    accepted_locator: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rejected_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class LocatorVersionRow(Base):
    __tablename__ = "locator_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    page_category: Mapped[str] = mapped_column(String(64), nullable=False)
    element_name: Mapped[str] = mapped_column(String(128), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    primary_locator: Mapped[str] = mapped_column(Text, nullable=False)
    fallbacks: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    origin: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    replaced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    replaced_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("page_category", "element_name", "version", name="uq_locator_version"),
        Index("ix_locator_version_active", "page_category", "element_name", "is_active"),
    )
