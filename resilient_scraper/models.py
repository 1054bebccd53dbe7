import hashlib
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field, validator

from .config import CONTENT_HASH_BODY_LIMIT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def content_hash(username: Optional[str], text: Optional[str]) -> str:
    """Dedup key for a comment, independent of whichever id a strategy assigned."""
    body = normalize_text(text)[:CONTENT_HASH_BODY_LIMIT]
    normalized = f"{(username or '').strip().lower()}:{body}"
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Page state
# ---------------------------------------------------------------------------


class PageState(str, Enum):
    LOGIN_REQUIRED = "LoginRequired"
    TWO_FACTOR_REQUIRED = "TwoFactorRequired"
    CHALLENGE = "Challenge"
    RATE_LIMITED = "RateLimited"
    SUSPENDED = "Suspended"
    BANNED = "Banned"
    VERIFICATION_REQUIRED = "VerificationRequired"
    PASSWORD_RESET_REQUIRED = "PasswordResetRequired"
    CREDENTIALS_INCORRECT = "CredentialsIncorrect"
    CONTENT_READY = "ContentReady"
    UNKNOWN = "Unknown"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    SUCCESS = "success"


class InputInfo(BaseModel):
    """Structural description of a visible <input>."""
    type: str = "text"
    name: Optional[str] = None
    max_length: Optional[int] = None
    input_mode: Optional[str] = None
    autocomplete: Optional[str] = None
    aria_label: Optional[str] = None
    placeholder: Optional[str] = None

    @property
    def is_code_entry(self) -> bool:
        name = (self.name or "").lower()
        if name in {"verificationcode", "security_code", "approvals_code", "code"}:
            return True
        if (self.autocomplete or "") == "one-time-code":
            return True
        if self.max_length == 6 and (
            self.input_mode == "numeric" or self.type in {"tel", "number"}
        ):
            return True
        label = f"{self.aria_label or ''} {self.placeholder or ''}".lower()
        return "code" in label or "código" in label


class PageSnapshot(BaseModel):
    """Everything the classifier and the extraction pipeline read from a page.

    Built once per observation; classification and extraction never go back
    to the live page for text they could have read from here.
    """
    url: str
    title: str = ""
    text: str = ""
    html: str = ""
    meta_description: Optional[str] = None
    inputs: List[InputInfo] = Field(default_factory=list)
    buttons: List[str] = Field(default_factory=list)
    landmarks: List[str] = Field(default_factory=list)
    has_dialog: bool = False
    has_password_field: bool = False
    api_payloads: List[Any] = Field(default_factory=list)

    @property
    def has_code_field(self) -> bool:
        return any(i.is_code_entry for i in self.inputs)

    @classmethod
    def from_html(cls, url: str, html: str, api_payloads: Optional[List[Any]] = None) -> "PageSnapshot":
        from .dom_sketch import snapshot_fields_from_html

        return cls(url=url, html=html, api_payloads=api_payloads or [], **snapshot_fields_from_html(html))


class UnknownPageAnalysis(BaseModel):
    text_summary: str = ""
    buttons: List[str] = Field(default_factory=list)
    suggestion: Optional[str] = None
    reason: str = ""
    source: str = "heuristic"


class PageStateResult(BaseModel):
    state: PageState
    severity: Severity
    action: str
    url: str
    page_category: str = "unknown"
    matched_by: Optional[str] = None
    evidence: Optional[str] = None
    text_preview: str = ""
    retry_after_ms: Optional[int] = None
    analysis: Optional[UnknownPageAnalysis] = None

    @property
    def is_usable(self) -> bool:
        return self.state == PageState.CONTENT_READY


# ---------------------------------------------------------------------------
# Locators and health
# ---------------------------------------------------------------------------


class LocatorOrigin(str, Enum):
    MANUAL = "manual"
    AI_DISCOVERED = "ai-discovered"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class AttemptOutcome(BaseModel):
    success: bool
    locator: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class LocatorEntry(BaseModel):
    """Candidate locators for one (page_category, element_name) pair.

    candidates[0] is always the primary. Locators that stop working are moved
    to ``retired`` instead of being dropped so a site rollback can revive them.
    """
    page_category: str
    element_name: str
    candidates: List[str]
    retired: List[str] = Field(default_factory=list)
    origin: LocatorOrigin = LocatorOrigin.MANUAL
    confidence: float = 1.0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_used_locator: Optional[str] = None
    history: List[AttemptOutcome] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)

    @validator("candidates")
    def dedupe_candidates(cls, v):
        seen = []
        for locator in v:
            locator = (locator or "").strip()
            if locator and locator not in seen:
                seen.append(locator)
        return seen

    @validator("confidence")
    def clamp_confidence(cls, v):
        return max(0.0, min(1.0, float(v)))

    @property
    def key(self) -> str:
        return f"{self.page_category}:{self.element_name}"

    @property
    def primary(self) -> Optional[str]:
        return self.candidates[0] if self.candidates else None

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count


class LocatorVersion(BaseModel):
    """One installed candidate list for a key. At most one version per key is active."""
    page_category: str
    element_name: str
    version: int = 1
    primary: str
    fallbacks: List[str] = Field(default_factory=list)
    origin: LocatorOrigin = LocatorOrigin.MANUAL
    confidence: float = 1.0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    replaced_at: Optional[datetime] = None
    replaced_reason: Optional[str] = None

    @property
    def candidates(self) -> List[str]:
        return [self.primary] + [f for f in self.fallbacks if f != self.primary]


class SelectorHealthSnapshot(BaseModel):
    element_name: str
    page_category: str
    status: HealthStatus
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 1.0
    recent_success_rate: float = 1.0
    consecutive_failures: int = 0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    last_used_locator: Optional[str] = None


# ---------------------------------------------------------------------------
# Structure fingerprints
# ---------------------------------------------------------------------------


class StructureSummary(BaseModel):
    """Counts and flags only. Nothing here may depend on page copy."""
    form_count: int = 0
    input_count: int = 0
    input_types: Dict[str, int] = Field(default_factory=dict)
    button_count: int = 0
    has_main: bool = False
    has_article: bool = False
    has_dialog: bool = False
    has_nav: bool = False
    has_comment_section: bool = False
    heading_count: int = 0
    link_count: int = 0
    is_mobile_layout: bool = False

    # heading_count and link_count appear in diffs but are never hashed.
    HASHED_FIELDS: ClassVar[Tuple[str, ...]] = (
        "form_count",
        "input_count",
        "input_types",
        "button_count",
        "has_main",
        "has_article",
        "has_dialog",
        "has_nav",
        "has_comment_section",
        "is_mobile_layout",
    )

    @validator("input_types", pre=True)
    def clean_input_types(cls, v):
        if isinstance(v, list):
            counts: Dict[str, int] = {}
            for t in v:
                t = str(t or "text").lower()
                counts[t] = counts.get(t, 0) + 1
            return counts
        return {str(k).lower(): int(n) for k, n in (v or {}).items()}

    def normalized(self) -> Dict[str, Any]:
        data = self.dict()
        out = {name: data[name] for name in self.HASHED_FIELDS}
        out["input_types"] = dict(sorted(out["input_types"].items()))
        return out


class StructureFingerprint(BaseModel):
    page_category: str
    hash: str
    summary: StructureSummary
    version: int = 1
    is_current: bool = True
    previous_hash: Optional[str] = None
    captured_at: datetime = Field(default_factory=utcnow)


class DiffEntry(BaseModel):
    property: str
    old: Any = None
    new: Any = None


class ChangeResult(BaseModel):
    page_category: str
    changed: bool = False
    is_new: bool = False
    diff: List[DiffEntry] = Field(default_factory=list)
    version: Optional[int] = None
    previous_hash: Optional[str] = None
    current_hash: Optional[str] = None
    error: Optional[str] = None

    def changed_properties(self) -> List[str]:
        return [d.property for d in self.diff]


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class DiscoveryResult(BaseModel):
    element_name: str
    page_category: str
    candidates: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    accepted_locator: Optional[str] = None
    rejected_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.accepted_locator is not None


class DiscoveryAuditRecord(BaseModel):
    element_name: str
    page_category: str
    page_url: Optional[str] = None
    prompt: str = ""
    excerpt_size: int = 0
    model: Optional[str] = None
    candidates_returned: List[str] = Field(default_factory=list)
    candidates_accepted: List[str] = Field(default_factory=list)
    accepted_locator: Optional[str] = None
    confidence: float = 0.0
    success: bool = False
    rejected_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


class Provenance(str, Enum):
    API = "api"
    SCRIPT = "script"
    DOM = "dom"
    AI = "ai"


class ExtractedComment(BaseModel):
    comment_id: str
    content_id: str
    content_url: Optional[str] = None
    username: str = ""
    text: str
    created_at: datetime = Field(default_factory=utcnow)
    author_id: Optional[str] = None
    like_count: int = 0
    parent_comment_id: Optional[str] = None
    provenance: Provenance

    @validator("text")
    def strip_text(cls, v):
        v = (v or "").strip()
        if len(v) < 1:
            raise ValueError("comment text is empty")
        return v

    @validator("username", pre=True)
    def clean_username(cls, v):
        return (v or "").strip().lstrip("@")

    @property
    def content_hash(self) -> str:
        return content_hash(self.username, self.text)


class ExtractionResult(BaseModel):
    content_id: str
    comments: List[ExtractedComment] = Field(default_factory=list)
    strategies_run: List[Provenance] = Field(default_factory=list)
    expected_total: Optional[int] = None

    @property
    def coverage(self) -> Optional[float]:
        if not self.expected_total:
            return None
        return min(1.0, len(self.comments) / self.expected_total)

    @property
    def coverage_incomplete(self) -> bool:
        return self.expected_total is not None and len(self.comments) < self.expected_total

    @property
    def as_dicts(self) -> List[Dict[str, Any]]:
        return [c.dict() for c in self.comments]
