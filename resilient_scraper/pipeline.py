"""
Comment extraction across several unreliable sources.

Strategies run in priority order (intercepted API payloads, embedded script
payloads, DOM traversal, model extraction) and stop at the first one that
yields anything. Every accepted comment goes through the session's
ContentHash set, so running a later strategy explicitly on the same session
only adds comments that are genuinely new.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError
from selectolax.parser import HTMLParser

from .classifier import categorize_page
from .config import (
    EXPECTED_COUNT_MAX,
    EXTRACTION_HTML_LIMIT,
    EXTRACTION_TEXT_LIMIT,
    JSON_MAX_DEPTH,
)
from .discovery import LocatorDiscovery
from .dom_sketch import make_html_excerpt, script_payloads
from .errors import LLMError, PageInteractionError
from .json_walk import find_comments
from .llm import build_extraction_prompt
from .models import (
    ExtractedComment,
    ExtractionResult,
    PageSnapshot,
    Provenance,
    content_hash,
    utcnow,
)
from .parser import CommentDomParser
from .registry import SelectorRegistry

logger = logging.getLogger(__name__)

STRATEGY_ORDER = (Provenance.API, Provenance.SCRIPT, Provenance.DOM, Provenance.AI)

COMMENT_ITEM = "comment_item"

EXPECTED_TOTAL_PATTERNS = (
    re.compile(r"view all ([\d.,]+\s*[km]?) comments"),
    re.compile(r"ver todos os ([\d.,]+\s*(?:[km]|mil)?) comentários"),
    re.compile(r"([\d.,]+\s*[km]?) comments"),
    re.compile(r"([\d.,]+\s*(?:[km]|mil)?) comentários"),
)


def parse_compact_number(text: str) -> Optional[int]:
    """'1,234' -> 1234, '1.2K' -> 1200, '3 mil' -> 3000."""
    if not text:
        return None
    clean = text.strip().upper().replace("MIL", "K")
    m = re.search(r"([\d.,]+)\s*([KM]?)", clean)
    if not m:
        return None
    number, suffix = m.group(1), m.group(2)
    if suffix:
        number = number.replace(",", ".")
    else:
        number = number.replace(",", "").replace(".", "")
    try:
        num = float(number)
    except ValueError:
        return None
    if suffix == "K":
        num *= 1000
    elif suffix == "M":
        num *= 1_000_000
    return int(num)


def detect_expected_total(snapshot: PageSnapshot) -> Optional[int]:
    """Total advertised by page copy, or None when absent or implausible."""
    for source in (snapshot.text, snapshot.meta_description):
        lowered = (source or "").lower()
        if not lowered:
            continue
        for pattern in EXPECTED_TOTAL_PATTERNS:
            m = pattern.search(lowered)
            if not m:
                continue
            value = parse_compact_number(m.group(1))
            if value is not None and 0 < value < EXPECTED_COUNT_MAX:
                return value
    return None


@dataclass
class ExtractionSession:
    """Accumulator for one content item; owns the ContentHash set."""
    content_id: str
    content_url: Optional[str] = None
    expected_total: Optional[int] = None
    comments: List[ExtractedComment] = field(default_factory=list)
    strategies_run: List[Provenance] = field(default_factory=list)
    seen_hashes: Set[str] = field(default_factory=set)

    def accept(self, raw: Dict[str, Any], provenance: Provenance) -> bool:
        text = (raw.get("text") or "").strip()
        if len(text) < 1:
            return False
        username = raw.get("username") or ""
        digest = content_hash(username.strip().lstrip("@"), text)
        if digest in self.seen_hashes:
            return False

        try:
            comment = ExtractedComment(
                comment_id=raw.get("comment_id") or f"{provenance.value}_{digest[:16]}",
                content_id=self.content_id,
                content_url=self.content_url,
                username=username,
                text=text,
                created_at=raw.get("created_at") or utcnow(),
                author_id=raw.get("author_id"),
                like_count=raw.get("like_count") or 0,
                parent_comment_id=raw.get("parent_comment_id"),
                provenance=provenance,
            )
        except ValidationError as e:
            logger.debug("Dropping malformed %s comment: %s", provenance.value, e)
            return False

        self.seen_hashes.add(digest)
        self.comments.append(comment)
        return True

    @property
    def coverage_incomplete(self) -> bool:
        return self.expected_total is not None and len(self.comments) < self.expected_total

    def result(self) -> ExtractionResult:
        return ExtractionResult(
            content_id=self.content_id,
            comments=list(self.comments),
            strategies_run=list(self.strategies_run),
            expected_total=self.expected_total,
        )


class CommentExtractionPipeline:
    def __init__(
        self,
        registry: SelectorRegistry,
        discovery: Optional[LocatorDiscovery] = None,
        llm=None,
        parser: Optional[CommentDomParser] = None,
        max_depth: int = JSON_MAX_DEPTH,
    ):
        self.registry = registry
        self.discovery = discovery
        self.llm = llm
        self.parser = parser or CommentDomParser()
        self.max_depth = max_depth

    def new_session(self, snapshot: PageSnapshot, content_id: str, content_url: Optional[str] = None) -> ExtractionSession:
        return ExtractionSession(
            content_id=content_id,
            content_url=content_url or snapshot.url,
            expected_total=detect_expected_total(snapshot),
        )

    async def extract(
        self,
        snapshot: PageSnapshot,
        content_id: str,
        content_url: Optional[str] = None,
        page=None,
        session: Optional[ExtractionSession] = None,
    ) -> List[ExtractedComment]:
        """Run strategies in order until one yields comments."""
        session = session or self.new_session(snapshot, content_id, content_url)
        for strategy in STRATEGY_ORDER:
            added = await self.run_strategy(session, strategy, snapshot, page)
            if added:
                break

        if session.coverage_incomplete:
            logger.info(
                "Extracted %d of ~%d comments for %s",
                len(session.comments), session.expected_total, content_id,
            )
        return list(session.comments)

    async def run_strategy(self, session: ExtractionSession, strategy: Provenance, snapshot: PageSnapshot, page=None) -> int:
        """Run one strategy against the session; returns how many comments it added."""
        session.strategies_run.append(strategy)
        if strategy == Provenance.API:
            raws = self._from_json(snapshot.api_payloads)
        elif strategy == Provenance.SCRIPT:
            raws = self._from_json(script_payloads(snapshot.html))
        elif strategy == Provenance.DOM:
            raws = await self._from_dom(snapshot, page)
        else:
            raws = await self._from_model(snapshot)

        added = sum(1 for raw in raws if session.accept(raw, strategy))
        logger.info("%s strategy: %d found, %d new", strategy.value, len(raws), added)
        return added

    def _from_json(self, payloads: List[Any]) -> List[Dict[str, Any]]:
        raws: List[Dict[str, Any]] = []
        for payload in payloads or []:
            raws.extend(find_comments(payload, max_depth=self.max_depth))
        return raws

    async def _from_dom(self, snapshot: PageSnapshot, page=None) -> List[Dict[str, Any]]:
        category = categorize_page(snapshot)
        candidates = self.registry.resolve_candidates(COMMENT_ITEM, category)
        if not candidates and category != "post":
            category = "post"
            candidates = self.registry.resolve_candidates(COMMENT_ITEM, category)

        records, used = self.parser.parse_page(snapshot.html, candidates)
        if records:
            self.registry.record_attempt(COMMENT_ITEM, category, True, used)
            return records

        self.registry.record_attempt(COMMENT_ITEM, category, False, candidates[0] if candidates else None)
        if self.discovery is None:
            return []

        result = await self.discovery.discover(
            COMMENT_ITEM,
            category,
            make_html_excerpt(snapshot.html, self.discovery.html_limit),
            self._matcher(snapshot, page),
            page_url=snapshot.url,
        )
        if not result.success:
            return []

        records, used = self.parser.parse_page(snapshot.html, [result.accepted_locator])
        self.registry.record_attempt(COMMENT_ITEM, category, bool(records), result.accepted_locator)
        return records

    def _matcher(self, snapshot: PageSnapshot, page=None):
        if page is not None:
            async def live_match(locator: str) -> bool:
                try:
                    return await page.query_one(locator) is not None
                except PageInteractionError:
                    return False
            return live_match

        tree = HTMLParser(snapshot.html or "")

        async def offline_match(locator: str) -> bool:
            try:
                return tree.css_first(locator) is not None
            except Exception:
                return False
        return offline_match

    async def _from_model(self, snapshot: PageSnapshot) -> List[Dict[str, Any]]:
        if self.llm is None or not self.llm.enabled:
            return []

        prompt = build_extraction_prompt(
            snapshot.url,
            make_html_excerpt(snapshot.html, EXTRACTION_HTML_LIMIT),
            (snapshot.text or "")[:EXTRACTION_TEXT_LIMIT],
        )
        try:
            data = await self.llm.complete_json(
                prompt,
                system="You extract user comments from social media pages. Always respond with valid JSON only.",
                temperature=0.1,
                max_tokens=4000,
            )
        except LLMError as e:
            logger.warning("Model extraction failed for %s: %s", snapshot.url, e)
            return []

        comments = data.get("comments") if isinstance(data, dict) else None
        if not isinstance(comments, list):
            logger.warning("Model extraction returned no comment list for %s", snapshot.url)
            return []

        raws = []
        for item in comments:
            if not isinstance(item, dict):
                continue
            raws.append({
                "comment_id": None,
                "username": str(item.get("username") or ""),
                "text": str(item.get("text") or ""),
            })
        logger.info(
            "Model reported %s comments (confidence %s): %s",
            data.get("found_count"), data.get("confidence"), data.get("notes") or "",
        )
        return raws
