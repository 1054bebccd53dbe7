"""
Content-agnostic structure fingerprints per page category.

A fingerprint is a hash over counts and flags only (forms, inputs by type,
buttons, key containers, layout), so copy changes never register as a
structural change while a redesigned form always does.
"""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError
from selectolax.parser import HTMLParser

from .config import FINGERPRINT_HASH_LENGTH
from .errors import PageInteractionError, StructureCaptureError
from .models import ChangeResult, DiffEntry, StructureFingerprint, StructureSummary
from .store import RegistryStore

logger = logging.getLogger(__name__)


COMMENT_SECTION_SELECTOR = 'ul ul li, [class*="comment"], [aria-label*="omment"]'

STRUCTURE_JS = """() => {
    const inputs = Array.from(document.querySelectorAll('input'))
        .filter(i => (i.type || 'text').toLowerCase() !== 'hidden');
    const inputTypes = {};
    for (const i of inputs) {
        const t = (i.type || 'text').toLowerCase();
        inputTypes[t] = (inputTypes[t] || 0) + 1;
    }
    return {
        form_count: document.querySelectorAll('form').length,
        input_count: inputs.length,
        input_types: inputTypes,
        button_count: document.querySelectorAll('button, [role="button"]').length,
        has_main: !!document.querySelector('main, [role="main"]'),
        has_article: !!document.querySelector('article'),
        has_dialog: !!document.querySelector('[role="dialog"]'),
        has_nav: !!document.querySelector('nav, [role="navigation"]'),
        has_comment_section: !!document.querySelector('%s'),
        heading_count: document.querySelectorAll('h1, h2, h3, h4, h5, h6').length,
        link_count: document.querySelectorAll('a[href]').length,
        is_mobile_layout: window.innerWidth < 768,
    };
}""" % COMMENT_SECTION_SELECTOR

ChangeListener = Callable[[ChangeResult], None]


def hash_structure(summary: StructureSummary) -> str:
    """SHA-256 over the sorted-key JSON of the hashed fields, truncated."""
    normalized = json.dumps(summary.normalized(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:FINGERPRINT_HASH_LENGTH]


def compute_diff(old: StructureSummary, new: StructureSummary) -> List[DiffEntry]:
    old_data, new_data = old.dict(), new.dict()
    diff = []
    for name in sorted(set(old_data) | set(new_data)):
        if old_data.get(name) != new_data.get(name):
            diff.append(DiffEntry(property=name, old=old_data.get(name), new=new_data.get(name)))
    return diff


def summarize_html(html: str, is_mobile_layout: bool = False) -> StructureSummary:
    """Offline equivalent of STRUCTURE_JS for static markup."""
    tree = HTMLParser(html or "")
    input_types = [
        (node.attributes.get("type") or "text").lower()
        for node in tree.css("input")
        if (node.attributes.get("type") or "").lower() != "hidden"
    ]
    return StructureSummary(
        form_count=len(tree.css("form")),
        input_count=len(input_types),
        input_types=input_types,
        button_count=len(tree.css('button, [role="button"]')),
        has_main=tree.css_first('main, [role="main"]') is not None,
        has_article=tree.css_first("article") is not None,
        has_dialog=tree.css_first('[role="dialog"]') is not None,
        has_nav=tree.css_first('nav, [role="navigation"]') is not None,
        has_comment_section=tree.css_first(COMMENT_SECTION_SELECTOR) is not None,
        heading_count=len(tree.css("h1, h2, h3, h4, h5, h6")),
        link_count=len(tree.css("a[href]")),
        is_mobile_layout=is_mobile_layout,
    )


class StructureFingerprinter:
    def __init__(self, store: RegistryStore):
        self.store = store
        self._listeners: List[ChangeListener] = []

    def subscribe(self, listener: ChangeListener):
        self._listeners.append(listener)

    async def summarize(self, page) -> StructureSummary:
        try:
            data: Any = await page.evaluate_in_page(STRUCTURE_JS)
        except PageInteractionError as e:
            raise StructureCaptureError(f"structure script failed: {e}") from e
        if not isinstance(data, dict):
            raise StructureCaptureError(f"structure script returned {type(data).__name__}")
        try:
            return StructureSummary(**data)
        except ValidationError as e:
            raise StructureCaptureError(f"unexpected structure data: {e}") from e

    async def capture(self, page, page_category: str) -> StructureFingerprint:
        """Fingerprint the page as it is now. Nothing is stored."""
        summary = await self.summarize(page)
        return StructureFingerprint(
            page_category=page_category,
            hash=hash_structure(summary),
            summary=summary,
        )

    async def compare(self, page, page_category: str) -> ChangeResult:
        try:
            summary = await self.summarize(page)
        except StructureCaptureError as e:
            logger.warning("Structure capture failed for %s: %s", page_category, e)
            return ChangeResult(page_category=page_category, changed=False, error=str(e))
        return self.compare_summary(page_category, summary)

    def compare_summary(self, page_category: str, summary: StructureSummary) -> ChangeResult:
        """Compare against the current version and record a new one on change."""
        current_hash = hash_structure(summary)
        current = self.store.get_current_fingerprint(page_category)

        if current is None:
            self.store.save_fingerprint(StructureFingerprint(
                page_category=page_category,
                hash=current_hash,
                summary=summary,
                version=1,
            ))
            logger.info("First fingerprint for %s: %s", page_category, current_hash)
            return ChangeResult(
                page_category=page_category,
                changed=False,
                is_new=True,
                version=1,
                current_hash=current_hash,
            )

        if current.hash == current_hash:
            return ChangeResult(
                page_category=page_category,
                changed=False,
                version=current.version,
                previous_hash=current.previous_hash,
                current_hash=current_hash,
            )

        diff = compute_diff(current.summary, summary)
        new_version = current.version + 1
        self.store.save_fingerprint(StructureFingerprint(
            page_category=page_category,
            hash=current_hash,
            summary=summary,
            version=new_version,
            previous_hash=current.hash,
        ))
        result = ChangeResult(
            page_category=page_category,
            changed=True,
            diff=diff,
            version=new_version,
            previous_hash=current.hash,
            current_hash=current_hash,
        )
        logger.warning(
            "Structure of %s changed (v%d -> v%d): %s",
            page_category, current.version, new_version, ", ".join(result.changed_properties()),
        )
        self._emit(result)
        return result

    def _emit(self, result: ChangeResult):
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Structure change listener failed for %s", result.page_category)

    def history(self, page_category: str) -> List[StructureFingerprint]:
        return self.store.fingerprint_history(page_category)

    def tracked_categories(self) -> List[str]:
        return self.store.tracked_categories()

    async def preflight(self, page, page_category: str) -> Dict[str, Any]:
        """Compare before a run and report whether the page looks as expected."""
        result = await self.compare(page, page_category)
        if result.changed:
            logger.warning(
                "Preflight: %s layout changed, locators may need rediscovery (%s)",
                page_category, ", ".join(result.changed_properties()),
            )
        return {
            "page_category": page_category,
            "ok": result.error is None and not result.changed,
            "change": result,
        }
