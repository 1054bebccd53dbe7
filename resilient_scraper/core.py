import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

from .classifier import PageStateClassifier, categorize_page
from .config import DISCOVERY_HTML_LIMIT, Settings
from .discovery import LocatorDiscovery
from .dom_sketch import make_html_excerpt
from .errors import PageInteractionError
from .fingerprint import StructureFingerprinter
from .llm import LLMClient
from .models import (
    ChangeResult,
    DiscoveryResult,
    ExtractionResult,
    LocatorEntry,
    PageSnapshot,
    PageState,
    PageStateResult,
    SelectorHealthSnapshot,
)
from .pipeline import CommentExtractionPipeline
from .registry import RediscoveryQueue, SelectorRegistry
from .store import RegistryStore, build_store

logger = logging.getLogger(__name__)


@contextmanager
def _logged(operation: str, url: Optional[str] = None, category: Optional[str] = None, element: Optional[str] = None):
    try:
        yield
    except Exception:
        logger.exception("%s failed (url=%s, category=%s, element=%s)", operation, url, category, element)
        raise


class ExtractionEngine:
    """Main entry point tying classification, locators, fingerprints and
    comment extraction to one shared store."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[RegistryStore] = None,
        llm=None,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store if store is not None else build_store(self.settings.registry_db_url)
        self.llm = llm if llm is not None else LLMClient(self.settings)
        if not self.llm.enabled:
            logger.info("No language-model key configured; model-assisted steps are disabled")

        self.registry = SelectorRegistry(self.store, self.settings)
        self.rediscovery = RediscoveryQueue(self.registry.monitor)
        self.classifier = PageStateClassifier(self.llm)
        self.fingerprinter = StructureFingerprinter(self.store)
        self.discovery = LocatorDiscovery(self.llm, self.registry, self.store)
        self.discovery.subscribe(self._on_discovered)
        self.pipeline = CommentExtractionPipeline(
            self.registry,
            discovery=self.discovery,
            llm=self.llm,
            max_depth=self.settings.json_max_depth,
        )

    def _on_discovered(self, result: DiscoveryResult):
        self.rediscovery.resolve(result.element_name, result.page_category)

    # -------- Page state --------
    async def classify_page(self, snapshot: PageSnapshot, analyze_unknown: bool = True) -> PageStateResult:
        with _logged("classify_page", snapshot.url):
            result = self.classifier.classify(snapshot)
            if result.state == PageState.UNKNOWN and analyze_unknown:
                result.analysis = await self.classifier.analyze_unknown(snapshot)
            return result

    # -------- Locators --------
    def resolve_candidates(self, element_name: str, page_category: str) -> List[str]:
        with _logged("resolve_candidates", category=page_category, element=element_name):
            return self.registry.resolve_candidates(element_name, page_category)

    def record_attempt(
        self,
        element_name: str,
        page_category: str,
        success: bool,
        used_locator: Optional[str] = None,
    ) -> SelectorHealthSnapshot:
        with _logged("record_attempt", category=page_category, element=element_name):
            return self.registry.record_attempt(element_name, page_category, success, used_locator)

    def rollback(self, element_name: str, page_category: str, to_version: Optional[int] = None) -> Optional[LocatorEntry]:
        """Restore an earlier locator version; a restored key leaves the rediscovery queue."""
        with _logged("rollback", category=page_category, element=element_name):
            entry = self.registry.rollback(element_name, page_category, to_version)
        if entry is not None:
            self.rediscovery.resolve(element_name, page_category)
        return entry

    def get_health(self, element_name: str, page_category: str) -> SelectorHealthSnapshot:
        return self.registry.get_health(element_name, page_category)

    def health_report(self) -> List[SelectorHealthSnapshot]:
        return self.registry.health_report()

    def health_summary(self) -> Dict[str, int]:
        return self.registry.summary()

    def pending_rediscovery(self) -> List[Tuple[str, str]]:
        return self.rediscovery.pending()

    async def locate(self, page, element_name: str, page_category: str) -> Optional[str]:
        """Return the first locator that resolves on the live page.

        Walks stored candidates in order, recording each outcome, and asks for
        a new locator when every candidate misses.
        """
        url = page.current_url()
        with _logged("locate", url, page_category, element_name):
            candidates = self.registry.resolve_candidates(element_name, page_category)
            for locator in candidates:
                try:
                    found = await page.query_one(locator) is not None
                except PageInteractionError as e:
                    logger.debug("Locator %s failed: %s", locator, e)
                    found = False
                if found:
                    self.registry.record_attempt(element_name, page_category, True, locator)
                    return locator

            self.registry.record_attempt(element_name, page_category, False, candidates[0] if candidates else None)
            logger.warning("All %d locators for %s/%s missed", len(candidates), page_category, element_name)

            try:
                html = await page.html()
            except PageInteractionError as e:
                logger.warning("Cannot read page for discovery of %s: %s", element_name, e)
                return None

            async def matcher(locator: str) -> bool:
                return await page.query_one(locator) is not None

            result = await self.discovery.discover(
                element_name,
                page_category,
                make_html_excerpt(html, DISCOVERY_HTML_LIMIT),
                matcher,
                page_url=url,
            )
            if result.success:
                self.registry.record_attempt(element_name, page_category, True, result.accepted_locator)
            return result.accepted_locator

    # -------- Structure --------
    async def detect_structural_change(self, page, page_category: str) -> ChangeResult:
        with _logged("detect_structural_change", page.current_url(), page_category):
            return await self.fingerprinter.compare(page, page_category)

    # -------- Comments --------
    async def extract_comments(
        self,
        snapshot: PageSnapshot,
        content_id: str,
        content_url: Optional[str] = None,
        page=None,
        timeout: Optional[float] = None,
    ) -> ExtractionResult:
        """Extract comments; on timeout, whatever was accepted so far is returned."""
        with _logged("extract_comments", snapshot.url, categorize_page(snapshot), "comment_item"):
            session = self.pipeline.new_session(snapshot, content_id, content_url)
            try:
                await asyncio.wait_for(
                    self.pipeline.extract(snapshot, content_id, content_url, page=page, session=session),
                    timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Extraction for %s timed out after %ss with %d comments",
                    content_id, timeout, len(session.comments),
                )
            return session.result()

    async def inspect(self, page) -> Dict[str, Any]:
        """Snapshot, classify and fingerprint the current page in one call."""
        snapshot = await page.snapshot()
        state = await self.classify_page(snapshot)
        change = await self.detect_structural_change(page, state.page_category)
        return {"snapshot": snapshot, "state": state, "change": change}
