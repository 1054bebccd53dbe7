"""
Playwright-backed page handles for live sessions.
"""

import asyncio
import logging
from typing import Any, List, Optional
from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Response, async_playwright

from .classifier import LANDMARK_SELECTORS
from .errors import PageInteractionError
from .models import InputInfo, PageSnapshot

logger = logging.getLogger(__name__)

# Responses that may carry comment data.
API_URL_MARKERS = ("graphql", "/api/graphql", "/api/v1/media", "/comments")

SNAPSHOT_JS = """(landmarks) => {
    const visible = (el) => !!(el.offsetWidth || el.offsetHeight || el.getClientRects().length);
    const inputs = Array.from(document.querySelectorAll('input'))
        .filter(i => (i.type || 'text').toLowerCase() !== 'hidden' && visible(i))
        .map(i => ({
            type: (i.type || 'text').toLowerCase(),
            name: i.name || null,
            max_length: i.maxLength > 0 ? i.maxLength : null,
            input_mode: i.inputMode || null,
            autocomplete: i.autocomplete || null,
            aria_label: i.getAttribute('aria-label'),
            placeholder: i.placeholder || null,
        }));
    const buttons = Array.from(document.querySelectorAll('button, [role="button"]'))
        .filter(visible)
        .map(b => (b.innerText || '').trim().slice(0, 50))
        .filter(t => t.length > 0)
        .slice(0, 20);
    const meta = document.querySelector('meta[property="og:description"]')
        || document.querySelector('meta[name="description"]');
    return {
        title: document.title || '',
        text: document.body ? document.body.innerText : '',
        meta_description: meta ? meta.getAttribute('content') : null,
        inputs: inputs,
        buttons: buttons,
        landmarks: landmarks.filter(s => !!document.querySelector(s)),
        has_dialog: !!document.querySelector('[role="dialog"]'),
        has_password_field: inputs.some(i => i.type === 'password'),
    };
}"""


class PlaywrightPageHandle:
    """Page handle over a Playwright page.

    Playwright errors (detached nodes, navigation races, closed pages) come
    out as ``PageInteractionError``, which callers treat as "no match".
    """

    def __init__(self, page: Page, capture_api: bool = True):
        self.page = page
        self.api_payloads: List[Any] = []
        self._pending: List[asyncio.Task] = []
        if capture_api:
            page.on("response", self._on_response)

    def _on_response(self, response: Response):
        url = response.url
        if not any(marker in url for marker in API_URL_MARKERS):
            return
        self._pending.append(asyncio.ensure_future(self._read_json(response)))

    async def _read_json(self, response: Response):
        try:
            self.api_payloads.append(await response.json())
            logger.debug("Captured API payload from %s", response.url)
        except (PlaywrightError, ValueError):
            logger.debug("Ignoring non-JSON response from %s", response.url)

    async def drain(self):
        """Wait for response bodies still being read."""
        if self._pending:
            pending, self._pending = self._pending, []
            await asyncio.gather(*pending, return_exceptions=True)

    def current_url(self) -> str:
        return self.page.url

    async def evaluate_in_page(self, script: str, arg: Any = None) -> Any:
        try:
            if arg is None:
                return await self.page.evaluate(script)
            return await self.page.evaluate(script, arg)
        except PlaywrightError as e:
            raise PageInteractionError(str(e)) from e

    async def query_one(self, locator: str):
        try:
            return await self.page.query_selector(locator)
        except PlaywrightError as e:
            raise PageInteractionError(str(e)) from e

    async def query_all(self, locator: str) -> list:
        try:
            return await self.page.query_selector_all(locator)
        except PlaywrightError as e:
            raise PageInteractionError(str(e)) from e

    async def html(self) -> str:
        try:
            return await self.page.content()
        except PlaywrightError as e:
            raise PageInteractionError(str(e)) from e

    async def snapshot(self) -> PageSnapshot:
        """Everything classification and extraction need, read in one pass."""
        await self.drain()
        data = await self.evaluate_in_page(SNAPSHOT_JS, list(LANDMARK_SELECTORS))
        return PageSnapshot(
            url=self.current_url(),
            title=data.get("title") or "",
            text=data.get("text") or "",
            html=await self.html(),
            meta_description=data.get("meta_description"),
            inputs=[InputInfo(**i) for i in data.get("inputs") or []],
            buttons=data.get("buttons") or [],
            landmarks=data.get("landmarks") or [],
            has_dialog=bool(data.get("has_dialog")),
            has_password_field=bool(data.get("has_password_field")),
            api_payloads=list(self.api_payloads),
        )

    async def scroll_comments(self, scrolls: int = 3, pause: float = 1.0):
        """Scroll the comment container (or the window) to trigger lazy loading."""
        for _ in range(scrolls):
            await self.evaluate_in_page(
                """() => {
                    const box = document.querySelector('div[role="dialog"] ul') || document.scrollingElement;
                    box.scrollTop = box.scrollHeight;
                    window.scrollTo(0, document.body.scrollHeight);
                }"""
            )
            await asyncio.sleep(pause)


class BrowserSession:
    """Async context manager owning a Chromium instance."""

    def __init__(self, headless: bool = True, storage_state: Optional[str] = None):
        self.headless = headless
        self.storage_state = storage_state
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.playwright = None

    async def __aenter__(self):
        self.playwright = await async_playwright().start()
        self.browser = await self.playwright.chromium.launch(headless=self.headless)
        self.context = await self.browser.new_context(storage_state=self.storage_state)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.context:
            await self.context.close()
        if self.browser:
            await self.browser.close()
        if self.playwright:
            await self.playwright.stop()

    async def open(self, url: str, wait_time: float = 2.0, timeout_ms: int = 30000) -> PlaywrightPageHandle:
        """Open ``url`` in a new tab with API capture attached before navigation."""
        if not self.context:
            raise RuntimeError("Browser not initialized. Use async with context manager.")

        page = await self.context.new_page()
        handle = PlaywrightPageHandle(page)
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            await page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightError as e:
            logger.warning("Page load for %s did not settle: %s", url, e)
        await asyncio.sleep(wait_time)
        return handle
