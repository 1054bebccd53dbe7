import asyncio
from typing import Any, Dict, List, Optional

import pytest
from selectolax.parser import HTMLParser

from resilient_scraper.config import Settings
from resilient_scraper.errors import LLMError, PageInteractionError
from resilient_scraper.models import PageSnapshot
from resilient_scraper.registry import SelectorRegistry
from resilient_scraper.store import CachedRegistryStore


class FakePage:
    """Page handle backed by static HTML and a canned structure summary."""

    def __init__(self, url: str = "https://www.instagram.com/p/ABC123/", html: str = "", structure: Any = None):
        self.url = url
        self.markup = html
        self.structure = structure if structure is not None else {}
        self.fail_evaluate = False
        self.fail_queries = False
        self.queries: List[str] = []

    def current_url(self) -> str:
        return self.url

    async def evaluate_in_page(self, script: str, arg: Any = None) -> Any:
        if self.fail_evaluate:
            raise PageInteractionError("Execution context was destroyed")
        return self.structure

    async def query_one(self, locator: str):
        self.queries.append(locator)
        if self.fail_queries:
            raise PageInteractionError("Element is not attached to the DOM")
        return HTMLParser(self.markup).css_first(locator)

    async def query_all(self, locator: str) -> list:
        return HTMLParser(self.markup).css(locator)

    async def html(self) -> str:
        return self.markup

    async def snapshot(self) -> PageSnapshot:
        return PageSnapshot.from_html(self.url, self.markup)


class FakeLLM:
    """Stand-in for LLMClient returning queued replies."""

    def __init__(self, replies: Optional[List[Any]] = None, enabled: bool = True, delay: float = 0.0):
        self.replies = list(replies or [])
        self.enabled = enabled
        self.model = "fake-model"
        self.delay = delay
        self.prompts: List[str] = []

    async def complete_json(self, prompt: str, **kwargs) -> Dict[str, Any]:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.replies:
            raise LLMError("no reply queued")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return CachedRegistryStore()


@pytest.fixture
def registry(store, settings):
    return SelectorRegistry(store, settings)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def disabled_llm():
    return FakeLLM(enabled=False)
