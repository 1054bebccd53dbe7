import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from selectolax.parser import HTMLParser

from .json_walk import is_ui_chrome, parse_timestamp

logger = logging.getLogger(__name__)

# First path segments that are site sections, not profiles.
RESERVED_PATHS = {
    "p", "reel", "reels", "tv", "explore", "accounts", "direct", "stories",
    "about", "legal", "developer", "web", "challenge", "emails",
}

TEXT_NODE_SELECTORS = ('span[dir="auto"]', 'div[dir="auto"]', "span", "div")

RELATIVE_TIME_RE = re.compile(r"^\d+\s?[smhdw]$")


class CommentDomParser:
    """Extracts comments from markup using container locators.

    Each container must pair a profile link (the author) with a text node that
    is neither the username nor a relative timestamp.
    """

    def parse_page(self, html: str, container_locators: List[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Try locators in order; return the records of the first that yields any."""
        tree = HTMLParser(html or "")
        for locator in container_locators:
            try:
                items = tree.css(locator)
            except Exception as e:
                logger.debug("Locator %s not usable offline: %s", locator, e)
                continue

            records = []
            for item in items:
                record = self._extract_from_element(item)
                if record:
                    records.append(record)
            if records:
                return records, locator

        return [], None

    def _extract_from_element(self, element) -> Optional[Dict[str, Any]]:
        username = self._find_username(element)
        if not username:
            return None

        text = self._find_text(element, username)
        if not text:
            return None

        time_node = element.css_first("time[datetime]")
        return {
            "comment_id": None,
            "username": username,
            "text": text,
            "created_at": parse_timestamp(time_node.attributes.get("datetime") if time_node else None),
        }

    def _find_username(self, element) -> Optional[str]:
        for link in element.css('a[href^="/"]'):
            href = link.attributes.get("href") or ""
            segments = [s for s in href.split("?")[0].split("/") if s]
            if len(segments) != 1 or segments[0].lower() in RESERVED_PATHS:
                continue
            return segments[0]
        return None

    def _find_text(self, element, username: str) -> Optional[str]:
        for selector in TEXT_NODE_SELECTORS:
            for node in element.css(selector):
                # Skip wrappers whose text is mostly other nodes'
                if selector in ("span", "div") and any(c.tag in ("span", "div") for c in node.iter()):
                    continue
                text = re.sub(r"\s+", " ", node.text(deep=True, strip=True) or "").strip()
                if not text or text.lstrip("@") == username:
                    continue
                if RELATIVE_TIME_RE.match(text.lower()) or is_ui_chrome(None, text):
                    continue
                return text
        return None
