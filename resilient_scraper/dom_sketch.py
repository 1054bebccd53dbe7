"""
Lightweight DOM reduction for model prompts and offline page snapshots.
Cuts markup down to the comment-bearing region, removing noise.
"""

from selectolax.parser import HTMLParser
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import re

from .classifier import LANDMARK_SELECTORS

logger = logging.getLogger(__name__)

NOISE_TAGS = "script, style, svg, noscript, link, meta"

# Containers tried in order when cutting an excerpt.
CONTENT_ROOTS = ('article', 'div[role="dialog"]', 'main', '[role="main"]')

SCRIPT_PAYLOAD_SELECTORS = (
    'script[type="application/json"]',
    'script[type="application/ld+json"]',
    'script[data-sjs]',
)


def make_html_excerpt(html: str, max_chars: int, roots: Tuple[str, ...] = CONTENT_ROOTS) -> str:
    """Return the outer HTML of the first content root, noise removed, capped."""
    tree = HTMLParser(html or "")
    for tag in tree.css(NOISE_TAGS):
        tag.decompose()

    for selector in roots:
        node = tree.css_first(selector)
        if node is not None and node.html:
            return node.html[:max_chars]

    body = tree.body
    source = body.html if body is not None and body.html else (html or "")
    return source[:max_chars]


def visible_text(html: str, max_chars: Optional[int] = None) -> str:
    tree = HTMLParser(html or "")
    for tag in tree.css("script, style, noscript, template"):
        tag.decompose()
    root = tree.body or tree.root
    if root is None:
        return ""
    text = root.text(deep=True, separator="\n", strip=True)
    text = re.sub(r"\n{2,}", "\n", text)
    return text[:max_chars] if max_chars else text


def _truncate(text: str, max_len: int) -> str:
    """Truncate text to max length."""
    text = re.sub(r'\s+', ' ', text).strip()
    if len(text) > max_len:
        return text[:max_len] + '...'
    return text


def script_payloads(html: str) -> List[Any]:
    """Parse every embedded JSON script block; unparsable blocks are skipped."""
    tree = HTMLParser(html or "")
    payloads = []
    for selector in SCRIPT_PAYLOAD_SELECTORS:
        for node in tree.css(selector):
            raw = (node.text(deep=True) or "").strip()
            if not raw or raw[0] not in "[{":
                continue
            try:
                payloads.append(json.loads(raw))
            except ValueError:
                logger.debug("Skipping non-JSON script block (%d chars)", len(raw))
    return payloads


def snapshot_fields_from_html(html: str) -> Dict[str, Any]:
    """Fields for a PageSnapshot built from static markup instead of a live page."""
    tree = HTMLParser(html or "")

    title_node = tree.css_first("title")
    meta = (
        tree.css_first('meta[property="og:description"]')
        or tree.css_first('meta[name="description"]')
    )

    inputs = []
    for node in tree.css("input"):
        attrs = node.attributes
        if (attrs.get("type") or "").lower() == "hidden":
            continue
        max_length = attrs.get("maxlength")
        inputs.append({
            "type": (attrs.get("type") or "text").lower(),
            "name": attrs.get("name"),
            "max_length": int(max_length) if max_length and max_length.isdigit() else None,
            "input_mode": attrs.get("inputmode"),
            "autocomplete": attrs.get("autocomplete"),
            "aria_label": attrs.get("aria-label"),
            "placeholder": attrs.get("placeholder"),
        })

    buttons = []
    for node in tree.css('button, [role="button"]'):
        text = _truncate(node.text(deep=True, strip=True), 50)
        if text:
            buttons.append(text)

    landmarks = []
    for selector in LANDMARK_SELECTORS:
        try:
            if tree.css_first(selector) is not None:
                landmarks.append(selector)
        except Exception:
            logger.debug("Landmark selector not supported offline: %s", selector)

    return {
        "title": title_node.text(strip=True) if title_node else "",
        "text": visible_text(html),
        "meta_description": meta.attributes.get("content") if meta else None,
        "inputs": inputs,
        "buttons": buttons[:20],
        "landmarks": landmarks,
        "has_dialog": tree.css_first('[role="dialog"]') is not None,
        "has_password_field": any(i["type"] == "password" for i in inputs),
    }
