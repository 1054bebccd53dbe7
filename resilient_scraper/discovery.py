"""
Model-assisted locator discovery for elements whose known locators all fail.

One model call per attempt. Returned selectors pass a genericity filter, then
get validated against the live page; the first one that resolves becomes the
new primary in the registry. Every attempt lands in the audit log.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from .config import AUDIT_PROMPT_LIMIT, DISCOVERY_HTML_LIMIT
from .errors import LLMError, PageInteractionError
from .llm import build_discovery_prompt
from .models import DiscoveryAuditRecord, DiscoveryResult
from .registry import SelectorRegistry
from .store import RegistryStore

logger = logging.getLogger(__name__)

Matcher = Callable[[str], Awaitable[bool]]

# Attributes specific enough to stand alone in a selector.
ALLOWED_BARE_ATTRS = {
    "data-testid",
    "data-test-id",
    "data-test",
    "data-qa",
    "aria-label",
    "aria-labelledby",
    "name",
    "id",
}

# Attributes that narrow a tag enough when they carry a value.
QUALIFYING_ATTRS = {
    "class", "href", "src", "alt", "title", "type", "for",
    "placeholder", "autocomplete", "inputmode", "datetime",
}

NEVER_SPECIFIC_ATTRS = {"role", "tabindex", "dir"}

REJECT_ALL_TOO_GENERIC = "all_too_generic"
REJECT_LLM_UNAVAILABLE = "llm_unavailable"
REJECT_LLM_ERROR = "llm_error"
REJECT_MALFORMED = "malformed_response"
REJECT_NO_CANDIDATES = "no_candidates"
REJECT_NO_MATCH = "no_match_on_page"

_PSEUDO_RE = re.compile(r"::?[a-zA-Z-]+(\([^)]*\))?")
_ATTR_RE = re.compile(
    r"""\[\s*([-\w:.]+)\s*(?:([~|^$*]?=)\s*("[^"]*"|'[^']*'|[^\]\s]*))?\s*(?:[iIsS]\s*)?\]"""
)
_TAG_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*")
_COMBINATOR_RE = re.compile(r"\s*[>+~]\s*|\s+")


@dataclass(frozen=True)
class ElementSpec:
    description: str
    required: Tuple[str, ...] = ()
    forbidden: Tuple[str, ...] = ()


ELEMENT_SPECS = {
    "comment_list": ElementSpec(
        "a list or container of user comments on a post",
        required=("contain several comment items",),
        forbidden=("be the whole page or the main feed",),
    ),
    "comment_item": ElementSpec(
        "individual comment items within a comments section",
        required=(
            "match one element per comment",
            "contain a link to the commenter's profile",
            "contain the comment text",
        ),
        forbidden=(
            "match the post caption",
            "match buttons, menus or like counters",
            "match the whole comment list as one element",
        ),
    ),
    "comment_username": ElementSpec(
        "the username/author of a comment",
        required=("be a link to a profile (href starting with /)",),
        forbidden=("match the post author in the header",),
    ),
    "comment_text": ElementSpec(
        "the actual text content of a comment",
        required=("contain user-written text",),
        forbidden=("match timestamps like 2h or 3d", "match the username"),
    ),
    "view_all_comments": ElementSpec(
        "a link that opens all comments of a post",
        required=("mention comments in its text or label",),
    ),
    "load_more_comments": ElementSpec(
        "a button or link to load more comments",
        required=("be clickable",),
        forbidden=("match the post's like button",),
    ),
    "submit_button": ElementSpec(
        "the login/submit button on a login form",
        required=("be inside the login form",),
        forbidden=("match sign-up or forgot-password links",),
    ),
    "username_input": ElementSpec(
        "the username/email input field",
        required=("be a text input",),
        forbidden=("match the password input",),
    ),
    "password_input": ElementSpec(
        "the password input field",
        required=("have type=password",),
    ),
    "code_input": ElementSpec(
        "the security code input on a two-factor page",
        required=("accept a 6-digit code",),
    ),
    "post_author": ElementSpec(
        "the author/username of the post",
        required=("be a link to a profile",),
        forbidden=("match commenters",),
    ),
    "likes_count": ElementSpec(
        "the number of likes on a post",
        required=("contain a number",),
    ),
    "post_link": ElementSpec(
        "links to individual posts",
        required=("have an href to a post (/p/ or /reel/)",),
    ),
}


def element_spec(element_name: str) -> ElementSpec:
    return ELEMENT_SPECS.get(element_name) or ElementSpec(
        f'elements named "{element_name}"',
        required=(f"be the element a user would call {element_name.replace('_', ' ')}",),
        forbidden=("match large layout containers", "match unrelated repeated elements"),
    )


def split_selector_list(selector: str) -> List[str]:
    """Split a selector group on top-level commas only."""
    parts, buf, depth, quote = [], [], 0, None
    for ch in selector:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch in "[(":
            depth += 1
        elif ch in "])":
            depth = max(0, depth - 1)
        elif ch == "," and depth == 0:
            parts.append("".join(buf).strip())
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf).strip())
    return [p for p in parts if p]


def _is_generic_compound(selector: str) -> bool:
    attrs = [(m.group(1).lower(), m.group(2) is not None) for m in _ATTR_RE.finditer(selector)]
    plain = _PSEUDO_RE.sub("", _ATTR_RE.sub("", selector)).strip()
    if not plain and not attrs:
        return True

    tokens = [t for t in _COMBINATOR_RE.split(plain) if t]
    if any("." in t or "#" in t for t in tokens):
        return False
    has_tag = any(_TAG_RE.match(t) for t in tokens)

    for name, has_value in attrs:
        if name in NEVER_SPECIFIC_ATTRS or not has_value:
            continue
        if name in ALLOWED_BARE_ATTRS:
            return False
        # Weaker attributes only count when anchored to a tag.
        if has_tag and (name in QUALIFYING_ATTRS or name.startswith(("data-", "aria-"))):
            return False
    return True


def is_too_generic(selector: str) -> bool:
    """True if any alternative in the selector would match unrelated elements."""
    parts = split_selector_list(selector or "")
    if not parts:
        return True
    return any(_is_generic_compound(p) for p in parts)


class LocatorDiscovery:
    def __init__(self, llm, registry: SelectorRegistry, store: RegistryStore, html_limit: int = DISCOVERY_HTML_LIMIT):
        self.llm = llm
        self.registry = registry
        self.store = store
        self.html_limit = html_limit
        self._listeners: List[Callable[[DiscoveryResult], None]] = []

    def subscribe(self, listener: Callable[[DiscoveryResult], None]):
        """Called with every successful discovery, after it is persisted."""
        self._listeners.append(listener)

    async def discover(
        self,
        element_name: str,
        page_category: str,
        html_excerpt: str,
        matcher: Matcher,
        page_url: Optional[str] = None,
    ) -> DiscoveryResult:
        spec = element_spec(element_name)
        excerpt = (html_excerpt or "")[: self.html_limit]
        prompt = build_discovery_prompt(
            element_name,
            spec.description,
            list(spec.required),
            list(spec.forbidden),
            excerpt,
            page_url or "",
            page_category,
        )
        result = DiscoveryResult(element_name=element_name, page_category=page_category)

        if self.llm is None or not self.llm.enabled:
            result.rejected_reason = REJECT_LLM_UNAVAILABLE
            self._audit(result, prompt, len(excerpt), page_url)
            return result

        logger.info("Asking model for %s locators on %s (%d chars of HTML)", element_name, page_category, len(excerpt))
        try:
            data = await self.llm.complete_json(
                prompt,
                system="You are an expert at CSS selectors for obfuscated React markup. Always respond with valid JSON only.",
                temperature=0.3,
                max_tokens=500,
            )
        except LLMError as e:
            logger.warning("Locator discovery for %s/%s failed: %s", page_category, element_name, e)
            result.rejected_reason = REJECT_LLM_ERROR
            self._audit(result, prompt, len(excerpt), page_url)
            return result

        raw = data.get("selectors") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            result.rejected_reason = REJECT_MALFORMED
            self._audit(result, prompt, len(excerpt), page_url)
            return result

        result.candidates = [s.strip() for s in raw if isinstance(s, str) and s.strip()]
        result.confidence = _as_confidence(data.get("confidence", 0.5))
        if not result.candidates:
            result.rejected_reason = REJECT_NO_CANDIDATES
            self._audit(result, prompt, len(excerpt), page_url)
            return result

        survivors = []
        for selector in result.candidates:
            if is_too_generic(selector):
                result.rejected.append(selector)
            else:
                survivors.append(selector)
        if result.rejected:
            logger.info("Rejected generic selectors for %s: %s", element_name, result.rejected)

        if not survivors:
            result.rejected_reason = REJECT_ALL_TOO_GENERIC
            self._audit(result, prompt, len(excerpt), page_url, survivors)
            return result

        for selector in survivors:
            if await self._matches(matcher, selector):
                result.accepted_locator = selector
                break

        if result.accepted_locator is None:
            result.rejected_reason = REJECT_NO_MATCH
            self._audit(result, prompt, len(excerpt), page_url, survivors)
            return result

        self.registry.upsert_discovered(
            element_name,
            page_category,
            result.accepted_locator,
            [s for s in survivors if s != result.accepted_locator],
            result.confidence,
        )
        self._audit(result, prompt, len(excerpt), page_url, survivors)
        for listener in list(self._listeners):
            try:
                listener(result)
            except Exception:
                logger.exception("Discovery listener failed for %s/%s", page_category, element_name)
        return result

    async def _matches(self, matcher: Matcher, selector: str) -> bool:
        try:
            return bool(await matcher(selector))
        except PageInteractionError as e:
            logger.debug("Candidate %s did not resolve: %s", selector, e)
            return False

    def _audit(
        self,
        result: DiscoveryResult,
        prompt: str,
        excerpt_size: int,
        page_url: Optional[str],
        accepted: Optional[List[str]] = None,
    ):
        self.store.append_audit(DiscoveryAuditRecord(
            element_name=result.element_name,
            page_category=result.page_category,
            page_url=page_url,
            prompt=prompt[:AUDIT_PROMPT_LIMIT],
            excerpt_size=excerpt_size,
            model=getattr(self.llm, "model", None),
            candidates_returned=list(result.candidates),
            candidates_accepted=list(accepted or []),
            accepted_locator=result.accepted_locator,
            confidence=result.confidence,
            success=result.success,
            rejected_reason=result.rejected_reason,
        ))


def _as_confidence(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0
