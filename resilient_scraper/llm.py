import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
import httpx

from .config import Settings
from .errors import LLMError

logger = logging.getLogger(__name__)


class LLMClient:
    """Thin JSON-mode chat completion client for the OpenAI API.

    Without an API key the client is disabled and every call raises
    ``LLMError``; callers check ``enabled`` and skip model-backed steps.
    """

    def __init__(self, settings: Optional[Settings] = None, max_retries: int = 1, base_delay: float = 2.0):
        self.settings = settings or Settings.from_env()
        self.api_key = self.settings.openai_api_key
        self.model = self.settings.openai_model
        self.base_url = self.settings.openai_base_url
        self.timeout = self.settings.llm_timeout_seconds
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def complete_json(
        self,
        prompt: str,
        system: str = "You are a web structure analyst. Always respond with valid JSON only.",
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ) -> Dict[str, Any]:
        """Send one prompt and parse the reply as a JSON object."""
        if not self.enabled:
            raise LLMError("OPENAI_API_KEY not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

        response = None
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.post(
                        self.base_url,
                        headers={
                            "Authorization": f"Bearer {self.api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    break
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 429 and attempt < self.max_retries - 1:
                        delay = self.base_delay * (2 ** attempt)
                        logger.warning(
                            "Rate limited by OpenAI, retrying in %ss (attempt %d/%d)",
                            delay, attempt + 1, self.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise LLMError(f"OpenAI returned HTTP {e.response.status_code}") from e
                except httpx.HTTPError as e:
                    raise LLMError(f"OpenAI request failed: {e}") from e

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError("Unexpected completion payload") from e

        return parse_json_reply(content)


def parse_json_reply(content: Optional[str]) -> Dict[str, Any]:
    """Parse a model reply, tolerating a fenced ```json block around it."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except ValueError as e:
        raise LLMError("Model reply is not valid JSON") from e
    if not isinstance(data, dict):
        raise LLMError("Model reply is not a JSON object")
    return data


def build_discovery_prompt(
    element_name: str,
    description: str,
    required: List[str],
    forbidden: List[str],
    html_excerpt: str,
    url: str,
    page_category: str,
) -> str:
    """Prompt asking for CSS selectors that locate one named element."""
    must = "\n".join(f"- {r}" for r in required) or "- (none)"
    must_not = "\n".join(f"- {f}" for f in forbidden) or "- (none)"
    return f"""Find CSS selectors for "{description}" ({element_name}) on a {page_category} page.

URL: {url}

THE ELEMENT MUST:
{must}

THE ELEMENT MUST NOT:
{must_not}

HTML EXCERPT (noise removed, truncated):
```html
{html_excerpt}
```

RULES:
1. Return 3-5 CSS selectors, most specific first
2. Prefer STABLE attributes: data-testid, aria-label, name, or role combined with a tag
3. NEVER return bare tags ("div", "span", "ul li"), bare [role] or "*"; they match unrelated elements
4. Class names are obfuscated by the build; qualify substring matches with a tag: li[class*="comment"] NOT .x1lliihq or a bare [class*="comment"]
5. Selectors must match the element on THIS page

RESPONSE FORMAT (JSON only):
{{
  "selectors": ["selector1", "selector2", "selector3"],
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}}"""


def build_extraction_prompt(url: str, html_excerpt: str, text_excerpt: str) -> str:
    """Prompt asking the model to read comments straight off the page."""
    return f"""Extract every user comment visible on this social media post page.

URL: {url}

VISIBLE TEXT:
\"\"\"
{text_excerpt}
\"\"\"

HTML EXCERPT:
```html
{html_excerpt}
```

RULES:
- Only real user comments. Skip the post caption, buttons, menus and counters ("Reply", "Like", "2h", "View replies")
- username is the commenter's handle without "@"
- text is the comment body exactly as shown

RESPONSE FORMAT (JSON only):
{{
  "comments": [{{"username": "handle", "text": "comment body"}}],
  "found_count": 0,
  "confidence": 0.0-1.0,
  "notes": "anything unusual"
}}"""
