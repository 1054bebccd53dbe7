"""
Page state classification.

``PageStateClassifier.classify`` is a pure function of a ``PageSnapshot``:
rules are checked in a fixed, severity-ordered sequence and the first match
wins. The classifier only diagnoses; acting on the returned action tag is the
caller's job.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse

from .config import RATE_LIMIT_RETRY_AFTER_MS, UNKNOWN_PAGE_TEXT_LIMIT
from .errors import LLMError
from .models import (
    PageSnapshot,
    PageState,
    PageStateResult,
    Severity,
    UnknownPageAnalysis,
)

logger = logging.getLogger(__name__)


# Navigation landmarks only rendered for a logged-in session.
LANDMARK_SELECTORS = (
    'svg[aria-label="Home"]',
    'svg[aria-label="Início"]',
    'a[href="/direct/inbox/"]',
    'svg[aria-label="New post"]',
    'svg[aria-label="Nova publicação"]',
)

LOGIN_URL_PATTERNS = ('/accounts/login',)

BAD_STATE_URL_PATTERNS = (
    '/accounts/login',
    '/accounts/suspended',
    '/accounts/disabled',
    '/accounts/banned',
    '/accounts/confirm_email',
    '/accounts/confirm_phone',
    '/accounts/password/reset',
    '/challenge/',
    '/checkpoint/',
    'two_factor',
)

HOME_URL_RE = re.compile(r'^https?://(www\.)?instagram\.com/?(\?.*)?$')
POST_PATH_RE = re.compile(r'/(p|reel|reels|tv)/[A-Za-z0-9_-]+')
PROFILE_PATH_RE = re.compile(r'^/[A-Za-z0-9_.]+/?$')

# Action tags consumed by the workflow driver.
ACTION_MARK_SUSPENDED = "MARK_ACCOUNT_SUSPENDED"
ACTION_MARK_BANNED = "MARK_ACCOUNT_BANNED"
ACTION_MARK_NEEDS_VERIFICATION = "MARK_NEEDS_VERIFICATION"
ACTION_MARK_NEEDS_PASSWORD_RESET = "MARK_NEEDS_PASSWORD_RESET"
ACTION_HANDLE_CHALLENGE = "HANDLE_CHALLENGE"
ACTION_ENTER_TWO_FACTOR_CODE = "ENTER_TWO_FACTOR_CODE"
ACTION_WAIT_AND_RETRY = "WAIT_AND_RETRY"
ACTION_MARK_CREDENTIALS_INVALID = "MARK_CREDENTIALS_INVALID"
ACTION_PERFORM_LOGIN = "PERFORM_LOGIN"
ACTION_CONTINUE = "CONTINUE"
ACTION_ANALYZE_WITH_AI = "ANALYZE_WITH_AI"

UNKNOWN_SUGGESTIONS = {
    "captcha_required",
    "page_error",
    "click_continue",
    "wait",
    "navigate_home",
}


@dataclass(frozen=True)
class StateRule:
    state: PageState
    severity: Severity
    action: str
    url_patterns: Tuple[str, ...] = ()
    text_patterns: Tuple[str, ...] = ()
    # Rule applies only while the URL contains one of these
    only_on_urls: Tuple[str, ...] = ()
    code_field: bool = False

    def match(self, snapshot: PageSnapshot, text_lower: str) -> Optional[Tuple[str, str]]:
        url = snapshot.url or ""
        if self.only_on_urls and not any(p in url for p in self.only_on_urls):
            return None
        for pattern in self.url_patterns:
            if pattern in url:
                return "url", pattern
        for pattern in self.text_patterns:
            if pattern.lower() in text_lower:
                return "text", pattern
        if self.code_field and snapshot.has_code_field:
            return "field", "code entry input"
        return None


STATE_RULES: Tuple[StateRule, ...] = (
    StateRule(
        PageState.SUSPENDED, Severity.CRITICAL, ACTION_MARK_SUSPENDED,
        url_patterns=('/accounts/suspended',),
        text_patterns=(
            'Confirme que você é humano',
            'Confirm you are human',
            'conta foi suspensa',
            'account has been suspended',
            'verificar sua identidade',
            'verify your identity',
        ),
    ),
    StateRule(
        PageState.BANNED, Severity.CRITICAL, ACTION_MARK_BANNED,
        url_patterns=('/accounts/disabled', '/accounts/banned'),
        text_patterns=(
            'conta foi desativada',
            'account has been disabled',
            'violou nossas diretrizes',
            'violated our terms',
            'permanentemente removida',
            'permanently removed',
        ),
    ),
    StateRule(
        PageState.VERIFICATION_REQUIRED, Severity.WARNING, ACTION_MARK_NEEDS_VERIFICATION,
        url_patterns=('/accounts/confirm_email', '/accounts/confirm_phone'),
        text_patterns=(
            'confirme seu email',
            'confirm your email',
            'confirme seu número de telefone',
            'confirm your phone number',
        ),
    ),
    StateRule(
        PageState.PASSWORD_RESET_REQUIRED, Severity.WARNING, ACTION_MARK_NEEDS_PASSWORD_RESET,
        url_patterns=('/accounts/password/reset',),
        text_patterns=(
            'redefinir sua senha',
            'reset your password',
            'senha expirou',
            'password expired',
        ),
    ),
    StateRule(
        PageState.CHALLENGE, Severity.WARNING, ACTION_HANDLE_CHALLENGE,
        url_patterns=('/challenge/', '/checkpoint/'),
        text_patterns=(
            'verificação de segurança',
            'security check',
            'unusual login',
            'atividade suspeita',
            'suspicious activity',
        ),
    ),
    StateRule(
        PageState.TWO_FACTOR_REQUIRED, Severity.WARNING, ACTION_ENTER_TWO_FACTOR_CODE,
        url_patterns=('two_factor',),
        code_field=True,
    ),
    StateRule(
        PageState.RATE_LIMITED, Severity.WARNING, ACTION_WAIT_AND_RETRY,
        text_patterns=(
            'Aguarde alguns minutos',
            'Please wait a few minutes',
            'tente novamente mais tarde',
            'try again later',
            'muitas solicitações',
            'too many requests',
        ),
    ),
    StateRule(
        PageState.CREDENTIALS_INCORRECT, Severity.CRITICAL, ACTION_MARK_CREDENTIALS_INVALID,
        text_patterns=(
            'senha incorreta',
            'password was incorrect',
            'informações de login incorretas',
            'login information was incorrect',
            'senha errada',
            'wrong password',
        ),
        only_on_urls=LOGIN_URL_PATTERNS,
    ),
    StateRule(
        PageState.LOGIN_REQUIRED, Severity.INFO, ACTION_PERFORM_LOGIN,
        url_patterns=LOGIN_URL_PATTERNS,
    ),
)


def is_bad_state_url(url: str) -> bool:
    return any(pattern in (url or "") for pattern in BAD_STATE_URL_PATTERNS)


def is_home_url(url: str) -> bool:
    url = url or ""
    return bool(HOME_URL_RE.match(url)) or '/onetap' in url


def categorize_page(snapshot: PageSnapshot) -> str:
    """Coarse page category used to key fingerprints and locators."""
    url = snapshot.url or ""
    path = urlparse(url).path or "/"

    if '/accounts/login' in url and 'two_factor' not in url:
        return 'login'
    if 'two_factor' in url or snapshot.has_code_field:
        return 'two_factor'
    if '/challenge' in url or '/checkpoint' in url:
        return 'challenge'
    if POST_PATH_RE.search(path):
        return 'post_modal' if snapshot.has_dialog else 'post'
    if is_home_url(url):
        return 'home_feed'
    if PROFILE_PATH_RE.match(path) and '/accounts/' not in url and path != '/':
        return 'profile'
    return 'unknown'


class PageStateClassifier:
    """Maps a page snapshot to exactly one PageState plus an action tag."""

    def __init__(self, llm=None):
        self.llm = llm

    def classify(self, snapshot: PageSnapshot) -> PageStateResult:
        text_lower = (snapshot.text or "").lower()
        category = categorize_page(snapshot)

        for rule in STATE_RULES:
            match = rule.match(snapshot, text_lower)
            if match:
                matched_by, evidence = match
                logger.info("Detected %s (%s match: %s)", rule.state.value, matched_by, evidence)
                return PageStateResult(
                    state=rule.state,
                    severity=rule.severity,
                    action=rule.action,
                    url=snapshot.url,
                    page_category=category,
                    matched_by=matched_by,
                    evidence=evidence,
                    text_preview=(snapshot.text or "")[:200],
                    retry_after_ms=RATE_LIMIT_RETRY_AFTER_MS if rule.state == PageState.RATE_LIMITED else None,
                )

        if snapshot.has_password_field and not snapshot.landmarks:
            return PageStateResult(
                state=PageState.LOGIN_REQUIRED,
                severity=Severity.INFO,
                action=ACTION_PERFORM_LOGIN,
                url=snapshot.url,
                page_category=category,
                matched_by="field",
                evidence="password input",
                text_preview=(snapshot.text or "")[:200],
            )

        ready = self._content_ready_evidence(snapshot)
        if ready:
            logger.info("Detected %s (%s)", PageState.CONTENT_READY.value, ready)
            return PageStateResult(
                state=PageState.CONTENT_READY,
                severity=Severity.SUCCESS,
                action=ACTION_CONTINUE,
                url=snapshot.url,
                page_category=category,
                matched_by="indicator",
                evidence=ready,
            )

        logger.warning("Unknown page state at %s", snapshot.url)
        return PageStateResult(
            state=PageState.UNKNOWN,
            severity=Severity.WARNING,
            action=ACTION_ANALYZE_WITH_AI,
            url=snapshot.url,
            page_category=category,
            text_preview=(snapshot.text or "")[:500],
        )

    def _content_ready_evidence(self, snapshot: PageSnapshot) -> Optional[str]:
        if is_bad_state_url(snapshot.url):
            return None
        if snapshot.landmarks:
            return snapshot.landmarks[0]
        if is_home_url(snapshot.url):
            return "home url"
        return None

    async def analyze_unknown(self, snapshot: PageSnapshot) -> UnknownPageAnalysis:
        """Best-effort reading of a page no rule matched.

        Only ever suggests; nothing here touches the page.
        """
        text = (snapshot.text or "")[:UNKNOWN_PAGE_TEXT_LIMIT]
        buttons = [b for b in snapshot.buttons if b][:10]
        lower = text.lower()

        if any(word in lower for word in ('captcha', 'robot', 'humano')):
            return UnknownPageAnalysis(
                text_summary=text[:500], buttons=buttons,
                suggestion="captcha_required", reason="Page asks for CAPTCHA verification",
            )

        if any(word in lower for word in ('erro', 'error', 'problema')):
            return UnknownPageAnalysis(
                text_summary=text[:500], buttons=buttons,
                suggestion="page_error", reason="Page shows an error",
            )

        for label in buttons:
            label_lower = label.lower()
            if 'continu' in label_lower or 'próximo' in label_lower or 'next' in label_lower:
                return UnknownPageAnalysis(
                    text_summary=text[:500], buttons=buttons,
                    suggestion="click_continue", reason=f'Page needs interaction: "{label}" button found',
                )

        if self.llm is not None and self.llm.enabled:
            try:
                return await self._analyze_with_llm(snapshot.url, text, buttons)
            except LLMError as e:
                logger.warning("Unknown-page analysis via model failed: %s", e)

        return UnknownPageAnalysis(
            text_summary=text[:500], buttons=buttons,
            suggestion=None, reason="Could not determine page state",
        )

    async def _analyze_with_llm(self, url: str, text: str, buttons) -> UnknownPageAnalysis:
        prompt = f"""An automated browser session landed on a page it does not recognise.

URL: {url}

VISIBLE TEXT:
\"\"\"
{text}
\"\"\"

BUTTONS: {", ".join(buttons) or "none"}

Which single next step fits best? Choose one of: {", ".join(sorted(UNKNOWN_SUGGESTIONS))}, none.

RESPONSE FORMAT (JSON only):
{{"suggestion": "one of the options", "reason": "one sentence"}}"""

        data = await self.llm.complete_json(
            prompt,
            system="You diagnose web page states. Always respond with valid JSON only.",
            max_tokens=200,
        )
        suggestion = str(data.get("suggestion") or "").strip().lower()
        return UnknownPageAnalysis(
            text_summary=text[:500],
            buttons=buttons,
            suggestion=suggestion if suggestion in UNKNOWN_SUGGESTIONS else None,
            reason=str(data.get("reason") or "")[:300],
            source="llm",
        )
