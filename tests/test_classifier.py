import pytest

from resilient_scraper.classifier import (
    ACTION_ENTER_TWO_FACTOR_CODE,
    ACTION_WAIT_AND_RETRY,
    PageStateClassifier,
    categorize_page,
)
from resilient_scraper.models import InputInfo, PageSnapshot, PageState, Severity

from conftest import FakeLLM

POST_URL = "https://www.instagram.com/p/ABC123/"


@pytest.fixture
def classifier():
    return PageStateClassifier()


def snap(url=POST_URL, text="", **kwargs):
    return PageSnapshot(url=url, text=text, **kwargs)


class TestRules:
    def test_two_factor_on_login_url(self, classifier):
        result = classifier.classify(snap(
            url="https://www.instagram.com/accounts/login/two_factor?next=%2F",
            text="Enter the 6-digit code we sent to your phone",
            inputs=[InputInfo(name="verificationCode", max_length=6, input_mode="numeric")],
        ))
        assert result.state == PageState.TWO_FACTOR_REQUIRED
        assert result.action == ACTION_ENTER_TWO_FACTOR_CODE
        assert result.page_category == "two_factor"

    def test_two_factor_from_code_field_alone(self, classifier):
        result = classifier.classify(snap(
            url="https://www.instagram.com/accounts/somewhere/",
            inputs=[InputInfo(autocomplete="one-time-code")],
        ))
        assert result.state == PageState.TWO_FACTOR_REQUIRED
        assert result.matched_by == "field"

    def test_rate_limited(self, classifier):
        result = classifier.classify(snap(text="Please wait a few minutes before you try again."))
        assert result.state == PageState.RATE_LIMITED
        assert result.action == ACTION_WAIT_AND_RETRY
        assert result.retry_after_ms == 60000

    def test_rate_limited_portuguese(self, classifier):
        result = classifier.classify(snap(text="Aguarde alguns minutos antes de tentar novamente."))
        assert result.state == PageState.RATE_LIMITED

    def test_suspended_by_url(self, classifier):
        result = classifier.classify(snap(url="https://www.instagram.com/accounts/suspended/"))
        assert result.state == PageState.SUSPENDED
        assert result.severity == Severity.CRITICAL
        assert result.matched_by == "url"

    def test_banned_by_text(self, classifier):
        result = classifier.classify(snap(text="Your account has been disabled for violating our terms"))
        assert result.state == PageState.BANNED

    def test_suspended_wins_over_rate_limit(self, classifier):
        result = classifier.classify(snap(
            text="Your account has been suspended. Please wait a few minutes.",
        ))
        assert result.state == PageState.SUSPENDED

    def test_challenge(self, classifier):
        result = classifier.classify(snap(url="https://www.instagram.com/challenge/action/"))
        assert result.state == PageState.CHALLENGE

    def test_password_reset(self, classifier):
        result = classifier.classify(snap(text="You need to reset your password to continue"))
        assert result.state == PageState.PASSWORD_RESET_REQUIRED

    def test_credentials_incorrect_only_on_login_url(self, classifier):
        login = classifier.classify(snap(
            url="https://www.instagram.com/accounts/login/",
            text="Sorry, your password was incorrect. Please double-check your password.",
        ))
        assert login.state == PageState.CREDENTIALS_INCORRECT

        elsewhere = classifier.classify(snap(
            text="Sorry, your password was incorrect.",
            landmarks=['svg[aria-label="Home"]'],
        ))
        assert elsewhere.state == PageState.CONTENT_READY

    def test_login_required(self, classifier):
        result = classifier.classify(snap(url="https://www.instagram.com/accounts/login/?next=/p/ABC/"))
        assert result.state == PageState.LOGIN_REQUIRED
        assert result.page_category == "login"

    def test_logged_out_home_with_password_form(self, classifier):
        result = classifier.classify(snap(url="https://www.instagram.com/", has_password_field=True))
        assert result.state == PageState.LOGIN_REQUIRED

    def test_content_ready_from_landmark(self, classifier):
        result = classifier.classify(snap(landmarks=['a[href="/direct/inbox/"]']))
        assert result.state == PageState.CONTENT_READY
        assert result.is_usable
        assert result.severity == Severity.SUCCESS

    def test_content_ready_from_home_url(self, classifier):
        result = classifier.classify(snap(url="https://www.instagram.com/"))
        assert result.state == PageState.CONTENT_READY
        assert result.page_category == "home_feed"

    def test_unknown(self, classifier):
        result = classifier.classify(snap(text="Something unexpected"))
        assert result.state == PageState.UNKNOWN
        assert result.analysis is None


@pytest.mark.parametrize("url,expected", [
    ("https://www.instagram.com/p/ABC123/", "post"),
    ("https://www.instagram.com/reel/XYZ/", "post"),
    ("https://www.instagram.com/some.user/", "profile"),
    ("https://www.instagram.com/", "home_feed"),
    ("https://www.instagram.com/accounts/login/", "login"),
    ("https://www.instagram.com/challenge/123/", "challenge"),
    ("https://www.instagram.com/explore/tags/x/", "unknown"),
])
def test_categorize_page(url, expected):
    assert categorize_page(snap(url=url)) == expected


def test_post_with_dialog_is_modal():
    assert categorize_page(snap(has_dialog=True)) == "post_modal"


class TestUnknownAnalysis:
    @pytest.mark.asyncio
    async def test_captcha(self, classifier):
        analysis = await classifier.analyze_unknown(snap(text="Prove you're not a robot"))
        assert analysis.suggestion == "captcha_required"

    @pytest.mark.asyncio
    async def test_continue_button_is_only_suggested(self, classifier):
        analysis = await classifier.analyze_unknown(snap(text="Almost done", buttons=["Continue"]))
        assert analysis.suggestion == "click_continue"
        assert "Continue" in analysis.reason

    @pytest.mark.asyncio
    async def test_nothing_recognised_without_model(self, classifier):
        analysis = await classifier.analyze_unknown(snap(text="Hello there"))
        assert analysis.suggestion is None
        assert analysis.source == "heuristic"

    @pytest.mark.asyncio
    async def test_model_suggestion(self):
        llm = FakeLLM([{"suggestion": "navigate_home", "reason": "stray page"}])
        analysis = await PageStateClassifier(llm).analyze_unknown(snap(text="Hello there"))
        assert analysis.suggestion == "navigate_home"
        assert analysis.source == "llm"

    @pytest.mark.asyncio
    async def test_model_suggestion_outside_vocabulary_dropped(self):
        llm = FakeLLM([{"suggestion": "delete_account", "reason": "?"}])
        analysis = await PageStateClassifier(llm).analyze_unknown(snap(text="Hello there"))
        assert analysis.suggestion is None

    @pytest.mark.asyncio
    async def test_model_failure_falls_back(self):
        analysis = await PageStateClassifier(FakeLLM([])).analyze_unknown(snap(text="Hello there"))
        assert analysis.source == "heuristic"
