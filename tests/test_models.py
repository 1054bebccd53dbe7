"""
Tests for the shared data model: ContentHash, comment validation, locator
entries and code-field detection.
"""

import pytest
from pydantic import ValidationError

from resilient_scraper.models import (
    ExtractedComment,
    InputInfo,
    LocatorEntry,
    PageSnapshot,
    Provenance,
    StructureSummary,
    content_hash,
)


class TestContentHash:
    def test_deterministic(self):
        assert content_hash("alice", "nice photo") == content_hash("alice", "nice photo")

    def test_author_case_and_padding_ignored(self):
        assert content_hash("  Alice ", "nice photo") == content_hash("alice", "nice photo")

    def test_body_whitespace_normalized(self):
        assert content_hash("alice", "nice   photo\n") == content_hash("alice", "nice photo")

    def test_body_truncated(self):
        base = "x" * 100
        assert content_hash("alice", base + "tail one") == content_hash("alice", base + "tail two")

    def test_different_authors_differ(self):
        assert content_hash("alice", "hi") != content_hash("bob", "hi")


class TestExtractedComment:
    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            ExtractedComment(comment_id="1", content_id="p", text="   ", provenance=Provenance.DOM)

    def test_username_cleaned(self):
        c = ExtractedComment(comment_id="1", content_id="p", username=" @alice", text="hi", provenance=Provenance.API)
        assert c.username == "alice"
        assert c.content_hash == content_hash("alice", "hi")


class TestLocatorEntry:
    def test_candidates_deduplicated_in_order(self):
        entry = LocatorEntry(page_category="post", element_name="comment_item", candidates=["a", " b ", "a", ""])
        assert entry.candidates == ["a", "b"]
        assert entry.primary == "a"

    def test_confidence_clamped(self):
        entry = LocatorEntry(page_category="post", element_name="x", candidates=[], confidence=3)
        assert entry.confidence == 1.0


class TestCodeField:
    @pytest.mark.parametrize("info", [
        InputInfo(name="verificationCode"),
        InputInfo(autocomplete="one-time-code"),
        InputInfo(type="tel", max_length=6),
        InputInfo(aria_label="Código de segurança"),
    ])
    def test_code_entry_detected(self, info):
        assert info.is_code_entry

    def test_plain_username_field_is_not_code(self):
        assert not InputInfo(name="username", aria_label="Phone number, username, or email").is_code_entry

    def test_snapshot_from_html_reads_inputs(self):
        snap = PageSnapshot.from_html(
            "https://www.instagram.com/accounts/login/two_factor",
            '<form><input name="verificationCode" inputmode="numeric" maxlength="6"><button>Confirm</button></form>',
        )
        assert snap.has_code_field
        assert snap.buttons == ["Confirm"]
        assert not snap.has_password_field


def test_structure_summary_counts_input_type_list():
    summary = StructureSummary(input_types=["text", "password", "TEXT"])
    assert summary.input_types == {"text": 2, "password": 1}
