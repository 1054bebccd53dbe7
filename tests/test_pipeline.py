"""
Tests for CommentExtractionPipeline: strategy order, ContentHash dedup,
the JSON walk and the DOM/model fallbacks.
"""

from datetime import datetime, timezone

import pytest

from resilient_scraper.discovery import LocatorDiscovery
from resilient_scraper.json_walk import find_comments, parse_timestamp
from resilient_scraper.models import PageSnapshot, Provenance
from resilient_scraper.pipeline import (
    CommentExtractionPipeline,
    detect_expected_total,
    parse_compact_number,
)

from conftest import FakeLLM

POST_URL = "https://www.instagram.com/p/ABC123/"

GRAPHQL_PAYLOAD = {
    "data": {
        "xdt_shortcode_media": {
            "is_video": False,
            "owner": {"id": "u0", "username": "poster"},
            "edge_media_to_caption": {"edges": [{"node": {"id": "cap", "text": "my caption"}}]},
            "edge_media_to_parent_comment": {
                "count": 3,
                "edges": [
                    {"node": {
                        "id": "c1",
                        "text": "first!",
                        "created_at": 1700000000,
                        "owner": {"id": "u1", "username": "alice"},
                        "edge_liked_by": {"count": 3},
                        "edge_threaded_comments": {"edges": [
                            {"node": {
                                "id": "c2",
                                "text": "reply here",
                                "created_at": 1700000100,
                                "owner": {"id": "u2", "username": "bob"},
                            }},
                        ]},
                    }},
                    {"node": {
                        "id": "c3",
                        "text": "nice",
                        "created_at": "1700000200000",
                        "owner": {"username": "carol"},
                    }},
                ],
            },
        },
    },
}

DOM_HTML = """
<article>
  <ul>
    <li>
      <ul>
        <li><a href="/alice/">alice</a><span dir="auto">great shot</span><time datetime="2024-01-01T10:00:00Z">2h</time></li>
        <li><a href="/bob/">bob</a><span dir="auto">love the colours</span><span>1h</span></li>
      </ul>
    </li>
  </ul>
</article>
"""

UNMATCHED_HTML = """
<section>
  <div data-testid="comment"><a href="/alice/">alice</a><span dir="auto">great shot</span></div>
  <div data-testid="comment"><a href="/bob/">bob</a><span dir="auto">love the colours</span></div>
</section>
"""


def snap(html="", api_payloads=None, text="", url=POST_URL, **kwargs):
    return PageSnapshot(url=url, html=html, text=text, api_payloads=api_payloads or [], **kwargs)


@pytest.fixture
def pipeline(registry):
    return CommentExtractionPipeline(registry)


class TestApiStrategy:
    @pytest.mark.asyncio
    async def test_graphql_edges_with_replies(self, pipeline):
        comments = await pipeline.extract(snap(api_payloads=[GRAPHQL_PAYLOAD]), "ABC123")

        assert [c.comment_id for c in comments] == ["c1", "c2", "c3"]
        assert all(c.provenance == Provenance.API for c in comments)
        first, reply, third = comments
        assert first.username == "alice"
        assert first.author_id == "u1"
        assert first.like_count == 3
        assert first.created_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert reply.parent_comment_id == "c1"
        assert third.created_at == datetime.fromtimestamp(1700000200, tz=timezone.utc)
        assert first.content_url == POST_URL

    @pytest.mark.asyncio
    async def test_first_productive_strategy_stops_the_run(self, pipeline, registry):
        session = pipeline.new_session(snap(), "ABC123")
        await pipeline.extract(snap(html=DOM_HTML, api_payloads=[GRAPHQL_PAYLOAD]), "ABC123", session=session)

        assert session.strategies_run == [Provenance.API]
        assert registry.get_health("comment_item", "post").attempts == 0

    @pytest.mark.asyncio
    async def test_later_strategy_only_adds_new_comments(self, pipeline):
        api = {"comments": [{"pk": "1", "text": "hi", "user": {"username": "a"}}]}
        dom = """
        <article><ul><li><ul>
          <li><a href="/A/">A</a><span dir="auto">hi</span></li>
          <li><a href="/b/">b</a><span dir="auto">another one</span></li>
        </ul></li></ul></article>
        """
        snapshot = snap(html=dom, api_payloads=[api])
        session = pipeline.new_session(snapshot, "ABC123")

        await pipeline.extract(snapshot, "ABC123", session=session)
        added = await pipeline.run_strategy(session, Provenance.DOM, snapshot)

        assert added == 1
        assert [(c.username, c.text, c.provenance) for c in session.comments] == [
            ("a", "hi", Provenance.API),
            ("b", "another one", Provenance.DOM),
        ]
        assert session.strategies_run == [Provenance.API, Provenance.DOM]


class TestScriptStrategy:
    @pytest.mark.asyncio
    async def test_embedded_json(self, pipeline):
        html = """
        <html><body>
          <script type="application/json">{"comments": [{"id": "9", "text": "from script", "username": "dana"}]}</script>
          <script type="application/json">not json at all</script>
        </body></html>
        """
        session = pipeline.new_session(snap(html=html), "ABC123")
        comments = await pipeline.extract(snap(html=html), "ABC123", session=session)

        assert [(c.comment_id, c.provenance) for c in comments] == [("9", Provenance.SCRIPT)]
        assert session.strategies_run == [Provenance.API, Provenance.SCRIPT]


class TestDomStrategy:
    @pytest.mark.asyncio
    async def test_registry_locators(self, pipeline, registry):
        comments = await pipeline.extract(snap(html=DOM_HTML), "ABC123")

        assert [(c.username, c.text) for c in comments] == [("alice", "great shot"), ("bob", "love the colours")]
        assert all(c.provenance == Provenance.DOM for c in comments)
        assert all(c.comment_id.startswith("dom_") for c in comments)
        assert comments[0].created_at == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        health = registry.get_health("comment_item", "post")
        assert health.successes == 1
        assert health.last_used_locator == "ul ul li"

    @pytest.mark.asyncio
    async def test_discovery_when_locators_fail(self, registry, store):
        llm = FakeLLM([{"selectors": ['div[data-testid="comment"]'], "confidence": 0.9}])
        pipeline = CommentExtractionPipeline(registry, discovery=LocatorDiscovery(llm, registry, store), llm=llm)

        comments = await pipeline.extract(snap(html=UNMATCHED_HTML), "ABC123")

        assert [c.username for c in comments] == ["alice", "bob"]
        assert all(c.provenance == Provenance.DOM for c in comments)
        assert registry.resolve_candidates("comment_item", "post")[0] == 'div[data-testid="comment"]'
        assert registry.get_health("comment_item", "post").successes == 1
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_failure_recorded_without_discovery(self, pipeline, registry):
        comments = await pipeline.extract(snap(html=UNMATCHED_HTML), "ABC123")
        assert comments == []
        health = registry.get_health("comment_item", "post")
        assert health.failures == 1
        assert health.consecutive_failures == 1


class TestModelStrategy:
    @pytest.mark.asyncio
    async def test_model_fallback(self, registry):
        llm = FakeLLM([{
            "comments": [
                {"username": "eve", "text": "model found me"},
                {"username": "@eve", "text": "model  found me"},
                {"username": "frank", "text": ""},
            ],
            "found_count": 3,
            "confidence": 0.6,
        }])
        pipeline = CommentExtractionPipeline(registry, llm=llm)
        session = pipeline.new_session(snap(html="<p>nothing here</p>"), "ABC123")

        comments = await pipeline.extract(snap(html="<p>nothing here</p>"), "ABC123", session=session)

        assert len(comments) == 1
        assert comments[0].provenance == Provenance.AI
        assert comments[0].comment_id.startswith("ai_")
        assert session.strategies_run == [Provenance.API, Provenance.SCRIPT, Provenance.DOM, Provenance.AI]

    @pytest.mark.asyncio
    async def test_model_disabled_yields_nothing(self, registry, disabled_llm):
        pipeline = CommentExtractionPipeline(registry, llm=disabled_llm)
        assert await pipeline.extract(snap(html="<p>nothing</p>"), "ABC123") == []
        assert disabled_llm.prompts == []

    @pytest.mark.asyncio
    async def test_model_error_yields_nothing(self, registry):
        pipeline = CommentExtractionPipeline(registry, llm=FakeLLM([]))
        assert await pipeline.extract(snap(html="<p>nothing</p>"), "ABC123") == []


class TestJsonWalk:
    def test_ui_chrome_and_media_excluded(self):
        payload = {"items": [
            {"id": "reply_button", "text": "Reply", "username": "x"},
            {"pk": "m1", "text": "post caption text", "media_type": 1, "user": {"username": "poster"}},
            {"pk": "5", "text": "View all 12 comments", "user": {"username": "z"}},
            {"pk": "7", "text": "Like", "user": {"username": "w"}},
            {"pk": "6", "text": "real one", "user": {"username": "y"}},
        ]}
        assert [r["text"] for r in find_comments(payload)] == ["real one"]

    def test_text_without_id_or_author_ignored(self):
        assert find_comments({"title": {"text": "Instagram"}}) == []

    def test_depth_bound(self):
        payload = {"id": "1", "text": "deep", "username": "u"}
        for _ in range(20):
            payload = {"wrap": payload}
        assert find_comments(payload, max_depth=15) == []
        assert len(find_comments(payload, max_depth=25)) == 1

    def test_empty_reply_containers_skipped(self):
        payload = {"id": "1", "text": "hi", "username": "u", "child_comments": [], "preview_child_comments": None}
        found = find_comments(payload)
        assert len(found) == 1
        assert found[0]["parent_comment_id"] is None

    def test_explicit_parent_kept(self):
        payload = {"id": "1", "text": "hi", "username": "u", "child_comments": [
            {"id": "2", "text": "yo", "username": "v", "parent_comment_id": "99"},
        ]}
        assert find_comments(payload)[1]["parent_comment_id"] == "99"

    @pytest.mark.parametrize("value,expected", [
        (1700000000, datetime.fromtimestamp(1700000000, tz=timezone.utc)),
        (1700000000000, datetime.fromtimestamp(1700000000, tz=timezone.utc)),
        ("2024-01-01T10:00:00Z", datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
    ])
    def test_timestamps(self, value, expected):
        assert parse_timestamp(value) == expected

    def test_unparsable_timestamp_is_now(self):
        before = datetime.now(timezone.utc)
        assert parse_timestamp("yesterday-ish") >= before


class TestExpectedTotal:
    @pytest.mark.parametrize("text,expected", [
        ("View all 1,234 comments", 1234),
        ("Ver todos os 3 mil comentários", 3000),
        ("View all 50000 comments", None),
        ("No count here", None),
    ])
    def test_from_page_text(self, text, expected):
        assert detect_expected_total(snap(text=text)) == expected

    def test_from_meta_description(self):
        meta = "1.5K likes, 45 comments - alice on Instagram"
        assert detect_expected_total(snap(meta_description=meta)) == 45

    @pytest.mark.parametrize("text,expected", [
        ("1,234", 1234),
        ("1.5K", 1500),
        ("3 mil", 3000),
        ("2M", 2000000),
        ("", None),
        ("abc", None),
    ])
    def test_parse_compact_number(self, text, expected):
        assert parse_compact_number(text) == expected

    @pytest.mark.asyncio
    async def test_incomplete_coverage_reported(self, pipeline):
        snapshot = snap(html=DOM_HTML, text="View all 10 comments")
        session = pipeline.new_session(snapshot, "ABC123")
        await pipeline.extract(snapshot, "ABC123", session=session)
        result = session.result()
        assert result.expected_total == 10
        assert result.coverage_incomplete
        assert result.coverage == pytest.approx(0.2)
