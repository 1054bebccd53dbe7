"""
Example usage of the resilient extraction engine.
"""

import asyncio
import json
from resilient_scraper import BrowserSession, ExtractionEngine, PageSnapshot


SAMPLE_POST_HTML = """
<html><head>
  <meta property="og:description" content="120 likes, 2 comments - someone on Instagram">
</head><body>
  <nav><a href="/direct/inbox/">Inbox</a><svg aria-label="Home"></svg></nav>
  <article>
    <ul>
      <ul><li><a href="/alice/">alice</a><span>great shot!</span><time datetime="2024-05-01T10:00:00Z">2h</time></li></ul>
      <ul><li><a href="/bob/">bob</a><span>where is this?</span><time datetime="2024-05-01T11:00:00Z">1h</time></li></ul>
    </ul>
  </article>
</body></html>
"""


async def example_1_offline_snapshot():
    """Classify and extract from saved markup; no browser needed."""
    print("=" * 60)
    print("Example 1: Offline snapshot")
    print("=" * 60)

    engine = ExtractionEngine()
    snapshot = PageSnapshot.from_html("https://www.instagram.com/p/ABC123/", SAMPLE_POST_HTML)

    state = await engine.classify_page(snapshot)
    print(f"State: {state.state.value} -> {state.action} ({state.page_category})")

    result = await engine.extract_comments(snapshot, content_id="ABC123")
    print(f"\n✓ Extracted {len(result.comments)} comments via {[s.value for s in result.strategies_run]}")
    for comment in result.comments:
        print(f"  @{comment.username}: {comment.text}")


async def example_2_live_page():
    """Open a live post, check its state and structure, then extract."""
    print("\n" + "=" * 60)
    print("Example 2: Live page")
    print("=" * 60)

    engine = ExtractionEngine()
    url = "https://www.instagram.com/p/ABC123/"

    async with BrowserSession(headless=True) as browser:
        page = await browser.open(url)
        inspection = await engine.inspect(page)
        state = inspection["state"]

        if not state.is_usable:
            print(f"Page not usable: {state.state.value} -> {state.action}")
            return

        if inspection["change"].changed:
            print(f"Layout changed: {inspection['change'].changed_properties()}")

        await page.scroll_comments(scrolls=3)
        snapshot = await page.snapshot()
        result = await engine.extract_comments(snapshot, "ABC123", url, page=page, timeout=60)
        print(f"\n✓ Extracted {len(result.comments)} comments")
        with open("comments.json", "w") as f:
            json.dump(result.as_dicts, f, indent=2, default=str)
        print("✓ Saved to comments.json")


def example_3_health():
    """Print the locator health report."""
    print("\n" + "=" * 60)
    print("Example 3: Locator health")
    print("=" * 60)

    engine = ExtractionEngine()
    for snap in engine.health_report():
        print(f"{snap.page_category}/{snap.element_name}: {snap.status.value} ({snap.attempts} attempts)")
    print(engine.health_summary())


def main():
    """Run examples."""
    print("Resilient Extraction Engine - Example Usage\n")
    print("Set OPENAI_API_KEY to enable model-assisted discovery and extraction\n")

    asyncio.run(example_1_offline_snapshot())
    # asyncio.run(example_2_live_page())
    # example_3_health()


if __name__ == "__main__":
    main()
