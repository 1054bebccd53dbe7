import asyncio
import json
import logging
from typing import Any, List, Optional
import typer
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.table import Table

from .browser import BrowserSession
from .config import Settings
from .core import ExtractionEngine
from .fingerprint import summarize_html
from .models import PageSnapshot


app = typer.Typer(help="Resilient comment extraction with self-healing locators")
console = Console()


def _setup_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _engine(db_url: Optional[str]) -> ExtractionEngine:
    settings = Settings.from_env()
    if db_url:
        settings.registry_db_url = db_url
    _setup_logging(settings.log_level)
    return ExtractionEngine(settings)


def _offline_snapshot(url: str, html_file: str, api_json: Optional[str]) -> PageSnapshot:
    with open(html_file, encoding="utf-8") as f:
        html = f.read()
    payloads: List[Any] = []
    if api_json:
        with open(api_json, encoding="utf-8") as f:
            data = json.load(f)
        payloads = data if isinstance(data, list) else [data]
    return PageSnapshot.from_html(url, html, api_payloads=payloads)


@app.command()
def classify(
    url: str = typer.Argument(..., help="Page URL (also used as the snapshot URL with --html)"),
    html_file: Optional[str] = typer.Option(None, "--html", help="Classify a saved HTML file instead of a live page"),
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
):
    """Classify the page state and report the recommended action."""
    engine = _engine(db_url)

    async def _run():
        if html_file:
            snapshot = _offline_snapshot(url, html_file, None)
            state = await engine.classify_page(snapshot)
            change = engine.fingerprinter.compare_summary(state.page_category, summarize_html(snapshot.html))
            return state, change
        async with BrowserSession(headless=engine.settings.headless) as browser:
            page = await browser.open(url)
            result = await engine.inspect(page)
            return result["state"], result["change"]

    state, change = asyncio.run(_run())
    color = {"success": "green", "info": "cyan", "warning": "yellow", "critical": "red"}[state.severity.value]
    console.print(f"[{color}]{state.state.value}[/{color}] -> {state.action} (category: {state.page_category})")
    if state.evidence:
        console.print(f"  matched {state.matched_by}: {state.evidence}")
    if state.retry_after_ms:
        console.print(f"  retry after {state.retry_after_ms} ms")
    if state.analysis:
        console.print(JSON(state.analysis.json()))
    if change.changed:
        console.print(f"[yellow]Structure changed: {', '.join(change.changed_properties())}[/yellow]")


@app.command()
def extract(
    url: str = typer.Argument(..., help="URL of the post"),
    content_id: Optional[str] = typer.Option(None, "--content-id", "-c", help="Content id (defaults to the URL)"),
    html_file: Optional[str] = typer.Option(None, "--html", help="Extract from a saved HTML file"),
    api_json: Optional[str] = typer.Option(None, "--api-json", help="Saved API response(s) to use with --html"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output JSON file path"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Abort extraction after this many seconds"),
    scrolls: int = typer.Option(3, "--scrolls", help="Scroll the comment list this many times before reading a live page"),
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
):
    """Extract comments from a post."""
    engine = _engine(db_url)
    content_id = content_id or url

    async def _run():
        if html_file:
            snapshot = _offline_snapshot(url, html_file, api_json)
            return await engine.extract_comments(snapshot, content_id, url, timeout=timeout)
        async with BrowserSession(headless=engine.settings.headless) as browser:
            page = await browser.open(url)
            state = await engine.classify_page(await page.snapshot())
            if not state.is_usable:
                console.print(f"[red]Page not usable: {state.state.value} -> {state.action}[/red]")
                raise typer.Exit(1)
            await page.scroll_comments(scrolls=scrolls)
            snapshot = await page.snapshot()
            return await engine.extract_comments(snapshot, content_id, url, page=page, timeout=timeout)

    result = asyncio.run(_run())

    console.print(f"\n[green]Extracted {len(result.comments)} comments[/green] via {', '.join(s.value for s in result.strategies_run)}")
    if result.expected_total:
        console.print(f"Page advertises ~{result.expected_total} comments")

    if output:
        with open(output, "w") as f:
            json.dump([json.loads(c.json()) for c in result.comments], f, indent=2, ensure_ascii=False)
        console.print(f"[green]Saved to {output}[/green]")
    else:
        for i, comment in enumerate(result.comments[:5], 1):
            console.print(f"{i}. [bold]@{comment.username}[/bold] ({comment.provenance.value}): {comment.text}")
        if len(result.comments) > 5:
            console.print(f"\n... and {len(result.comments) - 5} more comments")


@app.command()
def health(
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
    reset: bool = typer.Option(False, "--reset", help="Reset all locator statistics"),
):
    """Show locator health, critical first."""
    engine = _engine(db_url)
    if reset:
        count = engine.registry.reset_metrics()
        console.print(f"[yellow]Reset statistics for {count} locator entries[/yellow]")

    table = Table(title="Locator health")
    for column in ("category", "element", "status", "attempts", "rate", "recent", "streak", "last locator"):
        table.add_column(column)
    colors = {"healthy": "green", "degraded": "yellow", "critical": "red"}
    for snap in engine.health_report():
        color = colors[snap.status.value]
        table.add_row(
            snap.page_category,
            snap.element_name,
            f"[{color}]{snap.status.value}[/{color}]",
            str(snap.attempts),
            f"{snap.success_rate:.0%}",
            f"{snap.recent_success_rate:.0%}",
            str(snap.consecutive_failures),
            snap.last_used_locator or "",
        )
    console.print(table)
    console.print(JSON(json.dumps(engine.health_summary())))


@app.command()
def rollback(
    element: str = typer.Argument(..., help="Element name, e.g. comment_item"),
    category: str = typer.Argument(..., help="Page category, e.g. post"),
    to_version: Optional[int] = typer.Option(None, "--to", help="Version to restore (defaults to the previous one)"),
    list_only: bool = typer.Option(False, "--list", help="Only show the version history"),
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
):
    """Restore an earlier locator version for one element."""
    engine = _engine(db_url)
    if not list_only:
        entry = engine.rollback(element, category, to_version)
        if entry is None:
            console.print(f"[red]No version to roll back to for {category}/{element}[/red]")
            raise typer.Exit(1)
        console.print(f"[green]Primary locator for {category}/{element} is now {entry.primary}[/green]")

    for v in engine.registry.locator_history(element, category):
        marker = "[green]active[/green]" if v.is_active else (v.replaced_reason or "")
        console.print(f"v{v.version} {v.primary} ({v.origin.value}, +{len(v.fallbacks)} fallbacks) {v.created_at:%Y-%m-%d %H:%M} {marker}")


@app.command()
def fingerprints(
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Show version history for one category"),
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
):
    """List tracked page categories or one category's fingerprint history."""
    engine = _engine(db_url)
    if not category:
        tracked = engine.fingerprinter.tracked_categories()
        if not tracked:
            console.print("[yellow]No fingerprints recorded yet[/yellow]")
        for name in tracked:
            console.print(f"- {name}")
        return

    for fp in engine.fingerprinter.history(category):
        marker = "[green]current[/green]" if fp.is_current else ""
        console.print(f"v{fp.version} {fp.hash} (prev {fp.previous_hash or '-'}) {fp.captured_at:%Y-%m-%d %H:%M} {marker}")


@app.command()
def audit(
    element: Optional[str] = typer.Option(None, "--element", "-e", help="Only this element name"),
    limit: int = typer.Option(20, "--limit", "-n"),
    db_url: Optional[str] = typer.Option(None, "--db", help="Registry database URL"),
):
    """Show recent locator discovery attempts."""
    engine = _engine(db_url)
    records = engine.store.list_audit(limit=limit, element_name=element)
    if not records:
        console.print("[yellow]No discovery attempts recorded[/yellow]")
    for r in records:
        outcome = f"[green]{r.accepted_locator}[/green]" if r.success else f"[red]{r.rejected_reason}[/red]"
        console.print(
            f"{r.created_at:%Y-%m-%d %H:%M} {r.page_category}/{r.element_name}: {outcome} "
            f"({len(r.candidates_returned)} returned, excerpt {r.excerpt_size} chars)"
        )


if __name__ == "__main__":
    app()
