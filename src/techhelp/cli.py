"""CLI entry point for the tech-help content pipeline."""

from __future__ import annotations

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


@click.group()
@click.version_option(version="0.1.0")
def main() -> None:
    """Autonomous research, writing and audit pipeline."""


def _services(need_model: bool = True):
    from techhelp.config import get_settings
    from techhelp.log import configure_logging
    from techhelp.services import build_services

    settings = get_settings()
    configure_logging(settings.log_level)
    if need_model:
        _check_api_key(settings)
    return build_services(settings)


# ---------------------------------------------------------------------------
# generate / discover
# ---------------------------------------------------------------------------


@main.command()
@click.option("--topic", "-t", required=True, help="Article topic")
@click.option("--category", "-c", "category_id", type=int, default=None, help="Pin a category id")
def generate(topic: str, category_id: int | None) -> None:
    """Run the six-stage pipeline for one topic."""
    services = _services()

    with console.status("[bold green]Running pipeline..."):
        result = services.engine.run(topic, category_id=category_id)

    if result.status == "skipped":
        console.print(f"[yellow]Skipped:[/yellow] {result.reason} (run {result.run_id})")
        return
    if result.status == "failed":
        console.print(f"[bold red]Failed:[/bold red] {result.reason} (run {result.run_id})")
        raise SystemExit(1)

    article = result.article
    console.print(
        Panel(
            f"[bold]{article.title}[/bold]\n{article.excerpt}",
            subtitle=f"{article.status} | quality {result.quality_score} | "
            f"factual {result.factual_score} | run {result.run_id}",
        )
    )
    console.print(f"\n[dim]Tokens: {services.client.usage_summary}[/dim]")


@main.command()
@click.option("--count", "-n", default=5, help="Number of topics to discover")
@click.option("--category", "-c", "categories", type=int, multiple=True, help="Focus category id")
@click.option("--enqueue", is_flag=True, help="Add the topics to the manual queue")
@click.option("--make", is_flag=True, help="Enqueue and immediately drain the manual queue")
def discover(count: int, categories: tuple[int, ...], enqueue: bool, make: bool) -> None:
    """Discover trending topics with web search."""
    from techhelp.scheduling.batch import Thresholds

    services = _services()
    with console.status("[bold green]Searching..."):
        topics = services.discoverer.discover(count, list(categories))

    table = Table(title=f"{len(topics)} topics")
    table.add_column("Priority")
    table.add_column("Topic")
    table.add_column("Category", justify="right")
    table.add_column("Keywords")
    for t in topics:
        table.add_row(t.priority, t.topic, str(t.category_id or "-"), ", ".join(t.search_keywords))
    console.print(table)

    if enqueue or make:
        queued = services.discoverer.enqueue(topics)
        console.print(f"[green]Queued {queued} topics.[/green]")
    if make:
        config = services.store.automation_settings()
        summary = services.scheduler.drain_queue(
            None, None, thresholds=Thresholds(config.min_quality_score, config.min_factual_score)
        )
        _print_summary(summary)


# ---------------------------------------------------------------------------
# scheduled work
# ---------------------------------------------------------------------------


@main.command()
@click.option("--batch", "-b", type=click.IntRange(1, 3), default=1, help="Batch number")
@click.option("--scheduled", is_flag=True, help="Respect the enabled flag (for cron)")
def nightly(batch: int, scheduled: bool) -> None:
    """Run one nightly-builder batch."""
    services = _services()
    run = services.nightly.run(batch, manual=not scheduled)
    if run is None:
        console.print("[yellow]A pending stop request was cleared; batch skipped.[/yellow]")
        return
    table = Table(title=f"Nightly run {run.id} (batch {run.batch_number})")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    for name in (
        "status",
        "categories_processed",
        "categories_created",
        "topics_found",
        "topics_after_dedup",
        "articles_generated",
        "articles_published",
        "articles_failed",
        "articles_skipped",
    ):
        table.add_row(name, str(getattr(run, name)))
    console.print(table)
    if run.error_message:
        console.print(f"[red]{run.error_message}[/red]")


@main.group()
def scheduler() -> None:
    """Periodic discover-and-generate runs."""


@scheduler.command("run")
def scheduler_run() -> None:
    """Run once now, even if automation is disabled."""
    services = _services()
    _print_summary(services.runner.run_once(manual=True))


@scheduler.command("tick")
def scheduler_tick() -> None:
    """Run only if automation is enabled and due (call from cron)."""
    services = _services()
    summary = services.runner.tick()
    if summary is None:
        console.print("[dim]Not due.[/dim]")
        return
    _print_summary(summary)


@main.command()
@click.argument("kind", type=click.Choice(["automation", "nightly"]))
@click.option("--run-id", type=int, default=None, help="Stop only this run")
def stop(kind: str, run_id: int | None) -> None:
    """Request a cooperative stop of running jobs."""
    services = _services(need_model=False)
    services.store.request_stop(kind, run_id)
    console.print(f"[green]Stop requested for {kind}.[/green] It takes effect between units.")


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@main.command()
@click.option("--no-auto-fix", is_flag=True, help="Only report, never edit articles")
def audit(no_auto_fix: bool) -> None:
    """Scan the whole corpus for duplicates and quality issues."""
    services = _services()
    with console.status("[bold green]Auditing..."):
        run = services.auditor.run(auto_fix=not no_auto_fix)

    console.print(
        Panel(
            f"Scanned: {run.articles_scanned}\n"
            f"Issues: {run.issues_found}\n"
            f"Auto-fixed: {run.auto_fixed}\n"
            f"Duplicates: {run.duplicates_found} ({run.set_to_draft} set to draft)",
            title=f"Audit {run.id}: {run.status}",
        )
    )
    findings = services.store.list_findings(run.id, "open")
    if findings:
        table = Table(title="Open findings")
        table.add_column("ID", justify="right")
        table.add_column("Type")
        table.add_column("Severity")
        table.add_column("Article")
        table.add_column("Description")
        for f in findings:
            table.add_row(str(f.id), f.type, f.severity, f.article_title, f.description[:80])
        console.print(table)


@main.command()
@click.argument("finding_id", type=int)
def fix(finding_id: int) -> None:
    """Apply the suggested fix for one finding."""
    services = _services()
    with console.status("[bold green]Fixing..."):
        outcome = services.fixer.apply_fix(finding_id)
    colour = "green" if outcome.fixed else "yellow"
    console.print(f"[{colour}]{outcome.description}[/{colour}]")


@main.command("fix-all")
@click.argument("audit_run_id", type=int)
def fix_all(audit_run_id: int) -> None:
    """Apply every open fixable finding of an audit run."""
    services = _services()
    summary = services.fixer.fix_all(audit_run_id)
    console.print(
        f"Attempted {summary.attempted}: [green]{summary.fixed} fixed[/green], "
        f"[yellow]{summary.unchanged} unchanged[/yellow], [red]{summary.failed} failed[/red]"
    )


# ---------------------------------------------------------------------------
# inspection
# ---------------------------------------------------------------------------


@main.command()
@click.option("--limit", "-n", default=20, help="Number of runs to show")
def runs(limit: int) -> None:
    """List recent pipeline runs."""
    services = _services(need_model=False)
    table = Table(title="Pipeline runs")
    table.add_column("ID", justify="right")
    table.add_column("Topic")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Step", justify="right")
    table.add_column("Article", justify="right")
    for run in services.store.list_runs(limit):
        table.add_row(
            str(run.id),
            run.topic[:60],
            run.mode,
            run.status,
            f"{run.current_step}/{run.total_steps}",
            str(run.article_id or "-"),
        )
    console.print(table)


@main.command()
@click.option(
    "--status",
    "-s",
    "status_filter",
    type=click.Choice(["pending", "processing", "completed", "skipped", "failed"]),
    default=None,
)
@click.option("--limit", "-n", default=50)
def queue(status_filter: str | None, limit: int) -> None:
    """Show queue items."""
    from techhelp.storage.models import QueueStatus

    services = _services(need_model=False)
    items = services.store.list_queue(
        QueueStatus(status_filter) if status_filter else None, limit=limit
    )
    table = Table(title=f"Queue ({len(items)})")
    table.add_column("ID", justify="right")
    table.add_column("Date")
    table.add_column("Batch", justify="right")
    table.add_column("Pri", justify="right")
    table.add_column("Status")
    table.add_column("Topic")
    for item in items:
        table.add_row(
            str(item.id),
            str(item.run_date or "manual"),
            str(item.batch_number or "-"),
            str(item.priority),
            item.status,
            item.topic[:60],
        )
    console.print(table)


@main.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", type=int, default=None, help="Port")
def serve(host: str | None, port: int | None) -> None:
    """Start the HTTP trigger surface."""
    import uvicorn

    from techhelp.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "techhelp.api.app:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
    )


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _print_summary(summary: object) -> None:
    console.print(
        Panel(
            f"Generated: {summary.generated}\n"
            f"Published: {summary.published}\n"
            f"Failed: {summary.failed}\n"
            f"Skipped: {summary.skipped}",
            title=f"Batch run {summary.run_id}: {summary.status}",
        )
    )


def _check_api_key(settings: object) -> None:
    """Exit with a helpful message if the API key is not set."""
    if not getattr(settings, "anthropic_api_key", ""):
        console.print(
            "[bold red]Error:[/bold red] ANTHROPIC_API_KEY not set.\n"
            "Add it to the environment or to .env in the project root."
        )
        raise SystemExit(1)
