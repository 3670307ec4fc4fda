"""Main CLI application for the scrape scheduler."""

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.table import Table

from scrape_scheduler import __version__
from scrape_scheduler.cli.common import (
    BatchDelayOption,
    BatchSizeOption,
    DelayOption,
    MaxConcurrentOption,
    OutputFormat,
    OutputFormatOption,
    PresetOption,
    RetriesOption,
    UrlFileOption,
    console,
    read_url_file,
    run_async_command,
)
from scrape_scheduler.config import DomainPreset, SchedulerConfig, get_settings
from scrape_scheduler.fetch import FetchedPage, HttpFetcher
from scrape_scheduler.logging import setup_logging
from scrape_scheduler.pacing import DomainStats, JobSnapshot, JobStatus, ScrapeScheduler
from scrape_scheduler.tasks import TaskResult

app = typer.Typer(
    name="scrapesched",
    help="Adaptive, rate-limited concurrent scraping scheduler.",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"scrapesched version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable debug logging.",
        ),
    ] = False,
    quiet: Annotated[
        bool,
        typer.Option(
            "--quiet",
            "-q",
            help="Suppress non-error output (WARNING level).",
        ),
    ] = False,
) -> None:
    """Scrape Scheduler - fetch many URLs politely."""
    settings = get_settings()
    log_config = settings.logging

    # Setup logging with CLI overrides
    setup_logging(
        level=settings.log_level,
        verbose=verbose,
        quiet=quiet,
        log_file=Path(log_config.log_file) if log_config.log_file else None,
        rotation=log_config.rotation,
        retention=log_config.retention,
        serialize=log_config.serialize,
    )


def _build_config(
    preset: DomainPreset | None,
    **overrides: int | None,
) -> SchedulerConfig:
    """Effective scheduler config: preset or settings, then CLI overrides."""
    values = {k: v for k, v in overrides.items() if v is not None}
    if preset is not None:
        return SchedulerConfig.for_domain(preset, **values)
    base = get_settings().scheduler.model_dump()
    return SchedulerConfig.model_validate({**base, **values})


@app.command()
def fetch(
    url: Annotated[str, typer.Argument(help="URL to fetch")],
    preset: PresetOption = None,
    retries: RetriesOption = None,
    delay_ms: DelayOption = None,
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Fetch a single URL through the scheduler.

    Examples:
        scrapesched fetch https://example.com
        scrapesched fetch https://example.com --preset news --format json
    """
    config = _build_config(preset, max_retries=retries, delay_ms=delay_ms)

    async def _fetch() -> TaskResult[Any]:
        async with HttpFetcher(user_agent=get_settings().user_agent) as fetcher:
            async with ScrapeScheduler(config) as scheduler:
                return await scheduler.run_task(fetcher.task_for(url))

    result = run_async_command(_fetch(), error_prefix="Fetch failed")

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps(result.to_dict()))
        if not result.success:
            raise typer.Exit(1)
        return

    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        console.print(f"[dim]  Attempts: {result.attempt_count}[/dim]")
        raise typer.Exit(1)

    page: FetchedPage = result.value
    title = page.title or "(no title)"
    if len(title) > 60:
        title = title[:57] + "..."
    console.print(f"[green]{page.status_code}[/green] {page.final_url}")
    console.print(f"  [bold]{title}[/bold]")
    console.print(
        f"[dim]  {page.size_bytes} bytes in {page.response_time_ms:.0f}ms, "
        f"{result.attempt_count} attempt(s)[/dim]"
    )


@app.command()
def batch(
    urls: Annotated[
        list[str] | None,
        typer.Argument(help="URLs to fetch"),
    ] = None,
    url_file: UrlFileOption = None,
    preset: PresetOption = None,
    max_concurrent: MaxConcurrentOption = None,
    batch_size: BatchSizeOption = None,
    delay_ms: DelayOption = None,
    batch_delay_ms: BatchDelayOption = None,
    retries: RetriesOption = None,
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Fetch many URLs as one job, in throttled chunks.

    Examples:
        scrapesched batch https://a.example https://b.example
        scrapesched batch --file urls.txt --preset ecommerce
        scrapesched batch --file urls.txt -c 4 -b 8 --format json
    """
    all_urls = list(urls or [])
    if url_file is not None:
        all_urls.extend(read_url_file(url_file))
    if not all_urls:
        console.print("[red]Error:[/red] No URLs given (pass URLs or --file)")
        raise typer.Exit(1)

    config = _build_config(
        preset,
        max_concurrent=max_concurrent,
        batch_size=batch_size,
        delay_ms=delay_ms,
        delay_between_batches_ms=batch_delay_ms,
        max_retries=retries,
    )
    show_progress = output_format == OutputFormat.TEXT

    async def _batch() -> tuple[JobSnapshot, list[DomainStats]]:
        async with HttpFetcher(user_agent=get_settings().user_agent) as fetcher:
            async with ScrapeScheduler(config) as scheduler:
                tasks = [fetcher.task_for(u) for u in all_urls]
                submitted = scheduler.submit_job(tasks, name="batch")
                if show_progress:
                    scheduler.registry.get(submitted.job_id).on_progress(_ProgressLine())
                done = await scheduler.wait_for_job(submitted.job_id)
                return done, scheduler.get_domain_stats()

    if show_progress:
        console.print(
            f"[dim]Fetching {len(all_urls)} URLs "
            f"(max_concurrent={config.max_concurrent}, batch_size={config.batch_size})...[/dim]"
        )

    snapshot, domains = run_async_command(_batch(), error_prefix="Batch failed")

    if output_format == OutputFormat.JSON:
        console.print_json(json.dumps(snapshot.to_dict()))
    else:
        _print_summary(snapshot, domains)

    if snapshot.status is JobStatus.FAILED:
        raise typer.Exit(1)


class _ProgressLine:
    """Prints a progress line whenever the percentage moves."""

    def __init__(self) -> None:
        self._last = -1

    def __call__(self, snapshot: JobSnapshot) -> None:
        if snapshot.progress == self._last or snapshot.settled == 0:
            return
        self._last = snapshot.progress
        console.print(
            f"[dim]  {snapshot.progress:3d}% ({snapshot.settled}/{snapshot.total}, "
            f"{snapshot.failed} failed)[/dim]"
        )


def _print_summary(snapshot: JobSnapshot, domains: list[DomainStats]) -> None:
    console.print()
    console.print(f"[bold]Batch {snapshot.status.value.title()}[/bold]")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("[green]Succeeded[/green]", str(snapshot.succeeded))
    table.add_row("[red]Failed[/red]", str(snapshot.failed))
    if snapshot.not_started:
        table.add_row("[yellow]Not started[/yellow]", str(snapshot.not_started))
    table.add_row("Success rate", f"{snapshot.success_rate:.1f}%")
    table.add_row("Duration", f"{snapshot.elapsed_seconds:.1f}s")
    console.print(table)

    if len(domains) > 1:
        hosts = Table(title="Requests per host", box=None, padding=(0, 2))
        hosts.add_column("Host")
        hosts.add_column("Requests", justify="right")
        for stats in domains:
            hosts.add_row(stats.domain, str(stats.requests))
        console.print(hosts)

    if snapshot.error:
        console.print(f"[red]Error:[/red] {snapshot.error}")

    failures = [r for r in snapshot.results if not r.success]
    if failures:
        console.print()
        console.print("[bold]Failed URLs:[/bold]")
        for failed in failures:
            console.print(f"  {failed.label}: {failed.error}")


@app.command()
def config() -> None:
    """Show the effective settings as JSON."""
    console.print_json(get_settings().model_dump_json())


if __name__ == "__main__":
    app()
