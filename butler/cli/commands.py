"""CLI command implementations."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from butler.engine.aggregator import MultiFolderAggregator, ScanLimits
from butler.engine.folders import FolderResolver
from butler.engine.mover import MoveEngine
from butler.engine.orchestrator import ArchiveOrchestrator, ArchiveResult
from butler.mail.errors import AlreadyRunningError, AuthError, MailStoreError
from butler.mail.owa_client import owa_client
from butler.mail.store import MailStore, StaticTokenSource, TokenSource
from butler.tokens.capture import TokenCaptureStore, redact
from butler.triage.classifier import ClaudeClassifier
from butler.triage.pipeline import CancellationToken, TriagePipeline, build_classify_step
from butler.triage.types import TriageItemResult, TriageResult

if TYPE_CHECKING:
    from butler.cli.main import AppContext

logger = logging.getLogger(__name__)
console = Console(width=200)

NO_TOKEN_MESSAGE = (
    "No Microsoft token found. Visit outlook.office.com first, "
    "or add one with `butler tokens add`."
)
_DEFAULT_TOKEN_URL = "https://outlook.cloud.microsoft/owa/"
_SUBJECT_PREVIEW = 20


def _token_source(app: AppContext) -> TokenSource:
    """BUTLER_TOKEN wins; otherwise the captured-token store."""
    if app.config.static_token:
        return StaticTokenSource(app.config.static_token)
    return TokenCaptureStore(app.db)


def _require_token(app: AppContext) -> TokenSource:
    source = _token_source(app)
    if source.current_token() is None:
        console.print(f"[red]{NO_TOKEN_MESSAGE}[/red]")
        sys.exit(1)
    return source


def _subfolders(app: AppContext, flag: bool | None) -> bool:
    return app.config.include_subfolders if flag is None else flag


# ── scan / archive ──────────────────────────────────────────────────────────────


@click.command()
@click.option(
    "--subfolders/--inbox-only",
    default=None,
    help="Include Inbox subfolders (default from BUTLER_INCLUDE_SUBFOLDERS).",
)
@click.pass_obj
def scan(app: AppContext, subfolders: bool | None) -> None:
    """Dry run: report what archive would do, without moving anything."""
    source = _require_token(app)
    result = asyncio.run(_archive_async(app, source, True, _subfolders(app, subfolders)))
    _render_archive_result(result)
    if not result.success:
        sys.exit(1)


@click.command()
@click.option(
    "--subfolders/--inbox-only",
    default=None,
    help="Include Inbox subfolders (default from BUTLER_INCLUDE_SUBFOLDERS).",
)
@click.pass_obj
def archive(app: AppContext, subfolders: bool | None) -> None:
    """Move duplicates aside, then archive every message that has been replied to."""
    source = _require_token(app)
    result = asyncio.run(_archive_async(app, source, False, _subfolders(app, subfolders)))
    _render_archive_result(result)
    if not result.success:
        sys.exit(1)


async def _archive_async(
    app: AppContext, source: TokenSource, dry_run: bool, include_subfolders: bool
) -> ArchiveResult:
    config = app.config
    async with owa_client(
        source,
        base_url=config.owa_base_url,
        timeout_seconds=config.request_timeout_seconds,
    ) as store:
        orchestrator = ArchiveOrchestrator(
            store,
            limits=config.limits,
            duplicates_folder=config.duplicates_folder,
            result_sink=app.db,
        )
        label = "Scanning mailbox (dry run)..." if dry_run else "Processing mailbox..."
        with console.status(label):
            try:
                return await orchestrator.run(dry_run=dry_run, include_subfolders=include_subfolders)
            except AlreadyRunningError as exc:
                return ArchiveResult(success=False, dry_run=dry_run, error=str(exc))


def _render_archive_result(result: ArchiveResult) -> None:
    if not result.success:
        console.print(f"[red]Error: {result.error}[/red]")
        if result.auth_required:
            console.print("[yellow]Open Outlook on the web to capture a fresh token, then retry.[/yellow]")
        if result.log:
            console.print("\n[dim]Run log:[/dim]")
            for line in result.log:
                console.print(f"  [dim]{line}[/dim]")
        return

    if result.folder_stats:
        table = Table(title="Folders scanned", box=box.ROUNDED, header_style="bold cyan")
        table.add_column("Folder", max_width=40)
        table.add_column("Fetched", justify="right")
        table.add_column("Included", justify="right")
        table.add_column("Error", style="red", max_width=60)
        for row in result.folder_stats:
            table.add_row(row.folder, str(row.fetched), str(row.included), row.error or "")
        console.print(table)

    if result.to_archive_by_folder:
        title = "Replied-to emails by folder" if result.dry_run else "Emails to archive by folder"
        table = Table(title=title, box=box.ROUNDED, header_style="bold cyan")
        table.add_column("Folder", max_width=40)
        table.add_column("Count", justify="right")
        for row in result.to_archive_by_folder:
            table.add_row(row.folder, str(row.count))
        console.print(table)

    if result.duplicate_groups:
        table = Table(title="Duplicate groups", box=box.ROUNDED, header_style="bold cyan")
        table.add_column("Subject", max_width=50)
        table.add_column("From", max_width=30)
        table.add_column("Copies", justify="right")
        for group in result.duplicate_groups:
            table.add_row(group.subject, group.sender, str(group.count))
        console.print(table)

    if result.dry_run:
        for subject in result.found_subjects[:_SUBJECT_PREVIEW]:
            console.print(f"  • {subject}")
        if len(result.found_subjects) > _SUBJECT_PREVIEW:
            console.print(f"  [dim]… and {len(result.found_subjects) - _SUBJECT_PREVIEW} more[/dim]")
        summary = (
            f"Scanned [bold]{result.total_scanned}[/bold] messages\n"
            f"Would archive [bold]{result.found_count}[/bold] replied-to messages\n"
            f"Would move [bold]{result.duplicate_count}[/bold] duplicates"
        )
        console.print(Panel(summary, title="[bold]Dry run[/bold]", border_style="blue"))
        return

    summary = (
        f"Scanned [bold]{result.total_scanned}[/bold] messages\n"
        f"Archived [green]{result.archived_count}[/green] messages\n"
        f"Moved [green]{result.duplicates_moved_count}[/green] duplicates"
        + (f"\n[red]{result.errors} errors[/red]" if result.errors else "")
    )
    console.print(Panel(summary, title="[bold]Archive complete[/bold]", border_style="green"))
    if result.auth_required:
        console.print("[yellow]Some moves were rejected: capture a fresh token and run again.[/yellow]")


# ── triage ──────────────────────────────────────────────────────────────────────


@click.command()
@click.option("--criteria", required=True, help="Plain-English description of mail to move.")
@click.option(
    "--label",
    "labels",
    multiple=True,
    help="Allowed destination folder (repeatable). Defaults to BUTLER_TRIAGE_LABELS.",
)
@click.option("--max", "max_items", type=int, default=None, help="Maximum messages to classify.")
@click.option("--subfolders/--inbox-only", default=False, show_default=True)
@click.pass_obj
def triage(
    app: AppContext,
    criteria: str,
    labels: tuple[str, ...],
    max_items: int | None,
    subfolders: bool,
) -> None:
    """Classify messages with Claude and move matches into label folders."""
    source = _require_token(app)
    chosen = labels or app.config.triage_labels
    limit = max_items if max_items is not None else app.config.triage_max_items
    result = asyncio.run(_triage_async(app, source, criteria, chosen, limit, subfolders))
    _render_triage_result(result)
    if not result.success:
        sys.exit(1)


async def _triage_async(
    app: AppContext,
    source: TokenSource,
    criteria: str,
    labels: tuple[str, ...],
    max_items: int,
    include_subfolders: bool,
) -> TriageResult:
    config = app.config
    classifier = ClaudeClassifier(labels, api_key=config.anthropic_api_key)
    cancel = CancellationToken()

    loop = asyncio.get_running_loop()
    installed: list[int] = []
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, cancel.cancel)
            installed.append(sig)
    except (NotImplementedError, AttributeError, RuntimeError):
        pass

    try:
        async with owa_client(
            source,
            base_url=config.owa_base_url,
            timeout_seconds=config.request_timeout_seconds,
        ) as store:
            result = await _triage_mailbox(
                store, classifier, cancel, criteria, labels, max_items, include_subfolders, config.limits
            )
    except AuthError as exc:
        result = TriageResult.failed(str(exc), auth_required=True)
    except MailStoreError as exc:
        logger.error("Triage fetch failed: %s", exc)
        result = TriageResult.failed(f"Mail error: {exc}")
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    try:
        app.db.save_run_result("triage", result.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to persist triage result: %s", exc, exc_info=True)
    return result


async def _triage_mailbox(
    store: MailStore,
    classifier: ClaudeClassifier,
    cancel: CancellationToken,
    criteria: str,
    labels: tuple[str, ...],
    max_items: int,
    include_subfolders: bool,
    limits: ScanLimits,
) -> TriageResult:
    from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

    with console.status("Fetching messages..."):
        fetch = await MultiFolderAggregator(store, limits).fetch_all(include_subfolders)
    items = fetch.messages[:max_items]
    if not items:
        failures = [f"{row.folder}: {row.error}" for row in fetch.folder_stats if row.error]
        if failures:
            return TriageResult.failed("Could not fetch messages (" + "; ".join(failures) + ")")
        return TriageResult()

    console.print(
        f"Triaging [bold]{len(items)}[/bold] message(s) into "
        f"{', '.join(labels)}. Press Ctrl+C to stop after the current one."
    )
    pipeline = TriagePipeline(MoveEngine(store))
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Classifying...", total=len(items))

        def on_progress(index: int, total: int, item: Any, moved: int, last: TriageItemResult) -> None:
            progress.update(task, completed=index, description=f"Classifying ({moved} moved)")

        return await pipeline.run(
            items,
            build_classify_step(store, classifier, criteria),
            FolderResolver(store).find_or_create,
            max_iterations=max_items,
            on_progress=on_progress,
            cancel_token=cancel,
        )


def _render_triage_result(result: TriageResult) -> None:
    if not result.success:
        console.print(f"[red]Error: {result.error}[/red]")
        if result.auth_required:
            console.print("[yellow]Open Outlook on the web to capture a fresh token, then retry.[/yellow]")
        return
    if not result.results and not result.aborted:
        console.print("[yellow]No messages to triage.[/yellow]")
        return

    table =Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Subject", max_width=40)
    table.add_column("From", max_width=26)
    table.add_column("Folder", width=16)
    table.add_column("Moved", width=6)
    table.add_column("Notes", max_width=60)
    for i, row in enumerate(result.results, start=1):
        notes = f"[red]{row.error}[/red]" if row.error else row.reasoning
        table.add_row(
            str(i),
            row.subject,
            row.sender,
            row.folder or "[dim]—[/dim]",
            "[green]yes[/green]" if row.moved else "no",
            notes,
        )
    console.print(table)

    if result.distribution:
        dist = Table(title="Matches by folder", box=box.ROUNDED, header_style="bold cyan")
        dist.add_column("Folder")
        dist.add_column("Count", justify="right")
        for label, count in sorted(result.distribution.items(), key=lambda kv: kv[1], reverse=True):
            dist.add_row(label, str(count))
        console.print(dist)

    console.print(
        f"[green]Done.[/green] {result.processed} processed, {result.moved} moved"
        + (f", [red]{result.errors} errors[/red]" if result.errors else "")
        + (" [yellow](stopped early)[/yellow]" if result.aborted else "")
        + "."
    )
    if result.auth_required:
        console.print("[yellow]Some moves were rejected: capture a fresh token and run again.[/yellow]")


# ── last-result ─────────────────────────────────────────────────────────────────


@click.command(name="last-result")
@click.option(
    "--kind",
    type=click.Choice(["archive", "triage"]),
    default="archive",
    show_default=True,
)
@click.pass_obj
def last_result(app: AppContext, kind: str) -> None:
    """Show the stored result of the most recent live run."""
    record = app.db.get_last_result(kind)
    if record is None:
        console.print(f"[yellow]No {kind} result stored yet.[/yellow]")
        return

    data = record.data()
    status = "[green]success[/green]" if record.success else "[red]failed[/red]"
    if kind == "archive":
        body = (
            f"Status: {status}\n"
            f"Scanned: {data.get('total_scanned', 0)}\n"
            f"Archived: {data.get('archived_count', 0)}\n"
            f"Duplicates moved: {data.get('duplicates_moved_count', 0)}\n"
            f"Errors: {data.get('errors', 0)}"
            + (f"\nError: {data['error']}" if data.get("error") else "")
        )
    else:
        body = (
            f"Status: {status}\n"
            f"Processed: {data.get('processed', 0)}\n"
            f"Moved: {data.get('moved', 0)}\n"
            f"Errors: {data.get('errors', 0)}"
            + ("\nStopped early" if data.get("aborted") else "")
            + (f"\nError: {data['error']}" if data.get("error") else "")
        )
    console.print(Panel(body, title=f"[bold]Last {kind} run[/bold] ({record.created_at})", border_style="blue"))

    for line in data.get("log", []):
        console.print(f"  [dim]{line}[/dim]")


# ── tokens ──────────────────────────────────────────────────────────────────────


@click.group()
def tokens() -> None:
    """Manage captured Outlook bearer tokens."""


@tokens.command(name="add")
@click.argument("token")
@click.option("--url", default=_DEFAULT_TOKEN_URL, show_default=True, help="URL the token was used for.")
@click.pass_obj
def tokens_add(app: AppContext, token: str, url: str) -> None:
    """Store a bearer token copied from the browser's network tab."""
    value = token.strip()
    if not value.lower().startswith("bearer "):
        value = f"Bearer {value}"
    store = TokenCaptureStore(app.db)
    captured = store.capture_request(url, "MANUAL", {"Authorization": value})
    if captured is None:
        console.print("[red]Not a usable token (or the URL is not a Microsoft mail domain).[/red]")
        sys.exit(1)
    asyncio.run(store.flush_now())
    console.print(f"[green]Stored token[/green] {redact(captured)}")


@tokens.command(name="import")
@click.argument("har_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def tokens_import(app: AppContext, har_file: Path) -> None:
    """Pull bearer tokens out of a browser network export (HAR file)."""
    try:
        entries = json.loads(har_file.read_text(encoding="utf-8"))["log"]["entries"]
    except (OSError, ValueError, KeyError, TypeError) as exc:
        console.print(f"[red]Could not read HAR file: {exc}[/red]")
        sys.exit(1)

    found = asyncio.run(_import_har(app, entries))
    if not found:
        console.print("[yellow]No Microsoft bearer tokens found in that file.[/yellow]")
        return
    console.print(f"[green]Stored {len(found)} token(s)[/green] from {har_file.name}")
    for token in found:
        console.print(f"  {redact(token)}")


async def _import_har(app: AppContext, entries: list[dict[str, Any]]) -> list[str]:
    scheduler = AsyncIOScheduler()
    scheduler.start()
    store = TokenCaptureStore(app.db, scheduler)
    found: list[str] = []
    try:
        for entry in entries:
            request = entry.get("request") or {}
            headers = {h.get("name", ""): h.get("value", "") for h in request.get("headers") or []}
            token = store.capture_request(request.get("url", ""), request.get("method", "GET"), headers)
            if token and token not in found:
                found.append(token)
    finally:
        await store.aclose()
        scheduler.shutdown(wait=False)
    return found


@tokens.command(name="list")
@click.pass_obj
def tokens_list(app: AppContext) -> None:
    """List stored tokens, newest first."""
    stored = app.db.load_tokens()
    if not stored:
        console.print("[yellow]No tokens captured yet.[/yellow]")
        return
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Token", width=12)
    table.add_column("Domain", max_width=28)
    table.add_column("Method", width=7)
    table.add_column("First seen", width=19)
    table.add_column("Last seen", width=19)
    table.add_column("Count", justify="right")
    for t in stored:
        table.add_row(
            redact(t.token),
            t.domain,
            t.method,
            _format_ts(t.timestamp),
            _format_ts(t.last_seen),
            str(t.count),
        )
    console.print(table)


@tokens.command(name="clear")
@click.pass_obj
def tokens_clear(app: AppContext) -> None:
    """Delete every stored token."""
    app.db.clear_tokens()
    console.print("[green]Tokens cleared.[/green]")


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
