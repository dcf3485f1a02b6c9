"""Command-line interface for Kaia.

Browse an owner's merged timeline, check media references, and export a
curated selection as a book. Built with Click for commands and Rich for
terminal output.

Usage:
    kaia timeline store.json --owner baby --page-size 10
    kaia export store.json --owner baby -i milestone:k1 -i memory:m1 --template classic
    kaia check store.json
    kaia config show
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from kaia import __version__
from kaia.config import AppConfig, ConfigError, get_config, load_config
from kaia.core.curation import CurationSelector
from kaia.core.errors import KaiaError
from kaia.core.models import ExportState, ItemKind, ItemRef, LayoutStyle, MilestoneItem, SortOrder
from kaia.core.store import RecordStore
from kaia.core.timeline import TimelineAggregator, TimelineFilter
from kaia.export.jobs import ExportJobManager
from kaia.utils.logging import LogContext, setup_logging

logger = logging.getLogger(__name__)

console = Console()


# =============================================================================
# Helper Functions
# =============================================================================


def print_success(text: str) -> None:
    console.print(f"[green]✓[/green] {text}")


def print_warning(text: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {text}")


def print_error(text: str) -> None:
    console.print(f"[red]✗[/red] {text}")


def load_store(ctx: click.Context, path: Path) -> RecordStore:
    """Load a record store file, exiting with an error message on failure."""
    try:
        return RecordStore.from_json(path)
    except (OSError, json.JSONDecodeError, ValidationError, KaiaError) as e:
        print_error(f"Cannot load store {path}: {e}")
        ctx.exit(1)


def summarize(item) -> str:
    if isinstance(item, MilestoneItem):
        return item.title
    lines = (item.text or "").strip().splitlines()
    return lines[0] if lines else f"({item.kind.value})"


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="Kaia")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", "-c", "config_path", type=click.Path(path_type=Path), help="Path to config file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Kaia - timelines of memories and milestones, curated into books."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path) if config_path else get_config()
    except ConfigError as e:
        print_error(str(e))
        ctx.exit(1)

    ctx.obj["config"] = config
    setup_logging("DEBUG" if verbose else config.logging.level, config.logging.file)


# =============================================================================
# Timeline Command
# =============================================================================


@cli.command()
@click.argument("store_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", "-o", required=True, help="Owner whose timeline to show")
@click.option("--page-size", "-n", type=int, default=None, help="Items per page")
@click.option("--cursor", default=None, help="Cursor printed by a previous page")
@click.option("--order", type=click.Choice(["asc", "desc"]), default=None, help="Sort direction")
@click.option(
    "--kind",
    "kinds",
    multiple=True,
    type=click.Choice([k.value for k in ItemKind]),
    help="Only show this item kind (repeatable)",
)
@click.option("--tag", "tags", multiple=True, help="Only show items with this tag (repeatable)")
@click.option("--since", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Earliest date")
@click.option("--until", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Latest date")
@click.pass_context
def timeline(
    ctx: click.Context,
    store_path: Path,
    owner: str,
    page_size: int | None,
    cursor: str | None,
    order: str | None,
    kinds: tuple[str, ...],
    tags: tuple[str, ...],
    since: datetime | None,
    until: datetime | None,
) -> None:
    """Show one page of an owner's merged timeline."""
    config: AppConfig = ctx.obj["config"]
    store = load_store(ctx, store_path)

    if order is None:
        sort_order = config.timeline.default_sort_order
    else:
        sort_order = SortOrder.CHRONOLOGICAL_ASC if order == "asc" else SortOrder.CHRONOLOGICAL_DESC

    timeline_filter = TimelineFilter(
        kinds=frozenset(ItemKind(k) for k in kinds) or None,
        tags=frozenset(tags) or None,
        start=since.date() if since else None,
        end=until.date() if until else None,
    )

    aggregator = TimelineAggregator(store, config=config.timeline)
    try:
        page = aggregator.page(
            owner,
            cursor=cursor,
            page_size=page_size,
            filter=timeline_filter,
            sort_order=sort_order,
        )
    except (KaiaError, ValueError) as e:
        print_error(str(e))
        ctx.exit(1)

    if not page.items:
        print_warning(f"No more items for {owner}")
        return

    table = Table(title=f"Timeline of {owner}", show_header=True)
    table.add_column("Date", style="cyan")
    table.add_column("Kind")
    table.add_column("Id")
    table.add_column("Summary")
    table.add_column("Media", justify="right")

    for item in page.items:
        media = str(len(item.media_asset_ids))
        if item.id in page.invalid_item_ids:
            media = f"[red]{media} (unresolved)[/red]"
        table.add_row(
            item.sort_key.strftime("%Y-%m-%d %H:%M"),
            item.item_kind.value,
            item.id,
            summarize(item),
            media,
        )

    console.print(table)
    if page.next_cursor:
        console.print(f"Next page: [bold]--cursor {page.next_cursor}[/bold]")


# =============================================================================
# Export Command
# =============================================================================


@cli.command()
@click.argument("store_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--owner", "-o", required=True, help="Owner whose items are exported")
@click.option(
    "--item",
    "-i",
    "items",
    multiple=True,
    required=True,
    help="Item to include as kind:id, in page order (repeatable)",
)
@click.option("--template", default="classic", help="Book template")
@click.option("--items-per-page", type=int, default=1, help="Items per book page")
@click.option("--title", default=None, help="Book title")
@click.option("--no-captions", is_flag=True, help="Leave memory text and milestone notes out")
@click.option("--output", type=click.Path(file_okay=False, path_type=Path), default=None, help="Output directory")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the export")
@click.pass_context
def export(
    ctx: click.Context,
    store_path: Path,
    owner: str,
    items: tuple[str, ...],
    template: str,
    items_per_page: int,
    title: str | None,
    no_captions: bool,
    output: Path | None,
    timeout: float | None,
) -> None:
    """Export selected items as a book."""
    config: AppConfig = ctx.obj["config"]
    store = load_store(ctx, store_path)

    export_config = config.export
    if output is not None:
        export_config = export_config.model_copy(update={"output_dir": output})

    selector = CurationSelector(store)
    try:
        for text in items:
            selector.add(owner, ItemRef.parse(text))
    except (KaiaError, ValueError) as e:
        print_error(str(e))
        ctx.exit(1)

    selector.set_layout(
        LayoutStyle(
            template=template,
            items_per_page=items_per_page,
            show_captions=not no_captions,
            title=title,
        )
    )

    with ExportJobManager(store.has_media, config=export_config) as manager:
        with LogContext("Export", logger=logger, owner=owner, items=len(selector)) as log_ctx:
            job_id = manager.submit_from(selector)
            log_ctx.bind(job=job_id)
            job = manager.wait(job_id, timeout=timeout)
            log_ctx.outcome = job.state.value

    if job.state == ExportState.SUCCEEDED and job.artifact is not None:
        print_success(
            f"Exported {job.artifact.item_count} items on {job.artifact.page_count} pages "
            f"to {job.artifact.location}"
        )
        return

    if job.error_detail is not None:
        detail = job.error_detail
        body = detail.message
        if detail.references:
            body += "\n" + ", ".join(detail.references)
        console.print(Panel(body, title=f"Export failed: {detail.code}", border_style="red"))
    else:
        print_warning(f"Export job {job_id} is still {job.state.value}")
    ctx.exit(1)


# =============================================================================
# Check Command
# =============================================================================


@cli.command()
@click.argument("store_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def check(ctx: click.Context, store_path: Path) -> None:
    """List items whose media references do not resolve."""
    store = load_store(ctx, store_path)

    table = Table(title="Unresolved media references", show_header=True)
    table.add_column("Owner", style="cyan")
    table.add_column("Item")
    table.add_column("Missing assets")

    problems = 0
    for owner in store.owners():
        for item in store.scan_by_owner_since(owner):
            missing = store.unresolved_media(item)
            if missing:
                problems += 1
                table.add_row(owner, str(item.ref), ", ".join(sorted(missing)))

    if problems:
        console.print(table)
        print_warning(f"{problems} item(s) reference unknown media")
    else:
        print_success(f"All {store.item_count} items resolve their media")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Inspect configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    app_config: AppConfig = ctx.obj["config"]
    console.print_json(app_config.model_dump_json())


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
