"""Command-line interface for the commonplace highlight graph.

Commands:
- add: Store a text highlight
- add-image: Store an image highlight (described as text by the provider)
- search: Semantic search over highlights
- join: Link two highlights
- neighbors: Show the highlights joined to one
- show: Show one highlight
- list: List highlights, optionally grouped by source
- random: Show a random highlight
- layout: 2D layout of highlights for the graph view
- reindex: Rebuild the similarity index
- info: Show system information

Errors caused by the input exit with code 1; provider, storage and
conflict failures exit with code 2.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Coroutine, Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from commonplace.config.loader import get_default_config_path, load_config
from commonplace.config.schema import AppConfig
from commonplace.core.errors import CommonplaceError, ValidationError
from commonplace.entities import Entry
from commonplace.observability.logging import bound_context, configure_from_config, get_logger
from commonplace.service import LayoutFilter, open_graph
from commonplace.storage.base import ListOrder

app = typer.Typer(
    name="commonplace",
    help="Semantic highlight graph: store, search, join and lay out reading highlights",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", "-c", help="Config file path")


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine and map errors to exit codes."""
    command = coro.__name__.strip("_").removesuffix("_async")
    try:
        with bound_context(command=command):
            asyncio.run(coro)
    except CommonplaceError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        logger.debug("command_failed", error=e.message, status_code=e.status_code)
        raise typer.Exit(1 if e.is_client_error else 2)


def _parse_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise ValidationError(f"Invalid entry id: '{value}'")


def _metadata(article: str, url: str, section: Optional[str]) -> dict[str, Any]:
    metadata: dict[str, Any] = {"article": article, "url": url}
    if section:
        metadata["section"] = section
    return metadata


def _print_entry(entry: Entry, title: Optional[str] = None) -> None:
    if title:
        console.print(f"[bold cyan]{title}[/bold cyan]")
    console.print(f"[bold]ID:[/bold] {entry.id}")
    console.print(f"[bold]Source:[/bold] {entry.metadata.source_label}")
    console.print(f"[bold]URL:[/bold] {entry.metadata.url}")
    if entry.metadata.image_url:
        console.print(f"[bold]Image:[/bold] {entry.metadata.image_url}")
    console.print(f"[bold]Created:[/bold] {entry.created_at:%Y-%m-%d %H:%M}")
    console.print(f"[bold]Joins:[/bold] {len(entry.joins)}")
    console.print()
    console.print(entry.content)
    console.print()


def _entries_table(entries: list[Entry], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Source", style="magenta")
    table.add_column("Highlight")
    table.add_column("Joins", justify="right")
    table.add_column("Created", style="dim")

    for entry in entries:
        table.add_row(
            str(entry.id),
            entry.metadata.source_label,
            entry.summary(80),
            str(len(entry.joins)),
            f"{entry.created_at:%Y-%m-%d %H:%M}",
        )
    return table


@app.command()
def add(
    text: str = typer.Argument(..., help="Highlight text"),
    article: str = typer.Option(..., "--article", "-a", help="Source article title"),
    url: str = typer.Option(..., "--url", "-u", help="Source article URL"),
    section: Optional[str] = typer.Option(None, "--section", "-s", help="Section within the article"),
    config_file: Optional[Path] = ConfigOption,
):
    """Store a text highlight."""
    _run(_add_async(text, article, url, section, config_file))


async def _add_async(
    text: str, article: str, url: str, section: Optional[str], config_file: Optional[Path]
):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        entry = await graph.add(text, _metadata(article, url, section))
    console.print(f"[green]✓ Added entry {entry.id}[/green]")


@app.command("add-image")
def add_image(
    image_url: str = typer.Argument(..., help="Image URL"),
    article: str = typer.Option(..., "--article", "-a", help="Source article title"),
    url: str = typer.Option(..., "--url", "-u", help="Source article URL"),
    section: Optional[str] = typer.Option(None, "--section", "-s", help="Section within the article"),
    config_file: Optional[Path] = ConfigOption,
):
    """Store an image highlight; the image is described as text first."""
    _run(_add_image_async(image_url, article, url, section, config_file))


async def _add_image_async(
    image_url: str, article: str, url: str, section: Optional[str], config_file: Optional[Path]
):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        entry = await graph.add_image(image_url, _metadata(article, url, section))
    console.print(f"[green]✓ Added image entry {entry.id}[/green]")
    console.print(entry.summary(200))


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    k: int = typer.Option(10, "--top-k", "-k", help="Number of results"),
    config_file: Optional[Path] = ConfigOption,
):
    """Semantic search over highlights."""
    _run(_search_async(query, k, config_file))


async def _search_async(query: str, k: int, config_file: Optional[Path]):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        results = await graph.search(query, k)

    if not results:
        console.print("[yellow]No results found[/yellow]")
        return

    console.print(f"\n[green]Found {len(results)} result(s):[/green]\n")
    for i, result in enumerate(results, 1):
        console.print(f"[bold cyan]{i}. Similarity: {result.similarity:.4f}[/bold cyan]")
        console.print(f"   ID: {result.entry.id}")
        console.print(f"   Source: {result.entry.metadata.source_label}")
        console.print(f"   {result.entry.summary(200)}")
        console.print()


@app.command()
def join(
    id1: str = typer.Argument(..., help="First entry ID"),
    id2: str = typer.Argument(..., help="Second entry ID"),
    config_file: Optional[Path] = ConfigOption,
):
    """Link two highlights in both directions."""
    _run(_join_async(id1, id2, config_file))


async def _join_async(id1: str, id2: str, config_file: Optional[Path]):
    first_id, second_id = _parse_id(id1), _parse_id(id2)
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        first, second = await graph.join(first_id, second_id)
    console.print(f"[green]✓ Joined {first.id} and {second.id}[/green]")


@app.command()
def neighbors(
    entry_id: str = typer.Argument(..., help="Entry ID"),
    config_file: Optional[Path] = ConfigOption,
):
    """Show the highlights joined to one."""
    _run(_neighbors_async(entry_id, config_file))


async def _neighbors_async(entry_id: str, config_file: Optional[Path]):
    parsed = _parse_id(entry_id)
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        joined = await graph.neighbors(parsed)

    if not joined:
        console.print("[yellow]No joined entries[/yellow]")
        return
    console.print(_entries_table(joined, f"Joined to {parsed}"))


@app.command()
def show(
    entry_id: str = typer.Argument(..., help="Entry ID"),
    config_file: Optional[Path] = ConfigOption,
):
    """Show one highlight."""
    _run(_show_async(entry_id, config_file))


async def _show_async(entry_id: str, config_file: Optional[Path]):
    parsed = _parse_id(entry_id)
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        entry = await graph.get(parsed)
    _print_entry(entry)


@app.command("list")
def list_command(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of entries"),
    offset: int = typer.Option(0, "--offset", help="Number of entries to skip"),
    oldest_first: bool = typer.Option(False, "--oldest-first", help="Oldest entries first"),
    group_by_source: bool = typer.Option(
        False, "--group-by-source", help="Group entries under 'Article > Section'"
    ),
    config_file: Optional[Path] = ConfigOption,
):
    """List highlights."""
    _run(_list_async(limit, offset, oldest_first, group_by_source, config_file))


async def _list_async(
    limit: int,
    offset: int,
    oldest_first: bool,
    group_by_source: bool,
    config_file: Optional[Path],
):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        total = await graph.count()
        if group_by_source:
            grouped = await graph.grouped_by_source(limit)
        else:
            order = ListOrder.OLDEST_FIRST if oldest_first else ListOrder.NEWEST_FIRST
            entries = await graph.list_entries(limit=limit, offset=offset, order=order)

    if total == 0:
        console.print("[yellow]No entries yet[/yellow]")
        return

    if group_by_source:
        for source, entries in grouped.items():
            console.print(_entries_table(entries, source))
    else:
        console.print(_entries_table(entries, f"Entries ({len(entries)} of {total})"))


@app.command()
def random(config_file: Optional[Path] = ConfigOption):
    """Show a random highlight."""
    _run(_random_async(config_file))


async def _random_async(config_file: Optional[Path]):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        entry = await graph.random()

    if entry is None:
        console.print("[yellow]No entries found[/yellow]")
        raise typer.Exit(1)
    _print_entry(entry, title="Random highlight")


@app.command()
def layout(
    article: Optional[str] = typer.Option(None, "--article", "-a", help="Only this article's entries"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Only the newest N entries"),
    json_output: bool = typer.Option(False, "--json", help="Output nodes and edges as JSON"),
    config_file: Optional[Path] = ConfigOption,
):
    """Lay out highlights in 2D for the graph view."""
    _run(_layout_async(article, limit, json_output, config_file))


async def _layout_async(
    article: Optional[str],
    limit: Optional[int],
    json_output: bool,
    config_file: Optional[Path],
):
    if limit is not None and limit < 0:
        raise ValidationError("limit must be >= 0")
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        positioned = await graph.project(LayoutFilter(article=article, limit=limit))
        edges = graph.edges(positioned)

    if json_output:
        payload = {
            "nodes": [
                {
                    "id": str(p.entry.id),
                    "x": p.x,
                    "y": p.y,
                    "strategy": p.strategy.value,
                    "source": p.entry.metadata.source_label,
                    "summary": p.entry.summary(),
                }
                for p in positioned
            ],
            "edges": [[str(a), str(b)] for a, b in edges],
        }
        typer.echo(json.dumps(payload))
        return

    if not positioned:
        console.print("[yellow]No entries to lay out[/yellow]")
        return

    table = Table(title=f"Layout ({len(positioned)} entries, {len(edges)} joins)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("x", justify="right")
    table.add_column("y", justify="right")
    table.add_column("Strategy", style="magenta")
    table.add_column("Highlight")
    for p in positioned:
        table.add_row(str(p.entry.id), f"{p.x:.3f}", f"{p.y:.3f}", p.strategy.value, p.entry.summary(60))
    console.print(table)


@app.command()
def reindex(config_file: Optional[Path] = ConfigOption):
    """Rebuild the similarity index from the store."""
    _run(_reindex_async(config_file))


async def _reindex_async(config_file: Optional[Path]):
    config = _load_config(config_file)
    async with open_graph(config) as graph:
        size = await graph.reindex()
    console.print(f"[green]✓ Index rebuilt with {size} entries[/green]")


@app.command()
def info(config_file: Optional[Path] = ConfigOption):
    """Show system information and configuration."""
    try:
        config = _load_config(config_file)
    except CommonplaceError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise typer.Exit(1)

    table = Table(title="Commonplace System Information")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Data Directory", str(config.data_dir))
    table.add_row("Log Level", config.logging.level.value)
    table.add_row("Embedding Provider", config.embedding.provider.value)
    table.add_row("Embedding Model", config.embedding.model_name)
    table.add_row("Embedding Dimension", str(config.embedding.dimension))
    table.add_row("Entry Store", config.storage.store_type.value)
    table.add_row("Connection", str(config.storage.connection_string))
    table.add_row("Exact Search Threshold", str(config.index.exact_threshold))
    table.add_row("Max Layout Entries", str(config.layout.max_entries))

    console.print(table)


def _load_config(config_file: Optional[Path]) -> AppConfig:
    """Load configuration and setup logging."""
    if config_file is None:
        config_file = get_default_config_path()

    config = load_config(config_file)
    configure_from_config(config.logging)

    return config


if __name__ == "__main__":
    app()
