"""CLI for convo-search."""

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from convo_search import __version__
from convo_search.config import Settings, get_settings
from convo_search.errors import IndexMissingOrStale, MalformedArchive

app = typer.Typer(
    name="convo-search",
    help="Index and search an exported chat conversation archive.",
    no_args_is_help=True,
)
console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def settings_with(archive: Path | None = None, **overrides) -> Settings:
    """Current settings with CLI overrides applied."""
    update = {k: v for k, v in overrides.items() if v is not None}
    if archive is not None:
        update["archive_path"] = archive
    return get_settings().model_copy(update=update)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"convo-search {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    log_level: Annotated[
        str | None, typer.Option("--log-level", help="Logging level (default from settings)")
    ] = None,
) -> None:
    """Index and search an exported chat conversation archive."""
    configure_logging(log_level or get_settings().log_level)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    archive: Annotated[
        Path | None, typer.Option("--archive", "-a", help="Conversation archive (JSON)")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of results")] = 10,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Search conversations for a query."""
    from convo_search.searcher import perform_search

    try:
        perform_search(query=query, archive_path=archive, limit=limit, json_output=json_output)
    except MalformedArchive as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def index(
    archive: Annotated[
        Path | None, typer.Option("--archive", "-a", help="Conversation archive (JSON)")
    ] = None,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Rebuild even if up to date")
    ] = False,
) -> None:
    """Build the search index, or reuse it if the archive is unchanged."""
    from convo_search.indexer import load_or_build
    from convo_search.loader import load_archive_file

    settings = settings_with(archive)

    try:
        report = load_archive_file(settings.archive_path)
    except MalformedArchive as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"Found {len(report.records)} conversations in {settings.archive_path}")
    if report.skipped:
        console.print(f"[yellow]Skipped {report.skipped} malformed conversations[/yellow]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Indexing conversations...", total=len(report.records))
        idx = load_or_build(
            report.records,
            settings.index_path,
            ngram_size=settings.ngram_size,
            force=force,
            on_record=lambda _: progress.advance(task),
        )
        progress.update(task, completed=len(report.records))

    console.print(
        f"[green]Index ready: {idx.record_count} conversations, "
        f"{idx.ngram_count} distinct n-grams[/green]"
    )
    if not idx.persisted:
        console.print("[yellow]Index not saved; a restart will rebuild it[/yellow]")


@app.command()
def serve(
    archive: Annotated[
        Path | None, typer.Option("--archive", "-a", help="Conversation archive (JSON)")
    ] = None,
    host: Annotated[str | None, typer.Option("--host", help="Bind address")] = None,
    port: Annotated[int | None, typer.Option("--port", "-p", help="Port")] = None,
    force: Annotated[bool, typer.Option("--force", "-f", help="Rebuild the index first")] = False,
) -> None:
    """Serve the search API."""
    from convo_search.service import serve as run_server

    settings = settings_with(archive, host=host, port=port)
    try:
        run_server(settings, force=force)
    except MalformedArchive as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e


@app.command()
def reset() -> None:
    """Delete the persisted index so the next start rebuilds it."""
    from convo_search.storage import delete_index

    index_path = get_settings().index_path
    if delete_index(index_path):
        console.print(f"[green]Deleted index at {index_path}[/green]")
    else:
        console.print(f"[yellow]No index at {index_path}; nothing to delete[/yellow]")


@app.command()
def status() -> None:
    """Show index statistics."""
    from convo_search.storage import get_index_stats

    try:
        stats = get_index_stats(get_settings().index_path)
    except IndexMissingOrStale as e:
        console.print(f"[red]Error: {e}. Run `convo-search reset` to rebuild.[/red]")
        raise typer.Exit(1) from e
    console.print(f"Conversations indexed: {stats['record_count']}")
    console.print(f"Distinct n-grams: {stats['ngram_count']}")
    console.print(f"Index path: {stats['index_path']}")
    console.print(f"Index size: {stats['index_size_human']}")
    if stats["last_indexed"]:
        console.print(f"Last indexed: {stats['last_indexed']}")


if __name__ == "__main__":
    app()
