import logging
import sys
from pathlib import Path
from typing import Callable, Optional

import anyio
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .aliases import find_alias_tags
from .cache import TTLCache
from .continuation import DEFAULT_MAX_CONTINUATIONS, load_render_continuations
from .errors import RemoteCallError
from .include_resolver import resolve_includes
from .noparse import extract_noparse_blocks
from .progressive import ProgressiveLoader, render_progressive
from .remote import DirectoryFetcher, build_legacy_args, decode_content, render_function_name
from .tags import (Flag, parse_chunk_tags, parse_continuation_tags, parse_includes,
                   parse_progressive_tags, parse_render_tags)

app = typer.Typer(help="stitchdown: assemble pages from contract-rendered markup")

logger = logging.getLogger(__name__)

console = Console(stderr=True)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    )
):
    """stitchdown: assemble pages from contract-rendered markup"""
    pass


async def _render_page(
    fetcher: DirectoryFetcher,
    contract: str,
    func: Optional[str],
    path: Optional[str],
    viewer: Optional[str],
    progressive: bool,
    continuations: bool,
    max_continuations: int,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> str:
    function_name = render_function_name(func)
    raw = decode_content(
        await fetcher.call(contract, function_name, build_legacy_args(path, viewer))
    )
    if raw is None:
        raise RemoteCallError(contract, function_name, "No result from simulation")

    cache = TTLCache()
    loader = ProgressiveLoader(
        fetcher,
        contract,
        on_progress=on_progress,
        on_error=lambda e, tag: console.print(f"[yellow]Chunk failed:[/yellow] {e}"),
    )

    async def assemble(text: str) -> str:
        resolved = await resolve_includes(text, fetcher, contract, viewer=viewer, cache=cache)
        if progressive:
            return (await render_progressive(resolved.content, loader)).content
        return parse_progressive_tags(resolved.content).content

    content = await assemble(raw)

    if continuations:
        result = await load_render_continuations(
            content,
            fetcher,
            contract,
            viewer=viewer,
            on_continuation_loaded=lambda _path, text: assemble(text),
            max_continuations=max_continuations,
        )
        for error in result.errors:
            console.print(f"[yellow]Continuation {error.path} failed:[/yellow] {error.message}")
        if result.limit_reached:
            console.print(
                f"[yellow]Stopped after {result.continuations_loaded} continuations[/yellow]"
            )
        content = result.content

    return content


@app.command()
def render(
    root: Path = typer.Argument(
        ..., help="Directory holding one sub-directory per contract", exists=True, file_okay=False
    ),
    contract: str = typer.Argument(..., help="Contract to render"),
    func: Optional[str] = typer.Option(None, help="Render function, e.g. 'header' for render_header"),
    path: Optional[str] = typer.Option(None, help="Path argument passed to render"),
    viewer: Optional[str] = typer.Option(None, help="Viewer address passed to render"),
    progressive: bool = typer.Option(
        True, "--progressive/--no-progressive", help="Load chunked content"
    ),
    continuations: bool = typer.Option(
        True, "--continuations/--no-continuations", help="Load {{render}} continuations"
    ),
    max_continuations: int = typer.Option(
        DEFAULT_MAX_CONTINUATIONS, help="Maximum render continuations to load"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Render a contract page from a directory of contracts and print the assembled document.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    fetcher = DirectoryFetcher(root)
    show_progress = progressive and sys.stderr.isatty()

    def run(on_progress=None) -> str:
        return anyio.run(
            _render_page,
            fetcher,
            contract,
            func,
            path,
            viewer,
            progressive,
            continuations,
            max_continuations,
            on_progress,
        )

    try:
        if show_progress:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Loading chunks", total=None)
                content = run(
                    lambda loaded, total: progress.update(task, completed=loaded, total=total)
                )
        else:
            content = run()
    except RemoteCallError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    typer.echo(content)


@app.command()
def tags(
    file: Path = typer.Argument(..., help="File to scan", exists=True, dir_okay=False),
):
    """
    List the tags found in a file.
    """
    text = file.read_text(encoding="utf-8")

    rows = []
    for tag in (
        parse_includes(text)
        + parse_chunk_tags(text)
        + parse_continuation_tags(text)
        + parse_render_tags(text)
    ):
        attrs = " ".join(
            name if isinstance(value, Flag) else f"{name}={value!r}"
            for name, value in tag.attributes.items()
        )
        rows.append((tag.start, tag.end, tag.kind, attrs))
    for alias_tag in find_alias_tags(text):
        mappings = " ".join(f"{k}={v!r}" for k, v in alias_tag.mappings.items())
        rows.append((alias_tag.start, alias_tag.end, "aliases", mappings))
    for block in extract_noparse_blocks(text)[1]:
        rows.append((block.start, block.end, "noparse", f"{len(block.inner_content)} chars"))

    table = Table(title=str(file))
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Kind")
    table.add_column("Attributes")
    for start, end, kind, attrs in sorted(rows):
        table.add_row(str(start), str(end), kind, attrs)

    Console().print(table)
    if not rows:
        typer.echo("No tags found")


if __name__ == "__main__":
    app()
