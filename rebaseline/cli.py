"""rebaseline CLI - write failed expectations back into test sources."""

import asyncio
import difflib
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from rebaseline import __version__
from rebaseline.apply import RebaselineApplier, RebaselinePrompt
from rebaseline.config import RebaselineConfig
from rebaseline.errors import RebaselineError, UnsatisfiedRebaseline
from rebaseline.logging import setup_logging
from rebaseline.requests import InlinePayload, RequestStore
from rebaseline.source import SourceCache

console = Console()


def _print_diffs(cache: SourceCache):
    for source in cache.loaded():
        if not source.dirty:
            continue
        diff = "".join(
            difflib.unified_diff(
                source.saved_text.splitlines(keepends=True),
                source.text.splitlines(keepends=True),
                fromfile=str(source.path),
                tofile=str(source.path),
            )
        )
        console.print(Syntax(diff, "diff", theme="ansi_dark", word_wrap=True))


def _parse_location(location: str) -> tuple[str, int, int]:
    try:
        path, line, column = location.rsplit(":", 2)
        return path, int(line), int(column)
    except ValueError:
        raise click.BadParameter(f"expected PATH:LINE:COLUMN, got {location!r}")


async def _confirm(prompt: RebaselinePrompt) -> bool:
    request = prompt.request
    console.print(
        Panel(
            f"[dim]{prompt.line:>4} |[/] {escape(prompt.line_text)}\n\n"
            f"[red]- {escape(prompt.current)}[/]\n"
            f"[green]+ {escape(prompt.replacement)}[/]",
            title=f"{request.path}:{prompt.line}",
            subtitle=request.matcher_name,
        )
    )
    return click.confirm("Apply this rebaseline?", default=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to rebaseline.toml")
@click.pass_context
def cli(ctx, config_path: str = None):
    """Rebaseline - update expected values in test sources."""
    config = RebaselineConfig.load(config_path)
    setup_logging(config.log_level, config.log_file, config.json_logs)
    ctx.obj = config


@cli.command()
@click.option("--interactive", "-i", is_flag=True, help="Confirm each rebaseline")
@click.option("--dry-run", is_flag=True, help="Show the changes without writing them")
@click.option("--request-file", "-f", type=click.Path(), help="Pending request file")
@click.pass_obj
def apply(config: RebaselineConfig, interactive: bool, dry_run: bool, request_file: str = None):
    """Apply pending rebaselines to their source files."""

    async def execute():
        cache = SourceCache()
        store = await RequestStore.load(
            Path(request_file) if request_file else config.request_file,
            cache,
            config.matchers,
        )
        for stale in store.dropped:
            console.print(f"[yellow]Skipped (file changed):[/] {stale.path}:{stale.line}")

        applier = RebaselineApplier(
            store, config.matchers, config.literal_policy, dry_run=dry_run
        )
        try:
            if interactive:
                result = await applier.apply_interactive(_confirm)
                for request in result.unmatched:
                    console.print(f"[yellow]No matching call:[/] {request.path}:{request.line}")
                for error in result.errors.values():
                    console.print(f"[red]✗ {escape(str(error))}[/]")
            else:
                result = await applier.apply_batch()
        finally:
            if dry_run:
                _print_diffs(cache)
        return result

    try:
        result = asyncio.run(execute())
    except UnsatisfiedRebaseline as e:
        click.echo(str(e))
        sys.exit(1)
    except RebaselineError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        sys.exit(1)

    verb = "Would apply" if dry_run else "Applied"
    console.print(f"[green]✓ {verb} {len(result.applied)} rebaseline(s)[/]")
    if result.skipped:
        console.print(f"[dim]Skipped {len(result.skipped)}[/]")


@cli.command(name="list")
@click.option("--request-file", "-f", type=click.Path(), help="Pending request file")
@click.pass_obj
def list_requests(config: RebaselineConfig, request_file: str = None):
    """List pending rebaselines."""

    async def execute():
        return await RequestStore.load(
            Path(request_file) if request_file else config.request_file,
            matchers=config.matchers,
        )

    try:
        store = asyncio.run(execute())
    except RebaselineError as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        sys.exit(1)

    for record, error in store.failed:
        console.print(f"[yellow]Unreadable:[/] {record.file}:{record.line} ({escape(str(error))})")
    if not len(store):
        if not store.failed:
            console.print("[dim]No pending rebaselines[/dim]")
        return

    table = Table(title="Pending Rebaselines")
    table.add_column("Location", style="cyan")
    table.add_column("Matcher", style="magenta")
    table.add_column("Payload")
    for request in store:
        payload = request.payload
        if isinstance(payload, InlinePayload):
            shown = payload.render()
        else:
            shown = f"{payload.artifact_path} -> {payload.destination_path}"
        table.add_row(
            f"{request.path}:{request.line}:{request.column}",
            request.matcher_name,
            escape(shown),
        )
    console.print(table)
    if store.dropped:
        console.print(f"[yellow]{len(store.dropped)} stale request(s) dropped[/]")


@cli.command()
@click.argument("location")
@click.argument("matcher")
@click.option("--value", help="Expected value as JSON (inline matchers)")
@click.option("--artifact", type=click.Path(), help="Produced artifact (snapshot matchers)")
@click.option("--dest", type=click.Path(), help="Reference file the artifact replaces")
@click.option("--request-file", "-f", type=click.Path(), help="Pending request file")
@click.pass_obj
def add(
    config: RebaselineConfig,
    location: str,
    matcher: str,
    value: str = None,
    artifact: str = None,
    dest: str = None,
    request_file: str = None,
):
    """Record a rebaseline for MATCHER at LOCATION (path:line:column)."""
    path, line, column = _parse_location(location)

    if value is not None:
        try:
            payload = json.loads(value)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"--value is not valid JSON: {e}")
    elif artifact and dest:
        payload = {"artifact_path": artifact, "destination_path": dest}
    else:
        raise click.UsageError("Pass --value, or both --artifact and --dest")

    async def execute():
        store = await RequestStore.load(
            Path(request_file) if request_file else config.request_file,
            matchers=config.matchers,
        )
        request = await store.create(path, line, column, matcher, payload)
        await store.save()
        return request

    try:
        request = asyncio.run(execute())
    except (RebaselineError, ValueError) as e:
        console.print(f"[red]✗ {escape(str(e))}[/]")
        sys.exit(1)

    console.print(f"[green]✓ Recorded[/] {request.matcher_name} at {request.key}")


def main():
    cli()


if __name__ == "__main__":
    main()
