"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
import pytz
import structlog

from . import __version__
from .auth import CalendarAuthEngine, OAuthError
from .config import Settings, load_settings
from .models import AuthEvent, AuthEventType, DateRange, ProviderType, parse_sources
from .providers import CalendarProviderError, CalendarSourceManager, ProviderFactory, user_notice

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def load_sources_file(path: str) -> List[Any]:
    with open(path, 'r') as f:
        return parse_sources(json.load(f))


def save_sources_file(path: str, sources: List[Any]) -> None:
    Path(path).write_text(json.dumps([s.model_dump(mode='json') for s in sources], indent=2))


def find_source(sources: List[Any], source_id: str) -> Any:
    for source in sources:
        if source.id == source_id:
            return source
    console.print(f"[red]No source with id {source_id}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """calsync-providers - read and write Google, Outlook and iCloud calendars."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
            settings.log_level = 'DEBUG'
        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('provider', type=click.Choice([ProviderType.GOOGLE.value, ProviderType.OUTLOOK.value]))
@click.option('--tenant', help='Microsoft tenant id (Outlook only)')
@click.option('--sources', 'sources_path', type=click.Path(exists=True),
              help='Sources JSON file to store the tokens in')
@click.option('--source-id', help='Source to update inside the sources file')
@async_command
async def login(ctx, provider, tenant, sources_path, source_id):
    """Authorize PROVIDER in the browser and print the resulting tokens."""
    settings: Settings = ctx.obj['settings']
    done = asyncio.Event()
    outcome: List[AuthEvent] = []

    def on_event(event: AuthEvent) -> None:
        if event.type in (AuthEventType.AUTH_SUCCESS, AuthEventType.AUTH_ERROR):
            outcome.append(event)
            done.set()

    async with CalendarAuthEngine(settings) as engine:
        engine.subscribe(on_event)
        try:
            url = await engine.start_flow(provider, tenant_id=tenant, source_id=source_id)
        except OAuthError as e:
            console.print(f"[red]Could not start authorization: {e}[/red]")
            sys.exit(1)

        console.print(Panel(f"If the browser did not open, visit:\n{url}", title="Authorize"))
        try:
            await asyncio.wait_for(done.wait(), timeout=settings.oauth_pending_ttl_seconds)
        except asyncio.TimeoutError:
            console.print("[red]Authorization timed out[/red]")
            sys.exit(1)

    event = outcome[0]
    if event.type == AuthEventType.AUTH_ERROR:
        console.print(f"[red]Authorization failed: {event.error}[/red]")
        sys.exit(1)

    console.print(f"[green]Connected[/green] {event.email or ''}")
    if sources_path and source_id:
        sources = load_sources_file(sources_path)
        source = find_source(sources, source_id)
        source.auth = event.tokens
        if event.email:
            source.account_email = event.email
        save_sources_file(sources_path, sources)
        console.print(f"Tokens stored in {sources_path}")
    else:
        console.print_json(event.tokens.model_dump_json())


@cli.command()
@click.argument('sources_path', type=click.Path(exists=True))
@click.argument('source_id')
@async_command
async def calendars(ctx, sources_path, source_id):
    """List the calendars of SOURCE_ID from SOURCES_PATH."""
    settings: Settings = ctx.obj['settings']
    sources = load_sources_file(sources_path)
    source = find_source(sources, source_id)

    async with CalendarAuthEngine(settings) as engine:
        manager = CalendarSourceManager(engine, settings)
        provider = manager.get_provider(source)
        try:
            entries = await provider.list_calendars()
        except CalendarProviderError as e:
            console.print(f"[red]{user_notice(e)}[/red]")
            if settings.debug:
                console.print(str(e))
            sys.exit(1)
        finally:
            await provider.close()

    table = Table(title=f"{ProviderFactory.display_name(source.type)}: {source.name}")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Primary")
    table.add_column("Writable")
    table.add_column("Color")
    for entry in entries:
        table.add_row(entry.id, entry.name, "✓" if entry.primary else "", "✓" if entry.can_write else "", entry.color or "")
    console.print(table)
    save_sources_file(sources_path, sources)


@cli.command()
@click.argument('sources_path', type=click.Path(exists=True))
@click.argument('source_id')
@click.option('--days', '-d', default=30, type=int, help='Days ahead to list')
@click.option('--calendar', 'calendar_ids', multiple=True, help='Calendar id (repeatable)')
@async_command
async def events(ctx, sources_path, source_id, days, calendar_ids):
    """List upcoming events of SOURCE_ID from SOURCES_PATH."""
    settings: Settings = ctx.obj['settings']
    sources = load_sources_file(sources_path)
    source = find_source(sources, source_id)
    date_range = DateRange.around(datetime.now(pytz.UTC), days_before=0, days_after=days)

    async with CalendarAuthEngine(settings) as engine:
        provider = ProviderFactory(engine, settings).create_provider(source)
        try:
            found = await provider.get_events(date_range, calendar_ids=list(calendar_ids) or None)
        finally:
            await provider.close()

    if provider.status.error:
        console.print(f"[yellow]{provider.status.error}[/yellow]")

    table = Table(title=f"{len(found)} events")
    table.add_column("Start", style="cyan")
    table.add_column("End")
    table.add_column("Summary", style="green")
    table.add_column("Calendar", style="dim")
    for event in sorted(found, key=lambda e: e.start):
        fmt = '%Y-%m-%d' if event.all_day else '%Y-%m-%d %H:%M'
        table.add_row(
            event.start.strftime(fmt),
            event.end.strftime(fmt) if event.end else "",
            event.summary,
            event.provider_calendar_id or "",
        )
    console.print(table)
    save_sources_file(sources_path, sources)


@cli.command()
@click.argument('sources_path', type=click.Path(exists=True))
@async_command
async def check(ctx, sources_path):
    """Test the connection of every enabled source in SOURCES_PATH."""
    settings: Settings = ctx.obj['settings']
    sources = load_sources_file(sources_path)

    table = Table(title="Connection test")
    table.add_column("Source", style="cyan")
    table.add_column("Provider")
    table.add_column("Result")

    async with CalendarAuthEngine(settings) as engine:
        factory = ProviderFactory(engine, settings)
        for source in sources:
            if not source.enabled or source.type == ProviderType.URL_ICS.value:
                continue
            provider = factory.create_provider(source)
            try:
                result = await provider.test_connection()
            finally:
                await provider.close()
            if result['success']:
                summary = f"[green]✓[/green] {result['calendar_count']} calendars"
            else:
                summary = f"[red]✗[/red] {result['error']}"
            table.add_row(source.name, factory.display_name(source.type), summary)

    console.print(table)
    save_sources_file(sources_path, sources)


def main(argv: Optional[List[str]] = None) -> None:
    cli(args=argv)


if __name__ == '__main__':
    main()
