"""
Command-line interface for Cloudreel.

Connect cloud storage accounts, browse them, and hand out local stream URLs.
"""

import functools
import logging
import time

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from shared.constants import APP_VERSION
from shared.errors import StreamError, NotFoundError
from shared.models import Provider

console = Console()


def _fmt_bytes(value) -> str:
    if value is None:
        return "-"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024


def _fmt_age(seconds) -> str:
    if seconds is None:
        return "-"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"


def handle_errors(func):
    """Print service errors instead of tracebacks and exit non-zero."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StreamError as e:
            console.print(f"[red]{e.message}[/red]")
            if e.detail:
                console.print(f"[dim]{e.detail}[/dim]")
            raise SystemExit(1)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(2)
    return wrapper


def _service(ctx):
    if ctx.obj.get('service') is None:
        from streamer.service import StreamService
        ctx.obj['service'] = StreamService(config_dir=ctx.obj.get('config_dir'))
    return ctx.obj['service']


def _resolve(service, ref: str):
    """Accept a remote id or its name."""
    remote = service.registry.get(ref) or service.registry.get_by_name(ref)
    if remote is None:
        raise NotFoundError(f"No remote named or identified by '{ref}'")
    return remote


@click.group()
@click.version_option(version=APP_VERSION)
@click.option('--config-dir', type=click.Path(file_okay=False), default=None,
              help='Configuration directory (default: ~/.config/cloudreel)')
@click.option('-v', '--verbose', is_flag=True, help='Show debug logging')
@click.pass_context
def cli(ctx, config_dir, verbose):
    """
    ☁️  Cloudreel

    Stream videos from cloud storage through a local, cached HTTP endpoint.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.ensure_object(dict)
    ctx.obj['config_dir'] = config_dir


@cli.command()
@click.pass_context
@handle_errors
def remotes(ctx):
    """List connected remotes."""
    service = _service(ctx)
    items = service.registry.list()
    if not items:
        console.print("[yellow]No remotes yet. Run 'cloudreel add <provider> <name>'.[/yellow]")
        return

    table = Table(title=f"Remotes ({len(items)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="bold white")
    table.add_column("Provider", style="green")
    table.add_column("Auth", style="magenta")
    table.add_column("Last scanned", style="yellow")
    for r in items:
        auth_style = "green" if r.auth_state.value == "authorized" else "red"
        table.add_row(r.id, r.name, r.provider.value,
                      f"[{auth_style}]{r.auth_state.value}[/{auth_style}]",
                      (r.last_scanned_at or "-")[:19])
    console.print(table)


@cli.command()
@click.argument('provider', type=click.Choice([p.value for p in Provider]))
@click.argument('name')
@click.option('--browser/--no-browser', default=None,
              help='Open the authorization page automatically')
@click.pass_context
@handle_errors
def add(ctx, provider, name, browser):
    """
    Connect a new cloud storage account.

    Starts the provider's sign-in flow and waits until it completes.
    """
    service = _service(ctx)
    if browser is not None:
        service.broker.open_browser = browser

    started = service.add_remote(provider, name)
    token = started['token']
    url_shown = False
    if started.get('url'):
        console.print(Panel.fit(f"Sign in at:\n[cyan]{started['url']}[/cyan]", border_style="cyan"))
        url_shown = True

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      console=console, transient=True) as progress:
            progress.add_task(description=f"Waiting for '{name}' authorization...", total=None)
            while True:
                status = service.poll_authorization(token)
                if status['url'] and not url_shown:
                    progress.console.print(f"Sign in at: [cyan]{status['url']}[/cyan]")
                    url_shown = True
                if status['status'] != 'pending':
                    break
                time.sleep(0.5)
    except KeyboardInterrupt:
        service.cancel_authorization(token)
        console.print("\n[yellow]Authorization cancelled.[/yellow]")
        raise SystemExit(1)

    if status['status'] == 'authorized':
        console.print(f"[green]✅ '{name}' connected (id: {status['remote_id']})[/green]")
    else:
        console.print(f"[red]Authorization {status['status']}: {status.get('error') or ''}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument('remote')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
@handle_errors
def remove(ctx, remote, yes):
    """Disconnect a remote and delete its cache and credentials."""
    service = _service(ctx)
    target = _resolve(service, remote)
    if not yes and not click.confirm(f"Remove '{target.name}' and its cached data?"):
        return
    service.remove_remote(target.id)
    console.print(f"[green]Removed '{target.name}'.[/green]")


@cli.command()
@click.argument('remote')
@click.argument('path', required=False, default='')
@click.option('--refresh', is_flag=True, help='Ignore the cached listing')
@click.option('--media-only', is_flag=True, help='Show only folders and video files')
@click.option('-r', '--recursive', is_flag=True, help='List every file below the folder')
@click.pass_context
@handle_errors
def browse(ctx, remote, path, refresh, media_only, recursive):
    """List a folder on a remote."""
    service = _service(ctx)
    target = _resolve(service, remote)
    listing = service.browse(target.id, path, force_refresh=refresh,
                             media_only=media_only, recursive=recursive)

    title = f"{target.name}:{listing['path']}"
    if listing['stale']:
        title += " [red](stale)[/red]"
        console.print(f"[yellow]Showing last known listing: {listing.get('error')}[/yellow]")
    table = Table(title=title)
    table.add_column("Name", style="bold white")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Modified", style="yellow")
    for entry in listing['entries']:
        if entry['is_directory']:
            table.add_row(f"[cyan]{entry['name']}/[/cyan]", "", (entry['modified_at'] or "")[:19])
        else:
            label = entry['entry_path'].lstrip('/') if recursive else entry['name']
            table.add_row(label, _fmt_bytes(entry['size_bytes']), (entry['modified_at'] or "")[:19])
    console.print(table)


@cli.command()
@click.argument('remote')
@click.argument('path')
@click.option('--wait', type=float, default=None, help='Seconds to wait for the server')
@click.pass_context
@handle_errors
def stream(ctx, remote, path, wait):
    """
    Serve a file and print its local URL.

    Keeps the stream server running until interrupted.
    """
    service = _service(ctx)
    target = _resolve(service, remote)
    url = service.get_stream_url(target.id, path, wait_timeout=wait)
    console.print(Panel.fit(f"[bold green]▶ {url}[/bold green]\n\nOpen it in any media player.",
                            title=target.name, border_style="green"))
    console.print("[yellow]Press Ctrl+C to stop[/yellow]")
    try:
        while service.stream_status().get('state') == 'running':
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop_stream()
    console.print("[yellow]Stopped.[/yellow]")


@cli.command()
@click.argument('remote')
@click.option('--clear', is_flag=True, help='Delete the whole cache of this remote')
@click.option('--cleanup', is_flag=True, help='Delete expired cache files only')
@click.option('--max-age-hours', type=float, default=None,
              help='Expiry used by --cleanup (default: configured cache age)')
@click.pass_context
@handle_errors
def cache(ctx, remote, clear, cleanup, max_age_hours):
    """Show or reclaim a remote's on-disk cache."""
    service = _service(ctx)
    target = _resolve(service, remote)
    if clear:
        result = service.clear_cache(target.id)
        console.print(f"[green]Freed {_fmt_bytes(result['bytes_freed'])}.[/green]")
    elif cleanup:
        result = service.cleanup_cache(target.id, max_age_hours)
        console.print(f"[green]Removed {result['files_removed']} file(s), "
                      f"freed {_fmt_bytes(result['bytes_freed'])}.[/green]")

    stats = service.cache_stats(target.id)
    table = Table(title=f"Cache: {target.name}", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="bold white")
    table.add_row("On disk", _fmt_bytes(stats['total_bytes_on_disk']))
    table.add_row("Files", str(stats['file_count']))
    table.add_row("Oldest entry", _fmt_age(stats['oldest_entry_age']))
    table.add_row("Size limit", _fmt_bytes(stats['max_size_bytes']))
    table.add_row("Age limit", _fmt_age(stats['max_age_seconds']))
    console.print(table)


@cli.command()
@click.argument('remote')
@click.pass_context
@handle_errors
def about(ctx, remote):
    """Show account quota for a remote."""
    service = _service(ctx)
    target = _resolve(service, remote)
    info = service.account_info(target.id)
    table = Table(title=f"Account: {target.name}", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="bold white")
    for key in ("total", "used", "free", "trashed"):
        table.add_row(key.capitalize(), _fmt_bytes(info.get(key)))
    console.print(table)


@cli.command()
@click.option('--port', default=None, type=int, help='Port to run the API on')
@click.option('--host', default='127.0.0.1', help='Interface to bind')
@click.option('--debug/--no-debug', default=False, help='Run in debug mode')
@click.pass_context
@handle_errors
def api(ctx, port, host, debug):
    """
    Launch the HTTP API.

    Serves the REST endpoints and the Socket.IO event channel.
    """
    from shared import api as api_module
    if ctx.obj.get('config_dir'):
        from streamer.service import StreamService
        api_module.set_core(StreamService(config_dir=ctx.obj['config_dir']))
    console.print("[yellow]Press Ctrl+C to stop[/yellow]")
    api_module.start_api(port=port, debug=debug, host=host)
