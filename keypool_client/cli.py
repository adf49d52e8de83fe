"""
Key Pool CLI Tool
Command-line interface for operating a running key pool proxy.
"""

import json
import sys
from dataclasses import asdict
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .client import KeyPoolClient, KeyPoolClientError


console = Console()


def get_client(url: Optional[str]) -> KeyPoolClient:
    """Create a client instance."""
    return KeyPoolClient(base_url=url)


def _format_reset(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    if seconds >= 3600:
        return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"
    if seconds >= 60:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds}s"


@click.group()
@click.option("--url", "-u", envvar="KEYPOOL_URL", default="http://localhost:3000", help="Proxy URL")
@click.pass_context
def cli(ctx, url: str):
    """Key Pool CLI - inspect and manage pooled API keys."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url


@cli.command()
@click.pass_context
def health(ctx):
    """Check proxy health."""
    with get_client(ctx.obj["url"]) as client:
        try:
            status = client.health()
            store = status.get("store", {})
            if status.get("status") == "healthy":
                console.print("✅ [green]Proxy is healthy[/green]")
                console.print(f"   Counter store: {store.get('backend', 'unknown')} "
                              f"(connected: {store.get('connected', False)})")
            else:
                console.print("⚠️ [yellow]Proxy status unknown[/yellow]")
        except Exception as e:
            console.print(f"❌ [red]Connection failed: {e}[/red]")
            sys.exit(1)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json: bool):
    """Show usage of every pooled key."""
    with get_client(ctx.obj["url"]) as client:
        try:
            pool = client.status()

            if as_json:
                console.print(json.dumps(asdict(pool), indent=2))
                return

            table = Table(title=f"API Keys ({pool.available_keys}/{pool.total_keys} available)")
            table.add_column("Key", style="cyan")
            table.add_column("Minute", justify="right")
            table.add_column("Resets", justify="right", style="dim")
            table.add_column("Day", justify="right")
            table.add_column("Resets", justify="right", style="dim")
            table.add_column("Available", justify="center")

            for k in pool.keys:
                table.add_row(
                    k.key,
                    f"{k.minute.used}/{k.minute.used + k.minute.remaining}",
                    _format_reset(k.minute.reset_in),
                    f"{k.day.used}/{k.day.used + k.day.remaining}",
                    _format_reset(k.day.reset_in),
                    "[green]yes[/green]" if k.available else "[red]no[/red]",
                )

            console.print(table)

        except Exception as e:
            console.print(f"❌ [red]Error: {e}[/red]")
            sys.exit(1)


@cli.command()
@click.pass_context
def keys(ctx):
    """List pooled keys in priority order."""
    with get_client(ctx.obj["url"]) as client:
        try:
            masked = client.list_keys()
            if not masked:
                console.print("[yellow]No keys configured[/yellow]")
                return
            for i, key in enumerate(masked, 1):
                console.print(f"{i:>3}. [cyan]{key}[/cyan]")
        except KeyPoolClientError as e:
            console.print(f"❌ [red]{e.message}[/red]")
            sys.exit(1)


@cli.command()
@click.argument("api_key")
@click.pass_context
def add(ctx, api_key: str):
    """Add API_KEY to the pool."""
    with get_client(ctx.obj["url"]) as client:
        try:
            result = client.add_key(api_key)
            console.print(f"✅ [green]{result.get('message')}[/green] ({result.get('key')})")
        except KeyPoolClientError as e:
            console.print(f"❌ [red]{e.message}[/red]")
            sys.exit(1)


@cli.command()
@click.argument("key_ref")
@click.pass_context
def remove(ctx, key_ref: str):
    """Remove a key, given in full or by its displayed prefix."""
    with get_client(ctx.obj["url"]) as client:
        try:
            result = client.remove_key(key_ref)
            console.print(f"✅ [green]{result.get('message')}[/green]")
        except KeyPoolClientError as e:
            console.print(f"❌ [red]{e.message}[/red]")
            sys.exit(1)


def main():
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
