"""Command-line interface for the crawl control plane."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from crawlplane import __version__
from crawlplane.config import Config, find_config_file
from crawlplane.container import DependencyContainer
from crawlplane.observability import configure_logging
from crawlplane.protocols import ConsumerStats

console = Console()
logger = structlog.get_logger(__name__)


def _load_config(ctx: click.Context) -> Config:
    config_path: Optional[Path] = ctx.obj["config_path"]
    config = Config.from_yaml(config_path) if config_path else Config()
    config.monitoring.log_level = ctx.obj["log_level"]
    configure_logging(config.monitoring)
    return config


def _stats_table(stats: ConsumerStats, title: str = "Consumer Statistics") -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Total messages", str(stats.total_messages))
    table.add_row("Succeeded", str(stats.success_count))
    table.add_row("Failed", str(stats.failure_count))
    table.add_row("Retried", str(stats.retry_count))
    table.add_row("Avg processing time (ms)", f"{stats.avg_processing_time_ms:.2f}")
    table.add_row(
        "Last processed",
        stats.last_processed_at.isoformat() if stats.last_processed_at else "never",
    )
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: str) -> None:
    """crawlplane - crawl policy and delivery control plane."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else find_config_file()
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("messages", type=click.File("r"))
@click.pass_context
def consume(ctx: click.Context, messages: Any) -> None:
    """Replay task-status MESSAGES (one JSON object per line) through the consumer."""
    config = _load_config(ctx)
    bodies: List[str] = [line.strip() for line in messages if line.strip()]
    logger.info("Replaying task status messages", count=len(bodies), queue=config.consumer.queue_name)

    async def run_consumer() -> Dict[str, Any]:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            broker = await container.get_broker()
            consumer = await container.get_consumer()
            queue_name = config.consumer.queue_name
            before = await consumer.get_stats()

            for body in bodies:
                await broker.publish(queue_name, body)
            await consumer.start()
            # Requeued messages count as unfinished, so this covers retries too
            await broker.join(queue_name)
            await broker.close()
            await consumer.stop()

            after = await consumer.get_stats()
            return {
                "published": len(bodies),
                "succeeded": after.success_count - before.success_count,
                "retried": after.retry_count - before.retry_count,
                "failed": after.failure_count - before.failure_count,
                "dead_lettered": len(broker.dead_letters(queue_name)),
                "stats": after,
            }

    outcome = asyncio.run(run_consumer())
    stats_after: ConsumerStats = outcome.pop("stats")
    console.print(_stats_table(stats_after))
    console.print(
        Panel(
            "\n".join(f"{name}: {count}" for name, count in outcome.items()),
            title="Replay Results",
            border_style="green" if outcome["failed"] == 0 else "yellow",
        )
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of a table")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show persisted consumer statistics."""
    config = _load_config(ctx)

    async def read_stats() -> ConsumerStats:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            store = await container.get_stats_store()
            return await store.get_stats()

    result = asyncio.run(read_stats())
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print(_stats_table(result))


@cli.command("reset-stats")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset_stats(ctx: click.Context, yes: bool) -> None:
    """Reset persisted consumer statistics."""
    if not yes and not click.confirm("Reset all consumer statistics?"):
        console.print("[yellow]Aborted[/yellow]")
        return
    config = _load_config(ctx)

    async def do_reset() -> None:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            store = await container.get_stats_store()
            await store.reset_stats()

    asyncio.run(do_reset())
    console.print("[green]Consumer statistics reset[/green]")


@cli.command("robots-check")
@click.argument("url")
@click.option("--user-agent", default=None, help="Override the configured user agent")
@click.pass_context
def robots_check(ctx: click.Context, url: str, user_agent: Optional[str]) -> None:
    """Check whether URL may be crawled and with which delay."""
    config = _load_config(ctx)
    if user_agent:
        config.robots.user_agent = user_agent

    async def check() -> Dict[str, Any]:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            robots = await container.get_robots()
            return {
                "url": url,
                "user_agent": config.robots.user_agent,
                "allowed": await robots.is_url_allowed(url),
                "crawl_delay_seconds": await robots.get_crawl_delay(url),
                "sitemaps": await robots.get_sitemaps(url),
            }

    result = asyncio.run(check())
    table = Table(title="robots.txt")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in result.items():
        table.add_row(key, ", ".join(value) if isinstance(value, list) else str(value))
    console.print(table)
    if not result["allowed"]:
        sys.exit(2)


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to monitoring.web.host)")
@click.option("--port", default=None, type=int, help="Port (defaults to monitoring.web.port)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Serve the diagnostics API."""
    from crawlplane.observability import MetricsManager
    from crawlplane.web.main import run_web_server

    config = _load_config(ctx)
    MetricsManager(config.monitoring).start()
    container = DependencyContainer(ctx.obj["config_path"], config=config, watch_config=True)
    run_web_server(
        host=host or config.monitoring.web.host,
        port=port or config.monitoring.web.port,
        container=container,
    )


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
