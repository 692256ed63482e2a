import argparse
import asyncio
import sys
import time
from datetime import datetime

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from feedrank.classifier import TOPIC_TABS
from feedrank.config import get_setting, save_config
from feedrank.constants import DEFAULT_PAGE_LIMIT, READ_FILTER_READ, READ_FILTER_UNREAD, TOPIC_ALL
from feedrank.errors import StoreError
from feedrank.logging_config import configure_logging
from feedrank.service import FeedService

console = Console()


def _age(ts: float) -> str:
    hours = max(0.0, (time.time() - ts) / 3600)
    if hours < 1:
        return f"{int(hours * 60)}m"
    if hours < 48:
        return f"{int(hours)}h"
    return f"{int(hours / 24)}d"


def cmd_add(service: FeedService, args) -> int:
    try:
        feed = service.subscribe(args.url, args.title or "")
    except StoreError as e:
        console.print(f"[red]Error: {e}[/]")
        return 1
    console.print(f"[green]Subscribed[/] #{feed.id} {feed.url}")
    return 0


def cmd_remove(service: FeedService, args) -> int:
    if not service.unsubscribe(args.feed_id):
        console.print(f"[red]No feed with id {args.feed_id}[/]")
        return 1
    console.print(f"[green]Removed feed #{args.feed_id}[/]")
    return 0


def cmd_feeds(service: FeedService, args) -> int:
    feeds = service.list_feeds()
    if not feeds:
        console.print("[yellow]No subscriptions yet. Add one with: cli.py add URL[/]")
        return 0
    table = Table(title="Subscriptions")
    table.add_column("ID", justify="right")
    table.add_column("Title")
    table.add_column("URL", style="dim cyan")
    table.add_column("Last fetched")
    for f in feeds:
        fetched = (
            datetime.fromtimestamp(f.last_fetched_at).strftime("%Y-%m-%d %H:%M")
            if f.last_fetched_at
            else "never"
        )
        table.add_row(str(f.id), f.title, f.url, fetched)
    console.print(table)
    return 0


async def cmd_run(service: FeedService, args) -> int:
    if args.once:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            progress.add_task("[cyan]Fetching, embedding, clustering, scoring...", total=None)
            await service.run_once()
        status = service.get_pending_status()
        console.print(f"[green]Cycle complete:[/] {status.new_item_count} new items")
        return 0

    service.start_background()
    console.print("[cyan]Background loop running. Ctrl-C to stop.[/]")
    try:
        await service.scheduler.wait_stopped()
    finally:
        service.stop_background()
    return 0


async def cmd_feed(service: FeedService, args) -> int:
    try:
        page = await service.get_ranked_feed(
            page=args.page,
            limit=args.limit,
            topic=args.topic,
            similar_to_item_id=args.similar_to,
            read_filter=READ_FILTER_READ if args.read else READ_FILTER_UNREAD,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        return 1

    if not page.items:
        console.print("[yellow]Nothing to show.[/]")
        return 0

    console.print(f"\n[bold green]{args.topic} - page {args.page}[/]\n")
    for item in page.items:
        console.print(
            f"[dim]#{item.id:<6}[/dim] [bold]{item.title or '(no title)'}[/bold] "
            f"[dim]({item.feed_title}, {_age(item.published_at)}, {item.topic or '-'})[/dim]"
        )
        if item.link:
            console.print(f"   [dim cyan]{item.link}[/]")
    if page.has_more:
        console.print(f"\n[dim]More: --page {args.page + 1}[/]")
    return 0


async def cmd_status(service: FeedService, args) -> int:
    status = service.get_pending_status()
    ai = await service.ai_available()
    console.print(f"Feeds: {len(service.list_feeds())}")
    console.print(f"Pending new items: {status.new_item_count}")
    console.print(f"AI features: {'[green]available[/]' if ai else '[yellow]unavailable[/]'}")
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from feedrank.main import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def cmd_config(args) -> int:
    if args.value is None:
        console.print(f"{args.key} = {get_setting(args.key)}")
    else:
        save_config(args.key, args.value)
        console.print(f"[green]Saved[/] {args.key} = {args.value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="feedrank: personalized RSS ranking")
    parser.add_argument("--db", help="SQLite database path (default: from config)")
    parser.add_argument(
        "--no-ai", action="store_true", help="Disable the Ollama provider"
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="Subscribe to a feed")
    p.add_argument("url")
    p.add_argument("--title", default="")

    p = sub.add_parser("remove", help="Unsubscribe from a feed")
    p.add_argument("feed_id", type=int)

    sub.add_parser("feeds", help="List subscriptions")

    p = sub.add_parser("run", help="Run the background pipeline")
    p.add_argument("--once", action="store_true", help="Run one full cycle and exit")

    p = sub.add_parser("feed", help="Show the ranked feed")
    p.add_argument(
        "--topic",
        default=TOPIC_ALL,
        help=f"all, for_you, or one of: {', '.join(TOPIC_TABS)}",
    )
    p.add_argument("--page", type=int, default=0)
    p.add_argument("--limit", type=int, default=DEFAULT_PAGE_LIMIT)
    p.add_argument("--similar-to", type=int, default=None, help="Boost items like this item id")
    p.add_argument("--read", action="store_true", help="Show the read archive")

    sub.add_parser("status", help="Pending items and AI availability")

    p = sub.add_parser("serve", help="Serve the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)

    p = sub.add_parser("config", help="Show or set a config value")
    p.add_argument("key")
    p.add_argument("value", nargs="?")

    return parser


async def run_command(service: FeedService, args) -> int:
    try:
        if args.command == "add":
            return cmd_add(service, args)
        if args.command == "remove":
            return cmd_remove(service, args)
        if args.command == "feeds":
            return cmd_feeds(service, args)
        if args.command == "run":
            return await cmd_run(service, args)
        if args.command == "feed":
            return await cmd_feed(service, args)
        if args.command == "status":
            return await cmd_status(service, args)
        raise ValueError(f"unknown command: {args.command}")
    finally:
        await service.aclose()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or str(get_setting("log_level")))

    if args.command == "serve":
        return cmd_serve(args)
    if args.command == "config":
        return cmd_config(args)

    service = FeedService.from_config(db_path=args.db, use_ai=not args.no_ai)
    try:
        return asyncio.run(run_command(service, args))
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
