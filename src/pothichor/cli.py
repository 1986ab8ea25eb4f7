from __future__ import annotations

import argparse
import logging
from typing import List

from rich.console import Console
from rich.table import Table

from .config import Settings
from .errors import PothichorError
from .marketplace import Marketplace, build_marketplace
from .models import Meal, PastOrder


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operate the Pothichor meal marketplace")
    parser.add_argument("--database-url", default=None, help="MongoDB URI (default: $DATABASE_URL)")
    parser.add_argument("--database-name", default=None, help="MongoDB database (default: $DATABASE_NAME)")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("meals", help="Show meals still open for ordering")
    sub.add_parser("sweep", help="Settle every meal whose pickup window has closed")

    remind = sub.add_parser("remind", help="Send due pickup reminders once")
    remind.add_argument("--email", default=None, help="Only this recipient (default: everyone)")

    past = sub.add_parser("past-orders", help="Show a house's settled meals")
    past.add_argument("--house", required=True, help="House user id")
    return parser


def main(args: list[str] | None = None) -> int:
    parser = build_parser()
    opts = parser.parse_args(args=args)
    logging.basicConfig(level=logging.DEBUG if opts.verbose else logging.INFO)

    settings = Settings()
    if opts.database_url:
        settings.database_url = opts.database_url
    if opts.database_name:
        settings.database_name = opts.database_name

    console = Console()
    market = build_marketplace(settings)
    try:
        return _run(opts, market, console)
    except PothichorError as exc:
        console.print(f"[red]{opts.command} failed: {exc}[/]")
        return 1


def _run(opts: argparse.Namespace, market: Marketplace, console: Console) -> int:
    if opts.command == "meals":
        meals = market.ordering.list_open_meals()
        if not meals:
            console.print("[yellow]No meals are open for ordering.[/]")
            return 0
        _render_meals(console, meals, market)
    elif opts.command == "sweep":
        settled = market.listings.run_completion_sweep()
        console.print(f"[green]Settled {len(settled)} meal(s).[/]")
        if settled:
            _render_past_orders(console, settled, market)
    elif opts.command == "remind":
        report = market.reminders.dispatch_due(opts.email)
        console.print(
            f"[green]{len(report.sent)} sent[/], [red]{len(report.failed)} failed[/], "
            f"[yellow]{len(report.unmarked)} sent but not marked[/]"
        )
        return 1 if report.failed else 0
    elif opts.command == "past-orders":
        records = market.listings.list_past_orders(opts.house)
        if not records:
            console.print("[yellow]No settled meals yet.[/]")
            return 0
        _render_past_orders(console, records, market)
    return 0


def _render_meals(console: Console, meals: List[Meal], market: Marketplace) -> None:
    table = Table(title="Open Meals")
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("House")
    table.add_column("Price", justify="right")
    table.add_column("Left", justify="right")
    table.add_column("Deadline")
    table.add_column("Pickup")
    table.add_column("Veg")
    for meal in meals:
        table.add_row(
            meal.id,
            meal.title,
            meal.house_name,
            f"Rs. {meal.price:g}",
            f"{meal.remaining}/{meal.quantity_prepared}",
            market.dispatcher.format_time(meal.order_deadline),
            market.dispatcher.format_time(meal.pickup_time),
            "yes" if meal.is_veg else "no",
        )
    console.print(table)


def _render_past_orders(console: Console, records: List[PastOrder], market: Marketplace) -> None:
    table = Table(title="Settled Meals")
    table.add_column("Meal")
    table.add_column("Pickup")
    table.add_column("Orders", justify="right")
    table.add_column("Revenue", justify="right")
    table.add_column("Items")
    for record in records:
        table.add_row(
            record.meal_title,
            market.dispatcher.format_time(record.pickup_time),
            str(record.total_orders),
            f"Rs. {record.total_revenue:g}",
            ", ".join(record.food_items),
        )
    console.print(table)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
