#!/usr/bin/env python3
"""
SCRATCHWORKS - Operator CLI

Usage:
    python -m scratch.cli init-db
    python -m scratch.cli seed-demo
    python -m scratch.cli simulate <card_type_id> --rounds 200000 --currency SC
    python -m scratch.cli verify <instance_id>
    python -m scratch.cli expire
"""

import argparse
import logging
import sys

from rich.console import Console
from rich.table import Table

from config.database import get_standalone_db, init_db
from config.settings import ScratchConfig
from scratch.catalog import Catalog
from scratch.errors import ScratchCardError
from scratch.service import ScratchCardService

console = Console()


def seed_demo_catalog(db):
    """Classic 3x3 demo card: 25% hit rate, ~82.5% GC RTP, capped jackpot."""
    catalog = Catalog(db)
    theme = catalog.create_theme("classic", "Classic Fruits")
    card = catalog.create_card_type(
        theme.id, "lucky_sevens", "Lucky Sevens",
        total_scratch_areas=9, min_symbols_to_match=3,
        cost_gc=100, cost_sc=1, max_prize_gc=5000, max_prize_sc=50,
        overall_odds=0.25, rtp_percentage=82.5,
    )
    catalog.create_prize_tier(card.id, "T1", "Three Cherries", 0.15, "cherry",
                              prize_gc=100, prize_sc=1)
    catalog.create_prize_tier(card.id, "T2", "Three Bells", 0.07, "bell",
                              prize_gc=250, prize_sc=2)
    catalog.create_prize_tier(card.id, "T3", "Three Stars", 0.025, "star",
                              prize_gc=1000, prize_sc=10)
    catalog.create_prize_tier(card.id, "T4", "Lucky Sevens", 0.005, "seven",
                              prize_gc=5000, prize_sc=50, is_jackpot=True,
                              max_wins_per_day=2, max_total_wins=10)
    return card


def _cmd_init_db(args):
    init_db(args.db)
    console.print("[green]✅ Schema ready[/green]")


def _cmd_seed_demo(args):
    init_db(args.db)
    db = get_standalone_db(args.db)
    try:
        card = seed_demo_catalog(db)
    finally:
        db.close()
    console.print(f"[green]✅ Demo card type created:[/green] {card.display_name} ([bold]{card.id}[/bold])")


def _cmd_simulate(args):
    db = get_standalone_db(args.db)
    try:
        report = Catalog(db).rtp_report(args.card_type_id, currency=args.currency,
                                        rounds=args.rounds)
    finally:
        db.close()

    console.print(f"\n[bold cyan]🎟  Prize table audit: {args.card_type_id}[/bold cyan]\n")
    table = Table()
    table.add_column("Metric", style="bold")
    table.add_column("Target")
    table.add_column("Theoretical")
    table.add_column("Simulated")
    sim = report.get("simulation", {})
    table.add_row("Hit rate", f"{report['odds_target']:.4f}",
                  f"{report['hit_rate_theoretical']:.4f}", f"{sim.get('hit_rate', 0):.4f}")
    table.add_row("RTP", f"{report['rtp_target']:.4f}",
                  f"{report['rtp_theoretical']:.4f}", f"{sim.get('rtp', 0):.4f}")
    console.print(table)
    console.print(f"Currency: {report['currency']}  Cost: {report['cost']}  "
                  f"Rounds: {args.rounds:,}")


def _cmd_verify(args):
    report = ScratchCardService(db_path=args.db).verify_card(args.instance_id)
    icon = "✅" if report.verified else "❌"
    console.print(f"{icon} [bold]{args.instance_id}[/bold]")
    console.print(f"  Stored hash:     {report.verification_hash}")
    console.print(f"  Recomputed hash: {report.recomputed_hash}")
    console.print(f"  Hash matches:    {report.hash_matches}")
    console.print(f"  Draw matches:    {report.draw_matches}")
    console.print(f"  Layout matches:  {report.layout_matches}")
    if not report.verified:
        sys.exit(1)


def _cmd_expire(args):
    count = ScratchCardService(db_path=args.db).expire_cards()
    console.print(f"[green]✅ Expired {count} card(s)[/green]")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Scratch card operator tools")
    parser.add_argument("--db", type=str, default=None, help="SQLite file (default: DB_PATH)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables").set_defaults(func=_cmd_init_db)
    sub.add_parser("seed-demo", help="Create a demo card type").set_defaults(func=_cmd_seed_demo)

    p = sub.add_parser("simulate", help="Theoretical + simulated RTP of a prize table")
    p.add_argument("card_type_id")
    p.add_argument("--rounds", type=int, default=ScratchConfig.SIMULATION_ROUNDS)
    p.add_argument("--currency", choices=ScratchConfig.CURRENCIES, default=None)
    p.set_defaults(func=_cmd_simulate)

    p = sub.add_parser("verify", help="Audit a card's commitment hash and replay its grid")
    p.add_argument("instance_id")
    p.set_defaults(func=_cmd_verify)

    sub.add_parser("expire", help="Expire overdue cards").set_defaults(func=_cmd_expire)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        args.func(args)
    except ScratchCardError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)


if __name__ == "__main__":
    main()
