#!/usr/bin/env python3
"""
Operational commands for the RankInAI citation engine
Run from cron (daily / monthly) or by hand (init-db, export).
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'backend'))

from config import configure_logging, get_settings  # noqa: E402
from database import get_engine, get_session_factory, init_database  # noqa: E402
from models import AnalyticsWindow  # noqa: E402
from notifications import DatabaseAlertSink  # noqa: E402
from scan_service import ScanService  # noqa: E402
from scheduled_jobs import run_daily_tasks, run_monthly_tasks  # noqa: E402


def print_header(title: str):
    print("\n" + "=" * 50)
    print(f"RankInAI - {title}")
    print("=" * 50 + "\n")


def cmd_init_db(args) -> int:
    tables = init_database(get_engine())
    print(f"Created/verified {len(tables)} tables: {', '.join(tables)}")
    return 0


def cmd_daily(args) -> int:
    session_factory = get_session_factory()
    summary = run_daily_tasks(session_factory, DatabaseAlertSink(session_factory))
    print(f"Stale products reminded: {summary['stale_products']}")
    return 0


def cmd_monthly(args) -> int:
    session_factory = get_session_factory()
    summary = run_monthly_tasks(session_factory, DatabaseAlertSink(session_factory))
    print(f"Shops recharged: {summary['recharged_shops']}")
    return 0


def cmd_export(args) -> int:
    service = ScanService.from_settings()
    path = service.export_report(args.shop_id, AnalyticsWindow(args.window), args.format)
    print(f"Report written to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='RankInAI citation engine jobs')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Create database tables').set_defaults(func=cmd_init_db)
    subparsers.add_parser('daily', help='Remind shops about stale products').set_defaults(func=cmd_daily)
    subparsers.add_parser('monthly', help='Recharge credits for paid plans').set_defaults(func=cmd_monthly)

    export = subparsers.add_parser('export', help='Export a shop citation report')
    export.add_argument('shop_id', help='Shop id')
    export.add_argument('--window', choices=[w.value for w in AnalyticsWindow], default='30d')
    export.add_argument('--format', choices=['csv', 'pdf'], default='csv')
    export.set_defaults(func=cmd_export)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    print_header(args.command)
    print(f"Environment: {get_settings().environment}")
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
