#!/usr/bin/env python3
"""Cancel stale partner reservations and expire finished leases.

Meant to run from cron every few minutes next to the Partner Service.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from datetime import timedelta

import httpx

from services.common import ServiceSettings, configure_logging, dispose_engines, get_session_factory, resolve_database_url
from services.partner_service.app.main import DEFAULT_DATABASE_URL
from services.partner_service.app.processors import build_processors
from services.partner_service.app.sweep import BookingSweeper


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Release stale partner slot reservations and lapsed leases")
    parser.add_argument(
        "--database-url",
        default=os.getenv("SERVICE_DATABASE_URL"),
        help="Partner Service database (default: SERVICE_DATABASE_URL or the local SQLite file)",
    )
    parser.add_argument(
        "--grace-minutes",
        type=int,
        default=None,
        help="Minutes an unpaid reservation may stay pending (default: SERVICE_PARTNER_PENDING_GRACE_MINUTES)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the bookings that would be released without touching them",
    )
    parser.add_argument(
        "--keep-sessions",
        action="store_true",
        help="Do not ask payment providers to close the sessions of canceled reservations",
    )
    return parser.parse_args()


async def main_async() -> int:
    args = parse_args()
    overrides: dict[str, object] = {"app_name": "partner-sweep"}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.grace_minutes is not None:
        overrides["partner_pending_grace_minutes"] = args.grace_minutes
    settings = ServiceSettings().model_copy(update=overrides)
    configure_logging(settings)

    session_factory = get_session_factory(resolve_database_url(settings, DEFAULT_DATABASE_URL))
    grace = timedelta(minutes=settings.partner_pending_grace_minutes)
    http_client: httpx.AsyncClient | None = None
    registry = None
    try:
        if not args.dry_run and not args.keep_sessions:
            http_client = httpx.AsyncClient(timeout=settings.payment_timeout_seconds)
            registry = build_processors(settings, http_client=http_client)
        sweeper = BookingSweeper(session_factory, grace=grace, processors=registry)
        if args.dry_run:
            stale, lapsed = await sweeper.candidates()
            report: dict[str, object] = {"dry_run": True, "stale": stale, "lapsed": lapsed}
        else:
            report = {"dry_run": False, **(await sweeper.run()).as_dict()}
    finally:
        if registry is not None:
            await registry.aclose()
        if http_client is not None:
            await http_client.aclose()
        await dispose_engines()

    print(json.dumps(report, indent=2, sort_keys=True))
    return 0


def main() -> None:
    try:
        exit_code = asyncio.run(main_async())
    except Exception as exc:
        print(json.dumps({"error": str(exc)}))
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
