"""Command line entry point for the Sucol Water System console."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Mapping, Optional, Sequence, Tuple

import httpx

from sucol.api_client import BillingAPIClient, SucolAPIError
from sucol.billing import calculate_bill
from sucol.config import Settings, load_settings
from sucol.money import format_peso
from sucol.notices import NoticeDispatcher
from sucol.notifications import NotificationFeed, NotificationPoller
from sucol.sessions import ROLE_ADMIN

logger = logging.getLogger("sucol.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sucol Water System utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    serve_parser = subparsers.add_parser("serve", help="Start the web console")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the console")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the web console (default: 8000)",
    )

    watch_parser = subparsers.add_parser(
        "watch", help="Poll the admin notification feed and print the unread count"
    )
    watch_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between polls (default: SUCOL_POLL_INTERVAL or 10)",
    )
    watch_parser.add_argument(
        "--ticks",
        type=int,
        default=None,
        help="Stop after this many refreshes instead of running until interrupted",
    )

    subparsers.add_parser(
        "send-notices", help="Send deactivation notices to every overdue resident"
    )

    bill_parser = subparsers.add_parser("bill", help="Preview the bill for a water usage")
    bill_parser.add_argument("cubic", help="Cubic metres used")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "watch", "send-notices", "bill"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _serve(settings: Settings, *, host: str, port: int) -> None:
    from sucol.web import create_app
    import uvicorn

    logger.info("Starting Sucol console on http://%s:%s (API %s)", host, port, settings.api_base_url)
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _admin_credentials(environ: Mapping[str, str]) -> Tuple[str, str]:
    username = environ.get("SUCOL_ADMIN_USERNAME", "").strip()
    password = environ.get("SUCOL_ADMIN_PASSWORD", "")
    if not username or not password:
        raise SystemExit("SUCOL_ADMIN_USERNAME and SUCOL_ADMIN_PASSWORD must be set.")
    return username, password


async def _admin_client(
    settings: Settings,
    environ: Mapping[str, str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BillingAPIClient:
    username, password = _admin_credentials(environ)
    async with BillingAPIClient(
        settings.api_base_url, timeout=settings.api_timeout, transport=transport
    ) as anonymous:
        result = await anonymous.login_staff(username, password)
    if not result.success:
        raise SystemExit(result.message or "Login failed. Check credentials.")
    if result.role != ROLE_ADMIN:
        raise SystemExit("Access denied. This command is for admin only.")
    return BillingAPIClient(
        settings.api_base_url,
        token=result.token,
        timeout=settings.api_timeout,
        transport=transport,
    )


async def _watch(
    settings: Settings,
    environ: Mapping[str, str],
    *,
    interval: Optional[float] = None,
    ticks: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    client = await _admin_client(settings, environ, transport)
    done = asyncio.Event()
    seen = 0

    def report(feed: NotificationFeed) -> None:
        nonlocal seen
        seen += 1
        print(f"{feed.unread_count} unread of {len(feed.items)} notifications")
        if ticks is not None and seen >= ticks:
            done.set()

    async with client:
        poller = NotificationPoller(
            client.list_admin_notifications,
            interval=interval or settings.poll_interval,
            on_refresh=report,
        )
        async with poller:
            await done.wait()


async def _send_notices(
    settings: Settings,
    environ: Mapping[str, str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    client = await _admin_client(settings, environ, transport)
    async with client:
        overdue = await client.list_overdue_users()
        report = await NoticeDispatcher(client.send_deactivation_notice).send_all(overdue)

    for notice in report.sent:
        print(f"sent     {notice.user_id} {notice.name}")
    for notice in report.failed:
        print(f"failed   {notice.user_id} {notice.name}")
    for notice in report.skipped:
        print(f"skipped  {notice.user_id} {notice.name}")
    return 1 if report.failed else 0


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = load_settings()

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
    elif args.command == "bill":
        print(format_peso(calculate_bill(args.cubic, settings.tariff)))
    elif args.command == "watch":
        try:
            asyncio.run(_watch(settings, os.environ, interval=args.interval, ticks=args.ticks))
        except KeyboardInterrupt:
            pass
        except SucolAPIError as exc:
            raise SystemExit(f"Billing API error: {exc.message}") from exc
    elif args.command == "send-notices":
        try:
            code = asyncio.run(_send_notices(settings, os.environ))
        except SucolAPIError as exc:
            raise SystemExit(f"Billing API error: {exc.message}") from exc
        raise SystemExit(code)


if __name__ == "__main__":
    main()
