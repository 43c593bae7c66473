"""
Command line entry point

Usage:
    commerce-tracking serve [--host HOST] [--port PORT] [--reload]
    commerce-tracking sync {realtime,hourly,daily,weekly,monthly}
    commerce-tracking init-sheets [--domain DOMAIN ...]
    commerce-tracking test-email
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

import structlog

from commerce_tracking.config import get_settings
from commerce_tracking.config.logging import configure_logging
from commerce_tracking.service import TrackingService
from commerce_tracking.store.initializer import initialize_workbooks
from commerce_tracking.store.schemas import WORKBOOKS

logger = structlog.get_logger(__name__)

JOBS = ["realtime", "hourly", "daily", "weekly", "monthly"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commerce-tracking",
        description="Commerce operational tracking service",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the webhook server")
    serve.add_argument("--host", default=None, help="Bind address (default: WEBHOOK_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: WEBHOOK_PORT)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    sync = commands.add_parser("sync", help="Run one sync job now")
    sync.add_argument("job", choices=JOBS)

    init = commands.add_parser("init-sheets", help="Create every table with its header row")
    init.add_argument(
        "--domain",
        action="append",
        choices=sorted(WORKBOOKS),
        help="Only initialize this workbook (repeatable)",
    )

    commands.add_parser("test-email", help="Check the SMTP connection")
    return parser


def serve(host: Optional[str], port: Optional[int], reload: bool) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "commerce_tracking.main:app",
        host=host or settings.webhook.host,
        port=port or settings.webhook.port,
        reload=reload,
        log_config=None,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )
    return 0


async def run_sync(job: str) -> int:
    service = TrackingService(get_settings())
    try:
        if service.settings.store_backend == "memory":
            await initialize_workbooks(service.stores)
        result = await service.scheduler.run_job(job)
    finally:
        await service.stop_clients()

    if result is None:
        logger.warning("Sync job already running elsewhere", job=job)
        print(json.dumps({"job": job, "skipped": True}))
        return 1
    print(json.dumps({"job": job, **result.to_dict()}, default=str))
    return 0 if result.success else 1


async def init_sheets(domains: Optional[List[str]]) -> int:
    service = TrackingService(get_settings())
    try:
        ensured = await initialize_workbooks(service.stores, domains)
    finally:
        await service.stop_clients()
    print(json.dumps(ensured))
    return 0


async def check_email() -> int:
    service = TrackingService(get_settings())
    try:
        ok = await service.notifier.test_connection()
    finally:
        await service.stop_clients()
    print("SMTP connection OK" if ok else "SMTP connection failed")
    return 0 if ok else 1


def api() -> int:
    """Run the webhook server with the configured host and port"""
    configure_logging(get_settings().monitoring)
    return serve(None, None, False)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().monitoring, log_level=args.log_level)

    if args.command == "serve":
        return serve(args.host, args.port, args.reload)
    if args.command == "sync":
        return asyncio.run(run_sync(args.job))
    if args.command == "init-sheets":
        return asyncio.run(init_sheets(args.domain))
    return asyncio.run(check_email())


if __name__ == "__main__":
    sys.exit(main())
