"""CLI for running the service and its maintenance tasks.

Usage:
    python -m recurship.cli serve --port 3000
    python -m recurship.cli sweep
    python -m recurship.cli init-db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from recurship.config import Settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT, force=True)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    """Run the HTTP service with the sweep scheduler."""
    import uvicorn

    from recurship.app import create_app

    uvicorn.run(
        create_app(settings),
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_config=None,
    )


def cmd_sweep(args: argparse.Namespace, settings: Settings) -> None:
    """Run one reconciliation sweep and print its report (for external timers)."""
    from recurship.app import build_services

    async def _run() -> int:
        services = build_services(settings)
        try:
            report = await services.sweep.run()
        finally:
            await services.aclose()
        print(json.dumps(report.to_dict(), indent=2))
        return 1 if report.failed else 0

    sys.exit(asyncio.run(_run()))


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    """Create the Postgres tables if they do not exist."""
    from recurship.store.postgres import PostgresStore

    if not settings.database_url:
        print("ERROR: RECURSHIP_DATABASE_URL is not set", file=sys.stderr)
        sys.exit(1)
    asyncio.run(PostgresStore(settings.database_url).init_schema())
    print("Schema ready")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="recurship",
        description="Recurring charge to shipment reconciliation",
    )
    parser.add_argument("--log-level", help="Override RECURSHIP_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    # serve
    p_serve = sub.add_parser("serve", help="Run the webhook service")
    p_serve.add_argument("--host", help="Bind address")
    p_serve.add_argument("--port", type=int, help="Bind port")
    p_serve.set_defaults(func=cmd_serve)

    # sweep
    p_sweep = sub.add_parser("sweep", help="Run one reconciliation sweep")
    p_sweep.set_defaults(func=cmd_sweep)

    # init-db
    p_init = sub.add_parser("init-db", help="Create database tables")
    p_init.set_defaults(func=cmd_init_db)

    args = parser.parse_args(argv)
    settings = Settings()
    configure_logging(args.log_level or settings.log_level)
    args.func(args, settings)


if __name__ == "__main__":
    main()
