"""
Opinions Identity Core Entry Point.

Bootstraps the dependency graph via constructor injection, initialises
the local SQLite schema, and runs one of the maintenance commands.

Usage::

    python main.py serve    # startup sequence, then workers until Ctrl+C
    python main.py sync     # one projection reconciliation pass
    python main.py check    # list identities missing a projection
"""

from __future__ import annotations

import argparse
import atexit
import json
import sys
import threading
from typing import Optional, Sequence

from opinions_identity.bootstrap import Application, build_application
from opinions_identity.config import get_config
from opinions_identity.logger import StructuredLogger, get_logger


def _serve(app: Application, logger: StructuredLogger) -> int:
    try:
        app.config.validate_jwt_config()
    except ValueError as exc:
        logger.warning("%s; logins will be refused.", exc)

    app.startup(start_workers=True)
    logger.info("Serving. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupt received, shutting down.")
    return 0


def _sync(app: Application, logger: StructuredLogger) -> int:
    report = app.services["projection_sync_service"].synchronize()
    print(json.dumps(report.model_dump(), indent=2))
    return 1 if report.errors else 0


def _check(app: Application, logger: StructuredLogger) -> int:
    missing = app.services["projection_sync_service"].find_missing()
    print(json.dumps(
        [summary.model_dump(mode="json") for summary in missing], indent=2,
    ))
    if missing:
        logger.warning("%d identities have no projection record.", len(missing))
        return 1
    return 0


_COMMANDS = {
    "serve": _serve,
    "sync": _sync,
    "check": _check,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opinions-identity",
        description="Identity lifecycle and projection synchronizer.",
    )
    parser.add_argument(
        "command",
        choices=sorted(_COMMANDS),
        help="serve: run the workers; sync: reconcile once; "
             "check: report missing projections",
    )
    parser.add_argument(
        "--database",
        metavar="PATH",
        help="override DATABASE_PATH",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Application entry point: wire dependencies and run *command*."""
    args = build_parser().parse_args(argv)
    logger: StructuredLogger = get_logger("main")

    config = get_config()
    if args.database:
        config = config.model_copy(update={"DATABASE_PATH": args.database})

    app = build_application(config=config)
    # DatabaseManager.close() is safe to call multiple times.
    atexit.register(app.db.close)
    try:
        return _COMMANDS[args.command](app, logger)
    finally:
        app.shutdown()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
