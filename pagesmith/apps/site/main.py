"""Command-line entry point: ``python -m pagesmith.apps.site.main --site PATH``."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Optional, Sequence

import uvicorn

from pagesmith.core.logging import configure_logging
from pagesmith.core.settings import get_settings

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pagesmith", description="Serve a pagesmith site directory.")
    parser.add_argument("--site", help="Site directory (defaults to SITE_PATH or the current directory)")
    parser.add_argument("--host", help="Interface to bind (defaults to HOST)")
    parser.add_argument("--port", type=int, help="Port to listen on (defaults to PORT)")
    parser.add_argument("--dev", action="store_true", help="Development mode: no page cache headers")
    parser.add_argument("--log-level", help="Log level (defaults to LOG_LEVEL)")
    return parser.parse_args(argv)


def apply_args(args: argparse.Namespace) -> None:
    """Command-line flags override the environment before settings are read."""

    if args.site:
        os.environ["SITE_PATH"] = args.site
    if args.host:
        os.environ["HOST"] = args.host
    if args.port:
        os.environ["PORT"] = str(args.port)
    if args.dev:
        os.environ["ENVIRONMENT"] = "development"
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    get_settings.cache_clear()


def main(argv: Optional[Sequence[str]] = None) -> None:
    apply_args(parse_args(argv))
    settings = get_settings()
    configure_logging(settings)
    logger.info("Server running on http://%s:%d", settings.host, settings.port)
    uvicorn.run(
        "pagesmith.apps.site.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
