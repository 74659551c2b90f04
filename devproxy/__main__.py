"""
Run the dev server.

Usage:
    python -m devproxy [--port 5173] [--backend-host localhost] [--backend-port 8787]
"""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from devproxy import vars as settings
from devproxy.router.errors import ConfigError
from devproxy.router.rules import default_rules
from devproxy.server import create_app

logger = logging.getLogger("uvicorn.error")

EXIT_OK = 0
EXIT_BIND_FAILED = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="devproxy",
        description="Serve the front-end pages and forward backend prefixes",
    )
    parser.add_argument("--host", default=settings.DEV_SERVER_HOST)
    parser.add_argument("--port", type=int, default=settings.DEV_SERVER_PORT)
    parser.add_argument(
        "--backend-origin",
        help="Full backend origin, overrides --backend-host/--backend-port",
    )
    parser.add_argument("--backend-scheme", default=settings.DEV_BACKEND_SCHEME)
    parser.add_argument("--backend-host", default=settings.DEV_BACKEND_HOST)
    parser.add_argument("--backend-port", type=int, default=settings.DEV_BACKEND_PORT)
    parser.add_argument("--pages-root", default=settings.PAGES_ROOT)
    parser.add_argument("--public-dir", default=settings.PUBLIC_DIR)
    parser.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["critical", "error", "warning", "info", "debug", "trace"],
    )
    return parser.parse_args(argv)


def backend_origin(args) -> str:
    if args.backend_origin:
        return args.backend_origin.rstrip("/")
    defaults_untouched = (
        args.backend_scheme == settings.DEV_BACKEND_SCHEME
        and args.backend_host == settings.DEV_BACKEND_HOST
        and args.backend_port == settings.DEV_BACKEND_PORT
    )
    if defaults_untouched:
        return settings.DEV_BACKEND_ORIGIN
    return f"{args.backend_scheme}://{args.backend_host}:{args.backend_port}"


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        app = create_app(
            default_rules(origin=backend_origin(args)),
            pages_root=args.pages_root,
            public_dir=args.public_dir,
        )
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid proxy configuration: {e}")
        return EXIT_CONFIG_ERROR

    server = uvicorn.Server(
        uvicorn.Config(app, host=args.host, port=args.port, log_level=args.log_level)
    )
    try:
        server.run()
    except SystemExit:
        # uvicorn exits with 1 when the socket cannot be bound
        return EXIT_BIND_FAILED
    if not server.started:
        logger.error(f"Could not listen on {args.host}:{args.port}")
        return EXIT_BIND_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
