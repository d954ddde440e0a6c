"""markgate entry point.

Changes:
  - 2026-10-12: Added generate-key subcommand.
  - 2026-10-11: serve runs uvicorn on the app factory; --dev enables reload.
"""

from __future__ import annotations

import argparse
import logging
import sys

from markgate import __version__
from markgate.config import get_settings
from markgate.logging_setup import setup_logging
from markgate.security.crypto import generate_token

logger = logging.getLogger(__name__)


def run_server(host: str, port: int, dev: bool = False) -> None:
    """Start the HTTP server."""
    import uvicorn

    settings = get_settings()
    logger.info(
        "markgate %s listening on %s:%s (issuer %s)", __version__, host, port, settings.issuer
    )

    if dev:
        uvicorn.run(
            "markgate.api.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            log_level="debug",
        )
    else:
        from markgate.api.app import create_app

        uvicorn.run(create_app(settings), host=host, port=port, log_config=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="markgate",
        description="OAuth 2.1 gateway for MCP clients in front of a bookmark provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  markgate serve                     Start the server on 127.0.0.1:8000
  markgate serve --host 0.0.0.0      Listen on all interfaces
  markgate generate-key              Print a key for MARKGATE_JWT_SIGNING_KEY
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve.add_argument("--dev", action="store_true", help="Auto-reload on code changes")

    keygen = sub.add_parser("generate-key", help="Print a new random secret key")
    keygen.add_argument("--bytes", type=int, default=32, help="Random bytes (default: 32)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "generate-key":
        print(generate_token(args.bytes))
        return 0

    if args.command == "serve":
        setup_logging(level=get_settings().log_level)
        run_server(args.host, args.port, dev=args.dev)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
