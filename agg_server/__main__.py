"""
Standalone entrypoint for running the aggregator HTTP server.

Usage:
    python -m agg_server [OPTIONS]
    agg-server [OPTIONS]  (after pip install)

Environment Variables:
    AGG_DB_PATH: Registry database path (default: agg_nodes.db)
    AGG_REMOTE_TIMEOUT: Seconds per remote call (default: 10.0)
    AGG_VIEW_CACHE_TTL: Seconds view/job lists stay fresh (default: 30.0)
    AGG_POLL_CACHE_TTL: Seconds console/pipeline results are reused (default: 3.0)
    AGG_JANITOR_INTERVAL: Seconds between cache sweeps (default: 30.0)
"""

import argparse
import logging
import os
import sys

import uvicorn

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="CI node aggregator - one API over many CI servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  AGG_DB_PATH             Registry database path (default: agg_nodes.db)
  AGG_REMOTE_TIMEOUT      Seconds per remote call (default: 10.0)
  AGG_VIEW_CACHE_TTL      Seconds view/job lists stay fresh (default: 30.0)
  AGG_POLL_CACHE_TTL      Seconds console/pipeline results are reused (default: 3.0)
  AGG_JANITOR_INTERVAL    Seconds between cache sweeps (default: 30.0)

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  agg-server

  # Custom database and shorter remote timeout
  agg-server --db-path /var/lib/agg/nodes.db --remote-timeout 5
        """,
    )

    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument(
        "--db-path",
        type=str,
        default=None,
        help="Path to SQLite registry (default: AGG_DB_PATH env or agg_nodes.db)",
    )
    parser.add_argument(
        "--remote-timeout",
        type=float,
        default=None,
        help="Seconds per remote call (default: AGG_REMOTE_TIMEOUT env or 10.0)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def apply_overrides(args: argparse.Namespace) -> None:
    """Export command-line overrides so the app's settings loader sees them."""
    if args.db_path:
        os.environ["AGG_DB_PATH"] = args.db_path
    if args.remote_timeout is not None:
        if args.remote_timeout <= 0:
            logger.warning(
                f"Invalid remote timeout={args.remote_timeout}, keeping configured value"
            )
        else:
            os.environ["AGG_REMOTE_TIMEOUT"] = str(args.remote_timeout)


def main() -> int:
    """
    Main entrypoint for the server.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_overrides(args)

    logger.info(f"Starting aggregator on {args.host}:{args.port}")
    try:
        uvicorn.run(
            "agg_server.app:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
