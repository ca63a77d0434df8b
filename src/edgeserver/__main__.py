"""
=============================================================================
EDGESERVER CLI ENTRY POINT
=============================================================================

    # Everything comes from the environment
    PORT=8080 MATOMO_TOKEN=... python -m edgeserver

    # Local development: no HTTPS redirect, no tracking
    PORT=8080 TRACKING_ENABLED=0 python -m edgeserver --log-level DEBUG

    # Logs for an aggregator
    python -m edgeserver --log-format json

Configuration is 12-factor: the environment is the source of truth (see
edgeserver.config for the variables). A .env file in the working
directory (or the nearest parent holding one) is loaded first; variables
already set in the environment win over it. The command line only overrides
logging, which is handy when debugging a deployed instance.

Exit status 1 when the configuration is invalid or the port cannot be
bound.

=============================================================================
"""

import argparse
import logging
import sys

from dotenv import find_dotenv, load_dotenv

from . import __version__
from .config import EdgeConfig, ConfigError
from .logging_setup import configure_logging
from .server import EdgeServer


logger = logging.getLogger("edgeserver")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edgeserver",
        description="HTTPS redirect, static files and reverse proxy for a personal website",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  PORT (required), HOST, NODE_ENV, STATIC_ROOT, PROXY_BASE, PROXY_TIMEOUT,
  TRACKING_ENABLED, MATOMO_URL, MATOMO_SITE_ID, MATOMO_TOKEN,
  TRACKING_TIMEOUT, LOG_LEVEL, LOG_FORMAT, CACHE_MAX_AGE
        """
    )

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: LOG_LEVEL or INFO)"
    )

    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default=None,
        help="Log line format (default: LOG_FORMAT or text)"
    )

    parser.add_argument(
        "--version", "-v",
        action="version",
        version=f"edgeserver {__version__}"
    )

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # Log config errors even before the configured level is known
    configure_logging(args.log_level or "INFO", args.log_format or "text")

    # Missing .env is fine; real environment variables are not overridden
    load_dotenv(find_dotenv(usecwd=True))

    try:
        config = EdgeConfig.from_env()
        overrides = {}
        if args.log_level:
            overrides["log_level"] = args.log_level
        if args.log_format:
            overrides["log_format"] = args.log_format
        if overrides:
            config = config.with_overrides(**overrides)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(config.log_level, config.log_format)

    try:
        EdgeServer(config).run()
    except OSError as e:
        logger.error(f"Server failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
