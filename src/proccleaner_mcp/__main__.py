"""Entry point for proccleaner-mcp server."""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace

from .cleanup import CleanerConfig, CleanManager, GlobalPolicy, LocalNode
from .server import create_server


def configure_logging() -> None:
    """Configure logging based on environment."""
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Process cleanup MCP Server - kill processes left behind by builds"
    )
    parser.add_argument(
        "--username",
        type=str,
        default=None,
        help="Account whose processes may be killed. "
        "Overrides PROC_CLEANER_USERNAME.",
    )
    parser.add_argument(
        "--switched-off",
        action="store_true",
        default=False,
        help="Start with process cleanup globally turned off.",
    )
    parser.add_argument(
        "--verify-timeout",
        type=float,
        default=None,
        help="Seconds to wait for killed processes to disappear (default 5).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between process table polls while verifying (default 0.2).",
    )
    parser.add_argument(
        "--lock-timeout",
        type=float,
        default=None,
        help="Seconds a cleanup waits for another one on the same node (default 300).",
    )
    parser.add_argument(
        "--lister",
        choices=("psutil", "ps"),
        default="psutil",
        help="How the local process table is read.",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> tuple[GlobalPolicy, CleanerConfig]:
    """Combine environment defaults with command line overrides."""
    policy = GlobalPolicy.from_env()
    policy.configure(
        enabled=False if args.switched_off else None,
        username=args.username,
    )

    config = CleanerConfig.from_env()
    overrides = {
        "verify_timeout": args.verify_timeout,
        "poll_interval": args.poll_interval,
        "lock_timeout": args.lock_timeout,
    }
    config = replace(config, **{k: v for k, v in overrides.items() if v is not None})
    return policy, config


async def main() -> None:
    """Main entry point."""
    configure_logging()
    logger = logging.getLogger(__name__)

    args = parse_args()
    policy, config = build_settings(args)

    CleanManager().register_node(LocalNode(lister=args.lister))
    logger.info(
        f"Starting process cleanup MCP Server "
        f"(user: {policy.owner_user()!r}, enabled: {policy.is_enabled()})..."
    )

    mcp = create_server(policy, config)

    try:
        await mcp.run_stdio_async()
    except Exception:
        logger.exception("Server error")
        raise
    finally:
        logger.info("Server stopped")


def run() -> None:
    """Run the server."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
