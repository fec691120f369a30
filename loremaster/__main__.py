"""
Loremaster CLI entry point.

Provides command-line interface for running the server and maintenance commands.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from loremaster import __version__
from loremaster.config.logging import get_logger, setup_logging
from loremaster.config.settings import Settings, load_settings


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="loremaster",
        description="AI Game Master session server for virtual tabletop clients",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Loremaster {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser(
        "run",
        help="Run the WebSocket server",
    )
    run_parser.add_argument(
        "--host",
        default=None,
        help="Override the bind address (default: SERVER__HOST from config)",
    )
    run_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override the port (default: SERVER__PORT from config)",
    )

    subparsers.add_parser(
        "config",
        help="Show current configuration",
    )

    cleanup_parser = subparsers.add_parser(
        "cleanup-batches",
        help="Delete completed and vetoed batches older than a number of days",
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Age in days after which finished batches are deleted (default: 30)",
    )

    return parser


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== Loremaster Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nServer: {settings.server.host}:{settings.server.port}")
    logger.info(f"Database: {settings.storage.db_path}")
    logger.info(f"\nLLM Model: {settings.llm.model}")
    logger.info(f"LLM Max Tokens: {settings.llm.max_tokens}")
    logger.info(f"LLM Temperature: {settings.llm.temperature}")
    logger.info(f"Max Tool Rounds: {settings.llm.max_tool_rounds}")
    logger.info(f"Tool Timeout: {settings.tools.timeout_seconds}s")
    logger.info(f"\nHistory Budget: {settings.context.max_history_tokens} tokens")
    logger.info(f"Canon Budget: {settings.context.max_canon_tokens} tokens")
    logger.info(f"Recent Messages Kept: {settings.context.recent_message_count}")
    logger.info(f"Summarization: {'enabled' if settings.context.summarize_enabled else 'disabled'}")

    return 0


async def cmd_run(args, settings: Settings) -> int:
    """Start the WebSocket server and serve until interrupted."""
    logger = get_logger(__name__)

    if args.host:
        settings.server.host = args.host
    if args.port:
        settings.server.port = args.port

    from loremaster.server import LoremasterServer

    try:
        async with LoremasterServer(settings) as server:
            await server.start()
            await server.serve_forever()
    except OSError as e:
        logger.error(f"Could not start server: {e}")
        return 1
    return 0


async def cmd_cleanup_batches(args, settings: Settings) -> int:
    """Delete old finished batches."""
    logger = get_logger(__name__)

    if args.days < 0:
        logger.error("--days must be zero or more")
        return 1

    from loremaster.storage import ConversationStore

    async with ConversationStore(settings.storage.db_path) as store:
        deleted = await store.cleanup_old_batches(args.days)

    logger.info(f"Deleted {deleted} batch(es) older than {args.days} day(s)")
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "run":
        try:
            return asyncio.run(cmd_run(args, settings))
        except KeyboardInterrupt:
            get_logger(__name__).info("Shutting down")
            return 0
    elif args.command == "cleanup-batches":
        return asyncio.run(cmd_cleanup_batches(args, settings))
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
