"""Main entry point for the mention bot."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .app import MentionBotApp
from .config import Config, load_config
from .errors import ConfigurationError
from .pid_manager import DEFAULT_PID_FILE, PidManager

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(verbose: bool = False, level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging for the application."""
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=5))

        error_handler = RotatingFileHandler(
            log_path.with_name(f"{log_path.stem}-error{log_path.suffix}"),
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
        )
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


async def run_daemon(config: Config, pid_manager: PidManager, logger: logging.Logger) -> int:
    """Start the bot and keep it running until SIGTERM or SIGINT."""
    app = MentionBotApp(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    pid_manager.write_pid_file()
    try:
        await app.start()
        await stop_event.wait()
        logger.info("Received shutdown signal, stopping...")
        return 0
    finally:
        await app.stop()
        pid_manager.remove_pid_file()


async def cmd_start(args, config: Config, logger: logging.Logger) -> int:
    pid_manager = PidManager(args.pid_file)
    status = pid_manager.get_daemon_status()
    if status.is_running:
        print(f"❌ Claude Bot is already running (PID: {status.pid})")
        return 1
    if status.is_stale:
        pid_manager.remove_pid_file()

    if args.daemon:
        logger.info("Starting Claude Bot as daemon...")

    return await run_daemon(config, pid_manager, logger)


async def cmd_run_once(args, config: Config, logger: logging.Logger) -> int:
    app = MentionBotApp(config)
    ok = await app.run_once()
    if app.last_summary is not None:
        logger.info(
            "Processed %d/%d mention(s)",
            app.last_summary.succeeded,
            app.last_summary.attempted,
        )
    return 0 if ok else 1


async def cmd_status(args, config: Config, logger: logging.Logger) -> int:
    app = MentionBotApp(config)
    try:
        await app.db.initialize()
        status = await app.get_status()
    finally:
        await app.db.close()
        await app.github.close()

    daemon = PidManager(args.pid_file).get_daemon_status()
    status["daemon"] = {"is_running": daemon.is_running, "pid": daemon.pid, "pid_file": str(daemon.pid_file)}
    print(json.dumps(status, indent=2, default=str))
    return 0


async def cmd_ps(args, config: Optional[Config], logger: logging.Logger) -> int:
    status = PidManager(args.pid_file).get_daemon_status()
    print("📊 Claude Bot Daemon Status:")
    print(f"- Running: {'✅ Yes' if status.is_running else '❌ No'}")
    print(f"- PID: {status.pid or 'N/A'}")
    print(f"- PID File: {status.pid_file}")
    if status.is_stale:
        print("⚠️  Warning: PID file exists but process not found (stale PID file)")
    return 0


async def cmd_stop(args, config: Optional[Config], logger: logging.Logger) -> int:
    print("🛑 Stopping Claude Bot daemon...")
    if await PidManager(args.pid_file).stop_daemon():
        print("✅ Claude Bot daemon stopped successfully")
        return 0
    print("❌ Failed to stop daemon or daemon was not running")
    return 1


async def cmd_setup(args, config: Config, logger: logging.Logger) -> int:
    Path("./logs").mkdir(parents=True, exist_ok=True)
    Path(config.database.backup_dir).expanduser().mkdir(parents=True, exist_ok=True)

    app = MentionBotApp(config)
    try:
        await app.initialize()
    finally:
        await app.db.close()
        await app.github.close()

    print("\n✅ Claude Bot setup completed!")
    print(f"- Repository: {config.github.repository}")
    print(f"- Detection interval: {config.cron.detection_interval}")
    print(f"- Daily token limit: {config.claude.daily_token_limit}")
    print(f"- Mention patterns: {', '.join(config.mention.patterns)}")
    return 0


async def cmd_test_config(args, config: Config, logger: logging.Logger) -> int:
    print("Configuration loaded:")
    print(f"- GitHub: {config.github.repository}")
    print(f"- Database: {config.database.path}")
    print(f"- Mention patterns: {', '.join(config.mention.patterns)}")

    app = MentionBotApp(config)
    try:
        repo_info = await app.github.get_repository_info()
        print("\n✅ GitHub connection successful:")
        print(f"- Repository: {repo_info['full_name']}")
        print(f"- Language: {repo_info['language']}")

        await app.db.initialize()
        stats = await app.store.get_today_stats()
        print("\n✅ Database connection successful")
        print(f"- Today's stats: {stats.to_dict() if stats else 'No data yet'}")
    finally:
        await app.db.close()
        await app.github.close()

    print("\n🎉 All tests passed! Claude Bot is ready to use.")
    return 0


COMMANDS = {
    "start": cmd_start,
    "run-once": cmd_run_once,
    "status": cmd_status,
    "ps": cmd_ps,
    "stop": cmd_stop,
    "setup": cmd_setup,
    "test-config": cmd_test_config,
}
# Commands that only look at the PID file
NO_CONFIG_COMMANDS = {"ps", "stop"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mention-bot",
        description="Claude Code mention detection and automation for GitHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s start                 # Run the scheduler in the foreground
  %(prog)s -c bot.yaml run-once  # Single detection cycle with a YAML config
  %(prog)s status                # Today's statistics and configuration
  %(prog)s stop                  # Stop a running daemon
        """,
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file; environment variables are used if it does not exist",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose/debug logging")
    parser.add_argument(
        "--pid-file",
        default=DEFAULT_PID_FILE,
        help=f"PID file location (default: {DEFAULT_PID_FILE})",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="command")
    start = subparsers.add_parser("start", help="Start the bot daemon")
    start.add_argument("-d", "--daemon", action="store_true", help="Run as daemon")
    subparsers.add_parser("run-once", help="Run a single detection cycle")
    subparsers.add_parser("status", help="Show current status")
    subparsers.add_parser("ps", help="Show daemon process status")
    subparsers.add_parser("stop", help="Stop the bot daemon")
    subparsers.add_parser("setup", help="Set up the database and verify GitHub access")
    subparsers.add_parser("test-config", help="Test configuration and connections")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    config: Optional[Config] = None
    if args.command not in NO_CONFIG_COMMANDS:
        try:
            config = load_config(args.config)
        except (ValidationError, ValueError) as e:
            logger.error("Configuration error: %s", e)
            return 1
        setup_logging(args.verbose or config.system.debug, config.logging.level, config.logging.file)

    try:
        return asyncio.run(COMMANDS[args.command](args, config, logger))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Command %s failed: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
