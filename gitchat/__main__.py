"""CLI entry point for gitchat."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from rich.console import Console

from .config import Config, ProfileStore, load_config
from .log import LogStore
from .presenter import TerminalPresenter
from .session import ChatSession
from .sync import GitTransport, ReconciliationLoop, RemoteSync


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure logging.

    Without a log file only warnings reach stderr, so background sync
    messages do not break up the chat prompt.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
        log_file: Write logs to this file instead of stderr.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO if log_file else logging.WARNING

    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()

    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _build(config: Config) -> tuple[LogStore, GitTransport, RemoteSync]:
    store = LogStore(config.chat.log_path)
    transport = GitTransport(
        config.chat.repo_path,
        log_file=config.chat.log_file,
        timeout=config.sync.git_timeout_seconds,
    )
    return store, transport, RemoteSync(transport)


def _check_repository(transport: GitTransport, console: Console) -> bool:
    if transport.is_repository():
        return True
    console.print(f"[red]Error: {transport.repo_path} is not a git repository.[/red]")
    console.print("Please clone the repository first or initialize git.")
    return False


async def cmd_chat(args: argparse.Namespace) -> int:
    """Start an interactive chat session."""
    config = load_config(args.config)
    console = Console()
    presenter = TerminalPresenter(console)

    presenter.clear()
    presenter.show_header()

    store, transport, remote = _build(config)
    if not _check_repository(transport, console):
        return 1

    sync_loop = ReconciliationLoop(
        store,
        remote,
        presenter,
        interval_seconds=config.sync.interval_seconds,
    )
    session = ChatSession(
        sync_loop,
        store,
        ProfileStore(config.profile.path),
        presenter,
        input_func=console.input,
        interval_seconds=config.sync.interval_seconds,
    )
    return await session.run()


def cmd_send(args: argparse.Namespace) -> int:
    """Append one message and publish it."""
    config = load_config(args.config)
    console = Console()
    presenter = TerminalPresenter(console)

    store, transport, remote = _build(config)
    if not _check_repository(transport, console):
        return 1

    author = args.name or ProfileStore(config.profile.path).get_author_name()
    if not author:
        presenter.show_status("No display name set. Use --name or run 'gitchat chat' first.", "error")
        return 1

    remote.pull()
    try:
        store.append(author, " ".join(args.message))
    except ValueError as e:
        presenter.show_status(str(e), "error")
        return 1
    except OSError as e:
        presenter.show_status(f"Failed to send message: {e}", "error")
        return 1

    result = remote.push(f"chat: {author} sent a message")
    if not result.ok:
        presenter.show_status(
            "Message saved locally but could not be published. Check your git connection.",
            "error",
        )
        return 1

    presenter.show_status("Message sent", "success")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """Print the chat log."""
    config = load_config(args.config)
    console = Console()
    presenter = TerminalPresenter(console)

    store, transport, remote = _build(config)
    if not args.offline:
        if not _check_repository(transport, console):
            return 1
        if not remote.pull().ok:
            presenter.show_status("Failed to sync messages, showing local copy", "warning")

    try:
        entries = store.read()
    except OSError as e:
        presenter.show_status(f"Could not read chat log: {e}", "error")
        return 1

    if args.limit:
        entries = entries[-args.limit:]

    if not entries:
        presenter.show_status("No messages yet.", "info")
    presenter.show_entries(entries)
    return 0


def cmd_users(args: argparse.Namespace) -> int:
    """List everyone who has chatted."""
    config = load_config(args.config)
    console = Console()
    presenter = TerminalPresenter(console)

    store = LogStore(config.chat.log_path)
    try:
        users = store.authors()
    except OSError as e:
        presenter.show_status(f"Could not read chat log: {e}", "error")
        return 1

    presenter.show_users(users, current=ProfileStore(config.profile.path).get_author_name())
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="gitchat",
        description="Serverless group chat over a shared git repository",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write logs to a file instead of stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Chat command
    chat_parser = subparsers.add_parser("chat", help="Start an interactive chat session")
    chat_parser.set_defaults(func=cmd_chat)

    # Send command
    send_parser = subparsers.add_parser("send", help="Send a single message")
    send_parser.add_argument("message", nargs="+", help="Message text")
    send_parser.add_argument(
        "-n", "--name",
        type=str,
        default=None,
        help="Display name to send as (default: stored profile name)",
    )
    send_parser.set_defaults(func=cmd_send)

    # History command
    history_parser = subparsers.add_parser("history", help="Print the chat log")
    history_parser.add_argument(
        "-l", "--limit",
        type=int,
        default=None,
        help="Only show the last N lines",
    )
    history_parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not pull before printing",
    )
    history_parser.set_defaults(func=cmd_history)

    # Users command
    users_parser = subparsers.add_parser("users", help="List everyone who has chatted")
    users_parser.set_defaults(func=cmd_users)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json, args.log_file)

    # Interactive chat is the default
    if not args.command:
        args.func = cmd_chat

    func = args.func
    try:
        if inspect.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye! 👋")
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
