"""CLI entry point for atrium-sync."""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import AtriumError
from .models import Message
from .session import SessionCoordinator, SessionMode
from .storage import LocalStorage, MessageCache
from .sync import SyncState


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging for the CLI.

    An explicit ``log_level`` wins over ``verbose``; without either only
    warnings are shown, so command output stays readable.
    """
    if log_level:
        level = LOG_LEVELS[log_level]
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
        )

    logging.basicConfig(level=level, handlers=[handler])
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def format_message(message: Message) -> str:
    timestamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
    return f"[{message.id}] {timestamp} {message.sender}: {message.content}"


def _open_session(config: Config) -> SessionCoordinator:
    storage = LocalStorage(config.storage.db_path)
    storage.connect()
    return SessionCoordinator.from_config(config, storage=storage)


async def _restore_online(session: SessionCoordinator) -> bool:
    """Restore the stored session and wait for the background login."""
    if not await session.restore_session():
        print("Not logged in. Run 'atrium-sync login <username>' first.", file=sys.stderr)
        return False

    if session.restore_task is not None:
        await session.restore_task

    if session.mode is not SessionMode.ONLINE:
        error = session.state.value.last_error or "server unreachable"
        print(f"Offline: {error}", file=sys.stderr)
        return False
    return True


async def _shutdown(session: SessionCoordinator) -> None:
    await session.close()
    await session.client.close()
    session.storage.close()


async def cmd_login(args: argparse.Namespace) -> int:
    """Log in and cache the newest messages."""
    config = load_config(args.config)
    password = args.password or getpass.getpass(f"Password for {args.username}: ")

    session = _open_session(config)
    try:
        error = await session.login(args.username, password)
        if error:
            print(f"Login failed: {error}", file=sys.stderr)
            return 1

        print(f"Logged in as {args.username}")
        print(f"Cached messages: {len(session.engine.messages)}")
        return 0
    finally:
        await _shutdown(session)


async def cmd_logout(args: argparse.Namespace) -> int:
    """Forget the stored identity and cached messages."""
    config = load_config(args.config)
    session = _open_session(config)
    try:
        await session.logout()
        print("Logged out")
        return 0
    finally:
        await _shutdown(session)


async def cmd_register(args: argparse.Namespace) -> int:
    """Create an account."""
    config = load_config(args.config)
    password = args.password or getpass.getpass(f"Password for {args.name}: ")

    session = _open_session(config)
    try:
        error = await session.register(args.name, args.bio, password)
        if error:
            print(f"Registration failed: {error}", file=sys.stderr)
            return 1

        print(f"Registered {args.name}. Log in with 'atrium-sync login {args.name}'.")
        return 0
    finally:
        await _shutdown(session)


async def cmd_status(args: argparse.Namespace) -> int:
    """Show stored session and server reachability."""
    config = load_config(args.config)
    session = _open_session(config)

    try:
        has_identity = await session.restore_session()
        # Status never flips the session online
        await session.close()

        identity = session.identity
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "server": config.server.base_url,
            "user": identity.principal.name if identity else None,
            "unread_watermark": identity.principal.unread_watermark if identity else None,
            "cached_messages": len(session.engine.messages),
            "latest_cached_id": session.engine.latest_id or None,
        }

        try:
            await session.client.get_messages(limit=1)
            status_data["reachable"] = True
        except AtriumError as e:
            status_data["reachable"] = False
            status_data["error"] = str(e)

        if args.json_output:
            print(json.dumps(status_data, indent=2))
        else:
            print("Atrium Sync Status")
            print("==================")
            print(f"Server: {status_data['server']}")
            print(f"  Reachable: {'Yes' if status_data['reachable'] else 'No'}")
            if not status_data["reachable"]:
                print(f"  Error: {status_data['error']}")
            print()
            if has_identity:
                print(f"User: {status_data['user']}")
                print(f"  Read up to: {status_data['unread_watermark']}")
            else:
                print("User: not logged in")
            print(f"Cached messages: {status_data['cached_messages']}")
            if status_data["latest_cached_id"]:
                print(f"  Latest id: {status_data['latest_cached_id']}")

        return 0
    finally:
        await _shutdown(session)


async def cmd_messages(args: argparse.Namespace) -> int:
    """Print cached messages without touching the network."""
    config = load_config(args.config)
    storage = LocalStorage(config.storage.db_path)
    storage.connect()

    try:
        messages = MessageCache(storage, config.messages.max_stored_messages).load()
        for message in messages[-args.limit:]:
            print(format_message(message))
        if not messages:
            print("No cached messages")
        return 0
    finally:
        storage.close()


async def cmd_send(args: argparse.Namespace) -> int:
    """Post a message as the stored user."""
    config = load_config(args.config)
    session = _open_session(config)

    try:
        if not await _restore_online(session):
            return 1

        message, error = await session.send_message(args.content)
        if error:
            print(f"Send failed: {error}", file=sys.stderr)
            return 1

        print(format_message(message))
        return 0
    finally:
        await _shutdown(session)


async def cmd_watch(args: argparse.Namespace) -> int:
    """Follow the message log until interrupted."""
    config = load_config(args.config)
    session = _open_session(config)
    printed_up_to = 0

    def print_new(state: SyncState) -> None:
        nonlocal printed_up_to
        for message in state.messages:
            if message.id > printed_up_to:
                print(format_message(message))
                printed_up_to = message.id

    try:
        if not await session.restore_session():
            print("Not logged in. Run 'atrium-sync login <username>' first.", file=sys.stderr)
            return 1

        print_new(session.engine.state.value)
        session.engine.state.subscribe(print_new)
        session.state.subscribe(lambda s: print(f"-- {s.mode.value} --", file=sys.stderr))

        if session.restore_task is not None:
            await session.restore_task

        stop_event = asyncio.Event()
        try:
            await stop_event.wait()
        except asyncio.CancelledError:
            pass
        return 0
    finally:
        await _shutdown(session)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="atrium-sync",
        description="Offline-first client for the Dialogue Atrium message log",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
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

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Session commands
    login_parser = subparsers.add_parser("login", help="Log in and cache messages")
    login_parser.add_argument("username")
    login_parser.add_argument("-p", "--password", default=None, help="Password (prompted if omitted)")
    login_parser.set_defaults(func=cmd_login)

    logout_parser = subparsers.add_parser("logout", help="Log out and clear cached data")
    logout_parser.set_defaults(func=cmd_logout)

    register_parser = subparsers.add_parser("register", help="Create an account")
    register_parser.add_argument("name")
    register_parser.add_argument("--bio", default="", help="Profile bio")
    register_parser.add_argument("-p", "--password", default=None, help="Password (prompted if omitted)")
    register_parser.set_defaults(func=cmd_register)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show session and server status")
    status_parser.add_argument(
        "--json",
        dest="json_output",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Message commands
    messages_parser = subparsers.add_parser("messages", help="Print cached messages")
    messages_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of newest messages to print (default: 20)",
    )
    messages_parser.set_defaults(func=cmd_messages)

    send_parser = subparsers.add_parser("send", help="Send a message")
    send_parser.add_argument("content")
    send_parser.set_defaults(func=cmd_send)

    watch_parser = subparsers.add_parser("watch", help="Follow new messages")
    watch_parser.set_defaults(func=cmd_watch)

    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
