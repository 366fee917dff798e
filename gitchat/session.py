"""Interactive chat session: prompt loop and slash commands."""

import asyncio
import logging
import threading
from typing import Callable

from rich.console import Console
from rich.markup import escape

from .config import ProfileStore
from .log import LogStore
from .presenter import Presenter
from .sync import ReconciliationLoop

logger = logging.getLogger(__name__)


async def read_line(input_func: Callable[[str], str], prompt: str) -> str:
    """Read one line of input without blocking the event loop.

    The read runs on a daemon thread so an idle prompt never holds up
    interpreter shutdown.

    Raises:
        EOFError: When input is closed.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def resolve(line: str | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(line)

    def worker() -> None:
        try:
            line = input_func(prompt)
        except Exception as e:
            loop.call_soon_threadsafe(resolve, None, e)
        else:
            loop.call_soon_threadsafe(resolve, line, None)

    threading.Thread(target=worker, name="gitchat-input", daemon=True).start()
    return await future


class ChatSession:
    """Runs the foreground prompt against a ReconciliationLoop."""

    def __init__(
        self,
        sync_loop: ReconciliationLoop,
        store: LogStore,
        profile: ProfileStore,
        presenter: Presenter,
        input_func: Callable[[str], str] | None = None,
        interval_seconds: float = 10.0,
    ):
        self._sync = sync_loop
        self._store = store
        self._profile = profile
        self._presenter = presenter
        self._input = input_func or Console().input
        self._interval = interval_seconds
        self.author: str | None = profile.get_author_name()

    async def ensure_author(self) -> bool:
        """Ask for a display name on first run.

        Returns:
            False if no usable name was given.
        """
        if self.author:
            self._presenter.show_status(f"Welcome back, {self.author}!", "success")
            return True

        self._presenter.show_status("Welcome to gitchat!", "info")
        name = await read_line(self._input, "[yellow]Enter your display name: [/yellow]")
        try:
            self._profile.set_author_name(name)
        except ValueError as e:
            self._presenter.show_status(f"{e}. Exiting.", "error")
            return False

        self.author = self._profile.get_author_name()
        self._presenter.show_status(f"Welcome, {self.author}! You're ready to chat.", "success")
        return True

    async def run(self) -> int:
        """Run until the user quits or input closes.

        Returns:
            Process exit code.
        """
        if not await self.ensure_author():
            return 1

        self._presenter.show_status("Syncing messages...", "info")
        history = await self._sync.catch_up()
        if not history and self._sync.cursor.position == 0:
            self._presenter.show_status("No messages yet. Be the first to say hello!", "info")

        await self._sync.start()
        self._presenter.show_status(
            f"Auto-syncing every {self._interval:g} seconds. Type /help for commands.", "info"
        )

        try:
            while True:
                try:
                    line = await read_line(self._input, f"[green]{escape(self.author)}[/green]> ")
                except EOFError:
                    break
                if not await self.handle(line):
                    break
        finally:
            await self._sync.stop()

        self._presenter.show_status("Goodbye! 👋", "success")
        return 0

    async def handle(self, line: str) -> bool:
        """Handle one line of input.

        Returns:
            False when the session should end.
        """
        text = line.strip()
        if not text:
            return True

        if not text.startswith("/"):
            await self._send(text)
            return True

        command, _, args = text[1:].partition(" ")
        command = command.lower()
        args = args.strip()

        if command in ("quit", "exit"):
            return False
        elif command == "help":
            self._presenter.show_help()
        elif command == "clear":
            self._presenter.clear()
            self._presenter.show_header()
            self._presenter.show_status(f"Logged in as {self.author}", "info")
        elif command == "refresh":
            self._presenter.show_status("Fetching new messages...", "info")
            await self._sync.refresh()
        elif command == "name":
            self._rename(args)
        elif command == "users":
            await self._show_users()
        else:
            self._presenter.show_status(
                f"Unknown command: /{command}. Type /help for available commands.", "warning"
            )
        return True

    async def _send(self, text: str) -> None:
        self._presenter.show_status("Sending...", "info")
        try:
            await self._sync.send(self.author, text)
        except OSError:
            # Already reported by the sync loop
            pass
        except ValueError as e:
            self._presenter.show_status(str(e), "warning")

    def _rename(self, name: str) -> None:
        if not name:
            self._presenter.show_status("Usage: /name <new_name>", "warning")
            return
        try:
            self._profile.set_author_name(name)
        except ValueError as e:
            self._presenter.show_status(str(e), "warning")
            return
        self.author = self._profile.get_author_name()
        self._presenter.show_status(f"Display name changed to: {self.author}", "success")

    async def _show_users(self) -> None:
        try:
            users = await asyncio.to_thread(self._store.authors)
        except OSError as e:
            self._presenter.show_status(f"Could not read chat log: {e}", "error")
            return
        self._presenter.show_users(users, current=self.author)
