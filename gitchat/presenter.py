"""Terminal rendering for chat entries and status messages.

Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from abc import ABC, abstractmethod
from typing import Iterable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .log import Entry, ParsedLine
from .log.record import TIMESTAMP_FORMAT

AUTHOR_STYLES = ("cyan", "magenta", "yellow", "green", "blue")

STATUS_STYLES = {
    "info": "blue",
    "success": "green",
    "error": "red",
    "warning": "yellow",
}

COMMANDS = [
    ("/refresh", "Manually fetch new messages"),
    ("/clear", "Clear the terminal screen"),
    ("/name <name>", "Change your display name"),
    ("/users", "Show all users who have chatted"),
    ("/help", "Show this help message"),
    ("/quit, /exit", "Exit the chat"),
]


class AuthorPalette:
    """Assigns each author a style on first sighting, cycling through styles."""

    def __init__(self, styles: Iterable[str] = AUTHOR_STYLES):
        self._styles = tuple(styles)
        self._assigned: dict[str, str] = {}

    def style_for(self, author: str) -> str:
        if author not in self._assigned:
            self._assigned[author] = self._styles[len(self._assigned) % len(self._styles)]
        return self._assigned[author]


class Presenter(ABC):
    """Receives everything the chat wants to show to the user."""

    @abstractmethod
    def show_entries(self, entries: list[Entry]) -> None:
        """Show newly surfaced log entries, in log order."""
        pass

    @abstractmethod
    def show_status(self, message: str, level: str = "info") -> None:
        """Show a status line. Level is info, success, warning or error."""
        pass

    @abstractmethod
    def show_users(self, users: list[str], current: str | None = None) -> None:
        """Show the known author set."""
        pass

    def show_header(self) -> None:
        pass

    def show_help(self) -> None:
        pass

    def clear(self) -> None:
        pass


class TerminalPresenter(Presenter):
    """Presenter that prints to a rich Console."""

    def __init__(self, console: Console | None = None, palette: AuthorPalette | None = None):
        self.console = console or Console()
        self.palette = palette or AuthorPalette()

    def format_entry(self, entry: Entry) -> str:
        if not isinstance(entry, ParsedLine):
            return escape(entry.raw)

        record = entry.record
        style = self.palette.style_for(record.author)
        return (
            f"[dim]\\[{record.timestamp.strftime(TIMESTAMP_FORMAT)}][/dim] "
            f"[bold {style}]{escape(record.author)}[/bold {style}]: {escape(record.text)}"
        )

    def show_entries(self, entries: list[Entry]) -> None:
        for entry in entries:
            self.console.print(self.format_entry(entry), highlight=False)

    def show_status(self, message: str, level: str = "info") -> None:
        style = STATUS_STYLES.get(level, "blue")
        self.console.print(
            f"[{style} dim]\\[{level.upper()}][/{style} dim] {escape(message)}",
            highlight=False,
        )

    def show_users(self, users: list[str], current: str | None = None) -> None:
        if not users:
            self.show_status("No users have chatted yet", "info")
            return

        self.console.print("\n[bold cyan]Users who have chatted:[/bold cyan]")
        for user in users:
            style = self.palette.style_for(user)
            you = " [dim](you)[/dim]" if user == current else ""
            self.console.print(f"  [{style}]• {escape(user)}[/{style}]{you}", highlight=False)
        self.console.print()

    def show_header(self) -> None:
        self.console.print(
            Panel.fit(
                "[bold]gitchat[/bold]\nType /help for commands • Messages sync via git",
                style="bold white on blue",
            )
        )

    def show_help(self) -> None:
        self.console.print("\n[bold cyan]Available Commands:[/bold cyan]")
        for command, description in COMMANDS:
            self.console.print(f"[yellow]{escape(command):<16}[/yellow] - {description}")
        self.console.print()

    def clear(self) -> None:
        self.console.clear()
