"""Append-only storage for the shared chat log file."""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from .record import AUTHOR_SEPARATOR, Entry, ParsedLine, Record, parse_lines

logger = logging.getLogger(__name__)


class LogStore:
    """Reads and appends records in the local replica of the chat log.

    The file is never rewritten by this class. Appends go through a single
    append-mode write so concurrent readers never observe a partial rewrite.
    """

    def __init__(self, path: str | Path):
        """Initialize the store.

        Args:
            path: Path to the shared log file inside the working copy.
        """
        self.path = Path(path).expanduser()

    def read_text(self) -> str:
        """Read the raw log content.

        Returns:
            File content, or an empty string if the file does not exist yet.

        Raises:
            IOError: If the file exists but cannot be read or decoded.
        """
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except UnicodeDecodeError as e:
            raise IOError(f"Chat log {self.path} is not valid UTF-8: {e}") from e

    def read(self) -> list[Entry]:
        """Read all entries in file order."""
        return parse_lines(self.read_text())

    def append(self, author: str, text: str, now: datetime | None = None) -> Record:
        """Append a new record to the log.

        Args:
            author: Display name of the sender.
            text: Message text.
            now: Timestamp override, mainly for tests.

        Returns:
            The appended Record.

        Raises:
            ValueError: If author or text would not fit on a single line.
            IOError: If the write fails.
        """
        if not author or "\n" in author or "\r" in author or AUTHOR_SEPARATOR in author:
            raise ValueError(f"Invalid author name: {author!r}")
        if "\n" in text or "\r" in text:
            raise ValueError("Message text must be a single line")

        timestamp = (now or datetime.now(timezone.utc)).replace(microsecond=0, tzinfo=None)
        record = Record(timestamp=timestamp, author=author, text=text)
        data = (record.to_line() + "\n").encode("utf-8")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "ab") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        logger.debug(f"Appended record from {author} to {self.path}")
        return record

    def authors(self) -> list[str]:
        """Distinct authors in order of first appearance."""
        seen: dict[str, None] = {}
        for entry in self.read():
            if isinstance(entry, ParsedLine):
                seen.setdefault(entry.record.author, None)
        return list(seen)

    def __len__(self) -> int:
        return len(self.read())
