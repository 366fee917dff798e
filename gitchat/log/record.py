"""Line grammar for the shared chat log.

Each record is a single line:

    [YYYY-MM-DD HH:MM:SS] author: text

Lines that do not follow the grammar are kept as UnparsedLine so they can be
displayed verbatim instead of failing the whole read.
"""

from dataclasses import dataclass
from datetime import datetime

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TIMESTAMP_WIDTH = 19
AUTHOR_SEPARATOR = ": "


@dataclass(frozen=True)
class Record:
    """A single appended chat message."""

    timestamp: datetime
    author: str
    text: str

    def to_line(self) -> str:
        """Serialize to one log line, without the trailing newline."""
        return (
            f"[{self.timestamp.strftime(TIMESTAMP_FORMAT)}] "
            f"{self.author}{AUTHOR_SEPARATOR}{self.text}"
        )


@dataclass(frozen=True)
class ParsedLine:
    record: Record
    raw: str

    @property
    def author(self) -> str | None:
        return self.record.author


@dataclass(frozen=True)
class UnparsedLine:
    raw: str

    @property
    def author(self) -> str | None:
        return None


Entry = ParsedLine | UnparsedLine


def parse_line(line: str) -> Entry:
    """Parse one log line.

    Args:
        line: Raw line, with or without the line terminator.

    Returns:
        ParsedLine when the line follows the record grammar, otherwise
        UnparsedLine carrying the line unchanged (minus the terminator).
    """
    raw = line.rstrip("\r\n")

    # "[" + timestamp + "] "
    header_end = TIMESTAMP_WIDTH + 3
    if len(raw) < header_end or raw[0] != "[" or raw[header_end - 2 : header_end] != "] ":
        return UnparsedLine(raw)

    try:
        timestamp = datetime.strptime(raw[1 : TIMESTAMP_WIDTH + 1], TIMESTAMP_FORMAT)
    except ValueError:
        return UnparsedLine(raw)

    body = raw[header_end:]
    author, sep, text = body.partition(AUTHOR_SEPARATOR)
    if not sep or not author:
        return UnparsedLine(raw)

    return ParsedLine(Record(timestamp=timestamp, author=author, text=text), raw)


def parse_lines(content: str) -> list[Entry]:
    """Parse log content into entries, skipping blank lines."""
    return [parse_line(line) for line in content.splitlines() if line.strip()]
