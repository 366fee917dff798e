"""Shared chat log: line grammar and append-only local storage."""

from .record import Entry, ParsedLine, Record, UnparsedLine, parse_line, parse_lines
from .store import LogStore

__all__ = [
    "Entry",
    "LogStore",
    "ParsedLine",
    "Record",
    "UnparsedLine",
    "parse_line",
    "parse_lines",
]
