"""Library for formatting command output."""

from collections.abc import Generator
import sys
from typing import Any, TextIO

import yaml

PADDING = 4


def column_format_string(rows: list[list[str]]) -> str:
    """Produce a format string based on max width of columns."""
    widths = [0] * len(rows[0])
    for row in rows:
        for i, value in enumerate(row):
            widths[i] = max(widths[i], len(value))
    return "".join([f"{{:{w + PADDING}}}" for w in widths])


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the header and rows aligned in columns."""
    data = [headers] + rows
    format_string = column_format_string(data)
    for row in data:
        yield format_string.format(*row).rstrip()


class PrintFormatter:
    """A formatter that prints a human readable table."""

    def __init__(self, keys: list[str]) -> None:
        """Initialize the PrintFormatter with the keys to print as columns."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the rows, one line per row."""
        if not data:
            return
        rows = [
            [_single_line(row.get(key)) for key in self._keys] for row in data
        ]
        yield from format_columns([key.upper() for key in self._keys], rows)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        for line in self.format(data):
            print(line, file=file or sys.stdout)


class YamlFormatter:
    """A formatter that prints every object as a YAML document."""

    def format(self, data: list[dict[str, Any]]) -> str:
        return yaml.dump_all(data, sort_keys=False, explicit_start=True)

    def print(self, data: list[dict[str, Any]], file: TextIO | None = None) -> None:
        print(self.format(data), end="", file=file or sys.stdout)


def _single_line(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split("\n"))
