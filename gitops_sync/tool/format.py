"""Formatting of command output as columns, YAML or JSON."""

from abc import ABC, abstractmethod
from collections.abc import Generator
import json
import sys
from typing import Any, TextIO

import yaml

PADDING = 3


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    return str(value)


def format_columns(
    headers: list[str], rows: list[list[str]]
) -> Generator[str, None, None]:
    """Yield the rows aligned in columns, the last column is not padded."""
    data = [headers] + rows
    widths = [max(len(row[i]) for row in data) for i in range(len(headers))]
    for row in data:
        cells = [value.ljust(width + PADDING) for value, width in zip(row, widths)]
        cells[-1] = row[-1]
        yield "".join(cells).rstrip()


class Formatter(ABC):
    """Writes a list of objects to a stream."""

    @abstractmethod
    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Yield the output lines for the objects."""

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        for line in self.format(data):
            print(line, file=file)


class PrintFormatter(Formatter):
    """A formatter that prints human readable columns."""

    def __init__(self, keys: list[str] | None = None) -> None:
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [[_cell(row.get(key)) for key in keys] for row in data]
        yield from format_columns([key.upper() for key in keys], rows)


class YamlFormatter(Formatter):
    """A formatter that prints one YAML document per object."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        content = yaml.dump_all(data, sort_keys=False, explicit_start=True)
        yield from content.rstrip("\n").split("\n")


class JsonFormatter(Formatter):
    """A formatter that prints a JSON list."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        yield from json.dumps(data, indent=4, sort_keys=False).split("\n")


def get_formatter(output: str, keys: list[str] | None = None) -> Formatter:
    """Return the formatter for an --output value."""
    if output == "yaml":
        return YamlFormatter()
    if output == "json":
        return JsonFormatter()
    return PrintFormatter(keys)
