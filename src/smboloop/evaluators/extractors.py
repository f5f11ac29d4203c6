"""Strategies for pulling the objective value out of an external program's output."""
from __future__ import annotations

import csv
import io
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

from .base import ParseFailure


NUMBER_PATTERN = r"[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eEdD][-+]?\d+)?|[-+]?(?:inf|nan)\b"
"""Numeric literal, including Fortran-style ``1.0D+03`` exponents."""


class Extractor(Protocol):
    """Turn the text of a result artifact into a float."""

    def extract(self, text: str) -> float:
        ...


def parse_number(raw: Any) -> float:
    """Convert a literal to a finite float or raise :class:`ParseFailure`."""

    if isinstance(raw, bool):
        raise ParseFailure(f"boolean {raw!r} is not numeric")
    text = str(raw).strip().replace("D", "e").replace("d", "e")
    try:
        value = float(text)
    except (TypeError, ValueError) as exc:
        raise ParseFailure(f"not a number: {str(raw)[:40]!r}") from exc
    if math.isnan(value) or math.isinf(value):
        raise ParseFailure(f"non-finite value {value!r}")
    return value


@dataclass(frozen=True)
class PatternExtractor:
    """First numeric literal following ``marker``.

    With a custom ``pattern`` the first capture group of its first match is
    used instead and ``marker`` is ignored.
    """

    marker: str | None = None
    pattern: str | None = None

    def __post_init__(self) -> None:
        if self.pattern is not None:
            compiled = re.compile(self.pattern)
            if compiled.groups < 1:
                raise ValueError("extractor pattern must define one capture group")

    def extract(self, text: str) -> float:
        if self.pattern is not None:
            match = re.search(self.pattern, text, flags=re.MULTILINE)
            if match is None:
                raise ParseFailure(f"pattern {self.pattern!r} not found")
            return parse_number(match.group(1))

        if self.marker:
            position = text.find(self.marker)
            if position < 0:
                raise ParseFailure(f"marker {self.marker!r} not found")
            text = text[position + len(self.marker):]
        match = re.search(NUMBER_PATTERN, text, flags=re.IGNORECASE)
        if match is None:
            raise ParseFailure("no numeric literal found")
        return parse_number(match.group(0))


@dataclass(frozen=True)
class KeyValueExtractor:
    """Read ``name = value`` or ``name: value`` lines and return ``field``.

    Lines starting with ``#`` are comments. Later bindings override earlier
    ones. Values are parsed as literals only.
    """

    field: str

    def extract(self, text: str) -> float:
        bindings = parse_bindings(text)
        if self.field not in bindings:
            raise ParseFailure(f"field {self.field!r} not found")
        return parse_number(bindings[self.field])


def parse_bindings(text: str) -> Dict[str, str]:
    bindings: Dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = re.match(r"^([A-Za-z_][\w.\-]*)\s*(?:=|:)\s*(.+?)\s*;?$", stripped)
        if match is None:
            continue
        bindings[match.group(1)] = match.group(2)
    return bindings


@dataclass(frozen=True)
class TableExtractor:
    """Read a fixed-schema table with a header row.

    ``delimiter=None`` splits on runs of whitespace; otherwise the text is
    read with :mod:`csv`. ``row`` indexes data rows, ``-1`` being the last.
    """

    column: str
    row: int = -1
    delimiter: str | None = None

    def extract(self, text: str) -> float:
        lines = [line for line in text.splitlines() if line.strip() and not line.lstrip().startswith("#")]
        if not lines:
            raise ParseFailure("empty table")
        if self.delimiter is None:
            records = [line.split() for line in lines]
        else:
            records = [row for row in csv.reader(io.StringIO("\n".join(lines)), delimiter=self.delimiter)]
        header, rows = [cell.strip() for cell in records[0]], records[1:]
        if self.column not in header:
            raise ParseFailure(f"column {self.column!r} not in header")
        if not rows:
            raise ParseFailure("table has no data rows")
        try:
            record = rows[self.row]
        except IndexError as exc:
            raise ParseFailure(f"row {self.row} out of range") from exc
        index = header.index(self.column)
        if index >= len(record):
            raise ParseFailure(f"row {self.row} is missing column {self.column!r}")
        return parse_number(record[index])


@dataclass(frozen=True)
class JsonExtractor:
    """Follow a dotted ``field`` path into a JSON document."""

    field: str

    def extract(self, text: str) -> float:
        try:
            current: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseFailure(f"invalid JSON: {exc.msg}") from exc
        for part in self.field.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.lstrip("-").isdigit() and -len(current) <= int(part) < len(current):
                current = current[int(part)]
            else:
                raise ParseFailure(f"field {self.field!r} not found")
        return parse_number(current)


EXTRACTORS = {
    "pattern": PatternExtractor,
    "keyvalue": KeyValueExtractor,
    "table": TableExtractor,
    "json": JsonExtractor,
}


def build_extractor(config: Mapping[str, Any]) -> Extractor:
    """Instantiate the extractor described by an ``evaluator.extractor`` section."""

    options = {key: value for key, value in dict(config).items() if value is not None}
    kind = str(options.pop("kind", "pattern")).lower()
    extractor_cls = EXTRACTORS.get(kind)
    if extractor_cls is None:
        raise ValueError(f"Unsupported extractor kind: {kind}")
    return extractor_cls(**options)


__all__ = [
    "EXTRACTORS",
    "Extractor",
    "JsonExtractor",
    "KeyValueExtractor",
    "PatternExtractor",
    "TableExtractor",
    "build_extractor",
    "parse_bindings",
    "parse_number",
]
