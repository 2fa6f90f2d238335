"""
SQL construction helpers for the research warehouse.

Values are never spliced into query text directly. Each template declares
the kind of every placeholder it accepts and the renderer quotes or
validates the bound value accordingly:

    literal      single scalar value (string, number, bool, None)
    list         non-empty IN (...) list of scalar values
    identifier   a single column or table name
    identifiers  comma-joined column names
    like         (column, [prefixes]) rendered as an OR-joined LIKE clause
"""

import re
from dataclasses import dataclass, field
from numbers import Number
from typing import Iterable, Iterator, Sequence


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

PARAM_KINDS = {"literal", "list", "identifier", "identifiers", "like"}


def quote_literal(value) -> str:
    """Render a scalar as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, Number):
        return str(value)
    text = str(value)
    if "\x00" in text:
        raise ValueError("NUL bytes are not allowed in SQL literals")
    return "'" + text.replace("'", "''") + "'"


def quote_identifier(name: str) -> str:
    """Validate a table or column name."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def in_list(values: Iterable) -> str:
    """Render values as a de-duplicated ``(a, b, ...)`` list."""
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    if not seen:
        raise ValueError("IN list must contain at least one value")
    return "(" + ", ".join(quote_literal(v) for v in seen) + ")"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def like_any(column: str, patterns: Sequence[str], contains: bool = True) -> str:
    """OR-joined LIKE clause; ``contains`` matches anywhere, else prefix."""
    column = quote_identifier(column)
    patterns = [str(p) for p in patterns if str(p).strip()]
    if not patterns:
        raise ValueError("LIKE clause needs at least one pattern")
    lead = "%" if contains else ""
    clauses = []
    for pattern in patterns:
        escaped = _escape_like(pattern)
        clause = f"{column} LIKE {quote_literal(lead + escaped + '%')}"
        if escaped != pattern:
            clause += " ESCAPE '\\'"
        clauses.append(clause)
    return "(" + " OR ".join(clauses) + ")"


def chunked(values: Sequence, size: int) -> Iterator[list]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError("Chunk size must be positive")
    values = list(values)
    for start in range(0, len(values), size):
        yield values[start:start + size]


@dataclass(frozen=True)
class QueryTemplate:
    """A SQL statement with typed placeholders."""

    sql: str
    params: dict = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        placeholders = set(_PLACEHOLDER_RE.findall(self.sql))
        declared = set(self.params)
        if placeholders != declared:
            raise ValueError(
                f"Template placeholders {sorted(placeholders)} do not match "
                f"declared parameters {sorted(declared)}"
            )
        unknown = {k for k in self.params.values() if k not in PARAM_KINDS}
        if unknown:
            raise ValueError(f"Unknown parameter kinds: {sorted(unknown)}")

    def render(self, **values) -> str:
        missing = set(self.params) - set(values)
        if missing:
            raise KeyError(f"Missing template parameters: {sorted(missing)}")
        extra = set(values) - set(self.params)
        if extra:
            raise KeyError(f"Unexpected template parameters: {sorted(extra)}")

        rendered = {}
        for name, kind in self.params.items():
            value = values[name]
            if kind == "literal":
                rendered[name] = quote_literal(value)
            elif kind == "list":
                if isinstance(value, (str, bytes)):
                    value = [value]
                rendered[name] = in_list(value)
            elif kind == "identifier":
                rendered[name] = quote_identifier(value)
            elif kind == "identifiers":
                if isinstance(value, str):
                    value = [value]
                cols = [quote_identifier(v) for v in value]
                if not cols:
                    raise ValueError(f"Parameter {name!r} needs at least one column")
                rendered[name] = ", ".join(cols)
            elif kind == "like":
                column, patterns = value
                rendered[name] = like_any(column, patterns)

        return _PLACEHOLDER_RE.sub(lambda m: rendered[m.group(1)], self.sql)
