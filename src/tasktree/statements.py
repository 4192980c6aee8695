"""
Dynamic INSERT/UPDATE statement builder.

Statements are built from (column, value) pairs with positional ``?``
placeholders; values never enter the SQL text. ``Statement.inline`` renders
a literal form through ``sql_literal`` for logging and diagnostics, and that
serializer is lossless for every string SQLite can store.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Sequence, Tuple
from uuid import UUID

from .patch import Patch

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def format_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with microseconds and a Z suffix; sorts lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_now_str() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def to_storage(value: Any) -> Any:
    """Adapt a Python value to the type SQLite stores for it."""
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _quote_text(text: str) -> str:
    # NUL cannot appear inside a SQLite string literal; splice it in with char(0).
    parts = ["'" + part.replace("'", "''") + "'" for part in text.split("\x00")]
    if len(parts) == 1:
        return parts[0]
    return "(" + " || char(0) || ".join(parts) + ")"


def sql_literal(value: Any) -> str:
    """Render a value as a SQLite literal."""
    value = to_storage(value)
    if value is None:
        return "NULL"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot render non-finite float {value!r} as SQL")
        return repr(value)
    if isinstance(value, str):
        return _quote_text(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    raise TypeError(f"Cannot render {type(value).__name__} as SQL literal")


def check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True)
class Statement:
    """SQL text with positional placeholders and their bound values."""

    sql: str
    params: Tuple[Any, ...] = ()

    def inline(self) -> str:
        """Substitute every placeholder with its literal; for logs only."""
        pieces = self.sql.split("?")
        if len(pieces) - 1 != len(self.params):
            raise ValueError(
                f"Statement has {len(pieces) - 1} placeholders but {len(self.params)} params"
            )
        out = [pieces[0]]
        for param, piece in zip(self.params, pieces[1:]):
            out.append(sql_literal(param))
            out.append(piece)
        return "".join(out)


def has_changes(changes: Iterable[Tuple[str, Patch[Any]]]) -> bool:
    return any(not patch.is_absent for _, patch in changes)


def build_update(
    table: str,
    changes: Iterable[Tuple[str, Patch[Any]]],
    where: str = "",
    where_params: Sequence[Any] = (),
) -> Optional[Statement]:
    """
    Build ``UPDATE table SET ... where``.

    Absent fields are skipped, null fields are set to NULL, present fields
    are bound as parameters ahead of ``where_params``. Returns ``None`` when
    no field carries a change.
    """
    assignments = []
    params = []
    for column, patch in changes:
        check_identifier(column)
        if patch.is_absent:
            continue
        if patch.is_null:
            assignments.append(f"{column} = NULL")
        else:
            assignments.append(f"{column} = ?")
            params.append(to_storage(patch.value))

    if not assignments:
        return None

    sql = f"UPDATE {check_identifier(table)} SET {', '.join(assignments)}"
    if where:
        sql = f"{sql} {where}"
    params.extend(to_storage(p) for p in where_params)
    return Statement(sql, tuple(params))


def build_insert(table: str, values: Iterable[Tuple[str, Any]]) -> Statement:
    """
    Build ``INSERT INTO table (...) VALUES (...)``.

    Columns whose value is ``None`` are left out so the column default
    applies.
    """
    columns = []
    params = []
    for column, value in values:
        check_identifier(column)
        if isinstance(value, Patch):
            if not value.is_present:
                continue
            value = value.value
        if value is None:
            continue
        columns.append(column)
        params.append(to_storage(value))

    table = check_identifier(table)
    if not columns:
        return Statement(f"INSERT INTO {table} DEFAULT VALUES")
    placeholders = ", ".join("?" for _ in columns)
    return Statement(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(params),
    )
