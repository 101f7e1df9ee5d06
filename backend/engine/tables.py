"""Explicit materialisation of Python rows into DuckDB tables, and back."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import duckdb


@dataclass(frozen=True)
class StageArtifact:
    """
    A materialised stage output: a named DuckDB table with a known schema and row count.
    """

    stage: str
    table: str
    columns: tuple[str, ...]
    rows: int


def quote_ident(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def sql_str(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def duckdb_type_for(values: Iterable[Any]) -> str:
    """
    Narrowest DuckDB column type for a set of Python values (None ignored).
    """
    kinds: set[str] = set()
    for v in values:
        if v is None:
            continue
        if isinstance(v, bool):
            kinds.add("BOOLEAN")
        elif isinstance(v, int):
            kinds.add("BIGINT")
        elif isinstance(v, float):
            kinds.add("DOUBLE")
        else:
            kinds.add("VARCHAR")
    if not kinds:
        return "VARCHAR"
    if len(kinds) == 1:
        return next(iter(kinds))
    if kinds <= {"BIGINT", "DOUBLE"}:
        return "DOUBLE"
    return "VARCHAR"


def materialize_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    rows: Sequence[Mapping[str, Any]],
    *,
    schema: Sequence[tuple[str, str]] | None = None,
    stage: str = "match",
) -> StageArtifact:
    """
    (Re)create temp table `table` and insert `rows`.

    Without an explicit schema, column types are inferred from the values.
    """
    if schema is None:
        names: dict[str, None] = {}
        for r in rows:
            for k in r:
                names.setdefault(k, None)
        schema = [(c, duckdb_type_for(r.get(c) for r in rows)) for c in names]
    if not schema:
        raise ValueError(f"Cannot materialize '{table}' without columns")

    columns = tuple(c for c, _ in schema)
    cols_sql = ", ".join(f"{quote_ident(c)} {t}" for c, t in schema)
    conn.execute(f"CREATE OR REPLACE TEMP TABLE {quote_ident(table)} ({cols_sql})")
    if rows:
        placeholders = ", ".join("?" for _ in columns)
        conn.executemany(
            f"INSERT INTO {quote_ident(table)} VALUES ({placeholders})",
            [tuple(_plain(r.get(c)) for c in columns) for r in rows],
        )
    return StageArtifact(stage=stage, table=table, columns=columns, rows=len(rows))


def fetch_dicts(
    conn: duckdb.DuckDBPyConnection, sql: str, params: list[Any] | None = None
) -> list[dict[str, Any]]:
    cur = conn.execute(sql, params) if params else conn.execute(sql)
    names = [str(d[0]) for d in cur.description]
    return [dict(zip(names, row)) for row in cur.fetchall()]


def table_columns(conn: duckdb.DuckDBPyConnection, sql: str) -> list[str]:
    cur = conn.execute(f"SELECT * FROM ({sql}) LIMIT 0")
    return [str(d[0]) for d in cur.description]


def _plain(value: Any) -> Any:
    # numpy scalars -> Python scalars
    item = getattr(value, "item", None)
    if item is not None and not isinstance(value, (str, bytes)):
        try:
            return item()
        except (TypeError, ValueError):
            return value
    return value
