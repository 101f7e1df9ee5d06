from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import duckdb

from engine.config import WriteMode
from engine.errors import WindowAppendFailure
from engine.sql import KEY_RANGE_SQL_TEMPLATE
from engine.tables import StageArtifact, fetch_dicts, materialize_rows, quote_ident, sql_str

logger = logging.getLogger(__name__)

_PART_SUFFIX = ".parquet"
_TMP_SUFFIX = ".parquet.tmp"


@dataclass
class SnapshotStore:
    """
    Columnar snapshot: a directory of parquet part files read and written through DuckDB.

    Modes:
    - overwrite: the new part replaces every existing part
    - append: the new part is added next to existing ones (never merge-by-key)

    Appending the same rows twice keeps both copies. Passing a stable `part_name`
    makes a write replace its own earlier part instead, which is how retried
    windows stay idempotent.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def parts(self) -> list[Path]:
        if not self.path.exists():
            return []
        return sorted(p for p in self.path.iterdir() if p.name.endswith(_PART_SUFFIX))

    def is_empty(self) -> bool:
        return not self.parts()

    def source_sql(self) -> str:
        """
        A relation over every part; range predicates on it are pushed down into parquet.
        """
        parts = self.parts()
        if not parts:
            raise FileNotFoundError(f"Snapshot store is empty: {self.path}")
        files = ", ".join(sql_str(str(p)) for p in parts)
        return f"read_parquet([{files}])"

    def key_range(self, key: str = "trip_id") -> tuple[int, int] | None:
        """
        Half-open [min, max + 1) range of `key`, or None for an empty store.
        """
        if self.is_empty():
            return None
        with self._lock:
            lo, hi, n = self.conn.execute(
                KEY_RANGE_SQL_TEMPLATE.format(key=quote_ident(key), source=self.source_sql())
            ).fetchone()
        if not n:
            return None
        return int(lo), int(hi) + 1

    def count(self) -> int:
        if self.is_empty():
            return 0
        with self._lock:
            return int(self.conn.execute(f"SELECT count(*) FROM {self.source_sql()}").fetchone()[0])

    def read_rows(
        self,
        *,
        where: str | None = None,
        params: list[Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict[str, Any]]:
        if self.is_empty():
            return []
        sql = f"SELECT * FROM {self.source_sql()}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        with self._lock:
            return fetch_dicts(self.conn, sql, params)

    def clear(self) -> None:
        for p in self.parts():
            p.unlink(missing_ok=True)

    def write(
        self,
        artifact: StageArtifact | str,
        *,
        mode: WriteMode,
        part_name: str | None = None,
    ) -> Path:
        """
        Write a materialised table as one part. Partial files never become visible.
        """
        table = artifact.table if isinstance(artifact, StageArtifact) else artifact
        name = part_name or f"part-{uuid.uuid4().hex}"
        final = self.path / f"{name}{_PART_SUFFIX}"
        tmp = self.path / f"{name}{_TMP_SUFFIX}"

        with self._lock:
            try:
                self.path.mkdir(parents=True, exist_ok=True)
                self.conn.execute(
                    f"COPY (SELECT * FROM {quote_ident(table)}) TO {sql_str(str(tmp))} (FORMAT PARQUET)"
                )
                os.replace(tmp, final)
                if mode == "overwrite":
                    for p in self.parts():
                        if p != final:
                            p.unlink(missing_ok=True)
            except (duckdb.Error, OSError) as err:
                tmp.unlink(missing_ok=True)
                raise WindowAppendFailure(f"Cannot write {final.name} to {self.path}: {err}") from err

        logger.debug("wrote %s (%s) to %s", final.name, mode, self.path)
        return final

    def write_rows(
        self,
        rows: Sequence[Mapping[str, Any]],
        *,
        mode: WriteMode,
        schema: Sequence[tuple[str, str]] | None = None,
        part_name: str | None = None,
    ) -> Path:
        with self._lock:
            artifact = materialize_rows(
                self.conn, f"_store_rows_{uuid.uuid4().hex[:12]}", rows, schema=schema, stage="write"
            )
            try:
                return self.write(artifact, mode=mode, part_name=part_name)
            finally:
                self.conn.execute(f"DROP TABLE IF EXISTS {quote_ident(artifact.table)}")
