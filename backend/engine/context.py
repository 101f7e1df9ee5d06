from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Iterator, TypeVar

import duckdb

from engine.config import EngineConfig, duckdb_threads

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Broadcast(Generic[T]):
    """
    A small, immutable reference value replicated to every worker (region indexes,
    classification tables). Workers only ever read `value`.
    """

    name: str
    value: T


@dataclass
class ExecutionContext:
    """
    Run-scoped handle around one DuckDB connection plus the broadcast references.

    Acquire through `execution_context()`; the connection is closed on every exit path.
    """

    config: EngineConfig
    conn: duckdb.DuckDBPyConnection
    _broadcasts: dict[str, Broadcast[Any]] = field(default_factory=dict, repr=False)
    _closed: bool = field(default=False, repr=False)

    def broadcast(self, name: str, value: T) -> Broadcast[T]:
        if name in self._broadcasts:
            raise ValueError(f"Broadcast '{name}' already registered")
        b = Broadcast(name=name, value=value)
        self._broadcasts[name] = b
        return b

    def broadcast_value(self, name: str) -> Any:
        try:
            return self._broadcasts[name].value
        except KeyError:
            raise KeyError(f"No broadcast named '{name}'") from None

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcasts.clear()
        self.conn.close()


@contextmanager
def execution_context(
    config: EngineConfig | None = None, *, database: str = ":memory:"
) -> Iterator[ExecutionContext]:
    cfg = config or EngineConfig()
    ctx = ExecutionContext(config=cfg, conn=connect(database, cfg))
    try:
        yield ctx
    finally:
        ctx.close()
        logger.debug("execution context closed")


def connect(database: str, config: EngineConfig) -> duckdb.DuckDBPyConnection:
    db_config: dict[str, Any] = {"threads": duckdb_threads(config)}
    if config.memory_limit:
        db_config["memory_limit"] = config.memory_limit
    if database != ":memory:":
        p = Path(database)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(database=database, read_only=False, config=db_config)
