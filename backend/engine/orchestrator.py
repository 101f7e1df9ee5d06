from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import duckdb
from shapely.errors import GEOSException
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from engine.context import ExecutionContext
from engine.errors import EnrichmentError, StageFailure, WindowAppendFailure
from engine.log import log_event
from engine.partition import partition_expr
from engine.pipeline import MatchStats, PreparedReferences, enrich_buckets
from engine.sql import SPLIT_TRIPS_SQL_TEMPLATE
from engine.store import SnapshotStore
from engine.tables import materialize_rows, quote_ident
from layers.types import PointRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class KeyWindow:
    """Half-open trip id range [lo, hi)."""

    lo: int
    hi: int

    def __contains__(self, key: int) -> bool:
        return self.lo <= int(key) < self.hi

    @property
    def label(self) -> str:
        return f"[{self.lo}, {self.hi})"

    @property
    def part_name(self) -> str:
        # Stable per window: a retried window rewrites the same part.
        return f"window-{self.lo}-{self.hi}"


@dataclass(frozen=True)
class WindowResult:
    window: KeyWindow
    rows_in: int
    rows_out: int
    attempts: int
    stats: MatchStats
    part: Path | None


def plan_windows(lo: int, hi: int, size: int) -> list[KeyWindow]:
    """
    Disjoint windows [lo, lo+size), [lo+size, lo+2*size), ... whose union is [lo, hi).
    """
    if size < 1:
        raise ValueError(f"Window size must be >= 1, got {size}")
    out: list[KeyWindow] = []
    start = int(lo)
    while start < hi:
        end = min(start + int(size), int(hi))
        out.append(KeyWindow(lo=start, hi=end))
        start = end
    return out


class BatchOrchestrator:
    """
    Runs the match/classify pipeline over successive trip id windows.

    Each window reads its own key range from `source`, is fully materialised, then
    appended to `sink`. A failing window can be retried or resumed without touching
    earlier windows. With plain append (idempotent_windows=False) re-running a window
    that already landed duplicates its rows.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        refs: PreparedReferences,
        *,
        source: SnapshotStore,
        sink: SnapshotStore,
    ) -> None:
        self.ctx = ctx
        self.refs = refs
        self.source = source
        self.sink = sink

    def run(
        self,
        *,
        key_range: tuple[int, int] | None = None,
        resume_from: int | None = None,
    ) -> list[WindowResult]:
        cfg = self.ctx.config
        try:
            rng = key_range or self.source.key_range("trip_id")
        except duckdb.Error as err:
            raise StageFailure("load", detail=f"cannot scan {self.source.path}: {err}") from err
        if rng is None:
            logger.warning("source %s is empty; nothing to enrich", self.source.path)
            return []

        windows = plan_windows(rng[0], rng[1], cfg.window_size)
        if cfg.write_mode == "overwrite" and resume_from is None:
            try:
                self.sink.clear()
            except OSError as err:
                raise StageFailure("write", detail=f"cannot clear {self.sink.path}: {err}") from err

        results: list[WindowResult] = []
        for window in windows:
            if resume_from is not None and window.hi <= resume_from:
                continue
            results.append(self.run_window(window))

        log_event(
            logger,
            "windowed enrichment finished",
            stage="write",
            rows_out=sum(r.rows_out for r in results),
            windows=len(results),
        )
        return results

    def run_window(self, window: KeyWindow) -> WindowResult:
        cfg = self.ctx.config
        t0 = time.perf_counter()

        try:
            buckets = self._read_window(window)
        except duckdb.Error as err:
            raise StageFailure("load", window=window, detail=str(err)) from err
        rows_in = sum(len(b) for b in buckets)

        try:
            enriched, stats = enrich_buckets(buckets, self.refs, workers=cfg.workers)
        except (EnrichmentError, ValueError, GEOSException) as err:
            raise StageFailure("match", window=window, detail=str(err)) from err
        _log_misses(window, stats)

        table = f"enriched_window_{window.lo}_{window.hi}"
        try:
            artifact = materialize_rows(
                self.ctx.conn,
                table,
                [e.as_row() for e in enriched],
                schema=self.refs.schema(),
                stage="match",
            )
        except duckdb.Error as err:
            raise StageFailure("match", window=window, detail=str(err)) from err

        attempts = 0
        part_name = window.part_name if cfg.idempotent_windows else None

        @retry(
            stop=stop_after_attempt(cfg.max_window_attempts),
            wait=wait_exponential_jitter(
                initial=cfg.retry_wait_s, max=30.0, jitter=cfg.retry_wait_s
            ),
            retry=retry_if_exception_type(WindowAppendFailure),
            reraise=True,
        )
        def _append() -> Path:
            nonlocal attempts
            attempts += 1
            try:
                return self.sink.write(artifact, mode="append", part_name=part_name)
            except WindowAppendFailure as err:
                log_event(
                    logger,
                    f"append failed: {err}",
                    level=logging.WARNING,
                    stage="write",
                    window=window.label,
                    attempt=attempts,
                    error_code=err.error_code,
                )
                err.window = window
                raise

        try:
            part = _append() if artifact.rows else None
        except WindowAppendFailure as err:
            raise StageFailure(
                "write", window=window, detail=f"{err} (after {attempts} attempt(s))"
            ) from err
        finally:
            self.ctx.conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")

        log_event(
            logger,
            "window enriched",
            stage="write",
            window=window.label,
            rows_in=rows_in,
            rows_out=artifact.rows,
            attempt=attempts,
            duration_ms=round((time.perf_counter() - t0) * 1000.0, 1),
        )
        return WindowResult(
            window=window,
            rows_in=rows_in,
            rows_out=artifact.rows,
            attempts=attempts,
            stats=stats,
            part=part,
        )

    def _read_window(self, window: KeyWindow) -> list[list[PointRecord]]:
        """
        Split the window's trips into points, bucketed by trip id inside DuckDB.
        """
        sql = SPLIT_TRIPS_SQL_TEMPLATE.format(
            source=self.source.source_sql(),
            bucket_expr=partition_expr("trip_id", self.ctx.config.partitions),
        )
        rows = self.ctx.conn.execute(sql, [window.lo, window.hi]).fetchall()
        buckets: dict[int, list[PointRecord]] = {}
        for trip_id, lat, lon, is_pickup, bucket in rows:
            buckets.setdefault(int(bucket), []).append(
                PointRecord.from_row(trip_id, lat, lon, is_pickup)
            )
        return [buckets[k] for k in sorted(buckets)]


def _log_misses(window: KeyWindow, stats: MatchStats) -> None:
    # Points outside reference coverage are data-quality signals, not failures.
    misses = {
        "region_misses": dict(stats.region_misses),
        "raster_misses": dict(stats.raster_misses),
        "class_misses": dict(stats.class_misses),
    }
    if any(misses.values()):
        log_event(
            logger,
            "reference coverage gaps",
            stage="match",
            window=window.label,
            rows_in=stats.points,
            **misses,
        )
