from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import duckdb

from engine.config import RunConfig
from engine.context import ExecutionContext, execution_context
from engine.errors import (
    EnrichmentError,
    MergeIntegrityError,
    StageFailure,
    WindowAppendFailure,
)
from engine.log import log_event, set_log_level
from engine.merge import merge_trip_results
from engine.orchestrator import BatchOrchestrator, WindowResult
from engine.pipeline import EnrichmentPlan, MatchStats, prepare_references
from engine.store import SnapshotStore
from layers.load_references import load_references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    windows: list[WindowResult]
    stats: MatchStats
    merged_rows: int
    merged_part: Path | None = None
    columns: tuple[str, ...] = field(default_factory=tuple)


def run_pipeline(
    ctx: ExecutionContext,
    plan: EnrichmentPlan,
    *,
    trips: SnapshotStore,
    points: SnapshotStore,
    merged: SnapshotStore,
    resume_from: int | None = None,
) -> PipelineResult:
    """
    Tile + broadcast references, enrich trips window by window into `points`, then merge
    pickup/dropoff rows into `merged` (overwrite).
    """
    try:
        refs = prepare_references(ctx, plan)
    except ValueError as err:
        raise StageFailure("tile", detail=str(err)) from err

    results = BatchOrchestrator(ctx, refs, source=trips, sink=points).run(resume_from=resume_from)
    stats = MatchStats()
    for r in results:
        stats.update(r.stats)

    if trips.is_empty() or points.is_empty():
        return PipelineResult(windows=results, stats=stats, merged_rows=0)

    try:
        artifact = merge_trip_results(
            ctx,
            trips_sql=f"SELECT * FROM {trips.source_sql()}",
            points_sql=f"SELECT * FROM {points.source_sql()}",
            drop_columns=refs.working_columns(),
        )
    except (MergeIntegrityError, ValueError, duckdb.Error) as err:
        raise StageFailure("merge", detail=str(err)) from err

    try:
        part = merged.write(artifact, mode="overwrite")
    except WindowAppendFailure as err:
        raise StageFailure("write", detail=str(err)) from err

    log_event(
        logger,
        "pipeline finished",
        stage="merge",
        rows_in=stats.points,
        rows_out=artifact.rows,
        **stats.as_dict(),
    )
    return PipelineResult(
        windows=results,
        stats=stats,
        merged_rows=artifact.rows,
        merged_part=part,
        columns=artifact.columns,
    )


def run_from_config(
    config: RunConfig,
    *,
    base_dir: Path,
    trips_path: Path,
    points_path: Path,
    merged_path: Path,
    resume_from: int | None = None,
) -> PipelineResult:
    """
    Entry point: load references, then run inside one scoped execution context.
    """
    set_log_level(config.engine.log_level)
    try:
        plan = load_references(config.references, base_dir=base_dir)
    except EnrichmentError as err:
        log_event(logger, str(err), level=logging.ERROR, stage="load", error_code=err.error_code)
        raise StageFailure("load", detail=str(err)) from err

    with execution_context(config.engine) as ctx:
        return run_pipeline(
            ctx,
            plan,
            trips=SnapshotStore(path=trips_path, conn=ctx.conn),
            points=SnapshotStore(path=points_path, conn=ctx.conn),
            merged=SnapshotStore(path=merged_path, conn=ctx.conn),
            resume_from=resume_from,
        )
