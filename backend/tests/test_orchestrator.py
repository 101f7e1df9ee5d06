from __future__ import annotations

from pathlib import Path

import duckdb
import pytest

from engine.config import EngineConfig
from engine.context import execution_context
from engine.errors import MergeIntegrityError, StageFailure, WindowAppendFailure
from engine.merge import merge_trip_results
from engine.orchestrator import BatchOrchestrator, KeyWindow, plan_windows
from engine.pipeline import PreparedRaster, PreparedReferences, prepare_references
from engine.store import SnapshotStore
from geo.tiles import build_tile_index, iter_tiles


def _config(**overrides) -> EngineConfig:
    base = dict(partitions=3, workers=2, window_size=2, retry_wait_s=0.0, duckdb_threads=1)
    base.update(overrides)
    return EngineConfig(**base)


def _run(tmp_path: Path, plan, trip_rows, cfg: EngineConfig, name: str) -> list[dict]:
    with execution_context(cfg) as ctx:
        trips = SnapshotStore(path=tmp_path / f"{name}_trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / f"{name}_points", conn=ctx.conn)
        BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink).run()
        return sink.read_rows(order_by="trip_id, is_pickup DESC")


def test_plan_windows_covers_range_without_overlap():
    assert plan_windows(0, 7, 3) == [KeyWindow(0, 3), KeyWindow(3, 6), KeyWindow(6, 7)]
    assert plan_windows(5, 5, 3) == []
    with pytest.raises(ValueError):
        plan_windows(0, 10, 0)

    w = KeyWindow(3, 6)
    assert 3 in w and 5 in w and 6 not in w
    assert w.label == "[3, 6)"
    assert w.part_name == "window-3-6"


def test_windowed_run_matches_single_pass(tmp_path: Path, plan, trip_rows):
    windowed = _run(tmp_path, plan, trip_rows, _config(window_size=2), "windowed")
    single = _run(tmp_path, plan, trip_rows, _config(window_size=1_000, partitions=1, workers=1), "single")

    assert len(windowed) == 2 * len(trip_rows)
    assert windowed == single


def test_enriched_points_carry_reference_values(tmp_path: Path, plan, trip_rows):
    rows = _run(tmp_path, plan, trip_rows, _config(), "points")
    by_key = {(r["trip_id"], r["is_pickup"]): r for r in rows}

    pickup = by_key[(1, 1)]
    assert (pickup["latitude"], pickup["longitude"]) == (40.775, -73.975)
    assert pickup["zones_id"] == "1"
    assert pickup["zones_name"] == "Midtown"
    assert pickup["zones_median_income"] == 85000
    assert pickup["land_cover_code"] == 21
    assert pickup["land_cover"] == "Developed, Open Space"

    assert by_key[(2, 0)]["land_cover"] == "Unknown"
    assert by_key[(3, 1)]["land_cover_code"] is None
    assert by_key[(3, 1)]["land_cover"] is None
    outside = by_key[(3, 0)]
    assert outside["zones_id"] is None
    assert outside["zones_borough"] is None
    assert outside["land_cover"] is None


def test_rerunning_a_window_in_plain_append_mode_duplicates_rows(tmp_path: Path, plan, trip_rows):
    with execution_context(_config()) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        orch.run()
        assert sink.count() == 12

        orch.run_window(KeyWindow(1, 3))
        assert sink.count() == 16
        dupes = ctx.conn.execute(
            f"SELECT trip_id, is_pickup, count(*) FROM {sink.source_sql()} "
            "GROUP BY 1, 2 HAVING count(*) > 1 ORDER BY 1, 2 DESC"
        ).fetchall()
        assert dupes == [(1, 1, 2), (1, 0, 2), (2, 1, 2), (2, 0, 2)]

        with pytest.raises(MergeIntegrityError):
            merge_trip_results(
                ctx,
                trips_sql=f"SELECT * FROM {trips.source_sql()}",
                points_sql=f"SELECT * FROM {sink.source_sql()}",
            )


def test_idempotent_windows_replace_their_own_output(tmp_path: Path, plan, trip_rows):
    with execution_context(_config(idempotent_windows=True)) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        results = orch.run()
        assert [r.part.name for r in results] == [
            "window-1-3.parquet",
            "window-3-5.parquet",
            "window-5-7.parquet",
        ]

        orch.run_window(KeyWindow(1, 3))
        assert sink.count() == 12
        assert len(sink.parts()) == 3


def test_overwrite_mode_clears_sink_and_resume_skips_done_windows(tmp_path: Path, plan, trip_rows):
    with execution_context(_config(write_mode="overwrite")) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        orch.run()
        orch.run()
        assert sink.count() == 12

        sink.clear()
        sink.write_rows(_points_for(KeyWindow(1, 3)), mode="append", schema=orch.refs.schema())
        results = orch.run(resume_from=3)
        assert [r.window for r in results] == [KeyWindow(3, 5), KeyWindow(5, 7)]
        assert sink.count() == 12


def _points_for(window: KeyWindow) -> list[dict]:
    return [
        {"trip_id": t, "latitude": 0.0, "longitude": 0.0, "is_pickup": p}
        for t in range(window.lo, window.hi)
        for p in (1, 0)
    ]


def test_empty_source_runs_nothing(tmp_path: Path, plan):
    with execution_context(_config()) as ctx:
        orch = BatchOrchestrator(
            ctx,
            prepare_references(ctx, plan),
            source=SnapshotStore(path=tmp_path / "trips", conn=ctx.conn),
            sink=SnapshotStore(path=tmp_path / "points", conn=ctx.conn),
        )
        assert orch.run() == []


def test_failed_append_is_retried(tmp_path: Path, plan, trip_rows, monkeypatch):
    with execution_context(_config()) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        real_write = sink.write
        calls = []

        def flaky_write(artifact, *, mode, part_name=None):
            calls.append(mode)
            if len(calls) == 1:
                raise WindowAppendFailure("disk full")
            return real_write(artifact, mode=mode, part_name=part_name)

        monkeypatch.setattr(sink, "write", flaky_write)
        result = orch.run_window(KeyWindow(1, 3))

        assert result.attempts == 2
        assert result.rows_in == result.rows_out == 4
        assert sink.count() == 4
        assert ctx.conn.execute(
            "SELECT count(*) FROM duckdb_tables() WHERE table_name LIKE 'enriched_window_%'"
        ).fetchone()[0] == 0


def test_exhausted_retries_report_write_stage_and_window(tmp_path: Path, plan, trip_rows, monkeypatch):
    with execution_context(_config(max_window_attempts=3)) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        def broken_write(artifact, *, mode, part_name=None):
            raise WindowAppendFailure("disk full")

        monkeypatch.setattr(sink, "write", broken_write)
        with pytest.raises(StageFailure) as exc:
            orch.run()

        assert exc.value.stage == "write"
        assert exc.value.window == KeyWindow(1, 3)
        assert "after 3 attempt(s)" in str(exc.value)
        assert isinstance(exc.value.__cause__, WindowAppendFailure)


def test_unreadable_source_fails_in_load_stage(tmp_path: Path, plan):
    with execution_context(_config()) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows([{"trip_id": 1, "fare_amount": 3.0}], mode="overwrite")
        orch = BatchOrchestrator(
            ctx,
            prepare_references(ctx, plan),
            source=trips,
            sink=SnapshotStore(path=tmp_path / "points", conn=ctx.conn),
        )
        with pytest.raises(StageFailure) as exc:
            orch.run()
        assert exc.value.stage == "load"
        assert exc.value.window == KeyWindow(1, 2)


def test_source_scan_error_fails_in_load_stage(tmp_path: Path, plan, trip_rows, monkeypatch):
    with execution_context(_config()) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        orch = BatchOrchestrator(
            ctx,
            prepare_references(ctx, plan),
            source=trips,
            sink=SnapshotStore(path=tmp_path / "points", conn=ctx.conn),
        )

        def broken_scan(key="trip_id"):
            raise duckdb.IOException("parquet footer missing")

        monkeypatch.setattr(trips, "key_range", broken_scan)
        with pytest.raises(StageFailure, match="parquet footer missing") as exc:
            orch.run()
        assert exc.value.stage == "load"
        assert exc.value.window is None


def test_sink_clear_error_fails_in_write_stage(tmp_path: Path, plan, trip_rows, monkeypatch):
    with execution_context(_config(write_mode="overwrite")) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        sink = SnapshotStore(path=tmp_path / "points", conn=ctx.conn)
        orch = BatchOrchestrator(ctx, prepare_references(ctx, plan), source=trips, sink=sink)

        def broken_clear():
            raise PermissionError("read-only file system")

        monkeypatch.setattr(sink, "clear", broken_clear)
        with pytest.raises(StageFailure) as exc:
            orch.run()
        assert exc.value.stage == "write"
        assert isinstance(exc.value.__cause__, PermissionError)
        assert sink.is_empty()


def test_matching_error_fails_in_match_stage(tmp_path: Path, land_cover_layer, trip_rows):
    bad_band = PreparedRaster(
        layer_id="land_cover",
        tiles=build_tile_index(iter_tiles(land_cover_layer)),
        band=2,
        value_type="BIGINT",
    )
    with execution_context(_config()) as ctx:
        trips = SnapshotStore(path=tmp_path / "trips", conn=ctx.conn)
        trips.write_rows(trip_rows, mode="overwrite")
        orch = BatchOrchestrator(
            ctx,
            PreparedReferences(rasters=(bad_band,)),
            source=trips,
            sink=SnapshotStore(path=tmp_path / "points", conn=ctx.conn),
        )
        with pytest.raises(StageFailure, match="stage 'match' failed for trip_id window"):
            orch.run()
