from __future__ import annotations

import json
import logging
from pathlib import Path

import duckdb
import pytest

from engine.config import load_config
from engine.errors import (
    ConfigError,
    MergeIntegrityError,
    RasterFormatError,
    ReferenceLoadError,
    StageFailure,
)
from engine.runner import run_from_config
from engine.store import SnapshotStore

ZONES = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"LocationID": 1, "zone": "Midtown", "borough": "Manhattan"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[-74.0, 40.7], [-73.9, 40.7], [-73.9, 40.8], [-74.0, 40.8], [-74.0, 40.7]]],
            },
        },
        {
            "type": "Feature",
            "properties": {"LocationID": 2, "zone": "Astoria", "borough": "Queens"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[-73.9, 40.7], [-73.8, 40.7], [-73.8, 40.8], [-73.9, 40.8], [-73.9, 40.7]]],
            },
        },
    ],
}

LAND_COVER_ASC = """ncols 4
nrows 2
xllcorner -74.0
yllcorner 40.7
cellsize 0.05
NODATA_value 255
21 22 41 99
11 23 90 255
"""

CONFIG_YAML = """
engine:
  partitions: 3
  workers: 2
  window_size: 2
  tile_width: 2
  tile_height: 1
  write_mode: {write_mode}
  retry_wait_s: 0
  duckdb_threads: 1
  log_level: {log_level}
references:
  regions:
    - id: zones
      path: zones.geojson
      idProperty: LocationID
      nameProperty: zone
      attributesPath: income.csv
      attributesKey: LocationID
      columns: [borough, median_income]
  rasters:
    - id: land_cover
      path: {raster}
      crs: EPSG:4326
      classification: {classification}
"""


def _workspace(
    tmp_path: Path,
    trip_rows,
    *,
    raster: str = "land_cover.asc",
    write_mode: str = "append",
    classification: str = "nlcd_land_cover",
    log_level: str = "INFO",
):
    (tmp_path / "zones.geojson").write_text(json.dumps(ZONES), encoding="utf-8")
    (tmp_path / "income.csv").write_text("LocationID,median_income\n1,85000\n", encoding="utf-8")
    (tmp_path / "land_cover.asc").write_text(LAND_COVER_ASC, encoding="utf-8")
    (tmp_path / "enrich.yaml").write_text(
        CONFIG_YAML.format(
            raster=raster, write_mode=write_mode, classification=classification, log_level=log_level
        ), encoding="utf-8"
    )

    conn = duckdb.connect()
    try:
        SnapshotStore(path=tmp_path / "trips", conn=conn).write_rows(trip_rows, mode="overwrite")
    finally:
        conn.close()
    return load_config(tmp_path / "enrich.yaml")


def _run(tmp_path: Path, cfg):
    return run_from_config(
        cfg,
        base_dir=tmp_path,
        trips_path=tmp_path / "trips",
        points_path=tmp_path / "points",
        merged_path=tmp_path / "merged",
    )


def _read(path: Path) -> list[dict]:
    conn = duckdb.connect()
    try:
        return SnapshotStore(path=path, conn=conn).read_rows(order_by="trip_id")
    finally:
        conn.close()


def test_end_to_end_enrichment(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows)
    result = _run(tmp_path, cfg)

    assert result.merged_rows == len(trip_rows)
    assert [r.window.label for r in result.windows] == ["[1, 3)", "[3, 5)", "[5, 7)"]
    assert result.stats.points == 12
    assert result.stats.region_misses == {"zones": 1}
    assert result.merged_part is not None and result.merged_part.exists()

    merged = _read(tmp_path / "merged")
    assert [r["trip_id"] for r in merged] == [1, 2, 3, 4, 5, 6]
    assert list(merged[0])[:7] == [
        "trip_id",
        "pickup_latitude",
        "pickup_longitude",
        "dropoff_latitude",
        "dropoff_longitude",
        "fare_amount",
        "passenger_count",
    ]
    assert "pickup_zones_LocationID" not in merged[0]
    assert "pickup_land_cover_code" not in merged[0]

    first = merged[0]
    assert first["fare_amount"] == 12.5
    assert first["pickup_zones_id"] == "1"
    assert first["pickup_zones_name"] == "Midtown"
    assert first["pickup_zones_borough"] == "Manhattan"
    assert first["pickup_zones_median_income"] == 85000
    assert first["pickup_land_cover"] == "Developed, Open Space"
    assert first["dropoff_zones_id"] == "2"
    assert first["dropoff_zones_median_income"] is None
    assert first["dropoff_land_cover"] == "Woody Wetlands"

    third = merged[2]
    assert third["pickup_land_cover"] is None
    assert third["dropoff_zones_id"] is None


def test_rerun_into_append_store_fails_at_merge(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows)
    _run(tmp_path, cfg)

    with pytest.raises(StageFailure) as exc:
        _run(tmp_path, cfg)
    assert exc.value.stage == "merge"
    assert exc.value.window is None
    assert isinstance(exc.value.__cause__, MergeIntegrityError)


def test_rerun_with_overwrite_is_repeatable(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows, write_mode="overwrite")
    first = _run(tmp_path, cfg)
    second = _run(tmp_path, cfg)

    assert first.merged_rows == second.merged_rows == len(trip_rows)
    assert len(_read(tmp_path / "points")) == 12


def test_missing_reference_fails_in_load_stage(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows, raster="missing.asc")
    with pytest.raises(StageFailure) as exc:
        _run(tmp_path, cfg)
    assert exc.value.stage == "load"
    assert isinstance(exc.value.__cause__, ReferenceLoadError)
    assert not (tmp_path / "points").exists()


def test_unsupported_raster_fails_in_load_stage(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows, raster="land_cover.png")
    (tmp_path / "land_cover.png").write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
    with pytest.raises(StageFailure, match="unsupported raster format") as exc:
        _run(tmp_path, cfg)
    assert isinstance(exc.value.__cause__, RasterFormatError)


def test_unknown_classification_fails_in_load_stage(tmp_path: Path, trip_rows):
    cfg = _workspace(tmp_path, trip_rows, classification="no_such_table")
    with pytest.raises(StageFailure, match="no_such_table") as exc:
        _run(tmp_path, cfg)
    assert exc.value.stage == "load"
    assert isinstance(exc.value.__cause__, ConfigError)


@pytest.fixture
def restore_log_levels():
    names = ("engine", "geo", "layers")
    levels = {name: logging.getLogger(name).level for name in names}
    yield names
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


def test_run_applies_configured_log_level(tmp_path: Path, trip_rows, restore_log_levels):
    cfg = _workspace(tmp_path, trip_rows, log_level="DEBUG")
    assert cfg.engine.log_level == "DEBUG"
    _run(tmp_path, cfg)
    for name in restore_log_levels:
        assert logging.getLogger(name).level == logging.DEBUG
