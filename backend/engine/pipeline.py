"""
Enrichment stages: broadcast references, split trips into points, match and classify.

Every stage returns a concrete value (prepared references, enriched points plus
stats); nothing is evaluated lazily behind the caller's back.
"""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from engine.context import ExecutionContext
from engine.partition import partition_records
from engine.tables import duckdb_type_for
from geo.aoi import bbox_of_points
from geo.index import RegionIndex, build_region_index
from geo.ops import sample_raster
from geo.tiles import TileIndex, build_tile_index, iter_tiles
from layers.classify import ClassificationTable
from layers.types import EnrichedPoint, PointRecord, RasterLayer, RegionLayer

logger = logging.getLogger(__name__)

POINT_SCHEMA: tuple[tuple[str, str], ...] = (
    ("trip_id", "BIGINT"),
    ("latitude", "DOUBLE"),
    ("longitude", "DOUBLE"),
    ("is_pickup", "TINYINT"),
)


@dataclass(frozen=True)
class RegionSpec:
    layer: RegionLayer
    # Region attributes carried onto points; None carries all of them.
    columns: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RasterSpec:
    layer: RasterLayer
    band: int = 1
    classification: ClassificationTable | None = None


@dataclass(frozen=True)
class EnrichmentPlan:
    regions: tuple[RegionSpec, ...] = ()
    rasters: tuple[RasterSpec, ...] = ()


@dataclass(frozen=True)
class PreparedRegions:
    index: RegionIndex
    columns: tuple[str, ...]
    schema: tuple[tuple[str, str], ...]

    @property
    def layer_id(self) -> str:
        return self.index.layer_id


@dataclass(frozen=True)
class PreparedRaster:
    layer_id: str
    tiles: TileIndex
    band: int
    value_type: str
    classification: ClassificationTable | None = None

    @property
    def value_column(self) -> str:
        # Classified rasters keep the raw code as a working column next to the label.
        return f"{self.layer_id}_code" if self.classification is not None else self.layer_id

    @property
    def label_column(self) -> str | None:
        return self.layer_id if self.classification is not None else None

    @property
    def schema(self) -> tuple[tuple[str, str], ...]:
        if self.classification is None:
            return ((self.value_column, self.value_type),)
        return ((self.value_column, self.value_type), (self.layer_id, "VARCHAR"))


@dataclass(frozen=True)
class PreparedReferences:
    regions: tuple[PreparedRegions, ...] = ()
    rasters: tuple[PreparedRaster, ...] = ()

    def schema(self) -> list[tuple[str, str]]:
        out = list(POINT_SCHEMA)
        for reg in self.regions:
            out.extend(reg.schema)
        for ras in self.rasters:
            out.extend(ras.schema)
        return out

    def working_columns(self) -> list[str]:
        return [r.value_column for r in self.rasters if r.classification is not None]


@dataclass
class MatchStats:
    """
    Data-quality counters. Misses are expected outcomes, not errors:
    - region_misses / raster_misses: point outside every polygon / tile (null attributes)
    - class_misses: sampled value not in the classification table ("Unknown")
    """

    points: int = 0
    region_misses: Counter = field(default_factory=Counter)
    raster_misses: Counter = field(default_factory=Counter)
    class_misses: Counter = field(default_factory=Counter)

    def update(self, other: "MatchStats") -> None:
        self.points += other.points
        self.region_misses.update(other.region_misses)
        self.raster_misses.update(other.raster_misses)
        self.class_misses.update(other.class_misses)

    def as_dict(self) -> dict[str, Any]:
        return {
            "points": self.points,
            "region_misses": dict(self.region_misses),
            "raster_misses": dict(self.raster_misses),
            "class_misses": dict(self.class_misses),
        }


def prepare_references(ctx: ExecutionContext, plan: EnrichmentPlan) -> PreparedReferences:
    """
    Build region indexes and tile indexes once per run.

    Region indexes and classification tables are broadcast; tile indexes are pruned
    per partition to the tiles overlapping that partition's points.
    """
    cfg = ctx.config
    regions: list[PreparedRegions] = []
    for spec in plan.regions:
        columns = spec.columns if spec.columns is not None else tuple(spec.layer.attribute_names())
        lid = spec.layer.id
        schema = [(f"{lid}_id", "VARCHAR"), (f"{lid}_name", "VARCHAR")]
        for c in columns:
            schema.append(
                (f"{lid}_{c}", duckdb_type_for(r.attrs.get(c) for r in spec.layer.regions))
            )
        index = ctx.broadcast(f"regions:{lid}", build_region_index(spec.layer)).value
        regions.append(PreparedRegions(index=index, columns=tuple(columns), schema=tuple(schema)))

    rasters: list[PreparedRaster] = []
    for spec in plan.rasters:
        layer = spec.layer
        if spec.band < 1 or spec.band > layer.band_count:
            raise ValueError(f"Raster '{layer.id}' has no band {spec.band}")
        tiles = build_tile_index(
            iter_tiles(layer, tile_width=cfg.tile_width, tile_height=cfg.tile_height)
        )
        table = spec.classification
        if table is not None:
            table = ctx.broadcast(f"classification:{layer.id}", table).value
        rasters.append(
            PreparedRaster(
                layer_id=layer.id,
                tiles=tiles,
                band=spec.band,
                value_type=_raster_value_type(layer),
                classification=table,
            )
        )
        logger.info(
            "raster %s: %d tiles of up to %dx%d px",
            layer.id,
            len(tiles),
            cfg.tile_width,
            cfg.tile_height,
        )

    _check_unique_columns(regions, rasters)
    return PreparedReferences(regions=tuple(regions), rasters=tuple(rasters))


def split_trips(trips: Iterable[Mapping[str, Any]]) -> list[PointRecord]:
    """
    Two role-tagged points per trip: pickup first, then dropoff.
    """
    out: list[PointRecord] = []
    for t in trips:
        trip_id = int(t["trip_id"])
        out.append(
            PointRecord(
                trip_id=trip_id,
                lat=float(t["pickup_latitude"]),
                lon=float(t["pickup_longitude"]),
                role="pickup",
            )
        )
        out.append(
            PointRecord(
                trip_id=trip_id,
                lat=float(t["dropoff_latitude"]),
                lon=float(t["dropoff_longitude"]),
                role="dropoff",
            )
        )
    return out


def enrich_partition(
    points: Sequence[PointRecord], refs: PreparedReferences
) -> tuple[list[EnrichedPoint], MatchStats]:
    """
    Match one partition of points against every reference layer.

    Pure with respect to `refs`: no shared state is written, so partitions can run in
    parallel.
    """
    stats = MatchStats(points=len(points))
    coords = [(p.lon, p.lat) for p in points]
    values: list[dict[str, Any]] = [{} for _ in points]

    for reg in refs.regions:
        lid = reg.layer_id
        for v, region in zip(values, reg.index.match_many(coords)):
            if region is None:
                stats.region_misses[lid] += 1
                v[f"{lid}_id"] = None
                v[f"{lid}_name"] = None
                for c in reg.columns:
                    v[f"{lid}_{c}"] = None
                continue
            v[f"{lid}_id"] = region.id
            v[f"{lid}_name"] = region.name
            for c in reg.columns:
                v[f"{lid}_{c}"] = region.attrs.get(c)

    extent = bbox_of_points(coords)
    for ras in refs.rasters:
        local = build_tile_index(ras.tiles.tiles_overlapping(extent) if extent else [])
        for p, v in zip(points, values):
            raw = sample_raster(p.lon, p.lat, local, band=ras.band)
            if raw is None:
                stats.raster_misses[ras.layer_id] += 1
            v[ras.value_column] = raw
            if ras.classification is not None:
                if raw is not None and not ras.classification.is_mapped(raw):
                    stats.class_misses[ras.layer_id] += 1
                v[ras.layer_id] = ras.classification.classify(raw)

    return [EnrichedPoint(point=p, values=v) for p, v in zip(points, values)], stats


def enrich_points(
    points: Sequence[PointRecord],
    refs: PreparedReferences,
    *,
    partitions: int,
    workers: int = 1,
) -> tuple[list[EnrichedPoint], MatchStats]:
    """
    Hash-partition points by trip id and match partitions on a thread pool.
    """
    buckets = partition_records(points, partitions)
    return enrich_buckets(list(buckets.values()), refs, workers=workers)


def enrich_buckets(
    buckets: Sequence[Sequence[PointRecord]],
    refs: PreparedReferences,
    *,
    workers: int = 1,
) -> tuple[list[EnrichedPoint], MatchStats]:
    stats = MatchStats()
    out: list[EnrichedPoint] = []
    if workers <= 1 or len(buckets) <= 1:
        results = [enrich_partition(b, refs) for b in buckets]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="enrich") as pool:
            results = list(pool.map(lambda b: enrich_partition(b, refs), buckets))
    for enriched, s in results:
        out.extend(enriched)
        stats.update(s)
    return out, stats


def _raster_value_type(layer: RasterLayer) -> str:
    if np.issubdtype(layer.pixels.dtype, np.integer):
        return "BIGINT"
    if np.issubdtype(layer.pixels.dtype, np.bool_):
        return "BOOLEAN"
    return "DOUBLE"


def _check_unique_columns(
    regions: Sequence[PreparedRegions], rasters: Sequence[PreparedRaster]
) -> None:
    seen = {c for c, _ in POINT_SCHEMA}
    for schema in [r.schema for r in regions] + [r.schema for r in rasters]:
        for c, _ in schema:
            if c in seen:
                raise ValueError(f"Enrichment column '{c}' is produced twice; rename a layer")
            seen.add(c)
