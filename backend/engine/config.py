from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from engine.errors import ConfigError

logger = logging.getLogger(__name__)


WriteMode = Literal["overwrite", "append"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


class EngineConfig(BaseModel):
    """
    Immutable run configuration, built once and passed into the pipeline entry point.

    - partitions: buckets points are hashed into by trip_id before matching
    - tile_width / tile_height: raster tile size in pixels
    - window_size: trip ids per batch window
    - write_mode: "overwrite" clears the enriched-points store at run start; "append" keeps it
    - idempotent_windows: one deterministically named part per window, so a retried
      window replaces its earlier output instead of duplicating it
    - max_window_attempts / retry_wait_s: per-window retry on write failures
    - workers: threads matching partitions in parallel
    - duckdb_threads / memory_limit: DuckDB runtime limits (memory_limit like "4GB")
    - log_level: level set on the engine, geo and layers loggers when a run starts
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    partitions: int = Field(default=8, ge=1)
    tile_width: int = Field(default=256, ge=1)
    tile_height: int = Field(default=256, ge=1)
    window_size: int = Field(default=1_000_000, ge=1)
    write_mode: WriteMode = "append"
    idempotent_windows: bool = False
    max_window_attempts: int = Field(default=3, ge=1)
    retry_wait_s: float = Field(default=0.5, ge=0.0)
    workers: int = Field(default=4, ge=1)
    duckdb_threads: int | None = Field(default=None, ge=1)
    memory_limit: str | None = None
    log_level: LogLevel = "INFO"


class RegionLayerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    path: str
    idProperty: str
    nameProperty: str | None = None
    crs: str | None = None
    # Optional attribute table (CSV) left-joined onto regions.
    attributesPath: str | None = None
    attributesKey: str | None = None
    # Region attributes carried onto points; None means all.
    columns: list[str] | None = None


class RasterLayerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    path: str
    crs: str | None = None
    band: int = Field(default=1, ge=1)
    # Name of a built-in table (e.g. "nlcd_land_cover") or an inline value -> label map.
    classification: str | dict[int, str] | None = None


class ReferencesConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    regions: list[RegionLayerConfig] = Field(default_factory=list)
    rasters: list[RasterLayerConfig] = Field(default_factory=list)


class RunConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    references: ReferencesConfig = Field(default_factory=ReferencesConfig)


def load_config(path: Path) -> RunConfig:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"Cannot read config {path}: {err}") from err
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid config yaml {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config yaml root: {path}")
    try:
        return RunConfig.model_validate(data)
    except ValidationError as err:
        raise ConfigError(f"Invalid config {path}: {err}") from err


def duckdb_threads(config: EngineConfig) -> int:
    if config.duckdb_threads is not None:
        return int(config.duckdb_threads)
    raw = (os.getenv("ENRICH_DUCKDB_THREADS") or "").strip()
    if raw:
        try:
            return max(1, int(raw))
        except ValueError:
            logger.warning("ignoring non-integer ENRICH_DUCKDB_THREADS=%r", raw)
    return max(1, int(os.cpu_count() or 1))
