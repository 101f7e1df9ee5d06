from __future__ import annotations

from pathlib import Path

from engine.config import RasterLayerConfig, ReferencesConfig, RegionLayerConfig
from engine.errors import ConfigError, ReferenceLoadError
from engine.pipeline import EnrichmentPlan, RasterSpec, RegionSpec
from layers.classify import BUILTIN_TABLES, ClassificationTable
from layers.loaders import join_attributes, load_attribute_table, load_region_layer
from layers.raster import load_raster_layer


def load_references(cfg: ReferencesConfig, *, base_dir: Path) -> EnrichmentPlan:
    """
    Load every configured reference layer from files (paths relative to `base_dir`).
    """
    return EnrichmentPlan(
        regions=tuple(_load_regions(r, base_dir) for r in cfg.regions),
        rasters=tuple(_load_raster(r, base_dir) for r in cfg.rasters),
    )


def _resolve(base_dir: Path, rel: str) -> Path:
    p = Path(rel)
    return p if p.is_absolute() else Path(base_dir) / p


def _load_regions(cfg: RegionLayerConfig, base_dir: Path) -> RegionSpec:
    layer = load_region_layer(
        _resolve(base_dir, cfg.path),
        layer_id=cfg.id,
        id_property=cfg.idProperty,
        name_property=cfg.nameProperty,
        source_crs=cfg.crs,
    )
    if cfg.attributesPath:
        if not cfg.attributesKey:
            raise ConfigError(f"Region layer '{cfg.id}' sets attributesPath without attributesKey")
        table = load_attribute_table(_resolve(base_dir, cfg.attributesPath), key=cfg.attributesKey)
        layer = join_attributes(layer, table)
    columns = tuple(cfg.columns) if cfg.columns is not None else None
    if columns is not None:
        known = set(layer.attribute_names())
        missing = [c for c in columns if c not in known]
        if missing:
            raise ReferenceLoadError(f"Region layer '{cfg.id}' has no attribute(s) {missing}")
    return RegionSpec(layer=layer, columns=columns)


def _load_raster(cfg: RasterLayerConfig, base_dir: Path) -> RasterSpec:
    layer = load_raster_layer(_resolve(base_dir, cfg.path), layer_id=cfg.id, source_crs=cfg.crs)
    return RasterSpec(layer=layer, band=cfg.band, classification=_classification(cfg))


def _classification(cfg: RasterLayerConfig) -> ClassificationTable | None:
    c = cfg.classification
    if c is None:
        return None
    if isinstance(c, str):
        table = BUILTIN_TABLES.get(c)
        if table is None:
            raise ConfigError(
                f"Unknown classification '{c}' for raster '{cfg.id}'. "
                f"Built-in tables: {', '.join(sorted(BUILTIN_TABLES))}"
            )
        return table
    return ClassificationTable.from_mapping(f"{cfg.id}_classes", c)
