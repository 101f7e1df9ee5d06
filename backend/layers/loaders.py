from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Mapping, Sequence

import duckdb
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from engine.errors import ReferenceLoadError
from geo.crs import WORKING_CRS, crs_key, resolve_crs, to_working_crs
from layers.types import RegionLayer, RegionPolygon

logger = logging.getLogger(__name__)

# RFC 7946: GeoJSON without a crs member is WGS84 lon/lat.
_GEOJSON_DEFAULT_CRS = "OGC:CRS84"
_GEOJSON_SUFFIXES = (".geojson", ".json")


def load_region_layer(
    path: Path,
    *,
    layer_id: str,
    id_property: str,
    name_property: str | None = None,
    source_crs: str | None = None,
) -> RegionLayer:
    """
    Load a polygon layer from a GeoJSON file or a directory of GeoJSON files.

    CRS: declared `source_crs` wins; otherwise the file's legacy `crs` member, then a
    sidecar `<name>.prj` next to that file, then WGS84. Geometries are reprojected to EPSG:4326 here, once.
    """
    files = _region_files(path)
    regions: dict[str, RegionPolygon] = {}
    skipped = 0
    for file in files:
        data = _read_json(file)
        crs = source_crs or _geojson_crs(data) or _sidecar_prj(file) or _GEOJSON_DEFAULT_CRS
        src_key = crs_key(crs)

        features = data.get("features")
        if not isinstance(features, list):
            raise ReferenceLoadError(f"Not a GeoJSON FeatureCollection: {file}")

        for i, feature in enumerate(features):
            geom_json = (feature or {}).get("geometry") or {}
            props = dict((feature or {}).get("properties") or {})
            if geom_json.get("type") not in {"Polygon", "MultiPolygon"}:
                skipped += 1
                continue

            rid = props.get(id_property, (feature or {}).get("id"))
            if rid is None or str(rid).strip() == "":
                raise ReferenceLoadError(
                    f"{file}: feature #{i} has no '{id_property}' identifier"
                )
            rid = str(rid)
            if rid in regions:
                raise ReferenceLoadError(f"{file}: duplicate region id '{rid}'")

            geom = _parse_polygonal(geom_json, where=f"{file} feature '{rid}'")
            try:
                geom = to_working_crs(geom, src_key)
                if not geom.is_valid:
                    geom = geom.buffer(0)
            except GEOSException as err:
                raise ReferenceLoadError(f"{file}: invalid geometry for region '{rid}'") from err
            if geom.is_empty:
                skipped += 1
                continue

            name = props.get(name_property) if name_property else None
            regions[rid] = RegionPolygon(
                id=rid,
                name=str(name) if name is not None else None,
                attrs=props,
                geometry=geom,
                source_crs=src_key,
            )

    if skipped:
        logger.warning(
            "layer %s: skipped %d non-polygon or empty features", layer_id, skipped
        )
    ordered = tuple(regions[k] for k in sorted(regions, key=_region_sort_key))
    logger.info("layer %s: loaded %d regions from %d file(s)", layer_id, len(ordered), len(files))
    return RegionLayer(id=layer_id, regions=ordered, crs=WORKING_CRS)


def load_attribute_table(path: Path, *, key: str) -> dict[str, dict[str, Any]]:
    """
    Read a CSV attribute table (e.g. income by neighbourhood) keyed by `key`.
    """
    if not Path(path).exists():
        raise ReferenceLoadError(f"Attribute table not found: {path}")
    conn = duckdb.connect(database=":memory:")
    try:
        cur = conn.execute("SELECT * FROM read_csv_auto(?, header = true)", [str(path)])
        columns = [str(d[0]) for d in cur.description]
        rows = cur.fetchall()
    except duckdb.Error as err:
        raise ReferenceLoadError(f"Cannot read attribute table {path}: {err}") from err
    finally:
        conn.close()

    if key not in columns:
        raise ReferenceLoadError(f"Attribute table {path} has no '{key}' column")

    out: dict[str, dict[str, Any]] = {}
    for row in rows:
        rec = dict(zip(columns, row))
        k = rec.pop(key)
        if k is None:
            continue
        out[str(k)] = rec
    return out


def join_attributes(
    layer: RegionLayer,
    table: Mapping[str, Mapping[str, Any]],
    *,
    columns: Sequence[str] | None = None,
) -> RegionLayer:
    """
    Left join `table` onto regions by region id.

    Every region is kept; regions without a table row get None for each joined column.
    """
    if columns is None:
        seen: dict[str, None] = {}
        for rec in table.values():
            for c in rec:
                seen.setdefault(c, None)
        columns = list(seen)

    matched = 0
    out: list[RegionPolygon] = []
    for region in layer.regions:
        rec = table.get(region.id)
        if rec is not None:
            matched += 1
        joined = {c: (rec.get(c) if rec is not None else None) for c in columns}
        out.append(replace(region, attrs={**region.attrs, **joined}))

    if matched < len(layer.regions):
        logger.warning(
            "layer %s: %d of %d regions have no attribute row",
            layer.id,
            len(layer.regions) - matched,
            len(layer.regions),
        )
    return replace(layer, regions=tuple(out))


def _region_files(path: Path) -> list[Path]:
    p = Path(path)
    if p.is_dir():
        files = sorted(f for f in p.iterdir() if f.suffix.lower() in _GEOJSON_SUFFIXES)
        if not files:
            raise ReferenceLoadError(f"No GeoJSON files in reference directory: {p}")
        return files
    if p.is_file():
        return [p]
    raise ReferenceLoadError(f"Reference layer not found: {p}")


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as err:
        raise ReferenceLoadError(f"Cannot parse reference layer {path}: {err}") from err
    if not isinstance(data, dict):
        raise ReferenceLoadError(f"Invalid GeoJSON root: {path}")
    return data


def _geojson_crs(data: dict[str, Any]) -> str | None:
    # Pre-RFC 7946 files may carry {"crs": {"type": "name", "properties": {"name": ...}}}.
    crs = data.get("crs") or {}
    name = (crs.get("properties") or {}).get("name") if isinstance(crs, dict) else None
    return str(name) if name else None


def _sidecar_prj(path: Path) -> str | None:
    prj = path.with_suffix(".prj")
    if not prj.is_file():
        return None
    wkt = prj.read_text(encoding="utf-8").strip()
    if not wkt:
        return None
    resolve_crs(wkt)
    return wkt


def _parse_polygonal(geom: dict[str, Any], *, where: str) -> BaseGeometry:
    coords = geom.get("coordinates")
    try:
        if geom.get("type") == "Polygon":
            return _polygon(coords)
        return MultiPolygon([_polygon(p) for p in coords or []])
    except (TypeError, ValueError, IndexError, GEOSException) as err:
        raise ReferenceLoadError(f"{where}: cannot parse geometry") from err


def _polygon(rings: Any) -> Polygon:
    parsed = [_ensure_closed(_to_ring(r)) for r in rings or []]
    if not parsed or len(parsed[0]) < 4:
        raise ValueError("polygon needs an outer ring with at least 3 distinct points")
    holes = [r for r in parsed[1:] if len(r) >= 4]
    return Polygon(parsed[0], holes=holes or None)


def _to_ring(ring: Any) -> list[tuple[float, float]]:
    out: list[tuple[float, float]] = []
    for p in ring or []:
        if not p or len(p) < 2:
            continue
        out.append((float(p[0]), float(p[1])))
    return out


def _ensure_closed(ring: list[tuple[float, float]]) -> list[tuple[float, float]]:
    if not ring:
        return ring
    if ring[0] != ring[-1]:
        return [*ring, ring[0]]
    return ring


def _region_sort_key(region_id: str) -> tuple[int, int, str]:
    # Numeric ids sort numerically, then everything else as text.
    if region_id.isdigit():
        return (0, int(region_id), region_id)
    return (1, 0, region_id)
