from __future__ import annotations

from functools import lru_cache
from typing import Any

from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shapely_transform

from engine.errors import ReferenceLoadError

# All matching happens in geographic lon/lat degrees.
WORKING_CRS = "EPSG:4326"


def resolve_crs(value: Any) -> CRS:
    """
    Parse a declared or detected CRS (EPSG code, "EPSG:xxxx", URN, WKT, pyproj CRS).
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ReferenceLoadError("Reference layer has no CRS and none was declared")
    try:
        return CRS.from_user_input(value)
    except CRSError as err:
        raise ReferenceLoadError(f"Unsupported CRS: {value!r}") from err


def crs_key(value: Any) -> str:
    """
    Stable, hashable text form of a CRS (authority code when one exists).
    """
    crs = resolve_crs(value)
    auth = crs.to_authority()
    if auth is not None:
        return f"{auth[0]}:{auth[1]}"
    return crs.to_wkt()


def is_working_crs(value: Any) -> bool:
    # CRS84 and EPSG:4326 differ only in axis order; we always use lon/lat.
    return resolve_crs(value).equals(CRS.from_user_input(WORKING_CRS), ignore_axis_order=True)


@lru_cache(maxsize=32)
def transformer_to_working(source_key: str) -> Transformer:
    return Transformer.from_crs(
        CRS.from_user_input(source_key), CRS.from_user_input(WORKING_CRS), always_xy=True
    )


def to_working_crs(geom: BaseGeometry, source_crs: Any) -> BaseGeometry:
    """
    Reproject a geometry into the working CRS. Called once per geometry at load time.
    """
    if is_working_crs(source_crs):
        return geom
    t = transformer_to_working(crs_key(source_crs))
    return shapely_transform(t.transform, geom)
