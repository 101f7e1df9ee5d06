from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np
from rasterio.transform import Affine, array_bounds
from shapely.geometry.base import BaseGeometry

from geo.aoi import BBox
from geo.crs import WORKING_CRS


Role = Literal["pickup", "dropoff"]
ROLES: tuple[Role, ...] = ("pickup", "dropoff")


@dataclass(frozen=True)
class PointRecord:
    """
    One trip endpoint. Every trip yields exactly one pickup and one dropoff point.
    """

    trip_id: int
    lat: float
    lon: float
    role: Role

    @property
    def is_pickup(self) -> int:
        return 1 if self.role == "pickup" else 0

    @classmethod
    def from_row(cls, trip_id: Any, lat: Any, lon: Any, is_pickup: Any) -> "PointRecord":
        role: Role = "pickup" if int(is_pickup) == 1 else "dropoff"
        return cls(trip_id=int(trip_id), lat=float(lat), lon=float(lon), role=role)


@dataclass(frozen=True)
class RegionPolygon:
    id: str
    name: str | None
    attrs: dict[str, Any]
    # Already reprojected to the working CRS; `source_crs` records where it came from.
    geometry: BaseGeometry
    source_crs: str


@dataclass(frozen=True)
class RegionLayer:
    """
    A polygon reference layer (e.g. neighbourhoods).

    Regions are kept in ascending id order; that order is the tie-break when
    overlapping polygons both contain a point.
    """

    id: str
    regions: tuple[RegionPolygon, ...]
    crs: str = WORKING_CRS

    def get(self, region_id: str) -> RegionPolygon | None:
        rid = str(region_id)
        for region in self.regions:
            if region.id == rid:
                return region
        return None

    def attribute_names(self) -> list[str]:
        seen: dict[str, None] = {}
        for region in self.regions:
            for key in region.attrs:
                seen.setdefault(key, None)
        return list(seen)


@dataclass(frozen=True, eq=False)
class RasterLayer:
    """
    A whole raster in the working CRS.

    `pixels` is read-only with shape (bands, rows, cols); the transform maps pixel
    (col, row) to lon/lat with a north-up origin at the upper-left corner.
    """

    id: str
    pixels: np.ndarray
    transform: Affine
    crs: str = WORKING_CRS
    nodata: float | int | None = None
    source_format: str = "memory"

    @property
    def band_count(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def width(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def res(self) -> tuple[float, float]:
        return (abs(float(self.transform.a)), abs(float(self.transform.e)))

    @property
    def bounds(self) -> BBox:
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return BBox(min_lon=west, min_lat=south, max_lon=east, max_lat=north).normalized()


@dataclass(frozen=True)
class EnrichedPoint:
    """
    A point plus the attributes matched from reference layers (None where nothing matched).
    """

    point: PointRecord
    values: dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> dict[str, Any]:
        return {
            "trip_id": self.point.trip_id,
            "latitude": self.point.lat,
            "longitude": self.point.lon,
            "is_pickup": self.point.is_pickup,
            **self.values,
        }
