from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class BBox:
    """
    WGS84 bounding box in lon/lat degrees.

    Convention used throughout this repo:
    - minLon, minLat, maxLon, maxLat
    """

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def normalized(self) -> "BBox":
        min_lon = min(self.min_lon, self.max_lon)
        max_lon = max(self.min_lon, self.max_lon)
        min_lat = min(self.min_lat, self.max_lat)
        max_lat = max(self.min_lat, self.max_lat)
        return BBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def covers(self, lon: float, lat: float) -> bool:
        # Closed on every edge; tile ownership of shared edges is decided by the tiles.
        b = self.normalized()
        return b.min_lon <= lon <= b.max_lon and b.min_lat <= lat <= b.max_lat

    def intersects(self, other: "BBox") -> bool:
        a = self.normalized()
        b = other.normalized()
        return not (
            a.max_lon < b.min_lon
            or b.max_lon < a.min_lon
            or a.max_lat < b.min_lat
            or b.max_lat < a.min_lat
        )


def bbox_of_points(coords: Iterable[tuple[float, float]]) -> BBox | None:
    """
    Smallest bbox around (lon, lat) pairs, or None for an empty input.
    """
    lons: list[float] = []
    lats: list[float] = []
    for lon, lat in coords:
        lons.append(float(lon))
        lats.append(float(lat))
    if not lons:
        return None
    return BBox(min_lon=min(lons), min_lat=min(lats), max_lon=max(lons), max_lat=max(lats))
