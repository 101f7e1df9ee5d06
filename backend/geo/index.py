from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import shapely
from shapely.geometry import Point
from shapely.strtree import STRtree

from layers.types import RegionLayer, RegionPolygon


@dataclass
class RegionIndex:
    """
    Point-in-polygon index for one `RegionLayer`.

    Notes:
    - Input data is EPSG:4326 (lon/lat degrees); loaders reproject before we get here.
    - Containment uses covers(): a point on a polygon boundary is inside.
    - Overlapping polygons resolve to the lowest region id (layer order).
    """

    layer: RegionLayer
    _tree: STRtree = field(init=False, repr=False)

    def __post_init__(self) -> None:
        geoms = [r.geometry for r in self.layer.regions]
        shapely.prepare(geoms)
        self._tree = STRtree(geoms)

    @property
    def layer_id(self) -> str:
        return self.layer.id

    def match(self, lon: float, lat: float) -> RegionPolygon | None:
        idxs = _to_int_list(
            self._tree.query(Point(float(lon), float(lat)), predicate="covered_by")
        )
        if not idxs:
            return None
        return self.layer.regions[min(idxs)]

    def match_many(self, coords: Sequence[tuple[float, float]]) -> list[RegionPolygon | None]:
        """
        Vectorised `match` over (lon, lat) pairs; result is aligned with the input.
        """
        if len(coords) == 0:
            return []
        pts = shapely.points(np.asarray(coords, dtype="float64"))
        point_idx, region_idx = self._tree.query(pts, predicate="covered_by")

        best: list[int | None] = [None] * len(coords)
        for i, j in zip(point_idx.tolist(), region_idx.tolist()):
            cur = best[i]
            if cur is None or j < cur:
                best[i] = j
        return [self.layer.regions[j] if j is not None else None for j in best]


def build_region_index(layer: RegionLayer) -> RegionIndex:
    return RegionIndex(layer=layer)


def _to_int_list(arr: Any) -> list[int]:
    try:
        return [int(x) for x in arr.tolist()]
    except AttributeError:
        return [int(x) for x in arr]
