from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

import numpy as np
import rasterio.windows
from rasterio.transform import Affine
from rasterio.windows import Window
from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from geo.aoi import BBox
from layers.types import RasterLayer


DEFAULT_TILE_SIZE = 256

# Fraction of a pixel; absorbs float noise for coordinates computed as origin + k * res.
_EDGE_SNAP = 1e-9


@dataclass(frozen=True, eq=False)
class RasterTile:
    """
    One rectangular pixel block of a raster.

    Ownership of edges (shared with neighbouring tiles, and between pixels):
    west and north edges are inclusive, east and south edges are exclusive.
    So the raster's upper-left corner is pixel (0, 0) of tile (0, 0), and the raster's
    own outer east/south edges fall outside every tile.
    """

    layer_id: str
    tile_x: int
    tile_y: int
    row_off: int
    col_off: int
    transform: Affine
    bounds: BBox
    crs: str
    # (bands, rows, cols) view into the source raster
    pixels: np.ndarray
    nodata: float | int | None = None

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

    def pixel_at(self, lon: float, lat: float) -> tuple[int, int] | None:
        """
        Nearest pixel (row, col) within this tile, or None when the point is not owned by it.
        """
        xres, yres = self.res
        west = float(self.transform.c)
        north = float(self.transform.f)
        col = math.floor((float(lon) - west) / xres + _EDGE_SNAP)
        row = math.floor((north - float(lat)) / yres + _EDGE_SNAP)
        if 0 <= row < self.height and 0 <= col < self.width:
            return row, col
        return None

    def contains(self, lon: float, lat: float) -> bool:
        return self.pixel_at(lon, lat) is not None

    def pixel_range(self) -> tuple[range, range]:
        """
        Source-raster (rows, cols) covered by this tile.
        """
        return (
            range(self.row_off, self.row_off + self.height),
            range(self.col_off, self.col_off + self.width),
        )


def tile_grid_shape(raster: RasterLayer, tile_width: int, tile_height: int) -> tuple[int, int]:
    _check_tile_size(tile_width, tile_height)
    return (
        math.ceil(raster.width / tile_width),
        math.ceil(raster.height / tile_height),
    )


def iter_tiles(
    raster: RasterLayer,
    *,
    tile_width: int = DEFAULT_TILE_SIZE,
    tile_height: int = DEFAULT_TILE_SIZE,
) -> Iterator[RasterTile]:
    """
    Lazily split a raster into tiles, row-major from the upper-left corner.

    Edge tiles are kept at their smaller size; pixel values are views, never copies.
    """
    _check_tile_size(tile_width, tile_height)
    for tile_y, row_off in enumerate(range(0, raster.height, tile_height)):
        h = min(tile_height, raster.height - row_off)
        for tile_x, col_off in enumerate(range(0, raster.width, tile_width)):
            w = min(tile_width, raster.width - col_off)
            window = Window(col_off, row_off, w, h)
            left, bottom, right, top = rasterio.windows.bounds(window, raster.transform)
            yield RasterTile(
                layer_id=raster.id,
                tile_x=tile_x,
                tile_y=tile_y,
                row_off=row_off,
                col_off=col_off,
                transform=rasterio.windows.transform(window, raster.transform),
                bounds=BBox(
                    min_lon=left, min_lat=bottom, max_lon=right, max_lat=top
                ).normalized(),
                crs=raster.crs,
                pixels=raster.pixels[:, row_off : row_off + h, col_off : col_off + w],
                nodata=raster.nodata,
            )


@dataclass
class TileIndex:
    """
    STRtree over tile footprints, used to join points to tiles by containment.
    """

    tiles: tuple[RasterTile, ...]
    _tree: STRtree = field(init=False, repr=False)

    def __post_init__(self) -> None:
        boxes = [shapely_box(*t.bounds.as_tuple()) for t in self.tiles]
        self._tree = STRtree(boxes)

    def __len__(self) -> int:
        return len(self.tiles)

    def candidates(self, lon: float, lat: float) -> list[RasterTile]:
        """
        Tiles whose closed footprint touches the point (up to four on a shared corner).
        """
        idxs = _to_int_list(self._tree.query(Point(float(lon), float(lat)), predicate="intersects"))
        return [self.tiles[i] for i in sorted(idxs)]

    def find(self, lon: float, lat: float) -> RasterTile | None:
        for tile in self.candidates(lon, lat):
            if tile.contains(lon, lat):
                return tile
        return None

    def tiles_overlapping(self, aoi: BBox) -> list[RasterTile]:
        b = aoi.normalized()
        idxs = _to_int_list(self._tree.query(shapely_box(*b.as_tuple())))
        return [self.tiles[i] for i in sorted(idxs)]


def build_tile_index(tiles: Iterable[RasterTile]) -> TileIndex:
    return TileIndex(tiles=tuple(tiles))


def _check_tile_size(tile_width: int, tile_height: int) -> None:
    if int(tile_width) <= 0 or int(tile_height) <= 0:
        raise ValueError(f"Tile size must be positive, got {tile_width}x{tile_height}")


def _to_int_list(arr: Any) -> list[int]:
    # Shapely STRtree returns numpy.ndarray of indices.
    try:
        return [int(x) for x in arr.tolist()]
    except AttributeError:
        return [int(x) for x in arr]
