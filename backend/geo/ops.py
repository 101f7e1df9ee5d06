from __future__ import annotations

import math
from typing import Any, Iterable

from geo.tiles import RasterTile, TileIndex


def tile_value(tile: RasterTile, lon: float, lat: float, *, band: int = 1) -> Any:
    """
    Nearest-pixel value at lon/lat from one tile (1-based band).

    None when the tile does not own the point, or the pixel is nodata/NaN.
    """
    if band < 1 or band > tile.band_count:
        raise ValueError(f"Band {band} out of range for tile with {tile.band_count} band(s)")
    px = tile.pixel_at(lon, lat)
    if px is None:
        return None
    row, col = px
    return _clean_value(tile.pixels[band - 1, row, col].item(), tile.nodata)


def sample_raster(
    lon: float,
    lat: float,
    tiles: TileIndex | Iterable[RasterTile],
    *,
    band: int = 1,
) -> Any:
    """
    Pixel value at a point from whichever tile owns it, or None outside every tile.
    """
    tile = _owning_tile(lon, lat, tiles)
    if tile is None:
        return None
    return tile_value(tile, lon, lat, band=band)


def sample_bands(
    lon: float,
    lat: float,
    tiles: TileIndex | Iterable[RasterTile],
) -> tuple[Any, ...] | None:
    tile = _owning_tile(lon, lat, tiles)
    if tile is None:
        return None
    return tuple(
        tile_value(tile, lon, lat, band=b) for b in range(1, tile.band_count + 1)
    )


def _owning_tile(
    lon: float, lat: float, tiles: TileIndex | Iterable[RasterTile]
) -> RasterTile | None:
    if isinstance(tiles, TileIndex):
        return tiles.find(lon, lat)
    for tile in tiles:
        if tile.contains(lon, lat):
            return tile
    return None


def _clean_value(value: Any, nodata: float | int | None) -> Any:
    if isinstance(value, float) and math.isnan(value):
        return None
    if nodata is None:
        return value
    if isinstance(nodata, float) and math.isnan(nodata):
        return value
    if value == nodata:
        return None
    return value
