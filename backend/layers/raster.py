"""Raster reference loading: raw bytes -> sniffed encoding -> decoded, WGS84 `RasterLayer`."""

from __future__ import annotations

import logging
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import numpy as np
import rasterio
from rasterio.errors import RasterioError
from rasterio.io import MemoryFile
from rasterio.warp import Resampling, calculate_default_transform, reproject

from engine.errors import RasterFormatError, ReferenceLoadError
from geo.crs import WORKING_CRS, crs_key, is_working_crs
from layers.types import RasterLayer

logger = logging.getLogger(__name__)

# Closed set of accepted encodings: format -> (GDAL driver, extension hint).
SUPPORTED_FORMATS: dict[str, tuple[str, str]] = {
    "aaigrid": ("AAIGrid", ".asc"),
    "gtiff": ("GTiff", ".tif"),
    "netcdf": ("netCDF", ".nc"),
}

_TIFF_MAGIC = (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")
_NETCDF_MAGIC = (b"CDF\x01", b"CDF\x02", b"CDF\x05", b"\x89HDF\r\n\x1a\n")
_AAIGRID_KEYS = (b"ncols", b"nrows")


def read_raster_bytes(source: Path | str | bytes) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    p = Path(source)
    try:
        return p.read_bytes()
    except OSError as err:
        raise ReferenceLoadError(f"Cannot read raster {p}: {err}") from err


def sniff_raster_format(data: bytes) -> str:
    """
    Identify the encoding from leading bytes. Nothing is decoded here.
    """
    head = data[:64]
    if head.startswith(_TIFF_MAGIC):
        return "gtiff"
    if head.startswith(_NETCDF_MAGIC):
        return "netcdf"
    if head.lstrip().lower().startswith(_AAIGRID_KEYS):
        return "aaigrid"
    raise RasterFormatError(
        "unsupported raster format: expected Arc/Info ASCII Grid, GeoTIFF or NetCDF "
        f"(leading bytes {head[:8]!r})"
    )


def load_raster_layer(
    source: Path | str | bytes,
    *,
    layer_id: str,
    source_crs: str | None = None,
) -> RasterLayer:
    """
    Decode a single-file raster into memory and normalise it to EPSG:4326.

    `source_crs` overrides whatever CRS the file declares (ASCII grids often have none).
    """
    data = read_raster_bytes(source)
    fmt = sniff_raster_format(data)

    try:
        with _open_dataset(source, data, fmt) as ds:
            pixels = ds.read()
            transform = ds.transform
            detected_crs = ds.crs.to_string() if ds.crs else None
            nodata = ds.nodata
    except RasterioError as err:
        raise RasterFormatError(f"corrupt {fmt} raster for layer '{layer_id}': {err}") from err

    if transform.b != 0 or transform.d != 0:
        raise ReferenceLoadError(f"Raster '{layer_id}' is rotated; only north-up grids are supported")

    src_key = crs_key(source_crs or detected_crs)
    if not is_working_crs(src_key):
        pixels, transform, nodata = _warp_to_working(pixels, transform, src_key, nodata)
        logger.info("raster %s: reprojected from %s to %s", layer_id, src_key, WORKING_CRS)

    pixels.setflags(write=False)
    layer = RasterLayer(
        id=layer_id,
        pixels=pixels,
        transform=transform,
        crs=WORKING_CRS,
        nodata=nodata,
        source_format=fmt,
    )
    logger.info(
        "raster %s: %s %dx%d, %d band(s), res=%s",
        layer_id,
        fmt,
        layer.width,
        layer.height,
        layer.band_count,
        layer.res,
    )
    return layer


@contextmanager
def _open_dataset(source: Path | str | bytes, data: bytes, fmt: str) -> Iterator[Any]:
    driver, ext = SUPPORTED_FORMATS[fmt]
    if fmt != "netcdf":
        with MemoryFile(data, ext=ext) as mem, mem.open(driver=driver) as ds:
            yield ds
        return

    # GDAL's netCDF driver only opens real files, never /vsimem/.
    if not isinstance(source, (bytes, bytearray)):
        with rasterio.open(Path(source), driver=driver) as ds:
            yield ds
        return
    with tempfile.NamedTemporaryFile(suffix=ext) as tmp:
        tmp.write(data)
        tmp.flush()
        with rasterio.open(tmp.name, driver=driver) as ds:
            yield ds


def _warp_to_working(
    pixels: np.ndarray, transform: Any, src_crs: str, nodata: float | int | None
) -> tuple[np.ndarray, Any, float | int | None]:
    bands, height, width = pixels.shape
    west = transform.c
    north = transform.f
    east = west + width * transform.a
    south = north + height * transform.e
    dst_transform, dst_width, dst_height = calculate_default_transform(
        src_crs, WORKING_CRS, width, height, left=west, bottom=south, right=east, top=north
    )

    if nodata is None:
        # Cells outside the warped footprint need a value that cannot be real data.
        if np.issubdtype(pixels.dtype, np.floating):
            nodata = float("nan")
        else:
            nodata = np.iinfo(pixels.dtype).max

    dst = np.full((bands, dst_height, dst_width), nodata, dtype=pixels.dtype)
    reproject(
        source=pixels,
        destination=dst,
        src_transform=transform,
        src_crs=src_crs,
        src_nodata=nodata,
        dst_transform=dst_transform,
        dst_crs=WORKING_CRS,
        dst_nodata=nodata,
        resampling=Resampling.nearest,
    )
    return dst, dst_transform, nodata
