import sys
from pathlib import Path

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

# Ensure `backend/` is on sys.path so tests can import local modules
# like `engine.*`, `geo.*`, and `layers.*`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from engine.pipeline import EnrichmentPlan, RasterSpec, RegionSpec  # noqa: E402
from layers.classify import NLCD_LAND_COVER  # noqa: E402
from layers.types import RasterLayer, RegionLayer, RegionPolygon  # noqa: E402


# Two neighbouring zones sharing the meridian -73.9; a 4x2 land cover grid at 0.05 deg
# covering both. Pixel centres are at lon -73.975/-73.925/-73.875/-73.825 and
# lat 40.775 (row 0) / 40.725 (row 1).
LAND_COVER_VALUES = [[21, 22, 41, 99], [11, 23, 90, 255]]

TRIP_ROWS = [
    # trip_id, pickup (lon, lat), dropoff (lon, lat), fare, passengers
    (1, (-73.975, 40.775), (-73.875, 40.725), 12.5, 1),
    (2, (-73.925, 40.725), (-73.825, 40.775), 8.0, 2),
    (3, (-73.825, 40.725), (-72.0, 41.5), 55.25, 1),
    (4, (-73.975, 40.725), (-73.875, 40.775), 9.75, 3),
    (5, (-73.925, 40.775), (-73.975, 40.775), 5.0, 1),
    (6, (-73.875, 40.725), (-73.925, 40.775), 14.0, 4),
]


@pytest.fixture
def zones_layer() -> RegionLayer:
    return RegionLayer(
        id="zones",
        regions=(
            RegionPolygon(
                id="1",
                name="Midtown",
                attrs={"borough": "Manhattan", "median_income": 85000},
                geometry=box(-74.0, 40.7, -73.9, 40.8),
                source_crs="EPSG:4326",
            ),
            RegionPolygon(
                id="2",
                name="Astoria",
                attrs={"borough": "Queens", "median_income": 62000},
                geometry=box(-73.9, 40.7, -73.8, 40.8),
                source_crs="EPSG:4326",
            ),
        ),
    )


@pytest.fixture
def land_cover_layer() -> RasterLayer:
    return RasterLayer(
        id="land_cover",
        pixels=np.array([LAND_COVER_VALUES], dtype=np.uint8),
        transform=from_origin(-74.0, 40.8, 0.05, 0.05),
        nodata=255,
    )


@pytest.fixture
def plan(zones_layer: RegionLayer, land_cover_layer: RasterLayer) -> EnrichmentPlan:
    return EnrichmentPlan(
        regions=(RegionSpec(layer=zones_layer),),
        rasters=(RasterSpec(layer=land_cover_layer, classification=NLCD_LAND_COVER),),
    )


@pytest.fixture
def trip_rows() -> list[dict]:
    return [
        {
            "trip_id": trip_id,
            "pickup_latitude": pu[1],
            "pickup_longitude": pu[0],
            "dropoff_latitude": do[1],
            "dropoff_longitude": do[0],
            "fare_amount": fare,
            "passenger_count": passengers,
        }
        for trip_id, pu, do, fare, passengers in TRIP_ROWS
    ]
