"""
Shared fixtures: small synthetic grids, rasters, series and polygons.

All grids are EPSG:4326 and placed inside the Maharashtra envelope so that
bounds checks pass.
"""

from datetime import date, timedelta

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from heat_risk.raster_utils import DailyRasterSeries, Grid, Raster

WEST, NORTH = 74.0, 20.0


def make_grid(rows=4, cols=4, resolution=0.1, west=WEST, north=NORTH):
    """North-up EPSG:4326 grid with its top-left corner at (west, north)."""
    bounds = (west, north - rows * resolution, west + cols * resolution, north)
    return Grid.from_bounds(bounds, resolution, "EPSG:4326")


def make_raster(values, grid=None, name="test"):
    values = np.asarray(values, dtype="float64")
    if grid is None:
        grid = make_grid(*values.shape)
    return Raster.on_grid(values, grid, name=name)


def make_series(start, layers, grid=None, name="series", dates=None):
    """Daily series from a list of 2-D arrays starting at `start` (consecutive days)."""
    layers = [np.asarray(layer, dtype="float64") for layer in layers]
    if grid is None:
        grid = make_grid(*layers[0].shape)
    if dates is None:
        dates = [start + timedelta(days=i) for i in range(len(layers))]
    items = [(d, Raster.on_grid(layer, grid)) for d, layer in zip(dates, layers)]
    return DailyRasterSeries.from_rasters(items, name=name, grid=grid)


@pytest.fixture
def grid_4x4():
    return make_grid(4, 4)


@pytest.fixture
def two_districts():
    """Two side-by-side districts covering the left and right halves of grid_4x4."""
    return gpd.GeoDataFrame(
        {
            "ADM2_NAME": ["West", "East"],
            "ADM1_NAME": ["Maharashtra", "Maharashtra"],
        },
        geometry=[
            box(WEST, NORTH - 0.4, WEST + 0.2, NORTH),
            box(WEST + 0.2, NORTH - 0.4, WEST + 0.4, NORTH),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture
def state_polygon():
    """State covering the whole of grid_4x4."""
    return gpd.GeoDataFrame(
        {"ADM1_NAME": ["Maharashtra"]},
        geometry=[box(WEST, NORTH - 0.4, WEST + 0.4, NORTH)],
        crs="EPSG:4326",
    )


@pytest.fixture
def day():
    return date(2023, 3, 1)
