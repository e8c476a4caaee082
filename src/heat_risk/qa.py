"""
Quality assurance utilities for geospatial data.

CRS mismatches are hard errors. No silent overrides.
Bounds sanity checks on every boundary read/write: the state polygon and its
districts must fall inside the configured lon/lat envelope.
"""

from typing import Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

from heat_risk.io_utils import read_params


# Maharashtra, generously padded (EPSG:4326)
DEFAULT_ENVELOPE_4326 = {
    "lon_min": 72.0,
    "lon_max": 81.5,
    "lat_min": 15.0,
    "lat_max": 22.5,
}


def _load_bounds_config() -> dict:
    """Load bounds check configuration from params.yml."""
    return read_params().get("bounds_checks", {})


# =============================================================================
# CRS Validation
# =============================================================================

class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


class BoundsError(Exception):
    """Raised when bounds validation fails."""
    pass


def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert that the GeoDataFrame has a CRS set.

    Raises:
        CRSError: If CRS is None
    """
    if gdf.crs is None:
        msg = "GeoDataFrame has no CRS set"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def assert_expected_crs(
    gdf: gpd.GeoDataFrame,
    expected_epsg: int,
    context: str = "",
) -> None:
    """
    Assert that the GeoDataFrame has the expected CRS.

    Raises:
        CRSError: If CRS is None or doesn't match expected
    """
    assert_crs_not_none(gdf, context)

    expected_crs = CRS.from_epsg(expected_epsg)

    if not gdf.crs.equals(expected_crs):
        msg = f"CRS mismatch: expected EPSG:{expected_epsg}, got {gdf.crs}"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def safe_reproject(
    gdf: gpd.GeoDataFrame,
    target_epsg: int,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame to target CRS using to_crs() only.

    Raises:
        CRSError: If source CRS is None
    """
    assert_crs_not_none(gdf, context)

    target_crs = CRS.from_epsg(target_epsg)

    if gdf.crs.equals(target_crs):
        return gdf

    return gdf.to_crs(target_crs)


# =============================================================================
# Bounds Validation
# =============================================================================

def get_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float, float, float]:
    """Bounds of a GeoDataFrame as (minx, miny, maxx, maxy)."""
    return tuple(gdf.total_bounds)


def check_bounds_epsg4326(
    gdf: gpd.GeoDataFrame,
    lon_min: float = DEFAULT_ENVELOPE_4326["lon_min"],
    lon_max: float = DEFAULT_ENVELOPE_4326["lon_max"],
    lat_min: float = DEFAULT_ENVELOPE_4326["lat_min"],
    lat_max: float = DEFAULT_ENVELOPE_4326["lat_max"],
    context: str = "",
) -> bool:
    """
    Check that GeoDataFrame bounds are plausible for the study state.

    Raises:
        BoundsError: If bounds are outside the envelope
    """
    minx, miny, maxx, maxy = get_bounds(gdf)

    errors = []
    if minx < lon_min or maxx > lon_max:
        errors.append(f"Longitude out of range: [{minx}, {maxx}] not in [{lon_min}, {lon_max}]")
    if miny < lat_min or maxy > lat_max:
        errors.append(f"Latitude out of range: [{miny}, {maxy}] not in [{lat_min}, {lat_max}]")

    if errors:
        msg = "EPSG:4326 bounds check failed: " + "; ".join(errors)
        if context:
            msg = f"{msg} ({context})"
        raise BoundsError(msg)

    return True


def validate_bounds(
    gdf: gpd.GeoDataFrame,
    envelope: Optional[dict] = None,
    context: str = "",
) -> bool:
    """
    Validate bounds against the study-state envelope.

    Geometries in other CRSs are reprojected to EPSG:4326 for the check.
    `envelope` defaults to params.yml `bounds_checks.epsg_4326`.

    Raises:
        CRSError: If CRS is None
        BoundsError: If bounds are outside expected range or non-finite
    """
    assert_crs_not_none(gdf, context)

    bounds = get_bounds(gdf)
    if not all(np.isfinite(bounds)):
        raise BoundsError(f"Non-finite bounds: {bounds} ({context})")

    if envelope is None:
        envelope = _load_bounds_config().get("epsg_4326", {})
    config = {**DEFAULT_ENVELOPE_4326, **envelope}

    return check_bounds_epsg4326(
        safe_reproject(gdf, 4326, context),
        lon_min=config["lon_min"],
        lon_max=config["lon_max"],
        lat_min=config["lat_min"],
        lat_max=config["lat_max"],
        context=context,
    )


# =============================================================================
# Geometry Validation
# =============================================================================

def check_geometry_validity(gdf: gpd.GeoDataFrame) -> pd.DataFrame:
    """Validity summary for each geometry."""
    return pd.DataFrame({
        "is_valid": gdf.geometry.is_valid,
        "is_empty": gdf.geometry.is_empty,
        "geom_type": gdf.geometry.geom_type,
    })


def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Assert all geometries are valid and non-empty.

    Raises:
        ValueError: If any geometry is invalid
    """
    summary = check_geometry_validity(gdf)
    bad = ~summary["is_valid"] | summary["is_empty"]
    if bad.any():
        msg = f"{int(bad.sum())} invalid or empty geometries found"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


def repair_geometries(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid polygons with a zero-width buffer (GAUL has a few)."""
    gdf = gdf.copy()
    invalid = ~gdf.geometry.is_valid
    if invalid.any():
        gdf.loc[invalid, "geometry"] = gdf.loc[invalid, "geometry"].buffer(0)
    return gdf


# =============================================================================
# Data Quality Summaries
# =============================================================================

def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """NA rate (0-1) per column."""
    return (df.isna().sum() / len(df)).to_dict()
