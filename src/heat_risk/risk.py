"""
Risk composition and district reporting.

Each of hazard, exposure and vulnerability is min-max normalized with its
own statistics over the state cells, then

    Risk = H_norm * E_norm * V_norm

cell-wise, NaN outside the state. Districts are summarized with zonal
statistics (cell centres inside the polygon) and ranked by mean risk.

A layer with zero range over the state normalizes to 0 everywhere.
"""

from typing import Dict, Optional, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from heat_risk.raster_utils import (
    GridMismatchError,
    Raster,
    assert_same_grid,
    log_raster_qa,
    zonal_stats_hardened,
)

DISTRICT_COLUMN = "District"
MEAN_COLUMN = "Risk_Mean"
STD_COLUMN = "Risk_StdDev"
MAX_COLUMN = "Risk_Max"
PIXEL_COUNT_COLUMN = "pixel_count"
RANK_COLUMN = "rank"


# =============================================================================
# Normalization
# =============================================================================

def region_min_max(raster: Raster, region: np.ndarray) -> Tuple[float, float]:
    """
    Min and max of the finite cells inside `region`.

    Raises:
        ValueError: If the region holds no finite cell
    """
    if region.shape != raster.shape:
        raise GridMismatchError(
            f"Region mask {region.shape} does not match raster {raster.shape} ({raster.name})"
        )
    values = raster.data[region & np.isfinite(raster.data)]
    if values.size == 0:
        raise ValueError(f"No valid cells of '{raster.name}' inside the region")
    return float(values.min()), float(values.max())


def normalize(values, vmin: float, vmax: float) -> np.ndarray:
    """clamp((v - vmin) / (vmax - vmin), 0, 1); a zero range maps to 0."""
    values = np.asarray(values, dtype="float64")
    if vmax == vmin:
        return np.where(np.isnan(values), np.nan, 0.0)
    return np.clip((values - vmin) / (vmax - vmin), 0.0, 1.0)


def unnormalize(values, vmin: float, vmax: float) -> np.ndarray:
    """Inverse of normalize for values in [0, 1]."""
    return vmin + np.asarray(values, dtype="float64") * (vmax - vmin)


def normalize_layer(
    raster: Raster,
    region: np.ndarray,
    logger=None,
) -> Tuple[Raster, Tuple[float, float]]:
    """
    Normalize a layer with its own region min/max.

    Returns:
        Tuple of (normalized raster, (min, max))
    """
    vmin, vmax = region_min_max(raster, region)
    if vmin == vmax and logger is not None:
        logger.warning("Uniform layer normalized to 0", extra={
            "layer": raster.name,
            "value": vmin,
        })
    return raster.with_data(normalize(raster.data, vmin, vmax), name=f"{raster.name}_norm"), (vmin, vmax)


def compose_risk(
    hazard: Raster,
    exposure: Raster,
    vulnerability: Raster,
    region: np.ndarray,
    logger=None,
) -> Tuple[Raster, Dict[str, Dict[str, float]]]:
    """
    Multiply the three normalized layers cell-wise.

    Returns:
        Tuple of (risk raster, {layer: {'min', 'max'}} pre-normalization
        ranges plus the final risk range)
    """
    assert_same_grid(hazard, exposure, vulnerability, context="risk composition")

    ranges = {}
    normalized = []
    for key, layer in (("hazard", hazard), ("exposure", exposure), ("vulnerability", vulnerability)):
        norm, (vmin, vmax) = normalize_layer(layer, region, logger=logger)
        ranges[key] = {"min": vmin, "max": vmax}
        normalized.append(norm.data)

    product = normalized[0] * normalized[1] * normalized[2]
    risk = hazard.with_data(np.where(region, product, np.nan), name="risk")

    in_region = risk.data[region & np.isfinite(risk.data)]
    ranges["risk"] = {
        "min": float(in_region.min()) if in_region.size else float("nan"),
        "max": float(in_region.max()) if in_region.size else float("nan"),
    }

    if logger is not None:
        logger.info("Risk composed", extra={"layer_ranges": ranges})

    return risk, ranges


# =============================================================================
# District table
# =============================================================================

def district_risk_table(
    risk: Raster,
    districts: gpd.GeoDataFrame,
    name_col: str = "ADM2_NAME",
    include_max: bool = False,
    logger=None,
) -> pd.DataFrame:
    """
    Zonal mean, population std-dev and (optionally) max of risk per district.

    Rows keep the input district order; see rank_districts for sorting.
    """
    if name_col not in districts.columns:
        raise KeyError(f"District name column '{name_col}' not found")

    stats = ["mean", "std"] + (["max"] if include_max else [])
    zonal, qa_stats = zonal_stats_hardened(districts, risk, stats=stats, prefix="risk_")
    log_raster_qa(qa_stats, logger)

    table = pd.DataFrame({
        DISTRICT_COLUMN: zonal[name_col].to_numpy(),
        MEAN_COLUMN: zonal["risk_mean"].to_numpy(dtype="float64"),
        STD_COLUMN: zonal["risk_std"].to_numpy(dtype="float64"),
    })
    if include_max:
        table[MAX_COLUMN] = zonal["risk_max"].to_numpy(dtype="float64")
    table[PIXEL_COUNT_COLUMN] = zonal["risk_pixel_count"].to_numpy(dtype="int64")
    return table


def rank_districts(table: pd.DataFrame) -> pd.DataFrame:
    """
    Sort descending by mean risk and add a 1-based rank.

    The sort is stable: tied districts keep their input order. Districts
    without pixels (NaN mean) go last and are unranked.
    """
    ranked = table.sort_values(
        MEAN_COLUMN, ascending=False, kind="mergesort", na_position="last"
    ).reset_index(drop=True)
    ranks = pd.Series(np.arange(1, len(ranked) + 1), dtype="Int64")
    ranks[ranked[MEAN_COLUMN].isna().to_numpy()] = pd.NA
    ranked[RANK_COLUMN] = ranks
    return ranked


def build_district_report(
    risk: Raster,
    districts: gpd.GeoDataFrame,
    policy: str,
    name_col: str = "ADM2_NAME",
    logger=None,
) -> pd.DataFrame:
    """District table for a variant; the max column is reported for upsample only."""
    table = district_risk_table(
        risk, districts, name_col=name_col, include_max=(policy == "upsample"), logger=logger
    )
    ranked = rank_districts(table)
    if logger is not None:
        top: Optional[dict] = ranked.iloc[0].to_dict() if len(ranked) else None
        logger.info("Districts ranked", extra={
            "districts": len(ranked),
            "unranked": int(ranked[RANK_COLUMN].isna().sum()),
            "top": top,
        })
    return ranked
