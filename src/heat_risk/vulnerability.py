"""
Vulnerability layer: vegetation deficit and nighttime heat.

    v_env = clamp(1 - NDVI / 10000, 0, 1)
    v_uhi = clamp((LST_C - min) / (max - min), 0, 1), min/max over the state
    V     = 0.4 * v_env + 0.6 * v_uhi, missing -> 0

NDVI (MOD13A3) and night LST (MYD11A1) are averaged over the study window
before the indices are computed.
"""

from typing import Optional, Tuple

import numpy as np

from heat_risk.raster_utils import (
    DailyRasterSeries,
    GridMismatchError,
    Raster,
    apply_scale_offset,
    raster_summary,
    resample_to_grid,
)
from heat_risk.time_utils import DateWindow

NDVI_SCALE_MAX = 10000.0
LST_SCALE = 0.02
LST_OFFSET = -273.15
# MYD11A1 stores 0 for cells without a retrieval
LST_FILL_VALUE = 0
DEFAULT_WEIGHTS = {"env": 0.4, "uhi": 0.6}


def environmental_vulnerability(
    ndvi: np.ndarray,
    scale_min: float = 0.0,
    scale_max: float = NDVI_SCALE_MAX,
) -> np.ndarray:
    """1 - NDVI rescaled from [scale_min, scale_max], clamped to [0, 1]."""
    ndvi = np.asarray(ndvi, dtype="float64")
    return np.clip(1.0 - (ndvi - scale_min) / (scale_max - scale_min), 0.0, 1.0)


def night_lst_celsius(
    raw: np.ndarray,
    scale: float = LST_SCALE,
    offset: float = LST_OFFSET,
    fill_value: Optional[float] = LST_FILL_VALUE,
) -> np.ndarray:
    """Raw MODIS LST digital numbers to °C; fill values become NaN."""
    return apply_scale_offset(raw, scale=scale, offset=offset, fill_value=fill_value)


def urban_heat_vulnerability(lst_c: np.ndarray, region: np.ndarray) -> np.ndarray:
    """
    Night LST min-max scaled over the region's observed range, clamped.

    A region with a single observed temperature (or none) scales to 0.
    """
    lst_c = np.asarray(lst_c, dtype="float64")
    observed = lst_c[region & np.isfinite(lst_c)]
    if observed.size == 0:
        return np.where(np.isfinite(lst_c), 0.0, np.nan)
    lo, hi = float(observed.min()), float(observed.max())
    if hi == lo:
        return np.where(np.isfinite(lst_c), 0.0, np.nan)
    return np.clip((lst_c - lo) / (hi - lo), 0.0, 1.0)


def composite_vulnerability(
    v_env: np.ndarray,
    v_uhi: np.ndarray,
    w_env: float = DEFAULT_WEIGHTS["env"],
    w_uhi: float = DEFAULT_WEIGHTS["uhi"],
) -> np.ndarray:
    """Weighted sum of the two indices; cells missing either become 0."""
    combined = w_env * np.asarray(v_env, dtype="float64") + w_uhi * np.asarray(v_uhi, dtype="float64")
    return np.nan_to_num(combined, nan=0.0)


def window_mean(series: DailyRasterSeries, window: DateWindow, name: str) -> Raster:
    """
    Per-cell mean (NaN-aware) of a series over a date window.

    Raises:
        ValueError: If no layer falls inside the window
    """
    subset = series.select_dates(window.start, window.end)
    if len(subset) == 0:
        raise ValueError(
            f"No {series.name or name} layers between {window.start} and {window.end}"
        )
    stack = subset.stack
    counts = np.isfinite(stack).sum(axis=0)
    totals = np.nansum(stack, axis=0)
    mean = np.full(counts.shape, np.nan)
    np.divide(totals, counts, out=mean, where=counts > 0)
    return Raster.on_grid(mean, subset.grid, name=name)


def build_vulnerability(
    ndvi: Raster,
    lst_raw: Raster,
    region: np.ndarray,
    weights: Optional[dict] = None,
    ndvi_range: Tuple[float, float] = (0.0, NDVI_SCALE_MAX),
    lst_scale: float = LST_SCALE,
    lst_offset: float = LST_OFFSET,
    logger=None,
) -> Raster:
    """
    Composite vulnerability on the NDVI grid.

    LST is resampled onto the NDVI grid (cell mean) if the grids differ.
    In-region cells missing either component are 0; outside cells are NaN.

    Args:
        ndvi: Window-mean NDVI (scaled integers, 0-10000)
        lst_raw: Window-mean night LST (raw digital numbers)
        region: Boolean state mask on the NDVI grid
        weights: {'env': w_env, 'uhi': w_uhi}
        ndvi_range: NDVI rescaling range
        lst_scale: LST scale factor
        lst_offset: LST offset (K -> °C)
        logger: Optional JSONL logger
    """
    if region.shape != ndvi.shape:
        raise GridMismatchError(
            f"Region mask {region.shape} does not match NDVI grid {ndvi.shape}"
        )
    weights = {**DEFAULT_WEIGHTS, **(weights or {})}

    lst_on_grid = resample_to_grid(lst_raw, ndvi.grid, "average", name="lst_night_raw")
    lst_c = night_lst_celsius(lst_on_grid.data, scale=lst_scale, offset=lst_offset)
    # Masked outside the state so the min/max only sees state cells
    lst_c = np.where(region, lst_c, np.nan)
    v_env = environmental_vulnerability(
        np.where(region, ndvi.data, np.nan), ndvi_range[0], ndvi_range[1]
    )
    v_uhi = urban_heat_vulnerability(lst_c, region)
    composite = composite_vulnerability(v_env, v_uhi, weights["env"], weights["uhi"])
    vulnerability = ndvi.with_data(np.where(region, composite, np.nan), name="vulnerability")

    if logger is not None:
        observed = lst_c[np.isfinite(lst_c)]
        logger.info("Vulnerability built", extra={
            "weights": weights,
            "lst_c_min": float(observed.min()) if observed.size else None,
            "lst_c_max": float(observed.max()) if observed.size else None,
            "v_env_missing_in_region": int((region & np.isnan(v_env)).sum()),
            "v_uhi_missing_in_region": int((region & np.isnan(v_uhi)).sum()),
            **raster_summary(vulnerability, mask=region),
        })

    return vulnerability
