"""
Heatwave hazard from study-window Heat Index and monthly thresholds.

A day is an exceedance day at a cell when HI > threshold for that day's
calendar month. NaN on either side resolves to "not exceeded" (0).

Metrics:
- exceedance_days (default): count of exceedance days in the window
- event_days: count of days belonging to runs of >= min_run consecutive
  exceedance days; consecutive means adjacent calendar dates
"""

from datetime import timedelta
from typing import Dict, List, Tuple

import numpy as np

from heat_risk.raster_utils import DailyRasterSeries, GridMismatchError, Raster
from heat_risk.thresholds import MonthlyThresholds

METRICS = ("exceedance_days", "event_days")
DEFAULT_MIN_RUN_DAYS = 3


def exceedance_series(
    study_hi: DailyRasterSeries,
    thresholds: MonthlyThresholds,
) -> DailyRasterSeries:
    """
    Per-day 0/1 exceedance flags.

    Raises:
        MissingThresholdError: If a study day falls in a month without threshold
        GridMismatchError: If thresholds and Heat Index are on different grids
    """
    if not study_hi.grid.matches(thresholds.grid):
        raise GridMismatchError(
            f"Heat Index grid {study_hi.grid.describe()} != "
            f"threshold grid {thresholds.grid.describe()}"
        )

    flags = np.zeros(study_hi.stack.shape, dtype="float64")
    for i, d in enumerate(study_hi.dates):
        threshold = thresholds.for_month(d.month).data
        day = study_hi.stack[i]
        valid = np.isfinite(day) & np.isfinite(threshold)
        flags[i] = valid & (np.nan_to_num(day) > np.nan_to_num(threshold))

    return DailyRasterSeries(
        dates=study_hi.dates,
        stack=flags,
        transform=study_hi.transform,
        crs=study_hi.crs,
        name="exceedance",
    )


def count_exceedance_days(exceedance: DailyRasterSeries) -> Raster:
    """Per-cell number of exceedance days over the series."""
    if len(exceedance) == 0:
        return Raster.on_grid(np.zeros(exceedance.grid.shape), exceedance.grid, name="exceedance_days")
    return Raster.on_grid(exceedance.stack.sum(axis=0), exceedance.grid, name="exceedance_days")


def _consecutive_segments(dates) -> List[Tuple[int, int]]:
    """Index ranges [start, stop) of runs of adjacent calendar dates."""
    if not dates:
        return []
    segments = []
    start = 0
    for i in range(1, len(dates)):
        if dates[i] - dates[i - 1] != timedelta(days=1):
            segments.append((start, i))
            start = i
    segments.append((start, len(dates)))
    return segments


def _run_lengths(flags: np.ndarray) -> np.ndarray:
    """
    For a (t, h, w) 0/1 stack of consecutive days, the length of the run each
    exceedance day belongs to (0 on non-exceedance days).
    """
    t = flags.shape[0]
    on = flags > 0
    # Length of the run ending at each day, scanning forward
    ending = np.zeros(flags.shape, dtype="int64")
    for i in range(t):
        prev = ending[i - 1] if i > 0 else 0
        ending[i] = np.where(on[i], prev + 1, 0)
    # Propagate each run's final length backward over its days
    lengths = np.zeros(flags.shape, dtype="int64")
    for i in range(t - 1, -1, -1):
        if i == t - 1:
            lengths[i] = ending[i]
        else:
            lengths[i] = np.where(on[i], np.where(on[i + 1], lengths[i + 1], ending[i]), 0)
    return lengths


def heatwave_event_days(
    exceedance: DailyRasterSeries,
    min_run: int = DEFAULT_MIN_RUN_DAYS,
) -> Raster:
    """Per-cell count of days in runs of >= `min_run` consecutive exceedance days."""
    if min_run < 1:
        raise ValueError(f"min_run must be >= 1, got {min_run}")
    total = np.zeros(exceedance.grid.shape, dtype="float64")
    for start, stop in _consecutive_segments(exceedance.dates):
        lengths = _run_lengths(exceedance.stack[start:stop])
        total += (lengths >= min_run).sum(axis=0)
    return Raster.on_grid(total, exceedance.grid, name="event_days")


def longest_exceedance_run(exceedance: DailyRasterSeries) -> Raster:
    """Per-cell maximum number of consecutive exceedance days."""
    longest = np.zeros(exceedance.grid.shape, dtype="float64")
    for start, stop in _consecutive_segments(exceedance.dates):
        lengths = _run_lengths(exceedance.stack[start:stop])
        longest = np.maximum(longest, lengths.max(axis=0))
    return Raster.on_grid(longest, exceedance.grid, name="longest_run")


def build_hazard(
    study_hi: DailyRasterSeries,
    thresholds: MonthlyThresholds,
    metric: str = "exceedance_days",
    min_run: int = DEFAULT_MIN_RUN_DAYS,
    logger=None,
) -> Raster:
    """
    Hazard raster on the Heat Index grid.

    Args:
        study_hi: Heat Index series restricted to the study window
        thresholds: Monthly baseline thresholds on the same grid
        metric: 'exceedance_days' (default) or 'event_days'
        min_run: Minimum run length for 'event_days'
        logger: Optional JSONL logger

    Returns:
        Raster named 'hazard'
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown hazard metric '{metric}'. Valid: {list(METRICS)}")

    exceedance = exceedance_series(study_hi, thresholds)
    if metric == "exceedance_days":
        hazard = count_exceedance_days(exceedance)
    else:
        hazard = heatwave_event_days(exceedance, min_run=min_run)

    if logger is not None:
        summary: Dict[str, object] = {
            "metric": metric,
            "days": len(study_hi),
            "first_date": str(study_hi.dates[0]) if len(study_hi) else None,
            "last_date": str(study_hi.dates[-1]) if len(study_hi) else None,
            "native_resolution": list(hazard.resolution),
            "max_hazard": float(np.nanmax(hazard.data)) if hazard.data.size else None,
        }
        if metric == "event_days":
            summary["min_run_days"] = min_run
        logger.info("Hazard built", extra=summary)

    return hazard.with_data(hazard.data, name="hazard")
