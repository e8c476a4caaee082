"""
Monthly 90th-percentile Heat Index thresholds from a 30-year baseline.

The baseline (1991-2020) is split into three decades. For each decade and
calendar month the per-cell percentile is taken across every day of that
month in the decade; the month's threshold is the cell-wise mean of its
three decade percentiles. Thresholds have no year dimension.

A month/decade with no observations is missing, never a NaN raster that
looks defined. A month with any missing decade has no threshold, and
looking it up raises MissingThresholdError (no fallback to another month).
"""

import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio

from heat_risk.io_utils import atomic_write_raster
from heat_risk.raster_utils import DailyRasterSeries, Grid, Raster, RasterError
from heat_risk.time_utils import MONTHS, DateWindow

DEFAULT_PERCENTILE = 90.0


class MissingThresholdError(LookupError):
    """Raised when a month has no (complete) baseline threshold."""
    pass


def cellwise_percentile(stack: np.ndarray, percentile: float) -> np.ndarray:
    """
    Per-cell percentile across axis 0, ignoring NaN (linear interpolation).

    Cells that are NaN on every day stay NaN.
    """
    if stack.shape[0] == 0:
        raise ValueError("Cannot take a percentile of zero observations")
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", message="All-NaN slice encountered")
        return np.nanpercentile(stack, percentile, axis=0)


@dataclass
class DecadePercentiles:
    """Per-month percentile rasters for one baseline decade."""
    window: DateWindow
    percentile: float
    rasters: Dict[int, Raster] = field(default_factory=dict)
    day_counts: Dict[int, int] = field(default_factory=dict)

    @property
    def missing_months(self) -> List[int]:
        return [m for m in MONTHS if m not in self.rasters]


def decade_percentiles(
    series: DailyRasterSeries,
    window: DateWindow,
    percentile: float = DEFAULT_PERCENTILE,
) -> DecadePercentiles:
    """
    Percentile raster per calendar month over the days of `series` inside
    `window`. Months without observations are left out (see missing_months).
    """
    subset = series.select_dates(window.start, window.end)
    result = DecadePercentiles(window=window, percentile=percentile)
    for month in MONTHS:
        month_days = subset.select_month(month)
        result.day_counts[month] = len(month_days)
        if len(month_days) == 0:
            continue
        result.rasters[month] = Raster.on_grid(
            cellwise_percentile(month_days.stack, percentile),
            series.grid,
            name=f"hi_p{percentile:g}_{window.label}_m{month:02d}",
        )
    return result


@dataclass(frozen=True)
class MonthlyThresholds:
    """Threshold raster per calendar month (1-12) on one grid."""
    rasters: Dict[int, Raster]
    grid: Grid
    percentile: float = DEFAULT_PERCENTILE
    missing: Tuple[int, ...] = ()

    def __post_init__(self):
        for month, raster in self.rasters.items():
            if month not in MONTHS:
                raise ValueError(f"Threshold month must be 1-12, got {month}")
            if not raster.grid.matches(self.grid):
                raise RasterError(f"Threshold for month {month} is not on the threshold grid")
        missing = tuple(sorted(set(self.missing) | {m for m in MONTHS if m not in self.rasters}))
        object.__setattr__(self, "missing", missing)

    def for_month(self, month: int) -> Raster:
        """
        Threshold raster for calendar month `month`.

        Raises:
            MissingThresholdError: If the month has no complete baseline
        """
        if month not in self.rasters:
            raise MissingThresholdError(
                f"No baseline threshold for month {month}; "
                f"missing months: {list(self.missing)}"
            )
        return self.rasters[month]

    def to_stack(self) -> np.ndarray:
        """(12, rows, cols) array; band m-1 is month m, missing months all-NaN."""
        stack = np.full((12,) + tuple(self.grid.shape), np.nan)
        for month, raster in self.rasters.items():
            stack[month - 1] = raster.data
        return stack

    def write(self, path: Union[str, Path], tags: Optional[dict] = None) -> Path:
        """Write as a 12-band GeoTIFF; missing months are listed in a tag."""
        all_tags = {
            "percentile": self.percentile,
            "missing_months": ",".join(str(m) for m in self.missing),
            "crs": str(self.grid.crs),
            "resolution": self.grid.resolution,
        }
        if tags:
            all_tags.update(tags)
        atomic_write_raster(
            self.to_stack().astype("float32"),
            path,
            transform=self.grid.transform,
            crs=self.grid.crs,
            nodata=float("nan"),
            band_descriptions=[f"month_{m:02d}" for m in MONTHS],
            tags=all_tags,
        )
        return Path(path)

    @classmethod
    def read(cls, path: Union[str, Path]) -> "MonthlyThresholds":
        """Read a 12-band threshold GeoTIFF written by `write`."""
        with rasterio.open(path) as src:
            if src.count != 12:
                raise RasterError(f"Expected 12 bands in {path}, found {src.count}")
            stack = src.read().astype("float64")
            tags = src.tags()
            grid = Grid(shape=(src.height, src.width), transform=src.transform, crs=src.crs)

        missing_tag = tags.get("missing_months", "")
        missing = tuple(int(m) for m in missing_tag.split(",") if m.strip())
        rasters = {
            m: Raster.on_grid(stack[m - 1], grid, name=f"hi_threshold_m{m:02d}")
            for m in MONTHS if m not in missing
        }
        return cls(
            rasters=rasters,
            grid=grid,
            percentile=float(tags.get("percentile", DEFAULT_PERCENTILE)),
            missing=missing,
        )


def combine_decades(
    decades: Sequence[DecadePercentiles],
    grid: Grid,
    logger=None,
) -> MonthlyThresholds:
    """
    Cell-wise mean of the decade percentiles for each month.

    A month is missing if any decade lacks observations for it; missing
    months are logged as a warning when a logger is given.
    """
    if not decades:
        raise ValueError("At least one decade is required")
    percentile = decades[0].percentile
    rasters = {}
    for month in MONTHS:
        if any(month not in d.rasters for d in decades):
            continue
        stack = np.stack([d.rasters[month].data for d in decades])
        rasters[month] = Raster.on_grid(
            stack.mean(axis=0), grid, name=f"hi_threshold_m{month:02d}"
        )
    thresholds = MonthlyThresholds(rasters=rasters, grid=grid, percentile=percentile)

    if logger is not None:
        logger.info("Monthly thresholds built", extra={
            "percentile": percentile,
            "decades": [d.window.describe() for d in decades],
            "days_per_decade_month": {
                d.window.label: d.day_counts for d in decades
            },
            "missing_months": list(thresholds.missing),
        })
        if thresholds.missing:
            logger.warning("Months without a complete baseline", extra={
                "missing_months": list(thresholds.missing),
            })

    return thresholds


def build_monthly_thresholds(
    series: DailyRasterSeries,
    decades: Sequence[DateWindow],
    percentile: float = DEFAULT_PERCENTILE,
    logger=None,
) -> MonthlyThresholds:
    """
    Monthly thresholds: per-decade percentiles averaged across decades.

    Args:
        series: Daily Heat Index series covering the baseline
        decades: Baseline sub-periods (normally three decades)
        percentile: Percentile level (90)
        logger: Optional JSONL logger

    Returns:
        MonthlyThresholds with any incomplete months listed in `missing`
    """
    per_decade = [decade_percentiles(series, window, percentile) for window in decades]
    return combine_decades(per_decade, series.grid, logger=logger)
