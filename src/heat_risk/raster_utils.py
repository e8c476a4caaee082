"""
Raster containers and processing utilities with hardened QA.

Rasters carry their grid (shape, affine transform, CRS) with them, so that
resolution is never implicit:
- Combining rasters requires identical grids (GridMismatchError otherwise)
- Changing grids requires resample_to_grid() with a declared kernel
- Missing cells are NaN; coercing them to a value is always an explicit call
- Zonal statistics reproject polygons to the raster CRS and assert overlap
"""

import math
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from affine import Affine
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.features import rasterize
from rasterio.transform import from_origin, rowcol
from rasterio.warp import reproject
from rasterio.windows import Window
from rasterstats import zonal_stats

from heat_risk.io_utils import atomic_write_raster
from heat_risk.qa import safe_reproject

# Sentinel used when handing float arrays with NaN holes to rasterstats
ZONAL_NODATA = -9999.0


class RasterError(Exception):
    """Raised when raster operations fail validation."""
    pass


class GridMismatchError(RasterError):
    """Raised when rasters on different grids are combined without resampling."""
    pass


# =============================================================================
# Grid / Raster containers
# =============================================================================

@dataclass(frozen=True)
class Grid:
    """Shape, affine transform and CRS of a raster grid."""
    shape: Tuple[int, int]
    transform: Affine
    crs: CRS

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        resolution: float,
        crs: Union[str, CRS],
    ) -> "Grid":
        """
        Build a north-up grid covering `bounds` at a square cell size.

        The grid is anchored at the top-left corner and extended to fully
        cover the right/bottom edges.
        """
        west, south, east, north = bounds
        if resolution <= 0:
            raise RasterError(f"Resolution must be positive, got {resolution}")
        width = max(1, int(math.ceil(round((east - west) / resolution, 9))))
        height = max(1, int(math.ceil(round((north - south) / resolution, 9))))
        transform = from_origin(west, north, resolution, resolution)
        return cls(shape=(height, width), transform=transform, crs=CRS.from_user_input(crs))

    @property
    def resolution(self) -> Tuple[float, float]:
        """Pixel size (x, y)."""
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(left, bottom, right, top)."""
        height, width = self.shape
        left, top = self.transform * (0, 0)
        right, bottom = self.transform * (width, height)
        return (min(left, right), min(top, bottom), max(left, right), max(top, bottom))

    def matches(self, other: "Grid") -> bool:
        return (
            tuple(self.shape) == tuple(other.shape)
            and self.transform.almost_equals(other.transform)
            and CRS.from_user_input(self.crs) == CRS.from_user_input(other.crs)
        )

    def describe(self) -> Dict[str, Any]:
        """Grid description for logs and metadata sidecars."""
        return {
            "crs": str(self.crs),
            "shape": list(self.shape),
            "resolution": list(self.resolution),
            "bounds": list(self.bounds),
        }


@dataclass(frozen=True)
class Raster:
    """
    A single-band raster: float array plus its georeferencing.

    The array is copied to float64 and made read-only; derived rasters are
    produced with `with_data`, never by mutating in place.
    """
    data: np.ndarray
    transform: Affine
    crs: CRS
    name: str = ""

    def __post_init__(self):
        arr = np.array(self.data, dtype="float64")
        if arr.ndim != 2:
            raise RasterError(f"Raster data must be 2-D, got shape {arr.shape} ({self.name})")
        arr.setflags(write=False)
        object.__setattr__(self, "data", arr)
        object.__setattr__(self, "crs", CRS.from_user_input(self.crs))

    @classmethod
    def on_grid(cls, data: np.ndarray, grid: Grid, name: str = "") -> "Raster":
        data = np.asarray(data)
        if tuple(data.shape) != tuple(grid.shape):
            raise GridMismatchError(
                f"Array shape {data.shape} does not match grid shape {grid.shape} ({name})"
            )
        return cls(data=data, transform=grid.transform, crs=grid.crs, name=name)

    @property
    def grid(self) -> Grid:
        return Grid(shape=self.data.shape, transform=self.transform, crs=self.crs)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def resolution(self) -> Tuple[float, float]:
        return self.grid.resolution

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return self.grid.bounds

    def with_data(self, data: np.ndarray, name: Optional[str] = None) -> "Raster":
        """New raster on the same grid with different values."""
        return Raster.on_grid(data, self.grid, name=self.name if name is None else name)


def assert_same_grid(*rasters: Raster, context: str = "") -> Grid:
    """
    Assert that all rasters share one grid and return it.

    Raises:
        GridMismatchError: If any raster differs in shape, transform or CRS
    """
    if not rasters:
        raise RasterError("No rasters given")
    grid = rasters[0].grid
    for r in rasters[1:]:
        if not grid.matches(r.grid):
            raise GridMismatchError(
                f"Grid mismatch between '{rasters[0].name}' {grid.describe()} and "
                f"'{r.name}' {r.grid.describe()}"
                + (f" ({context})" if context else "")
            )
    return grid


# =============================================================================
# Daily series
# =============================================================================

@dataclass(frozen=True)
class DailyRasterSeries:
    """
    Date-ordered stack of single-day rasters for one variable on one grid.

    `stack` has shape (days, rows, cols). Dates are unique and ascending.
    """
    dates: Tuple[date, ...]
    stack: np.ndarray
    transform: Affine
    crs: CRS
    name: str = ""

    def __post_init__(self):
        dates = tuple(self.dates)
        arr = np.array(self.stack, dtype="float64")
        if arr.ndim != 3:
            raise RasterError(f"Series stack must be 3-D, got shape {arr.shape} ({self.name})")
        if arr.shape[0] != len(dates):
            raise RasterError(
                f"Series has {len(dates)} dates but {arr.shape[0]} layers ({self.name})"
            )
        if any(b <= a for a, b in zip(dates, dates[1:])):
            raise RasterError(f"Series dates must be unique and ascending ({self.name})")
        arr.setflags(write=False)
        object.__setattr__(self, "dates", dates)
        object.__setattr__(self, "stack", arr)
        object.__setattr__(self, "crs", CRS.from_user_input(self.crs))

    @classmethod
    def from_rasters(
        cls,
        items: Iterable[Tuple[date, Raster]],
        name: str = "",
        grid: Optional[Grid] = None,
    ) -> "DailyRasterSeries":
        """
        Build a series from (date, Raster) pairs; pairs are sorted by date.

        All rasters must share a grid. An empty input needs `grid`.
        """
        pairs = sorted(items, key=lambda item: item[0])
        dates = [d for d, _ in pairs]
        if len(set(dates)) != len(dates):
            raise RasterError(f"Duplicate dates in series ({name})")
        if not pairs:
            if grid is None:
                raise RasterError(f"Cannot build an empty series without a grid ({name})")
            stack = np.empty((0,) + tuple(grid.shape))
            return cls(dates=(), stack=stack, transform=grid.transform, crs=grid.crs, name=name)

        ref = assert_same_grid(*[r for _, r in pairs], context=f"series {name}")
        stack = np.stack([r.data for _, r in pairs])
        return cls(dates=tuple(dates), stack=stack, transform=ref.transform, crs=ref.crs, name=name)

    @property
    def grid(self) -> Grid:
        return Grid(shape=self.stack.shape[1:], transform=self.transform, crs=self.crs)

    def __len__(self) -> int:
        return len(self.dates)

    def __iter__(self) -> Iterator[Tuple[date, Raster]]:
        for i, d in enumerate(self.dates):
            yield d, self.raster_at(i)

    def raster_at(self, index: int) -> Raster:
        d = self.dates[index]
        return Raster.on_grid(self.stack[index], self.grid, name=f"{self.name}_{d:%Y%m%d}")

    def _subset(self, keep: np.ndarray, name: Optional[str] = None) -> "DailyRasterSeries":
        idx = np.flatnonzero(keep)
        return DailyRasterSeries(
            dates=tuple(self.dates[i] for i in idx),
            stack=self.stack[idx],
            transform=self.transform,
            crs=self.crs,
            name=self.name if name is None else name,
        )

    def select_dates(self, start: date, end: date) -> "DailyRasterSeries":
        """Days with start <= date <= end."""
        keep = np.array([start <= d <= end for d in self.dates], dtype=bool)
        return self._subset(keep)

    def select_month(self, month: int) -> "DailyRasterSeries":
        """Days falling in calendar month `month`, any year."""
        keep = np.array([d.month == month for d in self.dates], dtype=bool)
        return self._subset(keep)

    def map(
        self,
        fn: Callable[[np.ndarray], np.ndarray],
        name: Optional[str] = None,
    ) -> "DailyRasterSeries":
        """Apply a per-day array transform, keeping dates and grid."""
        if len(self) == 0:
            out = np.empty_like(self.stack)
        else:
            out = np.stack([fn(layer) for layer in self.stack])
        return DailyRasterSeries(
            dates=self.dates,
            stack=out,
            transform=self.transform,
            crs=self.crs,
            name=self.name if name is None else name,
        )

    def months(self) -> List[int]:
        return [d.month for d in self.dates]


# =============================================================================
# Reading / writing
# =============================================================================

def _window_for_bounds(src, bounds: Tuple[float, float, float, float]) -> Window:
    """Pixel window covering `bounds` (expanded outward), clipped to the dataset."""
    west, south, east, north = bounds
    rows, cols = rowcol(src.transform, [west, east], [north, south], op=math.floor)
    row_start = max(0, min(rows))
    col_start = max(0, min(cols))
    row_stop = min(src.height, max(rows) + 1)
    col_stop = min(src.width, max(cols) + 1)
    if row_stop <= row_start or col_stop <= col_start:
        raise RasterError(f"Bounds {bounds} do not intersect raster {src.name}")
    return Window(col_start, row_start, col_stop - col_start, row_stop - row_start)


def read_raster(
    path: Union[str, Path],
    band: int = 1,
    bounds: Optional[Tuple[float, float, float, float]] = None,
    nodata: Optional[float] = None,
    name: Optional[str] = None,
) -> Raster:
    """
    Read one band of a raster file into a Raster, nodata -> NaN.

    Args:
        path: Path to raster file
        band: 1-based band index
        bounds: Optional (west, south, east, north) in the raster CRS; only the
                covering window is read
        nodata: Nodata value (overrides file metadata if provided)
        name: Raster name (defaults to file stem)
    """
    path = Path(path)
    with rasterio.open(path) as src:
        if src.crs is None:
            raise RasterError(f"Raster has no CRS: {path}")
        if bounds is not None:
            window = _window_for_bounds(src, bounds)
            data = src.read(band, window=window)
            transform = src.window_transform(window)
        else:
            data = src.read(band)
            transform = src.transform
        crs = src.crs
        effective_nodata = nodata if nodata is not None else src.nodata

    data = data.astype("float64")
    if effective_nodata is not None and not np.isnan(effective_nodata):
        data[data == effective_nodata] = np.nan

    return Raster(data=data, transform=transform, crs=crs, name=name or path.stem)


def write_raster(
    raster: Raster,
    path: Union[str, Path],
    dtype: str = "float32",
    tags: Optional[Dict[str, Any]] = None,
) -> Path:
    """Atomically write a Raster as a single-band GeoTIFF with NaN nodata."""
    path = Path(path)
    all_tags = {
        "name": raster.name,
        "crs": str(raster.crs),
        "resolution": raster.resolution,
        "bounds": raster.bounds,
    }
    if tags:
        all_tags.update(tags)
    atomic_write_raster(
        raster.data.astype(dtype),
        path,
        transform=raster.transform,
        crs=raster.crs,
        nodata=float("nan"),
        band_descriptions=[raster.name],
        tags=all_tags,
    )
    return path


# =============================================================================
# Resampling
# =============================================================================

def to_resampling(resampling: Union[str, Resampling]) -> Resampling:
    """
    Convert a kernel name ('nearest', 'average', 'sum', 'cubic', ...) to a
    rasterio Resampling enum. 'mean' and 'bicubic' are accepted aliases.
    """
    if isinstance(resampling, Resampling):
        return resampling
    if isinstance(resampling, str):
        key = {"mean": "average", "bicubic": "cubic"}.get(resampling, resampling)
        try:
            return getattr(Resampling, key)
        except AttributeError as e:
            raise ValueError(
                f"Unknown resampling '{resampling}'. "
                f"Valid: {[r.name for r in Resampling]}"
            ) from e
    raise TypeError("resampling must be a str or rasterio.enums.Resampling")


def resample_to_grid(
    raster: Raster,
    grid: Grid,
    resampling: Union[str, Resampling],
    name: Optional[str] = None,
) -> Raster:
    """
    Resample/reproject a raster onto `grid` with an explicit kernel.

    NaN cells are treated as nodata on both sides. If the raster is already on
    the grid it is returned unchanged.
    """
    if raster.grid.matches(grid):
        return raster if name is None else raster.with_data(raster.data, name=name)

    source = np.array(raster.data, dtype="float64")
    destination = np.full(tuple(grid.shape), np.nan, dtype="float64")
    reproject(
        source=source,
        destination=destination,
        src_transform=raster.transform,
        src_crs=raster.crs,
        src_nodata=np.nan,
        dst_transform=grid.transform,
        dst_crs=grid.crs,
        dst_nodata=np.nan,
        resampling=to_resampling(resampling),
    )
    return Raster.on_grid(destination, grid, name=raster.name if name is None else name)


# =============================================================================
# Region masks and missing-value policy
# =============================================================================

def region_mask(
    geometries: Union[gpd.GeoDataFrame, gpd.GeoSeries, Sequence[Any]],
    grid: Grid,
    all_touched: bool = False,
) -> np.ndarray:
    """
    Boolean mask of grid cells inside the given polygons (cell-centre rule).

    GeoDataFrame/GeoSeries inputs are reprojected to the grid CRS first.
    """
    if isinstance(geometries, (gpd.GeoDataFrame, gpd.GeoSeries)):
        if geometries.crs is None:
            raise RasterError("Region geometries have no CRS set")
        geoms = geometries.to_crs(grid.crs)
        geoms = geoms.geometry if isinstance(geoms, gpd.GeoDataFrame) else geoms
        shapes = [(g, 1) for g in geoms if g is not None and not g.is_empty]
    else:
        shapes = [(g, 1) for g in geometries]

    if not shapes:
        raise RasterError("No geometries to rasterize for region mask")

    burned = rasterize(
        shapes,
        out_shape=tuple(grid.shape),
        transform=grid.transform,
        fill=0,
        dtype="uint8",
        all_touched=all_touched,
    )
    return burned.astype(bool)


def clip_to_region(raster: Raster, mask: np.ndarray, name: Optional[str] = None) -> Raster:
    """Set cells outside the region mask to NaN."""
    if mask.shape != raster.shape:
        raise GridMismatchError(
            f"Mask shape {mask.shape} does not match raster shape {raster.shape} ({raster.name})"
        )
    return raster.with_data(np.where(mask, raster.data, np.nan), name=name)


def fill_missing(raster: Raster, value: float = 0.0, name: Optional[str] = None) -> Raster:
    """Replace NaN cells with `value` (explicit no-data coercion)."""
    return raster.with_data(np.where(np.isnan(raster.data), value, raster.data), name=name)


def apply_scale_offset(
    values: np.ndarray,
    scale: float = 1.0,
    offset: float = 0.0,
    valid_min: Optional[float] = None,
    valid_max: Optional[float] = None,
    fill_value: Optional[float] = None,
) -> np.ndarray:
    """
    Apply fill value masking, scale/offset and valid range to raw values.

    Args:
        values: Array of raw raster values
        scale: Scale factor (multiply)
        offset: Offset (add after scaling)
        valid_min: Minimum valid value after scaling (below -> NaN)
        valid_max: Maximum valid value after scaling (above -> NaN)
        fill_value: Raw fill value to mask before scaling

    Returns:
        Float array with invalid values as NaN
    """
    result = np.asarray(values, dtype="float64")

    if fill_value is not None:
        result = np.where(result == fill_value, np.nan, result)

    result = result * scale + offset

    if valid_min is not None:
        result = np.where(result < valid_min, np.nan, result)
    if valid_max is not None:
        result = np.where(result > valid_max, np.nan, result)

    return result


def compute_nodata_fraction(values: np.ndarray) -> float:
    """Fraction of NaN cells in an array (0-1)."""
    values = np.asarray(values, dtype="float64")
    return float(np.isnan(values).sum() / values.size) if values.size > 0 else 0.0


def raster_summary(raster: Raster, mask: Optional[np.ndarray] = None) -> Dict[str, Any]:
    """Value and grid summary for logging (restricted to `mask` if given)."""
    values = raster.data if mask is None else raster.data[mask]
    valid = values[np.isfinite(values)]
    summary = {
        "name": raster.name,
        **raster.grid.describe(),
        "cells": int(values.size),
        "valid_cells": int(valid.size),
        "nodata_fraction": compute_nodata_fraction(values),
    }
    if valid.size:
        summary.update({
            "min": float(valid.min()),
            "max": float(valid.max()),
            "mean": float(valid.mean()),
        })
    return summary


# =============================================================================
# Zonal statistics
# =============================================================================

def check_bounds_overlap(
    raster_bounds: Tuple[float, float, float, float],
    polygon_bounds: Tuple[float, float, float, float],
    context: str = "",
) -> bool:
    """
    Check that raster and polygon bounds overlap.

    Raises:
        RasterError: If bounds do not overlap
    """
    r_left, r_bottom, r_right, r_top = raster_bounds
    p_minx, p_miny, p_maxx, p_maxy = polygon_bounds

    overlaps = not (
        r_right < p_minx or
        r_left > p_maxx or
        r_top < p_miny or
        r_bottom > p_maxy
    )

    if not overlaps:
        raise RasterError(
            f"Raster and polygon bounds do not overlap. "
            f"Raster: {raster_bounds}, Polygons: {polygon_bounds} ({context})"
        )

    return True


def zonal_stats_hardened(
    polygons: gpd.GeoDataFrame,
    raster: Raster,
    stats: Sequence[str] = ("mean", "count"),
    all_touched: bool = False,
    prefix: str = "",
) -> Tuple[gpd.GeoDataFrame, Dict[str, Any]]:
    """
    Compute zonal statistics of an in-memory raster with QA checks.

    - Reproject polygons to the raster CRS
    - Assert overlap between polygon bounds and raster bounds
    - NaN cells are excluded (never counted as zero)
    - Pixel counts per polygon are returned for QA

    Args:
        polygons: GeoDataFrame of polygons (row order is preserved)
        raster: Raster to summarize
        stats: Statistics to compute (rasterstats names: mean, std, max, ...)
        all_touched: If True, include all pixels touched by polygon
        prefix: Prefix for output column names

    Returns:
        Tuple of (copy of polygons with stat columns, QA stats dictionary)
    """
    if polygons.crs is None:
        raise RasterError("Polygons have no CRS set")

    raster_epsg = raster.crs.to_epsg()
    if raster_epsg is None:
        polygons_proj = polygons.to_crs(raster.crs)
    else:
        polygons_proj = safe_reproject(polygons, raster_epsg, "polygons for zonal stats")

    check_bounds_overlap(raster.bounds, tuple(polygons_proj.total_bounds), f"raster: {raster.name}")

    stats_to_compute = list(dict.fromkeys(list(stats) + ["count"]))
    filled = np.where(np.isnan(raster.data), ZONAL_NODATA, raster.data)

    results = zonal_stats(
        list(polygons_proj.geometry),
        filled,
        affine=raster.transform,
        stats=stats_to_compute,
        nodata=ZONAL_NODATA,
        all_touched=all_touched,
    )

    result_df = polygons.copy()
    for stat in stats:
        col_name = f"{prefix}{stat}"
        result_df[col_name] = [
            np.nan if (not r or r.get(stat) is None) else float(r[stat]) for r in results
        ]

    pixel_counts = [int(r.get("count") or 0) if r else 0 for r in results]
    result_df[f"{prefix}pixel_count"] = pixel_counts

    qa_stats = {
        "raster_name": raster.name,
        "raster_crs": str(raster.crs),
        "raster_bounds": raster.bounds,
        "raster_resolution": raster.resolution,
        "polygon_count": len(polygons),
        "total_pixels": sum(pixel_counts),
        "min_pixels_per_polygon": min(pixel_counts) if pixel_counts else 0,
        "max_pixels_per_polygon": max(pixel_counts) if pixel_counts else 0,
        "mean_pixels_per_polygon": float(np.mean(pixel_counts)) if pixel_counts else 0.0,
        "zero_pixel_polygons": sum(1 for c in pixel_counts if c == 0),
    }

    return result_df, qa_stats


def log_raster_qa(qa_stats: Dict, logger=None) -> None:
    """Log zonal statistics QA summary."""
    msg = (
        f"Raster QA: {qa_stats['polygon_count']} polygons, "
        f"{qa_stats['total_pixels']} total pixels, "
        f"min={qa_stats['min_pixels_per_polygon']}, "
        f"max={qa_stats['max_pixels_per_polygon']}, "
        f"mean={qa_stats['mean_pixels_per_polygon']:.1f}, "
        f"zero_pixel={qa_stats['zero_pixel_polygons']}"
    )

    if logger:
        logger.info(msg, extra={"raster_qa": qa_stats})
    else:
        print(msg)
