"""
I/O utilities with atomic writes and safe reads.

All outputs are written via temp file -> rename/replace, so an interrupted
stage never leaves a half-written table or GeoTIFF behind.
GeoParquet is the internal format for boundaries; CSV is the export format
for the district table; GeoTIFF for rasters.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
import yaml

from heat_risk.paths import PARAMS_PATH


# =============================================================================
# Atomic Write Utilities
# =============================================================================

@contextmanager
def atomic_target(
    target_path: Union[str, Path],
    suffix: Optional[str] = None,
) -> Iterator[Path]:
    """
    Context manager yielding a temporary path next to `target_path`.

    The caller writes to the yielded path with any library; on success the
    temp file replaces the target, on error it is removed and the target is
    left untouched.

    Args:
        target_path: Final destination path
        suffix: Optional suffix for temp file (defaults to target suffix)

    Yields:
        Temporary path in the target directory
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    if suffix is None:
        suffix = target_path.suffix or ".tmp"

    fd, temp_name = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    temp_path = Path(temp_name)

    try:
        yield temp_path
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


@contextmanager
def atomic_write(
    target_path: Union[str, Path],
    mode: str = "w",
    suffix: Optional[str] = None,
):
    """
    Context manager for atomic text/binary file writes.

    Example:
        with atomic_write("output.txt") as f:
            f.write("data")
    """
    with atomic_target(target_path, suffix=suffix) as temp_path:
        with open(temp_path, mode) as f:
            yield f


def atomic_write_df(
    df: pd.DataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (format from extension).
    """
    suffix = Path(target_path).suffix.lower()
    if suffix not in (".parquet", ".csv"):
        raise ValueError(f"Unsupported format: {suffix}")

    with atomic_target(target_path) as temp_path:
        if suffix == ".parquet":
            df.to_parquet(temp_path, **kwargs)
        else:
            df.to_csv(temp_path, **kwargs)


def atomic_write_gdf(
    gdf: gpd.GeoDataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.
    """
    suffix = Path(target_path).suffix.lower()
    if suffix not in (".parquet", ".geojson", ".gpkg"):
        raise ValueError(f"Unsupported geo format: {suffix}")

    with atomic_target(target_path) as temp_path:
        if suffix == ".parquet":
            gdf.to_parquet(temp_path, **kwargs)
        elif suffix == ".geojson":
            gdf.to_file(temp_path, driver="GeoJSON", **kwargs)
        else:
            gdf.to_file(temp_path, driver="GPKG", **kwargs)


def atomic_write_raster(
    bands: np.ndarray,
    target_path: Union[str, Path],
    transform,
    crs,
    nodata: Optional[float] = None,
    band_descriptions: Optional[list] = None,
    tags: Optional[dict] = None,
    **profile_overrides,
) -> None:
    """
    Atomically write a 2-D or 3-D (bands, rows, cols) array as a GeoTIFF.

    Args:
        bands: Array of shape (rows, cols) or (count, rows, cols)
        target_path: Destination .tif path
        transform: Affine transform of the grid
        crs: Coordinate reference system of the grid
        nodata: Nodata value recorded in the file (NaN allowed for floats)
        band_descriptions: Optional per-band descriptions
        tags: Optional dataset-level tags (resolution, region, etc.)
        **profile_overrides: Extra creation options (compress, photometric, ...)
    """
    data = np.asarray(bands)
    if data.ndim == 2:
        data = data[np.newaxis, ...]
    if data.ndim != 3:
        raise ValueError(f"Expected 2-D or 3-D array, got shape {data.shape}")

    count, height, width = data.shape
    profile = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": count,
        "dtype": str(data.dtype),
        "crs": crs,
        "transform": transform,
        "compress": "deflate",
    }
    if nodata is not None:
        profile["nodata"] = nodata
    profile.update(profile_overrides)

    with atomic_target(target_path, suffix=".tif") as temp_path:
        with rasterio.open(temp_path, "w", **profile) as dst:
            dst.write(data)
            if band_descriptions:
                for i, desc in enumerate(band_descriptions, start=1):
                    dst.set_band_description(i, str(desc))
            if tags:
                dst.update_tags(**{k: str(v) for k, v in tags.items()})


def atomic_write_json(
    data: Any,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """Atomically write JSON data."""
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)

    with atomic_write(target_path, mode="w", suffix=".json") as f:
        json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def read_params(path: Optional[Union[str, Path]] = None) -> dict:
    """Read the pipeline parameters (configs/params.yml by default)."""
    return read_yaml(path or PARAMS_PATH)


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_gdf(
    path: Union[str, Path],
    **kwargs,
) -> gpd.GeoDataFrame:
    """
    Read a GeoDataFrame from GeoParquet, GeoJSON, GeoPackage or Shapefile.
    """
    path = Path(path)
    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)
