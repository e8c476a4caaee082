"""
Colour-mapped rendering of layers to RGBA GeoTIFFs.

Each layer has a fixed display range and a hex palette (linear ramp between
the palette stops). Values are clipped to the range, indexed into a 256-entry
RGBA lookup table, and NaN cells are transparent.
"""

from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np
from matplotlib.colors import LinearSegmentedColormap

from heat_risk.io_utils import atomic_write_raster
from heat_risk.raster_utils import Raster

LUT_SIZE = 256

HAZARD_PALETTE = ["#ffffcc", "#ffeda0", "#fed976", "#feb24c", "#fd8d3c", "#fc4e2a", "#e31a1c", "#b10026"]
POPULATION_PALETTE = ["#ffffe5", "#fec44f", "#d95f0e"]
VULNERABILITY_PALETTE = ["#f7f7f7", "#d95f0e"]
RISK_PALETTES = {
    "downsample": ["#4575b4", "#91bfdb", "#e0f3f8", "#ffffbf", "#fee090", "#f46d43", "#d73027"],
    "upsample": ["#08306b", "#08519c", "#3182bd", "#fd8d3c", "#f03b20", "#bd0026", "#800026"],
}

DEFAULT_STYLES = {
    "hazard": {"min": 0, "max": 30, "palette": HAZARD_PALETTE},
    "exposure": {"min": 0, "max": 1000, "palette": POPULATION_PALETTE},
    "vulnerability": {"min": 0, "max": 1, "palette": VULNERABILITY_PALETTE},
    "risk": {"min": 0, "max": 0.1, "palette": RISK_PALETTES["upsample"]},
}


def palette_lut(palette: Sequence[str], size: int = LUT_SIZE) -> np.ndarray:
    """(size, 4) uint8 RGBA table ramping linearly through the palette stops."""
    if len(palette) < 2:
        raise ValueError("A palette needs at least two colours")
    cmap = LinearSegmentedColormap.from_list("palette", list(palette), N=size)
    return np.round(cmap(np.linspace(0, 1, size)) * 255).astype(np.uint8)


def style_for(layer: str, policy: Optional[str] = None, styles: Optional[Dict[str, dict]] = None) -> dict:
    """
    Display style of a layer: config `styles` override the defaults; the
    risk palette follows the resolution policy unless configured.
    """
    style = dict(DEFAULT_STYLES[layer]) if layer in DEFAULT_STYLES else {}
    if layer == "risk" and policy in RISK_PALETTES:
        style["palette"] = RISK_PALETTES[policy]
    if styles and layer in styles:
        configured = dict(styles[layer])
        palettes = configured.pop("palettes", None)
        style.update(configured)
        if palettes and policy in palettes:
            style["palette"] = palettes[policy]
    missing = {"min", "max", "palette"} - set(style)
    if missing:
        raise KeyError(f"Style for '{layer}' is missing {sorted(missing)}")
    return style


def visualize(
    values: np.ndarray,
    vmin: float,
    vmax: float,
    palette: Sequence[str],
) -> np.ndarray:
    """
    Map values to RGBA (rows, cols, 4) uint8.

    Values are clipped to [vmin, vmax]; NaN cells get alpha 0.
    """
    if vmax <= vmin:
        raise ValueError(f"Display range must be increasing, got [{vmin}, {vmax}]")
    values = np.asarray(values, dtype="float64")
    valid = np.isfinite(values)
    scaled = np.clip((np.where(valid, values, vmin) - vmin) / (vmax - vmin), 0.0, 1.0)
    indices = np.round(scaled * (LUT_SIZE - 1)).astype(np.intp)
    rgba = palette_lut(palette)[indices]
    rgba[~valid, 3] = 0
    return rgba


def write_visualized(
    raster: Raster,
    path: Union[str, Path],
    style: dict,
    tags: Optional[dict] = None,
) -> Path:
    """Write a 4-band RGBA GeoTIFF of `raster` rendered with `style`."""
    rgba = visualize(raster.data, style["min"], style["max"], style["palette"])
    all_tags = {
        "layer": raster.name,
        "crs": str(raster.crs),
        "resolution": raster.resolution,
        "bounds": raster.bounds,
        "display_min": style["min"],
        "display_max": style["max"],
        "palette": ",".join(style["palette"]),
    }
    if tags:
        all_tags.update(tags)
    atomic_write_raster(
        np.moveaxis(rgba, -1, 0),
        path,
        transform=raster.transform,
        crs=raster.crs,
        band_descriptions=["red", "green", "blue", "alpha"],
        tags=all_tags,
        photometric="RGB",
        alpha="YES",
    )
    return Path(path)
