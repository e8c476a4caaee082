"""
Resolution harmonization between the coarse hazard grid and the fine grid.

Two policies, never mixed within one run:
- downsample: hazard stays on its native (ERA5-Land, ~0.1°) grid; fine
  layers are aggregated down to it. Density/index fields use the cell mean,
  count fields use the cell sum.
- upsample: hazard is interpolated onto the fine grid with a cubic kernel.
  This adds visual smoothness only, no information.

The fine grid is the state's bounding box at `fine_resolution_deg`.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from heat_risk.raster_utils import Grid, Raster, resample_to_grid

POLICIES = ("downsample", "upsample")

# Layer kind -> aggregation kernel when coarsening
AGGREGATION_BY_KIND = {
    "density": "average",
    "index": "average",
    "count": "sum",
}

UPSAMPLE_NOTE = (
    "Hazard interpolated from its native grid with a cubic kernel; "
    "the upsampled surface adds no information beyond the native resolution."
)


def aggregation_for(kind: str) -> str:
    """
    Coarsening kernel for a layer kind ('density', 'index' or 'count').
    """
    try:
        return AGGREGATION_BY_KIND[kind]
    except KeyError as e:
        raise ValueError(
            f"Unknown layer kind '{kind}'. Valid: {sorted(AGGREGATION_BY_KIND)}"
        ) from e


def fine_grid(bounds, resolution_deg: float, crs="EPSG:4326") -> Grid:
    """Fine analysis grid covering `bounds` (west, south, east, north)."""
    return Grid.from_bounds(bounds, resolution_deg, crs)


def coarsen(raster: Raster, grid: Grid, kind: str = "density", name: Optional[str] = None) -> Raster:
    """Aggregate a fine raster onto a coarser grid with the kind's kernel."""
    return resample_to_grid(raster, grid, aggregation_for(kind), name=name)


def upsample_hazard(hazard: Raster, grid: Grid, kernel: str = "cubic") -> Raster:
    """Interpolate the hazard raster onto the fine grid (default cubic)."""
    return resample_to_grid(hazard, grid, kernel, name=hazard.name)


@dataclass
class HarmonizedLayers:
    """Hazard, exposure and vulnerability on one analysis grid."""
    policy: str
    grid: Grid
    hazard: Raster
    exposure: Raster
    vulnerability: Raster
    native_hazard_resolution: tuple
    notes: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> dict:
        return {
            "policy": self.policy,
            "grid": self.grid.describe(),
            "native_hazard_resolution": list(self.native_hazard_resolution),
            "analysis_resolution": list(self.grid.resolution),
            "notes": self.notes,
        }


def harmonize_layers(
    policy: str,
    hazard: Raster,
    exposure: Raster,
    vulnerability: Raster,
    fine: Grid,
    kernels: Optional[dict] = None,
    logger=None,
) -> HarmonizedLayers:
    """
    Bring hazard, exposure and vulnerability onto one grid per `policy`.

    Exposure and vulnerability are expected on (or are first brought onto)
    the fine grid with the average kernel.

    Args:
        policy: 'downsample' or 'upsample'
        hazard: Hazard on its native grid
        exposure: Population density
        vulnerability: Composite vulnerability index
        fine: Fine analysis grid
        kernels: Optional overrides: {'hazard_upsample': ..., 'exposure': ...,
                 'vulnerability': ...}
        logger: Optional JSONL logger

    Returns:
        HarmonizedLayers on the analysis grid
    """
    if policy not in POLICIES:
        raise ValueError(f"Unknown resolution policy '{policy}'. Valid: {list(POLICIES)}")
    kernels = kernels or {}

    exposure_fine = resample_to_grid(exposure, fine, kernels.get("to_fine", "average"))
    vulnerability_fine = resample_to_grid(vulnerability, fine, kernels.get("to_fine", "average"))

    notes = {}
    if policy == "downsample":
        grid = hazard.grid
        hazard_out = hazard
        exposure_out = resample_to_grid(
            exposure_fine, grid, kernels.get("exposure", aggregation_for("density")),
            name=exposure.name,
        )
        vulnerability_out = resample_to_grid(
            vulnerability_fine, grid, kernels.get("vulnerability", aggregation_for("index")),
            name=vulnerability.name,
        )
    else:
        grid = fine
        hazard_out = upsample_hazard(hazard, fine, kernels.get("hazard_upsample", "cubic"))
        exposure_out = exposure_fine
        vulnerability_out = vulnerability_fine
        notes["hazard"] = UPSAMPLE_NOTE

    layers = HarmonizedLayers(
        policy=policy,
        grid=grid,
        hazard=hazard_out,
        exposure=exposure_out,
        vulnerability=vulnerability_out,
        native_hazard_resolution=hazard.resolution,
        notes=notes,
    )

    if logger is not None:
        logger.info("Layers harmonized", extra=layers.describe())

    return layers
