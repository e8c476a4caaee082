#!/usr/bin/env python3
"""
04_build_exposure_vulnerability.py

Build the exposure and vulnerability layers on the fine (~1 km) grid.

Exposure: GPW v4.11 population density (configured year), averaged onto the
fine grid, clipped to the state, missing in-state cells = 0.

Vulnerability: 0.4 * (1 - NDVI/10000) + 0.6 * minmax(night LST °C), from
MOD13A3 NDVI and MYD11A1 night LST averaged over the study window.

Inputs:
- data/raw/population/gpw_density_YYYY.tif
- data/raw/ndvi/mod13a3_YYYYMMDD.tif
- data/raw/lst_night/myd11a1_YYYYMMDD.tif
- data/processed/geo/state.parquet

Outputs:
- data/processed/layers/exposure.tif, exposure_visualized.tif
- data/processed/layers/vulnerability.tif, vulnerability_visualized.tif
"""

import argparse
import sys
from pathlib import Path
from typing import Dict

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from heat_risk.exposure import build_exposure
from heat_risk.harmonize import fine_grid
from heat_risk.hashing import describe_inputs, validate_cache, write_metadata_sidecar
from heat_risk.io_utils import read_gdf, read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import GEO_DIR, LAYERS_DIR
from heat_risk.raster_utils import raster_summary, region_mask, resample_to_grid, write_raster
from heat_risk.render import style_for, write_visualized
from heat_risk.sources import RasterSource, raster_sources
from heat_risk.time_utils import DateWindow
from heat_risk.vulnerability import build_vulnerability, window_mean

SCRIPT_NAME = "04_build_exposure_vulnerability"

# Read padding around the state bounds (degrees)
READ_PAD_DEG = 0.05


def parse_args():
    parser = argparse.ArgumentParser(description="Build exposure and vulnerability layers")
    parser.add_argument("--force", action="store_true", help="Rebuild even if cache is valid")
    return parser.parse_args()


def cache_inputs(sources: Dict[str, RasterSource], study: DateWindow, population_year: int, state_path: Path) -> dict:
    """Raw population, NDVI and night LST files used by this stage, plus the state."""
    return {
        "state": state_path,
        "population": sources["population"].year_file(population_year),
        "ndvi": sources["ndvi"].files(study),
        "lst_night": sources["lst_night"].files(study),
    }


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        config = {
            "study": params["time_windows"]["study"],
            "exposure": params["exposure"],
            "vulnerability": params["vulnerability"],
            "fine_resolution_deg": params["resolution"]["fine_resolution_deg"],
            "to_fine_kernel": params["resolution"]["kernels"]["to_fine"],
            "sources": {k: params["sources"]["rasters"][k] for k in ("population", "ndvi", "lst_night")},
        }
        logger.log_config(config)

        state_path = GEO_DIR / "state.parquet"
        outputs = {
            "exposure": LAYERS_DIR / "exposure.tif",
            "vulnerability": LAYERS_DIR / "vulnerability.tif",
            "exposure_visualized": LAYERS_DIR / "exposure_visualized.tif",
            "vulnerability_visualized": LAYERS_DIR / "vulnerability_visualized.tif",
        }
        sources = raster_sources(params["sources"]["rasters"])
        study = DateWindow.from_config(config["study"], label="study")
        year = config["exposure"]["population_year"]

        try:
            inputs = cache_inputs(sources, study, year, state_path)
            logger.log_inputs(describe_inputs(inputs))

            if not args.force and validate_cache(outputs["vulnerability"], inputs, config) \
                    and validate_cache(outputs["exposure"], inputs, config):
                logger.info("Cache valid, skipping (use --force to rebuild)")
                return

            state = read_gdf(state_path)
            west, south, east, north = state.total_bounds
            bounds = (west - READ_PAD_DEG, south - READ_PAD_DEG, east + READ_PAD_DEG, north + READ_PAD_DEG)
            grid = fine_grid((west, south, east, north), config["fine_resolution_deg"], crs=state.crs)
            region = region_mask(state, grid)
            logger.info("Fine grid", extra={**grid.describe(), "state_cells": int(region.sum())})

            kernel = config["to_fine_kernel"]

            # Exposure
            population = sources["population"].read_year(year, bounds=bounds)
            logger.info("Population loaded", extra={"year": year, **population.grid.describe()})
            population_fine = resample_to_grid(population, grid, kernel, name="population")
            exposure = build_exposure(population_fine, region, logger=logger)

            # Vulnerability
            ndvi = window_mean(sources["ndvi"].read_series(study, bounds=bounds, logger=logger), study, "ndvi")
            lst = window_mean(sources["lst_night"].read_series(study, bounds=bounds, logger=logger), study, "lst_night")
            ndvi_fine = resample_to_grid(ndvi, grid, kernel, name="ndvi")
            vcfg = config["vulnerability"]
            vulnerability = build_vulnerability(
                ndvi_fine,
                lst,
                region,
                weights=vcfg["weights"],
                ndvi_range=tuple(vcfg["ndvi_range"]),
                lst_scale=vcfg["lst_scale"],
                lst_offset=vcfg["lst_offset"],
                logger=logger,
            )

            styles = params.get("visualization")
            write_raster(exposure, outputs["exposure"], tags={"units": "persons/km2", "year": year})
            write_raster(vulnerability, outputs["vulnerability"], tags={"units": "index 0-1"})
            write_visualized(exposure, outputs["exposure_visualized"], style_for("exposure", styles=styles))
            write_visualized(vulnerability, outputs["vulnerability_visualized"],
                             style_for("vulnerability", styles=styles))
            logger.log_outputs({k: str(v) for k, v in outputs.items()})

            summaries = {
                "exposure": raster_summary(exposure, mask=region),
                "vulnerability": raster_summary(vulnerability, mask=region),
            }
            logger.log_raster_stats(summaries)

            for key in ("exposure", "vulnerability"):
                write_metadata_sidecar(
                    output_path=outputs[key],
                    inputs=inputs,
                    config=config,
                    run_id=logger.run_id,
                    extra={
                        "grid": grid.describe(),
                        "source_resolution": list(population.resolution if key == "exposure" else ndvi.resolution),
                        "summary": summaries[key],
                    },
                )

            logger.info("SUCCESS: exposure and vulnerability layers built")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
