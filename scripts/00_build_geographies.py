#!/usr/bin/env python3
"""
00_build_geographies.py

Build the canonical state and district boundaries from GAUL 2015.

- Level 1 filtered to the configured state (ADM1_NAME)
- Level 2 filtered to the state's districts (ADM2_NAME)
- Invalid polygons repaired, CRS and state bounds checked
- District names must be unique (they key the risk table)

Inputs:
- data/raw/boundaries/gaul_2015_level1.gpkg
- data/raw/boundaries/gaul_2015_level2.gpkg

Outputs:
- data/processed/geo/state.parquet (GeoParquet, EPSG:4326)
- data/processed/geo/districts.parquet (GeoParquet, EPSG:4326)
- data/processed/geo/districts.geojson (export)
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from heat_risk.hashing import validate_cache, write_metadata_sidecar
from heat_risk.io_utils import atomic_write_gdf, read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import GEO_DIR, RAW_DIR
from heat_risk.qa import assert_all_valid, safe_reproject, validate_bounds
from heat_risk.schemas import DISTRICTS_SCHEMA, validate_schema
from heat_risk.sources import load_boundaries

SCRIPT_NAME = "00_build_geographies"


def parse_args():
    parser = argparse.ArgumentParser(description="Build state and district boundaries")
    parser.add_argument("--force", action="store_true", help="Rebuild even if cache is valid")
    return parser.parse_args()


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        region = params["region"]
        logger.log_config(region)

        inputs = {
            "gaul_level1": RAW_DIR / region["level1_file"],
            "gaul_level2": RAW_DIR / region["level2_file"],
        }
        outputs = {
            "state_parquet": GEO_DIR / "state.parquet",
            "districts_parquet": GEO_DIR / "districts.parquet",
            "districts_geojson": GEO_DIR / "districts.geojson",
        }
        logger.log_inputs({k: str(v) for k, v in inputs.items()})

        if not args.force and validate_cache(outputs["districts_parquet"], inputs, region):
            logger.info("Cache valid, skipping (use --force to rebuild)")
            return

        try:
            state, districts = load_boundaries(
                inputs["gaul_level1"],
                inputs["gaul_level2"],
                state=region["state"],
                state_col=region["state_column"],
                district_col=region["district_column"],
            )
            logger.info("Boundaries loaded", extra={
                "state": region["state"],
                "districts": len(districts),
                "crs": str(districts.crs),
            })

            state = safe_reproject(state, region["crs_epsg"], "state")
            districts = safe_reproject(districts, region["crs_epsg"], "districts")

            assert_all_valid(state, "state polygon")
            assert_all_valid(districts, "district polygons")
            validate_bounds(state, params["bounds_checks"]["epsg_4326"], context="state")
            validate_bounds(districts, params["bounds_checks"]["epsg_4326"], context="districts")
            validate_schema(districts, DISTRICTS_SCHEMA, context="districts")

            atomic_write_gdf(state, outputs["state_parquet"])
            atomic_write_gdf(districts, outputs["districts_parquet"])
            atomic_write_gdf(districts, outputs["districts_geojson"])
            logger.log_outputs({k: str(v) for k, v in outputs.items()})

            logger.log_metrics({
                "district_count": len(districts),
                "state_bounds": list(state.total_bounds),
                "districts_bounds": list(districts.total_bounds),
                "crs": str(districts.crs),
            })

            for key in ("state_parquet", "districts_parquet"):
                write_metadata_sidecar(
                    output_path=outputs[key],
                    inputs=inputs,
                    config=region,
                    run_id=logger.run_id,
                    extra={
                        "district_count": len(districts),
                        "district_names": sorted(districts[region["district_column"]].tolist()),
                    },
                )

            logger.info(f"SUCCESS: {len(districts)} districts of {region['state']}")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
