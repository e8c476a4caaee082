#!/usr/bin/env python3
"""
05_build_risk.py

Compose Risk = H x E x V and rank the districts.

Resolution policy (params.yml resolution.policy or --policy):
- downsample: exposure and vulnerability averaged onto the native hazard
  grid; district table has mean and std-dev
- upsample: hazard interpolated (cubic) onto the fine grid; district table
  has mean, std-dev and max. The interpolation adds no information.

Each layer is min-max normalized with its own statistics over the state.

Inputs:
- data/processed/hazard/hazard_native.tif
- data/processed/layers/exposure.tif
- data/processed/layers/vulnerability.tif
- data/processed/geo/state.parquet, districts.parquet

Outputs:
- data/processed/risk/district_risk_<policy>.csv / .parquet
- data/processed/risk/risk_raw_<policy>.tif
- data/processed/risk/risk_visualized_<policy>.tif
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from heat_risk.harmonize import POLICIES, harmonize_layers
from heat_risk.hashing import validate_cache, write_metadata_sidecar
from heat_risk.io_utils import atomic_write_df, read_gdf, read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import GEO_DIR, HAZARD_DIR, LAYERS_DIR, RISK_DIR
from heat_risk.qa import assert_expected_crs, compute_na_rates, validate_bounds
from heat_risk.raster_utils import fill_missing, raster_summary, read_raster, region_mask, write_raster
from heat_risk.render import style_for, write_visualized
from heat_risk.risk import build_district_report, compose_risk
from heat_risk.schemas import district_risk_schema, validate_schema

SCRIPT_NAME = "05_build_risk"


def parse_args():
    parser = argparse.ArgumentParser(description="Compose risk and rank districts")
    parser.add_argument("--force", action="store_true", help="Rebuild even if cache is valid")
    parser.add_argument("--policy", choices=list(POLICIES), default=None,
                        help="Override resolution.policy from params.yml")
    return parser.parse_args()


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        resolution = dict(params["resolution"])
        if args.policy:
            resolution["policy"] = args.policy
        policy = resolution["policy"]
        config = {
            "resolution": resolution,
            "region": params["region"],
            "visualization": params["visualization"]["risk"],
        }
        logger.log_config(config)

        inputs = {
            "hazard": HAZARD_DIR / "hazard_native.tif",
            "exposure": LAYERS_DIR / "exposure.tif",
            "vulnerability": LAYERS_DIR / "vulnerability.tif",
            "state": GEO_DIR / "state.parquet",
            "districts": GEO_DIR / "districts.parquet",
        }
        outputs = {
            "table_csv": RISK_DIR / f"district_risk_{policy}.csv",
            "table_parquet": RISK_DIR / f"district_risk_{policy}.parquet",
            "risk_raw": RISK_DIR / f"risk_raw_{policy}.tif",
            "risk_visualized": RISK_DIR / f"risk_visualized_{policy}.tif",
        }
        logger.log_inputs({k: str(v) for k, v in inputs.items()})

        if not args.force and validate_cache(outputs["risk_raw"], inputs, config):
            logger.info("Cache valid, skipping (use --force to rebuild)")
            return

        try:
            state = read_gdf(inputs["state"])
            districts = read_gdf(inputs["districts"])
            assert_expected_crs(state, params["region"]["crs_epsg"], "state")
            assert_expected_crs(districts, params["region"]["crs_epsg"], "districts")
            validate_bounds(districts, params["bounds_checks"]["epsg_4326"], context="districts")

            # Outside-state hazard cells read as 0 so interpolation has no holes
            hazard = fill_missing(read_raster(inputs["hazard"], name="hazard"), name="hazard")
            exposure = read_raster(inputs["exposure"], name="exposure")
            vulnerability = read_raster(inputs["vulnerability"], name="vulnerability")

            layers = harmonize_layers(
                policy,
                hazard,
                exposure,
                vulnerability,
                fine=exposure.grid,
                kernels=resolution.get("kernels"),
                logger=logger,
            )
            logger.info("Resolution", extra={
                "hazard_native_resolution": list(layers.native_hazard_resolution),
                "analysis_resolution": list(layers.grid.resolution),
            })

            region = region_mask(state, layers.grid)
            risk, ranges = compose_risk(
                layers.hazard, layers.exposure, layers.vulnerability, region, logger=logger
            )

            table = build_district_report(
                risk, districts, policy, name_col=params["region"]["district_column"], logger=logger
            )
            validate_schema(table, district_risk_schema(policy), context=f"district risk {policy}")

            atomic_write_df(table, outputs["table_csv"], index=False)
            atomic_write_df(table, outputs["table_parquet"], index=False)
            write_raster(risk, outputs["risk_raw"], tags={"policy": policy, "formula": "H*E*V"})
            write_visualized(
                risk, outputs["risk_visualized"],
                style_for("risk", policy=policy, styles=params.get("visualization")),
                tags={"policy": policy},
            )
            logger.log_outputs({k: str(v) for k, v in outputs.items()})

            summary = raster_summary(risk, mask=region)
            logger.log_raster_stats(summary)
            logger.log_metrics({
                "policy": policy,
                "districts": len(table),
                "na_rates": compute_na_rates(table),
                "layer_ranges": ranges,
                "suggested_display_max": ranges["risk"]["max"],
            })

            extra = {
                **layers.describe(),
                "layer_ranges": ranges,
                "risk_summary": summary,
            }
            for key in ("risk_raw", "risk_visualized", "table_csv"):
                write_metadata_sidecar(
                    output_path=outputs[key],
                    inputs=inputs,
                    config=config,
                    run_id=logger.run_id,
                    extra=extra,
                )

            top = table.head(5)[["District", "Risk_Mean"]].to_dict(orient="records")
            logger.info(f"SUCCESS: {len(table)} districts ranked ({policy})", extra={"top5": top})

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
