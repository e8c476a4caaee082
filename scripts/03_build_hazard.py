#!/usr/bin/env python3
"""
03_build_hazard.py

Count heatwave days per ERA5-Land cell over the study window.

A day counts where the Heat Index exceeds the month-matched baseline
threshold. The hazard stays on its native grid here; the resolution policy
(downsample / upsample) is applied when the risk is composed (05).

Inputs:
- data/interim/heat_index/hi_YYYYMMDD.tif (study window)
- data/processed/thresholds/hi_p90_thresholds.tif
- data/processed/geo/state.parquet

Outputs:
- data/processed/hazard/hazard_native.tif (metric per config)
- data/processed/hazard/longest_run.tif (longest run of exceedance days)
- data/processed/hazard/hazard_visualized.tif (RGBA, 0-30 days)
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import numpy as np

from heat_risk.hashing import describe_inputs, validate_cache, write_metadata_sidecar
from heat_risk.hazard import build_hazard, exceedance_series, longest_exceedance_run
from heat_risk.io_utils import read_gdf, read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import GEO_DIR, HAZARD_DIR, HEAT_INDEX_DIR, THRESHOLDS_DIR
from heat_risk.raster_utils import clip_to_region, fill_missing, raster_summary, region_mask, write_raster
from heat_risk.render import style_for, write_visualized
from heat_risk.sources import RasterSource
from heat_risk.thresholds import MonthlyThresholds
from heat_risk.time_utils import DateWindow, assert_temporal_coverage

SCRIPT_NAME = "03_build_hazard"


def parse_args():
    parser = argparse.ArgumentParser(description="Build the heatwave hazard raster")
    parser.add_argument("--force", action="store_true", help="Rebuild even if cache is valid")
    parser.add_argument("--metric", choices=["exceedance_days", "event_days"], default=None,
                        help="Override hazard.metric from params.yml")
    return parser.parse_args()


def cache_inputs(source: RasterSource, study: DateWindow, thresholds_path: Path, state_path: Path) -> dict:
    """Study-window Heat Index files plus the thresholds and state they are judged against."""
    return {
        "heat_index": source.files(study),
        "thresholds": thresholds_path,
        "state": state_path,
    }


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        config = {
            "study": params["time_windows"]["study"],
            "hazard": dict(params["hazard"]),
            "percentile": params["heat_index"]["percentile"],
        }
        if args.metric:
            config["hazard"]["metric"] = args.metric
        logger.log_config(config)

        study = DateWindow.from_config(config["study"], label="study")
        thresholds_path = THRESHOLDS_DIR / f"hi_p{float(config['percentile']):g}_thresholds.tif"
        state_path = GEO_DIR / "state.parquet"
        outputs = {
            "hazard": HAZARD_DIR / "hazard_native.tif",
            "longest_run": HAZARD_DIR / "longest_run.tif",
            "hazard_visualized": HAZARD_DIR / "hazard_visualized.tif",
        }
        source = RasterSource(name="heat_index", directory=HEAT_INDEX_DIR, pattern="hi_{date}.tif")

        try:
            inputs = cache_inputs(source, study, thresholds_path, state_path)
            logger.log_inputs(describe_inputs(inputs))

            if not args.force and validate_cache(outputs["hazard"], inputs, config):
                logger.info("Cache valid, skipping (use --force to rebuild)")
                return

            thresholds = MonthlyThresholds.read(thresholds_path)
            logger.info("Thresholds loaded", extra={
                "missing_months": list(thresholds.missing),
                **thresholds.grid.describe(),
            })

            study_hi = source.read_series(study, logger=logger)
            coverage = assert_temporal_coverage(study_hi.dates, study, context="study window")
            if coverage < 1.0:
                logger.warning("Study window has missing days", extra={"coverage": coverage})

            hazard = build_hazard(
                study_hi,
                thresholds,
                metric=config["hazard"]["metric"],
                min_run=config["hazard"]["min_run_days"],
                logger=logger,
            )
            longest = longest_exceedance_run(exceedance_series(study_hi, thresholds))

            # Clip to the state; cells outside stay NaN, in-state gaps count as 0
            state = read_gdf(state_path)
            mask = region_mask(state, hazard.grid, all_touched=True)
            hazard = clip_to_region(fill_missing(hazard), mask, name="hazard")
            longest = clip_to_region(longest, mask, name="longest_run")

            tags = {
                "metric": config["hazard"]["metric"],
                "study_start": str(study.start),
                "study_end": str(study.end),
                "units": "days",
            }
            write_raster(hazard, outputs["hazard"], tags=tags)
            write_raster(longest, outputs["longest_run"], tags={**tags, "metric": "longest_run"})
            write_visualized(
                hazard, outputs["hazard_visualized"],
                style_for("hazard", styles=params.get("visualization")),
            )
            logger.log_outputs({k: str(v) for k, v in outputs.items()})

            summary = raster_summary(hazard, mask=mask)
            logger.log_raster_stats(summary)
            logger.log_metrics({
                "study_days": len(study_hi),
                "study_coverage": coverage,
                "hazard_max": summary.get("max"),
                "longest_run_max": float(np.nanmax(longest.data)) if np.isfinite(longest.data).any() else None,
                "native_resolution": list(hazard.resolution),
            })

            write_metadata_sidecar(
                output_path=outputs["hazard"],
                inputs=inputs,
                config=config,
                run_id=logger.run_id,
                extra={
                    "grid": hazard.grid.describe(),
                    "native_resolution": list(hazard.resolution),
                    "study_days": len(study_hi),
                    "study_coverage": coverage,
                    "summary": summary,
                },
            )

            logger.info(f"SUCCESS: hazard over {len(study_hi)} days, max {summary.get('max')}")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
