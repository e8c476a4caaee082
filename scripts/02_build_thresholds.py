#!/usr/bin/env python3
"""
02_build_thresholds.py

Build monthly 90th-percentile Heat Index thresholds from the 1991-2020
baseline.

For each decade (1991-2000, 2001-2010, 2011-2020) and calendar month the
per-cell percentile over all days of that month is taken; the month's
threshold is the mean of its three decade rasters. A month lacking data in
any decade is written as an all-NaN band and listed as missing; hazard
lookups for it fail.

Decades are loaded one at a time and each stack is released once its
percentiles are taken, so the full 30-year series is never held in memory;
the decade results are then combined by thresholds.combine_decades.

The cache key is the set of baseline hi_YYYYMMDD.tif files themselves, not
the 01 manifest, so rerunning 01 without changing any day keeps this cache.

Inputs:
- data/interim/heat_index/hi_YYYYMMDD.tif

Outputs:
- data/processed/thresholds/hi_p90_thresholds.tif (12 bands, band m = month m)
- data/processed/metadata/hi_p90_thresholds_metadata.json
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from heat_risk.hashing import describe_inputs, validate_cache, write_metadata_sidecar
from heat_risk.io_utils import read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import HEAT_INDEX_DIR, THRESHOLDS_DIR
from heat_risk.raster_utils import raster_summary
from heat_risk.sources import RasterSource
from heat_risk.thresholds import combine_decades, decade_percentiles
from heat_risk.time_utils import assert_temporal_coverage, baseline_decades

SCRIPT_NAME = "02_build_thresholds"


def parse_args():
    parser = argparse.ArgumentParser(description="Build monthly Heat Index thresholds")
    parser.add_argument("--force", action="store_true", help="Rebuild even if cache is valid")
    return parser.parse_args()


def heat_index_source(directory: Path = HEAT_INDEX_DIR) -> RasterSource:
    return RasterSource(name="heat_index", directory=directory, pattern="hi_{date}.tif")


def cache_inputs(source: RasterSource, decades) -> dict:
    """Every daily Heat Index file inside the baseline decades."""
    return {"heat_index": source.files(*decades)}


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        config = {
            "baseline": params["time_windows"]["baseline"],
            "percentile": params["heat_index"]["percentile"],
        }
        logger.log_config(config)

        percentile = float(config["percentile"])
        decades = baseline_decades(config["baseline"])
        output_path = THRESHOLDS_DIR / f"hi_p{percentile:g}_thresholds.tif"
        source = heat_index_source()

        try:
            inputs = cache_inputs(source, decades)
            logger.log_inputs(describe_inputs(inputs))

            if not args.force and validate_cache(output_path, inputs, config):
                logger.info("Cache valid, skipping (use --force to rebuild)")
                return

            per_decade = []
            coverage = {}
            grid = None
            for window in decades:
                series = source.read_series(window, logger=logger)
                coverage[window.label] = assert_temporal_coverage(
                    series.dates, window, context=f"baseline decade {window.label}"
                )
                result = decade_percentiles(series, window, percentile)
                logger.info(f"Decade {window.label} percentiles", extra={
                    "days": len(series),
                    "coverage": coverage[window.label],
                    "missing_months": result.missing_months,
                })
                per_decade.append(result)
                grid = series.grid
                del series

            thresholds = combine_decades(per_decade, grid, logger=logger)

            thresholds.write(output_path, tags={
                "baseline": f"{decades[0].start}..{decades[-1].end}",
                "decades": ",".join(w.label for w in decades),
            })
            logger.log_outputs({"thresholds": str(output_path)})

            month_stats = {
                f"{m:02d}": raster_summary(r) for m, r in sorted(thresholds.rasters.items())
            }
            logger.log_raster_stats({"grid": grid.describe(), "months": month_stats})

            write_metadata_sidecar(
                output_path=output_path,
                inputs=inputs,
                config=config,
                run_id=logger.run_id,
                extra={
                    "grid": grid.describe(),
                    "decades": [w.describe() for w in decades],
                    "decade_coverage": coverage,
                    "missing_months": list(thresholds.missing),
                    "band_order": "band m = calendar month m",
                },
            )

            logger.info(f"SUCCESS: thresholds for {12 - len(thresholds.missing)} of 12 months")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
