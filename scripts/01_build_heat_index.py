#!/usr/bin/env python3
"""
01_build_heat_index.py

Compute the daily Heat Index from ERA5-Land 2 m temperature and dewpoint.

Processed one calendar year at a time over the baseline and study windows,
reading only the window covering the state (padded by one ERA5 cell).
Days present in only one of t2m/d2m are dropped, never imputed.

Inputs:
- data/raw/era5_land/t2m_YYYYMMDD.tif (Kelvin)
- data/raw/era5_land/d2m_YYYYMMDD.tif (Kelvin)
- data/processed/geo/state.parquet

Outputs:
- data/interim/heat_index/hi_YYYYMMDD.tif (one per day, ERA5-Land grid)
- data/processed/metadata/heat_index_manifest_metadata.json
"""

import argparse
import sys
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from heat_risk.hashing import write_metadata_sidecar
from heat_risk.heat_index import build_heat_index_series
from heat_risk.io_utils import atomic_write_json, read_gdf, read_params
from heat_risk.logging_utils import get_logger
from heat_risk.paths import GEO_DIR, HEAT_INDEX_DIR
from heat_risk.raster_utils import write_raster
from heat_risk.sources import DataSourceError, raster_sources
from heat_risk.time_utils import DateWindow

SCRIPT_NAME = "01_build_heat_index"

# ERA5-Land native spacing (degrees), used to pad the read window
ERA5_CELL_DEG = 0.1


def parse_args():
    parser = argparse.ArgumentParser(description="Build daily Heat Index rasters")
    parser.add_argument("--force", action="store_true", help="Recompute days already written")
    parser.add_argument("--start-year", type=int, default=None)
    parser.add_argument("--end-year", type=int, default=None)
    return parser.parse_args()


def hi_path(d: date) -> Path:
    return HEAT_INDEX_DIR / f"hi_{d:%Y%m%d}.tif"


def years_to_process(params: dict, start_year=None, end_year=None) -> list:
    """Calendar years of the baseline plus those of the study window."""
    baseline = DateWindow.from_config(params["time_windows"]["baseline"])
    study = DateWindow.from_config(params["time_windows"]["study"])
    years = set(range(baseline.start.year, baseline.end.year + 1))
    years.update(range(study.start.year, study.end.year + 1))
    if start_year is not None:
        years = {y for y in years if y >= start_year}
    if end_year is not None:
        years = {y for y in years if y <= end_year}
    return sorted(years)


def main():
    args = parse_args()

    with get_logger(SCRIPT_NAME) as logger:
        logger.info(f"Starting {SCRIPT_NAME}.py")

        params = read_params()
        config = {
            "heat_index": params["heat_index"],
            "time_windows": params["time_windows"],
            "sources": {k: params["sources"]["rasters"][k] for k in ("t2m", "d2m")},
        }
        logger.log_config(config)

        state_path = GEO_DIR / "state.parquet"
        state = read_gdf(state_path)
        west, south, east, north = state.total_bounds
        bounds = (
            west - ERA5_CELL_DEG, south - ERA5_CELL_DEG,
            east + ERA5_CELL_DEG, north + ERA5_CELL_DEG,
        )
        sources = raster_sources(params["sources"]["rasters"])
        logger.log_inputs({
            "state": str(state_path),
            "t2m": str(sources["t2m"].directory),
            "d2m": str(sources["d2m"].directory),
        })

        cutoff = params["heat_index"]["simple_formula_cutoff_c"]
        years = years_to_process(params, args.start_year, args.end_year)
        written, skipped = 0, 0
        grid_info = None

        try:
            for year in years:
                window = DateWindow(date(year, 1, 1), date(year, 12, 31), label=str(year))
                if not args.force and all(hi_path(d).exists() for d in window.days()):
                    skipped += window.n_days
                    continue

                try:
                    t2m = sources["t2m"].read_series(window, bounds=bounds, logger=logger)
                    d2m = sources["d2m"].read_series(window, bounds=bounds, logger=logger)
                except DataSourceError as e:
                    logger.error(f"ERA5-Land data missing for {year}", extra={"error": str(e)})
                    raise

                hi = build_heat_index_series(t2m, d2m, cutoff_c=cutoff, logger=logger)
                grid_info = hi.grid.describe()

                for d, raster in hi:
                    target = hi_path(d)
                    if target.exists() and not args.force:
                        skipped += 1
                        continue
                    write_raster(raster.with_data(raster.data, name="heat_index"), target,
                                 tags={"date": d.isoformat(), "units": "degC"})
                    written += 1

                logger.info(f"Year {year} done", extra={"days": len(hi), "written_total": written})

            # Per-run counters go to the sidecar, not the manifest
            manifest = {
                "years": years,
                "grid": grid_info,
                "cutoff_c": cutoff,
            }
            manifest_path = HEAT_INDEX_DIR / "heat_index_manifest.json"
            atomic_write_json(manifest, manifest_path)

            logger.log_outputs({"heat_index_dir": str(HEAT_INDEX_DIR), "manifest": str(manifest_path)})
            logger.log_metrics({"days_written": written, "days_skipped": skipped})

            write_metadata_sidecar(
                output_path=manifest_path,
                inputs={"state": state_path},
                config=config,
                run_id=logger.run_id,
                extra={**manifest, "days_written": written, "days_skipped": skipped},
            )

            logger.info(f"SUCCESS: {written} Heat Index days written, {skipped} skipped")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
