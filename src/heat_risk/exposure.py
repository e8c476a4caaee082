"""
Exposure layer: population density clipped to the state.

Cells inside the state with no population value count as zero density.
Cells outside the state are NaN so that they never enter region statistics.
"""

import numpy as np

from heat_risk.raster_utils import GridMismatchError, Raster, raster_summary


def build_exposure(population: Raster, region: np.ndarray, logger=None) -> Raster:
    """
    Population density restricted to `region`, missing in-region cells -> 0.

    Args:
        population: Population density (persons / km²)
        region: Boolean mask of state cells on the population grid
        logger: Optional JSONL logger
    """
    if region.shape != population.shape:
        raise GridMismatchError(
            f"Region mask {region.shape} does not match population grid {population.shape}"
        )
    missing_in_region = int((region & np.isnan(population.data)).sum())
    values = np.where(region, np.nan_to_num(population.data, nan=0.0), np.nan)
    exposure = population.with_data(values, name="exposure")

    if logger is not None:
        logger.info("Exposure built", extra={
            "missing_cells_set_to_zero": missing_in_region,
            **raster_summary(exposure, mask=region),
        })
    return exposure
