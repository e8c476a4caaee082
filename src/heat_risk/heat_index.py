"""
Heat Index from 2 m air temperature and dewpoint.

Daily ERA5-Land temperature and dewpoint (Kelvin) are converted to Celsius,
relative humidity is derived from the Magnus-type vapour pressure formula,
and the Heat Index is the full Steadman/Rothfusz polynomial, replaced by the
simplified formula wherever T < 26.7 °C (strict, per cell).

Missing days are never imputed: a date present in only one input series is
dropped from the output.
"""

from typing import Union

import numpy as np

from heat_risk.raster_utils import DailyRasterSeries, GridMismatchError

ArrayLike = Union[float, np.ndarray]

KELVIN_OFFSET = 273.15

# Below this temperature (°C) the simplified formula is used
SIMPLE_FORMULA_CUTOFF_C = 26.7

# Full polynomial coefficients (T in °C, RH in %)
C1 = -8.78469475556
C2 = 1.61139411
C3 = 2.33854883889
C4 = -0.14611605
C5 = -0.012308094
C6 = -0.0164248277778
C7 = 0.002211732
C8 = 0.00072546
C9 = -0.000003582


def kelvin_to_celsius(values: ArrayLike) -> np.ndarray:
    return np.asarray(values, dtype="float64") - KELVIN_OFFSET


def saturation_vapor_pressure(t_c: ArrayLike) -> np.ndarray:
    """
    Vapour pressure (hPa) at temperature `t_c` (°C).

    es(T) = 6.11 * 10^(7.5 T / (237.3 + T)); evaluated at the dewpoint this
    gives the actual vapour pressure e(Td).
    """
    t = np.asarray(t_c, dtype="float64")
    return 6.11 * np.power(10.0, (7.5 * t) / (237.3 + t))


def relative_humidity(t_c: ArrayLike, td_c: ArrayLike) -> np.ndarray:
    """
    Relative humidity (%) from temperature and dewpoint in °C, clamped to
    [0, 100] so supersaturated cells (Td > T) read 100.
    """
    es = saturation_vapor_pressure(t_c)
    e = saturation_vapor_pressure(td_c)
    return np.clip(100.0 * e / es, 0.0, 100.0)


def steadman_heat_index(t_c: ArrayLike, rh: ArrayLike) -> np.ndarray:
    """Full nine-term Heat Index polynomial."""
    t = np.asarray(t_c, dtype="float64")
    r = np.asarray(rh, dtype="float64")
    return (
        C1
        + C2 * t
        + C3 * r
        + C4 * t * r
        + C5 * t * t
        + C6 * r * r
        + C7 * t * t * r
        + C8 * t * r * r
        + C9 * t * t * r * r
    )


def simple_heat_index(t_c: ArrayLike, rh: ArrayLike) -> np.ndarray:
    """Simplified Heat Index: 0.5 * (T + 16.92 + |T - 16.92| + 0.18 RH)."""
    t = np.asarray(t_c, dtype="float64")
    r = np.asarray(rh, dtype="float64")
    return 0.5 * (t + 16.92 + np.abs(t - 16.92) + 0.18 * r)


def heat_index(
    t_c: ArrayLike,
    rh: ArrayLike,
    cutoff_c: float = SIMPLE_FORMULA_CUTOFF_C,
) -> np.ndarray:
    """
    Per-cell Heat Index: simplified formula where T < cutoff, else the full
    polynomial. NaN inputs stay NaN.
    """
    t = np.asarray(t_c, dtype="float64")
    full = steadman_heat_index(t, rh)
    simple = simple_heat_index(t, rh)
    return np.where(t < cutoff_c, simple, full)


def heat_index_from_kelvin(
    t_k: ArrayLike,
    td_k: ArrayLike,
    cutoff_c: float = SIMPLE_FORMULA_CUTOFF_C,
) -> np.ndarray:
    """Heat Index (°C-like) from temperature and dewpoint in Kelvin."""
    t_c = kelvin_to_celsius(t_k)
    td_c = kelvin_to_celsius(td_k)
    return heat_index(t_c, relative_humidity(t_c, td_c), cutoff_c=cutoff_c)


def build_heat_index_series(
    temperature_k: DailyRasterSeries,
    dewpoint_k: DailyRasterSeries,
    cutoff_c: float = SIMPLE_FORMULA_CUTOFF_C,
    logger=None,
) -> DailyRasterSeries:
    """
    Map the Heat Index over paired daily temperature/dewpoint series.

    Days are paired by calendar date; a day missing from either input is
    absent from the output.

    Raises:
        GridMismatchError: If the two series are on different grids
    """
    if not temperature_k.grid.matches(dewpoint_k.grid):
        raise GridMismatchError(
            f"Temperature grid {temperature_k.grid.describe()} != "
            f"dewpoint grid {dewpoint_k.grid.describe()}"
        )

    dew_index = {d: i for i, d in enumerate(dewpoint_k.dates)}
    dates = []
    layers = []
    for i, d in enumerate(temperature_k.dates):
        j = dew_index.get(d)
        if j is None:
            continue
        dates.append(d)
        layers.append(
            heat_index_from_kelvin(temperature_k.stack[i], dewpoint_k.stack[j], cutoff_c=cutoff_c)
        )

    unpaired = (len(temperature_k) - len(dates)) + (len(dewpoint_k) - len(dates))
    if logger is not None:
        logger.info("Heat index series built", extra={
            "days": len(dates),
            "unpaired_days_dropped": unpaired,
            "first_date": str(dates[0]) if dates else None,
            "last_date": str(dates[-1]) if dates else None,
        })

    stack = np.stack(layers) if layers else np.empty((0,) + tuple(temperature_k.grid.shape))
    return DailyRasterSeries(
        dates=tuple(dates),
        stack=stack,
        transform=temperature_k.transform,
        crs=temperature_k.crs,
        name="heat_index",
    )
