"""
Tests for the exposure and vulnerability layers.

- Exposure: in-state missing density -> 0, outside the state -> NaN
- v_env from NDVI, v_uhi from state-scaled night LST, weighted composite
"""

from datetime import date

import numpy as np
import pytest

from conftest import make_grid, make_raster, make_series
from heat_risk.exposure import build_exposure
from heat_risk.raster_utils import GridMismatchError
from heat_risk.time_utils import DateWindow
from heat_risk.vulnerability import (
    LST_OFFSET,
    LST_SCALE,
    build_vulnerability,
    composite_vulnerability,
    environmental_vulnerability,
    night_lst_celsius,
    urban_heat_vulnerability,
    window_mean,
)

REGION = np.array([[True, True], [True, False]])


def lst_raw_for(celsius):
    """Raw MODIS digital numbers for temperatures in °C."""
    return (np.asarray(celsius, dtype="float64") - LST_OFFSET) / LST_SCALE


class TestExposure:
    """Tests for build_exposure."""

    def test_missing_in_region_is_zero(self):
        population = make_raster([[100.0, np.nan], [50.0, 20.0]])
        exposure = build_exposure(population, REGION)
        assert exposure.data[0, 1] == 0.0
        assert exposure.data[0, 0] == 100.0
        assert np.isnan(exposure.data[1, 1])
        assert exposure.name == "exposure"

    def test_shape_mismatch(self):
        with pytest.raises(GridMismatchError):
            build_exposure(make_raster(np.ones((2, 3))), REGION)


class TestEnvironmentalVulnerability:

    def test_endpoints(self):
        np.testing.assert_allclose(environmental_vulnerability([0.0, 5000.0, 10000.0]), [1.0, 0.5, 0.0])

    def test_clamped(self):
        """Negative NDVI (water) and over-range values stay inside [0, 1]."""
        np.testing.assert_allclose(environmental_vulnerability([-2000.0, 12000.0]), [1.0, 0.0])

    def test_nan_propagates(self):
        assert np.isnan(environmental_vulnerability([np.nan])[0])


class TestNightLst:

    def test_scale_offset(self):
        assert night_lst_celsius(15000) == pytest.approx(15000 * 0.02 - 273.15)

    def test_fill_value_is_nan(self):
        out = night_lst_celsius(np.array([0, 15000]))
        assert np.isnan(out[0])
        assert np.isfinite(out[1])


class TestUrbanHeat:
    """Tests for state-scaled night LST."""

    def test_min_max_over_region(self):
        lst = np.array([[20.0, 30.0], [25.0, 100.0]])
        v_uhi = urban_heat_vulnerability(lst, REGION)
        np.testing.assert_allclose(v_uhi[0], [0.0, 1.0])
        assert v_uhi[1, 0] == pytest.approx(0.5)
        # Outside cell ignored for the range, then clamped
        assert v_uhi[1, 1] == 1.0

    def test_uniform_region_is_zero(self):
        lst = np.full((2, 2), 22.0)
        np.testing.assert_array_equal(urban_heat_vulnerability(lst, REGION), 0.0)

    def test_all_missing(self):
        lst = np.full((2, 2), np.nan)
        assert np.isnan(urban_heat_vulnerability(lst, REGION)).all()


class TestComposite:

    def test_weights(self):
        assert composite_vulnerability(1.0, 0.0) == pytest.approx(0.4)
        assert composite_vulnerability(0.0, 1.0) == pytest.approx(0.6)
        assert composite_vulnerability(0.5, 0.5, 0.5, 0.5) == pytest.approx(0.5)

    def test_missing_component_is_zero(self):
        out = composite_vulnerability(np.array([np.nan, 1.0]), np.array([1.0, np.nan]))
        np.testing.assert_array_equal(out, [0.0, 0.0])


class TestWindowMean:

    def test_nan_aware_mean(self):
        grid = make_grid(1, 2)
        series = make_series(date(2023, 3, 1), [[[1.0, np.nan]], [[3.0, np.nan]], [[100.0, 5.0]]], grid=grid)
        window = DateWindow("2023-03-01", "2023-03-02")
        mean = window_mean(series, window, name="lst_night")
        assert mean.data[0, 0] == pytest.approx(2.0)
        assert np.isnan(mean.data[0, 1])
        assert mean.name == "lst_night"

    def test_empty_window(self):
        series = make_series(date(2023, 3, 1), [np.ones((2, 2))])
        with pytest.raises(ValueError):
            window_mean(series, DateWindow("2024-01-01", "2024-01-31"), name="ndvi")


class TestBuildVulnerability:
    """Tests for the composite vulnerability raster."""

    def test_composite_values(self):
        grid = make_grid(2, 2)
        ndvi = make_raster([[10000.0, 0.0], [5000.0, 5000.0]], grid=grid, name="ndvi")
        lst = make_raster(lst_raw_for([[20.0, 30.0], [25.0, 25.0]]), grid=grid, name="lst")
        v = build_vulnerability(ndvi, lst, REGION)
        # v_env = [[0, 1], [0.5]] ; v_uhi = [[0, 1], [0.5]]
        assert v.data[0, 0] == pytest.approx(0.0)
        assert v.data[0, 1] == pytest.approx(1.0)
        assert v.data[1, 0] == pytest.approx(0.5)
        assert np.isnan(v.data[1, 1])
        assert v.name == "vulnerability"

    def test_missing_lst_in_region_is_zero(self):
        grid = make_grid(2, 2)
        ndvi = make_raster(np.full((2, 2), 0.0), grid=grid)
        lst = make_raster([[0.0, lst_raw_for(30.0)], [lst_raw_for(20.0), 0.0]], grid=grid)
        v = build_vulnerability(ndvi, lst, REGION)
        # Fill value at (0, 0): v_uhi is NaN so the composite cell is 0
        assert v.data[0, 0] == 0.0
        assert v.data[0, 1] == pytest.approx(1.0)

    def test_custom_weights(self):
        grid = make_grid(2, 2)
        ndvi = make_raster(np.zeros((2, 2)), grid=grid)
        lst = make_raster(lst_raw_for([[20.0, 30.0], [25.0, 25.0]]), grid=grid)
        v = build_vulnerability(ndvi, lst, REGION, weights={"env": 1.0, "uhi": 0.0})
        np.testing.assert_allclose(v.data[REGION], 1.0)

    def test_region_shape_mismatch(self):
        ndvi = make_raster(np.zeros((3, 3)))
        with pytest.raises(GridMismatchError):
            build_vulnerability(ndvi, ndvi, REGION)
