"""
Tests for risk composition and district ranking.

- Min-max normalization per layer over the state, zero range -> 0
- Risk is the product of the normalized layers (a zero anywhere gives 0)
- Risk is monotone in each input
- Ranking is stable, descending, and puts districts without pixels last
"""

import numpy as np
import pandas as pd
import pytest

from conftest import make_grid, make_raster
from heat_risk.raster_utils import GridMismatchError
from heat_risk.risk import (
    MAX_COLUMN,
    MEAN_COLUMN,
    RANK_COLUMN,
    build_district_report,
    compose_risk,
    district_risk_table,
    normalize,
    normalize_layer,
    rank_districts,
    region_min_max,
    unnormalize,
)
from heat_risk.schemas import district_risk_schema, validate_schema

FULL = np.ones((4, 4), dtype=bool)


class TestNormalize:
    """Tests for min-max normalization."""

    def test_endpoints(self):
        np.testing.assert_allclose(normalize([2.0, 6.0, 4.0], 2.0, 6.0), [0.0, 1.0, 0.5])

    def test_clamped(self):
        np.testing.assert_allclose(normalize([0.0, 10.0], 2.0, 6.0), [0.0, 1.0])

    def test_zero_range_is_zero(self):
        out = normalize([3.0, 3.0, np.nan], 3.0, 3.0)
        np.testing.assert_array_equal(out[:2], [0.0, 0.0])
        assert np.isnan(out[2])

    def test_unnormalize_inverts(self):
        values = np.array([2.5, 3.0, 5.75])
        np.testing.assert_allclose(unnormalize(normalize(values, 2.0, 6.0), 2.0, 6.0), values)


class TestRegionMinMax:

    def test_only_region_cells(self):
        raster = make_raster([[1.0, 100.0], [3.0, np.nan]])
        region = np.array([[True, False], [True, True]])
        assert region_min_max(raster, region) == (1.0, 3.0)

    def test_empty_region(self):
        raster = make_raster([[np.nan, 1.0]])
        with pytest.raises(ValueError):
            region_min_max(raster, np.array([[True, False]]))

    def test_shape_mismatch(self):
        with pytest.raises(GridMismatchError):
            region_min_max(make_raster(np.ones((2, 2))), np.ones((3, 3), dtype=bool))

    def test_normalize_layer_returns_range(self):
        raster = make_raster([[10.0, 20.0]], name="hazard")
        norm, (vmin, vmax) = normalize_layer(raster, np.array([[True, True]]))
        assert (vmin, vmax) == (10.0, 20.0)
        assert norm.name == "hazard_norm"
        np.testing.assert_allclose(norm.data, [[0.0, 1.0]])


class TestComposeRisk:
    """Tests for the H x E x V product."""

    def test_product(self, grid_4x4):
        h = make_raster(np.arange(16.0).reshape(4, 4), grid_4x4, "hazard")
        e = make_raster(np.full((4, 4), 2.0), grid_4x4, "exposure")
        e = e.with_data(np.where(np.eye(4, dtype=bool), 4.0, 2.0))
        v = make_raster(np.linspace(0, 1, 16).reshape(4, 4), grid_4x4, "vulnerability")
        risk, ranges = compose_risk(h, e, v, FULL)

        expected = normalize(h.data, 0, 15) * normalize(e.data, 2, 4) * normalize(v.data, 0, 1)
        np.testing.assert_allclose(risk.data, expected)
        assert risk.name == "risk"
        assert ranges["hazard"] == {"min": 0.0, "max": 15.0}
        assert ranges["risk"]["max"] == pytest.approx(float(expected.max()))

    def test_bounded_and_nan_outside(self, grid_4x4):
        rng = np.random.default_rng(1)
        region = np.zeros((4, 4), dtype=bool)
        region[:, :2] = True
        layers = [make_raster(rng.uniform(0, 50, (4, 4)), grid_4x4, n) for n in ("h", "e", "v")]
        risk, _ = compose_risk(*layers, region)
        inside = risk.data[region]
        assert np.all((inside >= 0) & (inside <= 1))
        assert np.isnan(risk.data[~region]).all()

    def test_zero_propagates(self, grid_4x4):
        """A cell at the minimum of any layer has zero risk."""
        h = make_raster(np.arange(16.0).reshape(4, 4), grid_4x4)
        e = make_raster(15.0 - np.arange(16.0).reshape(4, 4), grid_4x4)
        v = make_raster(np.full((4, 4), 0.5) + np.eye(4) * 0.1, grid_4x4)
        risk, _ = compose_risk(h, e, v, FULL)
        assert risk.data[0, 0] == 0.0      # hazard min
        assert risk.data[3, 3] == 0.0      # exposure min
        assert risk.data[0, 1] == 0.0      # vulnerability min

    def test_uniform_layer_zeroes_risk(self, grid_4x4):
        h = make_raster(np.full((4, 4), 12.0), grid_4x4)
        e = make_raster(np.arange(16.0).reshape(4, 4), grid_4x4)
        risk, ranges = compose_risk(h, e, e, FULL)
        np.testing.assert_array_equal(risk.data, 0.0)
        assert ranges["hazard"]["min"] == ranges["hazard"]["max"]

    def test_monotone_in_hazard(self, grid_4x4):
        base = np.arange(16.0).reshape(4, 4)
        e = make_raster(base + 1, grid_4x4)
        v = make_raster(base[::-1] + 1, grid_4x4)
        low, _ = compose_risk(make_raster(base, grid_4x4), e, v, FULL)
        raised = base.copy()
        raised[1, 2] += 0.5
        high, _ = compose_risk(make_raster(raised, grid_4x4), e, v, FULL)
        assert high.data[1, 2] >= low.data[1, 2]

    def test_grid_mismatch(self, grid_4x4):
        h = make_raster(np.ones((4, 4)), grid_4x4)
        other = make_raster(np.ones((4, 4)), make_grid(4, 4, west=75.0))
        with pytest.raises(GridMismatchError):
            compose_risk(h, other, h, FULL)


class TestRanking:
    """Tests for rank_districts."""

    def test_descending_with_stable_ties(self):
        table = pd.DataFrame({
            "District": ["A", "B", "C", "D"],
            MEAN_COLUMN: [0.2, 0.5, 0.2, 0.9],
        })
        ranked = rank_districts(table)
        assert list(ranked["District"]) == ["D", "B", "A", "C"]
        assert list(ranked[RANK_COLUMN]) == [1, 2, 3, 4]

    def test_nan_last_and_unranked(self):
        table = pd.DataFrame({
            "District": ["Empty", "A", "B"],
            MEAN_COLUMN: [np.nan, 0.1, 0.3],
        })
        ranked = rank_districts(table)
        assert list(ranked["District"]) == ["B", "A", "Empty"]
        assert ranked[RANK_COLUMN].iloc[2] is pd.NA
        assert str(ranked[RANK_COLUMN].dtype) == "Int64"


class TestDistrictTable:
    """Tests for zonal district statistics."""

    def test_mean_std_per_district(self, grid_4x4, two_districts):
        values = np.array([
            [0.1, 0.3, 0.8, 0.8],
            [0.1, 0.3, 0.8, 0.8],
            [0.1, 0.3, 0.8, 0.8],
            [0.1, 0.3, 0.8, 0.8],
        ])
        risk = make_raster(values, grid_4x4, "risk")
        table = district_risk_table(risk, two_districts)
        west = table.set_index("District").loc["West"]
        east = table.set_index("District").loc["East"]
        assert west[MEAN_COLUMN] == pytest.approx(0.2)
        assert west["Risk_StdDev"] == pytest.approx(0.1)
        assert east[MEAN_COLUMN] == pytest.approx(0.8)
        assert east["Risk_StdDev"] == pytest.approx(0.0)
        assert west["pixel_count"] == 8
        assert MAX_COLUMN not in table.columns

    def test_nan_cells_excluded(self, grid_4x4, two_districts):
        values = np.full((4, 4), 0.5)
        values[:, 0] = np.nan
        table = district_risk_table(make_raster(values, grid_4x4, "risk"), two_districts)
        west = table.set_index("District").loc["West"]
        assert west[MEAN_COLUMN] == pytest.approx(0.5)
        assert west["pixel_count"] == 4

    def test_unknown_name_column(self, grid_4x4, two_districts):
        with pytest.raises(KeyError):
            district_risk_table(make_raster(np.zeros((4, 4)), grid_4x4), two_districts, name_col="NAME")

    @pytest.mark.smoke
    def test_report_matches_schema(self, grid_4x4, two_districts):
        values = np.tile([0.1, 0.2, 0.6, 0.7], (4, 1))
        risk = make_raster(values, grid_4x4, "risk")
        for policy in ("downsample", "upsample"):
            report = build_district_report(risk, two_districts, policy)
            validate_schema(report, district_risk_schema(policy))
            assert list(report["District"]) == ["East", "West"]
            assert (MAX_COLUMN in report.columns) == (policy == "upsample")
        assert report[MAX_COLUMN].iloc[0] == pytest.approx(0.7)
