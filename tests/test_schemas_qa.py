"""
Tests for output schemas and geospatial QA checks.
"""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

from heat_risk.qa import (
    BoundsError,
    CRSError,
    assert_all_valid,
    assert_expected_crs,
    compute_na_rates,
    repair_geometries,
    safe_reproject,
    validate_bounds,
)
from heat_risk.schemas import (
    DISTRICT_RISK_MAX_SCHEMA,
    DISTRICT_RISK_SCHEMA,
    DISTRICTS_SCHEMA,
    SchemaError,
    district_risk_schema,
    validate_schema,
)


def risk_table(**overrides):
    data = {
        "District": ["Pune", "Nagpur"],
        "Risk_Mean": [0.4, np.nan],
        "Risk_StdDev": [0.1, np.nan],
        "pixel_count": pd.array([10, 0], dtype="Int64"),
        "rank": pd.array([1, pd.NA], dtype="Int64"),
    }
    data.update(overrides)
    return pd.DataFrame(data)


class TestDistrictRiskSchema:
    """Tests for the ranked district table schema."""

    def test_valid(self):
        assert validate_schema(risk_table(), DISTRICT_RISK_SCHEMA) == []

    def test_out_of_range_mean(self):
        with pytest.raises(SchemaError, match="above max"):
            validate_schema(risk_table(Risk_Mean=[1.5, 0.2]), DISTRICT_RISK_SCHEMA)

    def test_duplicate_district(self):
        errors = validate_schema(risk_table(District=["Pune", "Pune"]), DISTRICT_RISK_SCHEMA, raise_on_error=False)
        assert any("duplicate" in e for e in errors)

    def test_missing_column(self):
        with pytest.raises(SchemaError, match="Missing"):
            validate_schema(risk_table().drop(columns=["pixel_count"]), DISTRICT_RISK_SCHEMA)

    def test_float_rank_rejected(self):
        errors = validate_schema(risk_table(rank=[1.0, 2.0]), DISTRICT_RISK_SCHEMA, raise_on_error=False)
        assert any("Int64" in e for e in errors)

    def test_policy_schema(self):
        assert district_risk_schema("upsample") is DISTRICT_RISK_MAX_SCHEMA
        assert district_risk_schema("downsample") is DISTRICT_RISK_SCHEMA
        with pytest.raises(SchemaError, match="Risk_Max"):
            validate_schema(risk_table(), DISTRICT_RISK_MAX_SCHEMA)


class TestDistrictsSchema:

    def test_geodataframe(self, two_districts):
        assert validate_schema(two_districts, DISTRICTS_SCHEMA) == []

    def test_plain_frame_rejected(self, two_districts):
        frame = pd.DataFrame(two_districts.drop(columns="geometry"))
        with pytest.raises(SchemaError):
            validate_schema(frame, DISTRICTS_SCHEMA)


class TestCRS:
    """Tests for CRS checks."""

    def test_missing_crs(self):
        gdf = gpd.GeoDataFrame({"a": [1]}, geometry=[box(74, 19, 75, 20)])
        with pytest.raises(CRSError):
            safe_reproject(gdf, 4326)

    def test_expected_crs(self, two_districts):
        assert_expected_crs(two_districts, 4326)
        with pytest.raises(CRSError):
            assert_expected_crs(two_districts, 32643)

    def test_reproject_noop(self, two_districts):
        assert safe_reproject(two_districts, 4326) is two_districts


class TestBounds:

    def test_inside_envelope(self, two_districts):
        assert validate_bounds(two_districts, envelope={})

    def test_projected_is_checked_in_degrees(self, two_districts):
        assert validate_bounds(two_districts.to_crs(32643), envelope={})

    def test_outside_envelope(self):
        gdf = gpd.GeoDataFrame({"a": [1]}, geometry=[box(-74.1, 40.6, -73.9, 40.8)], crs="EPSG:4326")
        with pytest.raises(BoundsError):
            validate_bounds(gdf, envelope={})

    def test_custom_envelope(self, two_districts):
        with pytest.raises(BoundsError):
            validate_bounds(two_districts, envelope={"lon_max": 74.1})


class TestGeometry:

    def test_repair_bowtie(self):
        bowtie = Polygon([(74, 19), (75, 20), (75, 19), (74, 20)])
        gdf = gpd.GeoDataFrame({"a": [1]}, geometry=[bowtie], crs="EPSG:4326")
        with pytest.raises(ValueError):
            assert_all_valid(gdf)
        assert_all_valid(repair_geometries(gdf))

    def test_na_rates(self):
        rates = compute_na_rates(pd.DataFrame({"a": [1, None], "b": [1, 2]}))
        assert rates == {"a": 0.5, "b": 0.0}
