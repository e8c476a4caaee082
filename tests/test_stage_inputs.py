"""
Tests for the cache inputs of the pipeline stages.

- Every raw or interim file a stage reads is part of its cache key
- Editing one daily file invalidates the cached output
- Rewriting the 01 manifest does not invalidate the thresholds
"""

import importlib.util
from datetime import date

import pytest

from heat_risk.hashing import get_cache_status, validate_cache, write_metadata_sidecar
from heat_risk.paths import SCRIPTS_DIR
from heat_risk.sources import DataSourceError, RasterSource, raster_sources
from heat_risk.time_utils import DateWindow

CONFIG = {"percentile": 90}


def load_script(name):
    """Import a numbered stage script as a module (its main() is not run)."""
    loader_spec = importlib.util.spec_from_file_location(name.replace(".", "_"), SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(loader_spec)
    loader_spec.loader.exec_module(module)
    return module


def touch_days(directory, prefix, days):
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for i, d in enumerate(days):
        path = directory / f"{prefix}_{d:%Y%m%d}.tif"
        path.write_bytes(f"{prefix}-{i}".encode())
        paths.append(path)
    return paths


def cache_round(tmp_path, inputs):
    """Write an output plus sidecar for `inputs` and return (output, metadata_dir)."""
    output = tmp_path / "out" / "result.tif"
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(b"result")
    meta_dir = tmp_path / "metadata"
    write_metadata_sidecar(output, inputs, CONFIG, "run1", metadata_dir=meta_dir)
    assert validate_cache(output, inputs, CONFIG, meta_dir)
    return output, meta_dir


class TestThresholdInputs:
    """02: keyed on the baseline Heat Index files."""

    @pytest.fixture
    def stage(self):
        return load_script("02_build_thresholds")

    @pytest.fixture
    def decades(self):
        return [
            DateWindow("1991-01-01", "1991-01-02", label="d1"),
            DateWindow("2001-01-01", "2001-01-02", label="d2"),
        ]

    def test_all_decade_files_listed(self, tmp_path, stage, decades):
        hi_dir = tmp_path / "heat_index"
        days = [date(1991, 1, 1), date(1991, 1, 2), date(2001, 1, 1), date(2001, 1, 2), date(2023, 3, 1)]
        paths = touch_days(hi_dir, "hi", days)
        inputs = stage.cache_inputs(stage.heat_index_source(hi_dir), decades)
        assert list(inputs) == ["heat_index"]
        assert inputs["heat_index"] == paths[:4]

    def test_edited_day_invalidates(self, tmp_path, stage, decades):
        hi_dir = tmp_path / "heat_index"
        paths = touch_days(hi_dir, "hi", [date(1991, 1, 1), date(2001, 1, 2)])
        source = stage.heat_index_source(hi_dir)
        output, meta_dir = cache_round(tmp_path, stage.cache_inputs(source, decades))

        paths[1].write_bytes(b"recomputed")
        status = get_cache_status(output, stage.cache_inputs(source, decades), CONFIG, meta_dir)
        assert status["reason"] == "input_changed:heat_index"

    def test_manifest_rewrite_keeps_cache(self, tmp_path, stage, decades):
        hi_dir = tmp_path / "heat_index"
        touch_days(hi_dir, "hi", [date(1991, 1, 1), date(2001, 1, 2)])
        (hi_dir / "heat_index_manifest.json").write_text('{"years": [1991]}')
        source = stage.heat_index_source(hi_dir)
        output, meta_dir = cache_round(tmp_path, stage.cache_inputs(source, decades))

        (hi_dir / "heat_index_manifest.json").write_text('{"years": [1991, 2001]}')
        assert validate_cache(output, stage.cache_inputs(source, decades), CONFIG, meta_dir)


class TestHazardInputs:
    """03: keyed on the study-window Heat Index files, thresholds and state."""

    @pytest.fixture
    def stage(self):
        return load_script("03_build_hazard")

    @pytest.fixture
    def layout(self, tmp_path):
        hi_dir = tmp_path / "heat_index"
        paths = touch_days(hi_dir, "hi", [date(2020, 12, 31), date(2023, 3, 1), date(2023, 3, 2)])
        thresholds = tmp_path / "hi_p90_thresholds.tif"
        state = tmp_path / "state.parquet"
        thresholds.write_bytes(b"thresholds")
        state.write_bytes(b"state")
        source = RasterSource(name="heat_index", directory=hi_dir, pattern="hi_{date}.tif")
        study = DateWindow("2023-03-01", "2023-05-31", label="study")
        return source, study, thresholds, state, paths

    def test_study_files_listed(self, stage, layout):
        source, study, thresholds, state, paths = layout
        inputs = stage.cache_inputs(source, study, thresholds, state)
        assert inputs["heat_index"] == paths[1:]
        assert inputs["thresholds"] == thresholds

    def test_study_day_change_invalidates(self, tmp_path, stage, layout):
        source, study, thresholds, state, paths = layout
        output, meta_dir = cache_round(tmp_path, stage.cache_inputs(source, study, thresholds, state))

        paths[0].write_bytes(b"baseline day edited")
        assert validate_cache(output, stage.cache_inputs(source, study, thresholds, state), CONFIG, meta_dir)

        paths[2].write_bytes(b"study day edited")
        status = get_cache_status(output, stage.cache_inputs(source, study, thresholds, state), CONFIG, meta_dir)
        assert status["reason"] == "input_changed:heat_index"

    def test_new_study_day_invalidates(self, tmp_path, stage, layout):
        source, study, thresholds, state, _ = layout
        output, meta_dir = cache_round(tmp_path, stage.cache_inputs(source, study, thresholds, state))

        touch_days(source.directory, "hi", [date(2023, 3, 3)])
        assert not validate_cache(output, stage.cache_inputs(source, study, thresholds, state), CONFIG, meta_dir)


class TestLayerInputs:
    """04: keyed on the raw population, NDVI and night LST files."""

    @pytest.fixture
    def stage(self):
        return load_script("04_build_exposure_vulnerability")

    @pytest.fixture
    def layout(self, tmp_path):
        raw = tmp_path / "raw"
        (raw / "population").mkdir(parents=True)
        population = raw / "population" / "gpw_density_2020.tif"
        population.write_bytes(b"gpw")
        ndvi = touch_days(raw / "ndvi", "mod13a3", [date(2023, 3, 1), date(2023, 4, 1), date(2023, 5, 1)])
        lst = touch_days(raw / "lst_night", "myd11a1", [date(2023, 3, 1), date(2023, 3, 2)])
        state = tmp_path / "state.parquet"
        state.write_bytes(b"state")
        sources = raster_sources(
            {
                "population": {"dir": "population", "pattern": "gpw_density_{year}.tif"},
                "ndvi": {"dir": "ndvi", "pattern": "mod13a3_{date}.tif", "nodata": -3000},
                "lst_night": {"dir": "lst_night", "pattern": "myd11a1_{date}.tif", "nodata": 0},
            },
            raw_dir=raw,
        )
        study = DateWindow("2023-03-01", "2023-05-31", label="study")
        return sources, study, state, population, ndvi, lst

    def test_every_source_listed(self, stage, layout):
        sources, study, state, population, ndvi, lst = layout
        inputs = stage.cache_inputs(sources, study, 2020, state)
        assert set(inputs) == {"state", "population", "ndvi", "lst_night"}
        assert inputs["population"] == population
        assert inputs["ndvi"] == ndvi
        assert inputs["lst_night"] == lst

    @pytest.mark.parametrize("changed", ["population", "ndvi", "lst_night"])
    def test_raw_change_invalidates(self, tmp_path, stage, layout, changed):
        sources, study, state, population, ndvi, lst = layout
        output, meta_dir = cache_round(tmp_path, stage.cache_inputs(sources, study, 2020, state))

        target = {"population": population, "ndvi": ndvi[1], "lst_night": lst[0]}[changed]
        target.write_bytes(b"reprocessed")
        status = get_cache_status(output, stage.cache_inputs(sources, study, 2020, state), CONFIG, meta_dir)
        assert status["reason"] == f"input_changed:{changed}"

    def test_missing_population_year(self, stage, layout):
        sources, study, state, *_ = layout
        with pytest.raises(DataSourceError):
            stage.cache_inputs(sources, study, 2015, state)
