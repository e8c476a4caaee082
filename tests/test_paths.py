"""
Tests for the paths module.

Project root detection and the canonical data layout used by the pipeline.
"""

import pytest

from heat_risk.paths import (
    CONFIG_DIR,
    GEO_DIR,
    HAZARD_DIR,
    HEAT_INDEX_DIR,
    INTERIM_DIR,
    LAYERS_DIR,
    LOGS_DIR,
    METADATA_DIR,
    PARAMS_PATH,
    PROCESSED_DIR,
    PROJECT_ROOT,
    RAW_DIR,
    RISK_DIR,
    THRESHOLDS_DIR,
    find_project_root,
)

ALL_PATHS = [
    PROJECT_ROOT, RAW_DIR, INTERIM_DIR, PROCESSED_DIR, CONFIG_DIR, LOGS_DIR,
    HEAT_INDEX_DIR, GEO_DIR, THRESHOLDS_DIR, HAZARD_DIR, LAYERS_DIR, RISK_DIR,
    METADATA_DIR,
]


class TestProjectRoot:
    """Tests for project root detection."""

    def test_project_root_exists(self):
        assert PROJECT_ROOT.exists()
        assert PROJECT_ROOT.is_dir()

    def test_project_root_marker_exists(self):
        """The .project-root marker file should exist."""
        assert (PROJECT_ROOT / ".project-root").exists(), "Missing .project-root marker file"

    def test_find_project_root_from_subdir(self):
        """find_project_root should work from any subdirectory."""
        subdir = PROJECT_ROOT / "src" / "heat_risk"
        assert find_project_root(subdir) == PROJECT_ROOT

    def test_find_project_root_raises_on_invalid_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_project_root(tmp_path)


class TestCanonicalPaths:
    """Tests for canonical path definitions."""

    def test_interim_and_processed_under_data(self):
        assert INTERIM_DIR.parent == RAW_DIR.parent == PROCESSED_DIR.parent
        assert PROCESSED_DIR.name == "processed"

    def test_heat_index_is_interim(self):
        """Daily Heat Index rasters are intermediate products."""
        assert HEAT_INDEX_DIR.parent == INTERIM_DIR

    def test_products_under_processed(self):
        for p in (GEO_DIR, THRESHOLDS_DIR, HAZARD_DIR, LAYERS_DIR, RISK_DIR, METADATA_DIR):
            assert p.parent == PROCESSED_DIR, p

    def test_params_in_config_dir(self):
        assert PARAMS_PATH.parent == CONFIG_DIR
        assert PARAMS_PATH.exists()

    def test_no_relative_path_components(self):
        for p in ALL_PATHS:
            assert ".." not in str(p), f"Path contains '..': {p}"

    def test_all_paths_absolute(self):
        for p in ALL_PATHS:
            assert p.is_absolute(), f"Path is not absolute: {p}"


@pytest.mark.smoke
class TestPathsSmoke:
    """Smoke tests for paths module."""

    def test_import_succeeds(self):
        from heat_risk import paths
        assert paths.PROJECT_ROOT is not None

    def test_source_tree_present(self):
        assert (PROJECT_ROOT / "src" / "heat_risk").exists()
        assert (PROJECT_ROOT / "scripts").exists()
