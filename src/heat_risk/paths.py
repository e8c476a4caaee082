"""
Canonical path resolution for the heatwave risk atlas.

This module provides the single source of truth for all paths in the project.
All scripts MUST import paths from here; no relative '../' paths allowed.

- Detect root via `.project-root` (primary) and fallback markers
- Expose canonical Paths: RAW_DIR, INTERIM_DIR, PROCESSED_DIR, etc.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's location.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is None:
        start_path = Path(__file__).resolve().parent

    current = start_path

    while current != current.parent:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        current = current.parent

    for marker in ROOT_MARKERS:
        if (current / marker).exists():
            return current

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {start_path}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

# Config
CONFIG_DIR = PROJECT_ROOT / "configs"
PARAMS_PATH = CONFIG_DIR / "params.yml"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
INTERIM_DIR = DATA_DIR / "interim"
PROCESSED_DIR = DATA_DIR / "processed"

# Raw inputs, one directory per upstream dataset
BOUNDARIES_RAW_DIR = RAW_DIR / "boundaries"
ERA5_RAW_DIR = RAW_DIR / "era5_land"
POPULATION_RAW_DIR = RAW_DIR / "population"
NDVI_RAW_DIR = RAW_DIR / "ndvi"
LST_RAW_DIR = RAW_DIR / "lst_night"

# Interim: daily heat index series
HEAT_INDEX_DIR = INTERIM_DIR / "heat_index"

# Processed subdirectories
GEO_DIR = PROCESSED_DIR / "geo"
THRESHOLDS_DIR = PROCESSED_DIR / "thresholds"
HAZARD_DIR = PROCESSED_DIR / "hazard"
LAYERS_DIR = PROCESSED_DIR / "layers"
RISK_DIR = PROCESSED_DIR / "risk"
METADATA_DIR = PROCESSED_DIR / "metadata"

# Logs
LOGS_DIR = PROJECT_ROOT / "logs"

# Source and scripts
SRC_DIR = PROJECT_ROOT / "src"
SCRIPTS_DIR = PROJECT_ROOT / "scripts"

# Tests
TESTS_DIR = PROJECT_ROOT / "tests"


if __name__ == "__main__":
    print(f"PROJECT_ROOT:  {PROJECT_ROOT}")
    print(f"RAW_DIR:       {RAW_DIR}")
    print(f"PROCESSED_DIR: {PROCESSED_DIR}")
    print(f"CONFIG_DIR:    {CONFIG_DIR}")
    print(f"LOGS_DIR:      {LOGS_DIR}")
