"""
Fetch-or-fail access to the upstream datasets.

Every dataset is a directory of GeoTIFFs under data/raw/ whose file names
carry a date (YYYYMMDD) or year (YYYY):
- ERA5-Land daily 2 m temperature / dewpoint (Kelvin)
- GPW v4.11 population density (per year)
- MODIS MOD13A3 monthly NDVI (scaled by 10000)
- MODIS MYD11A1 daily night LST (raw digital numbers)
- GAUL level 1 / level 2 administrative boundaries (vector)

Readers block until the rasters are loaded and raise DataSourceError when
the requested files are absent. Nothing is downloaded here.
"""

import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import geopandas as gpd

from heat_risk.io_utils import read_gdf
from heat_risk.paths import RAW_DIR
from heat_risk.qa import assert_crs_not_none, repair_geometries
from heat_risk.raster_utils import DailyRasterSeries, Raster, RasterError, read_raster
from heat_risk.time_utils import DateWindow, parse_yyyymmdd

DATE_TOKEN = "{date}"
YEAR_TOKEN = "{year}"


class DataSourceError(Exception):
    """Raised when requested upstream data is not available locally."""
    pass


@dataclass(frozen=True)
class RasterSource:
    """A directory of dated GeoTIFFs named by `pattern` ({date} or {year})."""
    name: str
    directory: Path
    pattern: str
    nodata: Optional[float] = None

    @classmethod
    def from_config(cls, name: str, config: dict, raw_dir: Optional[Path] = None) -> "RasterSource":
        return cls(
            name=name,
            directory=(raw_dir or RAW_DIR) / config["dir"],
            pattern=config["pattern"],
            nodata=config.get("nodata"),
        )

    def _regex(self) -> "re.Pattern":
        escaped = re.escape(self.pattern)
        escaped = escaped.replace(re.escape(DATE_TOKEN), r"(?P<date>\d{8})")
        escaped = escaped.replace(re.escape(YEAR_TOKEN), r"(?P<year>\d{4})")
        return re.compile(f"^{escaped}$")

    def _require_directory(self) -> None:
        if not self.directory.is_dir():
            raise DataSourceError(f"{self.name}: data directory not found: {self.directory}")

    def dated_files(self, window: Optional[DateWindow] = None) -> List[Tuple[date, Path]]:
        """
        (date, path) pairs of files matching the pattern, sorted by date,
        restricted to `window` if given.

        Raises:
            DataSourceError: If the directory is missing or nothing matches
        """
        self._require_directory()
        regex = self._regex()
        found = []
        for path in self.directory.iterdir():
            match = regex.match(path.name)
            if match is None or "date" not in match.groupdict():
                continue
            d = parse_yyyymmdd(match.group("date"))
            if window is None or window.contains(d):
                found.append((d, path))
        if not found:
            where = f" between {window.start} and {window.end}" if window else ""
            raise DataSourceError(
                f"{self.name}: no files matching '{self.pattern}' in {self.directory}{where}"
            )
        return sorted(found)

    def files(self, *windows: DateWindow) -> List[Path]:
        """Paths of the dated files inside any of `windows`, window by window."""
        return [path for window in windows for _, path in self.dated_files(window)]

    def year_file(self, year: int) -> Path:
        """
        Path of the file for `year`.

        Raises:
            DataSourceError: If the file does not exist
        """
        self._require_directory()
        path = self.directory / self.pattern.replace(YEAR_TOKEN, f"{year:04d}")
        if not path.exists():
            raise DataSourceError(f"{self.name}: no file for year {year}: {path}")
        return path

    def read_series(
        self,
        window: DateWindow,
        bounds: Optional[Tuple[float, float, float, float]] = None,
        logger=None,
    ) -> DailyRasterSeries:
        """Load every dated file in the window as one series."""
        files = self.dated_files(window)
        items = [
            (d, read_raster(path, bounds=bounds, nodata=self.nodata, name=f"{self.name}_{d:%Y%m%d}"))
            for d, path in files
        ]
        try:
            series = DailyRasterSeries.from_rasters(items, name=self.name)
        except RasterError as e:
            raise DataSourceError(f"{self.name}: inconsistent rasters in {self.directory}: {e}") from e

        if logger is not None:
            logger.info(f"Loaded {self.name}", extra={
                "files": len(files),
                "first_date": str(files[0][0]),
                "last_date": str(files[-1][0]),
                "expected_days": window.n_days,
                **series.grid.describe(),
            })
        return series

    def read_year(
        self,
        year: int,
        bounds: Optional[Tuple[float, float, float, float]] = None,
    ) -> Raster:
        path = self.year_file(year)
        return read_raster(path, bounds=bounds, nodata=self.nodata, name=self.name)


def raster_sources(sources_config: Dict[str, dict], raw_dir: Optional[Path] = None) -> Dict[str, RasterSource]:
    """RasterSource per entry of params.yml `sources.rasters`."""
    return {
        name: RasterSource.from_config(name, cfg, raw_dir=raw_dir)
        for name, cfg in sources_config.items()
    }


# =============================================================================
# Boundaries
# =============================================================================

def load_boundaries(
    level1_path: Path,
    level2_path: Path,
    state: str,
    state_col: str = "ADM1_NAME",
    district_col: str = "ADM2_NAME",
) -> Tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
    """
    State polygon (level 1) and its districts (level 2).

    Raises:
        DataSourceError: If a file is missing or the state is not present
    """
    for path in (level1_path, level2_path):
        if not Path(path).exists():
            raise DataSourceError(f"Boundary file not found: {path}")

    level1 = read_gdf(level1_path)
    level2 = read_gdf(level2_path)
    assert_crs_not_none(level1, "GAUL level 1")
    assert_crs_not_none(level2, "GAUL level 2")

    for gdf, cols, label in ((level1, [state_col], "level 1"), (level2, [state_col, district_col], "level 2")):
        absent = [c for c in cols if c not in gdf.columns]
        if absent:
            raise DataSourceError(f"GAUL {label} lacks columns {absent}")

    state_gdf = level1[level1[state_col] == state]
    districts = level2[level2[state_col] == state]
    if state_gdf.empty:
        raise DataSourceError(f"State '{state}' not found in GAUL level 1")
    if districts.empty:
        raise DataSourceError(f"No districts of '{state}' in GAUL level 2")

    state_gdf = repair_geometries(state_gdf[[state_col, "geometry"]].reset_index(drop=True))
    districts = repair_geometries(
        districts[[district_col, state_col, "geometry"]].reset_index(drop=True)
    )
    return state_gdf, districts
