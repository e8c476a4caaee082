"""
Date window utilities for the baseline and study periods.

All windows are inclusive calendar-date ranges. Thresholds are keyed by
calendar month only, so month logic here never carries a year.
The baseline is split into fixed decades; decade windows come from config.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator, List, Sequence, Tuple, Union

import pandas as pd

DateLike = Union[str, date, datetime, pd.Timestamp]

MONTHS = tuple(range(1, 13))


def to_date(value: DateLike) -> date:
    """Parse an ISO string / datetime / Timestamp into a date."""
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


@dataclass(frozen=True)
class DateWindow:
    """Inclusive date window."""
    start: date
    end: date
    label: str = ""

    def __post_init__(self):
        object.__setattr__(self, "start", to_date(self.start))
        object.__setattr__(self, "end", to_date(self.end))
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} before start {self.start} ({self.label})")

    @classmethod
    def from_config(cls, config: dict, label: str = "") -> "DateWindow":
        return cls(start=config["start"], end=config["end"], label=config.get("label", label))

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    @property
    def n_days(self) -> int:
        return (self.end - self.start).days + 1

    def describe(self) -> dict:
        return {"start": str(self.start), "end": str(self.end), "label": self.label}


def decade_windows(
    start_year: int,
    end_year: int,
    span_years: int = 10,
) -> List[DateWindow]:
    """
    Partition [start_year, end_year] into consecutive `span_years` windows.

    Raises:
        ValueError: If the range does not divide evenly
    """
    n_years = end_year - start_year + 1
    if n_years <= 0 or n_years % span_years != 0:
        raise ValueError(
            f"Baseline {start_year}-{end_year} does not split into {span_years}-year periods"
        )
    windows = []
    for first in range(start_year, end_year + 1, span_years):
        last = first + span_years - 1
        windows.append(DateWindow(date(first, 1, 1), date(last, 12, 31), label=f"{first}-{last}"))
    return windows


def baseline_decades(config: dict) -> List[DateWindow]:
    """
    Decade windows from params.yml `time_windows.baseline`.

    An explicit `decades` list wins; otherwise the baseline is split into
    10-year periods.
    """
    if config.get("decades"):
        return [DateWindow.from_config(d, label=f"decade_{i + 1}") for i, d in enumerate(config["decades"])]
    window = DateWindow.from_config(config, label="baseline")
    return decade_windows(window.start.year, window.end.year)


def filter_dates(dates: Iterable[date], window: DateWindow) -> List[date]:
    return [d for d in dates if window.contains(d)]


def missing_dates(dates: Sequence[date], window: DateWindow) -> List[date]:
    """Dates in the window with no observation."""
    present = set(dates)
    return [d for d in window.days() if d not in present]


def assert_temporal_coverage(
    dates: Sequence[date],
    window: DateWindow,
    min_fraction: float = 0.0,
    context: str = "",
) -> float:
    """
    Assert that `dates` cover `window` and return the covered fraction.

    Raises:
        ValueError: If no date falls in the window or coverage < min_fraction
    """
    inside = filter_dates(dates, window)
    if not inside:
        raise ValueError(
            f"No data in window {window.start}..{window.end}"
            + (f" ({context})" if context else "")
        )
    fraction = len(set(inside)) / window.n_days
    if fraction < min_fraction:
        raise ValueError(
            f"Temporal coverage {fraction:.1%} below required {min_fraction:.1%} "
            f"for {window.start}..{window.end}"
            + (f" ({context})" if context else "")
        )
    return fraction


def parse_yyyymmdd(token: str) -> date:
    """Parse a YYYYMMDD token (as used in raster file names)."""
    return date(int(token[:4]), int(token[4:6]), int(token[6:8]))


def month_span(window: DateWindow) -> Tuple[int, ...]:
    """Calendar months touched by the window, in order of first appearance."""
    seen = []
    for d in window.days():
        if d.month not in seen:
            seen.append(d.month)
    return tuple(seen)
