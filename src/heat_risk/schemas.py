"""
Schema validation for tabular outputs.

The district risk table and the district boundary table are validated on
write (and by tests) so that column drift fails loudly:
- column presence and dtype
- NA rules, uniqueness and value ranges
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Union

import geopandas as gpd
import pandas as pd


@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: Optional[str] = None  # "Int64", "float64", "string", "geometry"
    nullable: bool = True
    unique: bool = False
    allowed_values: Optional[Set[Any]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None


@dataclass
class Schema:
    """Schema for a DataFrame or GeoDataFrame."""
    name: str
    columns: List[ColumnSpec]
    required_columns: List[str] = field(default_factory=list)
    min_rows: int = 0

    def __post_init__(self):
        if not self.required_columns:
            self.required_columns = [c.name for c in self.columns if not c.nullable]


class SchemaError(Exception):
    """Raised when schema validation fails."""
    pass


# =============================================================================
# Schemas
# =============================================================================

# Districts of the study state (GAUL level 2)
DISTRICTS_SCHEMA = Schema(
    name="districts",
    columns=[
        ColumnSpec("ADM2_NAME", dtype="string", nullable=False, unique=True),
        ColumnSpec("ADM1_NAME", dtype="string", nullable=False),
        ColumnSpec("geometry", dtype="geometry", nullable=False),
    ],
    min_rows=1,
)

# Ranked district risk table (both variants)
DISTRICT_RISK_SCHEMA = Schema(
    name="district_risk",
    columns=[
        ColumnSpec("District", dtype="string", nullable=False, unique=True),
        ColumnSpec("Risk_Mean", dtype="float64", nullable=True, min_value=0, max_value=1),
        ColumnSpec("Risk_StdDev", dtype="float64", nullable=True, min_value=0),
        ColumnSpec("pixel_count", dtype="Int64", nullable=False, min_value=0),
        ColumnSpec("rank", dtype="Int64", nullable=True, min_value=1),
    ],
    min_rows=1,
)

# Upsample variant adds the per-district max
DISTRICT_RISK_MAX_SCHEMA = Schema(
    name="district_risk_max",
    columns=DISTRICT_RISK_SCHEMA.columns + [
        ColumnSpec("Risk_Max", dtype="float64", nullable=True, min_value=0, max_value=1),
    ],
    min_rows=1,
)


# =============================================================================
# Validation
# =============================================================================

def _dtype_error(col: pd.Series, expected: str) -> Optional[str]:
    if expected == "Int64" and not pd.api.types.is_integer_dtype(col):
        return f"expected Int64, got {col.dtype}"
    if expected == "float64" and not pd.api.types.is_float_dtype(col):
        return f"expected float64, got {col.dtype}"
    if expected == "string" and not (
        pd.api.types.is_string_dtype(col) or pd.api.types.is_object_dtype(col)
    ):
        return f"expected string, got {col.dtype}"
    return None


def validate_column(df: pd.DataFrame, spec: ColumnSpec) -> List[str]:
    """Errors for one column (empty list if valid)."""
    if spec.dtype == "geometry":
        if not isinstance(df, gpd.GeoDataFrame):
            return [f"Expected GeoDataFrame for geometry column {spec.name}"]
        col = df.geometry
    elif spec.name not in df.columns:
        return [f"Missing column: {spec.name}"]
    else:
        col = df[spec.name]

    errors = []
    if spec.dtype not in (None, "geometry"):
        problem = _dtype_error(col, spec.dtype)
        if problem:
            errors.append(f"Column {spec.name}: {problem}")

    if not spec.nullable and col.isna().any():
        errors.append(f"Column {spec.name}: {int(col.isna().sum())} NA values not allowed")

    if spec.unique and col.duplicated().any():
        errors.append(f"Column {spec.name}: {int(col.duplicated().sum())} duplicate values")

    if spec.allowed_values is not None:
        invalid = ~col.isin(spec.allowed_values) & col.notna()
        if invalid.any():
            errors.append(f"Column {spec.name}: invalid values {list(col[invalid].unique()[:5])}")

    if spec.min_value is not None and ((col < spec.min_value) & col.notna()).any():
        errors.append(f"Column {spec.name}: values below min {spec.min_value}")
    if spec.max_value is not None and ((col > spec.max_value) & col.notna()).any():
        errors.append(f"Column {spec.name}: values above max {spec.max_value}")

    return errors


def validate_schema(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    schema: Schema,
    context: str = "",
    raise_on_error: bool = True,
) -> List[str]:
    """
    Validate a DataFrame against a schema.

    Raises:
        SchemaError: If raise_on_error and validation fails
    """
    ctx = f" ({context})" if context else ""
    errors = []

    if len(df) < schema.min_rows:
        errors.append(f"Expected at least {schema.min_rows} rows, got {len(df)}{ctx}")

    missing = set(schema.required_columns) - set(df.columns)
    if isinstance(df, gpd.GeoDataFrame):
        missing.discard("geometry")
    if missing:
        errors.append(f"Missing required columns: {sorted(missing)}{ctx}")

    for spec in schema.columns:
        errors.extend(validate_column(df, spec))

    if errors and raise_on_error:
        raise SchemaError(f"Schema validation failed for '{schema.name}':\n" + "\n".join(errors))
    return errors


def district_risk_schema(policy: str) -> Schema:
    """Schema for the ranked district table of a variant."""
    return DISTRICT_RISK_MAX_SCHEMA if policy == "upsample" else DISTRICT_RISK_SCHEMA
