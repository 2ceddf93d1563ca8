"""
Prepare the district-month malaria panel for DLNM analysis
==========================================================
Load the surveillance CSV, clean it, and engineer the features the
cross-basis needs.

Input:
- CSV with one row per district-month: district, year, month, malaria
  cases, population, maximum temperature, precipitation

Output (columns added to the cleaned panel):
- month_index: calendar months since January of year 0
- time_index: months since the first month in the panel
- incidence_rate: cases per INCIDENCE_PER population
- <exposure>_lag<k>: exposure k months earlier in the same district

Lags are looked up on the calendar month index within each district, so a
missing month produces NaN instead of borrowing a value from the wrong month.
"""

import calendar
import logging
import os
import re
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd

from malaria_dlnm import config

logger = logging.getLogger(__name__)


# =============================================================================
# LOADING
# =============================================================================

def normalize_column_name(name: str) -> str:
    """'Max Temp.' -> 'max_temp'"""
    name = re.sub(r'[\s.\-/]+', '_', str(name).strip().lower())
    return name.strip('_')


def load_malaria_data(path: str) -> pd.DataFrame:
    """
    Read the raw district-month CSV and map its headers onto canonical names.

    Raises:
    -------
    FileNotFoundError if the file does not exist
    ValueError if required columns are missing after alias mapping
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input data not found: {path}")

    df = pd.read_csv(path)
    renamed = {}
    for col in df.columns:
        norm = normalize_column_name(col)
        renamed[col] = config.COLUMN_ALIASES.get(norm, norm)
    df = df.rename(columns=renamed)

    # First occurrence wins when two headers map to the same name
    df = df.loc[:, ~df.columns.duplicated()]

    missing = [c for c in config.REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing} (found {list(df.columns)})")

    logger.info("Loaded %d rows, %d districts from %s",
                len(df), df[config.DISTRICT_COL].nunique(), path)
    return df


# =============================================================================
# CLEANING
# =============================================================================

MONTH_NAMES = {
    **{name.lower(): i for i, name in enumerate(calendar.month_name) if name},
    **{abbr.lower(): i for i, abbr in enumerate(calendar.month_abbr) if abbr},
    'sept': 9,
}


def parse_month(months: pd.Series) -> pd.Series:
    """
    Month numbers from numbers or English names ('Jan', 'january', 'Sep.').

    Missing values stay NaN. Any other value that is neither a number nor a
    month name raises ValueError naming the offending values.
    """
    numeric = pd.to_numeric(months, errors='coerce')
    names = months.astype(str).str.strip().str.lower().str.rstrip('.')
    parsed = numeric.fillna(names.map(MONTH_NAMES))

    bad = months.notna() & parsed.isna()
    if bad.any():
        examples = sorted(months[bad].astype(str).unique())[:5]
        raise ValueError(
            f"Unrecognised values in '{config.MONTH_COL}' column: {examples}; "
            "expected 1..12 or month names"
        )
    return parsed


def clean_malaria_data(df: pd.DataFrame) -> pd.DataFrame:
    """
    Drop unusable rows and coerce types. Months may be numbers or English
    month names; see parse_month.

    Rules, applied in order (each logged with its row count):
    1. missing population
    2. missing district, year, month or case count
    3. population <= 0
    4. negative case counts
    5. month outside 1..12
    6. duplicate district-month rows (first kept)

    Missing climate values are kept; they surface as NaN lags and the rows
    are excluded when the cross-basis is built.

    The per-rule drop counts are stored in df.attrs['cleaning_report'].
    """
    df = df.copy()
    df[config.DISTRICT_COL] = df[config.DISTRICT_COL].where(
        df[config.DISTRICT_COL].isna(), df[config.DISTRICT_COL].astype(str).str.strip()
    )
    df[config.MONTH_COL] = parse_month(df[config.MONTH_COL])
    for col in [config.YEAR_COL, config.CASES_COL, config.POP_COL,
                config.TEMP_COL, config.PRECIP_COL]:
        df[col] = pd.to_numeric(df[col], errors='coerce')

    n_start = len(df)
    report: Dict[str, int] = {}

    def _drop(mask: pd.Series, reason: str) -> None:
        nonlocal df
        n = int(mask.sum())
        report[reason] = n
        if n:
            logger.info("Dropping %d rows: %s", n, reason)
            df = df.loc[~mask]

    _drop(df[config.POP_COL].isna(), 'missing population')
    _drop(df[[config.DISTRICT_COL, config.YEAR_COL, config.MONTH_COL,
              config.CASES_COL]].isna().any(axis=1), 'missing district/year/month/cases')
    _drop(df[config.POP_COL] <= 0, 'non-positive population')
    _drop(df[config.CASES_COL] < 0, 'negative case count')
    _drop(~df[config.MONTH_COL].between(1, 12), 'month outside 1..12')
    _drop(df.duplicated(subset=[config.DISTRICT_COL, config.YEAR_COL, config.MONTH_COL]),
          'duplicate district-month')

    if df.empty:
        raise ValueError("No rows left after cleaning")

    cases = df[config.CASES_COL]
    if not np.allclose(cases, cases.round()):
        logger.warning("Non-integer case counts found; rounding to nearest integer")
    df[config.CASES_COL] = cases.round().astype(int)
    df[config.YEAR_COL] = df[config.YEAR_COL].astype(int)
    df[config.MONTH_COL] = df[config.MONTH_COL].astype(int)

    df = df.sort_values([config.DISTRICT_COL, config.YEAR_COL, config.MONTH_COL])
    df = df.reset_index(drop=True)

    n_climate_na = int(df[[config.TEMP_COL, config.PRECIP_COL]].isna().any(axis=1).sum())
    if n_climate_na:
        logger.warning("%d rows have missing climate values", n_climate_na)

    logger.info("Cleaning kept %d of %d rows", len(df), n_start)
    df.attrs['cleaning_report'] = report
    return df


# =============================================================================
# FEATURE ENGINEERING
# =============================================================================

def add_time_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df['month_index'] = df[config.YEAR_COL] * 12 + (df[config.MONTH_COL] - 1)
    df['time_index'] = df['month_index'] - df['month_index'].min()
    return df


def add_incidence_rate(df: pd.DataFrame, per: int = config.INCIDENCE_PER) -> pd.DataFrame:
    """Cases per `per` population."""
    df = df.copy()
    df['incidence_rate'] = df[config.CASES_COL] / df[config.POP_COL] * per
    return df


def lag_column(column: str, lag: int) -> str:
    return f'{column}_lag{lag}'


def add_lag_features(df: pd.DataFrame, columns: Sequence[str], max_lag: int) -> pd.DataFrame:
    """
    Add <col>_lag0 .. <col>_lag<max_lag> for each column.

    Requires month_index (see add_time_columns) and unique district-month rows.
    """
    if max_lag < 0:
        raise ValueError(f"max_lag must be >= 0, got {max_lag}")
    if 'month_index' not in df.columns:
        df = add_time_columns(df)
    df = df.copy()

    for col in columns:
        values = df.set_index([config.DISTRICT_COL, 'month_index'])[col]
        for k in range(max_lag + 1):
            keys = pd.MultiIndex.from_arrays(
                [df[config.DISTRICT_COL], df['month_index'] - k]
            )
            df[lag_column(col, k)] = values.reindex(keys).to_numpy(dtype=float)

    return df


def lag_matrix(df: pd.DataFrame, column: str, max_lag: int) -> np.ndarray:
    """(n_obs, max_lag + 1) array of the lag columns for one exposure."""
    cols = [lag_column(column, k) for k in range(max_lag + 1)]
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"Lag columns not found: {missing}; run add_lag_features first")
    return df[cols].to_numpy(dtype=float)


# =============================================================================
# PIPELINE
# =============================================================================

def prepare_panel(
    path: str,
    max_lag: int = config.MAX_LAG,
    exposures: List[str] = None,
) -> pd.DataFrame:
    """Load, clean and add time, incidence and lag features."""
    exposures = exposures or config.EXPOSURES
    df = load_malaria_data(path)
    df = clean_malaria_data(df)
    report = df.attrs.get('cleaning_report', {})
    df = add_time_columns(df)
    df = add_incidence_rate(df)
    df = add_lag_features(df, exposures, max_lag)
    df.attrs['cleaning_report'] = report

    n_complete = int(df[[lag_column(c, max_lag) for c in exposures]].notna().all(axis=1).sum())
    logger.info("Prepared panel: %d rows, %d with full %d-month lag history",
                len(df), n_complete, max_lag)
    return df


def save_panel(df: pd.DataFrame, path: str) -> None:
    """Write the prepared panel as parquet."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    out = df.copy()
    out.attrs = {}
    out.to_parquet(path, engine='pyarrow', index=False)
    logger.info("Saved prepared panel: %s", path)
