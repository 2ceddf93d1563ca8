"""
Configuration for the malaria-climate DLNM analysis.

Paths, canonical column names and DLNM parameters shared by all phases.
Every value here can be overridden from the command line (see run_analysis).
"""

import os

# =============================================================================
# PATHS
# =============================================================================

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(BASE_DIR, 'data')
DEFAULT_DATA_PATH = os.path.join(DATA_DIR, 'malaria_climate_monthly.csv')
OUTPUT_DIR = os.path.join(BASE_DIR, 'results')

# =============================================================================
# COLUMNS
# =============================================================================

DISTRICT_COL = 'district'
YEAR_COL = 'year'
MONTH_COL = 'month'
CASES_COL = 'malaria_cases'
POP_COL = 'population'
TEMP_COL = 'max_temp'
PRECIP_COL = 'precipitation'

REQUIRED_COLUMNS = [
    DISTRICT_COL, YEAR_COL, MONTH_COL, CASES_COL, POP_COL, TEMP_COL, PRECIP_COL
]

# Header variants seen in district surveillance extracts
COLUMN_ALIASES = {
    'district_name': DISTRICT_COL,
    'districts': DISTRICT_COL,
    'yr': YEAR_COL,
    'mon': MONTH_COL,
    'cases': CASES_COL,
    'malaria': CASES_COL,
    'total_cases': CASES_COL,
    'malaria_case': CASES_COL,
    'pop': POP_COL,
    'total_population': POP_COL,
    'tmax': TEMP_COL,
    'max_temperature': TEMP_COL,
    'maximum_temperature': TEMP_COL,
    'temp_max': TEMP_COL,
    'rainfall': PRECIP_COL,
    'rain': PRECIP_COL,
    'precip': PRECIP_COL,
    'total_precipitation': PRECIP_COL,
}

EXPOSURES = [TEMP_COL, PRECIP_COL]

EXPOSURE_LABELS = {
    TEMP_COL: 'Maximum temperature (°C)',
    PRECIP_COL: 'Precipitation (mm)',
}

# =============================================================================
# DLNM PARAMETERS
# =============================================================================

MAX_LAG = 3                    # Maximum lag in months
VAR_KNOT_PCTS = [10, 50, 90]   # Exposure knots at these percentiles
LAG_N_KNOTS = 1                # Interior lag knots (equally spaced on log scale)
TIME_SPLINE_DF_PER_YEAR = 1    # Long-term trend; month dummies handle seasonality
REFERENCE_PCT = 50             # Centering value for RR prediction
N_PRED_POINTS = 100
FAMILY = 'poisson'             # or 'quasi-poisson'
MAXITER = 200

MIN_OBS_POPULATION = 24
MIN_OBS_DISTRICT = 36

INCIDENCE_PER = 1000

# District-specific RRs pooled at these exposure percentiles
POOL_PERCENTILES = [1, 10, 25, 75, 90, 99]
