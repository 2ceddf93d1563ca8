"""
Utilities module for the malaria-climate DLNM analysis.

Contains:
- dlnm_module: natural cubic spline bases, cross-basis over monthly lag
  matrices, relative-risk prediction and meta-analysis helpers.

Functions:
- ns_basis: Natural cubic spline basis (linear beyond boundary knots)
- create_lag_matrix: Lag matrix for a single ordered series
- log_lag_knots / lag_basis_matrix: Lag-dimension knots and basis
- create_crossbasis_ns: Tensor-product cross-basis
- compute_cumulative_rr_ns_with_se: Returns (log_rr, se)
- predict_rr_curve / predict_lag_curve: RR tables with 95% bands
- find_minimum_risk_value: Exposure with the lowest RR
- create_time_spline: Long-term trend spline
- random_effects_meta_analysis: DerSimonian-Laird meta-analysis
- convert_to_json_serializable: JSON serialization helper
"""

from .dlnm_module import (
    # Bases
    ns_basis,
    create_lag_matrix,
    log_lag_knots,
    lag_basis_matrix,
    create_crossbasis_ns,
    crossbasis_contrast,

    # Prediction
    compute_cumulative_rr_ns_with_se,
    predict_rr_curve,
    predict_lag_curve,
    find_minimum_risk_value,
    summarize_curve,

    # Confounders and pooling
    create_time_spline,
    random_effects_meta_analysis,
    convert_to_json_serializable,
)

__all__ = [
    'ns_basis',
    'create_lag_matrix',
    'log_lag_knots',
    'lag_basis_matrix',
    'create_crossbasis_ns',
    'crossbasis_contrast',
    'compute_cumulative_rr_ns_with_se',
    'predict_rr_curve',
    'predict_lag_curve',
    'find_minimum_risk_value',
    'summarize_curve',
    'create_time_spline',
    'random_effects_meta_analysis',
    'convert_to_json_serializable',
]
