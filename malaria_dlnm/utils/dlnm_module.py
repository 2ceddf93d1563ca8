"""
DLNM Utilities Module
=====================
Natural cubic spline bases, tensor-product cross-basis over monthly lag
matrices, delta-method relative-risk prediction (cumulative and
lag-specific), long-term trend splines and DerSimonian-Laird pooling.

The cross-basis follows Gasparrini et al. (2010):
- Natural cubic spline for the exposure dimension (knots at percentiles)
- Natural cubic spline for the lag dimension on log(lag + 1), with intercept
- Tensor product giving K_var x K_lag columns, ordered exposure-major
  (cb_v0_l0, cb_v0_l1, ..., cb_v1_l0, ...)

Dependencies:
- numpy, pandas, patsy, scipy
"""

from typing import Tuple, Dict, Any, List, Optional, Sequence, Union
import logging
import warnings

import numpy as np
import pandas as pd
from patsy import dmatrix
from scipy import stats

logger = logging.getLogger(__name__)
warnings.filterwarnings("ignore", category=FutureWarning)

Z_95 = stats.norm.ppf(0.975)


# =============================================================================
# NATURAL SPLINE BASIS
# =============================================================================

def ns_basis(x: np.ndarray, knots: np.ndarray, boundary_knots: tuple = None,
             intercept: bool = False) -> np.ndarray:
    """
    Create natural cubic spline basis matrix (truncated power form).

    Natural splines are cubic between the boundary knots and linear beyond
    them, which keeps predictions at the edges of the exposure range stable.

    Parameters:
    -----------
    x : array-like
        Values at which to evaluate the basis (NaN propagates)
    knots : array-like
        Interior knot locations
    boundary_knots : tuple
        (lower, upper) boundary knots. If None, uses min/max of x
    intercept : bool
        Whether to include a constant column

    Returns:
    --------
    basis : ndarray
        Basis matrix (n x df), df = len(knots) + 1 (+1 with intercept)
    """
    x = np.asarray(x, dtype=float).flatten()
    knots = np.sort(np.asarray(knots, dtype=float).flatten())

    if boundary_knots is None:
        boundary_knots = (np.nanmin(x), np.nanmax(x))
    lower, upper = float(boundary_knots[0]), float(boundary_knots[1])
    if not upper > lower:
        raise ValueError(f"Boundary knots must be increasing, got ({lower}, {upper})")
    if len(knots) and (knots.min() <= lower or knots.max() >= upper):
        raise ValueError("Interior knots must lie strictly inside the boundary knots")

    all_knots = np.concatenate([[lower], knots, [upper]])
    n_knots = len(knots)

    def d(x_val, knot_k):
        return ((np.maximum(0, x_val - knot_k) ** 3 - np.maximum(0, x_val - upper) ** 3) /
                (upper - knot_k))

    n = len(x)
    basis = np.zeros((n, n_knots + 1))
    basis[:, 0] = x

    # d_k - d_{K-1} for every knot except the last two
    d_last = d(x, all_knots[-2])
    for j in range(n_knots):
        basis[:, j + 1] = d(x, all_knots[j]) - d_last

    if intercept:
        basis = np.column_stack([np.ones(n), basis])

    return basis


# =============================================================================
# LAG HELPERS
# =============================================================================

def create_lag_matrix(x: np.ndarray, max_lag: int) -> np.ndarray:
    """
    Create lag matrix of shape (n_obs, max_lag+1) where column j is x shifted by j steps.
    Leading rows with insufficient history contain np.nan.

    Assumes x is a single, gap-free series; panel data should use the
    district-aware lag columns from phase0_data_prep instead.
    """
    x = np.asarray(x, dtype=float)
    n = len(x)
    lag_mat = np.full((n, max_lag + 1), np.nan, dtype=float)
    for j in range(max_lag + 1):
        if j == 0:
            lag_mat[:, 0] = x
        elif j < n:
            lag_mat[j:, j] = x[:-j]
    return lag_mat


def log_lag_knots(max_lag: int, n_knots: int = 1) -> np.ndarray:
    """Lag knots (in months) equally spaced on the log(lag + 1) scale."""
    n_knots = min(n_knots, max(0, max_lag - 1))
    if n_knots <= 0:
        return np.array([], dtype=float)
    pos = np.linspace(0, np.log(max_lag + 1), n_knots + 2)[1:-1]
    return np.exp(pos) - 1


def lag_basis_matrix(max_lag: int, lag_knots: Sequence[float]) -> np.ndarray:
    """Lag-response basis evaluated at integer lags 0..max_lag, shape (max_lag+1, K_lag)."""
    if max_lag == 0:
        return np.ones((1, 1))
    lag_log = np.log(np.arange(max_lag + 1) + 1.0)
    lag_knots_log = np.log(np.asarray(lag_knots, dtype=float) + 1)
    return ns_basis(lag_log, lag_knots_log, (0.0, float(np.log(max_lag + 1))), intercept=True)


# =============================================================================
# CROSS-BASIS
# =============================================================================

def create_crossbasis_ns(
    lag_mat: np.ndarray,
    var_knots: Sequence[float],
    var_boundary: tuple,
    lag_knots: Sequence[float],
    name: str = "cb",
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Create cross-basis matrix from an exposure lag matrix.

    Parameters:
    -----------
    lag_mat : array (n_obs, max_lag + 1)
        Column j holds the exposure j months before each observation
    var_knots : array
        Interior knots for the exposure dimension
    var_boundary : tuple
        Boundary knots for the exposure (low, high)
    lag_knots : array
        Interior knots for the lag dimension in months
    name : str
        Prefix for the column names

    Returns:
    --------
    X_cb : ndarray
        Cross-basis (n x (var_df * lag_df)); rows with any missing lag are NaN
    info : dict
        Everything needed to rebuild contrasts at prediction time
    """
    lag_mat = np.asarray(lag_mat, dtype=float)
    if lag_mat.ndim != 2:
        raise ValueError("lag_mat must be a 2-D (n_obs, max_lag + 1) array")
    n, n_lags = lag_mat.shape
    max_lag = n_lags - 1

    var_knots = [float(k) for k in var_knots]
    var_boundary = (float(var_boundary[0]), float(var_boundary[1]))
    lag_knots = [float(k) for k in lag_knots]

    var_basis = ns_basis(lag_mat.ravel(), var_knots, var_boundary)
    var_df = var_basis.shape[1]
    var_basis = var_basis.reshape(n, n_lags, var_df)

    lag_basis = lag_basis_matrix(max_lag, lag_knots)
    lag_df = lag_basis.shape[1]

    # sum over lags of var_basis[i, l, v] * lag_basis[l, k]
    X_cb = np.einsum('nlv,lk->nvk', var_basis, lag_basis).reshape(n, var_df * lag_df)
    X_cb[np.isnan(lag_mat).any(axis=1)] = np.nan

    col_names = [f'{name}_v{v}_l{k}' for v in range(var_df) for k in range(lag_df)]

    info = {
        'name': name,
        'var_knots': var_knots,
        'var_boundary': list(var_boundary),
        'lag_knots': lag_knots,
        'var_df': var_df,
        'lag_df': lag_df,
        'max_lag': max_lag,
        'n_params': var_df * lag_df,
        'col_names': col_names,
    }

    return X_cb, info


def crossbasis_contrast(
    target: Union[float, np.ndarray],
    ref: float,
    cb_info: Dict[str, Any],
    lags: Optional[Union[int, Sequence[int]]] = None,
) -> np.ndarray:
    """
    Contrast vector(s) such that contrast @ coefs is the log-RR of target vs ref.

    lags=None sums over all lags (cumulative effect); an int gives the
    lag-specific effect; a sequence sums over the listed lags.
    """
    max_lag = cb_info['max_lag']
    lag_basis = lag_basis_matrix(max_lag, cb_info['lag_knots'])
    if lags is None:
        lag_weights = lag_basis.sum(axis=0)
    else:
        idx = np.atleast_1d(lags).astype(int)
        if idx.min() < 0 or idx.max() > max_lag:
            raise ValueError(f"lags must lie in 0..{max_lag}")
        lag_weights = lag_basis[idx].sum(axis=0)

    target = np.atleast_1d(np.asarray(target, dtype=float))
    boundary = tuple(cb_info['var_boundary'])
    var_target = ns_basis(target, cb_info['var_knots'], boundary)
    var_ref = ns_basis(np.array([ref]), cb_info['var_knots'], boundary)[0]
    diff = var_target - var_ref

    contrast = diff[:, :, None] * lag_weights[None, None, :]
    return contrast.reshape(len(target), -1)


# =============================================================================
# PREDICTION
# =============================================================================

def compute_cumulative_rr_ns_with_se(
    target: float,
    ref: float,
    coefs: np.ndarray,
    vcov: np.ndarray,
    cb_info: Dict[str, Any],
) -> Tuple[float, float]:
    """
    Cumulative log-RR and delta-method standard error of target vs ref.

    Returns:
    --------
    (log_rr, se)
    """
    contrast = crossbasis_contrast(target, ref, cb_info)[0]
    coefs = np.asarray(coefs, dtype=float)
    vcov = np.asarray(vcov, dtype=float)
    log_rr = float(contrast @ coefs)
    var = float(contrast @ vcov @ contrast)
    return log_rr, float(np.sqrt(max(0.0, var)))


def _rr_table(log_rr: np.ndarray, se: np.ndarray) -> Dict[str, np.ndarray]:
    return {
        'log_rr': log_rr,
        'se': se,
        'rr': np.exp(log_rr),
        'rr_low': np.exp(log_rr - Z_95 * se),
        'rr_high': np.exp(log_rr + Z_95 * se),
    }


def predict_rr_curve(
    coefs: np.ndarray,
    vcov: np.ndarray,
    cb_info: Dict[str, Any],
    grid: np.ndarray,
    reference: float,
    lags: Optional[Union[int, Sequence[int]]] = None,
) -> pd.DataFrame:
    """
    Relative-risk curve over an exposure grid, centred on the reference value.

    The reference value is always part of the returned grid, where RR is
    exactly 1 with a zero-width band.

    Returns:
    --------
    DataFrame with columns: exposure, log_rr, se, rr, rr_low, rr_high
    (reference stored in .attrs['reference'])
    """
    grid = np.union1d(np.asarray(grid, dtype=float), [float(reference)])
    contrast = crossbasis_contrast(grid, reference, cb_info, lags=lags)
    coefs = np.asarray(coefs, dtype=float)
    vcov = np.asarray(vcov, dtype=float)

    log_rr = contrast @ coefs
    var = np.einsum('ij,jk,ik->i', contrast, vcov, contrast)
    se = np.sqrt(np.clip(var, 0.0, None))

    curve = pd.DataFrame({'exposure': grid, **_rr_table(log_rr, se)})
    curve.attrs['reference'] = float(reference)
    return curve


def predict_lag_curve(
    coefs: np.ndarray,
    vcov: np.ndarray,
    cb_info: Dict[str, Any],
    target: float,
    reference: float,
) -> pd.DataFrame:
    """Lag-specific RR of target vs reference for each lag 0..max_lag."""
    coefs = np.asarray(coefs, dtype=float)
    vcov = np.asarray(vcov, dtype=float)
    lags = np.arange(cb_info['max_lag'] + 1)
    contrast = np.vstack([
        crossbasis_contrast(target, reference, cb_info, lags=int(lag))[0] for lag in lags
    ])
    log_rr = contrast @ coefs
    se = np.sqrt(np.clip(np.einsum('ij,jk,ik->i', contrast, vcov, contrast), 0.0, None))

    curve = pd.DataFrame({'lag': lags, **_rr_table(log_rr, se)})
    curve.attrs['target'] = float(target)
    curve.attrs['reference'] = float(reference)
    return curve


def find_minimum_risk_value(
    curve: pd.DataFrame,
    bounds: Optional[Tuple[float, float]] = None,
) -> float:
    """
    Exposure value with the lowest predicted RR on a curve.

    bounds restricts the search to an exposure window (e.g. P10-P90) so a
    monotone curve does not put the minimum on the edge of the range.
    """
    search = curve
    if bounds is not None:
        search = curve[(curve['exposure'] >= bounds[0]) & (curve['exposure'] <= bounds[1])]
        if search.empty:
            logger.warning("No grid points inside bounds %s; searching the full curve", bounds)
            search = curve
    return float(search.loc[search['rr'].idxmin(), 'exposure'])


# =============================================================================
# CONFOUNDER BASES
# =============================================================================

def create_time_spline(
    time_index: np.ndarray,
    n_years: float,
    df_per_year: float = 1.0
) -> np.ndarray:
    """
    Natural cubic regression spline for the long-term trend (patsy cr()).

    The basis is centred so it is not collinear with the model intercept.
    """
    total_df = max(2, int(round(n_years * df_per_year)))
    time_index = np.asarray(time_index, dtype=float)
    n_unique = len(np.unique(time_index))
    if n_unique <= total_df:
        total_df = max(1, n_unique - 1)
    if total_df < 2:
        return time_index.reshape(-1, 1) - time_index.mean()

    return dmatrix(
        f"cr(x, df={total_df}, constraints='center') - 1",
        {"x": time_index},
        return_type='dataframe'
    ).values


# =============================================================================
# META-ANALYSIS (DERSIMONIAN-LAIRD)
# =============================================================================

def random_effects_meta_analysis(log_rr, se) -> Dict[str, Any]:
    """
    DerSimonian-Laird random-effects pooling of district log-RRs.

    log_rr and se are pd.Series indexed by district (plain arrays get a
    positional index). Besides the pooled RR and heterogeneity statistics
    (tau2, I2, Cochran's Q), 'weights' gives each district's share of the
    random-effects weight, keyed by that index.
    """
    log_rr = pd.Series(log_rr, dtype=float)
    variance = pd.Series(np.asarray(se, dtype=float) ** 2, index=log_rr.index)
    k = len(log_rr)
    if k == 0:
        raise ValueError("No district estimates to pool")

    w_fixed = 1.0 / variance
    theta_fixed = (w_fixed * log_rr).sum() / w_fixed.sum()
    Q = float((w_fixed * (log_rr - theta_fixed) ** 2).sum())
    c = w_fixed.sum() - (w_fixed ** 2).sum() / w_fixed.sum()
    tau2 = max(0.0, (Q - (k - 1)) / c) if c > 0 else 0.0

    w_random = 1.0 / (variance + tau2)
    theta = float((w_random * log_rr).sum() / w_random.sum())
    se_pooled = float(np.sqrt(1.0 / w_random.sum()))

    return {
        'pooled_effect': theta,
        'pooled_se': se_pooled,
        'pooled_rr': float(np.exp(theta)),
        'pooled_rr_lower': float(np.exp(theta - Z_95 * se_pooled)),
        'pooled_rr_upper': float(np.exp(theta + Z_95 * se_pooled)),
        'tau2': float(tau2),
        'I2': 100.0 * max(0.0, (Q - (k - 1)) / Q) if Q > 0 else 0.0,
        'Q': Q,
        'p_heterogeneity': float(stats.chi2.sf(Q, k - 1)) if k > 1 else 1.0,
        'n_districts': k,
        'weights': (w_random / w_random.sum()).to_dict(),
    }


# =============================================================================
# SERIALIZATION
# =============================================================================

def _json_key(key):
    return key.item() if isinstance(key, np.generic) else key


def convert_to_json_serializable(obj: Any) -> Any:
    """Plain-Python copy of nested results (numpy scalars, arrays, DataFrames) for json.dump."""
    if isinstance(obj, pd.DataFrame):
        return [convert_to_json_serializable(row) for row in obj.to_dict(orient='records')]
    if isinstance(obj, (dict, pd.Series)):
        return {_json_key(k): convert_to_json_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, np.ndarray)):
        return [convert_to_json_serializable(v) for v in obj]
    if isinstance(obj, np.generic):
        return obj.item()
    return obj


def summarize_curve(curve: pd.DataFrame, percentiles: List[float],
                    exposure_values: np.ndarray) -> Dict[str, Dict[str, float]]:
    """Pick curve rows nearest to the given percentiles of the observed exposure."""
    out = {}
    for p in percentiles:
        value = float(np.nanpercentile(exposure_values, p))
        row = curve.iloc[int(np.argmin(np.abs(curve['exposure'].to_numpy() - value)))]
        out[f'p{p:g}'] = {
            'exposure': float(row['exposure']),
            'rr': float(row['rr']),
            'rr_lower': float(row['rr_low']),
            'rr_upper': float(row['rr_high']),
        }
    return out
