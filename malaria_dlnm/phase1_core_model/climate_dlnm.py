"""
Climate-malaria DLNM: model fitting and relative-risk prediction
================================================================
Poisson GLM with a natural-spline cross-basis for each climatic exposure
(maximum temperature, precipitation) over lags 0..MAX_LAG months.

Model (per analysis unit):
    log E[cases] = log(population) + const
                   + cb(max_temp) + cb(precipitation)
                   + month dummies + ns(time) [+ district dummies]

The same code path runs the population-wide model (all districts pooled,
district fixed effects) and the district-specific models. District RRs at
exposure percentiles are then pooled with DerSimonian-Laird.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.genmod.generalized_linear_model import GLM
from statsmodels.genmod.families import Poisson
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from scipy import stats

from malaria_dlnm import config
from malaria_dlnm.phase0_data_prep.prepare_panel import lag_matrix
from malaria_dlnm.utils.dlnm_module import (
    create_crossbasis_ns,
    log_lag_knots,
    create_time_spline,
    compute_cumulative_rr_ns_with_se,
    predict_rr_curve,
    predict_lag_curve,
    find_minimum_risk_value,
    random_effects_meta_analysis,
    Z_95,
)

logger = logging.getLogger(__name__)
warnings.filterwarnings("ignore", category=FutureWarning)

FAMILIES = ('poisson', 'quasi-poisson')


class DLNMFitError(RuntimeError):
    """A DLNM fit that could not be completed; `status` says why.

    status is one of 'small', 'no_cases', 'convergence' or
    'error:<ExceptionName>' and is what the district summary reports.
    """

    def __init__(self, status: str, message: str):
        super().__init__(message)
        self.status = status


# =============================================================================
# DESIGN MATRIX
# =============================================================================

def exposure_knots(values: np.ndarray, knot_pcts: Sequence[float]) -> Tuple[List[float], Tuple[float, float]]:
    """
    Interior knots at percentiles of the exposure, boundaries at min/max.

    Knots that coincide with a boundary or with each other (e.g. many
    zero-precipitation months) are dropped.
    """
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    if len(values) == 0:
        raise ValueError("Exposure has no observed values")
    lower, upper = float(values.min()), float(values.max())
    if not upper > lower:
        raise ValueError(f"Exposure is constant ({lower}); cannot build a spline basis")

    knots = np.unique(np.percentile(values, knot_pcts))
    knots = [float(k) for k in knots if lower < k < upper]
    return knots, (lower, upper)


def build_design_matrix(
    df: pd.DataFrame,
    exposures: Sequence[str] = None,
    max_lag: int = config.MAX_LAG,
    var_knot_pcts: Sequence[float] = None,
    lag_n_knots: int = config.LAG_N_KNOTS,
    time_df_per_year: float = config.TIME_SPLINE_DF_PER_YEAR,
    district_effects: bool = False,
) -> Dict[str, Any]:
    """
    Build the GLM design for one analysis unit.

    Rows with incomplete lag history (any exposure) or missing outcome are
    dropped. Confounder bases are computed on the remaining rows.

    Returns:
    --------
    dict with X (DataFrame incl. const), y, offset, cb_infos, data (valid rows)
    """
    exposures = list(exposures or config.EXPOSURES)
    var_knot_pcts = var_knot_pcts or config.VAR_KNOT_PCTS
    df = df.reset_index(drop=True)

    lag_knots = log_lag_knots(max_lag, lag_n_knots)

    cb_frames = []
    cb_infos = {}
    for exposure in exposures:
        knots, boundary = exposure_knots(df[exposure].to_numpy(), var_knot_pcts)
        X_cb, info = create_crossbasis_ns(
            lag_matrix(df, exposure, max_lag), knots, boundary, lag_knots, name=f'cb_{exposure}'
        )
        info['exposure'] = exposure
        cb_infos[exposure] = info
        cb_frames.append(pd.DataFrame(X_cb, columns=info['col_names'], index=df.index))

    X_cb_all = pd.concat(cb_frames, axis=1)
    valid = X_cb_all.notna().all(axis=1) & df[config.CASES_COL].notna()
    df_valid = df.loc[valid].reset_index(drop=True)
    X_cb_all = X_cb_all.loc[valid].reset_index(drop=True)

    controls = []
    controls.append(pd.get_dummies(df_valid[config.MONTH_COL].astype(int), prefix='month',
                                   drop_first=True, dtype=float))

    if len(df_valid) > 0:
        time_index = df_valid['time_index'].to_numpy(dtype=float)
        n_years = (time_index.max() - time_index.min() + 1) / 12.0
        trend = create_time_spline(time_index, n_years, time_df_per_year)
        controls.append(pd.DataFrame(trend, columns=[f'trend_{i}' for i in range(trend.shape[1])]))

    if district_effects and df_valid[config.DISTRICT_COL].nunique() > 1:
        controls.append(pd.get_dummies(df_valid[config.DISTRICT_COL], prefix='district',
                                       drop_first=True, dtype=float))

    X = pd.concat([X_cb_all] + controls, axis=1)
    X = sm.add_constant(X, has_constant='add').astype(float)

    return {
        'X': X,
        'y': df_valid[config.CASES_COL].to_numpy(dtype=float),
        'offset': np.log(df_valid[config.POP_COL].to_numpy(dtype=float)),
        'cb_infos': cb_infos,
        'data': df_valid,
    }


# =============================================================================
# MODEL FITTING
# =============================================================================

def fit_dlnm(
    df: pd.DataFrame,
    exposures: Sequence[str] = None,
    max_lag: int = config.MAX_LAG,
    family: str = config.FAMILY,
    min_obs: int = config.MIN_OBS_POPULATION,
    district_effects: bool = False,
    var_knot_pcts: Sequence[float] = None,
    lag_n_knots: int = config.LAG_N_KNOTS,
    time_df_per_year: float = config.TIME_SPLINE_DF_PER_YEAR,
    maxiter: int = config.MAXITER,
    raise_on_failure: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Fit the DLNM Poisson GLM with log(population) offset.

    family='quasi-poisson' rescales standard errors by the Pearson X2
    dispersion. When there are too few complete rows, no cases, the fit
    fails numerically, or IRLS does not converge, the reason is logged and
    None is returned (or DLNMFitError raised if raise_on_failure).

    Returns:
    --------
    dict with model_result, cb_infos, coefs, vcov, exposure_values, n_obs,
    dispersion, aic, deviance, family
    """
    if family not in FAMILIES:
        raise ValueError(f"Unknown family '{family}'; expected one of {FAMILIES}")
    exposures = list(exposures or config.EXPOSURES)

    def fail(status: str, message: str) -> None:
        logger.warning("%s; skipping fit", message)
        if raise_on_failure:
            raise DLNMFitError(status, message)

    design = build_design_matrix(
        df, exposures, max_lag=max_lag, var_knot_pcts=var_knot_pcts,
        lag_n_knots=lag_n_knots, time_df_per_year=time_df_per_year,
        district_effects=district_effects,
    )
    X, y = design['X'], design['y']

    if len(y) < min_obs:
        return fail('small', f"{len(y)} complete rows < min_obs={min_obs}")
    if len(y) <= X.shape[1]:
        return fail('small', f"{len(y)} complete rows for {X.shape[1]} parameters")
    if y.sum() == 0:
        return fail('no_cases', f"No malaria cases in {len(y)} complete rows")

    try:
        model = GLM(y, X, family=Poisson(), offset=design['offset'])
        if family == 'quasi-poisson':
            res = model.fit(scale='X2', maxiter=maxiter)
        else:
            res = model.fit(maxiter=maxiter)
    except (np.linalg.LinAlgError, PerfectSeparationError, ValueError) as e:
        return fail(f'error:{type(e).__name__}', f"GLM fit failed: {type(e).__name__}: {e}")

    if not res.converged:
        return fail('convergence',
                    f"GLM did not converge (n_obs={len(y)}, total_cases={int(y.sum())})")

    cov = res.cov_params()
    coefs, vcov = {}, {}
    for exposure, info in design['cb_infos'].items():
        cols = info['col_names']
        coefs[exposure] = res.params[cols].to_numpy(dtype=float)
        vcov[exposure] = cov.loc[cols, cols].to_numpy(dtype=float)

    data = design['data']
    return {
        'model_result': res,
        'family': family,
        'cb_infos': design['cb_infos'],
        'coefs': coefs,
        'vcov': vcov,
        'exposure_values': {e: data[e].to_numpy(dtype=float) for e in exposures},
        'n_obs': int(len(y)),
        'n_params': int(X.shape[1]),
        'total_cases': int(y.sum()),
        'dispersion': float(res.pearson_chi2 / res.df_resid),
        'aic': float(res.aic),
        'deviance': float(res.deviance),
    }


def cross_basis_wald_test(fit: Dict[str, Any], exposure: str) -> Dict[str, float]:
    """Joint Wald chi-square test that every cross-basis coefficient is zero."""
    b = fit['coefs'][exposure]
    V = fit['vcov'][exposure]
    stat = float(b @ np.linalg.pinv(V) @ b)
    df = int(np.linalg.matrix_rank(V))
    return {'chi2': stat, 'df': df, 'p_value': float(stats.chi2.sf(stat, df))}


# =============================================================================
# PREDICTION
# =============================================================================

def reference_value(fit: Dict[str, Any], exposure: str,
                    reference_pct: float = config.REFERENCE_PCT) -> float:
    return float(np.nanpercentile(fit['exposure_values'][exposure], reference_pct))


def predict_relative_risk(
    fit: Dict[str, Any],
    exposure: str,
    reference: float = None,
    reference_pct: float = config.REFERENCE_PCT,
    n_points: int = config.N_PRED_POINTS,
) -> pd.DataFrame:
    """
    Cumulative RR over the observed exposure range, centred on the reference.

    The reference defaults to the reference_pct percentile (median) of the
    exposure in the fitted rows.
    """
    if reference is None:
        reference = reference_value(fit, exposure, reference_pct)
    values = fit['exposure_values'][exposure]
    grid = np.linspace(np.nanmin(values), np.nanmax(values), n_points)

    curve = predict_rr_curve(fit['coefs'][exposure], fit['vcov'][exposure],
                             fit['cb_infos'][exposure], grid, reference)
    curve.attrs['exposure_name'] = exposure
    return curve


# =============================================================================
# SUMMARY
# =============================================================================

def model_summary(fit: Dict[str, Any]) -> Dict[str, Any]:
    res = fit['model_result']
    null_dev = float(res.null_deviance)
    return {
        'family': fit['family'],
        'n_obs': fit['n_obs'],
        'n_params': fit['n_params'],
        'total_cases': fit['total_cases'],
        'iterations': int(res.fit_history.get('iteration', 0)),
        'deviance': fit['deviance'],
        'null_deviance': null_dev,
        'pseudo_r2': float(1 - fit['deviance'] / null_dev) if null_dev > 0 else np.nan,
        'aic': fit['aic'],
        'df_resid': float(res.df_resid),
        'dispersion': fit['dispersion'],
        'wald_tests': {e: cross_basis_wald_test(fit, e) for e in fit['cb_infos']},
    }


def format_model_summary(summary: Dict[str, Any], title: str = 'DLNM') -> str:
    lines = [
        f"{title}",
        "-" * 50,
        f"  Family: {summary['family']}  (IRLS iterations: {summary['iterations']})",
        f"  Observations: {summary['n_obs']:,}  Parameters: {summary['n_params']}",
        f"  Total cases: {summary['total_cases']:,}",
        f"  Deviance: {summary['deviance']:.1f} (null {summary['null_deviance']:.1f}, "
        f"pseudo-R2 {summary['pseudo_r2']:.3f})",
        f"  AIC: {summary['aic']:.1f}",
        f"  Dispersion (Pearson X2 / df): {summary['dispersion']:.2f}",
    ]
    for exposure, test in summary['wald_tests'].items():
        lines.append(f"  Cross-basis {exposure}: chi2={test['chi2']:.2f} "
                     f"df={test['df']} p={test['p_value']:.4g}")
    return "\n".join(lines)


# =============================================================================
# ANALYSIS UNITS
# =============================================================================

def analyse_unit(
    df: pd.DataFrame,
    exposures: Sequence[str] = None,
    max_lag: int = config.MAX_LAG,
    family: str = config.FAMILY,
    min_obs: int = config.MIN_OBS_POPULATION,
    district_effects: bool = False,
    reference_pct: float = config.REFERENCE_PCT,
    n_points: int = config.N_PRED_POINTS,
    lag_target_pct: float = 90,
    raise_on_failure: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Fit one unit and predict its RR curves, lag-response curves and
    minimum-risk values. Returns None when the fit fails, or raises
    DLNMFitError if raise_on_failure.
    """
    exposures = list(exposures or config.EXPOSURES)
    fit = fit_dlnm(df, exposures, max_lag=max_lag, family=family, min_obs=min_obs,
                   district_effects=district_effects, raise_on_failure=raise_on_failure)
    if fit is None:
        return None

    curves, lag_curves, minimum_risk, reference = {}, {}, {}, {}
    for exposure in exposures:
        values = fit['exposure_values'][exposure]
        ref = reference_value(fit, exposure, reference_pct)
        curve = predict_relative_risk(fit, exposure, reference=ref, n_points=n_points)

        bounds = tuple(np.nanpercentile(values, [10, 90]))
        minimum_risk[exposure] = find_minimum_risk_value(curve, bounds=bounds)
        curve.attrs['minimum_risk'] = minimum_risk[exposure]

        target = float(np.nanpercentile(values, lag_target_pct))
        lag_curves[exposure] = predict_lag_curve(
            fit['coefs'][exposure], fit['vcov'][exposure], fit['cb_infos'][exposure],
            target, ref
        )
        curves[exposure] = curve
        reference[exposure] = ref

    return {
        'fit': fit,
        'summary': model_summary(fit),
        'curves': curves,
        'lag_curves': lag_curves,
        'minimum_risk': minimum_risk,
        'reference': reference,
    }


def fit_population_model(panel: pd.DataFrame, **kwargs) -> Dict[str, Any]:
    """Population-wide model: all districts pooled with district fixed effects."""
    kwargs.setdefault('min_obs', config.MIN_OBS_POPULATION)
    try:
        return analyse_unit(panel, district_effects=True, raise_on_failure=True, **kwargs)
    except DLNMFitError as e:
        raise DLNMFitError(e.status, f"Population-wide DLNM failed to fit: {e}") from e


def fit_district_models(
    panel: pd.DataFrame,
    districts: Sequence[str] = None,
    **kwargs
) -> Tuple[Dict[str, Optional[Dict[str, Any]]], Dict[str, str]]:
    """
    Fit the same model separately for each district.

    Returns:
    --------
    (district_results, skipped) where skipped maps district -> status
    (the DLNMFitError status: 'small', 'no_cases', 'convergence' or
    'error:<ExceptionName>')
    """
    kwargs.setdefault('min_obs', config.MIN_OBS_DISTRICT)
    min_obs = kwargs['min_obs']
    if districts is None:
        districts = sorted(panel[config.DISTRICT_COL].unique())

    district_results, skipped = {}, {}
    for i, district in enumerate(districts):
        df_district = panel[panel[config.DISTRICT_COL] == district]
        result = None
        if len(df_district) < min_obs:
            status = 'small'
        else:
            try:
                result = analyse_unit(df_district, district_effects=False,
                                      raise_on_failure=True, **kwargs)
                status = 'ok'
            except DLNMFitError as e:
                status = e.status
            except (ValueError, np.linalg.LinAlgError) as e:
                status = f'error:{e.__class__.__name__}'
                logger.warning("District %s: %s", district, e)

        district_results[district] = result
        if result is None:
            skipped[district] = status
        logger.info("District %s (%d/%d): status=%s n_rows=%d",
                    district, i + 1, len(districts), status, len(df_district))

    return district_results, skipped


# =============================================================================
# DISTRICT EFFECTS AND POOLING
# =============================================================================

def district_effects_at_percentiles(
    district_results: Dict[str, Optional[Dict[str, Any]]],
    exposure: str,
    percentiles: Sequence[float] = None,
) -> pd.DataFrame:
    """
    Cumulative RR at district-specific exposure percentiles vs each
    district's own reference value.
    """
    percentiles = percentiles or config.POOL_PERCENTILES
    rows = []
    for district, result in district_results.items():
        if result is None:
            continue
        fit = result['fit']
        values = fit['exposure_values'][exposure]
        ref = result['reference'][exposure]
        for pct in percentiles:
            target = float(np.nanpercentile(values, pct))
            log_rr, se = compute_cumulative_rr_ns_with_se(
                target, ref, fit['coefs'][exposure], fit['vcov'][exposure],
                fit['cb_infos'][exposure]
            )
            p_value = 2 * stats.norm.sf(abs(log_rr / se)) if se > 0 else np.nan
            rows.append({
                'district': district,
                'percentile': f'p{pct:g}',
                'exposure_value': target,
                'reference': ref,
                'log_rr': log_rr,
                'log_rr_se': se,
                'rr': float(np.exp(log_rr)),
                'rr_lower': float(np.exp(log_rr - Z_95 * se)),
                'rr_upper': float(np.exp(log_rr + Z_95 * se)),
                'p_value': p_value,
            })
    columns = ['district', 'percentile', 'exposure_value', 'reference', 'log_rr',
               'log_rr_se', 'rr', 'rr_lower', 'rr_upper', 'p_value']
    return pd.DataFrame(rows, columns=columns)


def pool_district_effects(
    district_results: Dict[str, Optional[Dict[str, Any]]],
    exposure: str,
    percentiles: Sequence[float] = None,
    min_se: float = 0.001,
    max_se: float = 5.0,
    max_abs_logrr: float = 5.0,
) -> Dict[str, Dict[str, Any]]:
    """
    Pool district RRs at each percentile via random-effects meta-analysis.

    Estimates with degenerate or extreme standard errors, or implausible
    log-RRs, are excluded and counted.
    """
    effects = district_effects_at_percentiles(district_results, exposure, percentiles)
    pooled = {}
    if effects.empty:
        return pooled

    for pct, group in effects.groupby('percentile', sort=False):
        keep = (
            group['log_rr_se'].between(min_se, max_se)
            & (group['log_rr'].abs() <= max_abs_logrr)
        )
        included = group[keep].set_index('district')
        if included.empty:
            pooled[pct] = {'pooled_rr': np.nan, 'n_districts': 0,
                           'n_excluded': int((~keep).sum())}
            continue
        res = random_effects_meta_analysis(included['log_rr'], included['log_rr_se'])
        res['percentile'] = pct
        res['districts_included'] = list(res['weights'])
        res['n_excluded'] = int((~keep).sum())
        pooled[pct] = res
    return pooled
