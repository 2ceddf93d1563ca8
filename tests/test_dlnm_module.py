"""Tests for spline bases, cross-basis construction and RR prediction."""

from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from malaria_dlnm.utils.dlnm_module import (
    compute_cumulative_rr_ns_with_se,
    convert_to_json_serializable,
    create_crossbasis_ns,
    create_lag_matrix,
    create_time_spline,
    crossbasis_contrast,
    find_minimum_risk_value,
    lag_basis_matrix,
    log_lag_knots,
    ns_basis,
    predict_lag_curve,
    predict_rr_curve,
    random_effects_meta_analysis,
    summarize_curve,
)


class TestNsBasis:
    """Test the natural cubic spline basis."""

    def test_shape(self) -> None:
        x = np.linspace(0, 10, 50)
        assert ns_basis(x, [2, 5, 8], (0, 10)).shape == (50, 4)
        assert ns_basis(x, [2, 5, 8], (0, 10), intercept=True).shape == (50, 5)
        assert ns_basis(x, [], (0, 10)).shape == (50, 1)

    def test_linear_beyond_boundaries(self) -> None:
        """Test second differences vanish outside the boundary knots."""
        above = np.linspace(11, 20, 10)
        below = np.linspace(-10, -1, 10)
        for x in (above, below):
            basis = ns_basis(x, [2, 5, 8], (0, 10))
            assert np.allclose(np.diff(basis, n=2, axis=0), 0, atol=1e-6)

    def test_columns_are_not_degenerate(self) -> None:
        x = np.linspace(0, 10, 100)
        basis = ns_basis(x, [2, 5, 8], (0, 10))
        assert np.linalg.matrix_rank(basis) == 4

    def test_nan_propagates(self) -> None:
        basis = ns_basis(np.array([1.0, np.nan]), [5], (0, 10))
        assert np.isnan(basis[1]).all()
        assert not np.isnan(basis[0]).any()

    def test_invalid_knots_raise(self) -> None:
        with pytest.raises(ValueError):
            ns_basis(np.arange(5.0), [0.0], (0, 4))
        with pytest.raises(ValueError):
            ns_basis(np.arange(5.0), [2.0], (4, 4))


class TestLagHelpers:
    """Test lag matrices and lag-dimension bases."""

    def test_create_lag_matrix(self) -> None:
        mat = create_lag_matrix(np.array([1.0, 2.0, 3.0]), 2)
        assert mat.shape == (3, 3)
        assert mat[2].tolist() == [3.0, 2.0, 1.0]
        assert np.isnan(mat[0, 1]) and np.isnan(mat[1, 2])

    def test_log_lag_knots(self) -> None:
        assert log_lag_knots(3, 1).tolist() == pytest.approx([1.0])
        assert len(log_lag_knots(1, 2)) == 0
        assert len(log_lag_knots(6, 2)) == 2

    def test_lag_basis_includes_lag_zero(self) -> None:
        basis = lag_basis_matrix(3, [1.0])
        assert basis.shape == (4, 3)
        assert basis[0].any()

    def test_lag_basis_without_lags(self) -> None:
        assert lag_basis_matrix(0, []).tolist() == [[1.0]]


class TestCrossBasis:
    """Test cross-basis construction."""

    def test_shape_and_names(self) -> None:
        rng = np.random.default_rng(1)
        lag_mat = create_lag_matrix(rng.normal(25, 3, 60), 3)
        X_cb, info = create_crossbasis_ns(lag_mat, [22, 25, 28], (10, 40), [1.0], name="cb_t")

        assert X_cb.shape == (60, 4 * 3)
        assert info["var_df"] == 4 and info["lag_df"] == 3
        assert info["col_names"][0] == "cb_t_v0_l0"
        assert info["col_names"][-1] == "cb_t_v3_l2"

    def test_incomplete_lag_rows_are_nan(self) -> None:
        lag_mat = create_lag_matrix(np.linspace(20, 30, 10), 2)
        X_cb, _ = create_crossbasis_ns(lag_mat, [25], (20, 30), [])
        assert np.isnan(X_cb[:2]).all()
        assert not np.isnan(X_cb[2:]).any()

    def test_constant_history_is_tensor_of_sums(self) -> None:
        """Test a constant exposure history gives var_basis x summed lag basis."""
        lag_mat = np.full((1, 4), 27.0)
        X_cb, info = create_crossbasis_ns(lag_mat, [25], (20, 30), [1.0])

        var_b = ns_basis(np.array([27.0]), [25], (20, 30))[0]
        lag_sum = lag_basis_matrix(3, [1.0]).sum(axis=0)
        assert np.allclose(X_cb[0], np.outer(var_b, lag_sum).ravel())

    def test_contrast_rejects_bad_lags(self) -> None:
        _, info = create_crossbasis_ns(np.full((1, 3), 25.0), [25], (20, 30), [])
        with pytest.raises(ValueError):
            crossbasis_contrast(26.0, 25.0, info, lags=5)


def _linear_info(max_lag: int = 0) -> dict:
    """Cross-basis info with a linear exposure basis and unconstrained lags."""
    _, info = create_crossbasis_ns(np.full((1, max_lag + 1), 5.0), [], (0, 10), [])
    return info


class TestPrediction:
    """Test RR prediction and centring."""

    def test_linear_log_rr(self) -> None:
        """Test log-RR is beta * (target - reference) for a linear basis."""
        info = _linear_info()
        log_rr, se = compute_cumulative_rr_ns_with_se(7.0, 5.0, np.array([0.1]),
                                                      np.array([[0.0004]]), info)
        assert log_rr == pytest.approx(0.2)
        assert se == pytest.approx(0.04)

    def test_rr_is_one_at_reference(self) -> None:
        rng = np.random.default_rng(2)
        lag_mat = create_lag_matrix(rng.normal(25, 3, 80), 3)
        _, info = create_crossbasis_ns(lag_mat, [22, 25, 28], (15, 35), [1.0])
        coefs = rng.normal(0, 0.05, info["n_params"])
        A = rng.normal(0, 0.01, (info["n_params"], info["n_params"]))
        vcov = A @ A.T

        curve = predict_rr_curve(coefs, vcov, info, np.linspace(15, 35, 21), reference=24.3)

        ref_row = curve[np.isclose(curve["exposure"], 24.3)]
        assert len(ref_row) == 1
        assert ref_row["rr"].iloc[0] == pytest.approx(1.0)
        assert ref_row["rr_low"].iloc[0] == pytest.approx(1.0)
        assert ref_row["rr_high"].iloc[0] == pytest.approx(1.0)
        assert (curve["rr_low"] <= curve["rr"] + 1e-12).all()
        assert (curve["rr"] <= curve["rr_high"] + 1e-12).all()
        assert curve.attrs["reference"] == 24.3
        assert list(curve.columns) == ["exposure", "log_rr", "se", "rr", "rr_low", "rr_high"]

    def test_curve_matches_pointwise_computation(self) -> None:
        rng = np.random.default_rng(3)
        _, info = create_crossbasis_ns(np.full((1, 4), 25.0), [22, 28], (15, 35), [1.0])
        coefs = rng.normal(0, 0.05, info["n_params"])
        vcov = np.eye(info["n_params"]) * 1e-4

        curve = predict_rr_curve(coefs, vcov, info, [30.0], reference=25.0)
        log_rr, se = compute_cumulative_rr_ns_with_se(30.0, 25.0, coefs, vcov, info)

        row = curve[curve["exposure"] == 30.0].iloc[0]
        assert row["log_rr"] == pytest.approx(log_rr)
        assert row["se"] == pytest.approx(se)

    def test_lag_effects_sum_to_cumulative(self) -> None:
        rng = np.random.default_rng(4)
        _, info = create_crossbasis_ns(np.full((1, 4), 25.0), [22, 28], (15, 35), [1.0])
        coefs = rng.normal(0, 0.05, info["n_params"])
        vcov = np.eye(info["n_params"]) * 1e-4

        lag_curve = predict_lag_curve(coefs, vcov, info, target=31.0, reference=25.0)
        log_rr, _ = compute_cumulative_rr_ns_with_se(31.0, 25.0, coefs, vcov, info)

        assert lag_curve["lag"].tolist() == [0, 1, 2, 3]
        assert lag_curve["log_rr"].sum() == pytest.approx(log_rr)

    def test_find_minimum_risk_value(self) -> None:
        curve = pd.DataFrame({"exposure": [1.0, 2.0, 3.0, 4.0], "rr": [0.5, 0.9, 0.8, 1.2]})
        assert find_minimum_risk_value(curve) == 1.0
        assert find_minimum_risk_value(curve, bounds=(1.5, 4.0)) == 3.0
        assert find_minimum_risk_value(curve, bounds=(10, 20)) == 1.0

    def test_summarize_curve(self) -> None:
        info = _linear_info()
        curve = predict_rr_curve(np.array([0.1]), np.array([[1e-4]]), info,
                                 np.linspace(0, 10, 11), reference=5.0)
        summary = summarize_curve(curve, [50, 100], np.arange(11.0))
        assert summary["p50"]["rr"] == pytest.approx(1.0)
        assert summary["p100"]["rr"] == pytest.approx(np.exp(0.5))


class TestTimeSpline:
    """Test the long-term trend basis."""

    def test_centred_columns(self) -> None:
        t = np.arange(96.0)
        basis = create_time_spline(t, n_years=8, df_per_year=1)
        assert basis.shape == (96, 8)
        assert np.allclose(basis.mean(axis=0), 0, atol=1e-8)

    def test_short_series(self) -> None:
        basis = create_time_spline(np.array([0.0, 1.0]), n_years=0.2)
        assert basis.shape == (2, 1)


class TestMetaAnalysis:
    """Test DerSimonian-Laird pooling."""

    def test_homogeneous_effects(self) -> None:
        res = random_effects_meta_analysis(np.array([0.2, 0.2, 0.2]), np.array([0.1, 0.1, 0.1]))
        assert res["pooled_effect"] == pytest.approx(0.2)
        assert res["tau2"] == 0.0
        assert res["I2"] == 0.0
        assert res["pooled_se"] == pytest.approx(np.sqrt(0.01 / 3))
        assert res["n_districts"] == 3

    def test_heterogeneous_effects(self) -> None:
        res = random_effects_meta_analysis(np.array([-0.5, 0.0, 0.5]), np.sqrt([0.001] * 3))
        assert res["tau2"] > 0
        assert res["I2"] > 50
        assert res["p_heterogeneity"] < 0.05

    def test_single_effect(self) -> None:
        res = random_effects_meta_analysis(np.array([0.1]), np.array([0.2]))
        assert res["pooled_effect"] == pytest.approx(0.1)
        assert res["pooled_se"] == pytest.approx(0.2)
        assert res["pooled_rr"] == pytest.approx(np.exp(0.1))
        assert res["p_heterogeneity"] == 1.0

    def test_weights_keyed_by_district(self) -> None:
        log_rr = pd.Series({"Kisumu": 0.3, "Nakuru": 0.1})
        se = pd.Series({"Kisumu": 0.1, "Nakuru": 0.2})
        res = random_effects_meta_analysis(log_rr, se)

        assert list(res["weights"]) == ["Kisumu", "Nakuru"]
        assert sum(res["weights"].values()) == pytest.approx(1.0)
        assert res["weights"]["Kisumu"] > res["weights"]["Nakuru"]

    def test_no_effects_raises(self) -> None:
        with pytest.raises(ValueError):
            random_effects_meta_analysis(np.array([]), np.array([]))


class TestJsonSerialization:
    def test_numpy_and_pandas_values(self) -> None:
        obj = {
            np.int64(1): np.float32(0.5),
            "arr": np.array([1, 2]),
            "flag": np.bool_(True),
            "df": pd.DataFrame({"a": [1]}),
            "tup": (np.int32(3),),
        }
        out = convert_to_json_serializable(obj)
        json.dumps(out)
        assert out[1] == 0.5
        assert out["df"] == [{"a": 1}]
        assert out["tup"] == [3]
