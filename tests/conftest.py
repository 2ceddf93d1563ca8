"""Shared fixtures: synthetic district-month malaria panels with a known temperature effect."""

from __future__ import annotations

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

TEMP_EFFECT = 0.15  # log-rate per degree, scaled by LAG_WEIGHTS

# Smooth lag profile peaking at lag 1: 0.1 + x - N(x) with x = log(lag + 1) and
# N the natural-spline term of the default 3-df lag basis (knot at lag 1),
# so the fitted model is correctly specified at MAX_LAG = 3.
LAG_WEIGHTS = (0.100, 0.553, 0.338, 0.045)


def make_raw_panel(
    n_districts: int = 4,
    years: range = range(2012, 2020),
    seed: int = 0,
    temp_effect: float = TEMP_EFFECT,
) -> pd.DataFrame:
    """District-month rows with Poisson cases driven by lagged temperature (LAG_WEIGHTS)."""
    rng = np.random.default_rng(seed)
    rows = []
    for d in range(n_districts):
        n_months = len(years) * 12
        months = np.tile(np.arange(1, 13), len(years))
        season = np.sin(2 * np.pi * (months - 1) / 12 + d * 0.3)
        temp = 28 + 3 * season + rng.normal(0, 1.5, n_months)
        precip = np.clip(120 + 80 * season + rng.normal(0, 30, n_months), 0.5, None)
        population = 50000 * (d + 1) * (1 + 0.01 * np.arange(n_months) / 12)

        lagged = sum(
            w * np.concatenate([np.full(lag, temp[0]), temp[:n_months - lag]])
            for lag, w in enumerate(LAG_WEIGHTS)
        )
        mu = population * np.exp(-6 + temp_effect * (lagged - 28 * sum(LAG_WEIGHTS)))
        cases = rng.poisson(mu)

        for i in range(n_months):
            rows.append({
                "district": f"D{d + 1}",
                "year": years[i // 12],
                "month": int(months[i]),
                "malaria_cases": int(cases[i]),
                "population": float(population[i]),
                "max_temp": float(temp[i]),
                "precipitation": float(precip[i]),
            })
    return pd.DataFrame(rows)


@pytest.fixture
def raw_panel() -> pd.DataFrame:
    return make_raw_panel()


@pytest.fixture
def panel_csv(tmp_path, raw_panel) -> str:
    path = tmp_path / "malaria.csv"
    raw_panel.to_csv(path, index=False)
    return str(path)


@pytest.fixture(scope="session")
def prepared_panel(tmp_path_factory) -> pd.DataFrame:
    from malaria_dlnm.phase0_data_prep.prepare_panel import prepare_panel

    path = tmp_path_factory.mktemp("data") / "malaria.csv"
    make_raw_panel().to_csv(path, index=False)
    return prepare_panel(str(path), max_lag=3)


@pytest.fixture(scope="session")
def population_result(prepared_panel):
    from malaria_dlnm.phase1_core_model.climate_dlnm import fit_population_model

    return fit_population_model(prepared_panel, max_lag=3)
