"""End-to-end tests for the command-line pipeline."""

from __future__ import annotations

import json
import os

import matplotlib.pyplot as plt
import pandas as pd

from malaria_dlnm.run_analysis import main, parse_args


class TestParseArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.max_lag == 3
        assert args.family == "poisson"
        assert args.exposures == ["max_temp", "precipitation"]
        assert not args.no_district

    def test_overrides(self) -> None:
        args = parse_args(["--max-lag", "2", "--family", "quasi-poisson",
                           "--exposures", "max_temp", "--districts", "D1", "D2"])
        assert args.max_lag == 2
        assert args.family == "quasi-poisson"
        assert args.exposures == ["max_temp"]
        assert args.districts == ["D1", "D2"]


class TestMain:
    """Test the full run writes every output."""

    def test_full_run(self, tmp_path, panel_csv, capsys) -> None:
        out = tmp_path / "results"
        code = main(["--data", panel_csv, "--output-dir", str(out),
                     "--log-file", str(out / "run.log")])

        assert code == 0
        for name in [
            "prepared_panel.parquet",
            "population_rr_max_temp.csv",
            "population_rr_precipitation.csv",
            "population_lag_max_temp.csv",
            "district_rr_max_temp.csv",
            "district_effects_max_temp.csv",
            "district_summary.csv",
            "dlnm_results.json",
            "figures/population_rr_max_temp.png",
            "figures/district_rr_max_temp.png",
            "run.log",
        ]:
            assert os.path.exists(out / name), name

        with open(out / "dlnm_results.json") as f:
            results = json.load(f)
        assert results["population"]["summary"]["n_obs"] == 4 * 96 - 4 * 3
        assert results["districts"]["n_fitted"] == 4
        assert "p99" in results["districts"]["pooled"]["max_temp"]

        curve = pd.read_csv(out / "population_rr_max_temp.csv")
        assert list(curve.columns) == ["exposure", "log_rr", "se", "rr", "rr_low", "rr_high"]
        assert not curve.empty

        stdout = capsys.readouterr().out
        assert "POPULATION-WIDE MODEL" in stdout
        assert "Cross-basis max_temp" in stdout

    def test_population_only(self, tmp_path, panel_csv) -> None:
        out = tmp_path / "results"
        code = main(["--data", panel_csv, "--output-dir", str(out), "--no-district",
                     "--no-plots", "--exposures", "max_temp", "--family", "quasi-poisson"])

        assert code == 0
        assert os.path.exists(out / "population_rr_max_temp.csv")
        assert not os.path.exists(out / "district_summary.csv")
        assert not os.path.exists(out / "figures")

    def test_show_displays_live_figures(self, tmp_path, panel_csv, monkeypatch) -> None:
        """Test --show keeps the plotted figures open for plt.show."""
        plt.close("all")
        shown = []
        monkeypatch.setattr(plt, "show", lambda *a, **k: shown.append(list(plt.get_fignums())))

        code = main(["--data", panel_csv, "--output-dir", str(tmp_path / "results"),
                     "--no-district", "--exposures", "max_temp", "--show"])

        assert code == 0
        assert len(shown) == 1
        assert len(shown[0]) == 1
        axes = plt.figure(shown[0][0]).axes
        assert not any(ax.images for ax in axes)
        assert len(axes[0].lines) >= 3
        plt.close("all")

    def test_missing_file_returns_error(self, tmp_path) -> None:
        code = main(["--data", str(tmp_path / "missing.csv"), "--output-dir", str(tmp_path)])
        assert code == 1
