"""
run_analysis.py
===============
Malaria-climate DLNM: population-wide and district-specific analysis

Steps:
1. Load and clean the district-month CSV, build lags and incidence
2. Fit the population-wide DLNM (district fixed effects)
3. Fit one DLNM per district and pool district RRs (DerSimonian-Laird)
4. Predict RR curves vs the reference value, print model summaries
5. Save tables, JSON results and figures

Output (in --output-dir):
- prepared_panel.parquet
- population_rr_<exposure>.csv, population_lag_<exposure>.csv
- district_rr_<exposure>.csv, district_effects_<exposure>.csv
- district_summary.csv
- dlnm_results.json
- figures/*.png
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

import numpy as np
import pandas as pd

from malaria_dlnm import config
from malaria_dlnm.phase0_data_prep.prepare_panel import prepare_panel, save_panel
from malaria_dlnm.phase1_core_model.climate_dlnm import (
    FAMILIES,
    fit_population_model,
    fit_district_models,
    district_effects_at_percentiles,
    pool_district_effects,
    format_model_summary,
)
from malaria_dlnm.utils.dlnm_module import convert_to_json_serializable, summarize_curve

logger = logging.getLogger('malaria_dlnm')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Malaria-climate DLNM analysis')
    parser.add_argument('--data', type=str, default=config.DEFAULT_DATA_PATH,
                        help='District-month CSV with cases, population and climate columns.')
    parser.add_argument('--output-dir', type=str, default=config.OUTPUT_DIR)
    parser.add_argument('--max-lag', type=int, default=config.MAX_LAG,
                        help=f'Maximum lag in months (default: {config.MAX_LAG}).')
    parser.add_argument('--reference-pct', type=float, default=config.REFERENCE_PCT,
                        help='Exposure percentile used as the RR reference (default: median).')
    parser.add_argument('--family', choices=FAMILIES, default=config.FAMILY)
    parser.add_argument('--exposures', nargs='+', default=config.EXPOSURES,
                        choices=config.EXPOSURES)
    parser.add_argument('--min-obs', type=int, default=config.MIN_OBS_DISTRICT,
                        help='Minimum complete rows per district model.')
    parser.add_argument('--districts', nargs='+', default=None,
                        help='Only fit these districts in the per-district step.')
    parser.add_argument('--no-district', action='store_true',
                        help='Skip the per-district models.')
    parser.add_argument('--no-plots', action='store_true')
    parser.add_argument('--show', action='store_true',
                        help='Display figures interactively after saving them.')
    parser.add_argument('--show-summary', action='store_true',
                        help='Print the full statsmodels summary of the population model.')
    parser.add_argument('--log-file', type=str, default=None)
    return parser.parse_args(argv)


def setup_logging(log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode='w'))
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        handlers=handlers,
        force=True,
    )


def print_curve_highlights(curve: pd.DataFrame, values: np.ndarray) -> None:
    for pct, eff in summarize_curve(curve, [1, 10, 90, 99], values).items():
        print(f"  {pct.upper():>4} ({eff['exposure']:.1f}): RR = {eff['rr']:.3f} "
              f"[{eff['rr_lower']:.3f}-{eff['rr_upper']:.3f}]")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file)

    if not args.show:
        import matplotlib
        matplotlib.use('Agg')

    print("=" * 70)
    print("MALARIA-CLIMATE DLNM (Natural Spline Cross-Basis)")
    print("=" * 70)
    print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"\nConfiguration:")
    print(f"  Data: {args.data}")
    print(f"  Exposures: {', '.join(args.exposures)}")
    print(f"  Max lag: {args.max_lag} months")
    print(f"  Exposure knots: P{config.VAR_KNOT_PCTS}")
    print(f"  Reference: P{args.reference_pct:g}")
    print(f"  Family: {args.family}")

    # =========================================================================
    # DATA
    # =========================================================================
    print("\n" + "-" * 70)
    print("Loading Data")
    print("-" * 70)

    try:
        panel = prepare_panel(args.data, max_lag=args.max_lag, exposures=args.exposures)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Could not prepare input data: %s", e)
        return 1

    os.makedirs(args.output_dir, exist_ok=True)
    save_panel(panel, os.path.join(args.output_dir, 'prepared_panel.parquet'))
    print(f"Panel: {len(panel):,} rows, {panel[config.DISTRICT_COL].nunique()} districts, "
          f"{panel[config.YEAR_COL].min()}-{panel[config.YEAR_COL].max()}")
    print(f"Mean incidence: {panel['incidence_rate'].mean():.2f} per {config.INCIDENCE_PER:,}")

    model_kwargs = dict(
        exposures=args.exposures,
        max_lag=args.max_lag,
        family=args.family,
        reference_pct=args.reference_pct,
    )

    # =========================================================================
    # POPULATION-WIDE MODEL
    # =========================================================================
    print("\n" + "=" * 70)
    print("POPULATION-WIDE MODEL")
    print("=" * 70)

    try:
        population = fit_population_model(panel, **model_kwargs)
    except (RuntimeError, ValueError) as e:
        logger.error("%s", e)
        return 1

    print(format_model_summary(population['summary'], 'Population-wide DLNM'))
    if args.show_summary:
        print(population['fit']['model_result'].summary())

    for exposure in args.exposures:
        curve = population['curves'][exposure]
        print(f"\n{exposure}: reference {population['reference'][exposure]:.2f}, "
              f"minimum risk at {population['minimum_risk'][exposure]:.2f}")
        print_curve_highlights(curve, population['fit']['exposure_values'][exposure])
        curve.to_csv(os.path.join(args.output_dir, f'population_rr_{exposure}.csv'), index=False)
        population['lag_curves'][exposure].to_csv(
            os.path.join(args.output_dir, f'population_lag_{exposure}.csv'), index=False)

    results = {
        'method': 'DLNM with natural cubic spline cross-basis (Poisson GLM)',
        'parameters': {
            'max_lag': args.max_lag,
            'var_knot_pcts': config.VAR_KNOT_PCTS,
            'lag_n_knots': config.LAG_N_KNOTS,
            'time_spline_df_per_year': config.TIME_SPLINE_DF_PER_YEAR,
            'reference_pct': args.reference_pct,
            'family': args.family,
            'exposures': args.exposures,
        },
        'cleaning_report': panel.attrs.get('cleaning_report', {}),
        'population': {
            'summary': population['summary'],
            'reference': population['reference'],
            'minimum_risk': population['minimum_risk'],
            'effects': {
                e: summarize_curve(population['curves'][e], config.POOL_PERCENTILES,
                                   population['fit']['exposure_values'][e])
                for e in args.exposures
            },
        },
    }

    # =========================================================================
    # DISTRICT MODELS
    # =========================================================================
    district_results = {}
    if not args.no_district:
        print("\n" + "=" * 70)
        print("DISTRICT-SPECIFIC MODELS")
        print("=" * 70)

        district_results, skipped = fit_district_models(
            panel, districts=args.districts, min_obs=args.min_obs, **model_kwargs
        )
        n_ok = sum(r is not None for r in district_results.values())
        print(f"\nSuccessfully fitted: {n_ok} / {len(district_results)} districts")
        for district, status in skipped.items():
            print(f"  Skipped {district}: {status}")

        summary_rows = []
        for district, result in district_results.items():
            row = {'district': district, 'status': skipped.get(district, 'ok')}
            if result is not None:
                s = result['summary']
                row.update({'n_obs': s['n_obs'], 'total_cases': s['total_cases'],
                            'aic': s['aic'], 'dispersion': s['dispersion']})
                for e in args.exposures:
                    row[f'{e}_reference'] = result['reference'][e]
                    row[f'{e}_minimum_risk'] = result['minimum_risk'][e]
                    row[f'{e}_wald_p'] = s['wald_tests'][e]['p_value']
            summary_rows.append(row)
        pd.DataFrame(summary_rows).to_csv(
            os.path.join(args.output_dir, 'district_summary.csv'), index=False)

        results['districts'] = {
            'n_districts': len(district_results),
            'n_fitted': n_ok,
            'skipped': skipped,
            'pooled': {},
        }

        for exposure in args.exposures:
            curves = [
                r['curves'][exposure].assign(district=d)
                for d, r in district_results.items() if r is not None
            ]
            if curves:
                pd.concat(curves, ignore_index=True).to_csv(
                    os.path.join(args.output_dir, f'district_rr_{exposure}.csv'), index=False)
            district_effects_at_percentiles(district_results, exposure).to_csv(
                os.path.join(args.output_dir, f'district_effects_{exposure}.csv'), index=False)

            pooled = pool_district_effects(district_results, exposure)
            results['districts']['pooled'][exposure] = pooled

            print(f"\nPooled district RR ({exposure}, vs district reference)")
            print("-" * 50)
            for pct, p in pooled.items():
                if p.get('n_districts', 0) > 0:
                    print(f"  {pct.upper():>4}: RR = {p['pooled_rr']:.3f} "
                          f"[{p['pooled_rr_lower']:.3f}-{p['pooled_rr_upper']:.3f}], "
                          f"I² = {p['I2']:.1f}% (n={p['n_districts']})")

    # =========================================================================
    # SAVE
    # =========================================================================
    print("\n" + "=" * 70)
    print("SAVING RESULTS")
    print("=" * 70)

    results['timestamp'] = datetime.now().isoformat()
    output_file = os.path.join(args.output_dir, 'dlnm_results.json')
    with open(output_file, 'w') as f:
        json.dump(convert_to_json_serializable(results), f, indent=2)
    print(f"Saved: {output_file}")

    if not args.no_plots:
        from malaria_dlnm.phase5_outputs.generate_figures import (
            plot_population_figures, plot_district_grid,
        )
        fig_dir = os.path.join(args.output_dir, 'figures')
        # Figures stay open for --show
        close = not args.show
        paths = plot_population_figures(population, fig_dir, close=close)
        for exposure in args.exposures:
            path = plot_district_grid(district_results, exposure, fig_dir, close=close)
            if path:
                paths.append(path)
        for path in paths:
            print(f"Saved: {path}")
        if args.show:
            import matplotlib.pyplot as plt
            plt.show()

    print("\n" + "=" * 70)
    print("ANALYSIS COMPLETE")
    print("=" * 70)
    print(f"\nFinished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
