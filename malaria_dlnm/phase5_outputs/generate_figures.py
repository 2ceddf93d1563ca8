"""
Figures for the malaria-climate DLNM
====================================
Exposure-response curves (line, 95% ribbon, reference line, annotation),
lag-response curves and a per-district panel grid.

Outputs (under <output_dir>/figures/):
- population_rr_<exposure>.png: population-wide RR curve + lag-response
- district_rr_<exposure>.png: one panel per fitted district
"""

import math
import os
from typing import Any, Dict, List, Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from malaria_dlnm import config

# Plotting style
plt.rcParams['font.family'] = 'sans-serif'
plt.rcParams['font.size'] = 10
plt.rcParams['axes.labelsize'] = 11
plt.rcParams['axes.titlesize'] = 12
plt.rcParams['figure.dpi'] = 150
plt.rcParams['savefig.dpi'] = 300
plt.rcParams['savefig.bbox'] = 'tight'

# Colors
HEAT_COLOR = '#e74c3c'
RAIN_COLOR = '#3498db'
NEUTRAL_COLOR = '#7f8c8d'
REFERENCE_COLOR = '#27ae60'

EXPOSURE_COLORS = {
    config.TEMP_COL: HEAT_COLOR,
    config.PRECIP_COL: RAIN_COLOR,
}


def exposure_label(exposure: str) -> str:
    return config.EXPOSURE_LABELS.get(exposure, exposure.replace('_', ' '))


def save_figure(fig, name: str, output_dir: str, formats: Sequence[str] = ('png',),
                close: bool = True) -> List[str]:
    """Save figure in each format; close it unless it is still to be shown."""
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for fmt in formats:
        filepath = os.path.join(output_dir, f"{name}.{fmt}")
        fig.savefig(filepath, format=fmt, bbox_inches='tight', dpi=150)
        paths.append(filepath)
    if close:
        plt.close(fig)
    return paths


# =============================================================================
# SINGLE-AXIS PLOTS
# =============================================================================

def plot_rr_curve(
    curve: pd.DataFrame,
    ax=None,
    title: str = None,
    xlabel: str = None,
    color: str = None,
    annotate: bool = True,
):
    """
    Cumulative RR curve with shaded 95% CI, dashed line at the reference
    value, RR=1 line and a text annotation of the reference.
    """
    if ax is None:
        _, ax = plt.subplots(figsize=(7, 5))
    exposure = curve.attrs.get('exposure_name', '')
    color = color or EXPOSURE_COLORS.get(exposure, 'black')
    reference = curve.attrs.get('reference')

    ax.fill_between(curve['exposure'], curve['rr_low'], curve['rr_high'],
                    alpha=0.25, color=color, linewidth=0)
    ax.plot(curve['exposure'], curve['rr'], color=color, linewidth=2)
    ax.axhline(1, color='gray', linestyle='-', alpha=0.5)

    if reference is not None:
        ax.axvline(reference, color=REFERENCE_COLOR, linestyle='--', alpha=0.8)
        if annotate:
            text = f"Reference: {reference:.1f}"
            minimum_risk = curve.attrs.get('minimum_risk')
            if minimum_risk is not None:
                text += f"\nMinimum risk: {minimum_risk:.1f}"
            ax.annotate(text, xy=(reference, 1.0), xytext=(0.03, 0.97),
                        textcoords='axes fraction', ha='left', va='top', fontsize=9,
                        bbox=dict(boxstyle='round', facecolor='white', alpha=0.8),
                        arrowprops=dict(arrowstyle='->', color=REFERENCE_COLOR, alpha=0.6))

    ax.set_xlabel(xlabel or exposure_label(exposure))
    ax.set_ylabel('Relative Risk')
    upper = np.nanmax(curve['rr_high'].to_numpy())
    if np.isfinite(upper):
        ax.set_ylim(0, min(upper * 1.1, 10))
    if title:
        ax.set_title(title)
    return ax


def plot_lag_response(lag_curve: pd.DataFrame, ax=None, title: str = None, color: str = None):
    """Lag-specific RR (target vs reference) with 95% CI."""
    if ax is None:
        _, ax = plt.subplots(figsize=(6, 4))
    color = color or NEUTRAL_COLOR
    ax.fill_between(lag_curve['lag'], lag_curve['rr_low'], lag_curve['rr_high'],
                    alpha=0.2, color=color)
    ax.plot(lag_curve['lag'], lag_curve['rr'], color=color, linewidth=2, marker='o')
    ax.axhline(1, color='gray', linestyle='--')
    ax.set_xticks(lag_curve['lag'])
    ax.set_xlabel('Lag (months)')
    ax.set_ylabel('Relative Risk')
    if title is None and 'target' in lag_curve.attrs:
        title = (f"Lag-response at {lag_curve.attrs['target']:.1f} "
                 f"vs {lag_curve.attrs['reference']:.1f}")
    if title:
        ax.set_title(title)
    return ax


# =============================================================================
# FIGURE FILES
# =============================================================================

def plot_population_figures(result: Dict[str, Any], output_dir: str,
                            close: bool = True) -> List[str]:
    """One figure per exposure: overall cumulative RR and lag-response."""
    paths = []
    for exposure, curve in result['curves'].items():
        color = EXPOSURE_COLORS.get(exposure, 'black')
        fig, axes = plt.subplots(1, 2, figsize=(12, 5))
        plot_rr_curve(curve, ax=axes[0], color=color,
                      title=f'Cumulative RR, lag 0-{result["fit"]["cb_infos"][exposure]["max_lag"]}')
        lag_curve = result['lag_curves'].get(exposure)
        if lag_curve is not None:
            plot_lag_response(lag_curve, ax=axes[1], color=color)
        else:
            axes[1].set_visible(False)
        fig.suptitle(f'Malaria incidence and {exposure_label(exposure).lower()}: all districts',
                     fontsize=13, y=1.02)
        plt.tight_layout()
        paths += save_figure(fig, f'population_rr_{exposure}', output_dir, close=close)
    return paths


def plot_district_grid(
    district_results: Dict[str, Optional[Dict[str, Any]]],
    exposure: str,
    output_dir: str,
    ncols: int = 4,
    close: bool = True,
) -> Optional[str]:
    """Small-multiple RR curves for every fitted district; None if none fitted."""
    fitted = [(d, r) for d, r in district_results.items() if r is not None]
    if not fitted:
        return None

    ncols = min(ncols, len(fitted))
    nrows = math.ceil(len(fitted) / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3.2 * nrows), squeeze=False)

    for ax, (district, result) in zip(axes.flat, fitted):
        plot_rr_curve(result['curves'][exposure], ax=ax, title=str(district), annotate=False)
        ax.set_xlabel('')
        reference = result['reference'][exposure]
        ax.text(0.97, 0.97, f"ref {reference:.1f}", transform=ax.transAxes,
                ha='right', va='top', fontsize=8)
    for ax in list(axes.flat)[len(fitted):]:
        ax.set_visible(False)

    fig.supxlabel(exposure_label(exposure))
    fig.suptitle(f'District-specific RR: {exposure_label(exposure).lower()}', fontsize=13)
    plt.tight_layout()
    return save_figure(fig, f'district_rr_{exposure}', output_dir, close=close)[0]
