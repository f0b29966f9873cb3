"""
PopDiff Visualization Module

Figures for a finished analysis: pairwise heatmaps, bootstrap
distributions, AMOVA permutation nulls and a PCoA of sample distances.
"""

import os
import numpy as np
import pandas as pd
from typing import Dict

from .popdiff_plotting_utils import (
    MATPLOTLIB_AVAILABLE,
    plot_pairwise_heatmap, plot_distribution, plot_ordination,
    create_figure_grid, save_figure
)
from .popdiff_errors import is_not_applicable
from .popdiff_distance import ordinate_distances
from .popdiff_amova import TEST_STATISTICS


def visualize_pairwise(pairwise: Dict[str, pd.DataFrame], output_path: str) -> None:
    """
    One heatmap per pairwise statistic.

    Args:
        pairwise: Dictionary mapping statistic name to pairwise matrix
        output_path: Directory to save plots
    """
    for stat, matrix in pairwise.items():
        plot_pairwise_heatmap(
            matrix, os.path.join(output_path, f"pairwise_{stat}_heatmap.pdf"),
            title=f"Pairwise {stat}", label=stat
        )


def visualize_bootstrap(replicates: pd.DataFrame, summary: pd.DataFrame,
                        output_path: str) -> None:
    """
    Histograms of bootstrap replicates with percentile intervals.

    Args:
        replicates: Output of chao_bootstrap()
        summary: Output of summarise_bootstrap()
        output_path: Directory to save plots
    """
    stats = list(replicates.columns)
    fig, axes = create_figure_grid(1, len(stats))
    if fig is None:
        return

    for ax, stat in zip(axes[0], stats):
        row = summary.loc[stat]
        observed = row['observed'] if 'observed' in summary.columns else None
        plot_distribution(ax, replicates[stat].values, observed=observed,
                          interval=(row['lower'], row['upper']), xlabel=stat, title=stat)

    save_figure(fig, os.path.join(output_path, "bootstrap_distributions.pdf"))


def visualize_amova(amova_result: Dict, output_path: str) -> None:
    """
    Permutation null distributions of the tested AMOVA components.

    Args:
        amova_result: Output of amova()
        output_path: Directory to save plots
    """
    permutations = amova_result['permutations']
    if permutations.empty:
        return

    fig, axes = create_figure_grid(1, len(permutations.columns))
    if fig is None:
        return

    phi = amova_result['phi']
    for ax, source in zip(axes[0], permutations.columns):
        stat = TEST_STATISTICS[source]
        observed = None if is_not_applicable(phi[stat]) else float(phi[stat])
        plot_distribution(ax, permutations[source].values, observed=observed,
                          xlabel=stat, title=source)

    save_figure(fig, os.path.join(output_path, "amova_permutations.pdf"))


def visualize_samples(distances: pd.DataFrame, strata: pd.DataFrame, output_path: str) -> None:
    """
    PCoA of sample distances colored by population.

    Args:
        distances: Sample distance matrix
        strata: Strata table
        output_path: Directory to save plots
    """
    if np.isnan(distances.values.astype(float)).any() or len(distances) < 3:
        print("Skipping PCoA: need at least 3 samples and defined distances.")
        return

    coords = ordinate_distances(distances, method="pcoa")
    plot_ordination(coords, strata['population'],
                    os.path.join(output_path, "samples_pcoa.pdf"), title='PCoA of sample distances')


def run_all_visualizations(results: Dict, output_path: str) -> None:
    """
    Generate every figure for which results are available.

    Args:
        results: Dictionary from run_analysis()
        output_path: Directory to save plots
    """
    if not MATPLOTLIB_AVAILABLE:
        print("matplotlib not available. Skipping visualizations.")
        return

    os.makedirs(output_path, exist_ok=True)

    if 'pairwise' in results:
        visualize_pairwise(results['pairwise'], output_path)

    if 'bootstrap_replicates' in results:
        visualize_bootstrap(results['bootstrap_replicates'], results['bootstrap_summary'], output_path)

    if 'amova' in results:
        visualize_amova(results['amova'], output_path)

    if 'distances' in results:
        visualize_samples(results['distances'], results['strata'], output_path)

    print("Visualizations complete.")
