"""
PopDiff Plotting Utilities Module

Shared matplotlib/seaborn helpers for popdiff figures.
"""

import numpy as np
import pandas as pd
from typing import List, Tuple, Optional
import warnings

# Try to import plotting libraries
try:
    import matplotlib
    matplotlib.use('Agg')  # Non-interactive backend for batch runs
    import matplotlib.pyplot as plt
    import matplotlib.colors as mcolors
    MATPLOTLIB_AVAILABLE = True
except ImportError:
    MATPLOTLIB_AVAILABLE = False
    warnings.warn("matplotlib not available. Plotting functions will not work.")

try:
    import seaborn as sns
    SEABORN_AVAILABLE = True
except ImportError:
    SEABORN_AVAILABLE = False


# =============================================================================
# Color Palette Functions
# =============================================================================

def get_brewer_palette(name: str, n: int = 8) -> List[str]:
    """
    Get a ColorBrewer-style palette.

    Args:
        name: Palette name ('Set1', 'Set2', 'Dark2', 'Paired', etc.)
        n: Number of colors

    Returns:
        List of hex color strings
    """
    if not MATPLOTLIB_AVAILABLE:
        return ['#000000'] * n

    palettes = {
        'Spectral': plt.cm.Spectral,
        'Set1': plt.cm.Set1,
        'Set2': plt.cm.Set2,
        'Set3': plt.cm.Set3,
        'Paired': plt.cm.Paired,
        'Dark2': plt.cm.Dark2,
    }

    cmap = palettes.get(name, plt.cm.viridis)
    if n == 1:
        return [mcolors.rgb2hex(cmap(0))]
    return [mcolors.rgb2hex(cmap(i / (n - 1))) for i in range(n)]


def as_float_frame(matrix: pd.DataFrame) -> pd.DataFrame:
    """Convert a nullable (NOT_APPLICABLE-holding) matrix to float with NaN."""
    return matrix.astype('Float64').astype(float)


# =============================================================================
# Pairwise Heatmap
# =============================================================================

def plot_pairwise_heatmap(matrix: pd.DataFrame, output_path: str = None,
                          title: str = 'Pairwise differentiation', label: str = 'Gst',
                          figsize: Tuple = (8, 6)) -> None:
    """
    Plot a pairwise population matrix as a heatmap.

    Args:
        matrix: Square matrix of pairwise values (NOT_APPLICABLE allowed)
        output_path: Path to save figure
        title: Plot title
        label: Colorbar label
        figsize: Figure size
    """
    if not MATPLOTLIB_AVAILABLE:
        return

    values = as_float_frame(matrix)
    fig, ax = plt.subplots(figsize=figsize)

    if SEABORN_AVAILABLE:
        sns.heatmap(values, ax=ax, cmap='YlOrRd', annot=True,
                    fmt='.3f', square=True, cbar_kws={'label': label})
    else:
        im = ax.imshow(values.values, cmap='YlOrRd')
        plt.colorbar(im, ax=ax, label=label)
        ax.set_xticks(range(len(values.columns)))
        ax.set_xticklabels(values.columns, rotation=45, ha='right')
        ax.set_yticks(range(len(values.index)))
        ax.set_yticklabels(values.index)

    ax.set_title(title)

    plt.tight_layout()
    if output_path:
        plt.savefig(output_path, dpi=150, bbox_inches='tight')
        plt.close(fig)


# =============================================================================
# Distributions
# =============================================================================

def plot_distribution(ax, values: np.ndarray, observed: float = None,
                      interval: Tuple[float, float] = None, xlabel: str = 'Value',
                      title: str = None, color: str = 'gray') -> None:
    """
    Histogram of replicate values with observed value and interval markers.

    Args:
        ax: Matplotlib axes
        values: Replicate values
        observed: Observed statistic (drawn as a solid line)
        interval: (lower, upper) bounds (drawn as dashed lines)
        xlabel: X-axis label
        title: Plot title
        color: Bar color
    """
    if not MATPLOTLIB_AVAILABLE:
        return

    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    if len(values) > 0:
        ax.hist(values, bins=min(30, max(5, len(values) // 5)), color=color, edgecolor='black')

    if observed is not None and np.isfinite(observed):
        ax.axvline(observed, color='red', linestyle='-', label=f'Observed: {observed:.3f}')

    if interval is not None:
        for bound in interval:
            if np.isfinite(bound):
                ax.axvline(bound, color='red', linestyle='--')

    ax.set_xlabel(xlabel)
    ax.set_ylabel('Replicates')
    if title:
        ax.set_title(title)
    if observed is not None and np.isfinite(observed):
        ax.legend(fontsize=8)


# =============================================================================
# Ordination
# =============================================================================

def plot_ordination(coords: pd.DataFrame, groups: pd.Series, output_path: str,
                    title: str = 'PCoA', xlabel: str = 'Axis 1',
                    ylabel: str = 'Axis 2') -> None:
    """
    Scatter plot of ordination coordinates colored by population.

    Args:
        coords: DataFrame with Axis1/Axis2 columns indexed by sample
        groups: Population label per sample
        output_path: Path to save plot
        title: Plot title
        xlabel: X-axis label
        ylabel: Y-axis label
    """
    if not MATPLOTLIB_AVAILABLE:
        print("matplotlib not available. Skipping ordination plot.")
        return

    fig, ax = plt.subplots(figsize=(8, 8))

    labels = list(pd.unique(groups.loc[coords.index]))
    colors = get_brewer_palette('Set1' if len(labels) <= 9 else 'Spectral', len(labels))
    for label, color in zip(labels, colors):
        mask = (groups.loc[coords.index] == label).values
        ax.scatter(coords.loc[mask, 'Axis1'], coords.loc[mask, 'Axis2'],
                   c=color, s=80, edgecolor='black', alpha=0.8, label=label)

    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')

    save_figure(fig, output_path)


# =============================================================================
# Multi-Panel Figures
# =============================================================================

def create_figure_grid(nrows: int, ncols: int,
                       figsize: Tuple = None) -> Tuple[Optional["plt.Figure"], Optional[np.ndarray]]:
    """
    Create a grid of subplots.

    Args:
        nrows: Number of rows
        ncols: Number of columns
        figsize: Figure size (auto-calculated if None)

    Returns:
        Tuple of (figure, axes array)
    """
    if not MATPLOTLIB_AVAILABLE:
        return None, None

    if figsize is None:
        figsize = (4 * ncols, 4 * nrows)

    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
    return fig, axes


def save_figure(fig, output_path: str, dpi: int = 150) -> None:
    """
    Save figure to file.

    Args:
        fig: Matplotlib figure
        output_path: Output file path
        dpi: Resolution
    """
    if not MATPLOTLIB_AVAILABLE or fig is None:
        return

    fig.tight_layout()
    fig.savefig(output_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
