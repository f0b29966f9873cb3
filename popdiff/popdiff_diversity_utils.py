"""
PopDiff Diversity Utilities Module

Shared numeric helpers: gene diversity, richness and coverage estimators
used by the bootstrap, harmonic means, and ordination of distance matrices.
"""

import numpy as np
from scipy.stats import hmean
from sklearn.manifold import MDS
from typing import Tuple


# =============================================================================
# Gene Diversity
# =============================================================================

def gene_diversity(counts: np.ndarray) -> float:
    """
    Calculate unbiased gene (haplotype) diversity.

    h = 1 - sum(n_i * (n_i - 1)) / (N * (N - 1)) = N/(N-1) * (1 - sum(p_i^2))

    Args:
        counts: 1D array of haplotype counts

    Returns:
        Gene diversity value
    """
    counts = np.asarray(counts, dtype=float)
    n = counts.sum()
    if n <= 1:
        return 0.0
    return 1 - np.sum(counts * (counts - 1)) / (n * (n - 1))


def expected_heterozygosity(freqs: np.ndarray) -> float:
    """Uncorrected expected heterozygosity 1 - sum(p_i^2)."""
    freqs = np.asarray(freqs, dtype=float)
    return 1 - np.sum(freqs ** 2)


def harmonic_mean(values: np.ndarray) -> float:
    """
    Harmonic mean of strictly positive values.

    Args:
        values: 1D array of values

    Returns:
        Harmonic mean, or nan if any value is not positive
    """
    values = np.asarray(values, dtype=float)
    if len(values) == 0 or np.any(values <= 0):
        return np.nan
    return float(hmean(values))


# =============================================================================
# Richness and Coverage Estimators
# =============================================================================

def chao1(abundances: np.ndarray) -> float:
    """
    Calculate Chao1 richness estimator.

    Chao1 = S_obs + f1^2 / (2 * f2)
    where f1 = singletons, f2 = doubletons

    Args:
        abundances: 1D array of haplotype abundances (integers)

    Returns:
        Chao1 estimated richness
    """
    abundances = np.asarray(abundances)
    S_obs = np.sum(abundances > 0)
    f1 = np.sum(abundances == 1)  # Singletons
    f2 = np.sum(abundances == 2)  # Doubletons

    if f2 > 0:
        return S_obs + (f1 ** 2) / (2 * f2)
    else:
        # Bias-corrected form when f2 = 0
        return S_obs + f1 * (f1 - 1) / 2


def undetected_classes(abundances: np.ndarray) -> int:
    """Estimated number of undetected haplotypes, ceil(Chao1 - S_obs)."""
    abundances = np.asarray(abundances)
    return int(np.ceil(chao1(abundances) - np.sum(abundances > 0)))


def sample_coverage(abundances: np.ndarray) -> float:
    """
    Estimate sample coverage (Chao & Jost 2012).

    C = 1 - (f1/n) * ((n-1) f1 / ((n-1) f1 + 2 f2))

    Args:
        abundances: 1D array of haplotype abundances (integers)

    Returns:
        Estimated coverage between 0 and 1
    """
    abundances = np.asarray(abundances)
    n = abundances.sum()
    f1 = np.sum(abundances == 1)
    f2 = np.sum(abundances == 2)

    if n == 0:
        return np.nan
    if f1 == 0:
        return 1.0
    if n == 1:
        return 0.0

    if f2 > 0:
        adj = (n - 1) * f1 / ((n - 1) * f1 + 2 * f2)
    else:
        adj = (n - 1) * (f1 - 1) / ((n - 1) * (f1 - 1) + 2)

    return float(1 - (f1 / n) * adj)


# =============================================================================
# Ordination Functions
# =============================================================================

def perform_pcoa(distance_matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Perform Principal Coordinates Analysis (PCoA).

    Args:
        distance_matrix: Square distance matrix

    Returns:
        Tuple of (coordinates, eigenvalues)
    """
    n = distance_matrix.shape[0]

    # Double-center the distance matrix
    H = np.eye(n) - np.ones((n, n)) / n
    B = -0.5 * H @ (distance_matrix ** 2) @ H

    # Eigen decomposition
    eigenvalues, eigenvectors = np.linalg.eigh(B)

    # Sort by eigenvalue (descending)
    idx = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[idx]
    eigenvectors = eigenvectors[:, idx]

    # Keep only positive eigenvalues
    pos_idx = eigenvalues > 1e-10
    eigenvalues = eigenvalues[pos_idx]
    eigenvectors = eigenvectors[:, pos_idx]

    coords = eigenvectors * np.sqrt(eigenvalues)

    return coords, eigenvalues


def perform_nmds(distance_matrix: np.ndarray, n_components: int = 2,
                 max_iter: int = 300, random_state: int = 42) -> Tuple[np.ndarray, float]:
    """
    Perform Non-metric Multidimensional Scaling (NMDS).

    Args:
        distance_matrix: Square distance matrix
        n_components: Number of dimensions (k)
        max_iter: Maximum iterations
        random_state: Random seed

    Returns:
        Tuple of (coordinates, stress)
    """
    mds = MDS(n_components=n_components, dissimilarity='precomputed',
              max_iter=max_iter, random_state=random_state, metric=False)
    coords = mds.fit_transform(distance_matrix)
    stress = mds.stress_

    # Kruskal stress-1 normalisation
    d_sq_sum = np.sum(distance_matrix ** 2) / 2  # Upper triangle only
    if d_sq_sum > 0:
        stress = np.sqrt(stress / d_sq_sum)

    return coords, stress
