"""
PopDiff Differentiation Module

Heterozygosity-based differentiation estimators (Nei's Gst, Hedrick's G'st,
Jost's D) computed from haplotype count tables, PhiST from sequence
distances, and pairwise matrices of each.
"""

import itertools
import numpy as np
import pandas as pd
from typing import Callable, Dict, List, Optional

from .popdiff_errors import (
    NOT_APPLICABLE, UndefinedStatistic, InsufficientDataError, is_not_applicable
)
from .popdiff_diversity_utils import expected_heterozygosity, harmonic_mean
from .popdiff_loader import haplotype_counts, population_order, check_population_labels
from .popdiff_distance import sample_distances
from .popdiff_amova import amova


COUNT_STATISTICS = ['Gst', 'Gprime_st', 'D_het', 'D_mean']


# =============================================================================
# Linearisation
# =============================================================================

def linearize(value):
    """
    Linearise a differentiation statistic as 1 / (1 - x).

    Args:
        value: Statistic value or NOT_APPLICABLE

    Returns:
        1 / (1 - value), or NOT_APPLICABLE if value is NOT_APPLICABLE
    """
    if is_not_applicable(value):
        return NOT_APPLICABLE
    if value == 1:
        raise UndefinedStatistic("Cannot linearize a statistic equal to 1")
    return 1.0 / (1.0 - value)


def inverse_linearize(value):
    """Undo linearize(): 1 - 1 / value."""
    if is_not_applicable(value):
        return NOT_APPLICABLE
    if value == 0:
        raise UndefinedStatistic("Cannot invert a linearized value of 0")
    return 1.0 - 1.0 / value


# =============================================================================
# Heterozygosity
# =============================================================================

def heterozygosity(counts: pd.DataFrame) -> Dict[str, float]:
    """
    Within- and total heterozygosity for one locus (Nei & Chesser 1983).

    Sequence data are haploid, so with n the harmonic mean sample size and
    k the number of populations:
        Hs_est = n / (n - 1) * Hs_raw
        Ht_est = Ht_raw + Hs_est / (k * n)

    Args:
        counts: Populations x haplotypes count table

    Returns:
        Dictionary with Hs_raw, Ht_raw, Hs, Ht, n, k
    """
    values = np.asarray(counts.values, dtype=float)
    sizes = values.sum(axis=1)

    if values.shape[0] == 0:
        raise InsufficientDataError("No populations supplied")
    empty = [p for p, size in zip(counts.index, sizes) if size == 0]
    if empty:
        raise InsufficientDataError(f"Empty populations: {empty}")

    k = values.shape[0]
    freqs = values / sizes[:, None]
    n = harmonic_mean(sizes)

    hs_raw = float(np.mean([expected_heterozygosity(row) for row in freqs]))
    ht_raw = float(expected_heterozygosity(freqs.mean(axis=0)))

    if n <= 1:
        raise UndefinedStatistic("Harmonic mean sample size must exceed 1")

    hs_est = n / (n - 1) * hs_raw
    ht_est = ht_raw + hs_est / (k * n)

    return {'Hs_raw': hs_raw, 'Ht_raw': ht_raw, 'Hs': hs_est, 'Ht': ht_est, 'n': n, 'k': k}


# =============================================================================
# Estimators on Heterozygosities
# =============================================================================

def _check_populations(k: int) -> None:
    if k < 2:
        raise InsufficientDataError("At least two populations are required")


def gst_from_heterozygosity(hs: float, ht: float, k: int) -> float:
    """Nei's Gst = (Ht - Hs) / Ht."""
    _check_populations(k)
    if ht <= 0:
        raise UndefinedStatistic("Total heterozygosity is zero (monomorphic locus)")
    return (ht - hs) / ht


def hedrick_from_heterozygosity(hs: float, ht: float, k: int) -> float:
    """Hedrick's G'st = Gst * (k - 1 + Hs) / ((k - 1) * (1 - Hs))."""
    gst = gst_from_heterozygosity(hs, ht, k)
    if hs >= 1:
        raise UndefinedStatistic("Within-population heterozygosity is 1")
    return gst * (k - 1 + hs) / ((k - 1) * (1 - hs))


def jost_d_from_heterozygosity(hs: float, ht: float, k: int) -> float:
    """Jost's D = ((Ht - Hs) / (1 - Hs)) * (k / (k - 1))."""
    _check_populations(k)
    if ht <= 0:
        raise UndefinedStatistic("Total heterozygosity is zero (monomorphic locus)")
    if hs >= 1:
        raise UndefinedStatistic("Within-population heterozygosity is 1")
    return ((ht - hs) / (1 - hs)) * (k / (k - 1))


def gst_nei(counts: pd.DataFrame) -> float:
    """
    Nei's Gst for one locus.

    Args:
        counts: Populations x haplotypes count table

    Returns:
        Gst estimate
    """
    h = heterozygosity(counts)
    return gst_from_heterozygosity(h['Hs'], h['Ht'], h['k'])


def gst_hedrick(counts: pd.DataFrame) -> float:
    """Hedrick's G'st for one locus."""
    h = heterozygosity(counts)
    return hedrick_from_heterozygosity(h['Hs'], h['Ht'], h['k'])


def jost_d(counts: pd.DataFrame) -> float:
    """Jost's D for one locus."""
    h = heterozygosity(counts)
    return jost_d_from_heterozygosity(h['Hs'], h['Ht'], h['k'])


def _attempt(func: Callable, *args):
    """Call func, mapping UndefinedStatistic to NOT_APPLICABLE."""
    try:
        return func(*args)
    except UndefinedStatistic:
        return NOT_APPLICABLE


# =============================================================================
# Multi-locus Summaries
# =============================================================================

def differentiation_from_counts(count_tables: Dict[str, pd.DataFrame]) -> Dict[str, object]:
    """
    Per-locus and multi-locus differentiation from haplotype count tables.

    Multi-locus Gst, G'st and D_het use locus-averaged Hs and Ht; D_mean is
    the harmonic mean of per-locus D. When every locus is monomorphic the
    populations share a single haplotype everywhere and the multi-locus
    estimates are 0.

    Args:
        count_tables: Dictionary mapping locus to populations x haplotypes counts

    Returns:
        Dictionary with 'per_locus' DataFrame and 'global' Series
    """
    if len(count_tables) == 0:
        raise InsufficientDataError("No loci supplied")

    k = len(next(iter(count_tables.values())).index)
    _check_populations(k)

    rows = {}
    hets = []
    for locus, counts in count_tables.items():
        try:
            h = heterozygosity(counts)
        except UndefinedStatistic:
            rows[locus] = {stat: NOT_APPLICABLE for stat in ('Hs', 'Ht', 'Gst', 'Gprime_st', 'D')}
            continue
        hets.append(h)
        rows[locus] = {
            'Hs': h['Hs'],
            'Ht': h['Ht'],
            'Gst': _attempt(gst_from_heterozygosity, h['Hs'], h['Ht'], h['k']),
            'Gprime_st': _attempt(hedrick_from_heterozygosity, h['Hs'], h['Ht'], h['k']),
            'D': _attempt(jost_d_from_heterozygosity, h['Hs'], h['Ht'], h['k']),
        }

    per_locus = pd.DataFrame.from_dict(rows, orient='index').astype('Float64')
    per_locus.index.name = 'locus'

    if len(hets) == 0:
        hs = ht = NOT_APPLICABLE
        summary = {stat: NOT_APPLICABLE for stat in COUNT_STATISTICS}
        global_stats = pd.Series({'Hs': hs, 'Ht': ht, **summary}, dtype='Float64')
        return {'per_locus': per_locus, 'global': global_stats}

    hs = float(np.mean([h['Hs'] for h in hets]))
    ht = float(np.mean([h['Ht'] for h in hets]))

    if ht <= 0:
        summary = {'Gst': 0.0, 'Gprime_st': 0.0, 'D_het': 0.0, 'D_mean': 0.0}
    else:
        summary = {
            'Gst': _attempt(gst_from_heterozygosity, hs, ht, k),
            'Gprime_st': _attempt(hedrick_from_heterozygosity, hs, ht, k),
            'D_het': _attempt(jost_d_from_heterozygosity, hs, ht, k),
        }
        d_values = [d for d in per_locus['D'].tolist() if not is_not_applicable(d)]
        d_mean = harmonic_mean(d_values)
        summary['D_mean'] = NOT_APPLICABLE if np.isnan(d_mean) else d_mean

    global_stats = pd.Series({'Hs': hs, 'Ht': ht, **summary}, dtype='Float64')
    return {'per_locus': per_locus, 'global': global_stats}


def count_tables(genotypes: pd.DataFrame, strata: pd.DataFrame,
                 loci: List[str] = None, populations: List[str] = None) -> Dict[str, pd.DataFrame]:
    """
    Haplotype count tables for several loci.

    Args:
        genotypes: Genotype table
        strata: Strata table
        loci: Loci to include (default: all)
        populations: Populations to include (default: all)

    Returns:
        Dictionary mapping locus to count table
    """
    if loci is None:
        loci = list(genotypes.columns)
    return {locus: haplotype_counts(genotypes, strata, locus, populations) for locus in loci}


def phi_st(genotypes: pd.DataFrame, strata: pd.DataFrame, model: str = "N",
           loci: List[str] = None, populations: List[str] = None) -> float:
    """
    PhiST: among-population share of molecular variance (Meirmans 2006).

    Undefined when total variance is zero or when the distance model
    saturates for any pair of samples.

    Args:
        genotypes: Genotype table
        strata: Strata table
        model: Distance model passed to sample_distances()
        loci: Loci to pool (default: all)
        populations: Populations to include (default: all)

    Returns:
        PhiST estimate
    """
    strata = check_population_labels(genotypes, strata)
    labels = strata.loc[genotypes.index, 'population']
    if populations is not None:
        genotypes = genotypes.loc[labels.isin(populations).values]
    strata = strata.loc[genotypes.index]

    n_pops = strata['population'].nunique()
    if n_pops < 2:
        raise InsufficientDataError("At least two populations are required")
    if len(genotypes) <= n_pops:
        raise UndefinedStatistic("PhiST needs more samples than populations")

    distances = sample_distances(genotypes, model=model, loci=loci)
    if distances.isna().values.any():
        raise UndefinedStatistic(f"Saturated {model} distances between some samples")
    result = amova(distances, strata, "~population", nperm=0)
    value = result['phi']['Phi_ST']
    if is_not_applicable(value):
        raise UndefinedStatistic("No molecular variance among samples")
    return float(value)


def diff_stats(genotypes: pd.DataFrame, strata: pd.DataFrame,
               loci: List[str] = None, phi_model: Optional[str] = "N") -> Dict[str, object]:
    """
    Differentiation statistics for all populations.

    Args:
        genotypes: Genotype table
        strata: Strata table
        loci: Loci to include (default: all)
        phi_model: Distance model for PhiST (None to skip PhiST)

    Returns:
        Dictionary with 'per_locus' DataFrame (Hs, Ht, Gst, Gprime_st, D,
        PhiST) and 'global' Series
    """
    strata = check_population_labels(genotypes, strata)
    if strata['population'].nunique() < 2:
        raise InsufficientDataError("At least two populations are required")

    if loci is None:
        loci = list(genotypes.columns)

    result = differentiation_from_counts(count_tables(genotypes, strata, loci))

    if phi_model is not None:
        result['per_locus']['PhiST'] = pd.array(
            [_attempt(phi_st, genotypes, strata, phi_model, [locus]) for locus in loci],
            dtype='Float64'
        )
        phi = _attempt(phi_st, genotypes, strata, phi_model, loci)
        result['global'] = pd.concat([result['global'], pd.Series({'PhiST': phi}, dtype='Float64')])

    return result


# =============================================================================
# Pairwise Matrices
# =============================================================================

def _pairwise_matrix(populations: List[str], pair_value: Callable,
                     linearized: bool = False) -> pd.DataFrame:
    """Fill a symmetric population x population matrix with NOT_APPLICABLE diagonal."""
    values = {pop: {other: NOT_APPLICABLE for other in populations} for pop in populations}

    for pop_a, pop_b in itertools.combinations(populations, 2):
        value = _attempt(pair_value, pop_a, pop_b)
        if linearized:
            value = _attempt(linearize, value)
        values[pop_a][pop_b] = value
        values[pop_b][pop_a] = value

    matrix = pd.DataFrame(values, index=populations, columns=populations, dtype=object).T
    matrix = matrix.astype('Float64')
    matrix.index.name = 'population'
    return matrix


def _pairwise_from_counts(genotypes: pd.DataFrame, strata: pd.DataFrame, statistic: str,
                          linearized: bool, loci: List[str]) -> pd.DataFrame:
    populations = population_order(strata)
    tables = count_tables(genotypes, strata, loci)

    def pair_value(pop_a, pop_b):
        subset = {locus: t.loc[[pop_a, pop_b]] for locus, t in tables.items()}
        value = differentiation_from_counts(subset)['global'][statistic]
        if is_not_applicable(value):
            raise UndefinedStatistic(f"{statistic} undefined for {pop_a} vs {pop_b}")
        return float(value)

    return _pairwise_matrix(populations, pair_value, linearized)


def pairwise_gst_nei(genotypes: pd.DataFrame, strata: pd.DataFrame,
                     linearized: bool = False, loci: List[str] = None) -> pd.DataFrame:
    """
    Multi-locus Nei's Gst between every pair of populations.

    Args:
        genotypes: Genotype table
        strata: Strata table
        linearized: Report 1 / (1 - Gst)
        loci: Loci to include (default: all)

    Returns:
        Symmetric population x population DataFrame, NOT_APPLICABLE diagonal
    """
    return _pairwise_from_counts(genotypes, strata, 'Gst', linearized, loci)


def pairwise_gst_hedrick(genotypes: pd.DataFrame, strata: pd.DataFrame,
                         linearized: bool = False, loci: List[str] = None) -> pd.DataFrame:
    """Multi-locus Hedrick's G'st between every pair of populations."""
    return _pairwise_from_counts(genotypes, strata, 'Gprime_st', linearized, loci)


def pairwise_jost_d(genotypes: pd.DataFrame, strata: pd.DataFrame,
                    linearized: bool = False, loci: List[str] = None) -> pd.DataFrame:
    """Multi-locus Jost's D (from averaged heterozygosities) between every pair of populations."""
    return _pairwise_from_counts(genotypes, strata, 'D_het', linearized, loci)


def pairwise_phi_st(genotypes: pd.DataFrame, strata: pd.DataFrame, model: str = "N",
                    linearized: bool = False, loci: List[str] = None) -> pd.DataFrame:
    """PhiST between every pair of populations."""
    populations = population_order(strata)

    def pair_value(pop_a, pop_b):
        return phi_st(genotypes, strata, model=model, loci=loci, populations=[pop_a, pop_b])

    return _pairwise_matrix(populations, pair_value, linearized)


PAIRWISE_FUNCTIONS = {
    'Gst': pairwise_gst_nei,
    'Gprime_st': pairwise_gst_hedrick,
    'D': pairwise_jost_d,
    'PhiST': pairwise_phi_st,
}
