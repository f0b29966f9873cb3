"""
PopDiff AMOVA Module

Analysis of Molecular Variance (Excoffier, Smouse & Quattro 1992).
Partitions the total sum of squared distances into among-region,
among-population and within-population components and tests the
among-group components by permuting group labels and comparing the
matching Phi statistic.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Union
from concurrent.futures import ProcessPoolExecutor

from .popdiff_errors import SchemaError, InsufficientDataError, NOT_APPLICABLE


AMONG_REGIONS = 'Among regions'
AMONG_POPS_IN_REGIONS = 'Among populations within regions'
AMONG_POPS = 'Among populations'
WITHIN_POPS = 'Within populations'
TOTAL = 'Total'


# =============================================================================
# Hierarchy Handling
# =============================================================================

def parse_hierarchy(hierarchy: Union[str, List[str]]) -> List[str]:
    """
    Parse a grouping formula into strata levels, outermost first.

    Accepts "~region/population", "region/population", "population" or a list.

    Args:
        hierarchy: Formula string or list of strata column names

    Returns:
        List of level names (one or two entries)
    """
    if isinstance(hierarchy, str):
        levels = [lvl.strip() for lvl in hierarchy.strip().lstrip('~').split('/')]
    else:
        levels = [str(lvl).strip() for lvl in hierarchy]

    levels = [lvl for lvl in levels if lvl]
    if not 1 <= len(levels) <= 2:
        raise ValueError(f"Hierarchy must have one or two levels, got {levels}")
    if len(set(levels)) != len(levels):
        raise ValueError(f"Repeated level in hierarchy: {levels}")
    return levels


def _check_distances(distances: pd.DataFrame) -> np.ndarray:
    """Validate a square symmetric distance matrix and return its values."""
    if distances.shape[0] != distances.shape[1] or list(distances.index) != list(distances.columns):
        raise SchemaError("Distance matrix must be square with matching row and column labels")

    values = distances.values.astype(float)
    if np.isnan(values).any():
        raise SchemaError("Distance matrix contains undefined distances")
    if not np.allclose(values, values.T):
        raise SchemaError("Distance matrix is not symmetric")
    if not np.allclose(np.diag(values), 0):
        raise SchemaError("Distance matrix has a non-zero diagonal")
    return values


# =============================================================================
# Sums of Squares and Variance Components
# =============================================================================

def _ssd(dist: np.ndarray, codes: np.ndarray) -> float:
    """Sum of squared deviations within groups: sum_g sum_{i<j in g} d_ij / n_g."""
    n_groups = codes.max() + 1
    onehot = np.zeros((len(codes), n_groups))
    onehot[np.arange(len(codes)), codes] = 1.0
    sizes = onehot.sum(axis=0)
    within = np.einsum('ig,ij,jg->g', onehot, dist, onehot)
    return float(np.sum(within[sizes > 0] / (2 * sizes[sizes > 0])))


def _safe_div(num: float, den: float) -> float:
    return num / den if den > 0 else np.nan


def variance_components(dist: np.ndarray, pop_codes: np.ndarray,
                        region_codes: Optional[np.ndarray] = None) -> Dict[str, Dict[str, float]]:
    """
    Sums of squares, degrees of freedom and variance components.

    Args:
        dist: Square matrix of squared distances
        pop_codes: Integer population code per sample
        region_codes: Integer region code per sample (None for a single level)

    Returns:
        Dictionary keyed by source of variation with df, SS, MS, sigma,
        plus an 'n_coefficients' entry
    """
    N = len(pop_codes)
    pop_sizes = np.bincount(pop_codes)
    pop_sizes = pop_sizes[pop_sizes > 0]
    P = len(pop_sizes)

    ss_total = float(dist.sum() / (2 * N))
    ss_within = _ssd(dist, pop_codes)
    df_within = N - P

    ms_within = _safe_div(ss_within, df_within)
    sigma_c = ms_within

    if region_codes is None:
        ss_among = ss_total - ss_within
        df_among = P - 1
        n_coef = (N - np.sum(pop_sizes ** 2) / N) / df_among
        ms_among = _safe_div(ss_among, df_among)
        sigma_a = (ms_among - sigma_c) / n_coef

        return {
            AMONG_POPS: {'df': df_among, 'SS': ss_among, 'MS': ms_among, 'sigma': sigma_a},
            WITHIN_POPS: {'df': df_within, 'SS': ss_within, 'MS': ms_within, 'sigma': sigma_c},
            TOTAL: {'df': N - 1, 'SS': ss_total, 'MS': _safe_div(ss_total, N - 1),
                    'sigma': sigma_a + sigma_c},
            'n_coefficients': {'n': n_coef},
        }

    region_sizes = np.bincount(region_codes)
    region_sizes = region_sizes[region_sizes > 0]
    R = len(region_sizes)

    # sum over regions of (sum_{p in r} N_p^2) / N_r
    nested = 0.0
    for r in np.unique(region_codes):
        in_region = region_codes == r
        sizes = np.bincount(pop_codes[in_region])
        sizes = sizes[sizes > 0]
        nested += np.sum(sizes ** 2) / in_region.sum()

    ss_within_regions = _ssd(dist, region_codes)
    ss_among_regions = ss_total - ss_within_regions
    ss_among_pops = ss_within_regions - ss_within

    df_among_regions = R - 1
    df_among_pops = P - R

    n = _safe_div(N - nested, df_among_pops)
    n1 = _safe_div(nested - np.sum(pop_sizes ** 2) / N, df_among_regions)
    n2 = _safe_div(N - np.sum(region_sizes ** 2) / N, df_among_regions)

    ms_among_regions = _safe_div(ss_among_regions, df_among_regions)
    ms_among_pops = _safe_div(ss_among_pops, df_among_pops)

    sigma_b = (ms_among_pops - sigma_c) / n
    sigma_a = (ms_among_regions - sigma_c - n1 * sigma_b) / n2

    return {
        AMONG_REGIONS: {'df': df_among_regions, 'SS': ss_among_regions,
                        'MS': ms_among_regions, 'sigma': sigma_a},
        AMONG_POPS_IN_REGIONS: {'df': df_among_pops, 'SS': ss_among_pops,
                                'MS': ms_among_pops, 'sigma': sigma_b},
        WITHIN_POPS: {'df': df_within, 'SS': ss_within, 'MS': ms_within, 'sigma': sigma_c},
        TOTAL: {'df': N - 1, 'SS': ss_total, 'MS': _safe_div(ss_total, N - 1),
                'sigma': sigma_a + sigma_b + sigma_c},
        'n_coefficients': {'n': n, "n'": n1, "n''": n2},
    }


# Phi statistic tested for each among-group source of variation
TEST_STATISTICS = {
    AMONG_POPS: 'Phi_ST',
    AMONG_POPS_IN_REGIONS: 'Phi_SC',
    AMONG_REGIONS: 'Phi_CT',
}


def _phi_ratios(components: Dict[str, Dict[str, float]]) -> Dict[str, float]:
    """Phi statistics as floats, nan where the denominator is not positive."""
    def ratio(num, den):
        if not np.isfinite(num) or not np.isfinite(den) or den <= 0:
            return np.nan
        return float(num / den)

    sigma_c = components[WITHIN_POPS]['sigma']
    total = components[TOTAL]['sigma']

    if AMONG_REGIONS in components:
        sigma_a = components[AMONG_REGIONS]['sigma']
        sigma_b = components[AMONG_POPS_IN_REGIONS]['sigma']
        return {
            'Phi_ST': ratio(sigma_a + sigma_b, total),
            'Phi_SC': ratio(sigma_b, sigma_b + sigma_c),
            'Phi_CT': ratio(sigma_a, total),
        }
    return {'Phi_ST': ratio(components[AMONG_POPS]['sigma'], total)}


def phi_statistics(components: Dict[str, Dict[str, float]]) -> pd.Series:
    """
    Phi statistics from variance components.

    Args:
        components: Output of variance_components()

    Returns:
        Series with Phi_ST (and Phi_SC, Phi_CT for two levels); undefined
        ratios are NOT_APPLICABLE
    """
    phi = {name: NOT_APPLICABLE if np.isnan(value) else value
           for name, value in _phi_ratios(components).items()}
    return pd.Series(phi, dtype='Float64')


# =============================================================================
# Permutation Tests
# =============================================================================

def _permute_within(codes: np.ndarray, blocks: Optional[np.ndarray],
                    rng: np.random.Generator) -> np.ndarray:
    """Shuffle codes, restricted to within blocks when given."""
    if blocks is None:
        return rng.permutation(codes)
    permuted = codes.copy()
    for b in np.unique(blocks):
        idx = np.flatnonzero(blocks == b)
        permuted[idx] = rng.permutation(codes[idx])
    return permuted


def _permute_regions(pop_codes: np.ndarray, region_codes: np.ndarray,
                     rng: np.random.Generator) -> np.ndarray:
    """Reassign whole populations to regions, keeping the number of populations per region."""
    pops = np.unique(pop_codes)
    pop_region = np.array([region_codes[pop_codes == p][0] for p in pops])
    shuffled = rng.permutation(pop_region)
    mapping = dict(zip(pops, shuffled))
    return np.array([mapping[p] for p in pop_codes])


def _permutation_worker(dist: np.ndarray, pop_codes: np.ndarray,
                        region_codes: Optional[np.ndarray], source: str,
                        seeds: List[np.random.SeedSequence]) -> np.ndarray:
    """Permuted Phi statistic for one source of variation (nan where undefined)."""
    values = np.empty(len(seeds))
    for i, seed in enumerate(seeds):
        rng = np.random.default_rng(seed)
        if source == AMONG_REGIONS:
            perm_pops, perm_regions = pop_codes, _permute_regions(pop_codes, region_codes, rng)
        else:
            perm_pops, perm_regions = _permute_within(pop_codes, region_codes, rng), region_codes
        components = variance_components(dist, perm_pops, perm_regions)
        values[i] = _phi_ratios(components)[TEST_STATISTICS[source]]
    return values


def permutation_test(dist: np.ndarray, pop_codes: np.ndarray,
                     region_codes: Optional[np.ndarray], source: str,
                     observed: float, nperm: int = 100, seed=None,
                     threads: int = 1) -> Dict[str, object]:
    """
    Permutation test for one among-group source of variation.

    The test statistic is the Phi ratio for the source (Phi_ST among
    populations, Phi_SC among populations within regions, Phi_CT among
    regions):

        p = (number of permuted Phi >= observed + 1) / (nperm + 1)

    A permutation with an undefined Phi counts as at least as extreme, and an
    undefined observed Phi gives p = 1.

    Args:
        dist: Square matrix of squared distances
        pop_codes: Integer population code per sample
        region_codes: Integer region code per sample, or None
        source: Source of variation to test
        observed: Observed Phi statistic for the source (nan if undefined)
        nperm: Number of permutations
        seed: Seed for numpy's SeedSequence
        threads: Number of worker processes

    Returns:
        Dictionary with 'pvalue' and the 'permuted' statistics
    """
    if not isinstance(seed, np.random.SeedSequence):
        seed = np.random.SeedSequence(seed)
    seeds = seed.spawn(nperm)

    if threads > 1 and nperm > 1:
        chunks = [[seeds[i] for i in idx]
                  for idx in np.array_split(np.arange(nperm), threads) if len(idx)]
        with ProcessPoolExecutor(max_workers=threads) as executor:
            futures = [
                executor.submit(_permutation_worker, dist, pop_codes, region_codes, source, chunk)
                for chunk in chunks
            ]
            permuted = np.concatenate([f.result() for f in futures])
    else:
        permuted = _permutation_worker(dist, pop_codes, region_codes, source, seeds)

    if np.isnan(observed):
        exceed = nperm
    else:
        tol = 1e-10 * max(1.0, abs(observed))
        exceed = int(np.sum(np.isnan(permuted) | (permuted >= observed - tol)))
    return {'pvalue': (exceed + 1) / (nperm + 1), 'permuted': permuted}


# =============================================================================
# Main Entry Point
# =============================================================================

def amova(distances: pd.DataFrame, strata: pd.DataFrame,
          hierarchy: Union[str, List[str]] = "~population",
          nperm: int = 100, seed=None, threads: int = 1,
          square_distances: bool = False) -> Dict[str, object]:
    """
    Run an AMOVA on a sample distance matrix.

    Distances are used as squared distances (e.g. number of differences);
    set square_distances for Euclidean-type distances.

    Args:
        distances: Square sample x sample distance DataFrame
        strata: Strata table indexed by sample
        hierarchy: Grouping formula, outermost level first ("~region/population")
        nperm: Number of permutations per tested component (0 to skip)
        seed: Random seed
        threads: Number of worker processes for permutations
        square_distances: Square the distances before use

    Returns:
        Dictionary with 'table' (df, SS, MS, sigma, percent), 'phi',
        'pvalues', 'n_coefficients' and 'permutations' (permuted Phi
        statistic per tested source, see TEST_STATISTICS)
    """
    levels = parse_hierarchy(hierarchy)
    missing_cols = [lvl for lvl in levels if lvl not in strata.columns]
    if missing_cols:
        raise SchemaError(f"Strata table has no column(s): {missing_cols}")

    dist = _check_distances(distances)
    if square_distances:
        dist = dist ** 2

    samples = list(distances.index)
    orphans = [s for s in samples if s not in strata.index]
    if orphans:
        raise SchemaError(f"Samples without strata labels: {orphans}")

    labels = strata.loc[samples, levels]
    if labels.isna().any().any():
        raise SchemaError("Strata labels contain missing values")

    pop_codes, pops = pd.factorize(labels[levels[-1]])
    region_codes = None
    if len(levels) == 2:
        nesting = labels.groupby(levels[1])[levels[0]].nunique()
        if (nesting > 1).any():
            raise SchemaError(f"'{levels[1]}' is not nested within '{levels[0]}'")
        region_codes, regions = pd.factorize(labels[levels[0]])
        if len(regions) < 2:
            raise InsufficientDataError(f"AMOVA needs at least two groups at level '{levels[0]}'")
        if len(pops) <= len(regions):
            raise InsufficientDataError(
                f"AMOVA needs more '{levels[1]}' groups than '{levels[0]}' groups"
            )

    if len(pops) < 2:
        raise InsufficientDataError(f"AMOVA needs at least two groups at level '{levels[-1]}'")
    if len(samples) <= len(pops):
        raise InsufficientDataError("AMOVA needs more samples than populations")

    components = variance_components(dist, pop_codes, region_codes)
    n_coefficients = pd.Series(components.pop('n_coefficients'))

    table = pd.DataFrame(components).T[['df', 'SS', 'MS', 'sigma']]
    table['df'] = table['df'].astype(int)
    sigma_sum = table.loc[table.index != TOTAL, 'sigma'].sum()
    table['percent'] = table['sigma'] / sigma_sum * 100 if sigma_sum > 0 else np.nan

    tested = [AMONG_POPS] if region_codes is None else [AMONG_REGIONS, AMONG_POPS_IN_REGIONS]
    pvalues = {}
    permutations = {}
    if nperm > 0:
        observed = _phi_ratios(components)
        seeds = np.random.SeedSequence(seed).spawn(len(tested))
        for source, child in zip(tested, seeds):
            result = permutation_test(
                dist, pop_codes, region_codes, source, observed[TEST_STATISTICS[source]],
                nperm=nperm, seed=child, threads=threads
            )
            pvalues[source] = result['pvalue']
            permutations[source] = result['permuted']

    return {
        'table': table,
        'phi': phi_statistics(components),
        'pvalues': pd.Series(pvalues, dtype=float),
        'n_coefficients': n_coefficients,
        'permutations': pd.DataFrame(permutations),
        'hierarchy': levels,
    }
