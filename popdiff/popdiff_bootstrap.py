"""
PopDiff Bootstrap Module

Coverage-adjusted (Chao) bootstrap of haplotype count tables. Each replicate
redraws every population's sample from frequencies corrected for
undetected haplotypes, then recomputes the differentiation statistics.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Sequence, Tuple
from concurrent.futures import ProcessPoolExecutor

from .popdiff_errors import is_not_applicable
from .popdiff_diversity_utils import sample_coverage, undetected_classes
from .popdiff_differentiation import (
    COUNT_STATISTICS, count_tables, differentiation_from_counts
)


UNSEEN_PREFIX = '*unseen'


# =============================================================================
# Coverage-adjusted Frequencies
# =============================================================================

def chao_frequencies(counts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate the haplotype frequencies of the sampled population
    (Chao & Jost 2015).

    Detected haplotypes:   p_i = X_i/n * (1 - lambda * (1 - X_i/n)^n)
    with lambda = (1 - C) / sum(X_i/n * (1 - X_i/n)^n); the remaining
    mass 1 - C is split evenly among f0 undetected haplotypes.

    Args:
        counts: 1D array of observed haplotype counts (zeros allowed)

    Returns:
        Tuple of (frequencies of the observed columns, frequencies of the
        undetected haplotypes)
    """
    counts = np.asarray(counts, dtype=float)
    n = counts.sum()
    if n == 0:
        return np.zeros_like(counts), np.zeros(0)

    rel = counts / n
    coverage = sample_coverage(counts.astype(int))
    f0 = undetected_classes(counts.astype(int))

    if coverage >= 1 or f0 == 0:
        return rel, np.zeros(0)

    weights = rel * (1 - rel) ** n
    lam = (1 - coverage) / weights.sum() if weights.sum() > 0 else 0.0
    detected = rel * (1 - lam * (1 - rel) ** n)
    undetected = np.full(f0, (1 - coverage) / f0)

    total = detected.sum() + undetected.sum()
    return detected / total, undetected / total


def chao_replicate(tables: Dict[str, pd.DataFrame],
                   rng: np.random.Generator) -> Dict[str, pd.DataFrame]:
    """
    Draw one bootstrap replicate of a set of count tables.

    Undetected haplotypes are labelled by index and shared between
    populations, so identical populations stay identical in expectation.

    Args:
        tables: Dictionary mapping locus to populations x haplotypes counts
        rng: numpy random Generator

    Returns:
        Dictionary mapping locus to a resampled count table
    """
    replicate = {}
    for locus, table in tables.items():
        rows = {}
        for pop, row in table.iterrows():
            n = int(row.sum())
            detected, undetected = chao_frequencies(row.values)
            probs = np.concatenate([detected, undetected])
            draws = rng.multinomial(n, probs / probs.sum()) if n > 0 else np.zeros(len(probs), dtype=int)

            labels = list(table.columns) + [f"{UNSEEN_PREFIX}{i + 1}" for i in range(len(undetected))]
            rows[pop] = dict(zip(labels, draws))

        resampled = pd.DataFrame.from_dict(rows, orient='index').fillna(0).astype(int)
        resampled = resampled.loc[:, resampled.sum(axis=0) > 0]
        resampled.index.name = 'population'
        replicate[locus] = resampled
    return replicate


# =============================================================================
# Bootstrap Driver
# =============================================================================

def _replicate_statistics(tables: Dict[str, pd.DataFrame], statistics: Sequence[str],
                          seed: np.random.SeedSequence) -> Dict[str, float]:
    rng = np.random.default_rng(seed)
    replicate = chao_replicate(tables, rng)
    values = differentiation_from_counts(replicate)['global']
    return {stat: np.nan if is_not_applicable(values[stat]) else float(values[stat])
            for stat in statistics}


def _bootstrap_worker(tables: Dict[str, pd.DataFrame], statistics: Sequence[str],
                      seeds: List[np.random.SeedSequence]) -> List[Dict[str, float]]:
    return [_replicate_statistics(tables, statistics, seed) for seed in seeds]


def chao_bootstrap(genotypes: pd.DataFrame, strata: pd.DataFrame, nreps: int = 100,
                   statistics: Sequence[str] = None, loci: List[str] = None,
                   seed=None, threads: int = 1) -> pd.DataFrame:
    """
    Bootstrap multi-locus differentiation statistics.

    Args:
        genotypes: Genotype table
        strata: Strata table
        nreps: Number of replicates
        statistics: Statistics to collect (default: Gst, Gprime_st, D_het, D_mean)
        loci: Loci to include (default: all)
        seed: Random seed
        threads: Number of worker processes

    Returns:
        DataFrame with one row per replicate and one column per statistic
        (nan where a replicate's statistic is undefined)
    """
    if statistics is None:
        statistics = COUNT_STATISTICS
    unknown = [s for s in statistics if s not in COUNT_STATISTICS]
    if unknown:
        raise ValueError(f"Unknown bootstrap statistics: {unknown}. Use {COUNT_STATISTICS}")

    tables = count_tables(genotypes, strata, loci)
    # validates population counts before any work is scheduled
    differentiation_from_counts(tables)

    seeds = np.random.SeedSequence(seed).spawn(nreps)

    if threads > 1 and nreps > 1:
        chunks = [[seeds[i] for i in idx]
                  for idx in np.array_split(np.arange(nreps), threads) if len(idx)]
        with ProcessPoolExecutor(max_workers=threads) as executor:
            futures = [executor.submit(_bootstrap_worker, tables, statistics, chunk)
                       for chunk in chunks]
            results = [row for f in futures for row in f.result()]
    else:
        results = _bootstrap_worker(tables, statistics, seeds)

    replicates = pd.DataFrame(results, columns=list(statistics), dtype=float)
    replicates.index.name = 'replicate'
    return replicates


def summarise_bootstrap(replicates: pd.DataFrame, ci: Tuple[float, float] = (2.5, 97.5),
                        observed: pd.Series = None) -> pd.DataFrame:
    """
    Summarise bootstrap replicates with a mean and percentile interval.

    Args:
        replicates: Output of chao_bootstrap()
        ci: Lower and upper percentiles
        observed: Optional observed values to report alongside

    Returns:
        DataFrame indexed by statistic with mean, sd, lower, upper, n_valid
        (and observed)
    """
    lower_q, upper_q = ci
    if not 0 <= lower_q < upper_q <= 100:
        raise ValueError(f"Invalid confidence interval percentiles: {ci}")

    results = []
    for stat in replicates.columns:
        values = replicates[stat].to_numpy(dtype=float)
        values = values[~np.isnan(values)]
        row = {
            'statistic': stat,
            'mean': np.mean(values) if len(values) else np.nan,
            'sd': np.std(values, ddof=1) if len(values) > 1 else np.nan,
            'lower': np.percentile(values, lower_q) if len(values) else np.nan,
            'upper': np.percentile(values, upper_q) if len(values) else np.nan,
            'n_valid': len(values),
        }
        if observed is not None and stat in observed.index:
            obs = observed[stat]
            row['observed'] = np.nan if is_not_applicable(obs) else float(obs)
        results.append(row)

    return pd.DataFrame(results).set_index('statistic')
