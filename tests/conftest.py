"""
Shared fixtures for the popdiff test suite.
"""

import pandas as pd
import pytest


def make_dataset(populations, regions=None):
    """
    Build (genotypes, strata) from {population: {locus: [sequences]}}.

    Args:
        populations: Mapping of population to per-locus sequence lists
        regions: Optional mapping of population to region
    """
    rows = []
    for pop, loci in populations.items():
        n = len(next(iter(loci.values())))
        for i in range(n):
            row = {'sample': f"{pop}_{i + 1}", 'population': pop}
            if regions is not None:
                row['region'] = regions[pop]
            for locus, seqs in loci.items():
                row[locus] = seqs[i]
            rows.append(row)

    table = pd.DataFrame(rows).set_index('sample')
    strata_cols = ['population'] + (['region'] if regions is not None else [])
    strata = table[strata_cols].copy()
    genotypes = table.drop(columns=strata_cols)
    return genotypes, strata


@pytest.fixture
def fixed_difference():
    """Two populations fixed for different haplotypes at one locus."""
    return make_dataset({
        'A': {'cox1': ['ACGTAC'] * 10},
        'B': {'cox1': ['ACGTTC'] * 10},
    })


@pytest.fixture
def partial_difference():
    """Two populations sharing two haplotypes at different frequencies (6:4 vs 2:8)."""
    return make_dataset({
        'A': {'cox1': ['ACGTAC'] * 6 + ['ACGTTC'] * 4},
        'B': {'cox1': ['ACGTAC'] * 2 + ['ACGTTC'] * 8},
    })


@pytest.fixture
def identical_monomorphic():
    """Two populations of 10 identical sequences, no variation anywhere."""
    return make_dataset({
        'A': {'cox1': ['ACGTACGTAC'] * 10},
        'B': {'cox1': ['ACGTACGTAC'] * 10},
    })


@pytest.fixture
def three_populations():
    """Three populations over two loci with varying overlap."""
    return make_dataset({
        'A': {'cox1': ['AAAAAA'] * 5 + ['AAAAAT'] * 3,
              'its': ['CCCC'] * 4 + ['CCCG'] * 4},
        'B': {'cox1': ['AAAAAA'] * 2 + ['AAAAAT'] * 4 + ['AATAAT'] * 2,
              'its': ['CCCC'] * 6 + ['GCCG'] * 2},
        'C': {'cox1': ['TTAAAT'] * 6 + ['AATAAT'] * 2,
              'its': ['GCCG'] * 8},
    })


@pytest.fixture
def hierarchical():
    """Four populations nested in two regions."""
    return make_dataset({
        'A1': {'cox1': ['AAAAAA'] * 4 + ['AAAAAT'] * 2},
        'A2': {'cox1': ['AAAAAA'] * 3 + ['AAAAAT'] * 3},
        'B1': {'cox1': ['TTAAAT'] * 5 + ['AAAAAT'] * 1},
        'B2': {'cox1': ['TTAAAT'] * 4 + ['TTTAAT'] * 2},
    }, regions={'A1': 'north', 'A2': 'north', 'B1': 'south', 'B2': 'south'})
