"""
Tests for popdiff.popdiff_bootstrap - Chao bootstrap and summaries.
"""

import numpy as np
import pandas as pd
import pytest

from popdiff.popdiff_errors import SchemaError, InsufficientDataError
from popdiff.popdiff_differentiation import count_tables
from popdiff.popdiff_bootstrap import (
    chao_frequencies, chao_replicate, chao_bootstrap, summarise_bootstrap, UNSEEN_PREFIX
)
from conftest import make_dataset


@pytest.fixture
def identical_polymorphic():
    """Two populations with the same haplotype composition (20:12:8)."""
    seqs = ['ACGTAC'] * 20 + ['ACGTTC'] * 12 + ['TCGTTC'] * 8
    return make_dataset({'A': {'cox1': seqs}, 'B': {'cox1': list(seqs)}})


class TestChaoFrequencies:
    """Tests for coverage-adjusted frequencies."""

    def test_no_singletons_unchanged(self):
        detected, undetected = chao_frequencies(np.array([20, 12, 8, 0]))
        assert np.allclose(detected, [0.5, 0.3, 0.2, 0.0])
        assert len(undetected) == 0

    def test_singletons_add_undetected_mass(self):
        detected, undetected = chao_frequencies(np.array([5, 3, 1, 1, 1]))

        assert len(undetected) > 0
        assert detected.sum() + undetected.sum() == pytest.approx(1.0)
        # rare haplotypes are shrunk more than common ones
        assert detected[0] / 5 > detected[2] / 1

    def test_empty_population(self):
        detected, undetected = chao_frequencies(np.array([0, 0]))
        assert detected.sum() == 0
        assert len(undetected) == 0


class TestReplicate:
    """Tests for single bootstrap replicates."""

    def test_sample_sizes_preserved(self, three_populations):
        genotypes, strata = three_populations
        tables = count_tables(genotypes, strata)
        replicate = chao_replicate(tables, np.random.default_rng(1))

        assert set(replicate) == {'cox1', 'its'}
        for locus, table in replicate.items():
            assert list(table.index) == ['A', 'B', 'C']
            assert list(table.sum(axis=1)) == list(tables[locus].sum(axis=1))

    def test_unseen_haplotypes_labelled(self):
        genotypes, strata = make_dataset({
            'A': {'loc': ['AA', 'AC', 'AG', 'AT', 'AT', 'AT']},
            'B': {'loc': ['TA', 'TC', 'TG', 'AT', 'AT', 'AT']},
        })
        tables = count_tables(genotypes, strata)
        seen_unseen = False
        rng = np.random.default_rng(5)
        for _ in range(50):
            table = chao_replicate(tables, rng)['loc']
            seen_unseen |= any(str(c).startswith(UNSEEN_PREFIX) for c in table.columns)
        assert seen_unseen


class TestBootstrap:
    """Tests for the bootstrap driver and summaries."""

    def test_replicate_table(self, three_populations):
        genotypes, strata = three_populations
        reps = chao_bootstrap(genotypes, strata, nreps=15, seed=4)

        assert reps.shape == (15, 4)
        assert list(reps.columns) == ['Gst', 'Gprime_st', 'D_het', 'D_mean']

    def test_seeded_results_independent_of_threads(self, three_populations):
        genotypes, strata = three_populations
        serial = chao_bootstrap(genotypes, strata, nreps=12, seed=11, statistics=['Gst'])
        parallel = chao_bootstrap(genotypes, strata, nreps=12, seed=11, statistics=['Gst'], threads=3)
        pd.testing.assert_frame_equal(serial, parallel)

    def test_unknown_statistic(self, three_populations):
        genotypes, strata = three_populations
        with pytest.raises(ValueError):
            chao_bootstrap(genotypes, strata, nreps=2, statistics=['Fst'])

    def test_single_population(self, three_populations):
        genotypes, strata = three_populations
        keep = strata['population'] == 'A'
        with pytest.raises(InsufficientDataError):
            chao_bootstrap(genotypes[keep], strata[keep], nreps=2)

    def test_sample_without_strata_row(self, three_populations):
        genotypes, strata = three_populations
        with pytest.raises(SchemaError):
            chao_bootstrap(genotypes, strata.drop(index='C_2'), nreps=2)

    def test_identical_populations_center_on_zero(self, identical_polymorphic):
        genotypes, strata = identical_polymorphic
        reps = chao_bootstrap(genotypes, strata, nreps=300, seed=42, statistics=['Gst', 'D_het'])
        summary = summarise_bootstrap(reps)

        assert abs(summary.loc['Gst', 'mean']) < 0.02
        assert abs(summary.loc['D_het', 'mean']) < 0.05
        assert summary.loc['Gst', 'lower'] <= 0 <= summary.loc['Gst', 'upper']

    def test_differentiated_populations_exclude_zero(self, fixed_difference):
        genotypes, strata = fixed_difference
        reps = chao_bootstrap(genotypes, strata, nreps=50, seed=1, statistics=['Gst'])
        summary = summarise_bootstrap(reps)
        assert summary.loc['Gst', 'lower'] > 0.5


class TestSummary:
    """Tests for bootstrap summaries."""

    def test_percentiles(self):
        reps = pd.DataFrame({'Gst': np.arange(101, dtype=float)})
        summary = summarise_bootstrap(reps, ci=(5, 95))

        assert summary.loc['Gst', 'mean'] == pytest.approx(50)
        assert summary.loc['Gst', 'lower'] == pytest.approx(5)
        assert summary.loc['Gst', 'upper'] == pytest.approx(95)
        assert summary.loc['Gst', 'n_valid'] == 101

    def test_nan_replicates_ignored(self):
        reps = pd.DataFrame({'D_mean': [0.1, np.nan, 0.3]})
        summary = summarise_bootstrap(reps)
        assert summary.loc['D_mean', 'mean'] == pytest.approx(0.2)
        assert summary.loc['D_mean', 'n_valid'] == 2

    def test_observed_column(self):
        reps = pd.DataFrame({'Gst': [0.1, 0.2]})
        observed = pd.Series({'Gst': 0.15, 'D_het': pd.NA}, dtype='Float64')
        summary = summarise_bootstrap(reps, observed=observed)
        assert summary.loc['Gst', 'observed'] == pytest.approx(0.15)

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            summarise_bootstrap(pd.DataFrame({'Gst': [0.1]}), ci=(97.5, 2.5))
