"""
Tests for popdiff.popdiff_distance - pairwise sequence distances.
"""

import numpy as np
import pytest

from popdiff.popdiff_errors import SchemaError
from popdiff.popdiff_distance import (
    sequence_distance, distance_matrix, haplotype_distances, sample_distances,
    ordinate_distances
)


class TestSequenceDistance:
    """Tests for distances between two sequences."""

    def test_count_of_differences(self):
        assert sequence_distance("ACGTACGT", "ACGTACGA", model="N") == 1
        assert sequence_distance("ACGTACGT", "TCGTACGA", model="N") == 2

    def test_raw_distance(self):
        assert sequence_distance("ACGT", "ACGA", model="raw") == pytest.approx(0.25)

    def test_gaps_and_ambiguities_skipped(self):
        # only the first three sites are comparable
        assert sequence_distance("ACG-N", "ATGTA", model="N") == 1
        assert sequence_distance("ACG-N", "ATGTA", model="raw") == pytest.approx(1 / 3)

    def test_jc69(self):
        p = 0.25
        expected = -0.75 * np.log(1 - 4 * p / 3)
        assert sequence_distance("ACGT", "ACGA", model="JC69") == pytest.approx(expected)

    def test_jc69_saturated(self):
        assert np.isnan(sequence_distance("AAAA", "CCCC", model="JC69"))

    def test_k80_transitions_and_transversions(self):
        # one transition (A<->G) and one transversion (C<->A) over 10 sites
        a = "ACACACACAC"
        b = "GCACACACAA"
        P, Q = 0.1, 0.1
        expected = -0.5 * np.log(1 - 2 * P - Q) - 0.25 * np.log(1 - 2 * Q)
        assert sequence_distance(a, b, model="K80") == pytest.approx(expected)

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            sequence_distance("AC", "AC", model="F84")

    def test_unaligned(self):
        with pytest.raises(SchemaError):
            distance_matrix(["ACGT", "ACG"])

    def test_non_ascii_residue(self):
        with pytest.raises(SchemaError):
            distance_matrix(["ACGT", "ACGÉ"])


class TestDistanceMatrix:
    """Tests for distance matrix invariants."""

    @pytest.mark.parametrize("model", ["N", "raw", "JC69", "K80"])
    def test_zero_diagonal_and_symmetry(self, model):
        seqs = {'a': 'ACGTACGTAC', 'b': 'ACGTTCGTAC', 'c': 'GCGTTCGAAC', 'd': 'ACGTACGTAC'}
        dm = distance_matrix(seqs, model=model)

        assert list(dm.index) == ['a', 'b', 'c', 'd']
        assert np.allclose(np.diag(dm.values), 0)
        assert np.allclose(dm.values, dm.values.T)
        assert dm.loc['a', 'd'] == pytest.approx(0)

    def test_haplotype_distances(self, three_populations):
        genotypes, _ = three_populations
        dm = haplotype_distances(genotypes, 'cox1')

        assert dm.shape == (4, 4)
        assert dm.loc['AAAAAA', 'TTAAAT'] == 3

    def test_sample_distances_sum_over_loci(self, three_populations):
        genotypes, _ = three_populations
        pooled = sample_distances(genotypes, model="N")
        cox1 = sample_distances(genotypes, model="N", loci=['cox1'])
        its = sample_distances(genotypes, model="N", loci=['its'])

        assert pooled.shape == (24, 24)
        assert np.allclose(pooled.values, cox1.values + its.values)
        assert pooled.loc['A_1', 'C_1'] == 3 + 2

    def test_sample_distances_unknown_locus(self, three_populations):
        genotypes, _ = three_populations
        with pytest.raises(SchemaError):
            sample_distances(genotypes, loci=['nad5'])


class TestOrdination:
    """Tests for ordination of distance matrices."""

    def test_pcoa_separates_groups(self, fixed_difference):
        genotypes, _ = fixed_difference
        coords = ordinate_distances(sample_distances(genotypes), method="pcoa")

        assert list(coords.columns) == ['Axis1', 'Axis2']
        a = coords.loc[[s for s in coords.index if s.startswith('A_')], 'Axis1']
        b = coords.loc[[s for s in coords.index if s.startswith('B_')], 'Axis1']
        assert np.allclose(a, a.iloc[0])
        assert np.sign(a.iloc[0]) != np.sign(b.iloc[0])

    def test_nmds(self, three_populations):
        genotypes, _ = three_populations
        coords = ordinate_distances(sample_distances(genotypes), method="nmds")

        assert list(coords.columns) == ['Axis1', 'Axis2', 'stress']
        assert len(coords) == 24
        assert np.isfinite(coords['stress'].iloc[0])

    def test_unknown_method(self, fixed_difference):
        genotypes, _ = fixed_difference
        with pytest.raises(ValueError):
            ordinate_distances(sample_distances(genotypes), method="tsne")
