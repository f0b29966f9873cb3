"""
Tests for popdiff.popdiff_main - command-line pipeline.
"""

import os
import pandas as pd
import pytest

from popdiff.popdiff_main import main, run_analysis, parse_args
from popdiff.popdiff_amova import AMONG_POPS


def write_fasta(path, records):
    with open(path, "w") as fh:
        for name, seq in records.items():
            fh.write(f">{name}\n{seq}\n")
    return str(path)


def write_strata(path, rows, region=False):
    header = "sample\tpopulation" + ("\tregion" if region else "")
    with open(path, "w") as fh:
        fh.write(header + "\n")
        for row in rows:
            fh.write("\t".join(row) + "\n")
    return str(path)


@pytest.fixture
def identical_files(tmp_path):
    """Two populations of ten identical sequences."""
    records = {f"{pop}{i}": "ACGTACGTACGT" for pop in "AB" for i in range(10)}
    fasta = write_fasta(tmp_path / "cox1.fasta", records)
    strata = write_strata(tmp_path / "strata.tsv", [(s, s[0]) for s in records])
    return fasta, strata


@pytest.fixture
def differentiated_files(tmp_path):
    """Two loci, three populations with distinct haplotype frequencies."""
    pops = {'A': ['ACGTAC'] * 6 + ['ACGTTC'] * 2,
            'B': ['ACGTTC'] * 5 + ['TCGTTC'] * 3,
            'C': ['TCGTTC'] * 7 + ['ACGTAC'] * 1}
    its = {'A': ['GGCC'] * 8, 'B': ['GGCC'] * 4 + ['GGCA'] * 4, 'C': ['GGCA'] * 8}
    cox1_records, its_records, rows = {}, {}, []
    for pop, seqs in pops.items():
        for i, seq in enumerate(seqs):
            sample = f"{pop}_{i}"
            cox1_records[sample] = seq
            its_records[sample] = its[pop][i]
            rows.append((sample, pop, 'west' if pop == 'A' else 'east'))
    cox1 = write_fasta(tmp_path / "cox1.fas", cox1_records)
    its_file = write_fasta(tmp_path / "its.fas", its_records)
    strata = write_strata(tmp_path / "strata.tsv", rows, region=True)
    return [cox1, its_file], strata


class TestArguments:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = parse_args(['-f', 'a.fasta', '-s', 'strata.tsv', '-o', 'out'])
        assert args.model == 'N'
        assert args.permutations == 100
        assert args.bootstrap == 100
        assert args.ci == [2.5, 97.5]
        assert not args.linearized

    def test_invalid_model(self):
        with pytest.raises(SystemExit):
            parse_args(['-f', 'a.fasta', '-s', 's.tsv', '-o', 'out', '--model', 'F84'])


class TestPipeline:
    """End-to-end runs of the batch pipeline."""

    def test_identical_populations(self, identical_files, tmp_path):
        fasta, strata = identical_files
        results = run_analysis([fasta], strata, str(tmp_path / "out"),
                               nperm=99, nreps=20, seed=1, plot=False)

        glob = results['diff_stats']['global']
        assert glob['Gst'] == 0
        assert glob['Gprime_st'] == 0
        assert glob['D_het'] == 0

        amova_result = results['amova']
        assert amova_result['table'].loc[AMONG_POPS, 'sigma'] == pytest.approx(0.0)
        assert amova_result['pvalues'][AMONG_POPS] > 0.05

    def test_output_files(self, differentiated_files, tmp_path):
        fasta_files, strata = differentiated_files
        out = tmp_path / "out"
        code = main(['-f', *fasta_files, '-s', strata, '-o', str(out),
                     '--permutations', '19', '--bootstrap', '10', '--seed', '5',
                     '--no_plot'])
        assert code == 0

        base = out / "PopDiff"
        expected = [
            "00.Log_and_Parameters/run_settings.tsv",
            "01.Differentiation/genotype_summary.tsv",
            "01.Differentiation/diff_stats_per_locus.tsv",
            "01.Differentiation/diff_stats_global.tsv",
            "01.Differentiation/pairwise_Gst.tsv",
            "01.Differentiation/pairwise_Gprime_st.tsv",
            "01.Differentiation/pairwise_D.tsv",
            "01.Differentiation/pairwise_PhiST.tsv",
            "02.AMOVA/amova_table.tsv",
            "02.AMOVA/amova_phi.tsv",
            "03.Bootstrap/bootstrap_replicates.tsv",
            "03.Bootstrap/bootstrap_summary.tsv",
        ]
        for name in expected:
            assert os.path.exists(base / name), name

        per_locus = pd.read_csv(base / "01.Differentiation/diff_stats_per_locus.tsv",
                                sep='\t', index_col=0)
        assert list(per_locus.index) == ['cox1', 'its']

        # region column present, so AMOVA is hierarchical by default
        table = pd.read_csv(base / "02.AMOVA/amova_table.tsv", sep='\t', index_col=0)
        assert 'Among regions' in table.index
        assert 'pvalue' in table.columns

        replicates = pd.read_csv(base / "03.Bootstrap/bootstrap_replicates.tsv", sep='\t')
        assert len(replicates) == 10

    def test_pairwise_matrix_written_symmetric(self, differentiated_files, tmp_path):
        fasta_files, strata = differentiated_files
        results = run_analysis(fasta_files, strata, str(tmp_path / "out"), nperm=0,
                               nreps=0, hierarchy="~population", plot=False)
        matrix = results['pairwise']['Gst']
        assert matrix.loc['A', 'C'] == matrix.loc['C', 'A']
        assert 'bootstrap_summary' not in results

    def test_saturated_model_still_reports(self, tmp_path):
        cox1, its, rows = {}, {}, []
        for pop, cox_seq, its_seqs in (('A', 'AAAA', ['GGCC'] * 4 + ['GGCA'] * 2),
                                       ('B', 'CCCC', ['GGCA'] * 4 + ['GGCC'] * 2)):
            for i, its_seq in enumerate(its_seqs):
                sample = f"{pop}_{i}"
                cox1[sample] = cox_seq
                its[sample] = its_seq
                rows.append((sample, pop))
        fasta_files = [write_fasta(tmp_path / "cox1.fasta", cox1),
                       write_fasta(tmp_path / "its.fasta", its)]
        strata = write_strata(tmp_path / "strata.tsv", rows)
        out = tmp_path / "out"

        code = main(['-f', *fasta_files, '-s', strata, '-o', str(out), '--model', 'JC69',
                     '--permutations', '9', '--bootstrap', '5', '--seed', '3', '--no_plot'])
        assert code == 0

        per_locus = pd.read_csv(out / "PopDiff" / "01.Differentiation" / "diff_stats_per_locus.tsv",
                                sep='\t', index_col=0)
        assert per_locus.loc['cox1', 'Gst'] > 0
        assert pd.isna(per_locus.loc['cox1', 'PhiST'])
        assert per_locus.loc['its', 'PhiST'] > 0

    def test_figures(self, differentiated_files, tmp_path):
        pytest.importorskip("matplotlib")
        fasta_files, strata = differentiated_files
        out = tmp_path / "out"
        run_analysis(fasta_files, strata, str(out), nperm=9, nreps=5, seed=2, plot=True)
        assert os.path.exists(out / "PopDiff" / "04.Visualizations" / "pairwise_Gst_heatmap.pdf")

    def test_schema_error_exit_code(self, tmp_path):
        fasta = write_fasta(tmp_path / "cox1.fasta", {'s1': 'ACGT', 's2': 'ACG'})
        strata = write_strata(tmp_path / "strata.tsv", [('s1', 'A'), ('s2', 'B')])
        code = main(['-f', fasta, '-s', strata, '-o', str(tmp_path / "out"), '--no_plot'])
        assert code == 1
