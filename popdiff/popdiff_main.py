"""
PopDiff Main Module

Command-line batch pipeline: load aligned FASTA files and strata, compute
differentiation statistics, pairwise matrices, AMOVA and a Chao bootstrap,
and write the results as TSV files.
"""

import os
import sys
import argparse
import pandas as pd
from typing import Dict, List

from .popdiff_errors import PopDiffError
from .popdiff_loader import load_genotypes, summarise_genotypes
from .popdiff_distance import DISTANCE_MODELS, sample_distances
from .popdiff_differentiation import diff_stats, PAIRWISE_FUNCTIONS
from .popdiff_amova import amova
from .popdiff_bootstrap import chao_bootstrap, summarise_bootstrap


def main_dir_prep(output_dir: str) -> Dict[str, str]:
    """
    Create the output directory tree.

    Args:
        output_dir: Base output directory

    Returns:
        Dictionary mapping step name to directory
    """
    base_path = os.path.join(os.path.normpath(output_dir), "PopDiff")
    dirs = {
        'log': os.path.join(base_path, "00.Log_and_Parameters"),
        'diff': os.path.join(base_path, "01.Differentiation"),
        'amova': os.path.join(base_path, "02.AMOVA"),
        'bootstrap': os.path.join(base_path, "03.Bootstrap"),
        'viz': os.path.join(base_path, "04.Visualizations"),
    }
    for path in dirs.values():
        os.makedirs(path, exist_ok=True)
    return dirs


def write_run_settings(path: str, settings: Dict) -> None:
    """Write the run_settings.tsv parameter log."""
    with open(path, "w") as param:
        print("parameter", "setting", sep="\t", file=param)
        for key, value in settings.items():
            if isinstance(value, (list, tuple)):
                value = ",".join(str(v) for v in value)
            print(key, value, sep="\t", file=param)


def run_analysis(fasta_files: List[str], strata_file: str, output_dir: str,
                 locus_names: List[str] = None, model: str = "N",
                 hierarchy: str = None, nperm: int = 100, nreps: int = 100,
                 ci: tuple = (2.5, 97.5), linearized: bool = False,
                 seed: int = None, threads: int = 1, plot: bool = True) -> Dict:
    """
    Run the complete differentiation analysis.

    Args:
        fasta_files: One aligned FASTA file per locus
        strata_file: Population/region assignment table
        output_dir: Base output directory
        locus_names: Optional locus names (default: FASTA file names)
        model: Distance model for PhiST and AMOVA
        hierarchy: AMOVA grouping formula (default: region/population when
            a region column is present, otherwise population)
        nperm: AMOVA permutations (0 to skip testing)
        nreps: Bootstrap replicates (0 to skip)
        ci: Bootstrap percentile interval
        linearized: Report pairwise matrices as 1 / (1 - x)
        seed: Random seed
        threads: Number of worker processes
        plot: Generate PDF figures

    Returns:
        Dictionary with all results
    """
    dirs = main_dir_prep(output_dir)
    write_run_settings(os.path.join(dirs['log'], "run_settings.tsv"), {
        'FASTA files': fasta_files,
        'Strata file': strata_file,
        'Locus names': locus_names or '',
        'Distance model': model,
        'Hierarchy': hierarchy or '',
        'Permutations': nperm,
        'Bootstrap replicates': nreps,
        'Confidence interval': ci,
        'Linearized': linearized,
        'Seed': '' if seed is None else seed,
        'Threads': threads,
    })

    results = {}

    genotypes, strata = load_genotypes(fasta_files, strata_file, locus_names)
    print(f"Loaded {len(genotypes)} samples, {genotypes.shape[1]} loci, "
          f"{strata['population'].nunique()} populations")
    results['genotypes'] = genotypes
    results['strata'] = strata

    summary = summarise_genotypes(genotypes, strata)
    summary.to_csv(os.path.join(dirs['diff'], "genotype_summary.tsv"), sep='\t', index=False)
    results['genotype_summary'] = summary

    # Differentiation statistics
    print("Calculating differentiation statistics...")
    stats = diff_stats(genotypes, strata, phi_model=model)
    stats['per_locus'].to_csv(os.path.join(dirs['diff'], "diff_stats_per_locus.tsv"), sep='\t')
    stats['global'].rename('value').to_csv(
        os.path.join(dirs['diff'], "diff_stats_global.tsv"), sep='\t', index_label='statistic'
    )
    results['diff_stats'] = stats

    print("Calculating pairwise statistics...")
    pairwise = {}
    for stat, func in PAIRWISE_FUNCTIONS.items():
        if stat == 'PhiST':
            matrix = func(genotypes, strata, model=model, linearized=linearized)
        else:
            matrix = func(genotypes, strata, linearized=linearized)
        matrix.to_csv(os.path.join(dirs['diff'], f"pairwise_{stat}.tsv"), sep='\t')
        pairwise[stat] = matrix
    results['pairwise'] = pairwise

    # AMOVA
    if hierarchy is None:
        hierarchy = "~region/population" if 'region' in strata.columns else "~population"
    print(f"Running AMOVA ({hierarchy}, {nperm} permutations)...")
    distances = sample_distances(genotypes, model=model)
    results['distances'] = distances
    try:
        amova_result = amova(distances, strata, hierarchy, nperm=nperm, seed=seed, threads=threads)
    except PopDiffError as e:
        print(f"Warning: AMOVA failed: {e}")
    else:
        table = amova_result['table'].copy()
        table['pvalue'] = amova_result['pvalues'].reindex(table.index)
        table.to_csv(os.path.join(dirs['amova'], "amova_table.tsv"), sep='\t', index_label='source')
        amova_result['phi'].rename('value').to_csv(
            os.path.join(dirs['amova'], "amova_phi.tsv"), sep='\t', index_label='statistic'
        )
        results['amova'] = amova_result

    # Bootstrap
    if nreps > 0:
        print(f"Running Chao bootstrap ({nreps} replicates)...")
        replicates = chao_bootstrap(genotypes, strata, nreps=nreps, seed=seed, threads=threads)
        boot_summary = summarise_bootstrap(replicates, ci=ci, observed=stats['global'])
        replicates.to_csv(os.path.join(dirs['bootstrap'], "bootstrap_replicates.tsv"), sep='\t')
        boot_summary.to_csv(os.path.join(dirs['bootstrap'], "bootstrap_summary.tsv"), sep='\t')
        results['bootstrap_replicates'] = replicates
        results['bootstrap_summary'] = boot_summary

    if plot:
        from .popdiff_visualizations import run_all_visualizations
        run_all_visualizations(results, dirs['viz'])

    print("PopDiff analysis complete.")
    return results


def parse_args(argv: List[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="popdiff",
        description="Population differentiation statistics (Gst, G'st, Jost's D, PhiST), "
                    "AMOVA and Chao bootstrap for aligned sequence data."
    )
    parser.add_argument('-f', '--fasta', nargs='+', required=True,
                        help='Aligned multi-FASTA files, one per locus.')
    parser.add_argument('-s', '--strata', required=True,
                        help='Tab or comma delimited file: sample id, population[, region].')
    parser.add_argument('-o', '--output', required=True, help='Output directory.')
    parser.add_argument('--loci', nargs='+', default=None,
                        help='Locus names, one per FASTA file (default: file names).')
    parser.add_argument('--model', choices=DISTANCE_MODELS, default='N',
                        help='Distance model for PhiST and AMOVA (default: N).')
    parser.add_argument('--hierarchy', default=None,
                        help='AMOVA grouping formula, e.g. "~region/population".')
    parser.add_argument('--permutations', type=int, default=100,
                        help='AMOVA permutations (default: 100).')
    parser.add_argument('--bootstrap', type=int, default=100,
                        help='Chao bootstrap replicates, 0 to skip (default: 100).')
    parser.add_argument('--ci', type=float, nargs=2, default=[2.5, 97.5],
                        metavar=('LOWER', 'UPPER'),
                        help='Bootstrap percentile interval (default: 2.5 97.5).')
    parser.add_argument('--linearized', action='store_true',
                        help='Report pairwise matrices as 1 / (1 - x).')
    parser.add_argument('--seed', type=int, default=None, help='Random seed.')
    parser.add_argument('--threads', type=int, default=1, help='Worker processes (default: 1).')
    parser.add_argument('--no_plot', action='store_true', help='Skip PDF figures.')
    return parser.parse_args(argv)


def main(argv: List[str] = None) -> int:
    args = parse_args(argv)

    try:
        run_analysis(
            args.fasta, args.strata, args.output,
            locus_names=args.loci, model=args.model, hierarchy=args.hierarchy,
            nperm=args.permutations, nreps=args.bootstrap, ci=tuple(args.ci),
            linearized=args.linearized, seed=args.seed, threads=args.threads,
            plot=not args.no_plot
        )
    except PopDiffError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
