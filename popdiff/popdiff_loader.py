"""
PopDiff Loader Module

Reads aligned multi-FASTA files (one per locus) and a population/region
assignment table into a genotype table indexed by sample and locus.
"""

import os
import re
import numpy as np
import pandas as pd
import pysam
from typing import Dict, List, Optional, Sequence, Tuple

from .popdiff_errors import SchemaError, InsufficientDataError
from .popdiff_diversity_utils import gene_diversity


# Characters that separate locus and allele names in derived labels
LOCUS_DELIMITERS = re.compile(r"[.:/\s]")

NUCLEOTIDES = frozenset("ACGT")


# =============================================================================
# File Readers
# =============================================================================

def read_fasta_alignment(fasta_file: str) -> Dict[str, str]:
    """
    Read an aligned multi-FASTA file.

    Args:
        fasta_file: Path to FASTA file, one record per sample

    Returns:
        Dictionary mapping sample identifiers to upper-case sequences
    """
    sequences = {}
    with pysam.FastxFile(fasta_file) as fh:
        for entry in fh:
            if entry.name in sequences:
                raise SchemaError(f"Duplicate sample '{entry.name}' in {fasta_file}")
            sequences[entry.name] = (entry.sequence or "").upper()

    if len(sequences) == 0:
        raise SchemaError(f"No sequences found in {fasta_file}")

    lengths = {len(seq) for seq in sequences.values()}
    if len(lengths) > 1:
        raise SchemaError(
            f"Sequences in {fasta_file} are not aligned "
            f"(lengths {sorted(lengths)})"
        )

    return sequences


def _find_column(columns: Sequence[str], target: str) -> Optional[str]:
    """Case-insensitive column lookup."""
    lowmap = {str(c).lower().strip(): c for c in columns}
    return lowmap.get(target)


def read_strata_file(strata_file: str) -> pd.DataFrame:
    """
    Read a population/region assignment table.

    The first column holds sample identifiers. A 'population' column is
    required and a 'region' column is optional (names matched
    case-insensitively). The delimiter is detected automatically.

    Args:
        strata_file: Path to TSV/CSV file

    Returns:
        DataFrame indexed by sample with 'population' and optional 'region'
    """
    raw = pd.read_csv(strata_file, sep=None, engine='python', dtype=str)

    if raw.shape[1] < 2:
        raise SchemaError("Strata file must have a sample column and a population column")

    pop_col = _find_column(raw.columns[1:], 'population')
    if pop_col is None:
        raise SchemaError(f"No 'population' column in {strata_file}; found {list(raw.columns)}")
    region_col = _find_column(raw.columns[1:], 'region')

    strata = pd.DataFrame({'population': raw[pop_col].values}, index=raw.iloc[:, 0].str.strip())
    if region_col is not None:
        strata['region'] = raw[region_col].values
    strata.index.name = 'sample'

    return validate_strata(strata)


def validate_strata(strata: pd.DataFrame) -> pd.DataFrame:
    """
    Check a strata table for missing labels and broken nesting.

    Args:
        strata: DataFrame indexed by sample with 'population' (and 'region')

    Returns:
        Cleaned copy of the strata table
    """
    if 'population' not in strata.columns:
        raise SchemaError("Strata table has no 'population' column")
    if strata.index.duplicated().any():
        dups = strata.index[strata.index.duplicated()].unique().tolist()
        raise SchemaError(f"Samples listed more than once in strata: {dups}")

    strata = strata.copy()
    for col in [c for c in ('population', 'region') if c in strata.columns]:
        strata[col] = strata[col].astype('string').str.strip()
        missing = strata.index[strata[col].isna() | (strata[col] == '')].tolist()
        if missing:
            raise SchemaError(f"Samples without a {col} label: {missing}")
        strata[col] = strata[col].astype(str)

    if 'region' in strata.columns:
        regions_per_pop = strata.groupby('population')['region'].nunique()
        split = regions_per_pop[regions_per_pop > 1].index.tolist()
        if split:
            raise SchemaError(f"Populations assigned to more than one region: {split}")

    return strata


# =============================================================================
# Genotype Table
# =============================================================================

def validate_locus_name(name: str) -> str:
    """
    Ensure a locus name is usable as a label.

    Args:
        name: Locus name

    Returns:
        The name unchanged
    """
    if not name or LOCUS_DELIMITERS.search(name):
        raise SchemaError(
            f"Invalid locus name '{name}': must be non-empty and free of '.', ':', '/' and whitespace"
        )
    return name


def locus_name_from_path(fasta_file: str) -> str:
    """Derive a locus name from a FASTA file name (without extensions)."""
    name = os.path.basename(fasta_file)
    for ext in ('.gz', '.fasta', '.fas', '.fa', '.fna', '.aln'):
        if name.endswith(ext):
            name = name[:-len(ext)]
    return name


def build_genotype_table(alignments: Dict[str, Dict[str, str]],
                         strata: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Combine per-locus alignments and strata into a genotype table.

    Args:
        alignments: Dictionary mapping locus name to {sample: sequence}
        strata: Strata table indexed by sample

    Returns:
        Tuple of (genotypes, strata) where genotypes is indexed by sample
        with one column per locus, and strata is restricted to the same samples
    """
    if len(alignments) == 0:
        raise SchemaError("No loci supplied")

    for locus in alignments:
        validate_locus_name(locus)

    samples = []
    for seqs in alignments.values():
        for sample in seqs:
            if sample not in samples:
                samples.append(sample)

    for locus, seqs in alignments.items():
        missing = [s for s in samples if s not in seqs]
        if missing:
            raise SchemaError(f"Samples missing a sequence for locus '{locus}': {missing}")

    strata = validate_strata(strata)
    unlabelled = [s for s in samples if s not in strata.index]
    if unlabelled:
        raise SchemaError(f"Samples without a population label: {unlabelled}")

    extra = [s for s in strata.index if s not in samples]
    if extra:
        print(f"Warning: {len(extra)} samples in strata have no sequences and were dropped.")

    genotypes = pd.DataFrame(
        {locus: [seqs[s] for s in samples] for locus, seqs in alignments.items()},
        index=pd.Index(samples, name='sample')
    )

    return genotypes, strata.loc[samples].copy()


def load_genotypes(fasta_files: List[str], strata_file: str,
                   locus_names: List[str] = None) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Load aligned FASTA files and a strata table.

    Args:
        fasta_files: One aligned FASTA file per locus
        strata_file: Population/region assignment table
        locus_names: Optional names for the loci (default: file names)

    Returns:
        Tuple of (genotypes, strata)
    """
    if locus_names is None:
        locus_names = [locus_name_from_path(f) for f in fasta_files]
    if len(locus_names) != len(fasta_files):
        raise SchemaError("Number of locus names does not match number of FASTA files")
    if len(set(locus_names)) != len(locus_names):
        raise SchemaError(f"Locus names must be unique: {locus_names}")

    alignments = {}
    for name, fasta_file in zip(locus_names, fasta_files):
        alignments[name] = read_fasta_alignment(fasta_file)

    strata = read_strata_file(strata_file)
    return build_genotype_table(alignments, strata)


# =============================================================================
# Haplotype Frequency Tables
# =============================================================================

def population_order(strata: pd.DataFrame) -> List[str]:
    """Population labels in order of first appearance."""
    return list(pd.unique(strata['population']))


def check_population_labels(genotypes: pd.DataFrame, strata: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure every genotyped sample has a population label.

    Args:
        genotypes: Genotype table
        strata: Strata table

    Returns:
        Validated copy of the strata table
    """
    strata = validate_strata(strata)
    unlabelled = [s for s in genotypes.index if s not in strata.index]
    if unlabelled:
        raise SchemaError(f"Samples without a population label: {unlabelled}")
    return strata


def haplotype_counts(genotypes: pd.DataFrame, strata: pd.DataFrame, locus: str,
                     populations: List[str] = None) -> pd.DataFrame:
    """
    Count haplotypes per population at one locus.

    Args:
        genotypes: Genotype table
        strata: Strata table
        locus: Locus (column) name
        populations: Populations to include (default: all, in strata order)

    Returns:
        DataFrame with populations as rows and distinct haplotypes as columns
    """
    if locus not in genotypes.columns:
        raise SchemaError(f"Unknown locus '{locus}'")

    strata = check_population_labels(genotypes, strata)
    if populations is None:
        populations = population_order(strata)

    unknown = [p for p in populations if p not in set(strata['population'])]
    if unknown:
        raise InsufficientDataError(f"Populations with no samples: {unknown}")

    labels = strata.loc[genotypes.index, 'population']
    mask = labels.isin(populations)
    table = pd.crosstab(labels[mask], genotypes.loc[mask, locus])
    table = table.reindex(index=populations, fill_value=0)
    table.index.name = 'population'
    table.columns.name = 'haplotype'
    return table


def segregating_sites(sequences: Sequence[str]) -> int:
    """Number of alignment columns with more than one nucleotide (gaps/ambiguities ignored)."""
    if len(sequences) == 0:
        return 0
    arr = np.array([list(s) for s in sequences])
    count = 0
    for column in arr.T:
        if len(set(column) & NUCLEOTIDES) > 1:
            count += 1
    return count


def summarise_genotypes(genotypes: pd.DataFrame, strata: pd.DataFrame) -> pd.DataFrame:
    """
    Summarise sample sizes and haplotype diversity per locus and population.

    Args:
        genotypes: Genotype table
        strata: Strata table

    Returns:
        DataFrame with locus, population, n, haplotypes, segregating_sites,
        haplotype_diversity
    """
    results = []
    for locus in genotypes.columns:
        for pop in population_order(strata):
            seqs = genotypes.loc[strata['population'] == pop, locus].tolist()
            results.append({
                'locus': locus,
                'population': pop,
                'n': len(seqs),
                'haplotypes': len(set(seqs)),
                'segregating_sites': segregating_sites(seqs),
                'haplotype_diversity': gene_diversity(pd.Series(seqs).value_counts().values)
            })
        seqs = genotypes[locus].tolist()
        results.append({
            'locus': locus,
            'population': 'Total',
            'n': len(seqs),
            'haplotypes': len(set(seqs)),
            'segregating_sites': segregating_sites(seqs),
            'haplotype_diversity': gene_diversity(pd.Series(seqs).value_counts().values)
        })
    return pd.DataFrame(results)
