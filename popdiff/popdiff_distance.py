"""
PopDiff Distance Module

Pairwise genetic distances between aligned sequences. Distances are
computed between distinct haplotypes and expanded to samples where needed,
so identical sequences are only compared once.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Union
import warnings

from .popdiff_errors import SchemaError
from .popdiff_diversity_utils import perform_pcoa, perform_nmds


DISTANCE_MODELS = ("N", "raw", "JC69", "K80")

# A, C, G, T -> 0..3; everything else (gaps, ambiguity codes) -> 4
_ENCODING = np.full(256, 4, dtype=np.uint8)
for _i, _base in enumerate("ACGT"):
    _ENCODING[ord(_base)] = _i
    _ENCODING[ord(_base.lower())] = _i

# Purines are A/G (0, 2); pyrimidines are C/T (1, 3)
_IS_PURINE = np.array([True, False, True, False, False])


def encode_sequences(sequences: List[str]) -> np.ndarray:
    """
    Encode aligned sequences as a (n_sequences x n_sites) uint8 array.

    Args:
        sequences: List of equal-length sequences

    Returns:
        Encoded array with 4 marking non-ACGT characters
    """
    lengths = {len(s) for s in sequences}
    if len(lengths) > 1:
        raise SchemaError(f"Sequences are not aligned (lengths {sorted(lengths)})")

    width = lengths.pop() if lengths else 0
    try:
        raw = ''.join(sequences).encode('ascii')
    except UnicodeEncodeError as e:
        raise SchemaError(f"Sequences contain non-ASCII characters: {e.object[e.start:e.end]!r}") from e
    arr = np.frombuffer(raw, dtype=np.uint8)
    return _ENCODING[arr].reshape(len(sequences), width)


def _model_distance(diffs: np.ndarray, transitions: np.ndarray,
                    sites: np.ndarray, model: str) -> np.ndarray:
    """Convert difference counts into distances under a substitution model."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        p = np.where(sites > 0, diffs / np.maximum(sites, 1), np.nan)

        if model == "N":
            return diffs.astype(float)
        if model == "raw":
            return p
        if model == "JC69":
            arg = 1 - 4 * p / 3
            return np.where(arg > 0, -0.75 * np.log(arg), np.nan)
        if model == "K80":
            P = np.where(sites > 0, transitions / np.maximum(sites, 1), np.nan)
            Q = p - P
            a1 = 1 - 2 * P - Q
            a2 = 1 - 2 * Q
            ok = (a1 > 0) & (a2 > 0)
            return np.where(ok, -0.5 * np.log(np.where(ok, a1, 1)) - 0.25 * np.log(np.where(ok, a2, 1)), np.nan)

    raise ValueError(f"Unknown distance model: {model}. Use one of {DISTANCE_MODELS}")


def sequence_distance(seq_a: str, seq_b: str, model: str = "N") -> float:
    """
    Distance between two aligned sequences.

    Sites where either sequence has a gap or ambiguous base are skipped.

    Args:
        seq_a: First sequence
        seq_b: Second sequence
        model: "N", "raw", "JC69" or "K80"

    Returns:
        Distance value (nan if a model distance is saturated)
    """
    dm = distance_matrix([seq_a, seq_b], model=model)
    return float(dm.iloc[0, 1])


def distance_matrix(sequences: Union[Dict[str, str], pd.Series, List[str]],
                    model: str = "N") -> pd.DataFrame:
    """
    Pairwise distance matrix between aligned sequences.

    Args:
        sequences: Sequences keyed by label (dict or Series) or a plain list
        model: "N" (number of differences), "raw" (p-distance), "JC69" or "K80"

    Returns:
        Square symmetric DataFrame with zero diagonal
    """
    if model not in DISTANCE_MODELS:
        raise ValueError(f"Unknown distance model: {model}. Use one of {DISTANCE_MODELS}")

    if isinstance(sequences, dict):
        labels, seqs = list(sequences.keys()), list(sequences.values())
    elif isinstance(sequences, pd.Series):
        labels, seqs = list(sequences.index), list(sequences.values)
    else:
        labels, seqs = list(sequences), list(sequences)

    encoded = encode_sequences(seqs)
    n = len(seqs)
    dist = np.zeros((n, n))

    valid = encoded < 4
    purine = _IS_PURINE[encoded]

    for i in range(n - 1):
        others = encoded[i + 1:]
        both = valid[i] & valid[i + 1:]
        differ = (others != encoded[i]) & both
        # same purine/pyrimidine class but different base
        transition = differ & (purine[i + 1:] == purine[i])

        row = _model_distance(
            differ.sum(axis=1), transition.sum(axis=1), both.sum(axis=1), model
        )
        dist[i, i + 1:] = row
        dist[i + 1:, i] = row

    return pd.DataFrame(dist, index=labels, columns=labels)


def haplotype_distances(genotypes: pd.DataFrame, locus: str, model: str = "N") -> pd.DataFrame:
    """
    Distances between the distinct haplotypes observed at one locus.

    Args:
        genotypes: Genotype table
        locus: Locus (column) name
        model: Distance model

    Returns:
        Square DataFrame labelled by haplotype sequence
    """
    if locus not in genotypes.columns:
        raise SchemaError(f"Unknown locus '{locus}'")
    haplotypes = list(pd.unique(genotypes[locus]))
    return distance_matrix(haplotypes, model=model)


def sample_distances(genotypes: pd.DataFrame, model: str = "N",
                     loci: List[str] = None) -> pd.DataFrame:
    """
    Distances between samples over one or more loci.

    Loci are concatenated in column order, so "N" distances are the sum of
    per-locus differences.

    Args:
        genotypes: Genotype table
        model: Distance model
        loci: Loci to pool (default: all)

    Returns:
        Square DataFrame labelled by sample
    """
    if loci is None:
        loci = list(genotypes.columns)
    unknown = [l for l in loci if l not in genotypes.columns]
    if unknown:
        raise SchemaError(f"Unknown loci: {unknown}")

    pooled = genotypes[loci].agg(''.join, axis=1)
    codes, uniques = pd.factorize(pooled)
    hap_dist = distance_matrix(list(uniques), model=model).values

    return pd.DataFrame(hap_dist[np.ix_(codes, codes)],
                        index=genotypes.index, columns=genotypes.index)


def ordinate_distances(distances: pd.DataFrame, method: str = "pcoa",
                       random_state: int = 42) -> pd.DataFrame:
    """
    Two-dimensional ordination of a distance matrix.

    Args:
        distances: Square distance DataFrame
        method: "pcoa" or "nmds"
        random_state: Random seed for NMDS

    Returns:
        DataFrame with Axis1/Axis2 per label (plus 'stress' for NMDS)
    """
    values = distances.values.astype(float)
    if np.isnan(values).any():
        raise SchemaError("Distance matrix contains undefined (saturated) distances")

    if method == "pcoa":
        coords, _ = perform_pcoa(values)
        coords = np.pad(coords, ((0, 0), (0, max(0, 2 - coords.shape[1]))))[:, :2]
        return pd.DataFrame(coords, index=distances.index, columns=['Axis1', 'Axis2'])
    elif method == "nmds":
        coords, stress = perform_nmds(values, random_state=random_state)
        result = pd.DataFrame(coords, index=distances.index, columns=['Axis1', 'Axis2'])
        result['stress'] = stress
        return result

    raise ValueError(f"Unknown ordination method: {method}. Use 'pcoa' or 'nmds'")
