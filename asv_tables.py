#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
ASV table helpers shared by the DADA2 runner and the read tracker.

Overview
--------
Everything here is plain pandas bookkeeping around tables produced by the
sequence-analysis backend:

- reading and writing sample x sequence matrices as TSV,
- applying the merge overlap policy and pivoting merged pairs into the
  abundance matrix,
- the maximum-length policy (reject, never truncate),
- chimera-removal diagnostics,
- confidence masking of taxonomy calls,
- phyloseq-ready exports (ASV FASTA, counts and taxonomy TSVs).

Notes
-----
- Abundance matrices are indexed by ``sample_id`` (processing order) and use
  the exact nucleotide sequence as column label.
- All tables are tab-separated except the read-tracking CSV.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pandas as pd


# DADA2 default level names
RANKS: Tuple[str, ...] = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species")

MERGED_COLUMNS = ["sample_id", "sequence", "abundance", "nmatch", "nmismatch", "nindel"]


# ----------------------------- TSV I/O ----------------------------- #

def write_wide_table(*, table: pd.DataFrame, path: Path) -> Path:
    """Write a sample x sequence count matrix as TSV with a ``sample_id`` column."""
    path.parent.mkdir(parents=True, exist_ok=True)
    out = table.copy()
    out.index.name = "sample_id"
    out.to_csv(path, sep="\t")
    return path


def read_wide_table(*, path: Path) -> pd.DataFrame:
    """
    Read a sample x sequence count matrix written by :func:`write_wide_table`.

    Parameters
    ----------
    path : pathlib.Path
        TSV whose first column holds sample IDs.

    Returns
    -------
    pandas.DataFrame
        Integer counts indexed by ``sample_id`` (as str).
    """
    df = pd.read_csv(path, sep="\t", index_col="sample_id", dtype={"sample_id": str})
    df.index = df.index.astype(str)
    df.index.name = "sample_id"
    df.columns = [str(c) for c in df.columns]
    return df.fillna(0).astype("int64")


def read_merged_pairs(*, path: Path) -> pd.DataFrame:
    """Read a long merged-pairs TSV; an empty file yields an empty frame."""
    df = pd.read_csv(path, sep="\t", dtype={"sample_id": str, "sequence": str})
    for col in MERGED_COLUMNS:
        if col not in df.columns:
            raise ValueError(f"Merged pairs table {path} lacks column '{col}'")
    for col in ("abundance", "nmatch", "nmismatch", "nindel"):
        df[col] = df[col].astype("int64")
    return df[MERGED_COLUMNS]


# ----------------------------- merge policy ----------------------------- #

def apply_overlap_policy(
    *, pairs: pd.DataFrame, min_overlap: int, max_mismatch: int
) -> Tuple[pd.DataFrame, int]:
    """Keep merged pairs whose overlap satisfies the merge settings.

    The overlap length is ``nmatch + nmismatch + nindel``.

    Args:
        pairs: Long merged-pairs table.
        min_overlap: Minimum overlap length.
        max_mismatch: Maximum mismatches (indels included) in the overlap.

    Returns:
        ``(kept, n_rejected)``.
    """
    overlap = pairs["nmatch"] + pairs["nmismatch"] + pairs["nindel"]
    ok = (overlap >= min_overlap) & ((pairs["nmismatch"] + pairs["nindel"]) <= max_mismatch)
    return pairs.loc[ok].reset_index(drop=True), int((~ok).sum())


def build_abundance_matrix(*, pairs: pd.DataFrame, sample_ids: Sequence[str]) -> pd.DataFrame:
    """
    Pivot merged pairs into a samples x sequence-variants matrix.

    Identical sequences across samples share a column. Samples with no merged
    pairs are kept as all-zero rows, and rows follow ``sample_ids``. Columns are
    ordered by decreasing total abundance (ties by sequence).

    Parameters
    ----------
    pairs : pandas.DataFrame
        Long table with at least ``sample_id``, ``sequence``, ``abundance``.
    sample_ids : sequence of str
        Processing order of samples.

    Returns
    -------
    pandas.DataFrame
        Non-negative int64 counts.
    """
    if pairs.empty:
        matrix = pd.DataFrame(index=pd.Index(list(sample_ids), name="sample_id"), dtype="int64")
        return matrix

    matrix = pairs.pivot_table(
        index="sample_id",
        columns="sequence",
        values="abundance",
        aggfunc="sum",
        fill_value=0,
    )
    matrix = matrix.reindex(index=list(sample_ids), fill_value=0)
    totals = matrix.sum(axis=0)
    order = sorted(totals.index, key=lambda s: (-int(totals[s]), s))
    matrix = matrix[order].astype("int64")
    matrix.index.name = "sample_id"
    matrix.columns.name = None
    return matrix


def drop_overlong_variants(
    *, matrix: pd.DataFrame, max_length: int
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Remove variants longer than ``max_length`` from the matrix.

    Args:
        matrix: Abundance matrix (columns are sequences).
        max_length: Longest sequence kept, in bases.

    Returns:
        ``(kept_matrix, dropped)`` where ``dropped`` lists
        ``sequence, length, abundance`` of every removed variant.
    """
    lengths = pd.Series({seq: len(seq) for seq in matrix.columns}, dtype="int64")
    too_long = [seq for seq in matrix.columns if lengths[seq] > max_length]
    dropped = pd.DataFrame(
        {
            "sequence": too_long,
            "length": [int(lengths[s]) for s in too_long],
            "abundance": [int(matrix[s].sum()) for s in too_long],
        },
        columns=["sequence", "length", "abundance"],
    )
    return matrix.drop(columns=too_long), dropped


# ----------------------------- chimeras ----------------------------- #

def check_chimera_result(*, before: pd.DataFrame, after: pd.DataFrame) -> None:
    """Validate a chimera-free matrix against its input.

    Raises:
        ValueError: If rows differ, new columns appear, or any row sum grows.
    """
    if list(after.index) != list(before.index):
        raise ValueError("Chimera removal changed the sample rows of the matrix.")
    extra = set(after.columns) - set(before.columns)
    if extra:
        raise ValueError(f"Chimera removal introduced {len(extra)} unseen sequence variants.")
    grown = after.sum(axis=1) > before.sum(axis=1).reindex(after.index)
    if grown.any():
        raise ValueError(
            "Chimera removal increased read counts for: " + ", ".join(grown[grown].index)
        )
    if (after < 0).any().any():
        raise ValueError("Chimera removal produced negative counts.")


def chimera_diagnostics(*, before: pd.DataFrame, after: pd.DataFrame) -> Dict[str, float]:
    """Count removed variants and the abundance-weighted fraction removed."""
    total_before = int(before.to_numpy().sum())
    total_after = int(after.to_numpy().sum())
    removed_fraction = 1.0 - (total_after / total_before) if total_before else 0.0
    return {
        "input_variants": int(before.shape[1]),
        "removed_variants": int(before.shape[1] - after.shape[1]),
        "removed_fraction": removed_fraction,
    }


# ----------------------------- taxonomy ----------------------------- #

def mask_low_confidence(
    *,
    labels: pd.DataFrame,
    confidence: pd.DataFrame,
    max_rank: str,
    min_boot: int,
) -> pd.DataFrame:
    """
    Null out taxonomy ranks the classifier cannot support.

    Ranks deeper than ``max_rank`` are dropped. A rank is left unresolved when
    its bootstrap confidence is below ``min_boot``; every rank below an
    unresolved rank is unresolved too.

    Parameters
    ----------
    labels : pandas.DataFrame
        Index = sequence, columns = ranks (DADA2 level names), values = labels.
    confidence : pandas.DataFrame
        Same shape as ``labels``; bootstrap support per rank (0-100).
    max_rank : str
        Deepest rank to report, e.g. ``"Genus"``.
    min_boot : int
        Minimum bootstrap support for a rank to be kept.

    Returns
    -------
    pandas.DataFrame
        Columns ``RANKS[: index(max_rank) + 1]``; unresolved ranks are null.
    """
    if max_rank not in RANKS:
        raise ValueError(f"Unknown rank '{max_rank}'. Choose from: {', '.join(RANKS)}")
    wanted = list(RANKS[: RANKS.index(max_rank) + 1])

    labels = labels.reindex(columns=wanted)
    confidence = confidence.reindex(index=labels.index, columns=wanted)
    supported = confidence.fillna(0) >= min_boot
    supported &= labels.notna()
    # once a rank fails, everything below it fails
    supported = supported.astype(int).cummin(axis=1).astype(bool)
    masked = labels.astype(object).where(supported)
    masked.index.name = "sequence"
    return masked


# ----------------------------- exports ----------------------------- #

def asv_ids(*, sequences: Sequence[str]) -> List[str]:
    """Return ``ASV1``, ``ASV2``, ... for the given sequences, in order."""
    return [f"ASV{i}" for i in range(1, len(sequences) + 1)]


def write_asv_fasta(*, sequences: Sequence[str], out_path: Path) -> Path:
    """Write sequences to FASTA named by :func:`asv_ids`."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as out:
        for asv, seq in zip(asv_ids(sequences=sequences), sequences):
            out.write(f">{asv}\n{seq}\n")
    return out_path


def write_asv_counts(*, matrix: pd.DataFrame, out_path: Path) -> Path:
    """Write an ASV x sample count TSV (ASV ids as rows, samples as columns)."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    counts = matrix.T.copy()
    counts.index = asv_ids(sequences=list(matrix.columns))
    counts.index.name = "asv_id"
    counts.columns.name = None
    counts.to_csv(out_path, sep="\t")
    return out_path


def write_asv_taxonomy(*, taxonomy: pd.DataFrame, sequences: Sequence[str], out_path: Path) -> Path:
    """Write taxonomy keyed by ASV id, aligned to ``sequences``; unresolved ranks are blank."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tax = taxonomy.reindex(index=list(sequences)).copy()
    tax.insert(0, "sequence", list(sequences))
    tax.index = asv_ids(sequences=list(sequences))
    tax.index.name = "asv_id"
    tax.to_csv(out_path, sep="\t", na_rep="")
    return out_path
