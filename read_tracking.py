#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Track reads through the DADA2 amplicon runner.

Overview
--------
Joins the per-sample read counts of every checkpoint into one table:

    input       reads entering the quality filter
    filtered    reads passing the quality filter
    denoisedF   reads assigned to forward variants
    denoisedR   reads assigned to reverse variants
    merged      reads in merged forward/reverse pairs
    nonchim     reads left after chimera removal

Counts shrink left to right, except that the denoised columns are not directly
comparable with ``filtered``. A sample missing from any stage means the
checkpoints come from different runs or were corrupted; that is fatal.

Usage
-----
python read_tracking.py \
    --out_dir results/MiSeq_SOP \
    --out_csv results/MiSeq_SOP/track_reads.csv
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd


REPORT_COLUMNS: List[str] = ["input", "filtered", "denoisedF", "denoisedR", "merged", "nonchim"]


class TrackingMismatchError(ValueError):
    """Raised when stages disagree on which samples exist."""


def setup_logging(*, verbose: bool) -> logging.Logger:
    """
    Configure logging for console output.

    Parameters
    ----------
    verbose : bool
        If True, sets level to DEBUG; otherwise INFO.

    Returns
    -------
    logging.Logger
        Configured logger instance.
    """
    logger = logging.getLogger("read_tracking")
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    h = logging.StreamHandler()
    h.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    h.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(h)
    return logger


def build_read_tracking_report(
    *,
    filter_stats: pd.DataFrame,
    denoised_f: pd.Series,
    denoised_r: pd.Series,
    merged: pd.Series,
    nonchim: pd.Series,
) -> pd.DataFrame:
    """
    Aggregate per-stage counts into the read-tracking report.

    Parameters
    ----------
    filter_stats : pandas.DataFrame
        Indexed by sample ID with ``reads_in`` and ``reads_out``.
    denoised_f, denoised_r : pandas.Series
        Denoised reads per sample, forward and reverse.
    merged : pandas.Series
        Merged reads per sample.
    nonchim : pandas.Series
        Row sums of the chimera-free abundance matrix.

    Returns
    -------
    pandas.DataFrame
        One row per sample (filter order), columns :data:`REPORT_COLUMNS`.

    Raises
    ------
    TrackingMismatchError
        If the sample sets of the inputs are not identical.
    """
    stages: Dict[str, pd.Series] = {
        "input": filter_stats["reads_in"],
        "filtered": filter_stats["reads_out"],
        "denoisedF": denoised_f,
        "denoisedR": denoised_r,
        "merged": merged,
        "nonchim": nonchim,
    }
    expected = {str(s) for s in filter_stats.index}
    problems: List[str] = []
    for name, series in stages.items():
        ids = [str(s) for s in series.index]
        if len(ids) != len(set(ids)):
            problems.append(f"{name}: duplicate sample IDs")
            continue
        got = set(ids)
        if got != expected:
            missing = sorted(expected - got)
            extra = sorted(got - expected)
            parts = [name + ":"]
            if missing:
                parts.append("missing " + ", ".join(missing))
            if extra:
                parts.append("unexpected " + ", ".join(extra))
            problems.append(" ".join(parts))
    if problems:
        raise TrackingMismatchError(
            "Sample IDs differ between stages (mixed or corrupted checkpoints):\n  - "
            + "\n  - ".join(problems)
        )

    order = [str(s) for s in filter_stats.index]
    report = pd.DataFrame(
        {
            name: pd.Series(series.to_numpy(), index=[str(s) for s in series.index]).reindex(order)
            for name, series in stages.items()
        },
        columns=REPORT_COLUMNS,
    ).astype("int64")
    report.index.name = "sample_id"
    return report


def write_report_csv(*, report: pd.DataFrame, out_csv: Path) -> Path:
    """Write the report as CSV: ``sample_id`` then the six count columns."""
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    report[REPORT_COLUMNS].to_csv(out_csv, index=True, index_label="sample_id")
    return out_csv


def main(argv: Optional[List[str]] = None) -> None:
    """
    Command-line entrypoint. Rebuilds the read-tracking CSV from the
    checkpoints of a previous run.
    """
    ap = argparse.ArgumentParser(
        description="Rebuild the DADA2 read-tracking report from run checkpoints.",
        allow_abbrev=False,
    )
    ap.add_argument("--out_dir", required=True, type=Path,
                    help="Output directory of the runner (holds checkpoints/).")
    ap.add_argument("--out_csv", default=None, type=Path,
                    help="Report path (default: <out_dir>/track_reads.csv).")
    ap.add_argument("--verbose", action="store_true", help="Enable verbose debugging logs.")
    args = ap.parse_args(argv)

    logger = setup_logging(verbose=args.verbose)
    # local import: the runner imports this module
    from dada2_amplicon_runner import CheckpointError, CheckpointStore, Paths, tracking_inputs_from_store

    paths = Paths(args.out_dir)
    out_csv = args.out_csv or paths.report_csv
    try:
        store = CheckpointStore(paths.checkpoints, logger=logger)
        report = build_read_tracking_report(**tracking_inputs_from_store(store=store))
    except (CheckpointError, TrackingMismatchError) as exc:
        logger.error("%s", exc)
        sys.exit(2)

    write_report_csv(report=report, out_csv=out_csv)
    logger.info("Wrote %d rows to %s", len(report), out_csv)


if __name__ == "__main__":
    main()
