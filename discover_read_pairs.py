#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Discover paired-end FASTQ files and pair them by sample identifier.

Files are expected to be named ``<SampleID>_1.<ext>`` and ``<SampleID>_2.<ext>``
(the suffixes are configurable). The sample identifier is the filename text
before the first underscore. Forward and reverse lists are sorted so pairing is
deterministic; any mismatch between the two lists is fatal.

Optionally writes a paired manifest TSV with the columns
``sample-id``, ``forward-absolute-filepath`` and ``reverse-absolute-filepath``.
All arguments are named (no positional arguments).
"""

from __future__ import annotations

import argparse
import csv
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List


MANIFEST_HEADER = ["sample-id", "forward-absolute-filepath", "reverse-absolute-filepath"]


class DiscoveryError(Exception):
    """Raised when forward/reverse read files cannot be paired 1:1."""


@dataclass(frozen=True)
class ReadFilePair:
    """Forward and reverse FASTQ files belonging to one sample."""

    sample_id: str
    forward: Path
    reverse: Path


def sample_id_from_name(name: str) -> str:
    """Return the filename text before the first underscore.

    Args:
        name: FASTQ base name, e.g. ``F3D0_1.fastq.gz``.

    Returns:
        The sample identifier (``F3D0``).
    """
    return name.split("_", 1)[0]


def list_read_files(*, reads_dir: Path, suffix: str) -> List[Path]:
    """List files directly under ``reads_dir`` ending with ``suffix``, sorted."""
    return sorted(
        p.resolve() for p in reads_dir.iterdir()
        if p.is_file() and p.name.endswith(suffix)
    )


def discover_read_pairs(
    *,
    reads_dir: Path,
    forward_suffix: str = "_1.fastq.gz",
    reverse_suffix: str = "_2.fastq.gz",
) -> List[ReadFilePair]:
    """Pair forward and reverse FASTQs found in ``reads_dir``.

    Parameters
    ----------
    reads_dir : pathlib.Path
        Directory holding the raw reads (not scanned recursively).
    forward_suffix : str
        Filename suffix marking forward reads.
    reverse_suffix : str
        Filename suffix marking reverse reads.

    Returns
    -------
    list of ReadFilePair
        One pair per sample, in lexicographic order of the forward files.

    Raises
    ------
    DiscoveryError
        If the directory is missing, no reads match, the forward and reverse
        counts differ, a sample identifier repeats, or the sorted lists do not
        correspond sample by sample.
    """
    reads_dir = Path(reads_dir)
    if not reads_dir.is_dir():
        raise DiscoveryError(f"Reads directory not found: {reads_dir}")

    forward = list_read_files(reads_dir=reads_dir, suffix=forward_suffix)
    reverse = list_read_files(reads_dir=reads_dir, suffix=reverse_suffix)

    if not forward and not reverse:
        raise DiscoveryError(
            f"No files matching '*{forward_suffix}' or '*{reverse_suffix}' in {reads_dir}"
        )
    if len(forward) != len(reverse):
        raise DiscoveryError(
            f"Forward/reverse file counts differ: {len(forward)} '*{forward_suffix}' "
            f"vs {len(reverse)} '*{reverse_suffix}' in {reads_dir}"
        )

    pairs: List[ReadFilePair] = []
    seen: set[str] = set()
    mismatched: List[str] = []
    for fwd, rev in zip(forward, reverse):
        sid_f = sample_id_from_name(fwd.name)
        sid_r = sample_id_from_name(rev.name)
        if sid_f != sid_r:
            mismatched.append(f"{fwd.name} <> {rev.name}")
            continue
        if sid_f in seen:
            raise DiscoveryError(f"Duplicate sample ID '{sid_f}' ({fwd.name})")
        seen.add(sid_f)
        pairs.append(ReadFilePair(sample_id=sid_f, forward=fwd, reverse=rev))

    if mismatched:
        raise DiscoveryError(
            "Forward/reverse files do not pair by sample ID:\n  - "
            + "\n  - ".join(mismatched)
        )
    return pairs


def write_manifest(*, pairs: List[ReadFilePair], out_path: Path) -> None:
    """Write a paired manifest TSV.

    Args:
        pairs: Read pairs to record.
        out_path: Destination TSV path.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as fh:
        fh.write("\t".join(MANIFEST_HEADER) + "\n")
        for pair in pairs:
            fh.write(f"{pair.sample_id}\t{pair.forward.resolve()}\t{pair.reverse.resolve()}\n")


def read_manifest(*, manifest: Path) -> List[ReadFilePair]:
    """
    Parse a paired manifest TSV back into read pairs.

    Raises
    ------
    DiscoveryError
        If the header is unexpected, a referenced file is missing, or a
        sample ID repeats.
    """
    pairs: List[ReadFilePair] = []
    with manifest.open("r", encoding="utf-8", errors="replace", newline="") as fh:
        reader = csv.reader(fh, delimiter="\t")
        header = next(reader, [])
        if header[:3] != MANIFEST_HEADER:
            raise DiscoveryError(f"Unexpected manifest header: {header[:3]} != {MANIFEST_HEADER}")
        seen: set[str] = set()
        for parts in reader:
            if not parts or not parts[0].strip():
                continue
            sid = parts[0].strip()
            r1 = Path(parts[1].strip()).expanduser().resolve()
            r2 = Path(parts[2].strip()).expanduser().resolve()
            if sid in seen:
                raise DiscoveryError(f"Duplicate sample ID '{sid}' in {manifest}")
            if not r1.exists():
                raise DiscoveryError(f"Forward reads not found for {sid}: {r1}")
            if not r2.exists():
                raise DiscoveryError(f"Reverse reads not found for {sid}: {r2}")
            seen.add(sid)
            pairs.append(ReadFilePair(sample_id=sid, forward=r1, reverse=r2))
    return pairs


def build_parser() -> argparse.ArgumentParser:
    """Return the command-line argument parser for this utility."""
    p = argparse.ArgumentParser(
        description="Pair forward/reverse FASTQs by sample ID and write a paired manifest.",
        allow_abbrev=False,
    )
    p.add_argument("--reads_dir", required=True, type=Path,
                   help="Directory containing FASTQs (not scanned recursively).")
    p.add_argument("--manifest_out", required=True, type=Path,
                   help="Output path for the paired manifest TSV.")
    p.add_argument("--forward_suffix", default="_1.fastq.gz", type=str,
                   help="Suffix marking forward reads (default: _1.fastq.gz).")
    p.add_argument("--reverse_suffix", default="_2.fastq.gz", type=str,
                   help="Suffix marking reverse reads (default: _2.fastq.gz).")
    p.add_argument(
        "--dry_run",
        default=False,
        type=lambda x: str(x).lower() in {"1", "true", "yes"},
        help="Print the pairs without writing the manifest (default: false).",
    )
    return p


def main() -> None:
    """Entry point: discover pairs and write the manifest."""
    args = build_parser().parse_args()
    try:
        pairs = discover_read_pairs(
            reads_dir=args.reads_dir,
            forward_suffix=args.forward_suffix,
            reverse_suffix=args.reverse_suffix,
        )
    except DiscoveryError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.dry_run:
        print(f"[dry-run] would write manifest: {args.manifest_out}")
        for pair in pairs:
            print(f"[dry-run] {pair.sample_id}\t{pair.forward}\t{pair.reverse}")
    else:
        write_manifest(pairs=pairs, out_path=args.manifest_out)
        print(f"[INFO] Wrote {len(pairs)} sample pairs to {args.manifest_out}", flush=True)


if __name__ == "__main__":
    main()
