#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
DADA2 amplicon runner (paired-end 16S rRNA reads to an annotated ASV table).

Overview
--------
End-to-end DADA2 workflow for paired-end amplicon data, run as one linear
batch job:

    discover -> filter -> learn_errors -> denoise -> merge -> chimeras
             -> track -> taxonomy -> export

Every computational step is delegated to a sequence-analysis backend (DADA2
through ``Rscript`` by default). This script owns parameter selection, file
bookkeeping, checkpoints after every stage, the read-tracking report and a
phyloseq-ready output folder.

Design choices
--------------
- Stages exchange explicit result objects; nothing is shared through
  module-level state.
- Each stage writes its checkpoint(s) under ``checkpoints/`` as soon as its
  result exists, and appends a row to ``checkpoints/ledger.tsv``.
- ``--resume_from <stage>`` reloads the checkpoints the remaining stages need,
  checks they exist and agree on the sample set, then continues.
- Merged sequences longer than ``--max_length`` are dropped and reported, not
  truncated.

Notes
-----
- All tables written by this script are tab-separated (TSV), except the
  read-tracking report, which is CSV.
- Named arguments are required; no positional arguments are used.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import dnaio
import pandas as pd
import psutil

from asv_tables import (
    RANKS,
    apply_overlap_policy,
    build_abundance_matrix,
    check_chimera_result,
    chimera_diagnostics,
    drop_overlong_variants,
    mask_low_confidence,
    read_merged_pairs,
    read_wide_table,
    write_asv_counts,
    write_asv_fasta,
    write_asv_taxonomy,
    write_wide_table,
)
from dada2_backend import (
    CHIMERA_METHODS,
    DIRECTIONS,
    POOL_MODES,
    BackendError,
    DenoisedReads,
    ErrorModel,
    FilterSettings,
    MergedPairs,
    MergeSettings,
    RscriptDada2Backend,
    SequenceAnalysisBackend,
)
from discover_read_pairs import (
    DiscoveryError,
    ReadFilePair,
    discover_read_pairs,
    read_manifest,
    write_manifest,
)
from read_tracking import build_read_tracking_report, write_report_csv


# Wall-clock start for runtime/elapsed logging
_SCRIPT_START_TIME = time.time()

STAGES: Tuple[str, ...] = (
    "filter", "learn_errors", "denoise", "merge", "chimeras", "track", "taxonomy", "export",
)

# checkpoints each stage reads / writes
STAGE_INPUTS: Dict[str, Tuple[str, ...]] = {
    "filter": (),
    "learn_errors": ("filter",),
    "denoise": ("filter", "error_models"),
    "merge": ("filter", "denoised"),
    "chimeras": ("merged",),
    "track": ("filter", "denoised", "merged", "nonchim"),
    "taxonomy": ("nonchim",),
    "export": ("nonchim", "taxonomy"),
}
STAGE_OUTPUTS: Dict[str, Tuple[str, ...]] = {
    "filter": ("filter",),
    "learn_errors": ("error_models",),
    "denoise": ("denoised",),
    "merge": ("merged",),
    "chimeras": ("nonchim",),
    "track": (),
    "taxonomy": ("taxonomy",),
    "export": (),
}

CHECKPOINT_FILES: Dict[str, str] = {
    "filter": "01_filter_stats.tsv",
    "error_model_F": "02_error_model_F.tsv",
    "error_model_R": "02_error_model_R.tsv",
    "denoised_F": "03_denoised_F.tsv",
    "denoised_R": "03_denoised_R.tsv",
    "merged": "04_merged_pairs.tsv",
    "seqtab": "04_seqtab.tsv",
    "dropped_too_long": "04_dropped_too_long.tsv",
    "nonchim": "05_seqtab_nochim.tsv",
    "taxonomy": "06_taxonomy.tsv",
    "taxonomy_confidence": "06_taxonomy_confidence.tsv",
}

# checkpoint group -> files that must exist for a resume
CHECKPOINT_GROUPS: Dict[str, Tuple[str, ...]] = {
    "filter": ("filter",),
    "error_models": ("error_model_F", "error_model_R"),
    "denoised": ("denoised_F", "denoised_R"),
    "merged": ("merged", "seqtab"),
    "nonchim": ("nonchim",),
    "taxonomy": ("taxonomy", "taxonomy_confidence"),
}


class FilterError(Exception):
    """Raised when an input read pair cannot be parsed."""


class CheckpointError(Exception):
    """Raised when checkpoints needed to resume are missing or inconsistent."""


class PipelineStageError(RuntimeError):
    """A stage failed; names the stage and the last checkpoint on disk."""

    def __init__(self, *, stage: str, last_checkpoint: Optional[Path], cause: BaseException) -> None:
        self.stage = stage
        self.last_checkpoint = last_checkpoint
        last = str(last_checkpoint) if last_checkpoint else "none"
        # discovery has no checkpoint of its own; it reruns with filter
        resume = stage if stage in STAGES else STAGES[0]
        super().__init__(
            f"Stage '{stage}' failed: {cause}. Last checkpoint written: {last}. "
            f"Fix the cause and rerun with --resume_from {resume}."
        )


class Paths:
    """Container for key filesystem paths used in the run.

    Attributes
    ----------
    root : Path
        Root directory for all results.
    filtered : Path
        Directory for quality-filtered FASTQs.
    checkpoints : Path
        Directory for per-stage checkpoints and backend artefacts.
    logs : Path
        Directory for log files.
    phyloseq_output : Path
        Directory for phyloseq-ready exports.
    manifest : Path
        Paired manifest of the discovered raw reads.
    report_csv : Path
        Read-tracking report.
    run_report_tsv : Path
        Tab-separated one-row-per-run summary.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.filtered = self.root / "filtered"
        self.checkpoints = self.root / "checkpoints"
        self.logs = self.root / "logs"
        self.phyloseq_output = self.root / "phyloseq_output"
        self.manifest = self.root / "manifest.tsv"
        self.report_csv = self.root / "track_reads.csv"
        self.run_report_tsv = self.root / "run_report.tsv"

    def mkdirs(self) -> None:
        """Create all output directories if they do not already exist."""
        for p in (self.filtered, self.checkpoints, self.logs, self.phyloseq_output):
            p.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class RunConfig:
    """Flat run configuration; see ``build_arg_parser`` for meanings."""

    reads_dir: Optional[Path]
    out_dir: Path
    run_label: str = "dada2_run"
    manifest: Optional[Path] = None
    forward_suffix: str = "_1.fastq.gz"
    reverse_suffix: str = "_2.fastq.gz"
    filter: FilterSettings = field(default_factory=FilterSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    pool_mode: str = "pseudo-pooled"
    chimera_method: str = "consensus"
    max_length: int = 450
    reference_db: Optional[Path] = None
    max_rank: str = "Genus"
    min_boot: int = 50
    threads: int = 1
    allow_unconverged: bool = False

    def validate(self) -> None:
        """Reject values the backend would not understand."""
        if self.reads_dir is None and self.manifest is None:
            raise ValueError("Either reads_dir or manifest must be given.")
        if self.pool_mode not in POOL_MODES:
            raise ValueError(f"pool_mode must be one of {POOL_MODES}, got '{self.pool_mode}'")
        if self.chimera_method not in CHIMERA_METHODS:
            raise ValueError(f"chimera_method must be one of {CHIMERA_METHODS}, got '{self.chimera_method}'")
        if self.max_rank not in RANKS:
            raise ValueError(f"max_rank must be one of {RANKS}, got '{self.max_rank}'")
        if self.max_length <= 0:
            raise ValueError("max_length must be positive.")
        if not 0 <= self.min_boot <= 100:
            raise ValueError("min_boot must be within 0..100.")


# ----------------------------- stage results ----------------------------- #

@dataclass(frozen=True, eq=False)
class FilterResult:
    """Quality-filter bookkeeping, one row per processed sample.

    ``stats`` is indexed by sample ID with ``forward``, ``reverse``,
    ``filtered_forward``, ``filtered_reverse``, ``reads_in``, ``reads_out`` and
    ``retained``.
    """

    stats: pd.DataFrame

    @property
    def sample_ids(self) -> List[str]:
        """Samples carried into the downstream stages."""
        return [str(s) for s in self.stats.index[self.stats["retained"].to_numpy()]]

    def retained_stats(self) -> pd.DataFrame:
        return self.stats.loc[self.stats["retained"], ["reads_in", "reads_out"]]

    def filtered_pairs(self) -> List[ReadFilePair]:
        kept = self.stats.loc[self.stats["retained"]]
        return [
            ReadFilePair(sample_id=str(sid), forward=Path(row["filtered_forward"]),
                         reverse=Path(row["filtered_reverse"]))
            for sid, row in kept.iterrows()
        ]

    def files(self, direction: str) -> Dict[str, Path]:
        """Filtered files of one direction keyed by sample ID."""
        return {
            p.sample_id: (p.forward if direction == "F" else p.reverse)
            for p in self.filtered_pairs()
        }


@dataclass(frozen=True, eq=False)
class MergeResult:
    merged: MergedPairs
    matrix: pd.DataFrame
    dropped_too_long: pd.DataFrame
    rejected_pairs: int = 0


@dataclass(frozen=True, eq=False)
class ChimeraResult:
    matrix: pd.DataFrame
    diagnostics: Mapping[str, float]


@dataclass(frozen=True, eq=False)
class TaxonomyResult:
    table: pd.DataFrame
    confidence: pd.DataFrame


@dataclass(frozen=True, eq=False)
class RunOutputs:
    """Results available after ``run_pipeline`` (loaded or computed)."""

    filtered: Optional[FilterResult] = None
    error_models: Optional[Mapping[str, ErrorModel]] = None
    denoised: Optional[Mapping[str, DenoisedReads]] = None
    merged: Optional[MergeResult] = None
    nonchim: Optional[ChimeraResult] = None
    report: Optional[pd.DataFrame] = None
    taxonomy: Optional[TaxonomyResult] = None


# ----------------------------- logging -------------------------- #

def setup_logging(*, out_dir: Path, run_label: str) -> logging.Logger:
    """
    Configure structured logging to both stderr (human) and a file (machine).

    The file log captures DEBUG+ with timestamps; the stderr stream shows
    INFO+ with compact formatting.

    Parameters
    ----------
    out_dir : pathlib.Path
        The run's output directory (e.g., results/<RUN>).
    run_label : str
        Identifier for the run; used in initial metadata lines.

    Returns
    -------
    logging.Logger
        Configured logger instance ('dada2_amplicon_runner').
    """
    log_dir = Path(out_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "run_debug.log"

    logger = logging.getLogger("dada2_amplicon_runner")
    logger.setLevel(logging.DEBUG)
    # Avoid duplicate handlers if reinitialised
    logger.handlers.clear()
    logger.propagate = False

    stream_handler = logging.StreamHandler(stream=sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    file_handler = logging.FileHandler(filename=log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )

    logger.addHandler(stream_handler)
    logger.addHandler(file_handler)

    logger.info("Run label: %s", run_label)
    logger.info("Output directory: %s", Path(out_dir).resolve())
    logger.debug("Python version: %s", " ".join(map(str, sys.version_info)))
    logger.debug("Command line: %s", " ".join(sys.argv))
    return logger


def log_section(*, logger: logging.Logger, title: str) -> None:
    """Emit a visible section divider in logs."""
    sep = "=" * max(10, min(80, len(title) + 8))
    logger.info("%s", sep)
    logger.info("== %s ==", title)
    logger.info("%s", sep)


def log_memory_usage(
    logger: logging.Logger,
    prefix: str = "",
    extra_msg: str | None = None,
) -> None:
    """
    Log the current and peak memory usage (resident set size), plus elapsed time.

    Parameters
    ----------
    logger : logging.Logger
        Logger instance to emit the message.
    prefix : str
        Optional prefix (e.g., 'START', 'END', or a pipeline stage label).
    extra_msg : str | None
        Optional extra text appended to the log message.
    """
    proc = psutil.Process(os.getpid())
    cur_gb = proc.memory_info().rss / (1024 ** 3)

    # Peak RSS via resource (kilobytes on Linux)
    peak_gb = None
    try:
        import resource  # local import to avoid platform issues
        peak_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # Linux reports KB, macOS reports bytes
        if os.uname().sysname == "Linux":
            peak_gb = peak_kb / (1024 ** 2)
        else:
            peak_gb = peak_kb / (1024 ** 3)
    except ImportError:
        peak_gb = None

    elapsed_min = max(0.0, time.time() - _SCRIPT_START_TIME) / 60.0

    parts = []
    if prefix:
        parts.append(prefix.strip())
    parts.append(f"RAM: {cur_gb:.2f} GB")
    if peak_gb is not None:
        parts.append(f"Peak: {peak_gb:.2f} GB")
    parts.append(f"Elapsed: {elapsed_min:.1f} min")
    if extra_msg:
        parts.append(extra_msg)

    logger.info(" | ".join(parts))


# ----------------------------- checkpoints ----------------------------- #

class CheckpointStore:
    """Reads and writes stage checkpoints under one directory.

    Each checkpoint is a TSV; optional ``<name>.meta.tsv`` sidecars hold
    scalar facts (direction, backend artefact path, diagnostics). Every write
    is appended to ``ledger.tsv``.
    """

    def __init__(self, root: Path, logger: Optional[logging.Logger] = None) -> None:
        self.root = Path(root)
        self.logger = logger or logging.getLogger("dada2_amplicon_runner")
        self.ledger = self.root / "ledger.tsv"
        self.last_written: Optional[Path] = self._last_from_ledger()

    def _last_from_ledger(self) -> Optional[Path]:
        if not self.ledger.exists():
            return None
        ledger = pd.read_csv(self.ledger, sep="\t", dtype=str)
        if ledger.empty:
            return None
        return self.root / ledger["checkpoint"].iloc[-1]

    def path(self, name: str) -> Path:
        return self.root / CHECKPOINT_FILES[name]

    def _meta_path(self, name: str) -> Path:
        return self.path(name).with_suffix(".meta.tsv")

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def require(self, group: str) -> None:
        """Raise ``CheckpointError`` if any file of a checkpoint group is missing."""
        missing = [str(self.path(n)) for n in CHECKPOINT_GROUPS[group] if not self.exists(n)]
        if missing:
            raise CheckpointError(
                f"Missing '{group}' checkpoint(s): " + ", ".join(missing)
            )

    def record(self, *, stage: str, name: str, samples: int) -> Path:
        """Append a ledger row for a freshly written checkpoint."""
        path = self.path(name)
        is_new = not self.ledger.exists()
        self.root.mkdir(parents=True, exist_ok=True)
        with self.ledger.open("a", encoding="utf-8") as fh:
            if is_new:
                fh.write("stage\tcheckpoint\tsamples\twritten_at\n")
            fh.write(f"{stage}\t{path.name}\t{samples}\t{time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        self.last_written = path
        self.logger.info("Checkpoint written: %s", path)
        return path

    def write_meta(self, *, name: str, meta: Mapping[str, object]) -> None:
        with self._meta_path(name).open("w", encoding="utf-8") as fh:
            fh.write("key\tvalue\n")
            for key, value in meta.items():
                fh.write(f"{key}\t{'' if value is None else value}\n")

    def read_meta(self, name: str) -> Dict[str, str]:
        path = self._meta_path(name)
        if not path.exists():
            return {}
        meta = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
        return dict(zip(meta["key"], meta["value"]))

    @staticmethod
    def _handle(value: Optional[str]) -> Optional[Path]:
        return Path(value) if value else None

    # ---- filter ---- #
    def save_filter(self, result: FilterResult) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        result.stats.to_csv(self.path("filter"), sep="\t", index_label="sample_id")
        self.record(stage="filter", name="filter", samples=len(result.sample_ids))

    def load_filter(self) -> FilterResult:
        self.require("filter")
        stats = pd.read_csv(self.path("filter"), sep="\t", dtype={"sample_id": str})
        stats = stats.set_index("sample_id")
        stats["retained"] = stats["retained"].astype(str).str.lower() == "true"
        for col in ("reads_in", "reads_out"):
            stats[col] = stats[col].astype("int64")
        result = FilterResult(stats=stats)
        missing = [
            str(f) for p in result.filtered_pairs() for f in (p.forward, p.reverse) if not f.exists()
        ]
        if missing:
            raise CheckpointError("Filtered reads listed in the checkpoint are missing: " + ", ".join(missing))
        return result

    # ---- error models ---- #
    def save_error_model(self, model: ErrorModel) -> None:
        name = f"error_model_{model.direction}"
        model.rates.to_csv(self.path(name), sep="\t", index_label="transition")
        self.write_meta(name=name, meta={
            "direction": model.direction, "converged": model.converged, "handle": model.handle,
        })
        self.record(stage="learn_errors", name=name, samples=0)

    def load_error_model(self, direction: str) -> ErrorModel:
        name = f"error_model_{direction}"
        meta = self.read_meta(name)
        if meta.get("direction", direction) != direction:
            raise CheckpointError(
                f"{self.path(name)} holds the '{meta['direction']}' error model, expected '{direction}'."
            )
        rates = pd.read_csv(self.path(name), sep="\t", index_col="transition")
        return ErrorModel(
            direction=direction,
            rates=rates,
            converged=meta.get("converged", "True").lower() == "true",
            handle=self._handle(meta.get("handle")),
        )

    # ---- denoised ---- #
    def save_denoised(self, denoised: DenoisedReads) -> None:
        name = f"denoised_{denoised.direction}"
        write_wide_table(table=denoised.table, path=self.path(name))
        self.write_meta(name=name, meta={"direction": denoised.direction, "handle": denoised.handle})
        self.record(stage="denoise", name=name, samples=len(denoised.sample_ids))

    def load_denoised(self, direction: str) -> DenoisedReads:
        name = f"denoised_{direction}"
        meta = self.read_meta(name)
        if meta.get("direction", direction) != direction:
            raise CheckpointError(
                f"{self.path(name)} holds '{meta['direction']}' reads, expected '{direction}'."
            )
        return DenoisedReads(
            direction=direction,
            table=read_wide_table(path=self.path(name)),
            handle=self._handle(meta.get("handle")),
        )

    # ---- merged ---- #
    def save_merged(self, result: MergeResult) -> None:
        result.merged.pairs.to_csv(self.path("merged"), sep="\t", index=False)
        self.write_meta(name="merged", meta={
            "handle": result.merged.handle, "rejected_pairs": result.rejected_pairs,
        })
        self.record(stage="merge", name="merged", samples=len(result.merged.sample_ids))
        result.dropped_too_long.to_csv(self.path("dropped_too_long"), sep="\t", index=False)
        self.record(stage="merge", name="dropped_too_long", samples=0)
        write_wide_table(table=result.matrix, path=self.path("seqtab"))
        self.record(stage="merge", name="seqtab", samples=len(result.matrix.index))

    def load_merged(self) -> MergeResult:
        meta = self.read_meta("merged")
        matrix = read_wide_table(path=self.path("seqtab"))
        dropped = (
            pd.read_csv(self.path("dropped_too_long"), sep="\t")
            if self.exists("dropped_too_long")
            else pd.DataFrame(columns=["sequence", "length", "abundance"])
        )
        merged = MergedPairs(
            sample_ids=tuple(str(s) for s in matrix.index),
            pairs=read_merged_pairs(path=self.path("merged")),
            handle=self._handle(meta.get("handle")),
        )
        return MergeResult(
            merged=merged,
            matrix=matrix,
            dropped_too_long=dropped,
            rejected_pairs=int(meta.get("rejected_pairs") or 0),
        )

    # ---- chimeras ---- #
    def save_nonchim(self, result: ChimeraResult) -> None:
        write_wide_table(table=result.matrix, path=self.path("nonchim"))
        self.write_meta(name="nonchim", meta=result.diagnostics)
        self.record(stage="chimeras", name="nonchim", samples=len(result.matrix.index))

    def load_nonchim(self) -> ChimeraResult:
        meta = self.read_meta("nonchim")
        diagnostics = {k: float(v) for k, v in meta.items() if v != ""}
        return ChimeraResult(matrix=read_wide_table(path=self.path("nonchim")), diagnostics=diagnostics)

    # ---- taxonomy ---- #
    def save_taxonomy(self, result: TaxonomyResult) -> None:
        result.table.to_csv(self.path("taxonomy"), sep="\t", index_label="sequence", na_rep="")
        self.record(stage="taxonomy", name="taxonomy", samples=0)
        result.confidence.to_csv(self.path("taxonomy_confidence"), sep="\t", index_label="sequence")
        self.record(stage="taxonomy", name="taxonomy_confidence", samples=0)

    def load_taxonomy(self) -> TaxonomyResult:
        table = pd.read_csv(self.path("taxonomy"), sep="\t", index_col="sequence", dtype=str)
        confidence = pd.read_csv(self.path("taxonomy_confidence"), sep="\t", index_col="sequence")
        return TaxonomyResult(table=table, confidence=confidence)


# ----------------------------- helpers ----------------------------- #

@contextlib.contextmanager
def stage_guard(*, stage: str, store: CheckpointStore, logger: logging.Logger) -> Iterator[None]:
    """Log a stage and convert any failure into ``PipelineStageError``."""
    log_section(logger=logger, title=f"Stage: {stage}")
    try:
        yield
    except PipelineStageError:
        raise
    except Exception as exc:
        logger.error("Stage '%s' failed: %s", stage, exc)
        logger.error("Last checkpoint written: %s", store.last_written or "none")
        raise PipelineStageError(stage=stage, last_checkpoint=store.last_written, cause=exc) from exc
    log_memory_usage(logger, prefix=f"END {stage}")


def count_read_pairs(*, pair: ReadFilePair) -> int:
    """Count read pairs in a forward/reverse FASTQ pair.

    Raises:
        FilterError: If either file is malformed, truncated, unreadable, or
            the mates are improperly paired.
    """
    try:
        with dnaio.open(pair.forward, pair.reverse) as reader:
            return sum(1 for _ in reader)
    except dnaio.FileFormatError as exc:
        raise FilterError(f"Malformed reads for {pair.sample_id}: {exc}") from exc
    except (OSError, EOFError) as exc:
        raise FilterError(f"Unreadable reads for {pair.sample_id}: {exc}") from exc


def filtered_paths(*, pair: ReadFilePair, out_dir: Path, compress: bool) -> ReadFilePair:
    """Return where the filtered reads of ``pair`` are written."""
    ext = ".fastq.gz" if compress else ".fastq"
    return ReadFilePair(
        sample_id=pair.sample_id,
        forward=out_dir / f"{pair.sample_id}_F_filt{ext}",
        reverse=out_dir / f"{pair.sample_id}_R_filt{ext}",
    )


def write_report_row(*, report_path: Path, fields: Dict[str, str]) -> None:
    """Append a single row to the run report TSV, creating header if needed.

    Parameters
    ----------
    report_path : pathlib.Path
        Path to the report TSV.
    fields : dict
        Mapping from column name to value for this row.
    """
    report_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not report_path.exists()
    with report_path.open("a", encoding="utf-8") as fh:
        if is_new:
            fh.write("\t".join(fields.keys()) + "\n")
        fh.write("\t".join(str(v) for v in fields.values()) + "\n")


def tracking_inputs(
    *,
    filtered: FilterResult,
    denoised: Mapping[str, DenoisedReads],
    merged: MergeResult,
    nonchim: ChimeraResult,
) -> Dict[str, object]:
    """Collect the per-sample series the read tracker joins."""
    return {
        "filter_stats": filtered.retained_stats(),
        "denoised_f": denoised["F"].totals(),
        "denoised_r": denoised["R"].totals(),
        "merged": merged.merged.totals(),
        "nonchim": nonchim.matrix.sum(axis=1).astype("int64"),
    }


def tracking_inputs_from_store(*, store: CheckpointStore) -> Dict[str, object]:
    """Load the read-tracker inputs from checkpoints."""
    for group in STAGE_INPUTS["track"]:
        store.require(group)
    return tracking_inputs(
        filtered=store.load_filter(),
        denoised={d: store.load_denoised(d) for d in DIRECTIONS},
        merged=store.load_merged(),
        nonchim=store.load_nonchim(),
    )


def collect_read_pairs(*, config: RunConfig, logger: logging.Logger) -> List[ReadFilePair]:
    """Return the raw read pairs from ``--manifest`` when given, else by discovery.

    Raises
    ------
    DiscoveryError
        If the reads cannot be paired or the manifest is invalid or empty.
    """
    if config.manifest is not None:
        logger.info("Reading paired manifest: %s", config.manifest)
        pairs = read_manifest(manifest=Path(config.manifest))
        if not pairs:
            raise DiscoveryError(f"Manifest lists no samples: {config.manifest}")
        return pairs
    return discover_read_pairs(
        reads_dir=config.reads_dir,
        forward_suffix=config.forward_suffix,
        reverse_suffix=config.reverse_suffix,
    )


# ----------------------------- stages ----------------------------- #

def run_filter_stage(
    *,
    pairs: Sequence[ReadFilePair],
    config: RunConfig,
    paths: Paths,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> FilterResult:
    """
    Quality-filter every readable pair and checkpoint the before/after counts.

    Pairs that cannot be parsed are skipped with a warning. Samples with no
    reads left after filtering stay in the checkpoint (``retained=False``)
    but are not carried downstream.

    Raises
    ------
    ValueError
        If no pair is readable, no sample keeps any reads, or the backend
        reports more reads out than in.
    """
    readable: List[ReadFilePair] = []
    for pair in pairs:
        try:
            n = count_read_pairs(pair=pair)
        except FilterError as exc:
            logger.warning("Skipping sample %s: %s", pair.sample_id, exc)
            continue
        logger.debug("%s: %d read pairs", pair.sample_id, n)
        readable.append(pair)
    if not readable:
        raise ValueError("No readable FASTQ pairs left to filter.")

    paths.filtered.mkdir(parents=True, exist_ok=True)
    targets = [filtered_paths(pair=p, out_dir=paths.filtered, compress=config.filter.compress) for p in readable]
    counts = backend.filter_reads(pairs=readable, filtered=targets, settings=config.filter)

    ids = [p.sample_id for p in readable]
    counts.index = counts.index.astype(str)
    if set(counts.index) != set(ids):
        raise ValueError(
            f"Filter returned counts for {sorted(counts.index)}, expected {sorted(ids)}"
        )
    counts = counts.reindex(ids)
    grew = counts.index[counts["reads_out"] > counts["reads_in"]]
    if len(grew):
        raise ValueError("Filter reported more reads out than in for: " + ", ".join(grew))

    stats = pd.DataFrame(
        {
            "forward": [str(p.forward) for p in readable],
            "reverse": [str(p.reverse) for p in readable],
            "filtered_forward": [str(t.forward) for t in targets],
            "filtered_reverse": [str(t.reverse) for t in targets],
            "reads_in": counts["reads_in"].astype("int64").to_numpy(),
            "reads_out": counts["reads_out"].astype("int64").to_numpy(),
        },
        index=pd.Index(ids, name="sample_id"),
    )
    outputs_exist = [t.forward.exists() and t.reverse.exists() for t in targets]
    stats["retained"] = (stats["reads_out"] > 0) & pd.Series(outputs_exist, index=stats.index)
    for sid in stats.index[~stats["retained"]]:
        logger.warning("Sample %s has no reads after filtering; excluded downstream.", sid)

    result = FilterResult(stats=stats)
    if not result.sample_ids:
        raise ValueError("No sample kept any reads after quality filtering.")
    store.save_filter(result)
    logger.info(
        "Filtered %d samples: %d -> %d reads",
        len(stats), int(stats["reads_in"].sum()), int(stats["reads_out"].sum()),
    )
    return result


def run_error_stage(
    *,
    filtered: FilterResult,
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> Dict[str, ErrorModel]:
    """Learn one error model per read direction and checkpoint both."""
    models: Dict[str, ErrorModel] = {}
    for direction in DIRECTIONS:
        files = list(filtered.files(direction).values())
        model = backend.learn_error_model(files=files, direction=direction, work_dir=store.root)
        if model.direction != direction:
            raise BackendError(f"Asked for the {direction} error model, got '{model.direction}'.")
        if not model.converged:
            if not config.allow_unconverged:
                raise BackendError(
                    f"Error model {direction} did not converge; "
                    "rerun with more data or --allow_unconverged true."
                )
            logger.warning("Error model %s did not converge; continuing as requested.", direction)
        store.save_error_model(model)
        models[direction] = model
    return models


def run_denoise_stage(
    *,
    filtered: FilterResult,
    error_models: Mapping[str, ErrorModel],
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> Dict[str, DenoisedReads]:
    """Infer sequence variants per direction; each checkpoint keeps its own direction."""
    denoised: Dict[str, DenoisedReads] = {}
    for direction in DIRECTIONS:
        files = filtered.files(direction)
        result = backend.denoise(
            files=files, model=error_models[direction], pool_mode=config.pool_mode, work_dir=store.root,
        )
        if result.direction != direction:
            raise BackendError(f"Asked to denoise {direction} reads, got '{result.direction}'.")
        if set(result.sample_ids) != set(files):
            raise BackendError(
                f"Denoised {direction} samples {sorted(result.sample_ids)} differ from {sorted(files)}"
            )
        store.save_denoised(result)
        logger.info(
            "Denoised %s: %d variants across %d samples (%s)",
            direction, result.table.shape[1], len(result.sample_ids), config.pool_mode,
        )
        denoised[direction] = result
    return denoised


def run_merge_stage(
    *,
    filtered: FilterResult,
    denoised: Mapping[str, DenoisedReads],
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> MergeResult:
    """
    Merge denoised pairs, build the abundance matrix and apply the length policy.

    Returns
    -------
    MergeResult
        Merged pairs (overlap policy applied), the matrix without over-long
        variants, and the dropped-too-long diagnostic.
    """
    raw = backend.merge_pairs(
        forward=denoised["F"], forward_files=filtered.files("F"),
        reverse=denoised["R"], reverse_files=filtered.files("R"),
        settings=config.merge, work_dir=store.root,
    )
    kept, rejected = apply_overlap_policy(
        pairs=raw.pairs,
        min_overlap=config.merge.min_overlap,
        max_mismatch=config.merge.max_mismatch,
    )
    if rejected:
        logger.info("Rejected %d merged pairs failing overlap requirements.", rejected)
    sample_ids = tuple(filtered.sample_ids)
    merged = MergedPairs(sample_ids=sample_ids, pairs=kept, handle=raw.handle)

    matrix = build_abundance_matrix(pairs=kept, sample_ids=sample_ids)
    matrix, dropped = drop_overlong_variants(matrix=matrix, max_length=config.max_length)
    if not dropped.empty:
        logger.warning(
            "Dropped %d variants longer than %d bp (%d reads); see %s",
            len(dropped), config.max_length, int(dropped["abundance"].sum()),
            store.path("dropped_too_long"),
        )

    result = MergeResult(merged=merged, matrix=matrix, dropped_too_long=dropped, rejected_pairs=rejected)
    store.save_merged(result)
    logger.info("Sequence table: %d samples x %d variants", matrix.shape[0], matrix.shape[1])
    return result


def run_chimera_stage(
    *,
    merged: MergeResult,
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> ChimeraResult:
    """Remove chimeric variants and checkpoint the cleaned matrix."""
    before = merged.matrix
    if before.shape[1] < 3:
        # a bimera needs two more abundant parents
        logger.info("Fewer than 3 variants; nothing to test for chimeras.")
        after = before.copy()
    else:
        after = backend.remove_chimeras(matrix=before, method=config.chimera_method, work_dir=store.root)
        if set(after.index) == set(before.index):
            after = after.reindex(index=before.index)
    check_chimera_result(before=before, after=after)
    after = after[[c for c in before.columns if c in set(after.columns)]].astype("int64")

    diagnostics = chimera_diagnostics(before=before, after=after)
    logger.info(
        "Chimeras (%s): removed %d of %d variants, %.2f%% of reads",
        config.chimera_method, diagnostics["removed_variants"], diagnostics["input_variants"],
        100.0 * diagnostics["removed_fraction"],
    )
    result = ChimeraResult(matrix=after, diagnostics=diagnostics)
    store.save_nonchim(result)
    return result


def run_track_stage(
    *,
    filtered: FilterResult,
    denoised: Mapping[str, DenoisedReads],
    merged: MergeResult,
    nonchim: ChimeraResult,
    paths: Paths,
    logger: logging.Logger,
) -> pd.DataFrame:
    """Build and write the read-tracking report."""
    report = build_read_tracking_report(
        **tracking_inputs(filtered=filtered, denoised=denoised, merged=merged, nonchim=nonchim)
    )
    write_report_csv(report=report, out_csv=paths.report_csv)
    logger.info("Read tracking written to %s", paths.report_csv)
    for sid, row in report.iterrows():
        logger.debug("%s\t%s", sid, "\t".join(str(v) for v in row.tolist()))
    return report


def run_taxonomy_stage(
    *,
    nonchim: ChimeraResult,
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    store: CheckpointStore,
    logger: logging.Logger,
) -> Optional[TaxonomyResult]:
    """
    Classify every surviving variant and keep only ranks with enough support.

    Returns ``None`` (with a warning) when no reference database is set.
    """
    if config.reference_db is None:
        logger.warning("No reference database provided; skipping taxonomy assignment.")
        return None

    wanted = list(RANKS[: RANKS.index(config.max_rank) + 1])
    sequences = [str(s) for s in nonchim.matrix.columns]
    if sequences:
        calls = backend.assign_taxonomy(
            sequences=sequences, reference=config.reference_db, ranks=RANKS, work_dir=store.root,
        )
        labels = calls.labels.reindex(index=sequences)
        confidence = calls.confidence.reindex(index=sequences, columns=wanted)
    else:
        labels = pd.DataFrame(index=pd.Index([], name="sequence"), columns=wanted)
        confidence = pd.DataFrame(index=pd.Index([], name="sequence"), columns=wanted)

    table = mask_low_confidence(
        labels=labels, confidence=confidence, max_rank=config.max_rank, min_boot=config.min_boot,
    )
    result = TaxonomyResult(table=table, confidence=confidence)
    store.save_taxonomy(result)
    resolved = table.notna().sum()
    logger.info(
        "Taxonomy (%s, minBoot=%d): %s",
        Path(config.reference_db).name, config.min_boot,
        ", ".join(f"{rank}={int(resolved[rank])}/{len(table)}" for rank in table.columns),
    )
    return result


def run_export_stage(
    *,
    nonchim: ChimeraResult,
    taxonomy: Optional[TaxonomyResult],
    config: RunConfig,
    paths: Paths,
    logger: logging.Logger,
) -> None:
    """Write the phyloseq-ready folder and the one-row run summary."""
    out = paths.phyloseq_output
    out.mkdir(parents=True, exist_ok=True)
    sequences = [str(s) for s in nonchim.matrix.columns]
    write_asv_fasta(sequences=sequences, out_path=out / "asv_seqs.fasta")
    write_asv_counts(matrix=nonchim.matrix, out_path=out / "asv_counts.tsv")
    if taxonomy is not None:
        write_asv_taxonomy(taxonomy=taxonomy.table, sequences=sequences, out_path=out / "asv_taxonomy.tsv")
    logger.info("phyloseq outputs written to %s", out)

    write_report_row(
        report_path=paths.run_report_tsv,
        fields={
            "run_label": config.run_label,
            "samples": str(nonchim.matrix.shape[0]),
            "asvs": str(nonchim.matrix.shape[1]),
            "reads": str(int(nonchim.matrix.to_numpy().sum())),
            "pool_mode": config.pool_mode,
            "chimera_method": config.chimera_method,
            "max_length": str(config.max_length),
            "threads": str(config.threads),
            "reference_db": str(config.reference_db) if config.reference_db else "none",
        },
    )


# ----------------------------- orchestration ----------------------------- #

def load_checkpoints(
    *, store: CheckpointStore, groups: Sequence[str], logger: logging.Logger
) -> Dict[str, object]:
    """
    Load checkpoint groups for a resumed run and check they describe one run.

    Raises
    ------
    CheckpointError
        If a required checkpoint is missing or the loaded results disagree on
        the set of samples.
    """
    loaded: Dict[str, object] = {}
    sample_sets: Dict[str, set] = {}
    for group in groups:
        store.require(group)
        if group == "filter":
            filtered = store.load_filter()
            loaded[group] = filtered
            sample_sets["filter"] = set(filtered.sample_ids)
        elif group == "error_models":
            loaded[group] = {d: store.load_error_model(d) for d in DIRECTIONS}
        elif group == "denoised":
            denoised = {d: store.load_denoised(d) for d in DIRECTIONS}
            loaded[group] = denoised
            for d, result in denoised.items():
                sample_sets[f"denoised_{d}"] = set(result.sample_ids)
        elif group == "merged":
            merged = store.load_merged()
            loaded[group] = merged
            sample_sets["merged"] = set(merged.merged.sample_ids)
        elif group == "nonchim":
            nonchim = store.load_nonchim()
            loaded[group] = nonchim
            sample_sets["nonchim"] = set(str(s) for s in nonchim.matrix.index)
        elif group == "taxonomy":
            loaded[group] = store.load_taxonomy()
        logger.info("Loaded checkpoint group '%s'", group)

    if len({frozenset(s) for s in sample_sets.values()}) > 1:
        detail = "; ".join(f"{k}: {len(v)} samples" for k, v in sample_sets.items())
        raise CheckpointError(f"Checkpoints disagree on the sample set ({detail}).")
    if "taxonomy" in loaded and "nonchim" in loaded:
        classified = set(loaded["taxonomy"].table.index)
        variants = set(loaded["nonchim"].matrix.columns)
        if classified != variants:
            raise CheckpointError(
                f"Taxonomy checkpoint covers {len(classified)} variants but the chimera-free table "
                f"has {len(variants)} ({len(variants - classified)} unclassified); "
                "rerun from --resume_from taxonomy."
            )
    return loaded


def run_pipeline(
    *,
    config: RunConfig,
    backend: SequenceAnalysisBackend,
    resume_from: str = "filter",
    stop_after: str = "export",
    logger: Optional[logging.Logger] = None,
) -> RunOutputs:
    """
    Run the stages from ``resume_from`` to ``stop_after`` inclusive.

    Parameters
    ----------
    config : RunConfig
        Run configuration.
    backend : SequenceAnalysisBackend
        Provider of the DADA2 capabilities.
    resume_from : str
        First stage to execute; earlier results are loaded from checkpoints.
    stop_after : str
        Last stage to execute.
    logger : logging.Logger, optional
        Defaults to the 'dada2_amplicon_runner' logger.

    Returns
    -------
    RunOutputs
        Every result loaded or produced during the run.

    Raises
    ------
    CheckpointError
        If a resumed run lacks consistent checkpoints; names the stage
        resumed from and the last checkpoint written.
    PipelineStageError
        If a stage fails (``discover`` included, for unpairable reads);
        carries the stage and the last checkpoint written.
    """
    logger = logger or logging.getLogger("dada2_amplicon_runner")
    config.validate()
    if resume_from not in STAGES or stop_after not in STAGES:
        raise ValueError(f"Stages must be one of: {', '.join(STAGES)}")
    first, last = STAGES.index(resume_from), STAGES.index(stop_after)
    if first > last:
        raise ValueError(f"--resume_from {resume_from} comes after --stop_after {stop_after}")
    to_run = STAGES[first: last + 1]

    paths = Paths(config.out_dir)
    paths.mkdirs()
    store = CheckpointStore(paths.checkpoints, logger=logger)

    produced = {g for s in to_run for g in STAGE_OUTPUTS[s]}
    needed = [g for s in to_run for g in STAGE_INPUTS[s] if g not in produced]
    needed = list(dict.fromkeys(needed))
    if "taxonomy" in needed and (config.reference_db is None or not store.exists("taxonomy")):
        needed.remove("taxonomy")
    try:
        state = load_checkpoints(store=store, groups=needed, logger=logger) if needed else {}
    except CheckpointError as exc:
        last_written = store.last_written or "none"
        raise CheckpointError(
            f"Cannot resume from '{resume_from}': {exc} Last checkpoint written: {last_written}."
        ) from exc

    filtered: Optional[FilterResult] = state.get("filter")
    error_models = state.get("error_models")
    denoised = state.get("denoised")
    merged: Optional[MergeResult] = state.get("merged")
    nonchim: Optional[ChimeraResult] = state.get("nonchim")
    taxonomy: Optional[TaxonomyResult] = state.get("taxonomy")
    report: Optional[pd.DataFrame] = None

    if "filter" in to_run:
        with stage_guard(stage="discover", store=store, logger=logger):
            pairs = collect_read_pairs(config=config, logger=logger)
            if config.manifest is None or Path(config.manifest).resolve() != paths.manifest.resolve():
                write_manifest(pairs=pairs, out_path=paths.manifest)
            logger.info("Found %d samples: %s", len(pairs), ",".join(p.sample_id for p in pairs))

        with stage_guard(stage="filter", store=store, logger=logger):
            filtered = run_filter_stage(
                pairs=pairs, config=config, paths=paths, backend=backend, store=store, logger=logger,
            )

    if "learn_errors" in to_run:
        with stage_guard(stage="learn_errors", store=store, logger=logger):
            error_models = run_error_stage(
                filtered=filtered, config=config, backend=backend, store=store, logger=logger,
            )

    if "denoise" in to_run:
        with stage_guard(stage="denoise", store=store, logger=logger):
            denoised = run_denoise_stage(
                filtered=filtered, error_models=error_models, config=config,
                backend=backend, store=store, logger=logger,
            )

    if "merge" in to_run:
        with stage_guard(stage="merge", store=store, logger=logger):
            merged = run_merge_stage(
                filtered=filtered, denoised=denoised, config=config,
                backend=backend, store=store, logger=logger,
            )

    if "chimeras" in to_run:
        with stage_guard(stage="chimeras", store=store, logger=logger):
            nonchim = run_chimera_stage(
                merged=merged, config=config, backend=backend, store=store, logger=logger,
            )

    if "track" in to_run:
        with stage_guard(stage="track", store=store, logger=logger):
            report = run_track_stage(
                filtered=filtered, denoised=denoised, merged=merged, nonchim=nonchim,
                paths=paths, logger=logger,
            )

    if "taxonomy" in to_run:
        with stage_guard(stage="taxonomy", store=store, logger=logger):
            taxonomy = run_taxonomy_stage(
                nonchim=nonchim, config=config, backend=backend, store=store, logger=logger,
            )

    if "export" in to_run:
        with stage_guard(stage="export", store=store, logger=logger):
            run_export_stage(nonchim=nonchim, taxonomy=taxonomy, config=config, paths=paths, logger=logger)

    return RunOutputs(
        filtered=filtered,
        error_models=error_models,
        denoised=denoised,
        merged=merged,
        nonchim=nonchim,
        report=report,
        taxonomy=taxonomy,
    )


# ----------------------------- CLI ----------------------------- #

def _str2bool(x: str) -> bool:
    return str(x).lower() in {"1", "true", "yes"}


def build_arg_parser() -> argparse.ArgumentParser:
    """Construct the command-line interface for the runner.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with named-only arguments.
    """
    p = argparse.ArgumentParser(
        description="DADA2 amplicon runner for paired-end 16S reads. Named arguments only.",
        allow_abbrev=False,
    )
    p.add_argument("--run_label", default="dada2_run", type=str, help="Run label.")
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument("--reads_dir", type=Path, help="Directory of raw paired FASTQs.")
    source.add_argument("--manifest", type=Path,
                        help="Paired manifest TSV (as written by discover_read_pairs.py) instead of --reads_dir.")
    p.add_argument("--out_dir", required=True, type=Path, help="Output directory for the run.")
    p.add_argument("--forward_suffix", default="_1.fastq.gz", type=str,
                   help="Suffix marking forward reads (default: _1.fastq.gz).")
    p.add_argument("--reverse_suffix", default="_2.fastq.gz", type=str,
                   help="Suffix marking reverse reads (default: _2.fastq.gz).")
    # filterAndTrim
    p.add_argument("--trunc_q", default=2, type=int, help="Truncate at first base with quality <= this.")
    p.add_argument("--max_n", default=0, type=int, help="Maximum ambiguous bases per read.")
    p.add_argument("--max_ee_f", default=2.0, type=float, help="maxEE for forward reads.")
    p.add_argument("--max_ee_r", default=2.0, type=float, help="maxEE for reverse reads.")
    p.add_argument("--rm_phix", default=True, type=_str2bool, help="Remove phiX reads (true/false).")
    # learnErrors
    p.add_argument("--nbases", default=1e8, type=float, help="Bases used to learn error rates.")
    p.add_argument("--max_consist", default=10, type=int, help="Maximum self-consistency iterations.")
    p.add_argument("--allow_unconverged", default=False, type=_str2bool,
                   help="Continue when an error model does not converge (true/false).")
    # dada / mergePairs / chimeras
    p.add_argument("--pool_mode", default="pseudo-pooled", choices=list(POOL_MODES), help="Sample pooling.")
    p.add_argument("--min_overlap", default=12, type=int, help="Minimum forward/reverse overlap.")
    p.add_argument("--max_mismatch", default=0, type=int, help="Maximum mismatches in the overlap.")
    p.add_argument("--max_length", default=450, type=int,
                   help="Drop merged sequences longer than this (bp).")
    p.add_argument("--chimera_method", default="consensus", choices=list(CHIMERA_METHODS),
                   help="removeBimeraDenovo method.")
    # taxonomy
    p.add_argument("--reference_db", default=None, type=Path,
                   help="DADA2-formatted training FASTA (e.g. a SILVA release).")
    p.add_argument("--max_rank", default="Genus", choices=list(RANKS), help="Deepest rank to report.")
    p.add_argument("--min_boot", default=50, type=int, help="Minimum bootstrap support per rank.")
    # common
    p.add_argument("--threads", default=4, type=int, help="Parallelism budget for DADA2.")
    p.add_argument("--rscript", default=None, type=str,
                   help="Rscript executable. If omitted, auto-detect from PATH.")
    p.add_argument("--resume_from", default="filter", choices=list(STAGES),
                   help="First stage to run; earlier stages are loaded from checkpoints.")
    p.add_argument("--stop_after", default="export", choices=list(STAGES), help="Last stage to run.")
    return p


def config_from_args(args: argparse.Namespace) -> RunConfig:
    """Collect parsed arguments into a ``RunConfig``."""
    return RunConfig(
        reads_dir=Path(args.reads_dir).expanduser().resolve() if args.reads_dir else None,
        manifest=Path(args.manifest).expanduser().resolve() if args.manifest else None,
        out_dir=Path(args.out_dir).expanduser().resolve(),
        run_label=args.run_label,
        forward_suffix=args.forward_suffix,
        reverse_suffix=args.reverse_suffix,
        filter=FilterSettings(
            trunc_q=args.trunc_q,
            max_n=args.max_n,
            max_ee=(args.max_ee_f, args.max_ee_r),
            rm_phix=bool(args.rm_phix),
        ),
        merge=MergeSettings(min_overlap=args.min_overlap, max_mismatch=args.max_mismatch),
        pool_mode=args.pool_mode,
        chimera_method=args.chimera_method,
        max_length=args.max_length,
        reference_db=Path(args.reference_db).expanduser().resolve() if args.reference_db else None,
        max_rank=args.max_rank,
        min_boot=args.min_boot,
        threads=args.threads,
        allow_unconverged=bool(args.allow_unconverged),
    )


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the DADA2 amplicon runner.

    Parses arguments, prepares folders, runs (or resumes) the stages and
    reports fatal errors with the failing stage and last checkpoint.
    """
    args = build_arg_parser().parse_args(argv)
    config = config_from_args(args)
    logger = setup_logging(out_dir=config.out_dir, run_label=config.run_label)

    logger.info("Start time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(_SCRIPT_START_TIME)))
    log_memory_usage(logger=logger, prefix="START")
    logger.info("Stages: %s -> %s | pool=%s | chimeras=%s | threads=%d",
                args.resume_from, args.stop_after, config.pool_mode, config.chimera_method, config.threads)

    try:
        backend = RscriptDada2Backend(
            logs_dir=Paths(config.out_dir).logs,
            threads=config.threads,
            rscript=args.rscript,
            nbases=args.nbases,
            max_consist=args.max_consist,
            logger=logger,
        )
        run_pipeline(
            config=config,
            backend=backend,
            resume_from=args.resume_from,
            stop_after=args.stop_after,
            logger=logger,
        )
    except (DiscoveryError, CheckpointError, PipelineStageError, BackendError, ValueError) as exc:
        logger.error("%s", exc)
        sys.exit(2)

    logger.info("End time: %s", time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(time.time())))
    log_memory_usage(logger=logger, prefix="END", extra_msg="Pipeline complete")


if __name__ == "__main__":
    main()
