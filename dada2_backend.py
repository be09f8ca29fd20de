#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Sequence-analysis backend for the DADA2 amplicon runner.

Overview
--------
The runner never computes error models, variants, merges, chimeras or
taxonomy itself. It talks to a ``SequenceAnalysisBackend``: any object with
the six methods below. The shipped implementation, ``RscriptDada2Backend``,
drives the DADA2 R package by writing a short R program per call and running
it with ``Rscript``; inputs and outputs are exchanged as TSV files and DADA2's
native objects are kept as RDS files next to the checkpoints.

Design choices
--------------
- Stage results are frozen dataclasses; ``handle`` carries the backend's own
  artefact (an RDS path here) so a later call can reuse it.
- Every ``Rscript`` call tees stdout/stderr to a numbered step log under
  ``logs/``.
- Threads are passed to DADA2 as ``multithread``; how they are used is up to
  DADA2.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import pandas as pd

from asv_tables import read_merged_pairs, read_wide_table, write_wide_table
from discover_read_pairs import ReadFilePair


DIRECTIONS: Tuple[str, ...] = ("F", "R")
POOL_MODES: Tuple[str, ...] = ("independent", "pooled", "pseudo-pooled")
CHIMERA_METHODS: Tuple[str, ...] = ("consensus", "pooled", "per-sample")


class BackendError(RuntimeError):
    """Raised when the external sequence-analysis capability fails."""


# ----------------------------- settings ----------------------------- #

@dataclass(frozen=True)
class FilterSettings:
    """Quality-filter parameters (DADA2 ``filterAndTrim``).

    Attributes
    ----------
    trunc_q : int
        Truncate reads at the first base with quality <= ``trunc_q``.
    max_n : int
        Discard pairs with more ambiguous bases than this.
    max_ee : tuple of float
        Maximum expected errors for (forward, reverse) reads.
    rm_phix : bool
        Discard reads matching the phiX spike-in genome.
    compress : bool
        Gzip the filtered FASTQs.
    """

    trunc_q: int = 2
    max_n: int = 0
    max_ee: Tuple[float, float] = (2.0, 2.0)
    rm_phix: bool = True
    compress: bool = True


@dataclass(frozen=True)
class MergeSettings:
    """Overlap requirements for merging forward/reverse variants."""

    min_overlap: int = 12
    max_mismatch: int = 0


# ----------------------------- stage results ----------------------------- #

@dataclass(frozen=True, eq=False)
class ErrorModel:
    """Per-direction error model: transition x quality-score probabilities."""

    direction: str
    rates: pd.DataFrame
    converged: bool
    handle: Optional[Path] = None


@dataclass(frozen=True, eq=False)
class DenoisedReads:
    """Inferred variants for one read direction; one row per sample."""

    direction: str
    table: pd.DataFrame
    handle: Optional[Path] = None

    @property
    def sample_ids(self) -> List[str]:
        return [str(s) for s in self.table.index]

    def totals(self) -> pd.Series:
        """Denoised reads per sample."""
        return self.table.sum(axis=1).astype("int64")


@dataclass(frozen=True, eq=False)
class MergedPairs:
    """Merged full-length sequences, long format, for ``sample_ids``."""

    sample_ids: Tuple[str, ...]
    pairs: pd.DataFrame
    handle: Optional[Path] = None

    def totals(self) -> pd.Series:
        """Merged reads per sample; samples without merges count zero."""
        totals = self.pairs.groupby("sample_id")["abundance"].sum()
        return totals.reindex(list(self.sample_ids), fill_value=0).astype("int64")


@dataclass(frozen=True, eq=False)
class TaxonomyCalls:
    """Raw classifier output: labels and bootstrap support, indexed by sequence."""

    labels: pd.DataFrame
    confidence: pd.DataFrame


class SequenceAnalysisBackend(Protocol):
    """The external capability the runner orchestrates."""

    def filter_reads(
        self, *, pairs: Sequence[ReadFilePair], filtered: Sequence[ReadFilePair],
        settings: FilterSettings,
    ) -> pd.DataFrame:
        """Filter ``pairs`` into ``filtered``; return ``reads_in``/``reads_out`` by sample."""
        ...

    def learn_error_model(self, *, files: Sequence[Path], direction: str, work_dir: Path) -> ErrorModel:
        ...

    def denoise(
        self, *, files: Mapping[str, Path], model: ErrorModel, pool_mode: str, work_dir: Path,
    ) -> DenoisedReads:
        ...

    def merge_pairs(
        self, *, forward: DenoisedReads, forward_files: Mapping[str, Path],
        reverse: DenoisedReads, reverse_files: Mapping[str, Path],
        settings: MergeSettings, work_dir: Path,
    ) -> MergedPairs:
        ...

    def remove_chimeras(self, *, matrix: pd.DataFrame, method: str, work_dir: Path) -> pd.DataFrame:
        ...

    def assign_taxonomy(
        self, *, sequences: Sequence[str], reference: Path, ranks: Sequence[str], work_dir: Path,
    ) -> TaxonomyCalls:
        ...


# ----------------------------- helpers ----------------------------- #

def run_cmd(*, cmd: list[str], log_file: Path, logger: Optional[logging.Logger] = None) -> None:
    """
    Run a command with all stdout/stderr tee'd to a step log.

    Parameters
    ----------
    cmd : list of str
        Command tokens (no shell=True).
    log_file : pathlib.Path
        Path to the step-specific log file.
    logger : Optional[logging.Logger]
        If provided, logs the command start and destination log file.

    Raises
    ------
    subprocess.CalledProcessError
        If the command exits non-zero.
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if logger is not None:
        logger.info("▶ %s", " ".join(cmd))
        logger.debug("Step log: %s", log_file)

    with log_file.open("a", encoding="utf-8") as lf:
        lf.write("$ " + " ".join(cmd) + "\n")
        lf.flush()
        subprocess.run(cmd, stdout=lf, stderr=lf, check=True)


def resolve_rscript(*, user_arg: Optional[str]) -> str:
    """
    Resolve the ``Rscript`` executable to use.

    If ``user_arg`` is provided it is returned as-is. Otherwise PATH is
    searched.

    Raises
    ------
    BackendError
        If no ``Rscript`` is found on PATH.
    """
    if user_arg:
        return user_arg
    found = shutil.which("Rscript")
    if found:
        return found
    raise BackendError(
        "Could not locate 'Rscript' on PATH. Install R with the dada2 package "
        "or provide --rscript /full/path/to/Rscript."
    )


def _r_bool(value: bool) -> str:
    return "TRUE" if value else "FALSE"


# ----------------------------- embedded R ----------------------------- #

R_PREAMBLE = """\
suppressPackageStartupMessages(library(dada2))
args <- commandArgs(trailingOnly = TRUE)
threads <- as.integer(args[1])
multithread <- if (threads > 1) threads else FALSE
write_tsv <- function(df, path) {
  write.table(df, path, sep = "\\t", quote = FALSE, row.names = FALSE, na = "")
}
"""

R_SCRIPTS: Dict[str, str] = {
    "filter": """\
pairs <- read.delim(args[2], stringsAsFactors = FALSE, colClasses = "character")
out <- filterAndTrim(
  pairs$forward, pairs$filtered_forward, pairs$reverse, pairs$filtered_reverse,
  truncQ = as.integer(args[3]), maxN = as.integer(args[4]),
  maxEE = c(as.numeric(args[5]), as.numeric(args[6])),
  rm.phix = as.logical(args[7]), compress = as.logical(args[8]),
  multithread = multithread
)
write_tsv(data.frame(sample_id = pairs$sample_id, reads_in = out[, 1], reads_out = out[, 2]), args[9])
""",
    "learn_errors": """\
files <- readLines(args[2])
converged <- TRUE
err <- withCallingHandlers(
  learnErrors(files, nbases = as.numeric(args[3]), MAX_CONSIST = as.integer(args[4]),
              multithread = multithread, verbose = TRUE),
  warning = function(w) {
    if (grepl("converge", conditionMessage(w))) {
      converged <<- FALSE
      invokeRestart("muffleWarning")
    }
  }
)
saveRDS(err, args[5])
rates <- getErrors(err)
write_tsv(data.frame(transition = rownames(rates), rates, check.names = FALSE), args[6])
write_tsv(data.frame(key = "converged", value = converged), args[7])
""",
    "denoise": """\
files <- read.delim(args[2], stringsAsFactors = FALSE, colClasses = "character")
paths <- setNames(files$path, files$sample_id)
err <- readRDS(args[3])
pool <- switch(args[4], "independent" = FALSE, "pooled" = TRUE, "pseudo-pooled" = "pseudo")
dd <- dada(paths, err = err, pool = pool, multithread = multithread)
if (inherits(dd, "dada")) {
  dd <- setNames(list(dd), files$sample_id)
}
saveRDS(dd, args[5])
tab <- makeSequenceTable(dd)
write_tsv(data.frame(sample_id = rownames(tab), tab, check.names = FALSE), args[6])
""",
    "merge": """\
files <- read.delim(args[2], stringsAsFactors = FALSE, colClasses = "character")
ids <- files$sample_id
dada_f <- readRDS(args[3])[ids]
dada_r <- readRDS(args[4])[ids]
mergers <- mergePairs(dada_f, setNames(files$forward, ids), dada_r, setNames(files$reverse, ids),
                      minOverlap = as.integer(args[5]), maxMismatch = as.integer(args[6]),
                      verbose = TRUE)
if (is.data.frame(mergers)) {
  mergers <- setNames(list(mergers), ids)
}
saveRDS(mergers, args[7])
rows <- lapply(ids, function(s) {
  m <- mergers[[s]]
  if (is.null(m) || nrow(m) == 0) return(NULL)
  data.frame(sample_id = s, sequence = m$sequence, abundance = m$abundance,
             nmatch = m$nmatch, nmismatch = m$nmismatch, nindel = m$nindel,
             stringsAsFactors = FALSE)
})
out <- do.call(rbind, rows)
if (is.null(out)) {
  out <- data.frame(sample_id = character(), sequence = character(), abundance = integer(),
                    nmatch = integer(), nmismatch = integer(), nindel = integer())
}
write_tsv(out, args[8])
""",
    "chimeras": """\
tab <- as.matrix(read.delim(args[2], row.names = 1, check.names = FALSE,
                            colClasses = c("character")))
storage.mode(tab) <- "integer"
nochim <- removeBimeraDenovo(tab, method = args[3], multithread = multithread, verbose = TRUE)
write_tsv(data.frame(sample_id = rownames(nochim), nochim, check.names = FALSE), args[4])
""",
    "taxonomy": """\
seqs <- readLines(args[2])
levels <- strsplit(args[4], ",", fixed = TRUE)[[1]]
taxa <- assignTaxonomy(seqs, args[3], minBoot = 0, outputBootstraps = TRUE,
                       taxLevels = levels, multithread = multithread, verbose = TRUE)
write_tsv(data.frame(sequence = rownames(taxa$tax), taxa$tax, check.names = FALSE), args[5])
write_tsv(data.frame(sequence = rownames(taxa$boot), taxa$boot, check.names = FALSE), args[6])
""",
}


# ----------------------------- Rscript backend ----------------------------- #

class RscriptDada2Backend:
    """DADA2 via ``Rscript``: one embedded R program per capability call.

    Parameters
    ----------
    logs_dir : pathlib.Path
        Directory for per-step logs.
    threads : int
        Parallelism budget handed to DADA2 (``multithread``).
    rscript : str, optional
        ``Rscript`` executable; resolved from PATH when omitted.
    nbases : float
        Number of bases used by ``learnErrors``.
    max_consist : int
        Maximum self-consistency iterations of ``learnErrors``.
    logger : logging.Logger, optional
        Progress logger.
    """

    def __init__(
        self,
        *,
        logs_dir: Path,
        threads: int = 1,
        rscript: Optional[str] = None,
        nbases: float = 1e8,
        max_consist: int = 10,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logs_dir = Path(logs_dir)
        self.threads = max(1, int(threads))
        self.rscript = resolve_rscript(user_arg=rscript)
        self.nbases = nbases
        self.max_consist = max_consist
        self.logger = logger

    def _run(self, *, step: str, tag: str, work_dir: Path, args: list[str]) -> None:
        """Write the R program for ``step`` into ``work_dir`` and run it."""
        work_dir.mkdir(parents=True, exist_ok=True)
        script = work_dir / f"{tag}.R"
        script.write_text(R_PREAMBLE + R_SCRIPTS[step], encoding="utf-8")
        cmd = [self.rscript, "--vanilla", str(script), str(self.threads), *args]
        try:
            run_cmd(cmd=cmd, log_file=self.logs_dir / f"{tag}.log", logger=self.logger)
        except subprocess.CalledProcessError as exc:
            raise BackendError(
                f"DADA2 step '{tag}' failed (exit={exc.returncode}). "
                f"See log: {self.logs_dir / f'{tag}.log'}"
            ) from exc
        except OSError as exc:
            raise BackendError(f"Could not run {self.rscript}: {exc}") from exc

    @staticmethod
    def _require(*paths: Path) -> None:
        missing = [str(p) for p in paths if not Path(p).exists()]
        if missing:
            raise BackendError("Expected DADA2 output not found: " + ", ".join(missing))

    def filter_reads(
        self, *, pairs: Sequence[ReadFilePair], filtered: Sequence[ReadFilePair],
        settings: FilterSettings,
    ) -> pd.DataFrame:
        """Run ``filterAndTrim`` on all pairs at once."""
        if not filtered:
            raise BackendError("No read pairs to filter.")
        work_dir = filtered[0].forward.parent
        manifest = work_dir / "filter_input.tsv"
        pd.DataFrame(
            {
                "sample_id": [p.sample_id for p in pairs],
                "forward": [str(p.forward) for p in pairs],
                "reverse": [str(p.reverse) for p in pairs],
                "filtered_forward": [str(f.forward) for f in filtered],
                "filtered_reverse": [str(f.reverse) for f in filtered],
            }
        ).to_csv(manifest, sep="\t", index=False)
        stats_tsv = work_dir / "filter_stats.tsv"
        self._run(
            step="filter", tag="01_filter_and_trim", work_dir=work_dir,
            args=[
                str(manifest), str(settings.trunc_q), str(settings.max_n),
                str(settings.max_ee[0]), str(settings.max_ee[1]),
                _r_bool(settings.rm_phix), _r_bool(settings.compress), str(stats_tsv),
            ],
        )
        self._require(stats_tsv)
        stats = pd.read_csv(stats_tsv, sep="\t", dtype={"sample_id": str}).set_index("sample_id")
        return stats[["reads_in", "reads_out"]].astype("int64")

    def learn_error_model(self, *, files: Sequence[Path], direction: str, work_dir: Path) -> ErrorModel:
        """Run ``learnErrors`` on all filtered files of one direction."""
        work_dir.mkdir(parents=True, exist_ok=True)
        file_list = work_dir / f"error_model_{direction}_files.txt"
        file_list.write_text("".join(f"{f}\n" for f in files), encoding="utf-8")
        rds = work_dir / f"error_model_{direction}.rds"
        rates_tsv = work_dir / f"error_model_{direction}.tsv"
        status_tsv = work_dir / f"error_model_{direction}_status.tsv"
        self._run(
            step="learn_errors", tag=f"02_learn_errors_{direction}", work_dir=work_dir,
            args=[str(file_list), str(self.nbases), str(self.max_consist),
                  str(rds), str(rates_tsv), str(status_tsv)],
        )
        self._require(rds, rates_tsv, status_tsv)
        rates = pd.read_csv(rates_tsv, sep="\t", index_col="transition")
        status = pd.read_csv(status_tsv, sep="\t", dtype=str)
        converged = str(status.loc[status["key"] == "converged", "value"].iloc[0]).upper() == "TRUE"
        return ErrorModel(direction=direction, rates=rates, converged=converged, handle=rds)

    def denoise(
        self, *, files: Mapping[str, Path], model: ErrorModel, pool_mode: str, work_dir: Path,
    ) -> DenoisedReads:
        """Run ``dada`` on one direction with the requested pooling."""
        if pool_mode not in POOL_MODES:
            raise BackendError(f"Unknown pool mode '{pool_mode}'. Choose from: {', '.join(POOL_MODES)}")
        if model.handle is None or not Path(model.handle).exists():
            raise BackendError(f"Error model {model.direction} has no DADA2 artefact to reuse.")
        direction = model.direction
        work_dir.mkdir(parents=True, exist_ok=True)
        manifest = work_dir / f"denoise_{direction}_files.tsv"
        pd.DataFrame(
            {"sample_id": list(files.keys()), "path": [str(p) for p in files.values()]}
        ).to_csv(manifest, sep="\t", index=False)
        rds = work_dir / f"denoised_{direction}.rds"
        table_tsv = work_dir / f"denoised_{direction}_backend.tsv"
        self._run(
            step="denoise", tag=f"03_denoise_{direction}", work_dir=work_dir,
            args=[str(manifest), str(model.handle), pool_mode, str(rds), str(table_tsv)],
        )
        self._require(rds, table_tsv)
        table = read_wide_table(path=table_tsv).reindex(index=list(files.keys()), fill_value=0)
        return DenoisedReads(direction=direction, table=table, handle=rds)

    def merge_pairs(
        self, *, forward: DenoisedReads, forward_files: Mapping[str, Path],
        reverse: DenoisedReads, reverse_files: Mapping[str, Path],
        settings: MergeSettings, work_dir: Path,
    ) -> MergedPairs:
        """Run ``mergePairs`` using the stored ``dada`` objects of both directions."""
        for denoised in (forward, reverse):
            if denoised.handle is None or not Path(denoised.handle).exists():
                raise BackendError(f"Denoised {denoised.direction} reads have no DADA2 artefact to reuse.")
        ids = list(forward_files.keys())
        manifest = work_dir / "merge_files.tsv"
        pd.DataFrame(
            {
                "sample_id": ids,
                "forward": [str(forward_files[s]) for s in ids],
                "reverse": [str(reverse_files[s]) for s in ids],
            }
        ).to_csv(manifest, sep="\t", index=False)
        rds = work_dir / "merged_pairs.rds"
        pairs_tsv = work_dir / "merged_pairs_backend.tsv"
        self._run(
            step="merge", tag="04_merge_pairs", work_dir=work_dir,
            args=[str(manifest), str(forward.handle), str(reverse.handle),
                  str(settings.min_overlap), str(settings.max_mismatch), str(rds), str(pairs_tsv)],
        )
        self._require(rds, pairs_tsv)
        return MergedPairs(sample_ids=tuple(ids), pairs=read_merged_pairs(path=pairs_tsv), handle=rds)

    def remove_chimeras(self, *, matrix: pd.DataFrame, method: str, work_dir: Path) -> pd.DataFrame:
        """Run ``removeBimeraDenovo`` on the abundance matrix."""
        if method not in CHIMERA_METHODS:
            raise BackendError(f"Unknown chimera method '{method}'. Choose from: {', '.join(CHIMERA_METHODS)}")
        in_tsv = write_wide_table(table=matrix, path=work_dir / "chimera_input.tsv")
        out_tsv = work_dir / "chimera_output.tsv"
        self._run(
            step="chimeras", tag="05_remove_chimeras", work_dir=work_dir,
            args=[str(in_tsv), method, str(out_tsv)],
        )
        self._require(out_tsv)
        return read_wide_table(path=out_tsv)

    def assign_taxonomy(
        self, *, sequences: Sequence[str], reference: Path, ranks: Sequence[str], work_dir: Path,
    ) -> TaxonomyCalls:
        """Run ``assignTaxonomy`` with bootstraps; thresholds are applied by the caller."""
        if not Path(reference).exists():
            raise BackendError(f"Reference database not found: {reference}")
        work_dir.mkdir(parents=True, exist_ok=True)
        seqs_txt = work_dir / "taxonomy_input.txt"
        seqs_txt.write_text("".join(f"{s}\n" for s in sequences), encoding="utf-8")
        labels_tsv = work_dir / "taxonomy_labels_backend.tsv"
        boot_tsv = work_dir / "taxonomy_boot_backend.tsv"
        self._run(
            step="taxonomy", tag="06_assign_taxonomy", work_dir=work_dir,
            args=[str(seqs_txt), str(reference), ",".join(ranks), str(labels_tsv), str(boot_tsv)],
        )
        self._require(labels_tsv, boot_tsv)
        labels = pd.read_csv(labels_tsv, sep="\t", index_col="sequence", dtype=str)
        boot = pd.read_csv(boot_tsv, sep="\t", index_col="sequence")
        return TaxonomyCalls(labels=labels, confidence=boot)
