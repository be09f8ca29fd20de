"""Pytest configuration for the DADA2 amplicon runner tests."""

import logging
import random
import sys
from collections import Counter
from pathlib import Path

import dnaio
import pandas as pd
import pytest

# Flat layout: make the root modules importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from asv_tables import MERGED_COLUMNS  # noqa: E402
from dada2_backend import DenoisedReads, ErrorModel, MergedPairs, TaxonomyCalls  # noqa: E402


FWD_LEN = 40
AMPLICON_LEN = 60

GOOD_Q = "I"  # Q40
BAD_Q = "#"  # Q2

# sample -> (reads of amplicon A, B, C, low-quality reads of A)
SAMPLE_COMPOSITION = {
    "S1": (50, 35, 10, 5),
    "S2": (110, 60, 20, 10),
}

TAXONOMY_LABELS = ["Bacteria", "Firmicutes", "Bacilli", "Lactobacillales",
                   "Lactobacillaceae", "Lactobacillus", "acidophilus"]
TAXONOMY_BOOT = [100, 100, 99, 90, 80, 40, 10]


def revcomp(seq: str) -> str:
    return seq.translate(str.maketrans("ACGT", "TGCA"))[::-1]


def make_amplicons():
    rng = random.Random(16)
    return {name: "".join(rng.choice("ACGT") for _ in range(AMPLICON_LEN)) for name in "ABC"}


def write_fastq(path: Path, records):
    with path.open("w", encoding="utf-8") as fh:
        for name, seq, qual in records:
            fh.write(f"@{name}\n{seq}\n+\n{qual}\n")


def write_sample(reads_dir: Path, sample_id: str, amplicons, composition):
    """Write ``<id>_1.fastq`` / ``<id>_2.fastq`` for one sample."""
    n_a, n_b, n_c, n_bad = composition
    plan = (
        [(amplicons["A"], GOOD_Q)] * n_a
        + [(amplicons["B"], GOOD_Q)] * n_b
        + [(amplicons["C"], GOOD_Q)] * n_c
        + [(amplicons["A"], BAD_Q)] * n_bad
    )
    fwd, rev = [], []
    for i, (amp, q) in enumerate(plan, start=1):
        name = f"{sample_id}_r{i}"
        fwd.append((name, amp[:FWD_LEN], q * FWD_LEN))
        rev_seq = revcomp(amp[AMPLICON_LEN - FWD_LEN:])
        rev.append((name, rev_seq, q * FWD_LEN))
    write_fastq(reads_dir / f"{sample_id}_1.fastq", fwd)
    write_fastq(reads_dir / f"{sample_id}_2.fastq", rev)


def expected_errors(qualities: str) -> float:
    return sum(10 ** (-(ord(c) - 33) / 10) for c in qualities)


class FakeBackend:
    """Deterministic stand-in for DADA2 working on real FASTQ files.

    Variants are exact unique sequences; merging finds the longest exact
    overlap; chimeras are whatever sequences are listed in ``chimeras``.
    """

    def __init__(self, *, chimeras=(), converged=True):
        self.chimeras = set(chimeras)
        self.converged = converged
        self.calls = []

    def filter_reads(self, *, pairs, filtered, settings):
        self.calls.append(("filter_reads", [p.sample_id for p in pairs]))
        rows = {}
        for pair, target in zip(pairs, filtered):
            n_in = n_out = 0
            with dnaio.open(pair.forward, pair.reverse) as reader, \
                    dnaio.open(target.forward, target.reverse, mode="w") as writer:
                for r1, r2 in reader:
                    n_in += 1
                    if expected_errors(r1.qualities) > settings.max_ee[0]:
                        continue
                    if expected_errors(r2.qualities) > settings.max_ee[1]:
                        continue
                    writer.write(r1, r2)
                    n_out += 1
            rows[pair.sample_id] = (n_in, n_out)
        return pd.DataFrame.from_dict(rows, orient="index", columns=["reads_in", "reads_out"])

    def learn_error_model(self, *, files, direction, work_dir):
        self.calls.append(("learn_error_model", direction))
        rates = pd.DataFrame({"40": [0.001, 0.0003]}, index=["A2A", "A2C"])
        return ErrorModel(direction=direction, rates=rates, converged=self.converged)

    def denoise(self, *, files, model, pool_mode, work_dir):
        self.calls.append(("denoise", model.direction, pool_mode))
        counts = {}
        for sid, path in files.items():
            with dnaio.open(path) as reader:
                counts[sid] = Counter(r.sequence for r in reader)
        table = pd.DataFrame.from_dict(counts, orient="index").fillna(0).astype("int64")
        table = table.reindex(index=list(files.keys()), fill_value=0)
        table.index.name = "sample_id"
        return DenoisedReads(direction=model.direction, table=table)

    @staticmethod
    def _merge(fwd: str, rev: str):
        target = revcomp(rev)
        for k in range(min(len(fwd), len(target)), 0, -1):
            if fwd[-k:] == target[:k]:
                return fwd + target[k:], k
        return None, 0

    def merge_pairs(self, *, forward, forward_files, reverse, reverse_files, settings, work_dir):
        self.calls.append(("merge_pairs", forward.direction, reverse.direction))
        rows = Counter()
        for sid in forward_files:
            with dnaio.open(forward_files[sid], reverse_files[sid]) as reader:
                for r1, r2 in reader:
                    seq, overlap = self._merge(r1.sequence, r2.sequence)
                    if seq is not None:
                        rows[(sid, seq, overlap)] += 1
        pairs = pd.DataFrame(
            [
                {"sample_id": sid, "sequence": seq, "abundance": n,
                 "nmatch": overlap, "nmismatch": 0, "nindel": 0}
                for (sid, seq, overlap), n in rows.items()
            ],
            columns=MERGED_COLUMNS,
        )
        return MergedPairs(sample_ids=tuple(forward_files), pairs=pairs)

    def remove_chimeras(self, *, matrix, method, work_dir):
        self.calls.append(("remove_chimeras", method))
        return matrix.drop(columns=[c for c in matrix.columns if c in self.chimeras])

    def assign_taxonomy(self, *, sequences, reference, ranks, work_dir):
        self.calls.append(("assign_taxonomy", len(sequences)))
        labels = pd.DataFrame([TAXONOMY_LABELS] * len(sequences), index=list(sequences), columns=list(ranks))
        boot = pd.DataFrame([TAXONOMY_BOOT] * len(sequences), index=list(sequences), columns=list(ranks))
        labels.index.name = boot.index.name = "sequence"
        return TaxonomyCalls(labels=labels, confidence=boot)


@pytest.fixture(autouse=True)
def reset_logging_after_test():
    """Reset runner logger state after each test.

    ``setup_logging`` sets propagate=False, which would hide records from
    caplog in later tests.
    """
    yield
    for name in ("dada2_amplicon_runner", "read_tracking"):
        app_logger = logging.getLogger(name)
        for handler in list(app_logger.handlers):
            app_logger.removeHandler(handler)
            handler.close()
        app_logger.setLevel(logging.NOTSET)
        app_logger.propagate = True


@pytest.fixture
def amplicons():
    return make_amplicons()


@pytest.fixture
def reads_dir(tmp_path, amplicons):
    """Two samples: S1 with 100 read pairs, S2 with 200."""
    d = tmp_path / "reads"
    d.mkdir()
    for sid, composition in SAMPLE_COMPOSITION.items():
        write_sample(d, sid, amplicons, composition)
    return d


@pytest.fixture
def fake_backend(amplicons):
    return FakeBackend(chimeras={amplicons["C"]})


@pytest.fixture
def run_config(tmp_path, reads_dir):
    from dada2_amplicon_runner import RunConfig

    reference = tmp_path / "silva_train_set.fa"
    reference.write_text(">Bacteria;Firmicutes;\nACGT\n", encoding="utf-8")
    return RunConfig(
        reads_dir=reads_dir,
        out_dir=tmp_path / "results",
        forward_suffix="_1.fastq",
        reverse_suffix="_2.fastq",
        reference_db=reference,
    )
