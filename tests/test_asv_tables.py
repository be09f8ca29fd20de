import pandas as pd
import pandas.testing as pdt
import pytest

from asv_tables import (
    MERGED_COLUMNS,
    RANKS,
    apply_overlap_policy,
    asv_ids,
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


def _pairs(rows):
    return pd.DataFrame(rows, columns=MERGED_COLUMNS)


# ---------------------------------------------------------------------------
# TestWideTables
# ---------------------------------------------------------------------------
class TestWideTables:
    """TSV round trip of sample x sequence matrices."""

    def test_numeric_looking_sample_ids_stay_strings(self, tmp_path):
        table = pd.DataFrame({"ACGT": [3, 0], "TTTT": [1, 2]}, index=pd.Index(["001", "010"], name="sample_id"))
        path = write_wide_table(table=table, path=tmp_path / "m.tsv")
        back = read_wide_table(path=path)
        assert list(back.index) == ["001", "010"]
        assert back.loc["010", "TTTT"] == 2
        assert (back.dtypes == "int64").all()

    def test_read_merged_pairs_requires_columns(self, tmp_path):
        path = tmp_path / "bad.tsv"
        path.write_text("sample_id\tsequence\nS1\tACGT\n", encoding="utf-8")
        with pytest.raises(ValueError, match="abundance"):
            read_merged_pairs(path=path)


# ---------------------------------------------------------------------------
# TestMergePolicy
# ---------------------------------------------------------------------------
class TestMergePolicy:
    """Overlap filtering and the abundance matrix."""

    def test_overlap_policy(self):
        pairs = _pairs([
            ["S1", "AAAA", 10, 20, 0, 0],   # kept
            ["S1", "CCCC", 5, 8, 0, 0],     # overlap too short
            ["S2", "GGGG", 7, 19, 1, 0],    # one mismatch
        ])
        kept, rejected = apply_overlap_policy(pairs=pairs, min_overlap=12, max_mismatch=0)
        assert kept["sequence"].tolist() == ["AAAA"]
        assert rejected == 2

        kept, rejected = apply_overlap_policy(pairs=pairs, min_overlap=12, max_mismatch=1)
        assert kept["sequence"].tolist() == ["AAAA", "GGGG"]
        assert rejected == 1

    def test_identical_sequences_share_a_column(self):
        pairs = _pairs([
            ["S1", "ACGT", 10, 20, 0, 0],
            ["S2", "ACGT", 4, 20, 0, 0],
            ["S2", "TTGA", 30, 20, 0, 0],
        ])
        matrix = build_abundance_matrix(pairs=pairs, sample_ids=["S1", "S2", "S3"])
        assert list(matrix.columns) == ["TTGA", "ACGT"]
        assert list(matrix.index) == ["S1", "S2", "S3"]
        assert matrix.loc["S1"].tolist() == [0, 10]
        assert matrix.loc["S3"].tolist() == [0, 0]
        assert (matrix >= 0).all().all()

    def test_empty_pairs_give_empty_matrix(self):
        matrix = build_abundance_matrix(pairs=_pairs([]), sample_ids=["S1"])
        assert matrix.shape == (1, 0)

    def test_overlong_sequences_are_dropped_not_truncated(self):
        long_seq = "A" * 500
        ok_seq = "C" * 450
        matrix = pd.DataFrame({long_seq: [3, 4], ok_seq: [10, 0]}, index=["S1", "S2"])
        kept, dropped = drop_overlong_variants(matrix=matrix, max_length=450)
        assert list(kept.columns) == [ok_seq]
        assert dropped.to_dict("records") == [{"sequence": long_seq, "length": 500, "abundance": 7}]
        assert all(len(c) <= 450 for c in kept.columns)


# ---------------------------------------------------------------------------
# TestChimeraChecks
# ---------------------------------------------------------------------------
class TestChimeraChecks:
    """Validation of the chimera-free matrix."""

    @pytest.fixture
    def before(self):
        return pd.DataFrame({"AAA": [10, 5], "CCC": [3, 3], "GGG": [1, 0]}, index=["S1", "S2"])

    def test_valid_subset_passes(self, before):
        after = before[["AAA", "CCC"]]
        check_chimera_result(before=before, after=after)
        diag = chimera_diagnostics(before=before, after=after)
        assert diag["input_variants"] == 3
        assert diag["removed_variants"] == 1
        assert diag["removed_fraction"] == pytest.approx(1 / 22)

    def test_new_column_rejected(self, before):
        after = before.assign(TTT=[1, 1])
        with pytest.raises(ValueError, match="unseen"):
            check_chimera_result(before=before, after=after)

    def test_growing_row_rejected(self, before):
        after = before.copy()
        after.loc["S2", "GGG"] = 5
        with pytest.raises(ValueError, match="increased"):
            check_chimera_result(before=before, after=after)

    def test_changed_rows_rejected(self, before):
        with pytest.raises(ValueError, match="sample rows"):
            check_chimera_result(before=before, after=before.loc[["S1"]])


# ---------------------------------------------------------------------------
# TestTaxonomyMasking
# ---------------------------------------------------------------------------
class TestTaxonomyMasking:
    """Bootstrap thresholds and rank truncation."""

    def _calls(self, boots):
        labels = pd.DataFrame(
            [["Bacteria", "Proteobacteria", "Gammaproteobacteria", "Enterobacterales",
              "Enterobacteriaceae", "Escherichia", "coli"]],
            index=["ACGT"], columns=list(RANKS),
        )
        confidence = pd.DataFrame([boots], index=["ACGT"], columns=list(RANKS))
        return labels, confidence

    def test_genus_below_threshold_is_unresolved(self):
        labels, confidence = self._calls([100, 100, 100, 95, 90, 42, 10])
        masked = mask_low_confidence(labels=labels, confidence=confidence, max_rank="Genus", min_boot=50)
        assert list(masked.columns) == list(RANKS[:6])
        assert masked.loc["ACGT", "Family"] == "Enterobacteriaceae"
        assert pd.isna(masked.loc["ACGT", "Genus"])

    def test_ranks_below_unresolved_rank_are_unresolved(self):
        labels, confidence = self._calls([100, 30, 100, 100, 100, 100, 100])
        masked = mask_low_confidence(labels=labels, confidence=confidence, max_rank="Species", min_boot=50)
        assert masked.loc["ACGT", "Kingdom"] == "Bacteria"
        assert masked.loc["ACGT"].iloc[1:].isna().all()

    def test_missing_label_is_unresolved(self):
        labels, confidence = self._calls([100] * 7)
        labels.loc["ACGT", "Order"] = None
        masked = mask_low_confidence(labels=labels, confidence=confidence, max_rank="Genus", min_boot=50)
        assert masked.loc["ACGT", "Class"] == "Gammaproteobacteria"
        assert masked.loc["ACGT", ["Order", "Family", "Genus"]].isna().all()

    def test_unknown_rank_rejected(self):
        labels, confidence = self._calls([100] * 7)
        with pytest.raises(ValueError, match="Unknown rank"):
            mask_low_confidence(labels=labels, confidence=confidence, max_rank="domain", min_boot=50)


# ---------------------------------------------------------------------------
# TestExports
# ---------------------------------------------------------------------------
class TestExports:
    """phyloseq-ready files."""

    def test_asv_ids(self):
        assert asv_ids(sequences=["A", "C", "G"]) == ["ASV1", "ASV2", "ASV3"]

    def test_fasta_counts_and_taxonomy(self, tmp_path):
        matrix = pd.DataFrame({"AAAA": [5, 1], "CCCC": [0, 2]}, index=pd.Index(["S1", "S2"], name="sample_id"))
        seqs = list(matrix.columns)

        write_asv_fasta(sequences=seqs, out_path=tmp_path / "asv_seqs.fasta")
        assert (tmp_path / "asv_seqs.fasta").read_text(encoding="utf-8") == ">ASV1\nAAAA\n>ASV2\nCCCC\n"

        write_asv_counts(matrix=matrix, out_path=tmp_path / "asv_counts.tsv")
        counts = pd.read_csv(tmp_path / "asv_counts.tsv", sep="\t", index_col="asv_id")
        pdt.assert_frame_equal(
            counts,
            pd.DataFrame({"S1": [5, 0], "S2": [1, 2]}, index=pd.Index(["ASV1", "ASV2"], name="asv_id")),
        )

        taxonomy = pd.DataFrame({"Kingdom": ["Bacteria"]}, index=pd.Index(["AAAA"], name="sequence"))
        write_asv_taxonomy(taxonomy=taxonomy, sequences=seqs, out_path=tmp_path / "asv_taxonomy.tsv")
        lines = (tmp_path / "asv_taxonomy.tsv").read_text(encoding="utf-8").splitlines()
        assert lines == ["asv_id\tsequence\tKingdom", "ASV1\tAAAA\tBacteria", "ASV2\tCCCC\t"]
