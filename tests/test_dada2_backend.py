import subprocess
from pathlib import Path
from unittest import mock

import pandas as pd
import pytest

import dada2_backend
from dada2_backend import (
    BackendError,
    DenoisedReads,
    ErrorModel,
    FilterSettings,
    MergedPairs,
    R_SCRIPTS,
    RscriptDada2Backend,
    resolve_rscript,
    run_cmd,
)
from discover_read_pairs import ReadFilePair


RSCRIPT = "/opt/R/bin/Rscript"


@pytest.fixture
def backend(tmp_path):
    return RscriptDada2Backend(logs_dir=tmp_path / "logs", threads=4, rscript=RSCRIPT)


# ---------------------------------------------------------------------------
# TestHelpers
# ---------------------------------------------------------------------------
class TestHelpers:
    def test_resolve_rscript_prefers_user_arg(self):
        assert resolve_rscript(user_arg="/x/Rscript") == "/x/Rscript"

    def test_resolve_rscript_missing(self, monkeypatch):
        monkeypatch.setattr(dada2_backend.shutil, "which", lambda name: None)
        with pytest.raises(BackendError, match="Rscript"):
            resolve_rscript(user_arg=None)

    def test_run_cmd_tees_output(self, tmp_path):
        log = tmp_path / "logs" / "step.log"
        run_cmd(cmd=["echo", "hello"], log_file=log)
        text = log.read_text(encoding="utf-8")
        assert "$ echo hello" in text
        assert "hello\n" in text

    def test_run_cmd_raises_on_failure(self, tmp_path):
        with pytest.raises(subprocess.CalledProcessError):
            run_cmd(cmd=["false"], log_file=tmp_path / "fail.log")

    def test_every_step_has_an_r_program(self):
        assert set(R_SCRIPTS) == {"filter", "learn_errors", "denoise", "merge", "chimeras", "taxonomy"}
        assert "removeBimeraDenovo" in R_SCRIPTS["chimeras"]
        assert "outputBootstraps = TRUE" in R_SCRIPTS["taxonomy"]


# ---------------------------------------------------------------------------
# TestRscriptBackend
# ---------------------------------------------------------------------------
class TestRscriptBackend:
    """Command construction and output parsing, with Rscript mocked out."""

    def test_remove_chimeras_command(self, backend, tmp_path):
        matrix = pd.DataFrame({"AAAA": [5, 1], "CCCC": [2, 2]}, index=pd.Index(["S1", "S2"], name="sample_id"))

        def fake_run(*, cmd, log_file, logger=None):
            Path(cmd[-1]).write_text("sample_id\tAAAA\nS1\t5\nS2\t1\n", encoding="utf-8")

        with mock.patch.object(dada2_backend, "run_cmd", side_effect=fake_run) as run:
            result = backend.remove_chimeras(matrix=matrix, method="consensus", work_dir=tmp_path / "ck")

        cmd = run.call_args.kwargs["cmd"]
        assert cmd[:2] == [RSCRIPT, "--vanilla"]
        assert cmd[2].endswith("05_remove_chimeras.R")
        assert cmd[3] == "4"
        assert cmd[-2] == "consensus"
        assert run.call_args.kwargs["log_file"] == tmp_path / "logs" / "05_remove_chimeras.log"
        assert "removeBimeraDenovo" in Path(cmd[2]).read_text(encoding="utf-8")
        assert list(result.columns) == ["AAAA"]
        assert list(result.index) == ["S1", "S2"]

    def test_failed_step_becomes_backend_error(self, backend, tmp_path):
        matrix = pd.DataFrame({"AAAA": [5]}, index=["S1"])
        error = subprocess.CalledProcessError(returncode=1, cmd=["Rscript"])
        with mock.patch.object(dada2_backend, "run_cmd", side_effect=error):
            with pytest.raises(BackendError, match="05_remove_chimeras"):
                backend.remove_chimeras(matrix=matrix, method="consensus", work_dir=tmp_path)

    def test_missing_output_becomes_backend_error(self, backend, tmp_path):
        matrix = pd.DataFrame({"AAAA": [5]}, index=["S1"])
        with mock.patch.object(dada2_backend, "run_cmd"):
            with pytest.raises(BackendError, match="not found"):
                backend.remove_chimeras(matrix=matrix, method="consensus", work_dir=tmp_path)

    def test_learn_errors_reports_non_convergence(self, backend, tmp_path):
        def fake_run(*, cmd, log_file, logger=None):
            rds, rates, status = (Path(p) for p in cmd[-3:])
            rds.write_bytes(b"RDS")
            rates.write_text("transition\t40\nA2A\t0.99\nA2C\t0.001\n", encoding="utf-8")
            status.write_text("key\tvalue\nconverged\tFALSE\n", encoding="utf-8")

        with mock.patch.object(dada2_backend, "run_cmd", side_effect=fake_run) as run:
            model = backend.learn_error_model(files=[tmp_path / "a.fq.gz"], direction="R", work_dir=tmp_path)

        assert run.call_args.kwargs["cmd"][2].endswith("02_learn_errors_R.R")
        assert model.direction == "R"
        assert model.converged is False
        assert model.handle == tmp_path / "error_model_R.rds"
        assert list(model.rates.index) == ["A2A", "A2C"]

    def test_filter_reads_manifest_and_counts(self, backend, tmp_path):
        raw = [ReadFilePair("007", tmp_path / "007_1.fq", tmp_path / "007_2.fq")]
        out = [ReadFilePair("007", tmp_path / "filt" / "007_F.fq.gz", tmp_path / "filt" / "007_R.fq.gz")]
        (tmp_path / "filt").mkdir()

        def fake_run(*, cmd, log_file, logger=None):
            assert cmd[5:10] == ["2", "0", "2.0", "3.0", "TRUE"]
            Path(cmd[-1]).write_text("sample_id\treads_in\treads_out\n007\t10\t8\n", encoding="utf-8")

        with mock.patch.object(dada2_backend, "run_cmd", side_effect=fake_run):
            stats = backend.filter_reads(pairs=raw, filtered=out, settings=FilterSettings(max_ee=(2.0, 3.0)))

        assert stats.loc["007"].tolist() == [10, 8]
        manifest = pd.read_csv(tmp_path / "filt" / "filter_input.tsv", sep="\t", dtype=str)
        assert manifest.loc[0, "filtered_reverse"] == str(out[0].reverse)

    def test_unknown_pool_mode(self, backend, tmp_path):
        model = ErrorModel(direction="F", rates=pd.DataFrame(), converged=True, handle=None)
        with pytest.raises(BackendError, match="pool mode"):
            backend.denoise(files={}, model=model, pool_mode="greedy", work_dir=tmp_path)

    def test_denoise_needs_error_model_artefact(self, backend, tmp_path):
        model = ErrorModel(direction="F", rates=pd.DataFrame(), converged=True, handle=None)
        with pytest.raises(BackendError, match="no DADA2 artefact"):
            backend.denoise(files={}, model=model, pool_mode="pooled", work_dir=tmp_path)

    def test_merge_needs_denoised_artefacts(self, backend, tmp_path):
        forward = DenoisedReads(direction="F", table=pd.DataFrame())
        reverse = DenoisedReads(direction="R", table=pd.DataFrame())
        with pytest.raises(BackendError, match="Denoised F"):
            backend.merge_pairs(
                forward=forward, forward_files={}, reverse=reverse, reverse_files={},
                settings=dada2_backend.MergeSettings(), work_dir=tmp_path,
            )

    def test_unknown_chimera_method(self, backend, tmp_path):
        with pytest.raises(BackendError, match="chimera method"):
            backend.remove_chimeras(matrix=pd.DataFrame(), method="strict", work_dir=tmp_path)

    def test_missing_reference(self, backend, tmp_path):
        with pytest.raises(BackendError, match="Reference database not found"):
            backend.assign_taxonomy(
                sequences=["ACGT"], reference=tmp_path / "silva.fa", ranks=["Kingdom"], work_dir=tmp_path,
            )


class TestResults:
    def test_merged_totals_include_empty_samples(self):
        pairs = pd.DataFrame({"sample_id": ["S1", "S1"], "abundance": [3, 4]})
        merged = MergedPairs(sample_ids=("S1", "S2"), pairs=pairs)
        assert merged.totals().to_dict() == {"S1": 7, "S2": 0}
