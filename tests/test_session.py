"""Tests for the report session: commit gating across all three stages."""

import threading

import pandas as pd
import pytest

from de_explorer.analysis.de_result import BaseStatistics
from de_explorer.analysis.enrichment import EnrichmentConfig, LengthBiasEnrichment
from de_explorer.config import ReportConfig
from de_explorer.errors import ComputationError, ParameterError
from de_explorer.report.enrichment_stage import NOT_RUN
from de_explorer.report.session import ReportSession, build_session


class TestClassificationFlow:

    def test_default_report_before_any_commit(self, session):
        assert session.status_summary() == {"Up": 3, "Down": 2, "NoChange": 3}
        assert session.labeled_table().counter == 0

    def test_edits_without_commit_change_nothing(self, session):
        before = session.status_summary()
        session.update_parameters(fdr=0.001, logfc=3)
        assert session.status_summary() == before
        assert session.classification.runs == 1

    def test_commit_applies_all_edits_once(self, session):
        session.status_summary()
        session.set_parameter("fdr", 0.02)
        session.set_parameter("logcpm", 5)

        assert session.commit("classification") == 1
        assert session.classification.runs == 2
        # FDR < 0.02 and logCPM > 5: G1 Up, G2 Down
        assert session.status_summary() == {"Up": 1, "Down": 1, "NoChange": 6}
        session.ma_scatter()
        session.display_table()
        assert session.classification.runs == 2
        assert session.artifact_stage.runs == 2

    def test_summary_sums_to_gene_count(self, session):
        session.set_parameter("logfc", 0)
        session.commit("classification")
        assert sum(session.status_summary().values()) == len(session.base)

    def test_invalid_edit_rejected(self, session):
        with pytest.raises(ParameterError):
            session.set_parameter("fdr", 0.9)
        assert session.store.get("fdr") == 0.05

    def test_display_table(self, session):
        page = session.display_table(page=1, page_size=5, status="Up")
        assert page.rows["gene_id"].tolist() == ["G5", "G1", "G3"]
        assert session.sorted_table()["gene_id"].iloc[0] == "G5"

    def test_ma_scatter(self, session):
        points = session.ma_scatter()
        assert len(points) == 8
        assert sum(p.is_de for p in points) == 5


class TestEnrichmentFlow:

    def test_not_run_until_committed(self, session, backend):
        session.commit("classification")
        assert session.enrichment_state() == "unrun"
        assert session.enrichment_table() is NOT_RUN
        assert session.bias_plot() is NOT_RUN
        assert session.bias_weights() is NOT_RUN
        assert backend.calls == []

    def test_commit_runs_enrichment(self, session):
        assert session.commit("enrichment") == 1
        assert session.enrichment_state() == "ready"
        assert session.enrichment_outputs().method == "Wallenius"
        assert len(session.enrichment_table()) == 2
        assert session.bias_weights()["de"].sum() == 5

    def test_reads_labels_current_at_commit(self, session, backend):
        session.set_parameter("fdr", 0.005)
        session.commit("classification")
        session.commit("enrichment")

        _, labels = backend.calls[0]
        assert labels.sum() == 1  # only G5 has FDR < 0.005
        assert session.enrichment_outputs().classification_counter == 1

    def test_classification_commit_alone_does_not_rerun(self, session, backend):
        session.commit("enrichment")
        first = session.enrichment_outputs()

        session.set_parameter("fdr", 0.005)
        session.commit("classification")

        assert session.enrichment_outputs() is first
        assert len(backend.calls) == 2

    def test_flag_toggle_requires_commit(self, session):
        session.commit("enrichment")
        session.set_parameter("length_bias", False)
        assert session.enrichment_outputs().method == "Wallenius"

        session.commit("enrichment")
        assert session.enrichment_outputs().method == "Hypergeometric"
        assert session.enrichment_outputs().length_bias is False

    def test_failure_keeps_previous_result(self, session, backend):
        session.commit("enrichment")
        good = session.enrichment_outputs()

        backend.fail = True
        with pytest.raises(ComputationError) as excinfo:
            session.commit("enrichment")

        assert excinfo.value.stage == "enrichment"
        assert session.store.counter("enrichment") == 2
        assert session.enrichment_outputs() is good
        assert session.snapshot()["enrichment"]["last_error"] is not None

    def test_without_backend(self, base_stats):
        session = ReportSession(base_stats)
        assert session.enrichment_state() == "unavailable"
        assert session.enrichment_table() is NOT_RUN
        with pytest.raises(ComputationError) as excinfo:
            session.commit("enrichment")
        assert excinfo.value.stage == "enrichment"
        assert session.store.counter("enrichment") == 0

    def test_with_length_bias_backend(self, synthetic_labels, synthetic_reference):
        frame = pd.DataFrame(
            {
                "gene_id": synthetic_labels.index,
                "log_fc": synthetic_labels.to_numpy() * 3.0,
                "log_cpm": 5.0,
                "pvalue": 0.5 - synthetic_labels.to_numpy() * 0.4999,
                "fdr": 0.6 - synthetic_labels.to_numpy() * 0.599,
            }
        )
        backend = LengthBiasEnrichment(synthetic_reference, EnrichmentConfig(bin_size=50))
        session = ReportSession(BaseStatistics.from_frame(frame), backend=backend)

        session.commit("enrichment")

        table = session.enrichment_table()
        assert set(table["category"]) == {"CAT_SHORT", "CAT_MID", "CAT_LONG"}
        assert table.set_index("category").loc["CAT_LONG", "num_de_in_cat"] == 60
        assert len(session.bias_plot()) == 8


class TestSnapshot:

    def test_contents(self, session):
        session.set_parameter("logfc", 2)
        snapshot = session.snapshot()

        assert snapshot["genes"] == 8
        assert snapshot["counters"] == {"classification": 0, "enrichment": 0}
        assert snapshot["pending"] == {"classification": True, "enrichment": False}
        assert snapshot["live_parameters"]["logfc"] == 2.0
        assert snapshot["committed_thresholds"]["logfc"] == 1.0
        assert snapshot["enrichment"]["state"] == "unrun"
        assert snapshot["status_summary"]["Up"] == 3


class TestConcurrency:

    def test_concurrent_commits_are_serialized(self, session):
        def worker():
            for _ in range(10):
                session.commit("classification")
                session.status_summary()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.store.counter("classification") == 40
        assert session.labeled_table().counter == 40


class TestBuildSession:

    def test_missing_inputs(self):
        with pytest.raises(ComputationError) as excinfo:
            build_session(ReportConfig())
        assert excinfo.value.stage == "load"

    def test_builds_from_files(self, tmp_path):
        counts = tmp_path / "counts.tsv"
        samples = tmp_path / "samples.tsv"
        rows = ["gene_id\tC1\tC2\tC3\tT1\tT2\tT3"]
        rows.append("UP\t100\t110\t95\t800\t820\t790")
        rows.append("FLAT\t500\t520\t480\t505\t495\t515")
        rows.append("DOWN\t800\t790\t810\t100\t95\t105")
        counts.write_text("\n".join(rows) + "\n")
        samples.write_text(
            "sample\tgroup\nC1\tctrl\nC2\tctrl\nC3\tctrl\nT1\ttrt\nT2\ttrt\nT3\ttrt\n"
        )
        config = ReportConfig(
            counts_path=counts, samples_path=samples, de_method="welch_t", annotate=False
        )

        session = build_session(config)

        assert len(session.base) == 3
        assert session.enrichment_state() == "unavailable"
        assert session.base.provenance.reference_group == "ctrl"
