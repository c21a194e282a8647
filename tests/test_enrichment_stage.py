"""Tests for the commit-gated enrichment stage."""

import pytest

from de_explorer.analysis.enrichment import ENRICHMENT_COLUMNS, HYPERGEOMETRIC, WALLENIUS
from de_explorer.errors import ComputationError
from de_explorer.report.classification import label_table
from de_explorer.report.enrichment_stage import NOT_RUN, READY, UNRUN, EnrichmentStage
from de_explorer.report.parameters import ENRICHMENT, ParameterStore, ThresholdParameters


@pytest.fixture
def labeled(base_stats):
    return label_table(base_stats, ThresholdParameters(), counter=0)


class TestNotRunSentinel:

    def test_falsy_singleton(self):
        assert not NOT_RUN
        assert type(NOT_RUN)() is NOT_RUN
        assert repr(NOT_RUN) == "NOT_RUN"


class TestBeforeFirstCommit:

    def test_all_outputs_not_run(self, backend):
        stage = EnrichmentStage(backend)
        assert stage.state == UNRUN
        assert stage.outputs is NOT_RUN
        assert stage.table is NOT_RUN
        assert stage.weights is NOT_RUN
        assert stage.bias_plot is NOT_RUN

    def test_refresh_skips_computation(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.set("length_bias", False)

        assert stage.refresh(store, labeled) is NOT_RUN
        assert backend.calls == []
        assert stage.state == UNRUN


class TestAfterCommit:

    def test_ready_with_all_outputs(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)

        outputs = stage.refresh(store, labeled)

        assert stage.state == READY
        assert outputs.counter == 1
        assert outputs.method == WALLENIUS
        assert outputs.length_bias is True
        assert list(outputs.table.columns[: len(ENRICHMENT_COLUMNS)]) == ENRICHMENT_COLUMNS
        assert outputs.table["num_de_in_cat"].iloc[0] == labeled.n_de
        assert stage.table is outputs.table
        assert stage.weights is outputs.weights

    def test_uses_labels_from_classification(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        stage.refresh(store, labeled)

        _, labels = backend.calls[0]
        assert labels.to_dict() == labeled.de_labels().to_dict()

    def test_no_recompute_without_commit(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        first = stage.refresh(store, labeled)

        store.set("length_bias", False)
        assert stage.refresh(store, labeled) is first
        assert stage.runs == 1

    def test_flag_change_recomputes_both_results(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        stage.refresh(store, labeled)

        store.set("length_bias", False)
        store.commit(ENRICHMENT)
        outputs = stage.refresh(store, labeled)

        assert outputs.method == HYPERGEOMETRIC
        assert outputs.counter == 2
        assert [c[0] for c in backend.calls] == ["weigh", "test", "weigh", "test"]
        assert backend.calls[3] == ("test", HYPERGEOMETRIC)

    def test_never_returns_to_unrun(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        stage.refresh(store, labeled)

        backend.fail = True
        store.commit(ENRICHMENT)
        with pytest.raises(ComputationError):
            stage.refresh(store, labeled)
        assert stage.state == READY


class TestFailures:

    def test_first_run_failure_stays_unrun(self, failing_backend, labeled):
        stage = EnrichmentStage(failing_backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)

        with pytest.raises(ComputationError) as excinfo:
            stage.refresh(store, labeled)

        assert excinfo.value.stage == "enrichment"
        assert "not found" in excinfo.value.message
        assert stage.state == UNRUN
        assert stage.table is NOT_RUN
        assert stage.last_error is excinfo.value

    def test_failed_commit_is_not_retried(self, failing_backend, labeled):
        stage = EnrichmentStage(failing_backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        with pytest.raises(ComputationError):
            stage.refresh(store, labeled)

        assert stage.refresh(store, labeled) is NOT_RUN
        assert len(failing_backend.calls) == 1

    def test_previous_result_kept(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        store.commit(ENRICHMENT)
        good = stage.refresh(store, labeled)

        backend.fail = True
        store.commit(ENRICHMENT)
        with pytest.raises(ComputationError):
            stage.refresh(store, labeled)

        assert stage.outputs is good
        assert stage.last_error is not None

    def test_success_clears_last_error(self, backend, labeled):
        stage = EnrichmentStage(backend)
        store = ParameterStore()
        backend.fail = True
        store.commit(ENRICHMENT)
        with pytest.raises(ComputationError):
            stage.refresh(store, labeled)

        backend.fail = False
        store.commit(ENRICHMENT)
        stage.refresh(store, labeled)
        assert stage.last_error is None
        assert stage.state == READY
