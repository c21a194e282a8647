"""
Report session: the single owner of mutable report state.

A session holds the parameter store, the base statistics and the three
stages. Presentation layers (CLI, MCP server) talk only to the session:

    session = build_session(config)
    session.update_parameters(fdr=0.01, logfc=2)
    session.commit("classification")
    session.status_summary()        # {"Up": 12, "Down": 7, "NoChange": 981}
    session.commit("enrichment")
    session.enrichment_table()

Every public method runs under one re-entrant lock, so commits from
concurrent callers are serialized and a reader never sees a stage halfway
through an update.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import pandas as pd

from ..analysis.annotation import AnnotationResolver, HGNCAnnotationResolver
from ..analysis.de_analysis import (
    DEConfig,
    DifferentialExpressionEngine,
    build_base_statistics,
)
from ..analysis.de_result import BaseStatistics
from ..analysis.enrichment import (
    EnrichmentBackend,
    EnrichmentConfig,
    LengthBiasEnrichment,
    load_reference,
)
from ..analysis.loader import load_counts
from ..config import ReportConfig
from ..errors import ComputationError
from .artifacts import DEFAULT_PAGE_SIZE, ArtifactStage, Artifacts, ScatterPoint, TablePage, paginate
from .classification import ClassificationStage, LabeledTable
from .enrichment_stage import NOT_RUN, EnrichmentStage, MaybeOutputs
from .parameters import CLASSIFICATION, ENRICHMENT, ParameterStore

logger = logging.getLogger(__name__)


class ReportSession:
    """
    Interactive differential expression report over one dataset.

    Args:
        base: Base statistics table (built once, read-only).
        backend: Enrichment backend; enrichment commits fail with a
            ComputationError when None.
        store: Parameter store (a fresh one with defaults if None).
    """

    def __init__(
        self,
        base: BaseStatistics,
        backend: Optional[EnrichmentBackend] = None,
        store: Optional[ParameterStore] = None,
    ):
        self.base = base
        self.store = store or ParameterStore()
        self.classification = ClassificationStage(base)
        self.artifact_stage = ArtifactStage()
        self.enrichment = EnrichmentStage(backend) if backend is not None else None
        self._lock = threading.RLock()

    # -----------------------------------------------------------------
    # Parameter edits and commits
    # -----------------------------------------------------------------

    def set_parameter(self, name: str, value: Any) -> None:
        with self._lock:
            self.store.set(name, value)

    def update_parameters(self, **values: Any) -> None:
        with self._lock:
            self.store.update(**values)

    def commit(self, stage: str) -> int:
        """
        Commit ``stage`` and recompute it before returning.

        Returns:
            The new commit counter.

        Raises:
            ComputationError: if the recomputation fails. Outputs computed
                for earlier commits stay available.
        """
        with self._lock:
            if stage == ENRICHMENT and self.enrichment is None:
                raise ComputationError(
                    ENRICHMENT, "No reference annotation configured for enrichment"
                )
            counter = self.store.commit(stage)
            if stage == CLASSIFICATION:
                self._artifacts()
            else:
                self.enrichment.refresh(self.store, self.classification.output(self.store))
            return counter

    # -----------------------------------------------------------------
    # Classification outputs
    # -----------------------------------------------------------------

    def labeled_table(self) -> LabeledTable:
        with self._lock:
            return self.classification.output(self.store)

    def _artifacts(self) -> Artifacts:
        return self.artifact_stage.output(self.classification.output(self.store))

    def status_summary(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._artifacts().summary)

    def ma_scatter(self) -> List[ScatterPoint]:
        with self._lock:
            return list(self._artifacts().scatter)

    def display_table(
        self,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> TablePage:
        with self._lock:
            return paginate(
                self._artifacts().display,
                page=page,
                page_size=page_size,
                status=status,
                search=search,
            )

    def sorted_table(self) -> pd.DataFrame:
        with self._lock:
            return self._artifacts().display.copy()

    # -----------------------------------------------------------------
    # Enrichment outputs
    # -----------------------------------------------------------------

    def enrichment_outputs(self) -> MaybeOutputs:
        with self._lock:
            if self.enrichment is None:
                return NOT_RUN
            return self.enrichment.outputs

    def enrichment_state(self) -> str:
        with self._lock:
            if self.enrichment is None:
                return "unavailable"
            return self.enrichment.state

    def enrichment_table(self):
        outputs = self.enrichment_outputs()
        return outputs.table if outputs else NOT_RUN

    def bias_plot(self):
        outputs = self.enrichment_outputs()
        return outputs.bias_plot if outputs else NOT_RUN

    def bias_weights(self):
        outputs = self.enrichment_outputs()
        return outputs.weights if outputs else NOT_RUN

    # -----------------------------------------------------------------
    # Overview
    # -----------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Counters, parameters and headline results for a status display."""
        with self._lock:
            labeled = self.classification.output(self.store)
            outputs = self.enrichment_outputs()
            last_error = self.enrichment.last_error if self.enrichment else None
            return {
                "genes": len(self.base),
                "live_parameters": self.store.live,
                "counters": {
                    CLASSIFICATION: self.store.counter(CLASSIFICATION),
                    ENRICHMENT: self.store.counter(ENRICHMENT),
                },
                "pending": {
                    CLASSIFICATION: self.store.pending(CLASSIFICATION),
                    ENRICHMENT: self.store.pending(ENRICHMENT),
                },
                "committed_thresholds": {
                    "fdr": labeled.thresholds.fdr,
                    "logfc": labeled.thresholds.logfc,
                    "logcpm": labeled.thresholds.logcpm,
                },
                "status_summary": dict(self._artifacts().summary),
                "enrichment": {
                    "state": self.enrichment_state(),
                    "method": outputs.method if outputs else None,
                    "length_bias": outputs.length_bias if outputs else None,
                    "categories": len(outputs.table) if outputs else None,
                    "last_error": str(last_error) if last_error else None,
                },
            }


def build_session(
    config: ReportConfig,
    engine: Optional[DifferentialExpressionEngine] = None,
    resolver: Optional[AnnotationResolver] = None,
    backend: Optional[EnrichmentBackend] = None,
) -> ReportSession:
    """
    Load the dataset named by ``config`` and run the DE analysis once.

    Collaborators default to what the config asks for: a DE engine with
    ``config.de_method``, the HGNC resolver when ``config.annotate`` is set,
    and the length-bias backend when ``config.reference_dir`` is set.
    """
    try:
        config.validate()
    except ValueError as exc:
        raise ComputationError("load", str(exc)) from exc

    data = load_counts(
        config.counts_path,
        config.samples_path,
        group_column=config.group_column,
        test_group=config.test_group,
        reference_group=config.reference_group,
    )

    engine = engine or DifferentialExpressionEngine(DEConfig(method=config.de_method))
    if resolver is None and config.annotate:
        resolver = HGNCAnnotationResolver(
            id_type=config.id_type,
            cache_path=config.cache_dir / f"hgnc_{config.id_type}.tsv",
        )
    base = build_base_statistics(data, engine=engine, resolver=resolver)

    if backend is None and config.reference_dir is not None:
        reference = load_reference(config.reference_dir, config.genome, config.id_type)
        backend = LengthBiasEnrichment(
            reference, EnrichmentConfig(genome=config.genome, id_type=config.id_type)
        )

    logger.info(
        "Report ready: %d genes, enrichment %s",
        len(base),
        "available" if backend is not None else "unavailable",
    )
    return ReportSession(base, backend=backend)
