"""
Enrichment stage: length-bias weighting plus category testing.

The stage has two states:

* **unrun**: its commit counter is still 0. Every output is the ``NOT_RUN``
  sentinel and no computation happens.
* **ready**: at least one commit has been processed. Each further commit
  recomputes the weights and the category table together, reading the
  labeled table current at that moment and the committed length-bias flag.

A stage never goes back from ready to unrun. When a computation fails the
stage raises :class:`ComputationError`, records it as ``last_error`` and
keeps serving the previous result (or stays unrun if there was none). The
failed commit is still marked as processed, so reads do not retry it.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import pandas as pd

from ..analysis.enrichment import (
    EnrichmentBackend,
    method_for,
    normalize_enrichment_columns,
)
from ..errors import ComputationError
from .classification import LabeledTable
from .parameters import ENRICHMENT, ParameterStore

logger = logging.getLogger(__name__)

UNRUN = "unrun"
READY = "ready"


class _NotRun:
    """Sentinel for "enrichment has never been run"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_RUN"


NOT_RUN = _NotRun()


@dataclass(frozen=True)
class EnrichmentOutputs:
    """Everything one enrichment run produces.

    Attributes:
        counter: Enrichment commit counter this run belongs to.
        classification_counter: Classification commit whose labels were used.
        length_bias: Committed length-bias option.
        method: Category test that ran.
        weights: Per-gene DE label, gene length and bias weight.
        bias_plot: Binned DE proportion vs. length with the fitted curve.
        table: Category results in the fixed enrichment schema.
    """

    counter: int
    classification_counter: int
    length_bias: bool
    method: str
    weights: pd.DataFrame
    bias_plot: pd.DataFrame
    table: pd.DataFrame


MaybeOutputs = Union[EnrichmentOutputs, _NotRun]


class EnrichmentStage:
    """Commit-gated enrichment with a first-pass skip."""

    def __init__(self, backend: EnrichmentBackend):
        self.backend = backend
        self._outputs: MaybeOutputs = NOT_RUN
        self._processed = 0
        self.last_error: Optional[ComputationError] = None
        self.runs = 0

    @property
    def state(self) -> str:
        return UNRUN if self._outputs is NOT_RUN else READY

    @property
    def outputs(self) -> MaybeOutputs:
        return self._outputs

    @property
    def weights(self):
        return self._outputs.weights if self._outputs else NOT_RUN

    @property
    def bias_plot(self):
        return self._outputs.bias_plot if self._outputs else NOT_RUN

    @property
    def table(self):
        return self._outputs.table if self._outputs else NOT_RUN

    def refresh(self, store: ParameterStore, labeled: LabeledTable) -> MaybeOutputs:
        """
        Bring the stage up to date with the store's enrichment counter.

        Returns:
            Current outputs, or ``NOT_RUN`` before the first commit.

        Raises:
            ComputationError: if the weighting or the category test fails
                for the newly committed counter.
        """
        counter, params = store.committed(ENRICHMENT)
        if counter == 0 or counter <= self._processed:
            return self._outputs

        self._processed = counter
        method = method_for(params.length_bias)
        logger.info(
            "Enrichment #%d: %s on classification #%d (%d DE genes)",
            counter,
            method,
            labeled.counter,
            labeled.n_de,
        )

        try:
            labels = labeled.de_labels()
            weighting = self.backend.weigh(labels)
            table = normalize_enrichment_columns(self.backend.test(weighting, method))
        except ComputationError as exc:
            self.last_error = exc
            logger.error("Enrichment #%d failed: %s", counter, exc)
            raise
        except Exception as exc:
            self.last_error = ComputationError(ENRICHMENT, str(exc))
            logger.error("Enrichment #%d failed: %s", counter, exc)
            raise self.last_error from exc

        self._outputs = EnrichmentOutputs(
            counter=counter,
            classification_counter=labeled.counter,
            length_bias=params.length_bias,
            method=method,
            weights=weighting.weights,
            bias_plot=weighting.bias_plot,
            table=table,
        )
        self.last_error = None
        self.runs += 1
        logger.info("Enrichment #%d complete: %d categories tested", counter, len(table))
        return self._outputs
