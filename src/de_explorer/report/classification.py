"""
Classification stage: assign Up / Down / NoChange to every gene.

``classify`` is a pure function of the base table and a set of thresholds.
``ClassificationStage`` memoizes it on the base table identity and the
classification commit counter, so any number of threshold edits between two
commits cost exactly one recomputation.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, Optional, Tuple

import numpy as np
import pandas as pd

from ..analysis.de_result import (
    FDR,
    GENE_ID,
    LOG_CPM,
    LOG_FC,
    STATUS,
    BaseStatistics,
    GeneRecord,
    Status,
)
from ..errors import ComputationError
from .parameters import CLASSIFICATION, ParameterStore, ThresholdParameters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LabeledTable:
    """
    Base statistics with a Status column, as of one classification commit.

    Attributes:
        frame: Same rows and order as the base table plus ``status``.
        counter: Classification commit counter this table was built for.
        thresholds: The committed thresholds used to build it.
    """

    frame: pd.DataFrame
    counter: int
    thresholds: ThresholdParameters

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def n_up(self) -> int:
        return int((self.frame[STATUS] == Status.UP.value).sum())

    @property
    def n_down(self) -> int:
        return int((self.frame[STATUS] == Status.DOWN.value).sum())

    @property
    def n_de(self) -> int:
        return self.n_up + self.n_down

    def de_labels(self) -> pd.Series:
        """Binary DE indicator (1 = Up or Down) keyed by gene identifier."""
        labels = pd.Series(
            (self.frame[STATUS] != Status.NO_CHANGE.value).astype(int).to_numpy(),
            index=pd.Index(self.frame[GENE_ID].to_numpy(), name=GENE_ID),
        )
        return labels

    def records(self) -> Iterator[GeneRecord]:
        for row in self.frame.to_dict(orient="records"):
            yield GeneRecord.from_row(row)

    def to_dict(self) -> Dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "counter": self.counter,
            "thresholds": asdict(self.thresholds),
            "summary": {"n_up": self.n_up, "n_down": self.n_down},
            "genes": [r.to_dict() for r in self.records()],
        }

    def __repr__(self) -> str:
        return (
            f"LabeledTable(counter={self.counter}, genes={len(self)}, "
            f"up={self.n_up}, down={self.n_down})"
        )


def classify(frame: pd.DataFrame, thresholds: ThresholdParameters) -> pd.Series:
    """
    Status for every row of a statistics frame.

    First matching rule wins:

    1. Up: FDR < fdr, logCPM > logcpm, logFC > +logfc
    2. Down: FDR < fdr, logCPM > logcpm, logFC < -logfc
    3. NoChange otherwise

    Comparisons with NaN are false, so genes with missing statistics fall
    through to NoChange.
    """
    passes = (frame[FDR] < thresholds.fdr) & (frame[LOG_CPM] > thresholds.logcpm)
    up = passes & (frame[LOG_FC] > thresholds.logfc)
    down = passes & (frame[LOG_FC] < -thresholds.logfc)

    status = np.select(
        [up.to_numpy(), down.to_numpy()],
        [Status.UP.value, Status.DOWN.value],
        default=Status.NO_CHANGE.value,
    )
    return pd.Series(status, index=frame.index, name=STATUS)


def label_table(
    base: BaseStatistics, thresholds: ThresholdParameters, counter: int = 0
) -> LabeledTable:
    """Build a labeled copy of ``base``; the base frame is left untouched."""
    frame = base.frame.copy()
    frame[STATUS] = classify(frame, thresholds)
    return LabeledTable(frame=frame, counter=counter, thresholds=thresholds)


class ClassificationStage:
    """
    Memoized classification of one base statistics table.

    Before the first commit the stage classifies with the store's initial
    thresholds (the counter-0 snapshot), so a report always has a labeled
    table to show.

    Example:
        stage = ClassificationStage(base)
        table = stage.output(store)     # computed
        table = stage.output(store)     # cached, same object
        store.commit("classification")
        table = stage.output(store)     # recomputed once
    """

    def __init__(self, base: BaseStatistics):
        self.base = base
        self._key: Optional[Tuple[int, int]] = None
        self._output: Optional[LabeledTable] = None
        self.runs = 0

    @property
    def version(self) -> Optional[int]:
        """Commit counter of the cached output, or None before first run."""
        return self._output.counter if self._output is not None else None

    def output(self, store: ParameterStore) -> LabeledTable:
        """Labeled table for the store's current classification commit."""
        counter, thresholds = store.committed(CLASSIFICATION)
        key = (id(self.base), counter)
        if self._output is not None and self._key == key:
            return self._output

        if self._output is not None and counter < self._output.counter:
            # A newer result is already installed
            return self._output

        try:
            labeled = label_table(self.base, thresholds, counter)
        except (KeyError, TypeError) as exc:
            raise ComputationError(CLASSIFICATION, f"Could not classify genes: {exc}") from exc

        self._key = key
        self._output = labeled
        self.runs += 1
        logger.info(
            "Classification #%d (%s): %d up, %d down of %d genes",
            counter,
            thresholds,
            labeled.n_up,
            labeled.n_down,
            len(labeled),
        )
        return labeled
