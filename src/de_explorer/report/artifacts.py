"""
Display artifacts derived from the labeled table.

Each artifact is a pure function of a :class:`LabeledTable`. The
``ArtifactStage`` caches them per labeled-table object and rebuilds all of
them whenever the classification stage hands it a different table; it has
no commit counter of its own.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, NamedTuple, Optional

import pandas as pd

from ..analysis.de_result import DESCRIPTION, FDR, GENE_ID, LOG_CPM, LOG_FC, STATUS, SYMBOL, Status
from .classification import LabeledTable

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25


class ScatterPoint(NamedTuple):
    """One point of the MA plot."""

    abundance: float
    effect_size: float
    is_de: bool


def status_summary(table: LabeledTable) -> Dict[str, int]:
    """Count of genes per Status; every Status is present, zeros included."""
    counts = table.frame[STATUS].value_counts()
    return {status.value: int(counts.get(status.value, 0)) for status in Status}


def ma_scatter(table: LabeledTable) -> List[ScatterPoint]:
    """(logCPM, logFC, is DE) per gene, in table order."""
    frame = table.frame
    is_de = frame[STATUS] != Status.NO_CHANGE.value
    return [
        ScatterPoint(float(a), float(m), bool(d))
        for a, m, d in zip(frame[LOG_CPM], frame[LOG_FC], is_de)
    ]


def sorted_table(table: LabeledTable) -> pd.DataFrame:
    """Labeled table stably sorted by adjusted p-value ascending."""
    return table.frame.sort_values(FDR, kind="mergesort", na_position="last").reset_index(
        drop=True
    )


@dataclass
class TablePage:
    """One page of the display table."""

    rows: pd.DataFrame
    page: int
    page_size: int
    total_rows: int

    @property
    def n_pages(self) -> int:
        if self.total_rows == 0:
            return 1
        return -(-self.total_rows // self.page_size)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        rows = self.rows.astype(object).where(self.rows.notna(), None)
        return {
            "page": self.page,
            "page_size": self.page_size,
            "n_pages": self.n_pages,
            "total_rows": self.total_rows,
            "rows": rows.to_dict(orient="records"),
        }


def paginate(
    frame: pd.DataFrame,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> TablePage:
    """
    Slice a display table into pages.

    Args:
        frame: Sorted display table.
        page: 1-based page number; pages past the end are empty.
        page_size: Rows per page.
        status: Keep only rows with this Status (e.g. "Up").
        search: Case-insensitive substring matched against gene id, symbol
            and description.
    """
    if page < 1:
        raise ValueError(f"page must be >= 1, got {page}")
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")

    if status is not None:
        valid = {s.value for s in Status}
        if status not in valid:
            raise ValueError(f"Unknown status {status!r}. Use one of: {', '.join(sorted(valid))}")
        frame = frame[frame[STATUS] == status]

    if search:
        needle = search.lower()
        mask = pd.Series(False, index=frame.index)
        for column in (GENE_ID, SYMBOL, DESCRIPTION):
            mask |= frame[column].fillna("").astype(str).str.lower().str.contains(
                needle, regex=False
            )
        frame = frame[mask]

    start = (page - 1) * page_size
    return TablePage(
        rows=frame.iloc[start:start + page_size].reset_index(drop=True),
        page=page,
        page_size=page_size,
        total_rows=len(frame),
    )


@dataclass(frozen=True)
class Artifacts:
    """All display artifacts for one labeled table."""

    source: LabeledTable
    summary: Dict[str, int]
    scatter: List[ScatterPoint]
    display: pd.DataFrame


class ArtifactStage:
    """Rebuilds every artifact whenever the labeled table changes."""

    def __init__(self):
        self._artifacts: Optional[Artifacts] = None
        self.runs = 0

    def output(self, table: LabeledTable) -> Artifacts:
        if self._artifacts is not None and self._artifacts.source is table:
            return self._artifacts

        artifacts = Artifacts(
            source=table,
            summary=status_summary(table),
            scatter=ma_scatter(table),
            display=sorted_table(table),
        )
        self._artifacts = artifacts
        self.runs += 1
        logger.debug("Rebuilt display artifacts for classification #%d", table.counter)
        return artifacts
