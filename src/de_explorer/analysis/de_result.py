"""
Result containers for differential expression analysis.

The base statistics table is built once per dataset and never mutated; the
classification stage derives labeled copies of it. Both wrap a pandas
DataFrame with one row per gene and the columns named below.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional

import pandas as pd

from ..errors import ComputationError

# Column names shared by every table in the report
GENE_ID = "gene_id"
LOG_FC = "log_fc"
LOG_CPM = "log_cpm"
PVALUE = "pvalue"
FDR = "fdr"
SYMBOL = "symbol"
DESCRIPTION = "description"
STATUS = "status"

STAT_COLUMNS = [LOG_FC, LOG_CPM, PVALUE, FDR]
ANNOTATION_COLUMNS = [SYMBOL, DESCRIPTION]
BASE_COLUMNS = [GENE_ID] + STAT_COLUMNS + ANNOTATION_COLUMNS


class Status(str, Enum):
    """Differential expression call for a single gene."""

    UP = "Up"
    DOWN = "Down"
    NO_CHANGE = "NoChange"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class GeneRecord:
    """A single row of a statistics table."""

    gene_id: str
    log_fc: float
    log_cpm: float
    pvalue: float
    fdr: float
    symbol: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Status] = None

    @property
    def is_de(self) -> bool:
        return self.status is not None and self.status != Status.NO_CHANGE

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "gene_id": self.gene_id,
            "symbol": self.symbol,
            "description": self.description,
            "log_fc": self.log_fc,
            "log_cpm": self.log_cpm,
            "pvalue": self.pvalue,
            "fdr": self.fdr,
            "status": self.status.value if self.status else None,
        }

    @classmethod
    def from_row(cls, row: dict) -> "GeneRecord":
        status = row.get(STATUS)
        return cls(
            gene_id=str(row[GENE_ID]),
            log_fc=float(row[LOG_FC]),
            log_cpm=float(row[LOG_CPM]),
            pvalue=float(row[PVALUE]),
            fdr=float(row[FDR]),
            symbol=_optional_str(row.get(SYMBOL)),
            description=_optional_str(row.get(DESCRIPTION)),
            status=Status(status) if status is not None else None,
        )


def _optional_str(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return str(value)


@dataclass
class DEProvenance:
    """
    How the base statistics table was produced.

    Captures the parameters needed to reproduce the analysis.
    """

    timestamp: str
    test_method: str
    fdr_method: str
    test_group: str
    reference_group: str
    test_sample_ids: List[str]
    reference_sample_ids: List[str]
    genes_tested: int
    annotation_source: Optional[str] = None

    @classmethod
    def create(
        cls,
        test_method: str,
        test_group: str,
        reference_group: str,
        test_sample_ids: List[str],
        reference_sample_ids: List[str],
        genes_tested: int,
        annotation_source: Optional[str] = None,
    ) -> "DEProvenance":
        """Create a provenance record with current timestamp."""
        return cls(
            timestamp=datetime.now().isoformat(),
            test_method=test_method,
            fdr_method="fdr_bh",
            test_group=test_group,
            reference_group=reference_group,
            test_sample_ids=list(test_sample_ids),
            reference_sample_ids=list(reference_sample_ids),
            genes_tested=genes_tested,
            annotation_source=annotation_source,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "methods": {
                "test": self.test_method,
                "fdr": self.fdr_method,
                "annotation": self.annotation_source,
            },
            "contrast": {
                "test": self.test_group,
                "reference": self.reference_group,
            },
            "samples": {
                "n_test": len(self.test_sample_ids),
                "n_reference": len(self.reference_sample_ids),
                "test_ids": self.test_sample_ids,
                "reference_ids": self.reference_sample_ids,
            },
            "genes_tested": self.genes_tested,
        }


@dataclass(frozen=True)
class BaseStatistics:
    """
    Per-gene statistics, sorted by adjusted p-value ascending.

    Built once by :func:`BaseStatistics.from_frame` and shared read-only by
    every stage. ``frame`` is a private copy; callers that need to modify
    rows should take their own copy first.
    """

    frame: pd.DataFrame
    provenance: Optional[DEProvenance] = field(default=None, compare=False)

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        provenance: Optional[DEProvenance] = None,
    ) -> "BaseStatistics":
        """Validate, sort and freeze a statistics frame.

        Raises:
            ComputationError: if required columns are missing or gene
                identifiers are not unique.
        """
        frame = frame.copy()
        if GENE_ID not in frame.columns and frame.index.name == GENE_ID:
            frame = frame.reset_index()

        missing = [c for c in [GENE_ID] + STAT_COLUMNS if c not in frame.columns]
        if missing:
            raise ComputationError(
                "de", f"Statistics table is missing columns: {', '.join(missing)}"
            )

        frame[GENE_ID] = frame[GENE_ID].astype(str)
        duplicated = frame[GENE_ID][frame[GENE_ID].duplicated()]
        if not duplicated.empty:
            raise ComputationError(
                "de",
                f"Gene identifiers must be unique; duplicated: "
                f"{', '.join(duplicated.unique()[:5])}",
            )

        for column in ANNOTATION_COLUMNS:
            if column not in frame.columns:
                frame[column] = None

        frame = frame.sort_values(FDR, kind="mergesort", na_position="last")
        frame = frame[BASE_COLUMNS].reset_index(drop=True)
        return cls(frame=frame, provenance=provenance)

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def gene_ids(self) -> List[str]:
        return self.frame[GENE_ID].tolist()

    def get_gene(self, gene_id: str) -> Optional[GeneRecord]:
        """Get the record for a specific gene."""
        match = self.frame[self.frame[GENE_ID] == gene_id]
        if match.empty:
            return None
        return GeneRecord.from_row(match.iloc[0].to_dict())

    def records(self) -> Iterator[GeneRecord]:
        for row in self.frame.to_dict(orient="records"):
            yield GeneRecord.from_row(row)

    def __repr__(self) -> str:
        return f"BaseStatistics(genes={len(self)})"

