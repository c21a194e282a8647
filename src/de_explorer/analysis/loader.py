"""Count matrix and sample sheet loading.

The count matrix is genes x samples with gene identifiers in the first
column. The sample sheet has one row per sample: a sample column and a
group column. Tab- and comma-separated files are both accepted.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from ..errors import ComputationError

logger = logging.getLogger(__name__)


@dataclass
class CountData:
    """Raw counts plus the two-group design used for the contrast.

    Attributes:
        counts: Integer counts, genes x samples, indexed by gene identifier.
        groups: Group label per sample, indexed by sample id.
        test_group: Group treated as "test" (numerator of the fold change).
        reference_group: Group treated as "reference" (denominator).
    """

    counts: pd.DataFrame
    groups: pd.Series
    test_group: str
    reference_group: str

    @property
    def test_samples(self) -> List[str]:
        return self.groups[self.groups == self.test_group].index.tolist()

    @property
    def reference_samples(self) -> List[str]:
        return self.groups[self.groups == self.reference_group].index.tolist()

    @classmethod
    def from_frames(
        cls,
        counts: pd.DataFrame,
        groups: pd.Series,
        test_group: Optional[str] = None,
        reference_group: Optional[str] = None,
    ) -> "CountData":
        """Validate a count matrix against its group labels.

        Raises:
            ComputationError: on non-numeric or negative counts, duplicated
                gene identifiers, samples without a group, or a design that
                does not have exactly two groups.
        """
        if counts.empty:
            raise ComputationError("load", "Count matrix is empty")
        if not counts.index.is_unique:
            dupes = counts.index[counts.index.duplicated()].unique()[:5]
            raise ComputationError(
                "load", f"Duplicated gene identifiers: {', '.join(map(str, dupes))}"
            )

        numeric = counts.apply(pd.to_numeric, errors="coerce")
        if numeric.isna().any().any():
            raise ComputationError("load", "Count matrix contains non-numeric values")
        if (numeric < 0).any().any():
            raise ComputationError("load", "Count matrix contains negative values")

        groups = groups.astype(str)
        missing = [s for s in numeric.columns if s not in groups.index]
        if missing:
            raise ComputationError(
                "load", f"Samples without a group label: {', '.join(map(str, missing))}"
            )
        groups = groups.loc[numeric.columns]

        levels = list(dict.fromkeys(groups))
        if len(levels) != 2:
            raise ComputationError(
                "load", f"Expected exactly two sample groups, found {len(levels)}: {levels}"
            )

        if reference_group is None:
            reference_group = next((g for g in levels if g != test_group), levels[0])
        test_group = test_group or next(g for g in levels if g != reference_group)
        for name in (test_group, reference_group):
            if name not in levels:
                raise ComputationError("load", f"Unknown group {name!r}; groups are {levels}")
        if test_group == reference_group:
            raise ComputationError("load", "Test and reference groups must differ")

        numeric.index = numeric.index.astype(str)
        numeric.index.name = "gene_id"
        return cls(
            counts=numeric.round().astype(np.int64),
            groups=groups,
            test_group=test_group,
            reference_group=reference_group,
        )


def _read_table(path: Path, **kwargs) -> pd.DataFrame:
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    try:
        return pd.read_csv(path, sep=sep, **kwargs)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise ComputationError("load", f"Could not read {path}: {exc}") from exc


def load_counts(
    counts_path: Union[str, Path],
    samples_path: Union[str, Path],
    group_column: str = "group",
    sample_column: Optional[str] = None,
    test_group: Optional[str] = None,
    reference_group: Optional[str] = None,
) -> CountData:
    """Load a count matrix and its sample sheet from disk.

    Args:
        counts_path: Genes x samples matrix, first column gene identifiers.
        samples_path: Sample sheet with ``group_column``.
        group_column: Column holding the group label.
        sample_column: Column holding sample ids (first column if None).
        test_group: Group used as numerator (second group seen if None).
        reference_group: Group used as denominator (first group seen if None).
    """
    counts_path = Path(counts_path)
    samples_path = Path(samples_path)

    counts = _read_table(counts_path, index_col=0)
    samples = _read_table(samples_path)

    if group_column not in samples.columns:
        raise ComputationError(
            "load", f"Sample sheet {samples_path} has no {group_column!r} column"
        )
    sample_column = sample_column or samples.columns[0]
    groups = samples.set_index(samples[sample_column].astype(str))[group_column]

    counts.columns = counts.columns.astype(str)
    data = CountData.from_frames(
        counts, groups, test_group=test_group, reference_group=reference_group
    )
    logger.info(
        "Loaded %d genes x %d samples (%s: %d, %s: %d)",
        len(data.counts),
        data.counts.shape[1],
        data.test_group,
        len(data.test_samples),
        data.reference_group,
        len(data.reference_samples),
    )
    return data
