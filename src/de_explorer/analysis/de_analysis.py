"""
Differential expression analysis engine.

Uses PyDESeq2 (Python implementation of DESeq2) for statistical testing by
default. DESeq2 handles library-size normalization internally via
median-of-ratios, models count data with a negative binomial distribution
and runs a Wald test per gene. A Welch t-test on log2 CPM is available as a
lighter alternative for small or exploratory datasets.

Whatever engine runs, the report computes its own abundance measure
(average log2 CPM) and applies Benjamini-Hochberg correction itself, so the base
statistics table has the same meaning regardless of method.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from ..errors import ComputationError
from .annotation import AnnotationResolver, annotate_table
from .de_result import (
    FDR,
    GENE_ID,
    LOG_CPM,
    LOG_FC,
    PVALUE,
    BaseStatistics,
    DEProvenance,
)
from .loader import CountData

logger = logging.getLogger(__name__)

DEMethod = Literal["deseq2", "welch_t"]
DE_METHODS = ("deseq2", "welch_t")


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    Attributes:
        method: "deseq2" (recommended) or "welch_t".
        min_total_count: Genes whose counts sum below this across all
            samples are dropped before testing.
        prior_count: Pseudo-count added before taking log2 CPM.
    """

    method: DEMethod = "deseq2"
    min_total_count: int = 10
    prior_count: float = 2.0

    def __post_init__(self):
        """Validate configuration."""
        if self.method not in DE_METHODS:
            raise ValueError(
                f"Unknown DE method {self.method!r}. Use one of: {', '.join(DE_METHODS)}"
            )
        if self.min_total_count < 0:
            raise ValueError("min_total_count must be >= 0")
        if self.prior_count <= 0:
            raise ValueError("prior_count must be > 0")


def benjamini_hochberg(pvalues) -> np.ndarray:
    """Benjamini-Hochberg step-up adjustment.

    NaN p-values are left as NaN and do not count towards the number of
    tests. Adjusted values are capped at 1 and are monotone in the rank of
    the raw p-values.
    """
    p = np.asarray(pvalues, dtype=float).ravel()
    adjusted = np.full(p.shape, np.nan)
    mask = ~np.isnan(p)
    if not mask.any():
        return adjusted

    _, corrected, _, _ = multipletests(p[mask], method="fdr_bh")
    adjusted[mask] = corrected
    return adjusted


def _cpm(counts: pd.DataFrame, prior_count: float) -> pd.DataFrame:
    lib_sizes = counts.sum(axis=0).astype(float)
    prior = prior_count * lib_sizes / lib_sizes.mean()
    return (counts + prior) / (lib_sizes + 2 * prior) * 1e6


def log_cpm(counts: pd.DataFrame, prior_count: float = 2.0) -> pd.DataFrame:
    """Per-sample log2 counts per million with a library-scaled prior."""
    return np.log2(_cpm(counts, prior_count))


def average_log_cpm(counts: pd.DataFrame, prior_count: float = 2.0) -> pd.Series:
    """Average abundance per gene on the log2 CPM scale."""
    return np.log2(_cpm(counts, prior_count).mean(axis=1))


class DifferentialExpressionEngine:
    """
    Runs a two-group differential expression test on raw counts.

    Example:
        engine = DifferentialExpressionEngine(DEConfig(method="welch_t"))
        stats = engine.run(count_data)
        # DataFrame indexed by gene_id with log_fc, log_cpm, pvalue
    """

    def __init__(self, config: Optional[DEConfig] = None):
        self.config = config or DEConfig()

    def run(self, data: CountData) -> pd.DataFrame:
        """
        Test every gene that passes the low-count filter.

        Returns:
            DataFrame indexed by gene identifier with columns ``log_fc``
            (test vs reference, log2), ``log_cpm`` and ``pvalue``.

        Raises:
            ComputationError: if no gene survives filtering or the
                underlying test fails.
        """
        counts = self._filter_low_counts(data.counts)
        test = counts[data.test_samples]
        reference = counts[data.reference_samples]
        logger.info(
            "Running %s (%d %s vs %d %s, %d genes)",
            self.config.method,
            test.shape[1],
            data.test_group,
            reference.shape[1],
            data.reference_group,
            len(counts),
        )

        if self.config.method == "deseq2":
            result = self._run_deseq2(test, reference)
        else:
            result = self._run_welch_t(test, reference)

        result[LOG_CPM] = average_log_cpm(counts, self.config.prior_count)
        result.index.name = GENE_ID
        return result[[LOG_FC, LOG_CPM, PVALUE]]

    def _filter_low_counts(self, counts: pd.DataFrame) -> pd.DataFrame:
        """Remove genes with very low total counts across all samples."""
        total = counts.sum(axis=1)
        keep = total >= self.config.min_total_count
        n_removed = int((~keep).sum())
        if n_removed:
            logger.info(
                "Low-count filter: removed %d genes (total count < %d)",
                n_removed,
                self.config.min_total_count,
            )
        if not keep.any():
            raise ComputationError("de", "No genes passed the low-count filter")
        return counts.loc[keep]

    def _run_deseq2(self, test: pd.DataFrame, reference: pd.DataFrame) -> pd.DataFrame:
        """Run DESeq2 via PyDESeq2.

        Group labels are mapped to fixed factor levels so arbitrary group
        names never reach the design formula.
        """
        try:
            from pydeseq2.dds import DeseqDataSet
            from pydeseq2.ds import DeseqStats
        except ImportError as e:
            raise ImportError(
                "pydeseq2 package required for method='deseq2'. "
                "Install with: pip install pydeseq2"
            ) from e

        counts = pd.concat([test, reference], axis=1)
        metadata = pd.DataFrame(
            {"condition": ["test"] * test.shape[1] + ["reference"] * reference.shape[1]},
            index=counts.columns,
        )

        try:
            dds = DeseqDataSet(
                counts=counts.T,
                metadata=metadata,
                design="~condition",
                quiet=True,
            )
            dds.deseq2()
            stat_res = DeseqStats(
                dds, contrast=["condition", "test", "reference"], quiet=True
            )
            stat_res.summary()
        except (ValueError, TypeError, np.linalg.LinAlgError) as exc:
            raise ComputationError("de", f"DESeq2 failed: {exc}") from exc

        results_df = stat_res.results_df
        return pd.DataFrame(
            {
                LOG_FC: results_df["log2FoldChange"].astype(float),
                PVALUE: results_df["pvalue"].astype(float),
            },
            index=results_df.index.astype(str),
        )

    def _run_welch_t(self, test: pd.DataFrame, reference: pd.DataFrame) -> pd.DataFrame:
        """Welch t-test on per-sample log2 CPM."""
        if test.shape[1] < 2 or reference.shape[1] < 2:
            raise ComputationError(
                "de", "welch_t needs at least two samples in each group"
            )

        expr = log_cpm(pd.concat([test, reference], axis=1), self.config.prior_count)
        test_norm = expr[test.columns]
        reference_norm = expr[reference.columns]

        log2fc = test_norm.mean(axis=1) - reference_norm.mean(axis=1)
        _, pvalues = stats.ttest_ind(
            test_norm.values, reference_norm.values, axis=1, equal_var=False
        )
        # Zero-variance genes give NaN; treat as no evidence
        pvalues = np.where(np.isnan(pvalues), 1.0, pvalues)

        return pd.DataFrame({LOG_FC: log2fc, PVALUE: pvalues}, index=test.index)


def build_base_statistics(
    data: CountData,
    engine: Optional[DifferentialExpressionEngine] = None,
    resolver: Optional[AnnotationResolver] = None,
) -> BaseStatistics:
    """
    Run the DE engine, adjust p-values and annotate genes.

    Args:
        data: Validated count data and design.
        engine: DE engine (default: DESeq2 with default config).
        resolver: Optional annotation resolver; genes it cannot resolve keep
            empty annotation fields.

    Returns:
        BaseStatistics sorted by adjusted p-value.
    """
    engine = engine or DifferentialExpressionEngine()
    try:
        results = engine.run(data)
    except ComputationError:
        raise
    except (ValueError, KeyError) as exc:
        raise ComputationError("de", str(exc)) from exc

    results = results.copy()
    results[FDR] = benjamini_hochberg(results[PVALUE].values)
    frame = results.reset_index()

    annotation_source = None
    if resolver is not None:
        frame = annotate_table(frame, resolver)
        annotation_source = resolver.name

    provenance = DEProvenance.create(
        test_method=engine.config.method,
        test_group=data.test_group,
        reference_group=data.reference_group,
        test_sample_ids=data.test_samples,
        reference_sample_ids=data.reference_samples,
        genes_tested=len(frame),
        annotation_source=annotation_source,
    )
    base = BaseStatistics.from_frame(frame, provenance=provenance)
    n_sig = int((base.frame[FDR] < 0.05).sum())
    logger.info("Base statistics: %d genes, %d with FDR < 0.05", len(base), n_sig)
    return base
