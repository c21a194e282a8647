"""Shared fixtures: a small statistics table, a recording enrichment backend
and a synthetic reference annotation with a built-in length trend."""

import numpy as np
import pandas as pd
import pytest

from de_explorer.analysis.de_result import BaseStatistics, DEProvenance
from de_explorer.analysis.enrichment import ReferenceAnnotation, WeightingResult
from de_explorer.report.session import ReportSession


# With default thresholds (fdr 0.05, logfc 1, logcpm 0):
#   Up: G1, G3, G5   Down: G2, G6   NoChange: G4, G7, G8
STATS_ROWS = [
    # gene_id, log_fc, log_cpm, pvalue, fdr, symbol, description
    ("G1", 2.0, 6.0, 0.001, 0.01, "TP53", "tumor protein p53"),
    ("G2", -2.0, 6.0, 0.001, 0.01, "EGFR", "epidermal growth factor receptor"),
    ("G3", 2.0, 3.0, 0.001, 0.01, None, None),
    ("G4", 0.5, 8.0, 0.2, 0.3, "ACTB", "actin beta"),
    ("G5", 3.0, 2.0, 0.0001, 0.001, "IL6", "interleukin 6"),
    ("G6", -1.5, 4.0, 0.01, 0.04, "TNF", "tumor necrosis factor"),
    ("G7", 0.1, 1.0, 0.9, 0.95, "GAPDH", "glyceraldehyde-3-phosphate dehydrogenase"),
    ("G8", 1.2, 7.0, 0.02, 0.06, "MYC", "MYC proto-oncogene"),
]


@pytest.fixture
def stats_frame():
    return pd.DataFrame(
        STATS_ROWS,
        columns=["gene_id", "log_fc", "log_cpm", "pvalue", "fdr", "symbol", "description"],
    )


@pytest.fixture
def base_stats(stats_frame):
    provenance = DEProvenance.create(
        test_method="welch_t",
        test_group="treated",
        reference_group="control",
        test_sample_ids=["S3", "S4"],
        reference_sample_ids=["S1", "S2"],
        genes_tested=len(stats_frame),
        annotation_source="static",
    )
    return BaseStatistics.from_frame(stats_frame, provenance=provenance)


class RecordingBackend:
    """Enrichment backend that records calls and returns fixed tables."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def weigh(self, labels):
        self.calls.append(("weigh", labels.copy()))
        if self.fail:
            raise ValueError("gene identifiers not found in reference")
        weights = pd.DataFrame({"de": labels, "bias_data": 1000.0, "pwf": 0.5})
        bias_plot = pd.DataFrame(
            {"length": [1000.0], "proportion_de": [labels.mean()], "fitted": [labels.mean()]}
        )
        return WeightingResult(weights=weights, bias_plot=bias_plot)

    def test(self, weighting, method):
        self.calls.append(("test", method))
        return pd.DataFrame(
            {
                "category": ["GO:0006915", "GO:0008150"],
                "over_represented_pvalue": [0.001, 0.5],
                "under_represented_pvalue": [0.999, 0.6],
                "numDEInCat": [int(weighting.weights["de"].sum()), 1],
                "numInCat": [len(weighting.weights), 4],
            }
        )


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def session(base_stats, backend):
    return ReportSession(base_stats, backend=backend)


@pytest.fixture
def synthetic_reference():
    """400 genes with lengths increasing with their index.

    Every 5th gene is DE throughout, and above index 300 every even gene is
    DE as well, so long genes have a higher DE rate.
    """
    gene_ids = [f"G{i:03d}" for i in range(400)]
    lengths = pd.Series(500.0 + 50.0 * np.arange(400), index=gene_ids)

    rows = []
    for i in range(0, 50):
        rows.append((gene_ids[i], "CAT_SHORT", "short genes", "BP"))
    for i in range(100, 200):
        rows.append((gene_ids[i], "CAT_MID", "mid-length genes", "MF"))
    for i in range(300, 400):
        rows.append((gene_ids[i], "CAT_LONG", "long genes", "CC"))
    memberships = pd.DataFrame(rows, columns=["gene_id", "category", "term", "ontology"])

    return ReferenceAnnotation(
        genome="hg19",
        id_type="ensGene",
        lengths=lengths,
        categories=memberships[["gene_id", "category"]],
        terms=memberships[["category", "term", "ontology"]]
        .drop_duplicates(subset="category")
        .set_index("category"),
    )


@pytest.fixture
def synthetic_labels():
    gene_ids = [f"G{i:03d}" for i in range(400)]
    de = [1 if (i % 5 == 0 or (i >= 300 and i % 2 == 0)) else 0 for i in range(400)]
    return pd.Series(de, index=pd.Index(gene_ids, name="gene_id"))


@pytest.fixture
def failing_backend():
    return RecordingBackend(fail=True)
