"""Interactive differential expression reports.

Loads a count matrix, runs one differential expression analysis, and
serves a report whose thresholds and enrichment options are edited freely
but only recomputed on an explicit commit.

Usage::

    from de_explorer import ReportConfig, build_session

    session = build_session(ReportConfig(counts_path="counts.tsv", samples_path="samples.tsv"))
    session.update_parameters(fdr=0.01, logfc=2)
    session.commit("classification")
    session.status_summary()
"""

from de_explorer.config import ReportConfig
from de_explorer.errors import ComputationError, DEExplorerError, ParameterError
from de_explorer.report.session import ReportSession, build_session

__version__ = "0.1.0"

__all__ = [
    "ReportConfig",
    "ReportSession",
    "build_session",
    "ComputationError",
    "DEExplorerError",
    "ParameterError",
]
