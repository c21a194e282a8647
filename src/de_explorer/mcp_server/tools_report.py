"""Report tools exposed as MCP tools.

All tools share one module-level :class:`ReportSession`, built on first use
from the ``DE_EXPLORER_*`` configuration. Parameter edits only change live
values; ``commit_thresholds`` and ``commit_enrichment`` are the only tools
that trigger recomputation.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from mcp.server.fastmcp import FastMCP

from de_explorer.config import ReportConfig
from de_explorer.errors import ComputationError, DEExplorerError
from de_explorer.mcp_server.server import redirect_prints
from de_explorer.report.parameters import CLASSIFICATION, ENRICHMENT
from de_explorer.report.session import ReportSession, build_session

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 20


# ---------------------------------------------------------------------------
# Shared session
# ---------------------------------------------------------------------------

_session: Optional[ReportSession] = None
_session_lock = threading.Lock()


def set_session(session: Optional[ReportSession]) -> None:
    """Install (or clear, with None) the session the tools operate on."""
    global _session
    with _session_lock:
        _session = session


def _get_session() -> ReportSession:
    global _session
    with _session_lock:
        if _session is None:
            config = ReportConfig.from_env()
            logger.info("Building report session from %s", config.counts_path)
            with redirect_prints():
                _session = build_session(config)
        return _session


def _error(exc: Exception) -> dict:
    if isinstance(exc, ComputationError):
        logger.error("Stage %s failed: %s", exc.stage, exc.message)
        return {"error": exc.message, "stage": exc.stage}
    logger.warning("Rejected request: %s", exc)
    return {"error": str(exc)}


def _records(frame, max_rows: Optional[int] = None) -> list:
    if max_rows is not None:
        frame = frame.head(max_rows)
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------

def register_tools(mcp: FastMCP) -> None:
    """Register all report tools on *mcp*."""

    @mcp.tool()
    def report_status() -> dict:
        """Current state of the report.

        Returns commit counters, live (possibly uncommitted) parameter values,
        which stages have pending edits, the thresholds of the current
        classification, Up/Down/NoChange counts and the enrichment state.
        """
        try:
            return _get_session().snapshot()
        except (DEExplorerError, ValueError) as e:
            return _error(e)

    @mcp.tool()
    def set_parameters(
        fdr: Optional[float] = None,
        logfc: Optional[float] = None,
        logcpm: Optional[float] = None,
        length_bias: Optional[bool] = None,
    ) -> dict:
        """Edit report parameters without recomputing anything.

        Args:
            fdr: Adjusted p-value cutoff, in (0, 0.25].
            logfc: Absolute log2 fold-change cutoff, >= 0.
            logcpm: Mean log2 CPM cutoff, >= 0.
            length_bias: Correct enrichment for gene length bias.

        Edits take effect on the next ``commit_thresholds`` (fdr, logfc,
        logcpm) or ``commit_enrichment`` (length_bias). Either all given
        values are accepted or none are.
        """
        values = {
            name: value
            for name, value in (
                ("fdr", fdr), ("logfc", logfc), ("logcpm", logcpm), ("length_bias", length_bias),
            )
            if value is not None
        }
        if not values:
            return {"error": "Provide at least one of fdr, logfc, logcpm, length_bias."}
        try:
            session = _get_session()
            session.update_parameters(**values)
            snapshot = session.snapshot()
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        return {"live_parameters": snapshot["live_parameters"], "pending": snapshot["pending"]}

    @mcp.tool()
    def commit_thresholds() -> dict:
        """Apply threshold edits: reclassify every gene once.

        Returns the new classification counter and Up/Down/NoChange counts.
        """
        try:
            session = _get_session()
            counter = session.commit(CLASSIFICATION)
            summary = session.status_summary()
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        return {"counter": counter, "status_summary": summary}

    @mcp.tool()
    def commit_enrichment(max_rows: int = DEFAULT_MAX_ROWS) -> dict:
        """Run category enrichment with the current gene labels.

        Uses the Wallenius test when length-bias correction is on and the
        hypergeometric test otherwise. On failure the previous enrichment
        result (if any) stays available.

        Args:
            max_rows: Number of top categories to return.
        """
        try:
            session = _get_session()
            counter = session.commit(ENRICHMENT)
            outputs = session.enrichment_outputs()
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        return {
            "counter": counter,
            "method": outputs.method,
            "length_bias": outputs.length_bias,
            "classification_counter": outputs.classification_counter,
            "n_categories": len(outputs.table),
            "top_categories": _records(outputs.table, max_rows),
        }

    @mcp.tool()
    def get_status_summary() -> dict:
        """Number of genes per status (Up, Down, NoChange)."""
        try:
            return _get_session().status_summary()
        except (DEExplorerError, ValueError) as e:
            return _error(e)

    @mcp.tool()
    def get_ma_plot_data(de_only: bool = False) -> dict:
        """MA plot points: mean logCPM (abundance) vs logFC (effect size).

        Args:
            de_only: Return only points classified Up or Down.
        """
        try:
            points = _get_session().ma_scatter()
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        if de_only:
            points = [p for p in points if p.is_de]
        return {"n_points": len(points), "points": [p._asdict() for p in points]}

    @mcp.tool()
    def get_gene_table(
        page: int = 1,
        page_size: int = 25,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> dict:
        """One page of the gene table, sorted by adjusted p-value.

        Args:
            page: 1-based page number.
            page_size: Rows per page.
            status: Keep only "Up", "Down" or "NoChange" genes.
            search: Case-insensitive text matched against gene id, symbol
                and description.
        """
        try:
            return _get_session().display_table(
                page=page, page_size=page_size, status=status, search=search
            ).to_dict()
        except (DEExplorerError, ValueError) as e:
            return _error(e)

    @mcp.tool()
    def get_enrichment(max_rows: int = DEFAULT_MAX_ROWS) -> dict:
        """Current enrichment table, or state "unrun" before the first commit.

        Args:
            max_rows: Number of top categories to return.
        """
        try:
            session = _get_session()
            state = session.enrichment_state()
            outputs = session.enrichment_outputs()
            last_error = session.snapshot()["enrichment"]["last_error"]
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        if not outputs:
            return {"state": state, "rows": None, "last_error": last_error}
        return {
            "state": state,
            "counter": outputs.counter,
            "method": outputs.method,
            "n_categories": len(outputs.table),
            "rows": _records(outputs.table, max_rows),
            "last_error": last_error,
        }

    @mcp.tool()
    def get_bias_plot() -> dict:
        """Proportion of DE genes by gene length, with the fitted weighting curve."""
        try:
            session = _get_session()
            state = session.enrichment_state()
            outputs = session.enrichment_outputs()
        except (DEExplorerError, ValueError) as e:
            return _error(e)
        if not outputs:
            return {"state": state, "points": None}
        return {
            "state": state,
            "counter": outputs.counter,
            "points": _records(outputs.bias_plot),
        }
