"""
Report output in several formats:

- JSON: session snapshot plus the current gene and enrichment tables
- TSV: labeled gene table, enrichment table and bias-plot data
- Console: human-readable summary
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

from ..analysis.de_result import FDR, GENE_ID, LOG_CPM, LOG_FC, STATUS, SYMBOL, Status
from ..analysis.enrichment import CATEGORY, NUM_DE_IN_CAT, NUM_IN_CAT, ONTOLOGY, OVER_PVALUE, TERM
from .session import ReportSession

logger = logging.getLogger(__name__)


def _records(frame: pd.DataFrame) -> list:
    return frame.astype(object).where(frame.notna(), None).to_dict(orient="records")


class ReportWriter:
    """
    Writes the current state of a report session.

    Example:
        writer = ReportWriter()
        writer.write_all(session, "results/")
        print(writer.to_console_summary(session))
    """

    def to_dict(self, session: ReportSession) -> dict:
        """Snapshot, base provenance and all current tables."""
        outputs = session.enrichment_outputs()
        provenance = session.base.provenance
        return {
            "report": session.snapshot(),
            "provenance": provenance.to_dict() if provenance else None,
            "genes": _records(session.sorted_table()),
            "enrichment": _records(outputs.table) if outputs else None,
        }

    def to_json(
        self,
        session: ReportSession,
        path: Union[str, Path],
        indent: int = 2,
    ) -> None:
        """Write the full report to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(self.to_dict(session), f, indent=indent)

    def to_json_string(self, session: ReportSession, indent: int = 2) -> str:
        return json.dumps(self.to_dict(session), indent=indent)

    def write_tables(self, session: ReportSession, directory: Union[str, Path]) -> Dict[str, Path]:
        """
        Write every available table as TSV.

        Returns:
            Mapping of table name to the file written. Enrichment files are
            only written once enrichment has run.
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        written = {"genes": directory / "de_genes.tsv"}
        session.sorted_table().to_csv(written["genes"], sep="\t", index=False, na_rep="NA")

        outputs = session.enrichment_outputs()
        if outputs:
            written["enrichment"] = directory / "enrichment.tsv"
            outputs.table.to_csv(written["enrichment"], sep="\t", index=False, na_rep="NA")
            written["bias_plot"] = directory / "length_bias.tsv"
            outputs.bias_plot.to_csv(written["bias_plot"], sep="\t", index=False)
            written["weights"] = directory / "length_weights.tsv"
            outputs.weights.to_csv(written["weights"], sep="\t", na_rep="NA")

        for name, path in written.items():
            logger.info("Wrote %s table to %s", name, path)
        return written

    def write_all(self, session: ReportSession, directory: Union[str, Path]) -> Dict[str, Path]:
        written = self.write_tables(session, directory)
        written["report"] = Path(directory) / "report.json"
        self.to_json(session, written["report"])
        return written

    def to_console_summary(self, session: ReportSession, top_n: int = 10) -> str:
        """
        Generate a human-readable summary.

        Args:
            session: Report session
            top_n: Number of top genes / categories to show

        Returns:
            Formatted string report
        """
        snapshot = session.snapshot()
        thresholds = snapshot["committed_thresholds"]
        summary = snapshot["status_summary"]

        lines = []
        lines.append("=" * 70)
        lines.append("DIFFERENTIAL EXPRESSION REPORT")
        lines.append("=" * 70)

        provenance = session.base.provenance
        if provenance:
            lines.append("")
            lines.append("ANALYSIS")
            lines.append(
                f"  Contrast: {provenance.test_group} vs {provenance.reference_group} "
                f"({len(provenance.test_sample_ids)} vs {len(provenance.reference_sample_ids)} samples)"
            )
            lines.append(f"  Test: {provenance.test_method}, FDR: {provenance.fdr_method}")

        lines.append("")
        lines.append(f"THRESHOLDS (commit #{snapshot['counters']['classification']})")
        lines.append(f"  FDR < {thresholds['fdr']}")
        lines.append(f"  |logFC| > {thresholds['logfc']}")
        lines.append(f"  logCPM > {thresholds['logcpm']}")

        lines.append("")
        lines.append("-" * 70)
        lines.append("SUMMARY")
        lines.append("-" * 70)
        lines.append(f"  Genes tested: {snapshot['genes']:,}")
        for status in Status:
            lines.append(f"  {status.value}: {summary[status.value]:,}")

        table = session.sorted_table()
        de = table[table[STATUS] != Status.NO_CHANGE.value]
        if not de.empty:
            lines.append("")
            lines.append("-" * 70)
            lines.append(f"TOP {min(top_n, len(de))} DE GENES")
            lines.append("-" * 70)
            lines.append(format_gene_table(de, max_genes=top_n))

        enrichment = snapshot["enrichment"]
        lines.append("")
        lines.append("-" * 70)
        lines.append("ENRICHMENT")
        lines.append("-" * 70)
        if enrichment["state"] == "ready":
            lines.append(
                f"  Method: {enrichment['method']} "
                f"(length bias {'corrected' if enrichment['length_bias'] else 'ignored'})"
            )
            lines.append(format_enrichment_table(session.enrichment_table(), max_rows=top_n))
        else:
            lines.append(f"  Not run ({enrichment['state']})")
        if enrichment["last_error"]:
            lines.append(f"  Last error: {enrichment['last_error']}")

        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)


def format_gene_table(frame: pd.DataFrame, max_genes: int = 20) -> str:
    """
    Format labeled gene rows as a simple table.

    Args:
        frame: Rows of a labeled table
        max_genes: Maximum genes to show

    Returns:
        Formatted table string
    """
    if frame.empty:
        return "  No genes found."

    lines = []
    lines.append(
        f"  {'Gene':<20} {'Symbol':<12} {'logFC':>8} {'logCPM':>8} {'FDR':>10} {'Status':>9}"
    )
    lines.append("  " + "-" * 72)

    for row in frame.head(max_genes).itertuples(index=False):
        row = row._asdict()
        symbol = row[SYMBOL] if isinstance(row[SYMBOL], str) else ""
        lines.append(
            f"  {row[GENE_ID]:<20} {symbol[:12]:<12} {row[LOG_FC]:>8.2f} "
            f"{row[LOG_CPM]:>8.2f} {row[FDR]:>10.2e} {row[STATUS]:>9}"
        )

    if len(frame) > max_genes:
        lines.append(f"  ... and {len(frame) - max_genes} more genes")

    return "\n".join(lines)


def format_enrichment_table(table: Optional[pd.DataFrame], max_rows: int = 10) -> str:
    """Format the top categories by over-representation p-value."""
    if table is None or len(table) == 0:
        return "  No categories tested."

    lines = []
    lines.append(f"  {'Category':<14} {'Ont':<4} {'P-over':>10} {'DE':>5} {'Size':>6}  Term")
    lines.append("  " + "-" * 68)
    for row in table.head(max_rows).itertuples(index=False):
        row = row._asdict()
        term = row[TERM] if isinstance(row[TERM], str) else ""
        ontology = row[ONTOLOGY] if isinstance(row[ONTOLOGY], str) else ""
        if len(term) > 30:
            term = term[:27] + "..."
        lines.append(
            f"  {row[CATEGORY]:<14} {ontology:<4} {row[OVER_PVALUE]:>10.2e} "
            f"{row[NUM_DE_IN_CAT]:>5} {row[NUM_IN_CAT]:>6}  {term}"
        )
    return "\n".join(lines)
