from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Optional

import click

from de_explorer.analysis.de_analysis import DE_METHODS
from de_explorer.config import ReportConfig
from de_explorer.errors import DEExplorerError, ParameterError
from de_explorer.report.artifacts import DEFAULT_PAGE_SIZE
from de_explorer.report.enrichment_stage import NOT_RUN
from de_explorer.report.export import ReportWriter, format_enrichment_table, format_gene_table
from de_explorer.report.parameters import CLASSIFICATION, ENRICHMENT, PARAMETERS
from de_explorer.report.session import ReportSession, build_session

logger = logging.getLogger(__name__)

INTERACTIVE_HELP = """Commands:
  set <name> <value>   edit a parameter (fdr, logfc, logcpm, length_bias)
  commit               apply threshold edits (reclassify genes)
  enrich               run enrichment with the current labels
  summary              Up / Down / NoChange counts
  table [page] [status]  page through genes sorted by FDR
  find <text>          search gene ids, symbols and descriptions
  enrichment           top enriched categories
  status               counters and pending edits
  help                 show this message
  quit                 leave"""


_DATASET_OPTIONS = [
    click.option(
        "--counts",
        "counts_path",
        type=click.Path(path_type=Path),
        help="Count matrix (genes x samples, CSV or TSV). Env: DE_EXPLORER_COUNTS.",
    ),
    click.option(
        "--samples",
        "samples_path",
        type=click.Path(path_type=Path),
        help="Sample sheet with a group column. Env: DE_EXPLORER_SAMPLES.",
    ),
    click.option(
        "--reference-dir",
        type=click.Path(path_type=Path),
        help="Directory with gene length and category tables. Env: DE_EXPLORER_REFERENCE_DIR.",
    ),
    click.option("--genome", help="Genome build of the reference tables (default hg19)."),
    click.option("--id-type", help="Gene identifier type (default ensGene)."),
    click.option(
        "--de-method",
        type=click.Choice(DE_METHODS),
        help="Differential expression test (default deseq2).",
    ),
    click.option(
        "--annotate/--no-annotate",
        default=None,
        help="Resolve gene symbols and descriptions from HGNC.",
    ),
    click.option("--group-column", help="Sample sheet column holding group labels."),
    click.option("--test-group", help="Numerator group of the contrast."),
    click.option("--reference-group", help="Denominator group of the contrast."),
]

_THRESHOLD_OPTIONS = [
    click.option("--fdr", type=float, default=0.05, show_default=True, help="Adjusted p-value cutoff."),
    click.option("--logfc", type=float, default=1.0, show_default=True, help="Absolute log2 fold-change cutoff."),
    click.option("--logcpm", type=float, default=0.0, show_default=True, help="Mean log2 CPM cutoff."),
    click.option(
        "--length-bias/--no-length-bias",
        default=True,
        show_default=True,
        help="Correct enrichment for gene length bias (Wallenius) or not (hypergeometric).",
    ),
]


def dataset_options(func):
    """Options shared by every command that loads a dataset."""
    for option in reversed(_DATASET_OPTIONS):
        func = option(func)
    return func


def threshold_options(func):
    """Classification thresholds and the length-bias flag for one-shot runs."""
    for option in reversed(_THRESHOLD_OPTIONS):
        func = option(func)
    return func


def _open_session(options: dict) -> ReportSession:
    config = ReportConfig.from_env(
        counts_path=options.pop("counts_path"),
        samples_path=options.pop("samples_path"),
        reference_dir=options.pop("reference_dir"),
        genome=options.pop("genome"),
        id_type=options.pop("id_type"),
        de_method=options.pop("de_method"),
        annotate=options.pop("annotate"),
        group_column=options.pop("group_column"),
        test_group=options.pop("test_group"),
        reference_group=options.pop("reference_group"),
    )
    click.echo(f"Loading {config.counts_path} ...", err=True)
    try:
        return build_session(config)
    except DEExplorerError as exc:
        raise click.ClickException(str(exc)) from exc


def _apply_and_commit(session: ReportSession, options: dict, enrich: bool) -> None:
    try:
        session.update_parameters(
            fdr=options["fdr"],
            logfc=options["logfc"],
            logcpm=options["logcpm"],
            length_bias=options["length_bias"],
        )
        session.commit(CLASSIFICATION)
        if enrich:
            session.commit(ENRICHMENT)
    except DEExplorerError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
def cli(verbose: bool) -> None:
    """Interactive differential expression reports with gated recomputation."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


@cli.command("run")
@dataset_options
@threshold_options
@click.option(
    "--enrich/--no-enrich",
    default=False,
    show_default=True,
    help="Run category enrichment after classification.",
)
@click.option("--top", type=click.IntRange(1, 500), default=10, show_default=True, help="Rows to print.")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Also write TSV tables and report.json here.",
)
def run_command(enrich: bool, top: int, output_dir: Optional[Path], **options) -> None:
    """Analyse a dataset once and print the report."""
    session = _open_session(options)
    _apply_and_commit(session, options, enrich)

    writer = ReportWriter()
    click.echo(writer.to_console_summary(session, top_n=top))
    if output_dir is not None:
        written = writer.write_all(session, output_dir)
        click.echo(f"Wrote {len(written)} files to {output_dir}")


@cli.command("export")
@dataset_options
@threshold_options
@click.option(
    "--enrich/--no-enrich",
    default=True,
    show_default=True,
    help="Run category enrichment before exporting.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("de_report"),
    show_default=True,
    help="Directory for TSV tables and report.json.",
)
def export_command(enrich: bool, output_dir: Path, **options) -> None:
    """Analyse a dataset and write every report artifact to disk."""
    session = _open_session(options)
    _apply_and_commit(session, options, enrich)

    written = ReportWriter().write_all(session, output_dir)
    for name, path in written.items():
        click.echo(f"{name}: {path}")


@cli.command("interactive")
@dataset_options
def interactive_command(**options) -> None:
    """Explore a dataset: edit thresholds, commit, and inspect results."""
    session = _open_session(options)
    click.echo(f"{len(session.base)} genes loaded. Type 'help' for commands.")
    shell = InteractiveShell(session)
    while True:
        try:
            line = click.prompt("de", prompt_suffix="> ", default="", show_default=False)
        except click.Abort:
            break
        if not shell.handle(line):
            break


class InteractiveShell:
    """Line-oriented front end over one report session."""

    def __init__(self, session: ReportSession, echo=click.echo):
        self.session = session
        self.echo = echo
        self.page_size = DEFAULT_PAGE_SIZE

    def handle(self, line: str) -> bool:
        """Run one command line. Returns False when the user asked to quit."""
        try:
            words = shlex.split(line)
        except ValueError as exc:
            self.echo(f"Error: {exc}")
            return True
        if not words:
            return True

        command, args = words[0].lower(), words[1:]
        if command in ("quit", "exit", "q"):
            return False

        handler = getattr(self, f"do_{command}", None)
        if handler is None:
            self.echo(f"Unknown command {command!r}. Type 'help' for commands.")
            return True
        try:
            handler(args)
        except (DEExplorerError, ValueError) as exc:
            self.echo(f"Error: {exc}")
        return True

    def do_help(self, args) -> None:
        self.echo(INTERACTIVE_HELP)

    def do_set(self, args) -> None:
        if len(args) != 2:
            raise ParameterError(f"usage: set <name> <value>  (names: {', '.join(PARAMETERS)})")
        name, value = args
        self.session.set_parameter(name, value)
        stage = PARAMETERS[name][0]
        verb = "commit" if stage == CLASSIFICATION else "enrich"
        self.echo(f"{name} = {self.session.store.get(name)} (pending; '{verb}' to apply)")

    def do_commit(self, args) -> None:
        counter = self.session.commit(CLASSIFICATION)
        summary = self.session.status_summary()
        self.echo(
            f"Classification #{counter}: "
            + ", ".join(f"{status} {count}" for status, count in summary.items())
        )

    def do_enrich(self, args) -> None:
        counter = self.session.commit(ENRICHMENT)
        outputs = self.session.enrichment_outputs()
        self.echo(
            f"Enrichment #{counter}: {outputs.method}, {len(outputs.table)} categories tested"
        )

    def do_summary(self, args) -> None:
        for status, count in self.session.status_summary().items():
            self.echo(f"  {status}: {count:,}")

    def do_table(self, args) -> None:
        page = int(args[0]) if args else 1
        status = args[1] if len(args) > 1 else None
        self._show_page(self.session.display_table(page, self.page_size, status=status))

    def do_find(self, args) -> None:
        if not args:
            raise ValueError("usage: find <text>")
        self._show_page(self.session.display_table(1, self.page_size, search=" ".join(args)))

    def do_enrichment(self, args) -> None:
        table = self.session.enrichment_table()
        if table is NOT_RUN:
            self.echo("Enrichment has not been run. Use 'enrich'.")
            return
        self.echo(format_enrichment_table(table, max_rows=int(args[0]) if args else 10))

    def do_status(self, args) -> None:
        snapshot = self.session.snapshot()
        for stage, counter in snapshot["counters"].items():
            pending = " (pending edits)" if snapshot["pending"][stage] else ""
            self.echo(f"  {stage}: commit #{counter}{pending}")
        live = ", ".join(f"{k}={v}" for k, v in snapshot["live_parameters"].items())
        self.echo(f"  live: {live}")
        enrichment = snapshot["enrichment"]
        self.echo(f"  enrichment: {enrichment['state']}")
        if enrichment["last_error"]:
            self.echo(f"  last error: {enrichment['last_error']}")

    def _show_page(self, page) -> None:
        if page.total_rows == 0:
            self.echo("  No genes found.")
            return
        self.echo(format_gene_table(page.rows, max_genes=page.page_size))
        self.echo(f"  page {page.page}/{page.n_pages} ({page.total_rows:,} genes)")


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
