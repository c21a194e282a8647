"""Tests for the click command line (session construction mocked)."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from de_explorer.cli import InteractiveShell, cli
from de_explorer.errors import ComputationError


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def patched_session(session):
    with patch("de_explorer.cli.build_session", return_value=session) as mock_build:
        yield mock_build


class TestRunCommand:

    def test_prints_report(self, runner, patched_session, session):
        result = runner.invoke(cli, ["run", "--counts", "c.tsv", "--samples", "s.tsv"])

        assert result.exit_code == 0, result.output
        assert "DIFFERENTIAL EXPRESSION REPORT" in result.output
        assert "Up: 3" in result.output
        assert session.store.counter("classification") == 1
        assert session.store.counter("enrichment") == 0

    def test_thresholds_applied(self, runner, patched_session, session):
        result = runner.invoke(cli, ["run", "--fdr", "0.02", "--logcpm", "5"])
        assert result.exit_code == 0, result.output
        assert session.status_summary() == {"Up": 1, "Down": 1, "NoChange": 6}

    def test_config_overrides_passed(self, runner, patched_session):
        runner.invoke(
            cli,
            ["run", "--counts", "c.tsv", "--samples", "s.tsv", "--de-method", "welch_t", "--no-annotate"],
        )
        config = patched_session.call_args.args[0]
        assert str(config.counts_path) == "c.tsv"
        assert config.de_method == "welch_t"
        assert config.annotate is False

    def test_enrich(self, runner, patched_session, session):
        result = runner.invoke(cli, ["run", "--enrich", "--no-length-bias"])
        assert result.exit_code == 0, result.output
        assert "Method: Hypergeometric" in result.output

    def test_invalid_threshold(self, runner, patched_session):
        result = runner.invoke(cli, ["run", "--fdr", "0.5"])
        assert result.exit_code != 0
        assert "fdr must be in" in result.output

    def test_load_failure(self, runner):
        with patch(
            "de_explorer.cli.build_session",
            side_effect=ComputationError("load", "File not found: c.tsv"),
        ):
            result = runner.invoke(cli, ["run", "--counts", "c.tsv"])
        assert result.exit_code == 1
        assert "[load] File not found" in result.output

    def test_output_dir(self, runner, patched_session, tmp_path):
        result = runner.invoke(cli, ["run", "--output-dir", str(tmp_path / "out")])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "out" / "de_genes.tsv").exists()
        assert (tmp_path / "out" / "report.json").exists()


class TestExportCommand:

    def test_writes_all_artifacts(self, runner, patched_session, tmp_path):
        result = runner.invoke(cli, ["export", "--output-dir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "enrichment.tsv").exists()
        assert (tmp_path / "length_bias.tsv").exists()

    def test_enrichment_failure_reported(self, runner, patched_session, backend, tmp_path):
        backend.fail = True
        result = runner.invoke(cli, ["export", "--output-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "[enrichment]" in result.output


class TestInteractiveCommand:

    def test_session_flow(self, runner, patched_session):
        commands = "\n".join(
            ["set fdr 0.02", "set logcpm 5", "summary", "commit", "enrich", "status", "quit"]
        )
        result = runner.invoke(cli, ["interactive"], input=commands + "\n")

        assert result.exit_code == 0, result.output
        assert "8 genes loaded" in result.output
        assert "pending; 'commit' to apply" in result.output
        assert "Classification #1: Up 1, Down 1, NoChange 6" in result.output
        assert "Enrichment #1: Wallenius, 2 categories tested" in result.output
        assert "enrichment: ready" in result.output

    def test_ends_on_eof(self, runner, patched_session):
        result = runner.invoke(cli, ["interactive"], input="summary\n")
        assert result.exit_code == 0, result.output
        assert "Up: 3" in result.output


class TestInteractiveShell:

    @pytest.fixture
    def shell(self, session):
        lines = []
        shell = InteractiveShell(session, echo=lines.append)
        shell.lines = lines
        return shell

    def test_quit(self, shell):
        assert shell.handle("quit") is False
        assert shell.handle("") is True

    def test_unknown_command(self, shell):
        shell.handle("plot")
        assert "Unknown command 'plot'" in shell.lines[-1]

    def test_bad_parameter_reported(self, shell):
        shell.handle("set fdr 2")
        assert shell.lines[-1].startswith("Error: fdr must be in")
        shell.handle("set")
        assert "usage: set" in shell.lines[-1]

    def test_enrichment_before_run(self, shell):
        shell.handle("enrichment")
        assert "has not been run" in shell.lines[-1]

    def test_enrich_without_backend(self, base_stats):
        from de_explorer.report.session import ReportSession

        lines = []
        shell = InteractiveShell(ReportSession(base_stats), echo=lines.append)
        shell.handle("enrich")
        assert lines[-1].startswith("Error: [enrichment]")

    def test_table_pages(self, shell):
        shell.page_size = 3
        shell.handle("table 2")
        assert "page 2/3 (8 genes)" in shell.lines[-1]
        shell.handle("table 1 Down")
        assert "page 1/1 (2 genes)" in shell.lines[-1]
        shell.handle("table x")
        assert shell.lines[-1].startswith("Error:")

    def test_find(self, shell):
        shell.handle("find tumor")
        assert "TP53" in shell.lines[-2]
        assert "(2 genes)" in shell.lines[-1]
