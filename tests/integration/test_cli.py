"""
Integration tests for the command-line interface.
"""
import pytest
from click.testing import CliRunner

from main import cli
from pipeline.database import Database


@pytest.fixture
def cli_env(temp_dir, monkeypatch):
    """Point every Config() the CLI builds at the temp directory, pattern provider only."""
    monkeypatch.setenv("OUTPUT_DIR", str(temp_dir / "output"))
    monkeypatch.setenv("DB_PATH", str(temp_dir / "output" / "pipeline.db"))
    monkeypatch.setenv("ESTIMATES_CSV", str(temp_dir / "estimates.csv"))
    monkeypatch.setenv("CONFIG_DIR", str(temp_dir / "config"))
    monkeypatch.setenv("PROVIDER_ORDER", "pattern")
    return temp_dir


@pytest.mark.integration
class TestCli:
    """Tests for the click commands."""

    def test_process_approve_match(self, cli_env, sample_invoice_text):
        """A text invoice can be processed, approved and matched from the command line."""
        source = cli_env / "invoice.txt"
        source.write_text(sample_invoice_text, encoding="utf-8")
        (cli_env / "estimates.csv").write_text(
            "id,name,budget\nsteel,Structural Steel,5000\n", encoding="utf-8"
        )
        runner = CliRunner()

        result = runner.invoke(cli, ["process", str(source), "--project", "P-100"])
        assert result.exit_code == 0, result.output
        assert "Extracted 1 invoice(s)" in result.output

        db = Database(cli_env / "output" / "pipeline.db")
        invoice_id = db.list_invoices()[0]["id"]

        result = runner.invoke(cli, ["approve", invoice_id, "--set", "total=3400"])
        assert result.exit_code == 0, result.output
        assert "Approved" in result.output
        assert db.get_corrections(invoice_id)[0].corrected_value == 3400.0

        result = runner.invoke(cli, ["match", "P-100"])
        assert result.exit_code == 0, result.output
        assert "Structural Steel" in result.output
        assert db.get_match_result("P-100").categories[0].actual == 3000.0

        result = runner.invoke(cli, ["training-stats"])
        assert result.exit_code == 0, result.output
        assert "Training examples:  1" in result.output

    def test_reject_unknown_invoice_fails(self, cli_env):
        result = CliRunner().invoke(cli, ["reject", "missing", "--reason", "duplicate"])
        assert result.exit_code == 1

    def test_bad_assignment(self, cli_env):
        result = CliRunner().invoke(cli, ["approve", "anything", "--set", "total"])
        assert result.exit_code == 2

    def test_empty_text_file(self, cli_env):
        empty = cli_env / "blank.txt"
        empty.write_text("  \n", encoding="utf-8")

        result = CliRunner().invoke(cli, ["process", str(empty)])

        assert result.exit_code == 1
