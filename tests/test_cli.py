import asyncio
import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from bookwize import main
from bookwize.main import app
from bookwize.models import FineReason

from conftest import NOW, SAPIENS, ULYSSES

runner = CliRunner()


@pytest.fixture
def cli(library, monkeypatch):
    monkeypatch.setattr(main, "get_service", lambda: library)
    monkeypatch.setattr(main, "_now", lambda: NOW)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")
    return library


def test_find_book(cli):
    result = runner.invoke(app, ["find", ULYSSES])
    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Title: Ulysses" in result.stdout
    assert "Available: 2/2" in result.stdout


def test_find_book_not_found(cli):
    result = runner.invoke(app, ["find", "9780132350884"])
    assert result.exit_code == 1
    assert "Error: Book 9780132350884 not found" in result.stdout


def test_issue_and_return(cli):
    result = runner.invoke(app, ["issue", SAPIENS, "m-student"])
    assert result.exit_code == 0
    assert f"Issued {SAPIENS} to m-student" in result.stdout
    assert "due 2024-03-15" in result.stdout

    loan = asyncio.run(cli.open_loans("m-student"))[0]
    result = runner.invoke(app, ["return", loan.id])
    assert result.exit_code == 0
    assert f"Returned loan {loan.id}" in result.stdout


def test_issue_refused(cli):
    runner.invoke(app, ["issue", SAPIENS, "m-student"])
    result = runner.invoke(app, ["issue", SAPIENS, "m-faculty"])
    assert result.exit_code == 1
    assert "No copies of" in result.stdout


def test_late_return_with_damage(cli, monkeypatch):
    record = asyncio.run(cli.issue_book(ULYSSES, "m-student", NOW))
    monkeypatch.setattr(main, "_now", lambda: record.due_date + timedelta(days=2))

    result = runner.invoke(app, ["return", record.id, "--damage", "3.5"])
    assert result.exit_code == 0
    assert "2.00 (overdue) is pending" in result.stdout
    assert "3.50 (damaged) is pending" in result.stdout


def test_return_rejects_bad_amount(cli):
    result = runner.invoke(app, ["return", "loan-1", "--damage", "lots"])
    assert result.exit_code == 1
    assert "invalid amount" in result.stdout


def test_renew(cli):
    record = asyncio.run(cli.issue_book(ULYSSES, "m-student", NOW))
    result = runner.invoke(app, ["renew", record.id])
    assert result.exit_code == 0
    assert "(renewal 1)" in result.stdout


def test_loans_and_overdue(cli, monkeypatch):
    assert "No loans." in runner.invoke(app, ["loans", "m-student"]).stdout

    record = asyncio.run(cli.issue_book(ULYSSES, "m-student", NOW))
    result = runner.invoke(app, ["loans", "m-student"])
    assert record.id in result.stdout
    assert "OVERDUE" not in result.stdout

    monkeypatch.setattr(main, "_now", lambda: record.due_date + timedelta(days=1))
    result = runner.invoke(app, ["overdue"])
    assert f"{record.id}  {ULYSSES}" in result.stdout
    assert "OVERDUE" in result.stdout


def test_loans_json_output(cli):
    record = asyncio.run(cli.issue_book(ULYSSES, "m-student", NOW))
    result = runner.invoke(app, ["--output", "json", "loans", "m-student"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [loan["id"] for loan in payload] == [record.id]


def test_balance_pay_and_waive(cli):
    first = asyncio.run(cli.assess_fine("m-student", "2.50", FineReason.LOST, NOW))
    second = asyncio.run(cli.assess_fine("m-student", "1.00", FineReason.DAMAGED, NOW))

    result = runner.invoke(app, ["balance", "m-student"])
    assert "Outstanding balance for m-student: 3.50" in result.stdout

    result = runner.invoke(app, ["pay", first.id, "--method", "card"])
    assert result.exit_code == 0
    assert "is paid" in result.stdout

    result = runner.invoke(app, ["waive", second.id])
    assert "is waived" in result.stdout

    result = runner.invoke(app, ["pay", first.id])
    assert result.exit_code == 1
    assert "already paid" in result.stdout


def test_import_csv(cli, tmp_path):
    csv_file = tmp_path / "books.csv"
    csv_file.write_text(
        "ISBN,Title,Author,Publisher,Quantity\n"
        "9780132350884,Clean Code,Robert C. Martin,Prentice Hall,3\n"
        f"{ULYSSES},Ulysses,James Joyce,Oxford,1\n",
        encoding="utf-8",
    )
    result = runner.invoke(app, ["import-csv", str(csv_file)])
    assert result.exit_code == 0
    assert "1 added, 1 merged, 0 skipped" in result.stdout


def test_import_missing_file(cli, tmp_path):
    result = runner.invoke(app, ["import-csv", str(tmp_path / "missing.csv")])
    assert result.exit_code == 1
    assert "File not found" in result.stdout


def test_book_request_commands(cli):
    result = runner.invoke(app, ["request", "Design Patterns", "Gamma et al.", "-q", "2", "-r", "course reading"])
    assert result.exit_code == 0
    assert "(2 x Design Patterns) is pending" in result.stdout
    request = asyncio.run(cli.book_requests())[0]

    result = runner.invoke(app, ["requests", "--status", "pending"])
    assert f"{request.id}  2 x Design Patterns by Gamma et al.  [pending]" in result.stdout

    result = runner.invoke(app, ["approve", request.id, "--isbn", "9780201633610"])
    assert result.exit_code == 0
    assert "is approved" in result.stdout
    assert asyncio.run(cli.get_book("9780201633610")).quantity == 2

    result = runner.invoke(app, ["reject", request.id])
    assert result.exit_code == 1
    assert "already approved" in result.stdout
    assert "No book requests." in runner.invoke(app, ["requests", "-s", "pending"]).stdout


@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_command(mock_webbrowser_open, mock_subprocess_run):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_webbrowser_open.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "bookwize.api:app" in args
