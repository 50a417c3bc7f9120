import json

import pytest
from typer.testing import CliRunner

from main import app
from models import BorrowStatus
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # --output writes the mode into the environment; restore it after each test
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")


@pytest.fixture
def invoke(lib):
    def _invoke(args, user=None, password="123"):
        env = {"LIBRARY_DB_FILE": lib.db.db_file, "LIBRARY_USERNAME": None, "LIBRARY_PASSWORD": None}
        if user:
            env.update({"LIBRARY_USERNAME": user, "LIBRARY_PASSWORD": password})
        return runner.invoke(app, args, env=env)
    return _invoke


def test_init_new_database(tmp_path):
    db_file = str(tmp_path / "fresh.db")
    result = runner.invoke(app, ["--db", db_file, "init"])
    assert result.exit_code == 0
    assert "Demo users and books loaded." in result.stdout

    again = runner.invoke(app, ["--db", db_file, "init"])
    assert again.exit_code == 0
    assert "demo data skipped" in again.stdout


def test_init_reset(invoke, lib):
    lib.register("Extra", "extra", "pw")
    result = invoke(["init", "--reset"])
    assert result.exit_code == 0
    assert "Demo users and books loaded." in result.stdout
    assert lib.login("extra", "pw") is None


def test_books(invoke):
    result = invoke(["books"])
    assert result.exit_code == 0
    assert "bk-1 - The Alchemist by Paulo Coelho [5/5]" in result.stdout
    assert len(result.stdout.strip().splitlines()) == 5


def test_books_json(invoke):
    result = invoke(["--output", "json", "books", "--available"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert {b["id"] for b in payload} == {"bk-1", "bk-2", "bk-3", "bk-4", "bk-5"}


def test_search(invoke):
    result = invoke(["search", "kahneman"])
    assert "bk-5 - Thinking, Fast and Slow" in result.stdout

    result = invoke(["search", "zzz"])
    assert result.exit_code == 0
    assert "No books matching 'zzz'." in result.stdout


def test_borrow_and_my_loans(invoke, lib, reader):
    result = invoke(["borrow", "bk-2", "2099-01-01"], user="user")
    assert result.exit_code == 0
    assert "Clean Code due 2099-01-01 (PENDING)" in result.stdout
    assert lib.find_book("bk-2").available_stock == 2

    result = invoke(["my-loans"], user="user")
    assert "Clean Code (Demo Reader) due 2099-01-01 PENDING" in result.stdout


def test_borrow_default_due_date(invoke, lib, reader):
    result = invoke(["borrow", "bk-1"], user="user")
    assert result.exit_code == 0
    assert len(lib.list_loans_by_user(reader.id)) == 1


def test_borrow_past_due_date(invoke):
    result = invoke(["borrow", "bk-2", "2000-01-01"], user="user")
    assert result.exit_code == 1
    assert "Error: Due date must be later than today." in result.stdout


def test_credentials_required(invoke):
    result = invoke(["my-loans"])
    assert result.exit_code == 1
    assert "Credentials required" in result.stdout

    result = invoke(["my-loans"], user="user", password="wrong")
    assert result.exit_code == 1
    assert "Invalid username or password" in result.stdout


def test_reader_cannot_list_all_loans(invoke):
    result = invoke(["loans"], user="user")
    assert result.exit_code == 1
    assert "Error: Only librarians and administrators can manage loans." in result.stdout


def test_approve_and_return_with_fine(invoke, lib, reader):
    record = lib.request_loan(reader, "bk-1", "2099-01-01")

    result = invoke(["approve", record.id], user="librarian")
    assert result.exit_code == 0
    assert f"Loan {record.id} approved" in result.stdout

    result = invoke(["loans", "--status", "borrowed"], user="librarian")
    assert record.id in result.stdout

    result = invoke(["return", record.id, "--days", "2"], user="librarian")
    assert result.exit_code == 0
    assert f"Loan {record.id} returned. Fine: 10000" in result.stdout
    assert lib.get_loan(record.id).status == BorrowStatus.RETURNED


def test_reject(invoke, lib, reader):
    record = lib.request_loan(reader, "bk-1", "2099-01-01")
    result = invoke(["reject", record.id, "--reason", "Reserved for class"], user="librarian")
    assert result.exit_code == 0
    assert lib.get_loan(record.id).notes == "Rejected: Reserved for class"
    assert lib.find_book("bk-1").available_stock == 5


def test_lost(invoke, lib, librarian, reader):
    record = lib.request_loan(reader, "bk-1", "2099-01-01")
    lib.approve(librarian, record.id)
    result = invoke(["lost", record.id], user="admin")
    assert result.exit_code == 0
    assert "Fine: 200000" in result.stdout


def test_unknown_loan(invoke):
    result = invoke(["approve", "br-missing"], user="librarian")
    assert result.exit_code == 1
    assert "Error: Loan br-missing not found." in result.stdout


def test_stats(invoke):
    result = invoke(["stats"], user="admin")
    assert result.exit_code == 0
    assert "Total Books: 5" in result.stdout
    assert "Members: 1" in result.stdout

    assert invoke(["stats"], user="librarian").exit_code == 1


def test_reports(invoke, lib, reader):
    lib.request_loan(reader, "bk-3", "2099-01-01")

    result = invoke(["--output", "json", "report"], user="admin")
    assert result.exit_code == 0
    assert len(json.loads(result.stdout)) == 6

    result = invoke(["--output", "plain", "report", "--kind", "categories"], user="admin")
    assert "name=Self-help  value=1" in result.stdout

    assert invoke(["report", "--kind", "yearly"], user="admin").exit_code == 1
