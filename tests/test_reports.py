from datetime import datetime

import pytest

from errors import PermissionDeniedError
from models import Book, BorrowRecord, BorrowStatus
from reports import category_stats, lost_rate, monthly_stats

NOW = datetime(2024, 3, 15)


def _record(record_id, borrowed, status=BorrowStatus.RETURNED, book_id="bk-1"):
    return BorrowRecord(id=record_id, user_id="u", user_name="U", book_id=book_id,
                        book_title="T", borrow_date=borrowed, due_date=borrowed, status=status)


def test_lost_rate():
    assert lost_rate(0, 0) == 0.0
    assert lost_rate(3, 1) == 33.3
    assert lost_rate(4, 4) == 100.0


def test_monthly_stats_zero_fills_last_six_months():
    rows = monthly_stats([], now=NOW)
    assert [r["name"] for r in rows] == ["10/2023", "11/2023", "12/2023", "1/2024", "2/2024", "3/2024"]
    assert all(r["borrowed"] == 0 and r["lost"] == 0 and r["lost_rate"] == 0.0 for r in rows)


def test_monthly_stats_counts_by_admission_month():
    records = [
        _record("a", datetime(2024, 3, 1)),
        _record("b", datetime(2024, 3, 20), BorrowStatus.LOST),
        _record("c", datetime(2024, 3, 2), BorrowStatus.PENDING),
        _record("d", datetime(2024, 1, 31), BorrowStatus.LOST),
    ]
    rows = {r["name"]: r for r in monthly_stats(records, now=NOW)}
    assert rows["3/2024"] == {"name": "3/2024", "borrowed": 3, "lost": 1, "lost_rate": 33.3}
    assert rows["1/2024"]["lost_rate"] == 100.0
    assert rows["2/2024"]["borrowed"] == 0


def test_monthly_stats_keeps_older_months_in_order():
    rows = monthly_stats([_record("old", datetime(2022, 7, 4))], now=NOW, months=2)
    assert [r["name"] for r in rows] == ["7/2022", "2/2024", "3/2024"]


def test_category_stats_skips_deleted_books():
    books = [
        Book(id="bk-1", title="A", author="X", category="Fiction"),
        Book(id="bk-2", title="B", author="Y", category=""),
    ]
    records = [
        _record("a", NOW, book_id="bk-1"),
        _record("b", NOW, book_id="bk-1"),
        _record("c", NOW, book_id="bk-2"),
        _record("d", NOW, book_id="gone"),
    ]
    assert category_stats(records, books) == [
        {"name": "Fiction", "value": 2},
        {"name": "Other", "value": 1},
    ]


def test_library_reports(lib, admin, librarian, reader):
    record = lib.request_loan(reader, "bk-2", "2099-01-01")
    lib.approve(librarian, record.id)
    lib.close(librarian, record.id, BorrowStatus.LOST)

    monthly = lib.monthly_report(admin)
    assert len(monthly) == 6
    assert monthly[-1]["borrowed"] == 1
    assert monthly[-1]["lost"] == 1
    assert lib.category_report(admin) == [{"name": "Technology", "value": 1}]


def test_rejected_requests_are_not_counted(lib, admin, librarian, reader):
    record = lib.request_loan(reader, "bk-1", "2099-01-01")
    lib.reject(librarian, record.id, "Reserved")

    monthly = lib.monthly_report(admin)
    assert monthly[-1]["borrowed"] == 0
    assert monthly[-1]["lost_rate"] == 0.0
    assert lib.category_report(admin) == []


def test_monthly_stats_skips_rejected_records():
    records = [
        _record("a", datetime(2024, 3, 1), BorrowStatus.LOST),
        _record("b", datetime(2024, 3, 2), BorrowStatus.REJECTED),
    ]
    rows = {r["name"]: r for r in monthly_stats(records, now=NOW)}
    assert rows["3/2024"] == {"name": "3/2024", "borrowed": 1, "lost": 1, "lost_rate": 100.0}
    books = [Book(id="bk-1", title="A", author="X", category="Fiction")]
    assert category_stats(records, books) == [{"name": "Fiction", "value": 1}]


def test_reports_require_admin(lib, librarian):
    with pytest.raises(PermissionDeniedError):
        lib.monthly_report(librarian)
    with pytest.raises(PermissionDeniedError):
        lib.category_report(librarian)
