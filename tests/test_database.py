import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from database import MEMORY, Database, new_id
from library import Library
from models import BorrowRecord, Preferences, User, UserEditRequest, to_datetime
from seed import INITIAL_BOOKS, INITIAL_USERS, seed_initial_data


def test_new_id_prefix():
    first, second = new_id("bk"), new_id("bk")
    assert first.startswith("bk-")
    assert first != second


def test_seed_runs_once(db_file):
    db = Database(db_file)
    db.create_tables()
    assert db.is_empty()
    assert seed_initial_data(db) is True
    assert seed_initial_data(db) is False

    with db.connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM users").fetchone()[0] == len(INITIAL_USERS)
        assert conn.execute("SELECT COUNT(*) FROM books").fetchone()[0] == len(INITIAL_BOOKS)


def test_transaction_rolls_back(lib):
    with pytest.raises(RuntimeError):
        with lib.db.transaction() as conn:
            conn.execute("UPDATE books SET available_stock = 0 WHERE id = 'bk-1'")
            raise RuntimeError("boom")
    assert lib.find_book("bk-1").available_stock == 5


def test_stock_constraints_enforced_by_schema(lib):
    with pytest.raises(sqlite3.IntegrityError):
        with lib.db.transaction() as conn:
            conn.execute("UPDATE books SET available_stock = total_stock + 1 WHERE id = 'bk-1'")
    with pytest.raises(sqlite3.IntegrityError):
        with lib.db.transaction() as conn:
            conn.execute("UPDATE books SET available_stock = -1 WHERE id = 'bk-1'")


def test_in_memory_library():
    lib = Library(db_file=MEMORY, seed=True)
    try:
        assert len(lib.list_books()) == 5
        assert lib.login("admin", "123") is not None
    finally:
        lib.shutdown()


def test_in_memory_library_serializes_threads():
    lib = Library(db_file=MEMORY, seed=True)
    admin = lib.login("admin", "123")
    reader = lib.login("user", "123")
    errors = []

    def lend():
        try:
            for _ in range(30):
                record = lib.request_loan(reader, "bk-1", "2099-01-01")
                lib.close(admin, record.id)
        except Exception as e:
            errors.append(e)

    def edit():
        try:
            for i in range(30):
                book = lib.find_book("bk-2")
                lib.save_book(admin, replace(book, description=f"Edition {i}"))
        except Exception as e:
            errors.append(e)

    try:
        threads = [threading.Thread(target=lend), threading.Thread(target=edit)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert lib.find_book("bk-1").available_stock == 5
        assert lib.find_book("bk-2").description == "Edition 29"
        assert len(lib.list_loans_by_user(reader.id)) == 30
    finally:
        lib.shutdown()


def test_drop_removes_file(tmp_path):
    path = tmp_path / "gone.db"
    db = Database(str(path))
    db.create_tables()
    assert path.exists()
    db.drop()
    assert not path.exists()


def test_to_datetime():
    assert to_datetime(None) is None
    assert to_datetime("") is None
    assert to_datetime("2024-01-10T08:00:00.000Z") == datetime(2024, 1, 10, 8, 0)
    aware = datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc)
    assert to_datetime(aware).tzinfo is None


def test_user_from_row_parses_preferences():
    user = User.from_dict({"id": "u", "username": "u1", "full_name": "U",
                           "role": "LIBRARIAN", "preferences": '{"darkMode": true}'})
    assert user.is_staff()
    assert user.preferences == Preferences(dark_mode=True, notifications=True)


def test_borrow_record_round_trip_keeps_status():
    record = BorrowRecord.from_dict({
        "id": "br-1", "user_id": "u", "user_name": None, "book_id": "b", "book_title": "T",
        "borrow_date": "2024-01-01T10:00:00", "due_date": "2024-01-10T00:00:00",
        "status": "LOST", "fine_amount": 200000,
    })
    assert record.user_name == "Unknown"
    assert record.is_closed and not record.is_active
    assert record.display_status(datetime(2025, 1, 1)) == "LOST"


def test_edit_request_parses_json_payload():
    request = UserEditRequest.from_dict({
        "id": "req-1", "target_user_id": "u", "target_current_name": "U",
        "requested_by": "librarian", "requested_at": "2024-01-01T00:00:00",
        "new_data": '{"full_name": "New"}',
    })
    assert request.new_data == {"full_name": "New"}
    assert request.to_dict()["changes_password"] is False
