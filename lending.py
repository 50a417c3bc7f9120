"""Lending engine: admission, approval, rejection, close and fines.

Stock is reserved when a loan is requested, not when it is approved, so the
available count a reader sees already excludes pending requests. Every
mutating call runs under the engine lock and inside one database transaction
so the stock counter and the loan record always change together.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config import settings
from database import Database, new_id
from errors import NotFoundError, StateConflictError, ValidationError
from models import ACTIVE_STATUSES, Book, BorrowRecord, BorrowStatus, User
from permissions import Action, require
from utils.validators import DateValidator, StockValidator, TextValidator

logger = logging.getLogger(__name__)

_ACTIVE = tuple(s.value for s in ACTIVE_STATUSES)


# ------------------------- Fines ------------------------- #
def overdue_days(due_date: datetime, closed_at: datetime) -> int:
    """Whole calendar days between the due day and the close day, 0 if on time."""
    return max(0, (closed_at.date() - due_date.date()).days)


def compute_fine(
    due_date: datetime,
    closed_at: datetime,
    manual_overdue_days: Optional[int] = None,
    fine_per_day: Optional[int] = None,
) -> Tuple[int, Optional[str]]:
    """Return ``(fine, note)`` for a returned copy.

    An operator-confirmed day count wins over the computed one.
    """
    per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
    if manual_overdue_days is not None and manual_overdue_days > 0:
        return manual_overdue_days * per_day, f"Late {manual_overdue_days} days (operator-confirmed)"
    days = overdue_days(due_date, closed_at)
    if days > 0:
        return days * per_day, f"Late {days} days"
    return 0, None


def default_due_date(now: Optional[datetime] = None) -> datetime:
    """The usual loan period, counted from ``now``."""
    now = now or datetime.now()
    return now + timedelta(days=settings.default_loan_days)


# ------------------------- Stock ------------------------- #
def apply_stock_edit(book: Book, new_total_stock: int) -> Book:
    """Shift ``available_stock`` by the same delta as the total, clamped to [0, total].

    Reducing the total below the number of copies on loan leaves nothing
    available instead of going negative.
    """
    # 0 withdraws every copy of a book that stays in the catalog; save_book still requires 1
    new_total = StockValidator.validate_total_stock(new_total_stock, minimum=0)
    delta = new_total - book.total_stock
    book.available_stock = min(new_total, max(0, book.available_stock + delta))
    book.total_stock = new_total
    return book


class LendingEngine:
    """The only writer of loan records and of loan-driven stock changes."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._lock = threading.RLock()

    # ------------------------- Admission ------------------------- #
    def request_loan(
        self,
        actor: User,
        book_id: str,
        due_date: Any,
        borrower_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BorrowRecord:
        """Reserve one copy and open a PENDING record for the borrower."""
        require(actor, Action.REQUEST_LOAN)
        borrower_id = borrower_id or actor.id
        if borrower_id != actor.id:
            require(actor, Action.MANAGE_LOANS)
        now = now or datetime.now()
        due = DateValidator.parse_due_date(due_date, now)

        with self._lock, self.db.transaction() as conn:
            user = conn.execute("SELECT full_name FROM users WHERE id = ?", (borrower_id,)).fetchone()
            if not user:
                raise NotFoundError(f"User {borrower_id} not found.")
            book = conn.execute("SELECT title FROM books WHERE id = ?", (book_id,)).fetchone()
            if not book:
                raise NotFoundError(f"Book {book_id} not found.")

            active = self._count_active(conn, borrower_id)
            if active >= settings.max_active_loans:
                raise StateConflictError(
                    f"Borrowing limit reached: {active} active or pending loans "
                    f"(maximum {settings.max_active_loans})."
                )

            cursor = conn.execute(
                "UPDATE books SET available_stock = available_stock - 1"
                " WHERE id = ? AND available_stock > 0",
                (book_id,),
            )
            if cursor.rowcount == 0:
                raise StateConflictError(f"'{book['title']}' is out of stock.")

            record = BorrowRecord(
                id=new_id("br"),
                user_id=borrower_id,
                user_name=user["full_name"],
                book_id=book_id,
                book_title=book["title"],
                borrow_date=now,
                due_date=due,
                status=BorrowStatus.PENDING,
            )
            self._insert(conn, record)

        logger.info("Loan %s requested: %s -> %s (due %s)",
                    record.id, record.user_name, record.book_title, due.date())
        return record

    # ------------------------- Approval / rejection ------------------------- #
    def approve(self, actor: User, record_id: str) -> BorrowRecord:
        require(actor, Action.MANAGE_LOANS)
        with self._lock, self.db.transaction() as conn:
            record = self._fetch(conn, record_id)
            if record.status != BorrowStatus.PENDING:
                raise StateConflictError(
                    f"Loan {record_id} is {record.status.value}, only PENDING loans can be approved."
                )
            record.status = BorrowStatus.BORROWED
            self._update(conn, record)
        logger.info("Loan %s approved by %s", record_id, actor.username)
        return record

    def reject(self, actor: User, record_id: str, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> BorrowRecord:
        """Turn down a PENDING request and give its reserved copy back."""
        require(actor, Action.MANAGE_LOANS)
        now = now or datetime.now()
        with self._lock, self.db.transaction() as conn:
            record = self._fetch(conn, record_id)
            if record.status != BorrowStatus.PENDING:
                raise StateConflictError(
                    f"Loan {record_id} is {record.status.value}, only PENDING loans can be rejected."
                )
            record.status = BorrowStatus.REJECTED
            record.return_date = now
            record.fine_amount = 0
            reason = TextValidator.sanitize_text(reason)
            record.notes = f"Rejected: {reason}" if reason else "Rejected"
            self._release_copy(conn, record)
            self._update(conn, record)
        logger.info("Loan %s rejected by %s", record_id, actor.username)
        return record

    # ------------------------- Close ------------------------- #
    def close(
        self,
        actor: User,
        record_id: str,
        outcome: Any = BorrowStatus.RETURNED,
        manual_overdue_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Return or write off a loan and return the fine charged.

        Closing an already returned or lost record changes nothing and returns 0.
        """
        require(actor, Action.MANAGE_LOANS)
        try:
            outcome = BorrowStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown close outcome {outcome!r}.")
        if outcome not in (BorrowStatus.RETURNED, BorrowStatus.LOST):
            raise ValidationError("A loan can only be closed as RETURNED or LOST.")
        if manual_overdue_days is not None and manual_overdue_days < 0:
            raise ValidationError("Overdue days cannot be negative.")
        now = now or datetime.now()

        with self._lock, self.db.transaction() as conn:
            record = self._fetch(conn, record_id)
            if record.is_closed:
                logger.info("Loan %s already %s, close ignored", record_id, record.status.value)
                return 0
            if record.status == BorrowStatus.REJECTED:
                raise StateConflictError(f"Loan {record_id} was rejected and cannot be closed.")

            record.return_date = now
            if outcome == BorrowStatus.LOST:
                # the copy is gone, its reserved unit stays out of stock
                record.status = BorrowStatus.LOST
                record.fine_amount = settings.lost_book_fine
                record.notes = "Book lost"
            else:
                record.status = BorrowStatus.RETURNED
                record.fine_amount, record.notes = compute_fine(
                    record.due_date, now, manual_overdue_days
                )
                self._release_copy(conn, record)
            self._update(conn, record)

        logger.info("Loan %s closed as %s by %s, fine %d",
                    record_id, record.status.value, actor.username, record.fine_amount)
        return record.fine_amount

    # ------------------------- Stock edits ------------------------- #
    def apply_stock_edit(self, actor: User, book_id: str, new_total_stock: int) -> Book:
        require(actor, Action.MANAGE_CATALOG)
        with self._lock, self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if not row:
                raise NotFoundError(f"Book {book_id} not found.")
            book = apply_stock_edit(Book.from_dict(dict(row)), new_total_stock)
            conn.execute(
                "UPDATE books SET total_stock = ?, available_stock = ? WHERE id = ?",
                (book.total_stock, book.available_stock, book.id),
            )
        logger.info("Stock of %s set to %d (%d available)", book.id, book.total_stock, book.available_stock)
        return book

    # ------------------------- Queries ------------------------- #
    def find_record(self, record_id: str) -> Optional[BorrowRecord]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM borrow_records WHERE id = ?", (record_id,)).fetchone()
        return BorrowRecord.from_dict(dict(row)) if row else None

    def list_loans(self, actor: Optional[User] = None) -> List[BorrowRecord]:
        if actor is not None:
            require(actor, Action.MANAGE_LOANS)
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM borrow_records ORDER BY seq").fetchall()
        return [BorrowRecord.from_dict(dict(row)) for row in rows]

    def list_loans_by_user(self, user_id: str, actor: Optional[User] = None) -> List[BorrowRecord]:
        if actor is not None and actor.id != user_id:
            require(actor, Action.MANAGE_LOANS)
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM borrow_records WHERE user_id = ? ORDER BY seq", (user_id,)
            ).fetchall()
        return [BorrowRecord.from_dict(dict(row)) for row in rows]

    def count_active_loans(self, user_id: str) -> int:
        with self.db.connect() as conn:
            return self._count_active(conn, user_id)

    def get_stats(self, actor: Optional[User] = None) -> Dict[str, int]:
        """Totals for the dashboard: titles, active loans, members, fines."""
        if actor is not None:
            require(actor, Action.VIEW_REPORTS)
        with self.db.connect() as conn:
            total_books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            active_loans = conn.execute(
                f"SELECT COUNT(*) FROM borrow_records WHERE status IN ({','.join('?' * len(_ACTIVE))})",
                _ACTIVE,
            ).fetchone()[0]
            total_members = conn.execute(
                "SELECT COUNT(*) FROM users WHERE role = 'USER'"
            ).fetchone()[0]
            total_fines = conn.execute(
                "SELECT COALESCE(SUM(fine_amount), 0) FROM borrow_records"
            ).fetchone()[0]
        return {
            "total_books": total_books,
            "active_loans": active_loans,
            "total_members": total_members,
            "total_fines": total_fines,
        }

    # ------------------------- Persistence ------------------------- #
    @staticmethod
    def _count_active(conn: sqlite3.Connection, user_id: str) -> int:
        return conn.execute(
            f"SELECT COUNT(*) FROM borrow_records WHERE user_id = ?"
            f" AND status IN ({','.join('?' * len(_ACTIVE))})",
            (user_id,) + _ACTIVE,
        ).fetchone()[0]

    @staticmethod
    def _fetch(conn: sqlite3.Connection, record_id: str) -> BorrowRecord:
        row = conn.execute("SELECT * FROM borrow_records WHERE id = ?", (record_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Loan {record_id} not found.")
        return BorrowRecord.from_dict(dict(row))

    @staticmethod
    def _release_copy(conn: sqlite3.Connection, record: BorrowRecord) -> None:
        cursor = conn.execute(
            "UPDATE books SET available_stock = MIN(total_stock, available_stock + 1) WHERE id = ?",
            (record.book_id,),
        )
        if cursor.rowcount == 0:
            logger.warning("Book %s of loan %s no longer exists, stock not released",
                           record.book_id, record.id)

    @staticmethod
    def _insert(conn: sqlite3.Connection, record: BorrowRecord) -> None:
        data = record.to_dict()
        conn.execute(
            "INSERT INTO borrow_records (id, user_id, user_name, book_id, book_title, borrow_date,"
            " due_date, return_date, status, fine_amount, notes, seq)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,"
            " (SELECT COALESCE(MAX(seq), 0) + 1 FROM borrow_records))",
            (data["id"], data["user_id"], data["user_name"], data["book_id"], data["book_title"],
             data["borrow_date"], data["due_date"], data["return_date"], data["status"],
             data["fine_amount"], data["notes"]),
        )

    @staticmethod
    def _update(conn: sqlite3.Connection, record: BorrowRecord) -> None:
        data = record.to_dict()
        conn.execute(
            "UPDATE borrow_records SET status = ?, return_date = ?, fine_amount = ?, notes = ?"
            " WHERE id = ?",
            (data["status"], data["return_date"], data["fine_amount"], data["notes"], data["id"]),
        )
