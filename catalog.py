import logging
import sqlite3
from dataclasses import replace
from typing import List, Optional

from database import Database, new_id
from errors import NotFoundError
from lending import apply_stock_edit
from models import Book
from permissions import Action, require
from utils.validators import StockValidator, TextValidator

logger = logging.getLogger(__name__)

_COLUMNS = ("title", "author", "category", "publish_year", "total_stock", "available_stock",
            "image_url", "description", "language", "translator", "publisher")


class CatalogStore:
    """Owns book records and their stock counters."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------- Lookups ------------------------- #
    def find_book(self, book_id: str) -> Optional[Book]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_book(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise NotFoundError(f"Book {book_id} not found.")
        return book

    def list_books(self) -> List[Book]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def search_books(self, query: str) -> List[Book]:
        """Case-insensitive match on title, author or id."""
        pattern = f"%{(query or '').strip()}%"
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE title LIKE ? OR author LIKE ? OR id LIKE ? ORDER BY title",
                (pattern, pattern, pattern),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def count_books(self) -> int:
        with self.db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    # ------------------------- Maintenance ------------------------- #
    def save_book(self, actor, book: Book) -> Book:
        """Create a book, or update an existing one keeping its stock consistent.

        The caller's ``available_stock`` is ignored: new books start fully
        available and edits shift availability by the change in total stock.
        """
        require(actor, Action.MANAGE_CATALOG)
        book = replace(
            book,
            title=TextValidator.require(book.title, "Title"),
            author=TextValidator.require(book.author, "Author"),
            category=(book.category or "").strip(),
            publish_year=StockValidator.validate_publish_year(book.publish_year),
            total_stock=StockValidator.validate_total_stock(book.total_stock),
            description=TextValidator.sanitize_text(book.description) or None,
        )

        with self.db.transaction() as conn:
            row = None
            if book.id:
                row = conn.execute("SELECT * FROM books WHERE id = ?", (book.id,)).fetchone()
            if row:
                stored = Book.from_dict(dict(row))
                book.available_stock = apply_stock_edit(stored, book.total_stock).available_stock
                self.persist_book(book, conn, insert=False)
                logger.info("%s updated book %s", actor.username, book.id)
            else:
                book.id = book.id or new_id("bk")
                book.available_stock = book.total_stock
                self.persist_book(book, conn, insert=True)
                logger.info("%s added book %s (%s)", actor.username, book.id, book.title)
        return book

    def delete_book(self, actor, book_id: str) -> bool:
        """Remove a book; loan records keep their title snapshot."""
        require(actor, Action.MANAGE_CATALOG)
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("%s deleted book %s", actor.username, book_id)
        return deleted

    def persist_book(self, book: Book, conn: Optional[sqlite3.Connection] = None,
                     insert: Optional[bool] = None) -> None:
        """Write a book row as-is. Stock invariants are the caller's business."""
        if conn is None:
            with self.db.transaction() as own:
                return self.persist_book(book, own, insert)
        if insert is None:
            insert = conn.execute("SELECT 1 FROM books WHERE id = ?", (book.id,)).fetchone() is None
        values = tuple(getattr(book, col) for col in _COLUMNS)
        if insert:
            conn.execute(
                f"INSERT INTO books ({', '.join(_COLUMNS)}, id) VALUES ({', '.join('?' * (len(_COLUMNS) + 1))})",
                values + (book.id,),
            )
        else:
            conn.execute(
                f"UPDATE books SET {', '.join(c + ' = ?' for c in _COLUMNS)} WHERE id = ?",
                values + (book.id,),
            )
