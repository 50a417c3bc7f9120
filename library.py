import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from catalog import CatalogStore
from config import settings
from database import Database
from edit_requests import EditRequestQueue
from errors import NotFoundError
from identity import IdentityStore
from lending import LendingEngine
from models import Book, BorrowRecord, BorrowStatus, User, UserEditRequest
from permissions import Action, require
from reports import category_stats, monthly_stats
from seed import seed_initial_data

logger = logging.getLogger(__name__)


class Library:
    """Wires one database into the identity, catalog, lending and edit-request components.

    This is the single entry point used by the HTTP API and the CLI. Create one
    per database and call ``shutdown()`` when done.
    """

    def __init__(self, db_file: Optional[str] = None, seed: Optional[bool] = None) -> None:
        self.db = Database(db_file)
        self.db.create_tables()
        if settings.seed_on_init if seed is None else seed:
            seed_initial_data(self.db)

        self.identity = IdentityStore(self.db)
        self.catalog = CatalogStore(self.db)
        self.lending = LendingEngine(self.db)
        self.edit_requests = EditRequestQueue(self.db, self.identity)

    # ------------------------- Accounts ------------------------- #
    def login(self, username: str, password: str) -> Optional[User]:
        return self.identity.authenticate(username, password)

    def register(self, full_name: str, username: str, password: str) -> User:
        return self.identity.register(full_name, username, password)

    def find_user(self, user_id: str) -> Optional[User]:
        return self.identity.find_user(user_id)

    def list_users(self, actor: User) -> List[User]:
        return self.identity.list_users(actor)

    def create_user(self, actor: User, **fields: Any) -> User:
        return self.identity.create_user(actor, **fields)

    def update_user(self, actor: User, user_id: str, changes: Dict[str, Any]) -> User:
        return self.identity.update_user(actor, user_id, changes)

    def delete_user(self, actor: User, user_id: str) -> None:
        self.identity.delete_user(actor, user_id)

    # ------------------------- Edit requests ------------------------- #
    def propose_user_edit(self, actor: User, target_user_id: str,
                          new_data: Dict[str, Any]) -> UserEditRequest:
        return self.edit_requests.propose(actor, target_user_id, new_data)

    def list_edit_requests(self, actor: User) -> List[UserEditRequest]:
        return self.edit_requests.list_pending(actor)

    def resolve_edit_request(self, actor: User, request_id: str, approved: bool) -> Optional[User]:
        return self.edit_requests.resolve(actor, request_id, approved)

    # ------------------------- Catalog ------------------------- #
    def list_books(self) -> List[Book]:
        return self.catalog.list_books()

    def search_books(self, query: str) -> List[Book]:
        return self.catalog.search_books(query)

    def find_book(self, book_id: str) -> Optional[Book]:
        return self.catalog.find_book(book_id)

    def save_book(self, actor: User, book: Book) -> Book:
        return self.catalog.save_book(actor, book)

    def remove_book(self, actor: User, book_id: str) -> bool:
        return self.catalog.delete_book(actor, book_id)

    def apply_stock_edit(self, actor: User, book_id: str, new_total_stock: int) -> Book:
        return self.lending.apply_stock_edit(actor, book_id, new_total_stock)

    # ------------------------- Loans ------------------------- #
    def request_loan(self, actor: User, book_id: str, due_date: Any,
                     borrower_id: Optional[str] = None, now: Optional[datetime] = None) -> BorrowRecord:
        return self.lending.request_loan(actor, book_id, due_date, borrower_id, now)

    def approve(self, actor: User, record_id: str) -> BorrowRecord:
        return self.lending.approve(actor, record_id)

    def reject(self, actor: User, record_id: str, reason: Optional[str] = None) -> BorrowRecord:
        return self.lending.reject(actor, record_id, reason)

    def close(self, actor: User, record_id: str, outcome: Any = BorrowStatus.RETURNED,
              manual_overdue_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        return self.lending.close(actor, record_id, outcome, manual_overdue_days, now)

    def get_loan(self, record_id: str) -> BorrowRecord:
        record = self.lending.find_record(record_id)
        if not record:
            raise NotFoundError(f"Loan {record_id} not found.")
        return record

    def list_loans(self, actor: User) -> List[BorrowRecord]:
        return self.lending.list_loans(actor)

    def list_loans_by_user(self, user_id: str, actor: Optional[User] = None) -> List[BorrowRecord]:
        return self.lending.list_loans_by_user(user_id, actor)

    # ------------------------- Reports ------------------------- #
    def get_stats(self, actor: User) -> Dict[str, int]:
        return self.lending.get_stats(actor)

    def monthly_report(self, actor: User, now: Optional[datetime] = None) -> List[Dict]:
        require(actor, Action.VIEW_REPORTS)
        return monthly_stats(self.lending.list_loans(), now, settings.report_months)

    def category_report(self, actor: User) -> List[Dict]:
        require(actor, Action.VIEW_REPORTS)
        return category_stats(self.lending.list_loans(), self.catalog.list_books())

    def shutdown(self) -> None:
        """Release the database (needed for in-memory databases)."""
        self.db.close()
