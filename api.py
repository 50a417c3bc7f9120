import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field

from config import settings
from errors import (
    InvariantGuardError,
    LibraryError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from lending import default_due_date
from library import Library
from models import Book, BorrowRecord, Role, User, UserEditRequest

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# --- Models ---
class PreferencesModel(BaseModel):
    dark_mode: bool = False
    notifications: bool = True


class UserModel(BaseModel):
    id: str
    username: str
    full_name: str
    role: Role
    avatar: str | None = None
    birth_date: str | None = None
    preferences: PreferencesModel


class RegisterModel(BaseModel):
    full_name: str
    username: str
    password: str


class UserCreateModel(BaseModel):
    username: str
    full_name: str
    password: str
    role: Role = Role.USER
    avatar: str | None = None
    birth_date: str | None = None
    preferences: PreferencesModel | None = None


class ProfileUpdateModel(BaseModel):
    """Fields a user may change on their own account."""
    full_name: str | None = None
    avatar: str | None = None
    birth_date: str | None = None
    preferences: PreferencesModel | None = None
    password: str | None = Field(default=None, description="Leave empty to keep the current password")


class UserUpdateModel(ProfileUpdateModel):
    username: str | None = None
    role: Role | None = None


class BookModel(BaseModel):
    id: str
    title: str
    author: str
    category: str = ""
    publish_year: int | None = None
    total_stock: int
    available_stock: int
    image_url: str | None = None
    description: str | None = None
    language: str | None = None
    translator: str | None = None
    publisher: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    total_stock: int = Field(..., ge=1)
    category: str = ""
    publish_year: int | None = None
    image_url: str | None = None
    description: str | None = None
    language: str | None = None
    translator: str | None = None
    publisher: str | None = None


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    total_stock: int | None = Field(default=None, ge=1)
    category: str | None = None
    publish_year: int | None = None
    image_url: str | None = None
    description: str | None = None
    language: str | None = None
    translator: str | None = None
    publisher: str | None = None


class StockEditModel(BaseModel):
    total_stock: int = Field(..., ge=0)


class LoanModel(BaseModel):
    id: str
    user_id: str
    user_name: str
    book_id: str
    book_title: str
    borrow_date: str
    due_date: str
    return_date: str | None = None
    status: str
    display_status: str
    fine_amount: int = 0
    notes: str | None = None


class LoanRequestModel(BaseModel):
    book_id: str
    due_date: Union[date, datetime, None] = Field(default=None, description="Defaults to the standard loan period")
    borrower_id: str | None = Field(default=None, description="Staff only: borrow on behalf of a user")


class LoanCloseModel(BaseModel):
    outcome: Literal["RETURNED", "LOST"] = "RETURNED"
    manual_overdue_days: int | None = Field(default=None, ge=0)


class LoanRejectModel(BaseModel):
    reason: str | None = None


class EditRequestModel(BaseModel):
    id: str
    target_user_id: str
    target_current_name: str
    requested_by: str
    requested_at: str
    new_data: Dict[str, Any]
    changes_password: bool = False


class EditRequestCreateModel(BaseModel):
    target_user_id: str
    new_data: UserUpdateModel


class ResolveModel(BaseModel):
    approved: bool


class StatsModel(BaseModel):
    total_books: int
    active_loans: int
    total_members: int
    total_fines: int


class MonthlyReportRow(BaseModel):
    name: str
    borrowed: int
    lost: int
    lost_rate: float


class CategoryReportRow(BaseModel):
    name: str
    value: int


# --- Helpers ---
def _user_out(user: User) -> UserModel:
    return UserModel(**user.to_dict())


def _book_out(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _loan_out(record: BorrowRecord) -> LoanModel:
    return LoanModel(**record.to_dict(), display_status=record.display_status())


def _edit_request_out(request: UserEditRequest) -> EditRequestModel:
    return EditRequestModel(**request.to_dict())


_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    StateConflictError: status.HTTP_409_CONFLICT,
    InvariantGuardError: status.HTTP_409_CONFLICT,
}


def create_app(library: Optional[Library] = None) -> FastAPI:
    """Build the API around ``library``; a default one is opened on startup otherwise."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "library", None) is None:
            app.state.library = Library()
        logger.info("Library API started on database %s", app.state.library.db.db_file)
        try:
            yield
        finally:
            app.state.library.shutdown()

    app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)
    app.state.library = library

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        code = next((c for cls, c in _STATUS_CODES.items() if isinstance(exc, cls)),
                    status.HTTP_400_BAD_REQUEST)
        logger.info("%s %s -> %d: %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    # --- Security ---
    security = HTTPBasic()

    def get_library(request: Request) -> Library:
        return request.app.state.library

    def current_user(
        credentials: HTTPBasicCredentials = Depends(security),
        lib: Library = Depends(get_library),
    ) -> User:
        """Dependency resolving HTTP Basic credentials to the acting user."""
        user = lib.login(credentials.username, credentials.password)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid username or password",
                headers={"WWW-Authenticate": "Basic"},
            )
        return user

    # --- Health ---
    @app.get("/health")
    def health(lib: Library = Depends(get_library)):
        db_ok = True
        try:
            with lib.db.connect() as conn:
                conn.execute("SELECT 1")
        except Exception:
            logger.exception("Health check database probe failed")
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now().isoformat(),
            "db": db_ok,
        }

    # --- Accounts ---
    @app.post("/register", response_model=UserModel, status_code=status.HTTP_201_CREATED)
    def register(payload: RegisterModel, lib: Library = Depends(get_library)):
        """Self-service sign-up; always creates a reader account."""
        return _user_out(lib.register(payload.full_name, payload.username, payload.password))

    @app.get("/me", response_model=UserModel)
    def me(user: User = Depends(current_user)):
        return _user_out(user)

    @app.put("/me", response_model=UserModel)
    def update_me(payload: ProfileUpdateModel, user: User = Depends(current_user),
                  lib: Library = Depends(get_library)):
        changes = payload.model_dump(exclude_unset=True)
        return _user_out(lib.update_user(user, user.id, changes))

    @app.get("/users", response_model=List[UserModel])
    def list_users(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [_user_out(u) for u in lib.list_users(user)]

    @app.post("/users", response_model=UserModel, status_code=status.HTTP_201_CREATED)
    def create_user(payload: UserCreateModel, user: User = Depends(current_user),
                    lib: Library = Depends(get_library)):
        fields = payload.model_dump(exclude_none=True)
        return _user_out(lib.create_user(user, **fields))

    @app.put("/users/{user_id}", response_model=UserModel)
    def update_user(user_id: str, payload: UserUpdateModel, user: User = Depends(current_user),
                    lib: Library = Depends(get_library)):
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise HTTPException(status_code=400, detail="Nothing to update.")
        return _user_out(lib.update_user(user, user_id, changes))

    @app.delete("/users/{user_id}")
    def delete_user(user_id: str, user: User = Depends(current_user),
                    lib: Library = Depends(get_library)):
        lib.delete_user(user, user_id)
        return {"message": "User deleted."}

    # --- Edit requests ---
    @app.get("/edit-requests", response_model=List[EditRequestModel])
    def list_edit_requests(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [_edit_request_out(r) for r in lib.list_edit_requests(user)]

    @app.post("/edit-requests", response_model=EditRequestModel, status_code=status.HTTP_201_CREATED)
    def propose_edit(payload: EditRequestCreateModel, user: User = Depends(current_user),
                     lib: Library = Depends(get_library)):
        new_data = payload.new_data.model_dump(exclude_none=True)
        return _edit_request_out(lib.propose_user_edit(user, payload.target_user_id, new_data))

    @app.post("/edit-requests/{request_id}/resolve")
    def resolve_edit(request_id: str, payload: ResolveModel, user: User = Depends(current_user),
                     lib: Library = Depends(get_library)):
        updated = lib.resolve_edit_request(user, request_id, payload.approved)
        return {
            "approved": payload.approved,
            "user": _user_out(updated).model_dump() if updated else None,
        }

    # --- Books ---
    @app.get("/books", response_model=List[BookModel])
    def get_books(
        q: Optional[str] = Query(None, description="Search title, author or id"),
        available_only: bool = Query(False, description="Only books with copies on the shelf"),
        lib: Library = Depends(get_library),
    ):
        books = lib.search_books(q) if q else lib.list_books()
        if available_only:
            books = [b for b in books if b.available_stock > 0]
        return [_book_out(b) for b in books]

    @app.get("/books/{book_id}", response_model=BookModel)
    def get_book(book_id: str, lib: Library = Depends(get_library)):
        book = lib.find_book(book_id)
        if not book:
            raise HTTPException(status_code=404, detail="Book not found.")
        return _book_out(book)

    @app.post("/books", response_model=BookModel, status_code=status.HTTP_201_CREATED)
    def add_book(payload: BookCreateModel, user: User = Depends(current_user),
                 lib: Library = Depends(get_library)):
        book = Book(id="", **payload.model_dump())
        return _book_out(lib.save_book(user, book))

    @app.put("/books/{book_id}", response_model=BookModel)
    def update_book(book_id: str, payload: BookUpdateModel, user: User = Depends(current_user),
                    lib: Library = Depends(get_library)):
        book = lib.find_book(book_id)
        if not book:
            raise HTTPException(status_code=404, detail="Book not found.")
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            raise HTTPException(status_code=400, detail="Nothing to update.")
        for key, value in changes.items():
            setattr(book, key, value)
        return _book_out(lib.save_book(user, book))

    @app.put("/books/{book_id}/stock", response_model=BookModel)
    def edit_stock(book_id: str, payload: StockEditModel, user: User = Depends(current_user),
                   lib: Library = Depends(get_library)):
        return _book_out(lib.apply_stock_edit(user, book_id, payload.total_stock))

    @app.delete("/books/{book_id}")
    def delete_book(book_id: str, user: User = Depends(current_user),
                    lib: Library = Depends(get_library)):
        if not lib.remove_book(user, book_id):
            raise HTTPException(status_code=404, detail="Book not found.")
        return {"message": "Book removed."}

    # --- Loans ---
    @app.get("/loans", response_model=List[LoanModel])
    def list_loans(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [_loan_out(r) for r in lib.list_loans(user)]

    @app.get("/loans/mine", response_model=List[LoanModel])
    def my_loans(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [_loan_out(r) for r in lib.list_loans_by_user(user.id, user)]

    @app.get("/users/{user_id}/loans", response_model=List[LoanModel])
    def user_loans(user_id: str, user: User = Depends(current_user),
                   lib: Library = Depends(get_library)):
        return [_loan_out(r) for r in lib.list_loans_by_user(user_id, user)]

    @app.post("/loans", response_model=LoanModel, status_code=status.HTTP_201_CREATED)
    def request_loan(payload: LoanRequestModel, user: User = Depends(current_user),
                     lib: Library = Depends(get_library)):
        due_date = payload.due_date or default_due_date()
        record = lib.request_loan(user, payload.book_id, due_date, payload.borrower_id)
        return _loan_out(record)

    @app.post("/loans/{record_id}/approve", response_model=LoanModel)
    def approve_loan(record_id: str, user: User = Depends(current_user),
                     lib: Library = Depends(get_library)):
        return _loan_out(lib.approve(user, record_id))

    @app.post("/loans/{record_id}/reject", response_model=LoanModel)
    def reject_loan(record_id: str, payload: LoanRejectModel | None = None,
                    user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return _loan_out(lib.reject(user, record_id, payload.reason if payload else None))

    @app.post("/loans/{record_id}/close")
    def close_loan(record_id: str, payload: LoanCloseModel, user: User = Depends(current_user),
                   lib: Library = Depends(get_library)):
        fine = lib.close(user, record_id, payload.outcome, payload.manual_overdue_days)
        return {"fine_amount": fine, "loan": _loan_out(lib.get_loan(record_id)).model_dump()}

    # --- Stats & reports ---
    @app.get("/stats", response_model=StatsModel)
    def get_stats(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return StatsModel(**lib.get_stats(user))

    @app.get("/reports/monthly", response_model=List[MonthlyReportRow])
    def monthly_report(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [MonthlyReportRow(**row) for row in lib.monthly_report(user)]

    @app.get("/reports/categories", response_model=List[CategoryReportRow])
    def category_report(user: User = Depends(current_user), lib: Library = Depends(get_library)):
        return [CategoryReportRow(**row) for row in lib.category_report(user)]

    return app


app = create_app()
