import logging
import os
import subprocess
import sys
import webbrowser
from functools import wraps
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

from config import settings
from errors import LibraryError
from lending import default_due_date
from library import Library
from models import BorrowStatus, User
from seed import seed_initial_data
from utils.ui_helpers import (
    print_books,
    print_loans,
    print_report,
    print_stats,
    set_output_mode,
)

APP_NAME = "Library CLI"

console = Console()
logger = logging.getLogger(__name__)


# Library instance for the current database file
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file: Optional[str] = None
    db_file_override: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        """Open the Library for the selected database, reopening if it changed."""
        db_file = cls.db_file_override or settings.database_file
        if cls._instance is None or cls._db_file != db_file:
            if cls._instance is not None:
                cls._instance.shutdown()
            # only `init` seeds, other commands never write demo data
            cls._instance = Library(db_file, seed=False)
            cls._db_file = db_file
            logger.debug("Opened library database %s", db_file)
        return cls._instance


def handle_errors(func):
    """Turn library errors into an 'Error: ...' line and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper


def _login(lib: Library, username: Optional[str], password: Optional[str]) -> User:
    if not username or not password:
        print("Error: Credentials required (--username/--password or LIBRARY_USERNAME/LIBRARY_PASSWORD).")
        raise typer.Exit(code=1)
    user = lib.login(username, password)
    if not user:
        print("Error: Invalid username or password.")
        raise typer.Exit(code=1)
    return user


USERNAME_OPTION = typer.Option(None, "--username", "-u", envvar="LIBRARY_USERNAME", help="Account username")
PASSWORD_OPTION = typer.Option(None, "--password", "-p", envvar="LIBRARY_PASSWORD", help="Account password")


# --- Typer CLI ---
app = typer.Typer(help=f"{settings.app_name} command line")

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file",
    ),
):
    """Global options (output mode, database)."""
    if output:
        set_output_mode(output)
    LibraryManager.db_file_override = db

@app.command("init")
@handle_errors
def cli_init(
    seed: bool = typer.Option(True, "--seed/--no-seed", help="Load demo users and books into an empty database"),
    reset: bool = typer.Option(False, "--reset", help="Delete the existing database first"),
):
    """Create the schema and optionally load demo data."""
    lib = LibraryManager.get_instance()
    if reset:
        lib.db.drop()
        LibraryManager._instance = None
        lib = LibraryManager.get_instance()
    print(f"Database ready: {lib.db.db_file}")
    if seed:
        if seed_initial_data(lib.db):
            print("Demo users and books loaded.")
        else:
            print("Database already has users; demo data skipped.")

@app.command("books")
def cli_books(available: bool = typer.Option(False, "--available", "-a", help="Only books with copies on the shelf")):
    """List the catalogue."""
    books = LibraryManager.get_instance().list_books()
    if available:
        books = [b for b in books if b.available_stock > 0]
    print_books(books)

@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Text to match in title, author or id")):
    """Search books by title, author or id."""
    books = LibraryManager.get_instance().search_books(query)
    print_books(books, empty_message=f"No books matching '{query}'.")

@app.command("loans")
@handle_errors
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only loans with this status (OVERDUE allowed)"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """List every loan (staff only)."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    records = lib.list_loans(user)
    if status:
        wanted = status.upper()
        records = [r for r in records if r.display_status() == wanted or r.status.value == wanted]
    print_loans(records)

@app.command("my-loans")
@handle_errors
def cli_my_loans(
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """List the signed-in user's loans."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    print_loans(lib.list_loans_by_user(user.id, user), empty_message="You have no loans.")

@app.command("borrow")
@handle_errors
def cli_borrow(
    book_id: str = typer.Argument(..., help="Book id"),
    due_date: Optional[str] = typer.Argument(None, help="Due date (YYYY-MM-DD); defaults to the standard loan period"),
    for_user: Optional[str] = typer.Option(None, "--for", help="Staff only: borrower user id"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Request a loan; the copy is reserved until staff approve or reject it."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    record = lib.request_loan(user, book_id, due_date or default_due_date(), for_user)
    print(f"Loan {record.id} requested: {record.book_title} due {record.due_date.date().isoformat()} ({record.status.value})")

@app.command("approve")
@handle_errors
def cli_approve(
    record_id: str = typer.Argument(..., help="Loan id"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Hand out a pending loan."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    record = lib.approve(user, record_id)
    print(f"Loan {record.id} approved: {record.book_title} for {record.user_name}.")

@app.command("reject")
@handle_errors
def cli_reject(
    record_id: str = typer.Argument(..., help="Loan id"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Note stored on the loan"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Turn down a pending loan and put the copy back on the shelf."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    record = lib.reject(user, record_id, reason)
    print(f"Loan {record.id} rejected.")

@app.command("return")
@handle_errors
def cli_return(
    record_id: str = typer.Argument(..., help="Loan id"),
    days: Optional[int] = typer.Option(None, "--days", "-d", min=0, help="Operator-confirmed overdue days"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Record a returned copy and charge any late fine."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    fine = lib.close(user, record_id, BorrowStatus.RETURNED, days)
    print(f"Loan {record_id} returned. Fine: {fine}")

@app.command("lost")
@handle_errors
def cli_lost(
    record_id: str = typer.Argument(..., help="Loan id"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Write off a borrowed copy as lost."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    fine = lib.close(user, record_id, BorrowStatus.LOST)
    print(f"Loan {record_id} marked lost. Fine: {fine}")

@app.command("stats")
@handle_errors
def cli_stats(
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Dashboard totals (administrators)."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    print_stats(lib.get_stats(user))

@app.command("report")
@handle_errors
def cli_report(
    kind: str = typer.Option("monthly", "--kind", "-k", help="monthly | categories"),
    username: Optional[str] = USERNAME_OPTION,
    password: Optional[str] = PASSWORD_OPTION,
):
    """Monthly borrowing or per-category report (administrators)."""
    lib = LibraryManager.get_instance()
    user = _login(lib, username, password)
    kind = kind.lower().strip()
    if kind == "monthly":
        print_report(lib.monthly_report(user), "Monthly loans",
                     ["name", "borrowed", "lost", "lost_rate"])
    elif kind in ("categories", "category"):
        print_report(lib.category_report(user), "Loans by category", ["name", "value"])
    else:
        print(f"Error: Unknown report '{kind}'. Use monthly or categories.")
        raise typer.Exit(code=1)

@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
    open_browser: bool = typer.Option(False, "--open/--no-open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    console.print(Panel.fit(f"[green]Starting API on[/] [link={url}]{url}[/link]", title=settings.app_name))
    if open_browser:
        webbrowser.open(url)

    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    env = dict(os.environ)
    if LibraryManager.db_file_override:
        env["LIBRARY_DB_FILE"] = LibraryManager.db_file_override
    try:
        if timeout and timeout > 0:
            # no reloader, so terminate() reaches the server itself
            proc = subprocess.Popen(args, env=env, start_new_session=os.name != "nt")
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.info("Timeout reached, stopping API server")
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=3)
        else:
            if settings.debug:
                args.append("--reload")
            subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


def run():
    """Console entry point."""
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    app()


if __name__ == "__main__":
    run()
