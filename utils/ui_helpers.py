import os
import json
from typing import List, Any, Dict, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _money(amount: int) -> str:
    return f"{amount:,}"

def print_books(books: List[Any], empty_message: str = "No books in library.") -> None:
    """Print books in the current output mode.
    - plain: 'id - Title by Author [available/total]' lines
    - json: array of book dicts
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="dim")
        table.add_column("Available", justify="right")
        for b in books:
            style = "green" if b.available_stock > 0 else "red"
            table.add_row(b.id, b.title, b.author, b.category or "-",
                          f"[{style}]{b.available_stock}[/]/{b.total_stock}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available_stock}/{b.total_stock}]")

def print_loans(records: List[Any], empty_message: str = "No loans found.") -> None:
    """Print loan records; OVERDUE is shown for borrowed loans past their due day."""
    mode = get_output_mode()

    if not records:
        print(empty_message)
        return

    if mode == "json":
        payload = [dict(r.to_dict(), display_status=r.display_status()) for r in records]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        colors = {"PENDING": "yellow", "BORROWED": "cyan", "OVERDUE": "bold red",
                  "RETURNED": "green", "LOST": "red", "REJECTED": "dim"}
        table = Table(title="📖 Loans", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Reader")
        table.add_column("Book")
        table.add_column("Due", no_wrap=True)
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for r in records:
            status = r.display_status()
            table.add_row(r.id, r.user_name, r.book_title, r.due_date.date().isoformat(),
                          f"[{colors.get(status, 'white')}]{status}[/]",
                          _money(r.fine_amount) if r.fine_amount else "-")
        _console.print(table)
    else:
        for r in records:
            line = f"{r.id} - {r.book_title} ({r.user_name}) due {r.due_date.date().isoformat()} {r.display_status()}"
            if r.fine_amount:
                line += f" fine {r.fine_amount}"
            print(line)

def print_stats(stats: Dict[str, Any]) -> None:
    """Print dashboard totals.
    - plain: one 'Label: value' line per metric
    - json: JSON object
    - rich: Panel with the main metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("Total Books", stats.get("total_books", 0)),
        ("Active Loans", stats.get("active_loans", 0)),
        ("Members", stats.get("total_members", 0)),
        ("Total Fines", stats.get("total_fines", 0)),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {_money(value)}" for label, value in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in labels:
            print(f"{label}: {value}")

def print_report(rows: List[Dict[str, Any]], title: str, columns: Optional[List[str]] = None) -> None:
    """Print report rows (monthly or per-category) as a table or JSON."""
    mode = get_output_mode()

    if not rows:
        print("No data to report.")
        return

    columns = columns or list(rows[0].keys())
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, header_style="bold cyan")
        for col in columns:
            table.add_column(col.replace("_", " ").title(), justify="left" if col == "name" else "right")
        for row in rows:
            table.add_row(*(str(row.get(col, "")) for col in columns))
        _console.print(table)
    else:
        print(title)
        for row in rows:
            print("  ".join(f"{col}={row.get(col, '')}" for col in columns))
