"""Read-only aggregates over loan records for the admin reports screen.

Nothing here locks or writes; callers pass in snapshots of records and books.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from models import Book, BorrowRecord, BorrowStatus

OTHER_CATEGORY = "Other"


def _loans(records: Iterable[BorrowRecord]) -> Iterable[BorrowRecord]:
    # rejected requests never became loans
    return (r for r in records if r.status != BorrowStatus.REJECTED)


def _month_key(year: int, month: int) -> str:
    return f"{month}/{year}"


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def lost_rate(borrowed: int, lost: int) -> float:
    """Share of lost loans in percent, one decimal."""
    if borrowed <= 0:
        return 0.0
    return round(lost / borrowed * 100, 1)


def monthly_stats(records: Iterable[BorrowRecord], now: Optional[datetime] = None,
                  months: int = 6) -> List[Dict]:
    """Borrowed and lost counts per admission month, rejected requests excluded.

    The last ``months`` months are always present (zero-filled); older or
    future months appear when records fall into them. Rows are chronological.
    """
    now = now or datetime.now()
    buckets: Dict[Tuple[int, int], Dict] = {}
    for offset in range(months - 1, -1, -1):
        year, month = _shift_month(now.year, now.month, -offset)
        buckets[(year, month)] = {"name": _month_key(year, month), "borrowed": 0, "lost": 0}

    for record in _loans(records):
        key = (record.borrow_date.year, record.borrow_date.month)
        bucket = buckets.setdefault(key, {"name": _month_key(*key), "borrowed": 0, "lost": 0})
        bucket["borrowed"] += 1
        if record.status == BorrowStatus.LOST:
            bucket["lost"] += 1

    rows = [buckets[key] for key in sorted(buckets)]
    for row in rows:
        row["lost_rate"] = lost_rate(row["borrowed"], row["lost"])
    return rows


def category_stats(records: Iterable[BorrowRecord], books: Iterable[Book]) -> List[Dict]:
    """Loan counts per book category; loans of deleted books and rejected requests are skipped."""
    categories = {book.id: (book.category or OTHER_CATEGORY) for book in books}
    counts: Dict[str, int] = {}
    for record in _loans(records):
        category =categories.get(record.book_id)
        if category is None:
            continue
        counts[category] = counts.get(category, 0) + 1
    return [{"name": name, "value": value} for name, value in counts.items()]
