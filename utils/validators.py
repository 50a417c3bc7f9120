import re
from datetime import date, datetime
from typing import Any, Optional

from errors import ValidationError
from models import to_datetime

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")


class TextValidator:
    """Required-field checks and light sanitization for free text."""

    @staticmethod
    def require(value: Optional[str], field: str) -> str:
        if value is None or not str(value).strip():
            raise ValidationError(f"{field} is required.")
        return str(value).strip()

    @staticmethod
    def validate_username(username: Optional[str]) -> str:
        name = TextValidator.require(username, "Username")
        if not USERNAME_PATTERN.match(name):
            raise ValidationError(
                "Username must be 3-32 characters of letters, digits, '.', '_' or '-'."
            )
        return name

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # strip HTML tags from notes and descriptions
        return re.sub(r"<[^>]*>", "", text).strip()


class StockValidator:
    """Integer checks for stock counters and publication years."""

    @staticmethod
    def validate_total_stock(value: Any, minimum: int = 1) -> int:
        try:
            stock = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Total stock must be a whole number.")
        if isinstance(value, float) and not value.is_integer():
            raise ValidationError("Total stock must be a whole number.")
        if stock < minimum:
            raise ValidationError(f"Total stock must be at least {minimum}.")
        return stock

    @staticmethod
    def validate_publish_year(value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            year = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Publish year must be a number.")
        if year < 0 or year > date.today().year + 1:
            raise ValidationError(f"Publish year {year} is out of range.")
        return year


class DateValidator:
    """Parsing for caller-supplied dates."""

    @staticmethod
    def parse(value: Any, field: str) -> datetime:
        if value is None or value == "":
            raise ValidationError(f"{field} is required.")
        try:
            return to_datetime(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{field} must be an ISO-8601 date, got {value!r}.")

    @staticmethod
    def parse_due_date(value: Any, now: datetime) -> datetime:
        """A due date must fall on a calendar day after ``now``."""
        due = DateValidator.parse(value, "Due date")
        if due.date() <= now.date():
            raise ValidationError("Due date must be later than today.")
        return due

    @staticmethod
    def validate_birth_date(value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        try:
            parsed = date.fromisoformat(str(value))
        except ValueError:
            raise ValidationError("Birth date must use the YYYY-MM-DD format.")
        if parsed > date.today():
            raise ValidationError("Birth date cannot be in the future.")
        return parsed.isoformat()
