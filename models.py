from __future__ import annotations

import json
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote


class Role(str, Enum):
    ADMIN = "ADMIN"
    LIBRARIAN = "LIBRARIAN"
    USER = "USER"


class BorrowStatus(str, Enum):
    PENDING = "PENDING"      # requested, unit reserved
    BORROWED = "BORROWED"    # approved by an operator
    RETURNED = "RETURNED"
    LOST = "LOST"
    REJECTED = "REJECTED"    # turned down while pending, unit released


ACTIVE_STATUSES = (BorrowStatus.PENDING, BorrowStatus.BORROWED)
CLOSED_STATUSES = (BorrowStatus.RETURNED, BorrowStatus.LOST)

OVERDUE_LABEL = "OVERDUE"


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce an ISO string, date or datetime into a naive datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1]
    parsed = datetime.fromisoformat(text)
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def default_avatar(full_name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(full_name)}&background=random"


@dataclass
class Preferences:
    dark_mode: bool = False
    notifications: bool = True

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "Preferences":
        data = data or {}
        return Preferences(
            dark_mode=bool(data.get("dark_mode", data.get("darkMode", False))),
            notifications=bool(data.get("notifications", True)),
        )


@dataclass
class User:
    id: str
    username: str
    full_name: str
    role: Role = Role.USER
    password_hash: Optional[str] = None
    avatar: Optional[str] = None
    birth_date: Optional[str] = None
    preferences: Preferences = field(default_factory=Preferences)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.full_name} (@{self.username}, {self.role.value})"

    def is_staff(self) -> bool:
        return self.role in (Role.ADMIN, Role.LIBRARIAN)

    def to_dict(self, include_secret: bool = False) -> dict:
        data = {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "role": self.role.value,
            "avatar": self.avatar,
            "birth_date": self.birth_date,
            "preferences": asdict(self.preferences),
        }
        if include_secret:
            data["password_hash"] = self.password_hash
        return data

    @staticmethod
    def from_dict(data: dict) -> "User":
        prefs = data.get("preferences")
        if isinstance(prefs, str):
            prefs = json.loads(prefs) if prefs else None
        return User(
            id=data["id"],
            username=data["username"],
            full_name=data["full_name"],
            role=Role(data.get("role") or Role.USER.value),
            password_hash=data.get("password_hash"),
            avatar=data.get("avatar"),
            birth_date=data.get("birth_date"),
            preferences=Preferences.from_dict(prefs),
        )


@dataclass
class Book:
    id: str
    title: str
    author: str
    category: str = ""
    publish_year: Optional[int] = None
    total_stock: int = 0
    available_stock: int = 0
    image_url: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    translator: Optional[str] = None
    publisher: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_stock}/{self.total_stock})"

    @property
    def on_loan(self) -> int:
        return self.total_stock - self.available_stock

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id") or "",
            title=(data.get("title") or "").strip(),
            author=(data.get("author") or "").strip(),
            category=(data.get("category") or "").strip(),
            publish_year=data.get("publish_year"),
            total_stock=int(data.get("total_stock") or 0),
            available_stock=int(data.get("available_stock") or 0),
            image_url=data.get("image_url"),
            description=data.get("description"),
            language=data.get("language"),
            translator=data.get("translator"),
            publisher=data.get("publisher"),
        )


@dataclass
class BorrowRecord:
    id: str
    user_id: str
    user_name: str
    book_id: str
    book_title: str
    borrow_date: datetime
    due_date: datetime
    status: BorrowStatus = BorrowStatus.PENDING
    return_date: Optional[datetime] = None
    fine_amount: int = 0
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_STATUSES

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return self.status == BorrowStatus.BORROWED and now.date() > self.due_date.date()

    def display_status(self, now: Optional[datetime] = None) -> str:
        """Status label for listings; OVERDUE is derived, never stored."""
        if self.is_overdue(now):
            return OVERDUE_LABEL
        return self.status.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "borrow_date": _iso(self.borrow_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
            "fine_amount": self.fine_amount,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowRecord":
        return BorrowRecord(
            id=data["id"],
            user_id=data["user_id"],
            user_name=data.get("user_name") or "Unknown",
            book_id=data["book_id"],
            book_title=data.get("book_title") or "",
            borrow_date=to_datetime(data["borrow_date"]),
            due_date=to_datetime(data["due_date"]),
            status=BorrowStatus(data.get("status") or BorrowStatus.PENDING.value),
            return_date=to_datetime(data.get("return_date")),
            fine_amount=int(data.get("fine_amount") or 0),
            notes=data.get("notes"),
        )


@dataclass
class UserEditRequest:
    id: str
    target_user_id: str
    target_current_name: str
    requested_by: str
    requested_at: datetime
    new_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        # the proposed password hash never leaves the store
        proposed = {k: v for k, v in self.new_data.items() if k != "password_hash"}
        return {
            "id": self.id,
            "target_user_id": self.target_user_id,
            "target_current_name": self.target_current_name,
            "requested_by": self.requested_by,
            "requested_at": _iso(self.requested_at),
            "new_data": proposed,
            "changes_password": bool(self.new_data.get("password_hash")),
        }

    @staticmethod
    def from_dict(data: dict) -> "UserEditRequest":
        new_data = data.get("new_data") or {}
        if isinstance(new_data, str):
            new_data = json.loads(new_data)
        return UserEditRequest(
            id=data["id"],
            target_user_id=data["target_user_id"],
            target_current_name=data.get("target_current_name") or "",
            requested_by=data.get("requested_by") or "",
            requested_at=to_datetime(data["requested_at"]),
            new_data=new_data,
        )
