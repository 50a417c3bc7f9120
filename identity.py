import json
import logging
import sqlite3
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional

from auth import hash_password, verify_password
from database import Database, new_id
from errors import InvariantGuardError, NotFoundError, StateConflictError, ValidationError
from models import Preferences, Role, User, default_avatar
from permissions import Action, require, require_user_management
from utils.validators import DateValidator, TextValidator

logger = logging.getLogger(__name__)

# Fields a caller may change through update_user
EDITABLE_FIELDS = ("username", "full_name", "role", "password", "password_hash",
                   "avatar", "birth_date", "preferences")


def parse_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise ValidationError(f"Unknown role {value!r}.")


class IdentityStore:
    """Owns user records: lookups, registration, account management and login."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------- Lookups ------------------------- #
    def find_user(self, user_id: str) -> Optional[User]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def find_user_by_username(self, username: str) -> Optional[User]:
        if not username:
            return None
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = ?", (username.strip(),)
            ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def get_user(self, user_id: str) -> User:
        user = self.find_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found.")
        return user

    def list_users(self, actor: Optional[User] = None) -> List[User]:
        """All accounts; librarians only see reader accounts."""
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at, username").fetchall()
        users = [User.from_dict(dict(row)) for row in rows]
        if actor is not None:
            require(actor, Action.MANAGE_MEMBERS)
            if actor.role == Role.LIBRARIAN:
                users = [u for u in users if u.role == Role.USER]
        return users

    def count_members(self) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM users WHERE role = ?", (Role.USER.value,)
            ).fetchone()[0]

    # ------------------------- Authentication ------------------------- #
    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self.find_user_by_username(username)
        if user and verify_password(password, user.password_hash):
            return user
        logger.info("Failed login for %r", username)
        return None

    # ------------------------- Account creation ------------------------- #
    def register(self, full_name: str, username: str, password: str) -> User:
        """Self-service sign-up; always creates a reader account."""
        return self._insert(
            username=username,
            full_name=full_name,
            password=password,
            role=Role.USER,
        )

    def create_user(
        self,
        actor: User,
        username: str,
        full_name: str,
        password: str,
        role: Role = Role.USER,
        avatar: Optional[str] = None,
        birth_date: Optional[str] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> User:
        role = parse_role(role)
        require_user_management(actor, role)
        user = self._insert(
            username=username,
            full_name=full_name,
            password=password,
            role=role,
            avatar=avatar,
            birth_date=birth_date,
            preferences=preferences,
        )
        logger.info("%s created %s account %s", actor.username, role.value, user.username)
        return user

    def _insert(self, *, username, full_name, password, role, avatar=None,
                birth_date=None, preferences=None, user_id=None,
                password_hash=None) -> User:
        username = TextValidator.validate_username(username)
        full_name = TextValidator.require(full_name, "Full name")
        if password_hash is None:
            if not password:
                raise ValidationError("A password is required for new accounts.")
            password_hash = hash_password(password)
        user = User(
            id=user_id or new_id("user"),
            username=username,
            full_name=full_name,
            role=parse_role(role),
            password_hash=password_hash,
            avatar=avatar or default_avatar(full_name),
            birth_date=DateValidator.validate_birth_date(birth_date),
            preferences=Preferences.from_dict(preferences),
        )
        try:
            with self.db.transaction() as conn:
                if self._username_taken(conn, username):
                    raise StateConflictError(f"Username {username} already exists.")
                self._write(conn, user, insert=True)
        except sqlite3.IntegrityError as e:
            raise StateConflictError(f"Username {username} already exists.") from e
        return user

    # ------------------------- Updates ------------------------- #
    def update_user(self, actor: User, user_id: str, changes: Dict[str, Any]) -> User:
        """Apply profile changes; an empty or missing password keeps the current one."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown user fields: {', '.join(sorted(unknown))}.")

        target = self.get_user(user_id)
        new_role = parse_role(changes["role"]) if changes.get("role") else target.role
        if actor.id == target.id and new_role == target.role:
            require(actor, Action.EDIT_OWN_PROFILE)
        else:
            require_user_management(actor, target.role)
            require_user_management(actor, new_role)

        updated = replace(target)
        if changes.get("username") is not None:
            updated.username = TextValidator.validate_username(changes["username"])
        if changes.get("full_name") is not None:
            updated.full_name = TextValidator.require(changes["full_name"], "Full name")
        if "avatar" in changes:
            updated.avatar = changes["avatar"] or default_avatar(updated.full_name)
        if "birth_date" in changes:
            updated.birth_date = DateValidator.validate_birth_date(changes["birth_date"])
        if changes.get("preferences") is not None:
            prefs = changes["preferences"]
            if isinstance(prefs, Preferences):
                prefs = asdict(prefs)
            updated.preferences = Preferences.from_dict({**asdict(target.preferences), **prefs})
        if changes.get("password"):
            updated.password_hash = hash_password(changes["password"])
        elif changes.get("password_hash"):
            updated.password_hash = changes["password_hash"]
        updated.role = new_role

        try:
            with self.db.transaction() as conn:
                if updated.username != target.username and self._username_taken(conn, updated.username):
                    raise StateConflictError(f"Username {updated.username} already exists.")
                if target.role == Role.ADMIN and new_role != Role.ADMIN and self._count_admins(conn) <= 1:
                    raise InvariantGuardError("Cannot demote the last administrator.")
                self._write(conn, updated, insert=False)
        except sqlite3.IntegrityError as e:
            raise StateConflictError(f"Username {updated.username} already exists.") from e
        logger.info("%s updated account %s", actor.username, updated.username)
        return updated

    # ------------------------- Deletion ------------------------- #
    def delete_user(self, actor: User, user_id: str) -> None:
        require(actor, Action.DELETE_USER)
        with self.db.transaction() as conn:
            row = conn.execute("SELECT role, username FROM users WHERE id = ?", (user_id,)).fetchone()
            if not row:
                raise NotFoundError(f"User {user_id} not found.")
            if row["role"] == Role.ADMIN.value and self._count_admins(conn) <= 1:
                raise InvariantGuardError("Cannot delete the last administrator.")
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            conn.execute("DELETE FROM edit_requests WHERE target_user_id = ?", (user_id,))
        logger.info("%s deleted account %s", actor.username, row["username"])

    # ------------------------- Persistence ------------------------- #
    @staticmethod
    def _username_taken(conn: sqlite3.Connection, username: str) -> bool:
        return conn.execute(
            "SELECT 1 FROM users WHERE username = ?", (username,)
        ).fetchone() is not None

    @staticmethod
    def _count_admins(conn: sqlite3.Connection) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM users WHERE role = ?", (Role.ADMIN.value,)
        ).fetchone()[0]

    @staticmethod
    def _write(conn: sqlite3.Connection, user: User, insert: bool) -> None:
        values = (
            user.username, user.full_name, user.role.value, user.password_hash,
            user.avatar, user.birth_date, json.dumps(asdict(user.preferences)),
        )
        if insert:
            conn.execute(
                "INSERT INTO users (username, full_name, role, password_hash, avatar,"
                " birth_date, preferences, id) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                values + (user.id,),
            )
        else:
            conn.execute(
                "UPDATE users SET username = ?, full_name = ?, role = ?, password_hash = ?,"
                " avatar = ?, birth_date = ?, preferences = ? WHERE id = ?",
                values + (user.id,),
            )
