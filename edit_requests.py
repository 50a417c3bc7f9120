import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from auth import hash_password
from database import Database, new_id
from errors import NotFoundError, ValidationError
from identity import EDITABLE_FIELDS, IdentityStore, parse_role
from models import User, UserEditRequest
from permissions import Action, require

logger = logging.getLogger(__name__)


class EditRequestQueue:
    """Account changes proposed by a librarian and ratified by an administrator.

    Only one request per target account is kept; resolved requests are
    deleted whatever the decision, so there is no history.
    """

    def __init__(self, db: Database, identity: IdentityStore) -> None:
        self.db = db
        self.identity = identity

    def propose(self, actor: User, target_user_id: str, new_data: Dict[str, Any],
                now: Optional[datetime] = None) -> UserEditRequest:
        require(actor, Action.PROPOSE_USER_EDIT)
        target = self.identity.get_user(target_user_id)

        proposed = {k: v for k, v in new_data.items() if v is not None}
        unknown = set(proposed) - (set(EDITABLE_FIELDS) - {"password_hash"})
        if unknown:
            raise ValidationError(f"Unknown user fields: {', '.join(sorted(unknown))}.")
        if not proposed:
            raise ValidationError("Nothing to change.")
        if "role" in proposed:
            proposed["role"] = parse_role(proposed["role"]).value
        # a proposed password is hashed right away and never stored in clear
        if proposed.get("password"):
            proposed["password_hash"] = hash_password(proposed.pop("password"))
        else:
            proposed.pop("password", None)

        request = UserEditRequest(
            id=new_id("req"),
            target_user_id=target.id,
            target_current_name=target.full_name,
            requested_by=actor.username,
            requested_at=now or datetime.now(),
            new_data=proposed,
        )
        with self.db.transaction() as conn:
            # replaces any earlier proposal for the same account
            conn.execute("DELETE FROM edit_requests WHERE target_user_id = ?", (target.id,))
            conn.execute(
                "INSERT INTO edit_requests (id, target_user_id, target_current_name, requested_by,"
                " requested_at, new_data) VALUES (?, ?, ?, ?, ?, ?)",
                (request.id, request.target_user_id, request.target_current_name,
                 request.requested_by, request.requested_at.isoformat(), json.dumps(proposed)),
            )
        logger.info("%s proposed changes to %s (%s)", actor.username, target.username, request.id)
        return request

    def list_pending(self, actor: User) -> List[UserEditRequest]:
        require(actor, Action.RESOLVE_EDIT_REQUESTS)
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM edit_requests ORDER BY requested_at").fetchall()
        return [UserEditRequest.from_dict(dict(row)) for row in rows]

    def find_request(self, request_id: str) -> Optional[UserEditRequest]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM edit_requests WHERE id = ?", (request_id,)).fetchone()
        return UserEditRequest.from_dict(dict(row)) if row else None

    def resolve(self, actor: User, request_id: str, approved: bool) -> Optional[User]:
        """Apply or discard a request; returns the updated user when applied."""
        require(actor, Action.RESOLVE_EDIT_REQUESTS)
        request = self.find_request(request_id)
        if not request:
            raise NotFoundError(f"Edit request {request_id} not found.")

        updated = None
        try:
            if approved:
                if self.identity.find_user(request.target_user_id) is None:
                    logger.warning("Edit request %s targets a deleted user, discarding", request_id)
                else:
                    updated = self.identity.update_user(actor, request.target_user_id, request.new_data)
        finally:
            # the request is consumed whatever the outcome, a failed apply included
            with self.db.transaction() as conn:
                conn.execute("DELETE FROM edit_requests WHERE id = ?", (request_id,))
        logger.info("%s %s edit request %s", actor.username,
                    "approved" if approved else "rejected", request_id)
        return updated
