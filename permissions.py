"""Capability matrix.

Every mutating operation calls ``require`` with the acting user before it
reads or writes anything, so a denied call never leaves partial state.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional

from errors import PermissionDeniedError
from models import Role, User

logger = logging.getLogger(__name__)


class Action(str, Enum):
    REQUEST_LOAN = "request_loan"
    MANAGE_LOANS = "manage_loans"              # approve, reject, close, list all
    MANAGE_CATALOG = "manage_catalog"          # create, edit, delete books
    MANAGE_MEMBERS = "manage_members"          # create/edit USER accounts
    MANAGE_STAFF = "manage_staff"              # create/edit LIBRARIAN and ADMIN accounts
    DELETE_USER = "delete_user"
    VIEW_REPORTS = "view_reports"
    PROPOSE_USER_EDIT = "propose_user_edit"
    RESOLVE_EDIT_REQUESTS = "resolve_edit_requests"
    EDIT_OWN_PROFILE = "edit_own_profile"


_EVERYONE = frozenset({Action.REQUEST_LOAN, Action.EDIT_OWN_PROFILE})

_LIBRARIAN = _EVERYONE | frozenset({
    Action.MANAGE_LOANS,
    Action.MANAGE_CATALOG,
    Action.MANAGE_MEMBERS,
    Action.PROPOSE_USER_EDIT,
})

CAPABILITIES: Dict[Role, FrozenSet[Action]] = {
    Role.USER: _EVERYONE,
    Role.LIBRARIAN: _LIBRARIAN,
    Role.ADMIN: frozenset(Action),
}

_MESSAGES = {
    Action.MANAGE_LOANS: "Only librarians and administrators can manage loans.",
    Action.MANAGE_CATALOG: "Only librarians and administrators can change the catalog.",
    Action.MANAGE_MEMBERS: "Only librarians and administrators can manage reader accounts.",
    Action.MANAGE_STAFF: "Librarians can only manage reader accounts.",
    Action.DELETE_USER: "Only administrators can delete users.",
    Action.VIEW_REPORTS: "Only administrators can view reports.",
    Action.PROPOSE_USER_EDIT: "Only librarians and administrators can propose account changes.",
    Action.RESOLVE_EDIT_REQUESTS: "Only administrators can resolve edit requests.",
}


def can(actor: Optional[User], action: Action) -> bool:
    if actor is None:
        return False
    return action in CAPABILITIES.get(actor.role, frozenset())


def require(actor: Optional[User], action: Action) -> None:
    if not can(actor, action):
        who = actor.username if actor else "anonymous"
        logger.warning("Permission denied: %s -> %s", who, action.value)
        raise PermissionDeniedError(_MESSAGES.get(action, "You are not allowed to do this."))


def action_for_role(target_role: Role) -> Action:
    """Managing an account needs a different capability depending on its role."""
    return Action.MANAGE_MEMBERS if target_role == Role.USER else Action.MANAGE_STAFF


def require_user_management(actor: Optional[User], target_role: Role) -> None:
    require(actor, action_for_role(target_role))
