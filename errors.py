"""Error taxonomy shared by the stores, the lending engine and the outer surfaces."""


class LibraryError(Exception):
    """Base class for every failure reported to a caller."""


class ValidationError(LibraryError, ValueError):
    """Malformed or missing input (empty title, bad due date, ...)."""


class NotFoundError(LibraryError, LookupError):
    """A referenced book, user, loan record or edit request does not exist."""


class StateConflictError(LibraryError):
    """The target is not in a state that allows the operation."""


class PermissionDeniedError(LibraryError, PermissionError):
    """The acting user's role does not grant the requested action."""


class InvariantGuardError(LibraryError):
    """The operation would break a system-wide invariant (e.g. no admin left)."""
