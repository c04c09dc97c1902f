"""Error taxonomy shared by the record engine, sync engine and service.

``ErrorKind`` is the closed set of handled failure classes.  Each kind
carries the HTTP status a request handler should answer with.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Closed enumeration of handled failure classes."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    UNAVAILABLE = "UNAVAILABLE"
    INTERNAL = "INTERNAL"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.INTERNAL: 500,
}


class InvalidIdentifierError(ValueError):
    """Raised when a table or column name contains characters outside
    ``[A-Za-z0-9_]``."""

    pass


class ReplayActionError(Exception):
    """Raised inside replay when an outbox action returns an error result."""

    pass
