"""
app/loyalty/errors.py
---------------------
The single error shape that leaves the loyalty service layer.

Every store failure is converted to a ServiceError carrying:
    message: human-readable, safe to show the operator
    code:    machine-readable (see the constants below)
    details: optional structured context (driver code, field names, …)

Raw SQLAlchemy / DB-API exceptions never reach the routes.
"""
import logging

from sqlalchemy.exc import (
    DBAPIError, DisconnectionError, IntegrityError,
    OperationalError, SQLAlchemyError,
)
from sqlalchemy.orm.exc import StaleDataError


UNIQUE_VIOLATION      = 'UNIQUE_VIOLATION'
CHECK_VIOLATION       = 'CHECK_VIOLATION'
FOREIGN_KEY_VIOLATION = 'FOREIGN_KEY_VIOLATION'
CONSTRAINT_VIOLATION  = 'CONSTRAINT_VIOLATION'
NOT_FOUND             = 'NOT_FOUND'
STALE_WRITE           = 'STALE_WRITE'
CONNECTION_ERROR      = 'CONNECTION_ERROR'
VALIDATION_ERROR      = 'VALIDATION_ERROR'
NOT_ENOUGH_PUNCHES    = 'NOT_ENOUGH_PUNCHES'
DB_ERROR              = 'DB_ERROR'
UNKNOWN_ERROR         = 'UNKNOWN_ERROR'

# PostgreSQL SQLSTATE → our code
_PG_CODES = {
    '23505': UNIQUE_VIOLATION,
    '23514': CHECK_VIOLATION,
    '23503': FOREIGN_KEY_VIOLATION,
}


class ServiceError(Exception):
    """Structured, operator-safe failure of a loyalty operation."""

    def __init__(self, message: str, code: str = UNKNOWN_ERROR, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code    = code
        self.details = details

    @property
    def is_retryable(self) -> bool:
        """Only connectivity failures are worth retrying unchanged."""
        return self.code == CONNECTION_ERROR

    def to_dict(self) -> dict:
        return {
            'message': self.message,
            'code':    self.code,
            'details': self.details,
        }

    def __repr__(self) -> str:
        return f"<ServiceError {self.code}: {self.message!r}>"

    # ── Constructors ─────────────────────────────────────────────
    @classmethod
    def not_found(cls, member_id) -> 'ServiceError':
        return cls(f'Loyalty member {member_id} no longer exists.', NOT_FOUND,
                   {'member_id': member_id})

    @classmethod
    def from_db_error(cls, exc: SQLAlchemyError) -> 'ServiceError':
        """Normalise a SQLAlchemy exception into a ServiceError."""
        if isinstance(exc, StaleDataError):
            return cls('This member was changed by someone else. Reload and try again.',
                       STALE_WRITE)

        orig       = getattr(exc, 'orig', None)
        driver_msg = str(orig) if orig is not None else str(exc)
        pgcode     = getattr(orig, 'pgcode', None)
        details    = {'db_code': pgcode, 'db_message': driver_msg}

        if isinstance(exc, IntegrityError):
            code = _PG_CODES.get(pgcode) or _classify_integrity_message(driver_msg)
            if code == UNIQUE_VIOLATION:
                message = 'A member with this phone number already exists.'
            elif code == CHECK_VIOLATION:
                message = 'Punch balance must stay between 0 and 9.'
            else:
                message = 'The change violates a database constraint.'
            return cls(message, code, details)

        if isinstance(exc, (OperationalError, DisconnectionError)) or (
            isinstance(exc, DBAPIError) and exc.connection_invalidated
        ):
            return cls('Could not reach the database. Please try again.',
                       CONNECTION_ERROR, details)

        return cls('Database error.', DB_ERROR, details)


def _classify_integrity_message(message: str) -> str:
    """SQLite has no SQLSTATE; fall back to its message text."""
    lowered = message.lower()
    if 'unique' in lowered or 'duplicate' in lowered:
        return UNIQUE_VIOLATION
    if 'check constraint' in lowered:
        return CHECK_VIOLATION
    if 'foreign key' in lowered:
        return FOREIGN_KEY_VIOLATION
    return CONSTRAINT_VIOLATION


def log_service_error(logger: logging.Logger, context: str, error: Exception) -> None:
    """Log a failure once, in a consistent format."""
    if isinstance(error, ServiceError):
        logger.warning("[%s] ServiceError %s: %s %s",
                       context, error.code, error.message, error.details or '')
    else:
        logger.exception("[%s] Unexpected error: %s", context, error)
