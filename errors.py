# ============================================================
# errors.py - Error kinds surfaced by repositories and services
# ============================================================
# NotFound            referenced row absent
# ValidationFailed    missing or malformed required field
# Conflict            unique / foreign key constraint
# StorageFailure      image upload or delete failed
# TransactionFailure  database error mid-transaction (rolled back)
# ============================================================

from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError


class ShopError(Exception):
    """Base class for every error the core raises on purpose."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ShopError):
    pass


class ValidationFailed(ShopError):
    pass


class Conflict(ShopError):
    pass


class StorageFailure(ShopError):
    pass


class TransactionFailure(ShopError):
    pass


@contextmanager
def translate_db_errors(action: str = "database operation"):
    """
    Re-raise driver errors as Conflict / TransactionFailure.
    The original exception stays available as __cause__.
    """
    try:
        yield
    except IntegrityError as e:
        raise Conflict(f"{action} violates a constraint: {e.orig}") from e
    except SQLAlchemyError as e:
        raise TransactionFailure(f"{action} failed: {e}") from e
