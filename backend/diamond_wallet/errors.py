"""
Diamond Wallet Errors

User-recoverable: InsufficientBalance (offer a purchase), StorageUnavailable (retry).
Programmer errors: UnknownAction, UnknownPack, InvalidAmount.
NotFound signals a broken get-or-create invariant.
"""

import logging
from functools import wraps
from typing import Optional

from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError

from .config import ERROR_CODES

logger = logging.getLogger(__name__)

# ServerSelectionTimeoutError, AutoReconnect and NetworkTimeout are ConnectionFailure subclasses
TRANSIENT_STORAGE_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)


class LedgerError(Exception):
    """Base class for all diamond ledger errors."""

    error_code = "STORAGE_UNAVAILABLE"
    retryable = False

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.message
        super().__init__(self.detail)

    @property
    def message(self) -> str:
        """User-safe message for this error class."""
        return ERROR_CODES[self.error_code]


class InsufficientBalance(LedgerError):
    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(f"Need {required} diamonds but only have {balance}")


class UnknownAction(LedgerError):
    error_code = "UNKNOWN_ACTION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Unknown action tag: {action!r}")


class UnknownPack(LedgerError):
    error_code = "UNKNOWN_PACK"

    def __init__(self, pack_id: str):
        self.pack_id = pack_id
        super().__init__(f"Unknown diamond pack: {pack_id!r}")


class InvalidAmount(LedgerError):
    error_code = "INVALID_AMOUNT"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount!r}")


class StorageUnavailable(LedgerError):
    """Transient storage failure. Safe to retry with backoff."""

    error_code = "STORAGE_UNAVAILABLE"
    retryable = True


class NotFound(LedgerError):
    error_code = "NOT_FOUND"


def storage_call(func):
    """
    Decorator for async store methods.

    Translates transient driver failures into StorageUnavailable so callers
    only ever see the ledger error taxonomy.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_STORAGE_ERRORS as e:
            logger.error(f"Storage unavailable in {func.__qualname__}: {e}")
            raise StorageUnavailable(str(e)) from e

    return wrapper
