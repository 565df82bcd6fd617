"""Base error types shared by the billing core."""

from typing import Optional


class AppError(Exception):
    code: Optional[str] = "app_error"

    def __init__(self, message: str, *, code: Optional[str] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.request_id = request_id


class StoreError(AppError):
    """Raised when the persistence layer fails."""
    code = "store_error"


class TableNotFoundError(StoreError):
    """Raised when a queried table does not exist (triggers fallbacks)."""
    code = "table_not_found"

    def __init__(self, table: str, message: Optional[str] = None):
        super().__init__(message or f'relation "{table}" does not exist')
        self.table = table


class RecordNotFoundError(StoreError):
    code = "record_not_found"
