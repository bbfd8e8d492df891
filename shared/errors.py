"""
Error taxonomy shared by the store, the services and the HTTP layer.
"""


class LiveClassError(Exception):
    """Base class for all application errors."""


class StoreError(LiveClassError):
    """Raised when a document store operation fails."""


class DocumentNotFoundError(StoreError):
    """Raised when a referenced document does not exist."""

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        super().__init__(message or f"Document not found: {path}")


class PermissionDeniedError(StoreError):
    """Raised when the caller may not read or write a document."""


class TransientStoreError(StoreError):
    """Raised for failures that may succeed when retried."""


class TransactionConflictError(StoreError):
    """Raised when a transaction keeps losing to concurrent writers."""


class InvalidInputError(LiveClassError):
    """Raised when user input is rejected before any write."""


class NotPresenterError(LiveClassError):
    """Raised when someone other than the presenter issues a presenter action."""
