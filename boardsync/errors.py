"""
Exceptions raised by the store, the HTTP client and the realtime transport.

Write rejections (PermissionDenied, ValidationError, NotFound) are raised at the
store seam and caught by the board session, which rolls back its optimistic
state. TransportError never reaches callers of the subscription manager.
"""


class BoardError(Exception):
    """Base class for all board errors."""
    pass


class PermissionDenied(BoardError):
    """Raised when the access policy rejects an operation."""

    def __init__(self, table: str, action: str, message: str = ""):
        self.table = table
        self.action = action
        super().__init__(message or f"Not allowed to {action} {table}")


class NotFound(BoardError):
    """Raised when a referenced row does not exist (or is not visible)."""
    pass


class ValidationError(BoardError):
    """Raised when a value does not fit its column or custom field type."""
    pass


class TransportError(BoardError):
    """Raised by a realtime transport when a channel cannot be joined."""
    pass
