"""Custom exceptions for DRMS offline sync."""

from typing import Optional


class DRMSSyncException(Exception):
    """Base exception for all DRMS offline sync exceptions."""

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code
        """
        super().__init__(message)
        self.code = code


class PayloadValidationError(DRMSSyncException):
    """Raised when a mutation payload does not match its entity type."""

    def __init__(self, message: str = "Invalid mutation payload"):
        """Initialize PayloadValidationError."""
        super().__init__(message, "INVALID_PAYLOAD")


class QueueStorageError(DRMSSyncException):
    """Raised when the local queue cannot be written even after eviction."""

    def __init__(self, message: str = "Sync queue storage unavailable"):
        """Initialize QueueStorageError."""
        super().__init__(message, "QUEUE_STORAGE")


class CorruptQueueStateError(DRMSSyncException):
    """Raised when persisted queue state cannot be interpreted.

    This is the one queue error that propagates out of a drain and halts
    auto-sync until an operator intervenes.
    """

    def __init__(self, message: str = "Persisted sync queue state is corrupt"):
        """Initialize CorruptQueueStateError."""
        super().__init__(message, "CORRUPT_QUEUE_STATE")


class ConflictNotFoundError(DRMSSyncException):
    """Raised when a conflict record does not exist."""

    def __init__(self, conflict_id: str):
        """Initialize ConflictNotFoundError."""
        super().__init__(f"Conflict {conflict_id} not found", "CONFLICT_NOT_FOUND")
        self.conflict_id = conflict_id


class ConflictAlreadyResolvedError(DRMSSyncException):
    """Raised when resolving a conflict record a second time."""

    def __init__(self, conflict_id: str):
        """Initialize ConflictAlreadyResolvedError."""
        super().__init__(
            f"Conflict {conflict_id} is already resolved", "CONFLICT_ALREADY_RESOLVED"
        )
        self.conflict_id = conflict_id


class TransportError(DRMSSyncException):
    """Base exception for sync transport failures."""


class TransientTransportError(TransportError):
    """Timeout, connection drop or 5xx; the batch should be retried later."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """Initialize TransientTransportError."""
        super().__init__(message, "TRANSIENT_TRANSPORT")
        self.status_code = status_code


class BatchRejectedError(TransportError):
    """The server rejected the whole batch as malformed (4xx)."""

    def __init__(self, message: str, status_code: int):
        """Initialize BatchRejectedError."""
        super().__init__(message, "BATCH_REJECTED")
        self.status_code = status_code
