class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class ValidationError(MarketplaceError):
    pass


class NotFoundError(MarketplaceError):
    """Referenced row does not exist or does not belong to the caller."""


class PermissionDeniedError(MarketplaceError):
    pass


class LockConflictError(MarketplaceError):
    """Another professional holds a live lock on the request.

    Callers must re-read the request before trying again.
    """

    def __init__(self, message: str = "This job was already accepted by another professional."):
        super().__init__(message)


class InvalidTransitionError(MarketplaceError):
    """The row is not in a state that allows the requested transition."""


class StorageFailureError(MarketplaceError):
    """The store could not complete the write; nothing was applied."""

    def __init__(self, message: str = "We couldn't save your change. Please try again."):
        super().__init__(message)


class NotificationFailure(Exception):
    """A side-channel send failed. Never surfaced to API callers."""
