"""Exception types shared by the sync services."""


class SyncError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(SyncError):
    """Raised when credentials or a collection id are missing."""


class RemoteResponseError(SyncError):
    """Raised when the remote API returns a response we cannot use."""


class ImportCancelledError(SyncError):
    """Raised when an import observes a cancellation request."""

    def __init__(self, message: str = "Import was cancelled"):
        super().__init__(message)


class ImportRejectedError(SyncError):
    """Raised when the job coordinator refuses to admit a sync request."""
