# storesync/errors.py


class StoreSyncError(Exception):
    status_code = 500

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self):
        return self.message


class ValidationError(StoreSyncError):
    """Malformed rule, predicate or transform spec. Raised before a run starts."""
    status_code = 400


class NotFoundError(StoreSyncError):
    status_code = 404


class SyncError(StoreSyncError):
    """Internal invariant violation. Fatal to the run."""


class RunInterrupted(SyncError):
    def __init__(self, message: str = "interrupted"):
        super().__init__(message)


class MarketplaceApiError(StoreSyncError):
    """Any network failure or upstream 4xx/5xx from a marketplace."""

    status_code = 502

    def __init__(self, platform: str, operation: str, message: str, upstream_status: int | None = None):
        self.platform = platform
        self.operation = operation
        self.upstream_status = upstream_status
        super().__init__(f"{platform} {operation} failed: {message}")
