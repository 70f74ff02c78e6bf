"""Exceptions raised by the anonymization sync engine."""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class StoreConnectionError(SyncError):
    """MongoDB is unreachable at startup."""
    pass


class CheckpointError(SyncError):
    """Error reading or writing the sync checkpoint."""
    pass


class CatchUpError(SyncError):
    """Catch-up pass aborted before reaching the end of its window."""
    pass


class FlushError(SyncError):
    """Live batch could not be flushed within the allowed number of attempts."""
    pass


class ChangeFeedError(SyncError):
    """Change stream lost and could not be resumed."""
    pass
