from .connection import connect, SyncCollections

__all__ = ["connect", "SyncCollections"]
