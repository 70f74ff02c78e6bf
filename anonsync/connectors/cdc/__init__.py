"""
CDC (Change Data Capture) components of the anonymization sync.
"""

from .errors import (
    SyncError,
    StoreConnectionError,
    CheckpointError,
    CatchUpError,
    FlushError,
    ChangeFeedError,
)
from .checkpoint_store import CheckpointStore
from .models import SyncConfig, Transform
from .change_feed import ChangeFeedConsumer
from .batch import BatchAccumulator
from .catchup import CatchUpScanner, CatchUpResult
from .reindex import FullReindexRunner

__all__ = [
    "SyncError",
    "StoreConnectionError",
    "CheckpointError",
    "CatchUpError",
    "FlushError",
    "ChangeFeedError",
    "CheckpointStore",
    "ChangeFeedConsumer",
    "SyncConfig",
    "Transform",
    "BatchAccumulator",
    "CatchUpScanner",
    "CatchUpResult",
    "FullReindexRunner",
]
