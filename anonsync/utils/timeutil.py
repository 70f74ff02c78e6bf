"""Timestamp helpers shared by the checkpoint and scan code."""

from datetime import datetime, timezone

# Checkpoint value used when no checkpoint has been persisted yet
EPOCH_START = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching what pymongo returns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
