"""
MongoDB-backed checkpoint store for the anonymization sync.

Holds a single document whose ``state`` field is the ``createdAt`` of the most
recently synced customer. An empty collection reads as EPOCH_START.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from pymongo.collection import Collection
from pymongo.errors import AutoReconnect, ConnectionFailure, DuplicateKeyError, PyMongoError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .errors import CheckpointError
from ...utils.metrics import checkpoint_writes_total
from ...utils.timeutil import EPOCH_START

logger = logging.getLogger(__name__)

CHECKPOINT_ID = "sync_state"
STATE_FIELD = "state"

_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((AutoReconnect, ConnectionFailure)),
    reraise=True
)


class CheckpointStore:
    """
    Singleton checkpoint document in a MongoDB collection.

    ``write`` removes any stray documents, then upserts the ``sync_state``
    document in one operation. If a concurrent ``compare_and_write`` claimed
    the slot first, the upsert overwrites it, so the live value always lands
    last. Concurrent ``write`` callers must serialize themselves.

    ``compare_and_write`` is a single conditional update on the server, so a
    writer that advanced the checkpoint in the meantime is never clobbered.

    Example:
        >>> store = CheckpointStore(db["customers_anonymization_state"])
        >>> store.write(record["createdAt"])
        >>> store.compare_and_write(t0, now)
    """

    def __init__(self, collection: Collection):
        self.collection = collection

    def read(self) -> datetime:
        """
        Return the stored checkpoint, or EPOCH_START when none exists.

        Raises:
            CheckpointError: If the read fails after retries
        """
        try:
            doc = self._find_state()
        except PyMongoError as e:
            logger.error(f"Database error reading checkpoint: {e}")
            raise CheckpointError(f"Database error: {e}") from e

        if not doc or doc.get(STATE_FIELD) is None:
            logger.debug("No checkpoint found, starting from epoch")
            return EPOCH_START

        return doc[STATE_FIELD]

    def write(self, timestamp: datetime) -> None:
        """
        Replace the stored checkpoint with ``timestamp``.

        Raises:
            CheckpointError: If the write fails after retries
        """
        try:
            self._replace_state(timestamp)
        except PyMongoError as e:
            checkpoint_writes_total.labels(mode='write', status='error').inc()
            logger.error(
                f"Database error writing checkpoint: {e}",
                extra={"checkpoint": timestamp}
            )
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_writes_total.labels(mode='write', status='success').inc()
        logger.debug("Checkpoint written", extra={"checkpoint": timestamp})

    def compare_and_write(self, expected: datetime, new_value: datetime) -> bool:
        """
        Write ``new_value`` only if the stored checkpoint still equals ``expected``.

        ``expected`` must be a value previously returned by ``read`` (EPOCH_START
        stands for "no checkpoint").

        Returns:
            True if written, False if another writer got there first

        Raises:
            CheckpointError: On database errors
        """
        try:
            result = self.collection.update_one(
                {STATE_FIELD: expected},
                {"$set": {STATE_FIELD: new_value}}
            )
            written = result.matched_count == 1

            if not written and expected == EPOCH_START:
                # No document at all: claim the slot, losing to any concurrent insert
                try:
                    self.collection.insert_one({"_id": CHECKPOINT_ID, STATE_FIELD: new_value})
                    written = True
                except DuplicateKeyError:
                    written = False

        except PyMongoError as e:
            checkpoint_writes_total.labels(mode='compare_and_write', status='error').inc()
            logger.error(
                f"Database error in conditional checkpoint write: {e}",
                extra={"expected": expected, "checkpoint": new_value}
            )
            raise CheckpointError(f"Database error: {e}") from e

        checkpoint_writes_total.labels(
            mode='compare_and_write',
            status='success' if written else 'conflict'
        ).inc()
        return written

    @_transient_retry
    def _find_state(self) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({})

    @_transient_retry
    def _replace_state(self, timestamp: datetime) -> None:
        self.collection.delete_many({"_id": {"$ne": CHECKPOINT_ID}})
        self.collection.replace_one(
            {"_id": CHECKPOINT_ID},
            {"_id": CHECKPOINT_ID, STATE_FIELD: timestamp},
            upsert=True
        )
