"""
Live batch accumulator and flusher.

The batch is owned by a single worker thread. The change feed never touches
it directly: it submits records through a queue, and the owner thread appends
them, applies the size trigger after each append and the time trigger on
every tick. Flushes therefore never overlap.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import queue
import threading
import time

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .models import SyncConfig, Transform
from .checkpoint_store import CheckpointStore
from .errors import CheckpointError, FlushError
from ...utils.metrics import (
    records_anonymized_total,
    flush_duration_seconds,
    flush_failures_total,
    live_batch_size,
)

logger = logging.getLogger(__name__)


class BatchAccumulator:
    """
    Collect live customer records and flush them to the target in bulk.

    Flush order is always: anonymize, bulk insert, write checkpoint, clear.
    The batch is cleared only once the insert and the checkpoint write both
    succeed, so a failed flush keeps its records for the next trigger
    (at-least-once). After a failure the size trigger is suspended until a
    timer tick succeeds, so a growing batch does not hammer a failing store.
    ``max_flush_failures`` consecutive failures raise FlushError.

    The checkpoint written is the ``createdAt`` of the last record in the
    batch, never lower than the value this accumulator wrote before (update
    events can carry old createdAt values).

    While the checkpoint is held (``hold_checkpoint``), flushes still insert
    but skip the checkpoint write, so the stored value cannot move past
    records a pending catch-up pass has not inserted yet.

    Thread Safety: ``submit``, ``hold_checkpoint`` and ``release_checkpoint``
    may be called from any thread. Everything else belongs to the thread
    running ``run``.

    Example:
        >>> accumulator = BatchAccumulator(target, store, anonymizer, SyncConfig())
        >>> threading.Thread(target=accumulator.run, args=(stop_event,)).start()
        >>> accumulator.submit(customer_document)
    """

    def __init__(
        self,
        target: Collection,
        checkpoint_store: CheckpointStore,
        transform: Transform,
        config: SyncConfig
    ):
        self.target = target
        self.checkpoint_store = checkpoint_store
        self.transform = transform
        self.config = config

        self.inbox: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self.batch: List[Dict[str, Any]] = []
        self.records_flushed: int = 0
        self.consecutive_failures: int = 0
        self.last_checkpoint: Optional[datetime] = None
        self._size_trigger_suspended: bool = False
        self._checkpoint_released = threading.Event()
        self._checkpoint_released.set()

    def submit(self, record: Dict[str, Any]) -> None:
        """Hand a record to the owner thread. Safe to call from any thread."""
        self.inbox.put(record)

    def hold_checkpoint(self) -> None:
        """Stop advancing the checkpoint until ``release_checkpoint``."""
        self._checkpoint_released.clear()

    def release_checkpoint(self) -> None:
        self._checkpoint_released.set()

    @property
    def checkpoint_held(self) -> bool:
        return not self._checkpoint_released.is_set()

    def add(self, record: Dict[str, Any]) -> None:
        """Append a record and flush if the batch reached ``batch_size``."""
        self.batch.append(record)
        live_batch_size.set(len(self.batch))

        if len(self.batch) >= self.config.batch_size and not self._size_trigger_suspended:
            logger.debug(
                f"Buffer size threshold reached: {len(self.batch)}",
                extra={"batch_size": len(self.batch)}
            )
            self.flush()

    def flush(self) -> int:
        """
        Anonymize the batch, insert it in one operation and advance the checkpoint.

        Returns:
            Number of records flushed (0 if the batch was empty or the flush failed)

        Raises:
            TransformPreconditionError: On a malformed record; retrying cannot fix it
            FlushError: When ``max_flush_failures`` flushes in a row have failed
        """
        if not self.batch:
            return 0

        batch_start_time = time.time()
        pending = list(self.batch)
        batch_size = len(pending)

        checkpoint = pending[-1]["createdAt"]
        if self.last_checkpoint is not None and self.last_checkpoint > checkpoint:
            checkpoint = self.last_checkpoint

        anonymized = [self.transform(record) for record in pending]
        held = self.checkpoint_held

        try:
            self.target.insert_many(anonymized, ordered=True)
            if not held:
                self.checkpoint_store.write(checkpoint)
        except (PyMongoError, CheckpointError) as e:
            self._record_failure(e, batch_size)
            return 0

        del self.batch[:batch_size]
        live_batch_size.set(len(self.batch))
        self.last_checkpoint = checkpoint
        self.records_flushed += batch_size
        self.consecutive_failures = 0
        self._size_trigger_suspended = False

        batch_duration = time.time() - batch_start_time
        records_anonymized_total.labels(path="live").inc(batch_size)
        flush_duration_seconds.observe(batch_duration)

        logger.info(
            f"Inserted {batch_size} anonymized customers",
            extra={
                "batch_size": batch_size,
                "checkpoint": checkpoint,
                "checkpoint_held": held,
                "duration_seconds": batch_duration,
                "total_processed": self.records_flushed
            }
        )
        return batch_size

    def _record_failure(self, error: Exception, batch_size: int) -> None:
        self.consecutive_failures += 1
        self._size_trigger_suspended = True
        flush_failures_total.labels(error_type=type(error).__name__).inc()

        logger.error(
            f"Error flushing batch, keeping {batch_size} records for the next attempt: {error}",
            extra={
                "batch_size": batch_size,
                "consecutive_failures": self.consecutive_failures,
                "max_flush_failures": self.config.max_flush_failures,
                "error_type": type(error).__name__
            }
        )

        if self.consecutive_failures >= self.config.max_flush_failures:
            raise FlushError(
                f"{self.consecutive_failures} consecutive flush failures, "
                f"{len(self.batch)} records unflushed: {error}"
            ) from error

    def run(self, stop_event: threading.Event) -> None:
        """
        Owner loop: receive records, apply both triggers, flush on shutdown.

        Blocks until ``stop_event`` is set.
        """
        interval = self.config.flush_interval
        next_tick = time.monotonic() + interval

        while not stop_event.is_set():
            timeout = max(0.0, next_tick - time.monotonic())
            try:
                record = self.inbox.get(timeout=timeout)
            except queue.Empty:
                pass
            else:
                self.add(record)

            if time.monotonic() >= next_tick:
                self.flush()
                next_tick = time.monotonic() + interval

        self._shutdown()

    def _drain_inbox(self) -> None:
        while True:
            try:
                self.batch.append(self.inbox.get_nowait())
            except queue.Empty:
                return

    def _shutdown(self) -> None:
        """Flush whatever arrived before the stop."""
        self._drain_inbox()
        if not self.batch:
            return

        logger.info(
            f"Flushing {len(self.batch)} remaining records",
            extra={"batch_size": len(self.batch)}
        )
        if not self.flush():
            logger.warning(
                f"{len(self.batch)} records left unflushed; the next catch-up pass covers them",
                extra={"batch_size": len(self.batch), "checkpoint": self.last_checkpoint}
            )
