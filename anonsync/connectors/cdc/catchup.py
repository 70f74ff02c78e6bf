"""
Catch-up scan: anonymizes customers created while the engine was offline.

Runs once at startup, alongside the live change feed.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Tuple
import logging
import threading
import time

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from .checkpoint_store import CheckpointStore
from .errors import CatchUpError, CheckpointError
from .models import Transform
from ...anonymization.transform import TransformPreconditionError
from ...utils.metrics import records_anonymized_total
from ...utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def anonymize_into(
    documents: Iterable[Mapping[str, Any]],
    target: Collection,
    transform: Transform,
    path: str,
    stop_event: Optional[threading.Event] = None
) -> Tuple[int, Optional[datetime]]:
    """
    Anonymize documents one at a time and insert each into ``target``.

    One insert per record, so progress is visible in the target as it goes.

    Args:
        documents: Source documents, usually a cursor
        target: Collection receiving anonymized documents
        transform: Anonymization function
        path: Metrics label (``catchup`` or ``reindex``)
        stop_event: Optional event; when set, stops before the next record

    Returns:
        (records inserted, latest createdAt seen)

    Raises:
        TransformPreconditionError: On a malformed source record
        PyMongoError: On cursor or insert failure
        InterruptedError: If stop_event was set before the end
    """
    count = 0
    latest: Optional[datetime] = None

    for document in documents:
        if stop_event is not None and stop_event.is_set():
            raise InterruptedError(f"Stopped after {count} records")

        anonymized = transform(document)
        result = target.insert_one(anonymized)
        count += 1
        records_anonymized_total.labels(path=path).inc()

        created_at = document.get("createdAt")
        if created_at is not None and (latest is None or created_at > latest):
            latest = created_at

        logger.debug(
            f"Anonymized customer is inserted: {result.inserted_id}",
            extra={"path": path, "source_id": document.get("_id")}
        )

    return count, latest


def find_created_between(source: Collection, start: datetime, end: datetime):
    """Cursor over customers with ``start <= createdAt <= end``, oldest first."""
    return source.find({"createdAt": {"$gte": start, "$lte": end}}).sort("createdAt", 1)


@dataclass
class CatchUpResult:
    """Outcome of one catch-up pass."""
    window_start: datetime
    window_end: datetime
    records_processed: int
    checkpoint: datetime
    checkpoint_written: bool
    duration_seconds: float


class CatchUpScanner:
    """
    One-shot reconciliation between the checkpoint and now.

    The pass re-reads from the checkpoint inclusive, so the last record synced
    before a restart is anonymized again. Duplicates in the target are accepted;
    the transform is deterministic so duplicate content is identical.

    After the scan the checkpoint is advanced with ``compare_and_write`` from
    the value read at the start. If the live flusher moved it in the meantime,
    the write is skipped: the live path already covers a later point.

    Example:
        >>> scanner = CatchUpScanner(source, target, store, anonymizer)
        >>> result = scanner.run()
    """

    def __init__(
        self,
        source: Collection,
        target: Collection,
        checkpoint_store: CheckpointStore,
        transform: Transform
    ):
        self.source = source
        self.target = target
        self.checkpoint_store = checkpoint_store
        self.transform = transform

    def run(self, stop_event: Optional[threading.Event] = None) -> CatchUpResult:
        """
        Scan, anonymize and advance the checkpoint.

        Args:
            stop_event: Optional event that aborts the pass between records

        Returns:
            CatchUpResult describing the pass

        Raises:
            CatchUpError: If any record fails; no checkpoint is written
        """
        start_time = time.time()

        try:
            window_start = self.checkpoint_store.read()
        except CheckpointError as e:
            raise CatchUpError(f"Could not read checkpoint: {e}") from e

        window_end = utcnow()
        logger.info(
            "Anonymize offline inserted documents",
            extra={"window_start": window_start, "window_end": window_end}
        )

        cursor = find_created_between(self.source, window_start, window_end)
        try:
            count, latest = anonymize_into(
                cursor, self.target, self.transform, path="catchup", stop_event=stop_event
            )
        except (PyMongoError, TransformPreconditionError, InterruptedError) as e:
            logger.error(
                f"Catch-up aborted, checkpoint left at {window_start}: {e}",
                extra={"window_start": window_start, "error_type": type(e).__name__}
            )
            raise CatchUpError(f"Catch-up aborted: {e}") from e
        finally:
            cursor.close()

        checkpoint = window_start
        written = False
        if latest is not None and latest > window_start:
            try:
                written = self.checkpoint_store.compare_and_write(window_start, latest)
            except CheckpointError as e:
                raise CatchUpError(f"Could not write checkpoint: {e}") from e

            if written:
                checkpoint = latest
            else:
                logger.info(
                    "Checkpoint advanced by live sync during catch-up, leaving it in place",
                    extra={"window_start": window_start, "candidate": latest}
                )

        result = CatchUpResult(
            window_start=window_start,
            window_end=window_end,
            records_processed=count,
            checkpoint=checkpoint,
            checkpoint_written=written,
            duration_seconds=time.time() - start_time
        )

        logger.info(
            "Finished anonymization of offline inserted documents",
            extra={
                "records_processed": count,
                "checkpoint": checkpoint,
                "checkpoint_written": written,
                "duration_seconds": result.duration_seconds
            }
        )
        return result
