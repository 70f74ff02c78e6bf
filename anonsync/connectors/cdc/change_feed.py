"""
MongoDB change stream consumer for the customers collection.

1. Watch the source collection for inserts and updates
2. Hand each post-image to a sink (the batch accumulator's queue)
3. Reconnect with exponential backoff, resuming from the last resume token
4. Stop promptly when the shared stop event is set
"""

from pymongo.collection import Collection
from pymongo.change_stream import ChangeStream
from pymongo.errors import PyMongoError, OperationFailure, ConnectionFailure, ServerSelectionTimeoutError
from typing import Callable, Optional, Dict, Any, List
import logging
import threading

from .errors import ChangeFeedError
from .models import SyncConfig
from ...utils.metrics import change_feed_reconnects_total

logger = logging.getLogger(__name__)

SYNCED_OPERATIONS = ("insert", "update")

# AuthenticationFailed, Unauthorized, ChangeStreamHistoryLost
NON_RETRYABLE_CODES = {18, 13, 286}


class ChangeFeedConsumer:
    """
    Watch the source collection and forward customer post-images.

    ``open()`` must be called before the catch-up scan starts so that every
    record committed after the scan's query is seen by the feed. ``run()`` then
    blocks until the stop event is set.

    Thread Safety: NOT thread-safe. One instance, one thread.

    Example:
        >>> consumer = ChangeFeedConsumer(db["customers"], accumulator.submit, SyncConfig())
        >>> consumer.open()
        >>> consumer.run(stop_event)
    """

    def __init__(
        self,
        collection: Collection,
        sink: Callable[[Dict[str, Any]], None],
        config: SyncConfig
    ):
        self.collection = collection
        self.sink = sink
        self.config = config
        self.collection_name = collection.name

        self.stream: Optional[ChangeStream] = None
        self.resume_token: Optional[Dict[str, Any]] = None
        self.events_received: int = 0
        self.attempt: int = 0

    def _pipeline(self) -> List[Dict[str, Any]]:
        return [{"$match": {"operationType": {"$in": list(SYNCED_OPERATIONS)}}}]

    def open(self) -> None:
        """Open the change stream, resuming after the last seen event if any."""
        options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "max_await_time_ms": self.config.max_await_time_ms,
        }
        if self.resume_token:
            options["resume_after"] = self.resume_token

        logger.info(
            f"Opening changestream for collection {self.collection_name}",
            extra={"collection": self.collection_name, "has_resume_token": self.resume_token is not None}
        )
        self.stream = self.collection.watch(pipeline=self._pipeline(), **options)

    def close(self) -> None:
        if self.stream is not None:
            try:
                self.stream.close()
            except PyMongoError as e:
                logger.warning(f"Error closing changestream: {e}")
            self.stream = None

    def run(self, stop_event: threading.Event) -> None:
        """
        Consume the change stream until ``stop_event`` is set.

        Raises:
            ChangeFeedError: If the stream cannot be resumed
        """
        self.attempt = 0
        try:
            while not stop_event.is_set():
                try:
                    if self.stream is None:
                        self.open()
                    self._consume(stop_event)
                except PyMongoError as e:
                    self.close()
                    if not self._is_retryable_error(e):
                        logger.error(
                            f"Non-retryable MongoDB error: {e}",
                            extra={"collection": self.collection_name, "error": str(e)}
                        )
                        raise ChangeFeedError(f"Non-retryable error: {e}") from e

                    self.attempt += 1
                    if self.attempt > self.config.max_retries:
                        logger.error(
                            "Max retries exceeded for changestream",
                            extra={"collection": self.collection_name, "attempt": self.attempt, "error": str(e)}
                        )
                        raise ChangeFeedError(f"Max retries exceeded: {e}") from e

                    self._handle_error(e, self.attempt, stop_event)
        finally:
            self.close()
            logger.info(
                f"Changestream for collection {self.collection_name} stopped",
                extra={"collection": self.collection_name, "events_received": self.events_received}
            )

    def _consume(self, stop_event: threading.Event) -> None:
        """Drain events until stop is requested or the stream dies."""
        while not stop_event.is_set():
            change = self.stream.try_next()

            if self.stream.resume_token:
                self.resume_token = self.stream.resume_token

            if change is None:
                if not self.stream.alive:
                    raise ConnectionFailure("Changestream closed by server")
                self.attempt = 0
                continue

            self.attempt = 0
            self._dispatch(change)

    def _dispatch(self, change: Dict[str, Any]) -> None:
        operation = change.get("operationType")
        if operation not in SYNCED_OPERATIONS:
            return

        document = change.get("fullDocument")
        if document is None:
            # updateLookup finds nothing when the document was deleted meanwhile
            logger.warning(
                "Change event without post-image, skipping",
                extra={"collection": self.collection_name, "operation": operation,
                       "document_key": change.get("documentKey")}
            )
            return

        self.events_received += 1
        self.sink(document)

    def _handle_error(self, error: Exception, attempt: int, stop_event: threading.Event) -> None:
        """
        Back off before reconnecting.

        Waits on the stop event rather than sleeping so shutdown is not delayed.
        """
        delay = self.config.retry_delay(attempt)

        logger.warning(
            f"Error occurred, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "collection": self.collection_name,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )
        change_feed_reconnects_total.labels(error_type=type(error).__name__).inc()

        stop_event.wait(delay)

    def _is_retryable_error(self, error: PyMongoError) -> bool:
        """Check if error is retryable."""
        if isinstance(error, (ConnectionFailure, ServerSelectionTimeoutError)):
            return True

        if isinstance(error, OperationFailure):
            return error.code not in NON_RETRYABLE_CODES

        return True
