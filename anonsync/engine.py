"""
Anonymization sync engine.

Wires the checkpoint store, catch-up scanner, change feed and batch
accumulator together and supervises their worker threads.
"""

import logging
import signal
import threading
from typing import Callable, List, Optional

import pymongo
from pymongo.errors import PyMongoError

from .anonymization.transform import CustomerAnonymizer
from .config.settings import Settings
from .connectors.cdc import (
    BatchAccumulator,
    CatchUpError,
    CatchUpResult,
    CatchUpScanner,
    ChangeFeedConsumer,
    ChangeFeedError,
    CheckpointStore,
    FullReindexRunner,
    SyncConfig,
)
from .connectors.cdc.models import Transform
from .mongodb.connection import SyncCollections, connect
from .utils.logging import CorrelationContext, get_correlation_id

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Runs either the normal sync (catch-up + live) or a full reindex.

    Normal mode starts three supervised threads:

    - ``accumulator``: owns the live batch and flushes it
    - ``change-feed``: forwards change stream post-images to the accumulator
    - ``catch-up``: one pass over records missed while offline

    A failure in the accumulator or change feed is fatal: it is recorded in
    ``fatal_error`` and stops the engine.

    The live checkpoint is held until the catch-up pass succeeds. A failed
    pass is re-run with backoff up to ``max_retries`` times; if it still
    fails, live sync keeps running with the checkpoint held, and the next
    start re-scans from the same checkpoint.

    On stop, the accumulator is signalled only after the change feed and
    catch-up threads have exited, so its final drain sees every submitted
    record.

    Example:
        >>> engine = SyncEngine.from_settings(get_settings())
        >>> engine.run_forever()
    """

    def __init__(
        self,
        collections: SyncCollections,
        config: SyncConfig,
        transform: Transform,
        client: Optional[pymongo.MongoClient] = None
    ):
        self.collections = collections
        self.config = config
        self.transform = transform
        self.client = client

        self.checkpoint_store = CheckpointStore(collections.checkpoint)
        self.accumulator = BatchAccumulator(
            collections.target, self.checkpoint_store, transform, config
        )
        self.consumer = ChangeFeedConsumer(collections.source, self.accumulator.submit, config)
        self.scanner = CatchUpScanner(
            collections.source, collections.target, self.checkpoint_store, transform
        )

        self.stop_event = threading.Event()
        self.flush_stop_event = threading.Event()
        self.threads: List[threading.Thread] = []
        self.fatal_error: Optional[BaseException] = None
        self.catchup_result: Optional[CatchUpResult] = None
        self.catchup_error: Optional[BaseException] = None
        self._error_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[pymongo.MongoClient] = None) -> "SyncEngine":
        """
        Connect (unless a client is given) and build an engine from settings.

        Raises:
            StoreConnectionError: If MongoDB cannot be reached
        """
        if client is None:
            client = connect(settings.mongo)
        return cls(
            collections=SyncCollections.from_client(client),
            config=SyncConfig.from_settings(settings.sync),
            transform=CustomerAnonymizer(settings.sync.retained_fields),
            client=client
        )

    def run_full_reindex(self) -> int:
        """Rebuild the target collection from scratch. Returns records inserted."""
        runner = FullReindexRunner(self.collections.source, self.collections.target, self.transform)
        return runner.run()

    def start(self) -> None:
        """
        Open the change feed, then start the worker threads.

        Raises:
            ChangeFeedError: If the change stream cannot be opened
        """
        logger.info("Starting sync")
        try:
            # Subscribe before the catch-up query so nothing falls between them
            self.consumer.open()
        except PyMongoError as e:
            raise ChangeFeedError(f"Could not open changestream: {e}") from e

        self.accumulator.hold_checkpoint()
        self._spawn("accumulator", self.accumulator.run, fatal=True, stop_event=self.flush_stop_event)
        self._spawn("change-feed", self.consumer.run, fatal=True)
        self._spawn("catch-up", self._run_catchup, fatal=False)

    def _run_catchup(self, stop_event: threading.Event) -> None:
        """
        Run the catch-up pass, re-running it with backoff until it succeeds.

        The live checkpoint is released only on success.

        Raises:
            CatchUpError: When stopped, or once ``max_retries`` re-runs have failed
        """
        attempt = 0
        while True:
            try:
                self.catchup_result = self.scanner.run(stop_event)
                break
            except CatchUpError as e:
                self.catchup_error = e
                attempt += 1
                if stop_event.is_set():
                    raise
                if attempt > self.config.max_retries:
                    logger.error(
                        "Catch-up failed too many times, live checkpoint stays held until the next start",
                        extra={"attempt": attempt, "error": str(e)}
                    )
                    raise

                delay = self.config.retry_delay(attempt)
                logger.warning(
                    f"Catch-up failed, retrying in {delay}s (attempt {attempt}/{self.config.max_retries})",
                    extra={"attempt": attempt, "delay_seconds": delay, "error": str(e)}
                )
                if stop_event.wait(delay):
                    raise

        self.catchup_error = None
        self.accumulator.release_checkpoint()
        logger.info("Live checkpoint released")

    def _spawn(
        self,
        name: str,
        work: Callable[[threading.Event], None],
        fatal: bool,
        stop_event: Optional[threading.Event] = None
    ) -> None:
        correlation_id = get_correlation_id()
        stop_event = stop_event or self.stop_event

        def supervised():
            with CorrelationContext(correlation_id):
                try:
                    work(stop_event)
                except CatchUpError as e:
                    self.catchup_error = e
                    logger.error(f"Error running anonymization of offline inserted documents: {e}")
                except Exception as e:
                    if not fatal:
                        self.catchup_error = e
                        logger.exception(f"Worker {name} failed: {e}")
                        return
                    with self._error_lock:
                        if self.fatal_error is None:
                            self.fatal_error = e
                    logger.critical(f"Worker {name} failed, stopping sync: {e}", exc_info=True)
                    self.stop_event.set()

        thread = threading.Thread(target=supervised, name=name, daemon=True)
        self.threads.append(thread)
        thread.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the engine is asked to stop. Returns True if it was."""
        return self.stop_event.wait(timeout)

    def stop(self, timeout: float = 30.0) -> None:
        """
        Signal every worker to stop and wait for them to finish.

        The accumulator is stopped last so it flushes records the change feed
        submitted while shutting down.
        """
        self.stop_event.set()
        producers = [t for t in self.threads if t.name != "accumulator"]
        accumulators = [t for t in self.threads if t.name == "accumulator"]

        self._join(producers, timeout)
        self.flush_stop_event.set()
        self._join(accumulators, timeout)

        logger.info(
            "Sync script is closed",
            extra={"records_flushed": self.accumulator.records_flushed}
        )

    def _join(self, threads: List[threading.Thread], timeout: float) -> None:
        for thread in threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(f"Worker {thread.name} did not stop within {timeout}s")

    def run_forever(self) -> None:
        """
        Run the normal sync until SIGTERM/SIGINT or a fatal worker error.

        Raises:
            The fatal worker error, if one stopped the engine
        """
        with CorrelationContext():
            restore = self._setup_signal_handlers()
            try:
                self.start()
                while not self.wait(timeout=1.0):
                    pass
            finally:
                self.stop()
                restore()

        if self.fatal_error is not None:
            raise self.fatal_error

    def close(self) -> None:
        if self.client is not None:
            self.client.close()

    def _setup_signal_handlers(self) -> Callable[[], None]:
        """Set up signal handlers for graceful shutdown; returns a restore function."""
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop_event.set()

        original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        original_sigint = signal.signal(signal.SIGINT, signal_handler)

        def restore():
            signal.signal(signal.SIGTERM, original_sigterm)
            signal.signal(signal.SIGINT, original_sigint)

        return restore
