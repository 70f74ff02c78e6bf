"""Tests for the live batch accumulator."""

import threading
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest
from pymongo.errors import AutoReconnect, OperationFailure

from anonsync.anonymization import CustomerAnonymizer, TransformPreconditionError
from anonsync.connectors.cdc import (
    BatchAccumulator,
    CheckpointError,
    CheckpointStore,
    FlushError,
    SyncConfig,
)
from anonsync.utils.timeutil import EPOCH_START
from tests.conftest import BASE_TIME, make_customer


@pytest.fixture
def store(collections):
    return CheckpointStore(collections.checkpoint)


def make_accumulator(target, store, **config):
    return BatchAccumulator(target, store, CustomerAnonymizer(), SyncConfig(**config))


class TestFlush:

    def test_size_trigger_leaves_remainder_for_next_flush(self, collections, store):
        accumulator = make_accumulator(collections.target, store)
        records = [make_customer(i) for i in range(1500)]

        for record in records[:999]:
            accumulator.add(record)
        assert collections.target.count_documents({}) == 0

        accumulator.add(records[999])
        assert collections.target.count_documents({}) == 1000
        assert store.read() == records[999]["createdAt"]

        for record in records[1000:]:
            accumulator.add(record)
        assert collections.target.count_documents({}) == 1000
        assert len(accumulator.batch) == 500

        assert accumulator.flush() == 500
        assert collections.target.count_documents({}) == 1500
        assert store.read() == records[-1]["createdAt"]
        assert accumulator.batch == []

    def test_empty_flush_is_noop(self, collections, store):
        accumulator = make_accumulator(collections.target, store)

        assert accumulator.flush() == 0
        assert store.read() == EPOCH_START

    def test_checkpoint_written_after_insert(self, store):
        calls = []
        target = Mock()
        target.insert_many.side_effect = lambda docs, ordered: calls.append("insert")
        store.write = Mock(side_effect=lambda ts: calls.append("checkpoint"))

        accumulator = make_accumulator(target, store)
        accumulator.add(make_customer(1))
        accumulator.flush()

        assert calls == ["insert", "checkpoint"]

    def test_records_anonymized_in_arrival_order(self, collections, store):
        accumulator = make_accumulator(collections.target, store)
        records = [make_customer(i) for i in (5, 2, 9)]
        for record in records:
            accumulator.add(record)

        accumulator.flush()

        anonymizer = CustomerAnonymizer()
        stored = [{k: v for k, v in d.items() if k != "_id"} for d in collections.target.find({})]
        assert stored == [anonymizer(r) for r in records]
        # Last record wins, even if an earlier one is newer
        assert store.read() == records[-1]["createdAt"]

    def test_checkpoint_never_moves_backwards(self, collections, store):
        accumulator = make_accumulator(collections.target, store)

        accumulator.add(make_customer(10))
        accumulator.flush()
        # An update to an older customer arrives later
        accumulator.add(make_customer(1))
        accumulator.flush()

        assert store.read() == BASE_TIME + timedelta(seconds=10)


class TestHeldCheckpoint:

    def test_held_flush_inserts_without_checkpoint(self, collections, store):
        accumulator = make_accumulator(collections.target, store)
        accumulator.hold_checkpoint()

        accumulator.add(make_customer(1))

        assert accumulator.flush() == 1
        assert collections.target.count_documents({}) == 1
        assert accumulator.batch == []
        assert store.read() == EPOCH_START

    def test_release_resumes_checkpoint_writes(self, collections, store):
        accumulator = make_accumulator(collections.target, store)
        accumulator.hold_checkpoint()
        accumulator.add(make_customer(5))
        accumulator.flush()

        accumulator.release_checkpoint()
        accumulator.add(make_customer(2))
        accumulator.flush()

        # Held value still counts towards the non-regressing checkpoint
        assert store.read() == BASE_TIME + timedelta(seconds=5)
        assert not accumulator.checkpoint_held


class TestFlushFailures:

    def test_insert_failure_keeps_batch(self, collections, store):
        target = Mock()
        target.insert_many.side_effect = [OperationFailure("not primary"), None]
        accumulator = make_accumulator(target, store)
        records = [make_customer(i) for i in range(3)]
        for record in records:
            accumulator.add(record)

        assert accumulator.flush() == 0
        assert accumulator.batch == records
        assert accumulator.consecutive_failures == 1
        assert store.read() == EPOCH_START

        assert accumulator.flush() == 3
        assert accumulator.batch == []
        assert accumulator.consecutive_failures == 0
        assert store.read() == records[-1]["createdAt"]

    def test_checkpoint_failure_keeps_batch(self, collections, store):
        store.write = Mock(side_effect=CheckpointError("Database error"))
        accumulator = make_accumulator(collections.target, store)
        accumulator.add(make_customer(1))

        assert accumulator.flush() == 0
        assert len(accumulator.batch) == 1

    def test_size_trigger_suspended_after_failure(self, store):
        target = Mock()
        target.insert_many.side_effect = AutoReconnect("down")
        accumulator = make_accumulator(target, store, batch_size=2)

        accumulator.add(make_customer(1))
        accumulator.add(make_customer(2))
        assert target.insert_many.call_count == 1

        for i in range(3, 10):
            accumulator.add(make_customer(i))
        assert target.insert_many.call_count == 1

        target.insert_many.side_effect = None
        assert accumulator.flush() == 9

        accumulator.add(make_customer(10))
        accumulator.add(make_customer(11))
        assert target.insert_many.call_count == 3

    def test_repeated_failures_are_fatal(self, store):
        target = Mock()
        target.insert_many.side_effect = OperationFailure("disk full")
        accumulator = make_accumulator(target, store, max_flush_failures=3)
        accumulator.add(make_customer(1))

        accumulator.flush()
        accumulator.flush()
        with pytest.raises(FlushError, match="3 consecutive flush failures"):
            accumulator.flush()
        assert len(accumulator.batch) == 1

    def test_malformed_record_propagates(self, collections, store):
        accumulator = make_accumulator(collections.target, store)
        accumulator.add(make_customer(1, email="nobody"))

        with pytest.raises(TransformPreconditionError):
            accumulator.flush()
        assert collections.target.count_documents({}) == 0


class TestRunLoop:

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_timer_flushes_partial_batch(self, collections, store):
        accumulator = make_accumulator(collections.target, store, flush_interval=0.05)
        stop_event = threading.Event()
        worker = threading.Thread(target=accumulator.run, args=(stop_event,))
        worker.start()

        try:
            for i in range(5):
                accumulator.submit(make_customer(i))
            assert self.wait_for(lambda: collections.target.count_documents({}) == 5)
        finally:
            stop_event.set()
            worker.join(timeout=5)

        assert store.read() == BASE_TIME + timedelta(seconds=4)

    def test_size_flush_then_tick_flush(self, collections, store):
        records = [make_customer(i) for i in range(1500)]
        flushed_sizes = []
        target = Mock()
        target.insert_many.side_effect = lambda docs, ordered: flushed_sizes.append(len(docs))
        store.write = Mock(wraps=store.write)
        accumulator = make_accumulator(target, store, flush_interval=1.0)
        for record in records:
            accumulator.submit(record)

        stop_event = threading.Event()
        worker = threading.Thread(target=accumulator.run, args=(stop_event,))
        worker.start()
        try:
            assert self.wait_for(lambda: len(flushed_sizes) == 2)
        finally:
            stop_event.set()
            worker.join(timeout=5)

        assert flushed_sizes == [1000, 500]
        assert [c.args[0] for c in store.write.call_args_list] == [
            records[999]["createdAt"],
            records[-1]["createdAt"],
        ]
        assert store.read() == records[-1]["createdAt"]

    def test_stop_flushes_pending_records(self, collections, store):
        accumulator = make_accumulator(collections.target, store, flush_interval=60)
        stop_event = threading.Event()
        for i in range(3):
            accumulator.submit(make_customer(i))
        stop_event.set()

        accumulator.run(stop_event)

        assert collections.target.count_documents({}) == 3
        assert accumulator.inbox.empty()
