"""Tests for the MongoDB checkpoint store."""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from pymongo.errors import AutoReconnect, OperationFailure

from anonsync.connectors.cdc import CheckpointError, CheckpointStore
from anonsync.connectors.cdc.checkpoint_store import CHECKPOINT_ID, STATE_FIELD
from anonsync.utils.timeutil import EPOCH_START

T0 = datetime(2024, 3, 1, 12, 0, 0)
T1 = T0 + timedelta(minutes=1)
T2 = T0 + timedelta(minutes=2)


@pytest.fixture
def store(collections):
    return CheckpointStore(collections.checkpoint)


class TestRead:

    def test_absent_checkpoint_reads_as_epoch(self, store):
        assert store.read() == EPOCH_START

    def test_reads_written_value(self, store):
        store.write(T0)
        assert store.read() == T0

    def test_reads_document_written_by_other_tools(self, store, collections):
        # Legacy state documents have a generated _id
        collections.checkpoint.insert_one({STATE_FIELD: T1})
        assert store.read() == T1

    def test_database_error_wrapped(self):
        collection = Mock()
        collection.find_one.side_effect = OperationFailure("boom")

        with pytest.raises(CheckpointError, match="Database error"):
            CheckpointStore(collection).read()

    def test_transient_error_retried(self):
        collection = Mock()
        collection.find_one.side_effect = [AutoReconnect("flap"), {STATE_FIELD: T0}]

        assert CheckpointStore(collection).read() == T0
        assert collection.find_one.call_count == 2


class TestWrite:

    def test_write_replaces_previous_value(self, store, collections):
        store.write(T0)
        store.write(T1)

        assert collections.checkpoint.count_documents({}) == 1
        assert store.read() == T1

    def test_write_removes_stray_documents(self, store, collections):
        collections.checkpoint.insert_many([{STATE_FIELD: T0}, {STATE_FIELD: T1}])

        store.write(T2)

        docs = list(collections.checkpoint.find({}))
        assert len(docs) == 1
        assert docs[0]["_id"] == CHECKPOINT_ID

    def test_serialized_writes_are_monotonic(self, store):
        observed = []
        for minutes in range(10):
            store.write(T0 + timedelta(minutes=minutes))
            observed.append(store.read())

        assert observed == sorted(observed)

    def test_write_never_leaves_collection_empty(self, store, collections):
        store.write(T0)
        seen = []

        class ObservingCollection:
            def __getattr__(self, name):
                return getattr(collections.checkpoint, name)

            def delete_many(self, *args, **kwargs):
                result = collections.checkpoint.delete_many(*args, **kwargs)
                seen.append(collections.checkpoint.find_one({STATE_FIELD: {"$exists": True}}))
                return result

        CheckpointStore(ObservingCollection()).write(T1)

        assert seen[0][STATE_FIELD] == T0
        assert store.read() == T1

    def test_write_error_wrapped(self):
        collection = Mock()
        collection.delete_many.side_effect = OperationFailure("not primary")

        with pytest.raises(CheckpointError):
            CheckpointStore(collection).write(T0)


class TestCompareAndWrite:

    def test_from_epoch_when_absent(self, store):
        assert store.compare_and_write(EPOCH_START, T0) is True
        assert store.read() == T0

    def test_succeeds_when_unchanged(self, store):
        store.write(T0)

        assert store.compare_and_write(T0, T1) is True
        assert store.read() == T1

    def test_skips_when_advanced_by_another_writer(self, store):
        store.write(T0)
        expected = store.read()
        store.write(T2)  # live flush wins the race

        assert store.compare_and_write(expected, T1) is False
        assert store.read() == T2

    def test_from_epoch_loses_to_concurrent_first_write(self, store, collections):
        expected = store.read()
        store.write(T2)

        assert store.compare_and_write(expected, T1) is False
        assert store.read() == T2
        assert collections.checkpoint.count_documents({}) == 1

    def test_live_write_wins_when_catch_up_claims_slot_mid_write(self, collections):
        catch_up_store = CheckpointStore(collections.checkpoint)
        claimed = []

        class InterleavingCollection:
            """Runs the catch-up write while the live write is in progress."""

            def __getattr__(self, name):
                return getattr(collections.checkpoint, name)

            def delete_many(self, *args, **kwargs):
                result = collections.checkpoint.delete_many(*args, **kwargs)
                claimed.append(catch_up_store.compare_and_write(EPOCH_START, T0))
                return result

        live_store = CheckpointStore(InterleavingCollection())

        live_store.write(T2)

        assert claimed == [True]
        assert catch_up_store.read() == T2
        assert collections.checkpoint.count_documents({}) == 1

    def test_database_error_wrapped(self):
        collection = Mock()
        collection.update_one.side_effect = OperationFailure("boom")

        with pytest.raises(CheckpointError):
            CheckpointStore(collection).compare_and_write(T0, T1)
