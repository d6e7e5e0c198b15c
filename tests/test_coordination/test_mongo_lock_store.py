"""
Tests for the MongoDB lock store.

Unit tests drive a mocked collection; integration tests need TEST_MONGODB_URI.
"""

import os
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from conftest import START_TIME
from vacation_monitor.coordination.models import LockRecord
from vacation_monitor.coordination.mongodb import MongoLockStore
from vacation_monitor.errors import LockConflictError, LockNotFoundError, VersionMismatchError

MONGODB_URI = os.environ.get('TEST_MONGODB_URI')


def stored_doc(holder_id="instance-a", version="v1"):
    return {
        '_id': 'scheduler-lock',
        'lockName': 'scheduler-lock',
        'holderId': holder_id,
        'acquiredAt': START_TIME,
        'expiresAt': START_TIME + timedelta(seconds=90),
        'renewedAt': START_TIME,
        'version': version
    }


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def store(collection):
    return MongoLockStore(collection=collection)


@pytest.fixture
def record():
    return LockRecord.fresh("scheduler-lock", "instance-a", START_TIME, 90)


@pytest.mark.unit
class TestMongoLockStore:

    @pytest.mark.asyncio
    async def test_read_returns_versioned_record(self, store, collection):
        collection.find_one.return_value = stored_doc()

        result = await store.read("scheduler-lock")

        collection.find_one.assert_called_once_with({'_id': 'scheduler-lock'})
        assert result.version == "v1"
        assert result.value.holder_id == "instance-a"
        assert result.value.expires_at == START_TIME + timedelta(seconds=90)

    @pytest.mark.asyncio
    async def test_read_missing(self, store, collection):
        collection.find_one.return_value = None
        assert await store.read("scheduler-lock") is None

    @pytest.mark.asyncio
    async def test_create_inserts_document_with_version(self, store, collection, record):
        result = await store.create_if_absent(record)

        doc = collection.insert_one.call_args[0][0]
        assert doc['_id'] == 'scheduler-lock'
        assert doc['holderId'] == 'instance-a'
        assert doc['version'] == result.version

    @pytest.mark.asyncio
    async def test_create_conflict(self, store, collection, record):
        collection.insert_one.side_effect = DuplicateKeyError("duplicate key")

        with pytest.raises(LockConflictError) as exc_info:
            await store.create_if_absent(record)
        assert exc_info.value.lock_name == "scheduler-lock"

    @pytest.mark.asyncio
    async def test_update_filters_on_version(self, store, collection, record):
        collection.replace_one.return_value = MagicMock(matched_count=1)

        result = await store.update_if_version_matches(record, "v1")

        filter_doc, replacement = collection.replace_one.call_args[0]
        assert filter_doc == {'_id': 'scheduler-lock', 'version': 'v1'}
        assert replacement['version'] == result.version
        assert result.version != "v1"

    @pytest.mark.asyncio
    async def test_update_version_mismatch(self, store, collection, record):
        collection.replace_one.return_value = MagicMock(matched_count=0)
        collection.find_one.return_value = stored_doc(holder_id="instance-b", version="v2")

        with pytest.raises(VersionMismatchError) as exc_info:
            await store.update_if_version_matches(record, "v1")
        assert exc_info.value.current_version == "v2"
        assert exc_info.value.expected_version == "v1"

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store, collection, record):
        collection.replace_one.return_value = MagicMock(matched_count=0)
        collection.find_one.return_value = None

        with pytest.raises(LockNotFoundError):
            await store.update_if_version_matches(record, "v1")

    @pytest.mark.asyncio
    async def test_delete_filters_on_version(self, store, collection):
        collection.delete_one.return_value = MagicMock(deleted_count=1)

        await store.delete_if_version_matches("scheduler-lock", "v1")

        collection.delete_one.assert_called_once_with({'_id': 'scheduler-lock', 'version': 'v1'})

    @pytest.mark.asyncio
    async def test_delete_version_mismatch(self, store, collection):
        collection.delete_one.return_value = MagicMock(deleted_count=0)
        collection.find_one.return_value = stored_doc(version="v2")

        with pytest.raises(VersionMismatchError):
            await store.delete_if_version_matches("scheduler-lock", "v1")

    @pytest.mark.asyncio
    async def test_use_before_initialize(self):
        with pytest.raises(RuntimeError):
            await MongoLockStore({}).read("scheduler-lock")


@pytest.mark.integration
@pytest.mark.skipif(not MONGODB_URI, reason="TEST_MONGODB_URI not set")
class TestMongoLockStoreIntegration:

    @pytest.mark.asyncio
    async def test_conditional_writes(self):
        store = MongoLockStore({
            'uri': MONGODB_URI,
            'db_name': 'vacation-monitor-test',
            'lock_collection': f"locks_{uuid.uuid4().hex[:8]}"
        })
        await store.initialize()
        try:
            record = LockRecord.fresh("scheduler-lock", "instance-a", START_TIME, 90)
            created = await store.create_if_absent(record)

            with pytest.raises(LockConflictError):
                await store.create_if_absent(record)

            renewed = await store.update_if_version_matches(
                record.renewed(START_TIME + timedelta(seconds=30), 90), created.version
            )
            with pytest.raises(VersionMismatchError):
                await store.update_if_version_matches(record, created.version)

            await store.delete_if_version_matches("scheduler-lock", renewed.version)
            assert await store.read("scheduler-lock") is None
        finally:
            store.collection.drop()
            await store.close()
