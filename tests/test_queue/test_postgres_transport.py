"""
Tests for the PostgreSQL queue transport.

Unit tests run against a mocked database; integration tests need
TEST_PG_DSN pointing at a PostgreSQL 13+ database.
"""

import json
import os
import uuid
from datetime import timedelta
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from conftest import START_TIME, ManualClock
from vacation_monitor.errors import MessageLockLostError, QueueError
from vacation_monitor.queue.messages import OutboundMessage, ReceivedMessage
from vacation_monitor.queue.postgres import PostgresQueueTransport, QueueDatabase
from vacation_monitor.queue.transport import MAX_DELIVERY_COUNT_EXCEEDED

PG_DSN = os.environ.get('TEST_PG_DSN')


def row(**overrides):
    data = {
        'seq': 7,
        'message_id': 'job_1_abc',
        'group_key': 'search-1',
        'body': {'searchId': 'search-1', 'userId': 'user-1', 'scheduleType': 'scheduled'},
        'content_type': 'application/json',
        'status': 'locked',
        'delivery_count': 1,
        'lock_token': 'token-1',
        'locked_until': START_TIME + timedelta(seconds=60),
        'enqueued_at': START_TIME,
        'dead_lettered_at': None,
        'dead_letter_reason': None,
        'last_error': None,
    }
    data.update(overrides)
    return data


def received(delivery_count=1):
    return ReceivedMessage(
        message_id='job_1_abc', body={}, group_key='search-1',
        delivery_count=delivery_count, lock_token='token-1',
        locked_until=START_TIME + timedelta(seconds=60)
    )


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def pg_transport(db, clock):
    return PostgresQueueTransport("", db=db, clock=clock, max_delivery_count=3,
                                  retry_backoff_seconds=60)


@pytest.mark.unit
class TestPostgresTransportUnit:

    def test_requires_dsn(self):
        with pytest.raises(QueueError):
            PostgresQueueTransport("")

    @pytest.mark.asyncio
    async def test_initialize_creates_missing_schema(self, pg_transport, db):
        with patch('vacation_monitor.queue.postgres.migrations') as migrations:
            migrations.check_schema_exists.return_value = False
            await pg_transport.initialize()
            migrations.create_schema.assert_called_once_with(db)

    @pytest.mark.asyncio
    async def test_initialize_without_schema_creation(self, db, clock):
        transport = PostgresQueueTransport("", db=db, clock=clock, create_schema=False)
        with patch('vacation_monitor.queue.postgres.migrations') as migrations:
            migrations.check_schema_exists.return_value = False
            with pytest.raises(QueueError):
                await transport.initialize()
            migrations.create_schema.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_batch_inserts_json(self, pg_transport, db):
        await pg_transport.send_batch([
            OutboundMessage(body={'searchId': 's1'}, message_id='m1', group_key='s1')
        ])

        sql, params = db.execute_raw.call_args[0]
        assert 'ON CONFLICT' in sql
        assert params[1] == 'm1'
        assert json.loads(params[3]) == {'searchId': 's1'}

    @pytest.mark.asyncio
    async def test_receive_claims_with_skip_locked(self, pg_transport, db):
        db.fetch_all.return_value = [row(body=json.dumps(row()['body']))]

        [message] = await pg_transport.receive(1, lock_duration=60)

        sql, params = db.fetch_all.call_args[0]
        assert 'FOR UPDATE SKIP LOCKED' in sql
        assert params['locked_until'] == START_TIME + timedelta(seconds=60)
        assert message.message_id == 'job_1_abc'
        assert message.body['searchId'] == 'search-1'
        assert message.sequence_number == 7

    @pytest.mark.asyncio
    async def test_expired_lock_sweep_locks_rows_in_order(self, pg_transport, db):
        db.fetch_all.return_value = []

        await pg_transport.receive(1, lock_duration=60)

        sql, params = db.execute_raw.call_args_list[0][0]
        assert sql.index('ORDER BY seq') < sql.index('FOR UPDATE SKIP LOCKED')
        assert 'WHERE seq IN' in sql
        assert params['now'] == START_TIME
        assert params['reason'] == MAX_DELIVERY_COUNT_EXCEEDED

    @pytest.mark.asyncio
    async def test_complete_with_lost_lock(self, pg_transport, db):
        db.execute.return_value = None

        with pytest.raises(MessageLockLostError):
            await pg_transport.complete(received())
        db.execute_raw.assert_not_called()

    @pytest.mark.asyncio
    async def test_abandon_backs_off(self, pg_transport, db, clock):
        db.execute.return_value = {'seq': 7, 'delivery_count': 2}

        await pg_transport.abandon(received(2), "timeout")

        sql, params = db.execute_raw.call_args[0]
        assert "status = 'pending'" in sql
        assert params == (clock.now() + timedelta(seconds=120), "timeout", 7)

    @pytest.mark.asyncio
    async def test_abandon_at_max_delivery_dead_letters(self, pg_transport, db, clock):
        db.execute.return_value = {'seq': 7, 'delivery_count': 3}

        await pg_transport.abandon(received(3), "timeout")

        sql, params = db.execute_raw.call_args[0]
        assert "status = 'dead_letter'" in sql
        assert params == (clock.now(), MAX_DELIVERY_COUNT_EXCEEDED, "timeout", 7)

    @pytest.mark.asyncio
    async def test_queue_status(self, pg_transport, db, clock):
        db.fetch_all.return_value = [
            {'status': 'pending', 'count': 4, 'oldest': START_TIME - timedelta(seconds=30)},
            {'status': 'dead_letter', 'count': 1, 'oldest': START_TIME},
        ]

        status = await pg_transport.get_queue_status()

        assert status == {
            'pending': 4, 'locked': 0, 'dead_letter': 1, 'total': 5,
            'oldest_pending_age_seconds': 30.0
        }

    @pytest.mark.asyncio
    async def test_requeue_reports_missing(self, pg_transport, db):
        db.execute_raw.return_value = 0
        assert await pg_transport.requeue_dead_letter('missing') is False


def healthy_connection():
    conn = MagicMock(closed=0)
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.description = [('?column?',)]
    cursor.fetchone.return_value = {'?column?': 1}
    return conn


def dropped_connection():
    conn = MagicMock(closed=0)
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.execute.side_effect = psycopg2.InterfaceError("connection already closed")
    return conn


@pytest.mark.unit
class TestQueueDatabaseConnections:
    """Thread-local connections are replaced after the server drops them."""

    def test_connection_error_reconnects_on_next_call(self):
        dropped, fresh = dropped_connection(), healthy_connection()
        with patch('vacation_monitor.queue.postgres.psycopg2.connect',
                   side_effect=[dropped, fresh]) as connect:
            db = QueueDatabase("postgresql://queue")

            with pytest.raises(psycopg2.InterfaceError):
                db.execute("SELECT 1")
            assert db.execute("SELECT 1") == {'?column?': 1}
            assert db._get_connection() is fresh
            assert connect.call_count == 2

        dropped.close.assert_called_once()

    def test_closed_connection_is_replaced(self):
        stale, fresh = healthy_connection(), healthy_connection()
        with patch('vacation_monitor.queue.postgres.psycopg2.connect',
                   side_effect=[stale, fresh]):
            db = QueueDatabase("postgresql://queue")
            db.execute("SELECT 1")

            stale.closed = 2
            assert db.execute("SELECT 1") == {'?column?': 1}
            assert db._get_connection() is fresh

    def test_broken_transaction_discards_connection(self):
        broken, fresh = healthy_connection(), healthy_connection()
        broken.commit.side_effect = psycopg2.OperationalError("server closed the connection unexpectedly")
        with patch('vacation_monitor.queue.postgres.psycopg2.connect',
                   side_effect=[broken, fresh]):
            db = QueueDatabase("postgresql://queue")

            with pytest.raises(psycopg2.OperationalError):
                with db.transaction():
                    db.execute_raw("UPDATE job_queue SET status = 'pending'")
            broken.rollback.assert_not_called()

            with db.transaction():
                db.execute("SELECT 1")
            fresh.commit.assert_called_once()

    def test_query_error_rolls_back_and_keeps_connection(self):
        conn = healthy_connection()
        with patch('vacation_monitor.queue.postgres.psycopg2.connect',
                   return_value=conn) as connect:
            db = QueueDatabase("postgresql://queue")

            with pytest.raises(ValueError):
                with db.transaction():
                    db.execute("SELECT 1")
                    raise ValueError("bad row")

            conn.rollback.assert_called_once()
            assert db._get_connection() is conn
            assert connect.call_count == 1


@pytest.mark.integration
@pytest.mark.skipif(not PG_DSN, reason="TEST_PG_DSN not set")
class TestPostgresTransportIntegration:

    @pytest.fixture
    def pg_clock(self):
        return ManualClock()

    @pytest.mark.asyncio
    async def test_peek_lock_cycle(self, pg_clock):
        transport = PostgresQueueTransport(
            PG_DSN, queue_name=f"test-{uuid.uuid4().hex[:8]}", max_delivery_count=2,
            retry_backoff_seconds=60, clock=pg_clock
        )
        await transport.initialize()
        try:
            await transport.send_batch([
                OutboundMessage(body={'n': 1}, message_id='a1', group_key='a'),
                OutboundMessage(body={'n': 2}, message_id='a2', group_key='a'),
                OutboundMessage(body={'n': 3}, message_id='b1', group_key='b'),
            ])

            first = await transport.receive(10, lock_duration=60)
            assert [m.message_id for m in first] == ['a1', 'b1']

            await transport.complete(first[1])
            await transport.abandon(first[0], "boom")
            assert await transport.receive(10, lock_duration=60) == []

            await pg_clock.advance(60)
            [again] = await transport.receive(10, lock_duration=60)
            assert again.message_id == 'a1'
            assert again.delivery_count == 2

            await transport.abandon(again, "boom")
            [item] = await transport.list_dead_letters()
            assert item.dead_letter_reason == MAX_DELIVERY_COUNT_EXCEEDED

            assert await transport.requeue_dead_letter('a1') is True
            status = await transport.get_queue_status()
            assert status['pending'] == 2
        finally:
            with transport.db.transaction():
                transport.db.execute_raw(
                    "DELETE FROM job_queue WHERE queue_name = %s", (transport.queue_name,)
                )
            await transport.close()
