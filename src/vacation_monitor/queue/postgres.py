"""
PostgreSQL queue transport.

Messages live in the ``job_queue`` table. Receiving claims rows with
``FOR UPDATE SKIP LOCKED`` so concurrent consumers never lock the same
message, and a lock is a random token plus an expiry stored on the row.
psycopg2 is blocking, so every operation runs in a worker thread on a
thread-local connection.
"""

import asyncio
import contextlib
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from ..clock import Clock, SystemClock
from ..errors import MessageLockLostError, QueueError
from . import migrations
from .dead_letter import DeadLetterItem
from .messages import OutboundMessage, ReceivedMessage
from .transport import (
    DEFAULT_MAX_DELIVERY_COUNT,
    DEFAULT_QUEUE_NAME,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    MAX_DELIVERY_COUNT_EXCEEDED,
    QueueTransport,
    retry_delay,
)

logger = logging.getLogger(__name__)

# Errors after which a connection cannot be reused
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class QueueDatabase:
    """Thread-local psycopg2 connections returning rows as dicts."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self._local = threading.local()
        self._connections = []
        self._connections_lock = threading.Lock()

    def _get_connection(self):
        """Get thread-local connection, reconnecting if the cached one was closed."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None and conn.closed:
            logger.warning("Queue database connection was closed, reconnecting")
            self._discard_connection(conn)
            conn = None

        if conn is None:
            conn = psycopg2.connect(self.dsn, cursor_factory=RealDictCursor)
            conn.autocommit = False
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _discard_connection(self, conn) -> None:
        """Forget a broken connection so the next call on this thread reconnects."""
        if getattr(self._local, 'conn', None) is conn:
            del self._local.conn
        with self._connections_lock:
            if conn in self._connections:
                self._connections.remove(conn)
        try:
            conn.close()
        except psycopg2.Error as e:
            logger.debug(f"Error closing broken queue database connection: {e}")

    @contextlib.contextmanager
    def _cursor(self):
        conn = self._get_connection()
        try:
            with conn.cursor() as cursor:
                yield cursor
        except CONNECTION_ERRORS:
            self._discard_connection(conn)
            raise

    @contextlib.contextmanager
    def transaction(self):
        """Transaction context manager."""
        conn = self._get_connection()
        try:
            yield
            conn.commit()
        except Exception as e:
            if isinstance(e, CONNECTION_ERRORS) or conn.closed:
                self._discard_connection(conn)
            else:
                try:
                    conn.rollback()
                except CONNECTION_ERRORS:
                    self._discard_connection(conn)
            raise

    def execute(self, query: str, params=None) -> Optional[Dict[str, Any]]:
        """Execute SQL query and return first result as dict."""
        with self._cursor() as cursor:
            cursor.execute(query, params)
            if cursor.description:
                row = cursor.fetchone()
                return dict(row) if row else None
        return None

    def fetch_all(self, query: str, params=None) -> List[Dict[str, Any]]:
        """Execute SQL query and return all rows as dicts."""
        with self._cursor() as cursor:
            cursor.execute(query, params)
            if not cursor.description:
                return []
            return [dict(row) for row in cursor.fetchall()]

    def execute_raw(self, sql: str, params=None) -> int:
        """Execute raw SQL and return the affected row count."""
        with self._cursor() as cursor:
            cursor.execute(sql, params)
            return cursor.rowcount

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except psycopg2.Error as e:
                logger.warning(f"Error closing queue database connection: {e}")
        self._local = threading.local()


_MESSAGE_COLUMNS = """
    seq, message_id, group_key, body, content_type, status, delivery_count,
    lock_token, locked_until, enqueued_at, dead_lettered_at,
    dead_letter_reason, last_error
"""


def _to_received(row: Dict[str, Any]) -> ReceivedMessage:
    body = row['body']
    if isinstance(body, str):
        body = json.loads(body)
    return ReceivedMessage(
        message_id=row['message_id'],
        body=body,
        group_key=row['group_key'],
        delivery_count=row['delivery_count'],
        lock_token=row['lock_token'],
        locked_until=row['locked_until'],
        enqueued_at=row['enqueued_at'],
        sequence_number=row['seq'],
        content_type=row['content_type']
    )


def _to_dead_letter_item(row: Dict[str, Any]) -> DeadLetterItem:
    body = row['body']
    if isinstance(body, str):
        body = json.loads(body)
    return DeadLetterItem(
        message_id=row['message_id'],
        group_key=row['group_key'],
        body=body,
        delivery_count=row['delivery_count'],
        enqueued_at=row['enqueued_at'],
        dead_lettered_at=row['dead_lettered_at'],
        dead_letter_reason=row['dead_letter_reason'] or '',
        last_error=row['last_error']
    )


class PostgresQueueTransport(QueueTransport):
    """Peek-lock queue on a PostgreSQL table."""

    def __init__(self, dsn: str, queue_name: str = DEFAULT_QUEUE_NAME,
                 max_delivery_count: int = DEFAULT_MAX_DELIVERY_COUNT,
                 retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
                 clock: Optional[Clock] = None,
                 create_schema: bool = True,
                 db: Optional[QueueDatabase] = None):
        super().__init__(queue_name, max_delivery_count, retry_backoff_seconds)
        if not dsn and db is None:
            raise QueueError("PostgreSQL queue transport requires a database URL")
        self.clock = clock or SystemClock()
        self.create_schema = create_schema
        self.db = db or QueueDatabase(dsn)

    # Lifecycle

    def _initialize_sync(self) -> None:
        if migrations.check_schema_exists(self.db):
            return
        if not self.create_schema:
            raise QueueError("Job queue schema does not exist; run 'vacation-monitor-queue init-schema'")
        migrations.create_schema(self.db)

    async def initialize(self) -> None:
        await asyncio.to_thread(self._initialize_sync)
        logger.info(f"PostgreSQL queue transport ready for queue {self.queue_name}")

    async def close(self) -> None:
        await asyncio.to_thread(self.db.close)

    # Sending

    def _send_batch_sync(self, messages: List[OutboundMessage], now: datetime) -> None:
        with self.db.transaction():
            for message in messages:
                self.db.execute_raw("""
                    INSERT INTO job_queue (
                        queue_name, message_id, group_key, body, content_type,
                        visible_at, enqueued_at
                    ) VALUES (%s, %s, %s, %s::jsonb, %s, %s, %s)
                    ON CONFLICT (queue_name, message_id) DO NOTHING
                """, (
                    self.queue_name, message.message_id, message.group_key,
                    json.dumps(message.body), message.content_type, now, now
                ))

    async def send_batch(self, messages: List[OutboundMessage]) -> None:
        await asyncio.to_thread(self._send_batch_sync, messages, self.clock.now())

    # Receiving

    def _expire_locks(self, now: datetime) -> None:
        self.db.execute_raw("""
            UPDATE job_queue
            SET status = CASE WHEN delivery_count >= %(max)s THEN 'dead_letter' ELSE 'pending' END,
                dead_lettered_at = CASE WHEN delivery_count >= %(max)s THEN %(now)s ELSE NULL END,
                dead_letter_reason = CASE WHEN delivery_count >= %(max)s THEN %(reason)s ELSE NULL END,
                lock_token = NULL,
                locked_until = NULL,
                visible_at = %(now)s
            WHERE seq IN (
                SELECT seq FROM job_queue
                WHERE queue_name = %(queue)s
                  AND status = 'locked'
                  AND locked_until < %(now)s
                ORDER BY seq
                FOR UPDATE SKIP LOCKED
            )
        """, {
            'max': self.max_delivery_count,
            'now': now,
            'reason': MAX_DELIVERY_COUNT_EXCEEDED,
            'queue': self.queue_name
        })

    def _receive_sync(self, max_messages: int, lock_duration: float,
                      now: datetime) -> List[ReceivedMessage]:
        with self.db.transaction():
            self._expire_locks(now)
            rows = self.db.fetch_all("""
                WITH candidates AS (
                    SELECT q.seq
                    FROM job_queue q
                    WHERE q.queue_name = %(queue)s
                      AND q.status = 'pending'
                      AND q.visible_at <= %(now)s
                      AND NOT EXISTS (
                          SELECT 1 FROM job_queue o
                          WHERE o.queue_name = q.queue_name
                            AND o.group_key = q.group_key
                            AND (o.status = 'locked'
                                 OR (o.status = 'pending' AND o.seq < q.seq))
                      )
                    ORDER BY q.seq
                    LIMIT %(limit)s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE job_queue j
                SET status = 'locked',
                    lock_token = gen_random_uuid()::text,
                    locked_until = %(locked_until)s,
                    delivery_count = j.delivery_count + 1
                FROM candidates c
                WHERE j.seq = c.seq
                RETURNING j.*
            """, {
                'queue': self.queue_name,
                'now': now,
                'limit': max_messages,
                'locked_until': now + timedelta(seconds=lock_duration)
            })

        rows.sort(key=lambda r: r['seq'])
        return [_to_received(row) for row in rows]

    async def receive(self, max_messages: int, lock_duration: float) -> List[ReceivedMessage]:
        return await asyncio.to_thread(
            self._receive_sync, max_messages, lock_duration, self.clock.now()
        )

    # Settlement

    def _lock_lost(self, message: ReceivedMessage) -> MessageLockLostError:
        return MessageLockLostError(
            f"Lock for message {message.message_id} was lost", message.message_id
        )

    def _locked_row(self, message: ReceivedMessage, now: datetime) -> Dict[str, Any]:
        row = self.db.execute("""
            SELECT seq, delivery_count
            FROM job_queue
            WHERE queue_name = %s
              AND message_id = %s
              AND status = 'locked'
              AND lock_token = %s
              AND locked_until >= %s
            FOR UPDATE
        """, (self.queue_name, message.message_id, message.lock_token, now))
        if not row:
            raise self._lock_lost(message)
        return row

    def _complete_sync(self, message: ReceivedMessage, now: datetime) -> None:
        with self.db.transaction():
            row = self._locked_row(message, now)
            self.db.execute_raw("DELETE FROM job_queue WHERE seq = %s", (row['seq'],))

    async def complete(self, message: ReceivedMessage) -> None:
        await asyncio.to_thread(self._complete_sync, message, self.clock.now())

    def _abandon_sync(self, message: ReceivedMessage, error: Optional[str], now: datetime) -> None:
        with self.db.transaction():
            row = self._locked_row(message, now)
            if row['delivery_count'] >= self.max_delivery_count:
                self._dead_letter_row(row['seq'], MAX_DELIVERY_COUNT_EXCEEDED, error, now)
                logger.warning(
                    f"Message {message.message_id} dead-lettered: {MAX_DELIVERY_COUNT_EXCEEDED} "
                    f"(delivery_count={row['delivery_count']})"
                )
                return
            delay = retry_delay(row['delivery_count'], self.retry_backoff_seconds)
            self.db.execute_raw("""
                UPDATE job_queue
                SET status = 'pending',
                    lock_token = NULL,
                    locked_until = NULL,
                    visible_at = %s,
                    last_error = %s
                WHERE seq = %s
            """, (now + timedelta(seconds=delay), error, row['seq']))

    async def abandon(self, message: ReceivedMessage, error: Optional[str] = None) -> None:
        await asyncio.to_thread(self._abandon_sync, message, error, self.clock.now())

    def _renew_lock_sync(self, message: ReceivedMessage, lock_duration: float,
                         now: datetime) -> datetime:
        with self.db.transaction():
            row = self._locked_row(message, now)
            locked_until = now + timedelta(seconds=lock_duration)
            self.db.execute_raw(
                "UPDATE job_queue SET locked_until = %s WHERE seq = %s",
                (locked_until, row['seq'])
            )
        return locked_until

    async def renew_lock(self, message: ReceivedMessage, lock_duration: float) -> datetime:
        locked_until = await asyncio.to_thread(
            self._renew_lock_sync, message, lock_duration, self.clock.now()
        )
        message.locked_until = locked_until
        return locked_until

    def _dead_letter_row(self, seq: int, reason: str, description: Optional[str],
                         now: datetime) -> None:
        self.db.execute_raw("""
            UPDATE job_queue
            SET status = 'dead_letter',
                lock_token = NULL,
                locked_until = NULL,
                dead_lettered_at = %s,
                dead_letter_reason = %s,
                last_error = COALESCE(%s, last_error)
            WHERE seq = %s
        """, (now, reason, description, seq))

    def _dead_letter_sync(self, message: ReceivedMessage, reason: str,
                          description: Optional[str], now: datetime) -> None:
        with self.db.transaction():
            row = self._locked_row(message, now)
            self._dead_letter_row(row['seq'], reason, description, now)
        logger.warning(f"Message {message.message_id} dead-lettered: {reason}")

    async def dead_letter(self, message: ReceivedMessage, reason: str,
                          description: Optional[str] = None) -> None:
        await asyncio.to_thread(
            self._dead_letter_sync, message, reason, description, self.clock.now()
        )

    # Inspection and dead letter management

    def _queue_status_sync(self, now: datetime) -> Dict[str, Any]:
        with self.db.transaction():
            rows = self.db.fetch_all("""
                SELECT status, COUNT(*) AS count, MIN(enqueued_at) AS oldest
                FROM job_queue
                WHERE queue_name = %s
                GROUP BY status
            """, (self.queue_name,))

        status = {'pending': 0, 'locked': 0, 'dead_letter': 0, 'oldest_pending_age_seconds': 0.0}
        for row in rows:
            status[row['status']] = row['count']
            if row['status'] == 'pending' and row['oldest']:
                status['oldest_pending_age_seconds'] = (now - row['oldest']).total_seconds()
        status['total'] = status['pending'] + status['locked'] + status['dead_letter']
        return status

    async def get_queue_status(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._queue_status_sync, self.clock.now())

    def _list_dead_letters_sync(self, limit: int) -> List[DeadLetterItem]:
        with self.db.transaction():
            rows = self.db.fetch_all(f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM job_queue
                WHERE queue_name = %s AND status = 'dead_letter'
                ORDER BY dead_lettered_at DESC
                LIMIT %s
            """, (self.queue_name, limit))
        return [_to_dead_letter_item(row) for row in rows]

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetterItem]:
        return await asyncio.to_thread(self._list_dead_letters_sync, limit)

    def _requeue_sync(self, message_id: str, now: datetime) -> bool:
        with self.db.transaction():
            count = self.db.execute_raw("""
                UPDATE job_queue
                SET status = 'pending',
                    delivery_count = 0,
                    visible_at = %s,
                    dead_lettered_at = NULL,
                    dead_letter_reason = NULL
                WHERE queue_name = %s AND message_id = %s AND status = 'dead_letter'
            """, (now, self.queue_name, message_id))
        return count > 0

    async def requeue_dead_letter(self, message_id: str) -> bool:
        return await asyncio.to_thread(self._requeue_sync, message_id, self.clock.now())

    def _purge_sync(self, older_than: datetime) -> int:
        with self.db.transaction():
            return self.db.execute_raw("""
                DELETE FROM job_queue
                WHERE queue_name = %s
                  AND status = 'dead_letter'
                  AND dead_lettered_at < %s
            """, (self.queue_name, older_than))

    async def purge_dead_letters(self, older_than: datetime) -> int:
        return await asyncio.to_thread(self._purge_sync, older_than)
