#!/usr/bin/env python3
"""
SQLite subscription store.

All database access goes through a single DatabaseQueue worker so concurrent
subscription runs and chat commands never share a cursor. Rows are decoded
into Subscription objects before they leave this module.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Sequence

from config import config, get_logger
from entities import FeedSubscription, Subscription
from errors import NotFound, StoreError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT_MB = 1


def initialize_database(conn) -> None:
    """Create the subscription tables from schema.sql when they are missing."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='subscriptions'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
    with open(schema_path, 'r') as f:
        return f.read()


class DatabaseQueue:
    """A queue for database operations to ensure they run one at a time."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return
        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StoreError(f"Cannot open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, f"op_{operation_name}", None)
                    if method is None:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except (Error, ValueError, TypeError) as e:
                    self.conn.rollback()
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                except NotFound as e:
                    self.results[operation_id] = {"not_found": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Queue an operation and wait for its result.

        Raises:
            StoreError: when the worker is not running or the operation failed.
            NotFound: when a lookup matched nothing.
        """
        if not self.running:
            raise StoreError("Database worker is not running")
        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event
        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id, None)
            if result is None:
                raise StoreError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise StoreError(result["error"])
            if "not_found" in result:
                raise NotFound(result["not_found"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Subscription operations, run on the worker only

    def _load(self, row) -> Subscription:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT url, last_read_link FROM subscription_feeds WHERE subscription_id = ? ORDER BY position",
            (row['id'],)
        )
        feeds = tuple(FeedSubscription(r['url'], r['last_read_link'] or "") for r in cursor.fetchall())
        return Subscription(
            id=str(row['id']),
            user_id=row['user_id'] or "",
            group_id=row['group_id'] or "",
            feeds=feeds,
        )

    def op_find(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> Subscription:
        cursor = self.conn.cursor()
        if group_id:
            cursor.execute("SELECT * FROM subscriptions WHERE group_id = ? ORDER BY id LIMIT 1", (group_id,))
        elif user_id:
            cursor.execute("SELECT * FROM subscriptions WHERE user_id = ? ORDER BY id LIMIT 1", (user_id,))
        else:
            raise NotFound("No identity given")
        row = cursor.fetchone()
        if row is None:
            raise NotFound(f"No subscription for {'group ' + group_id if group_id else 'user ' + user_id}")
        return self._load(row)

    def op_list_active(self) -> List[Subscription]:
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT s.* FROM subscriptions s
            WHERE s.enabled = 1
              AND (COALESCE(s.user_id, '') != '' OR COALESCE(s.group_id, '') != '')
              AND EXISTS (SELECT 1 FROM subscription_feeds f WHERE f.subscription_id = s.id)
            ORDER BY s.id
        """)
        return [self._load(row) for row in cursor.fetchall()]

    def op_create(self, user_id: str, group_id: str, feeds: Sequence[FeedSubscription]) -> str:
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO subscriptions (user_id, group_id, enabled, created_at) VALUES (?, ?, 1, ?)",
            (user_id or None, group_id or None, int(time()))
        )
        subscription_id = cursor.lastrowid
        self._write_feeds(cursor, subscription_id, feeds)
        self.conn.commit()
        return str(subscription_id)

    def _write_feeds(self, cursor, subscription_id: int, feeds: Sequence[FeedSubscription]) -> None:
        cursor.executemany(
            "INSERT INTO subscription_feeds (subscription_id, position, url, last_read_link) VALUES (?, ?, ?, ?)",
            [(subscription_id, position, feed.url, feed.last_read_marker) for position, feed in enumerate(feeds)]
        )

    def _require(self, cursor, subscription_id: str) -> int:
        cursor.execute("SELECT id FROM subscriptions WHERE id = ?", (int(subscription_id),))
        row = cursor.fetchone()
        if row is None:
            raise NotFound(f"No subscription with id {subscription_id}")
        return row['id']

    def op_update_feed_list(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        """Replace the ordered feed list, keeping stored markers for URLs that stay."""
        cursor = self.conn.cursor()
        sid = self._require(cursor, subscription_id)
        cursor.execute("SELECT url, last_read_link FROM subscription_feeds WHERE subscription_id = ?", (sid,))
        stored = {r['url']: r['last_read_link'] or "" for r in cursor.fetchall()}
        cursor.execute("DELETE FROM subscription_feeds WHERE subscription_id = ?", (sid,))
        self._write_feeds(cursor, sid, [
            FeedSubscription(feed.url, feed.last_read_marker or stored.get(feed.url, "")) for feed in feeds
        ])
        self.conn.commit()

    def op_update_read_markers(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        cursor = self.conn.cursor()
        sid = self._require(cursor, subscription_id)
        cursor.executemany(
            "UPDATE subscription_feeds SET last_read_link = ? WHERE subscription_id = ? AND url = ?",
            [(feed.last_read_marker, sid, feed.url) for feed in feeds]
        )
        self.conn.commit()


class SqliteStore:
    """Subscription store over a local SQLite file."""

    def __init__(self, db_path: Optional[str] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)

    async def start(self) -> None:
        await self.db.start()

    async def stop(self) -> None:
        await self.db.stop()

    async def find(self, user_id: Optional[str] = None, group_id: Optional[str] = None) -> Subscription:
        return await self.db.execute("find", user_id=user_id, group_id=group_id)

    async def list_active(self) -> List[Subscription]:
        return await self.db.execute("list_active")

    async def create(self, subscription: Subscription) -> str:
        subscription_id = await self.db.execute(
            "create",
            user_id=subscription.user_id,
            group_id=subscription.group_id,
            feeds=tuple(subscription.feeds),
        )
        logger.info(f"Created subscription {subscription_id}")
        return subscription_id

    async def _update(self, operation_name: str, subscription_id: str, **params) -> None:
        try:
            await self.db.execute(operation_name, subscription_id=subscription_id, **params)
        except NotFound as e:
            raise StoreError(str(e)) from e

    async def update_feed_list(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        await self._update("update_feed_list", subscription_id, feeds=tuple(feeds))

    async def update_read_markers(self, subscription_id: str, feeds: Sequence[FeedSubscription]) -> None:
        await self._update("update_read_markers", subscription_id, feeds=tuple(feeds))
