#!/usr/bin/env python3
"""
Data model and cache storage for the feed summarizer.

This module contains the feed/cache record types, the ``FeedsItemsCache``
protocol, and its two implementations: an in-memory cache and a SQLite
cache serialized through a single database worker.
"""

from os import path, access, R_OK
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from config import config, get_logger
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

# Maximum number of items returned when read items are included
LIST_LIMIT = 100
DEFAULT_RETENTION = timedelta(days=30)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FeedItem:
    """A single entry parsed from a feed."""

    title: str
    link: str
    guid: str
    description: str = ""
    author: str = ""
    published: Optional[datetime] = None
    comments: str = ""


@dataclass
class Feed:
    title: str
    url: str
    items: List[FeedItem] = field(default_factory=list)


@dataclass
class CachedItem:
    """Persistent record of a (possibly failed) summary, keyed by ``guid``."""

    guid: str
    title: str
    link: str
    comments: str
    author: str
    publish_date: str
    description: str
    summary: str
    marked_as_read: bool
    created_at: datetime
    updated_at: datetime
    id: Optional[int] = None


def cached_item_from(item: FeedItem, title: str, summary: str, now: datetime) -> CachedItem:
    """Build the cache record for a feed item with its (translated) title and summary."""
    return CachedItem(
        guid=item.guid,
        title=title,
        link=item.link,
        comments=item.comments or "",
        author=item.author or "",
        publish_date=item.published.isoformat() if item.published else "",
        description=item.description or "",
        summary=summary,
        marked_as_read=False,
        created_at=now,
        updated_at=now,
    )


@runtime_checkable
class FeedsItemsCache(Protocol):
    """Storage contract shared by every cache backend.

    ``save`` is an upsert keyed by GUID: on conflict only the title and
    summary (and the update time) change. ``delete_older_than`` removes
    items whose creation time is strictly older than ``now - window``.
    """

    async def start(self) -> None: ...

    async def close(self) -> None: ...

    async def exists(self, guid: str) -> bool: ...

    async def save(self, item: FeedItem, title: str, summary: str) -> bool: ...

    async def fetch(self, guid: str) -> Optional[CachedItem]: ...

    async def mark_as_read(self, guid: str) -> bool: ...

    async def list_items(self, include_read: bool = False) -> List[CachedItem]: ...

    async def delete_older_than(self, window: timedelta = DEFAULT_RETENTION) -> int: ...


class MemoryCache:
    """Process-local cache; contents are lost on exit."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or _utcnow
        self._items: Dict[str, CachedItem] = {}
        self._seq = 0

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def exists(self, guid: str) -> bool:
        return guid in self._items

    async def save(self, item: FeedItem, title: str, summary: str) -> bool:
        now = self._clock()
        existing = self._items.get(item.guid)
        if existing:
            self._items[item.guid] = replace(existing, title=title, summary=summary, updated_at=now)
        else:
            self._seq += 1
            record = cached_item_from(item, title, summary, now)
            record.id = self._seq
            self._items[item.guid] = record
        return True

    async def fetch(self, guid: str) -> Optional[CachedItem]:
        found = self._items.get(guid)
        return replace(found) if found else None

    async def mark_as_read(self, guid: str) -> bool:
        found = self._items.get(guid)
        if not found:
            logger.warning(f"No cached item with guid {guid} to mark as read")
            return False
        found.marked_as_read = True
        return True

    async def list_items(self, include_read: bool = False) -> List[CachedItem]:
        items = sorted(self._items.values(), key=lambda it: (it.created_at, it.id or 0), reverse=True)
        if include_read:
            return [replace(it) for it in items[:LIST_LIMIT]]
        return [replace(it) for it in items if not it.marked_as_read]

    async def delete_older_than(self, window: timedelta = DEFAULT_RETENTION) -> int:
        cutoff = self._clock() - window
        stale = [guid for guid, it in self._items.items() if it.created_at < cutoff]
        for guid in stale:
            del self._items[guid]
        return len(stale)

    async def count(self) -> Dict[str, int]:
        unread = sum(1 for it in self._items.values() if not it.marked_as_read)
        return {"total": len(self._items), "unread": unread}


# Columns the current code relies on, with the definition used when an
# older database lacks them.
_CACHED_ITEMS_COLUMNS = {
    "title": "TEXT",
    "link": "TEXT",
    "comments": "TEXT",
    "author": "TEXT",
    "publish_date": "TEXT",
    "description": "TEXT",
    "summary": "TEXT",
    "marked_as_read": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "REAL NOT NULL DEFAULT 0",
    "updated_at": "REAL NOT NULL DEFAULT 0",
}


def initialize_database(conn) -> None:
    """Create or migrate the cache schema from the SQL file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='cached_items'")
        table_exists = cursor.fetchone() is not None

        if table_exists:
            # Columns first: the schema file indexes columns older databases may lack
            _run_migrations(conn)
        else:
            logger.info("Database is new or empty. Initializing schema.")

        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add any columns missing from an existing cached_items table."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(cached_items)")
        columns = {row[1] for row in cursor.fetchall()}
        for name, definition in _CACHED_ITEMS_COLUMNS.items():
            if name not in columns:
                logger.info(f"Adding {name} column to cached_items table")
                cursor.execute(f"ALTER TABLE cached_items ADD COLUMN {name} {definition}")
        conn.commit()
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
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
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


def _to_datetime(epoch: Optional[float]) -> datetime:
    return datetime.fromtimestamp(float(epoch or 0), tz=timezone.utc)


def _row_to_cached_item(row: Row) -> CachedItem:
    return CachedItem(
        id=row['id'],
        guid=row['guid'],
        title=row['title'] or "",
        link=row['link'] or "",
        comments=row['comments'] or "",
        author=row['author'] or "",
        publish_date=row['publish_date'] or "",
        description=row['description'] or "",
        summary=row['summary'] or "",
        marked_as_read=bool(row['marked_as_read']),
        created_at=_to_datetime(row['created_at']),
        updated_at=_to_datetime(row['updated_at']),
    )


class DatabaseQueue:
    """A queue for database operations so that only one coroutine touches SQLite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, apply the schema and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        self.conn = connect(self.db_path)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

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

        logger.debug("Database worker stopped")

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
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

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
        """Execute a named database operation and wait for its result."""
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, {"error": "Database worker stopped"})
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Cached item operations
    def op_exists(self, guid: str) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM cached_items WHERE guid = ? LIMIT 1", (guid,))
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    def op_upsert(self, record: Dict[str, Any]) -> bool:
        """Insert a cached item; on GUID conflict only title/summary/updated_at change."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO cached_items
                    (guid, title, link, comments, author, publish_date, description,
                     summary, marked_as_read, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(guid) DO UPDATE SET
                    title = excluded.title,
                    summary = excluded.summary,
                    updated_at = excluded.updated_at
                """,
                (
                    record['guid'],
                    record['title'],
                    record['link'],
                    record['comments'],
                    record['author'],
                    record['publish_date'],
                    record['description'],
                    record['summary'],
                    record['now'],
                    record['now'],
                ),
            )
            self.conn.commit()
            return True
        finally:
            cursor.close()

    def op_fetch(self, guid: str) -> Optional[CachedItem]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT * FROM cached_items WHERE guid = ?", (guid,))
            row = cursor.fetchone()
            return _row_to_cached_item(row) if row else None
        finally:
            cursor.close()

    def op_mark_as_read(self, guid: str) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("UPDATE cached_items SET marked_as_read = 1 WHERE guid = ?", (guid,))
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    def op_list(self, include_read: bool, limit: int) -> List[CachedItem]:
        cursor = self.conn.cursor()
        try:
            if include_read:
                cursor.execute(
                    "SELECT * FROM cached_items ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                )
            else:
                cursor.execute(
                    "SELECT * FROM cached_items WHERE marked_as_read = 0 ORDER BY created_at DESC, id DESC"
                )
            return [_row_to_cached_item(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def op_delete_older_than(self, cutoff: float) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute("DELETE FROM cached_items WHERE created_at < ?", (cutoff,))
            self.conn.commit()
            return cursor.rowcount
        finally:
            cursor.close()

    def op_count(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT COUNT(*), COALESCE(SUM(CASE WHEN marked_as_read = 0 THEN 1 ELSE 0 END), 0) FROM cached_items"
            )
            total, unread = cursor.fetchone()
            return {"total": int(total), "unread": int(unread)}
        finally:
            cursor.close()


class DatabaseCache:
    """SQLite-backed cache. Storage errors are logged and reported as neutral values."""

    def __init__(self, db_path: Optional[str] = None, clock: Optional[Clock] = None):
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self._clock = clock or _utcnow

    async def start(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        await self.db.stop()

    async def exists(self, guid: str) -> bool:
        try:
            return bool(await self.db.execute('exists', guid=guid))
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to check cached item {guid}: {e}")
            return False

    async def save(self, item: FeedItem, title: str, summary: str) -> bool:
        record = {
            "guid": item.guid,
            "title": title,
            "link": item.link,
            "comments": item.comments or "",
            "author": item.author or "",
            "publish_date": item.published.isoformat() if item.published else "",
            "description": item.description or "",
            "summary": summary,
            "now": self._clock().timestamp(),
        }
        try:
            return bool(await self.db.execute('upsert', record=record))
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to cache item {item.guid}: {e}")
            return False

    async def fetch(self, guid: str) -> Optional[CachedItem]:
        try:
            return await self.db.execute('fetch', guid=guid)
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to fetch cached item {guid}: {e}")
            return None

    async def mark_as_read(self, guid: str) -> bool:
        try:
            updated = await self.db.execute('mark_as_read', guid=guid)
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to mark cached item {guid} as read: {e}")
            return False
        if not updated:
            logger.warning(f"No cached item with guid {guid} to mark as read")
        return bool(updated)

    async def list_items(self, include_read: bool = False) -> List[CachedItem]:
        try:
            return await self.db.execute('list', include_read=include_read, limit=LIST_LIMIT)
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to list cached items: {e}")
            return []

    async def delete_older_than(self, window: timedelta = DEFAULT_RETENTION) -> int:
        cutoff = (self._clock() - window).timestamp()
        try:
            deleted = await self.db.execute('delete_older_than', cutoff=cutoff)
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to delete old cached items: {e}")
            return 0
        if deleted:
            logger.info(f"Deleted {deleted} cached items older than {window.days} days")
        return deleted

    async def count(self) -> Dict[str, int]:
        try:
            return await self.db.execute('count')
        except (RuntimeError, Error) as e:
            logger.error(f"Failed to count cached items: {e}")
            return {"total": 0, "unread": 0}


def create_cache(backend: Optional[str] = None, db_path: Optional[str] = None, clock: Optional[Clock] = None) -> FeedsItemsCache:
    """Pick the cache implementation by name ("sqlite" or "memory")."""
    backend = (backend or config.CACHE_BACKEND).lower()
    if backend == "memory":
        logger.info("Using in-memory cache")
        return MemoryCache(clock=clock)
    logger.info(f"Using SQLite cache at {db_path or config.DATABASE_PATH}")
    return DatabaseCache(db_path, clock=clock)
