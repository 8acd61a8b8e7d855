"""
SQLite storage for subscriptions, keyword sets and feed watermarks.

Provides async database operations shared by the poller and the
management commands.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from rss_pusher.filters import parse_keywords

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Fixed-width so stored times compare correctly as text
TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class StorageError(Exception):
    """Raised when the database cannot serve a read or write."""

    pass


class SubscriptionError(Exception):
    """Raised when a subscription change is rejected."""

    pass


@dataclass
class Subscription:
    """
    A subscribed feed.

    Attributes
    ----------
    id : int
        Database identifier.
    url : str
        Feed URL.
    name : str
        Unique human-readable name.
    users : list[int]
        Subscribed user IDs.
    channel : bool
        Channel mode: push as announcement with image instead of a link.
    """

    id: int
    url: str
    name: str
    users: list[int] = field(default_factory=list)
    channel: bool = False


def parse_user_ids(raw: str | None) -> list[int]:
    """
    Decode a stored user list.

    Accepts a JSON array or the legacy ``,1,2,`` format. Non-positive and
    malformed IDs are dropped.
    """
    raw = (raw or "").strip()
    if not raw:
        return []

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        decoded = None

    if isinstance(decoded, list):
        candidates = decoded
    else:
        candidates = raw.strip("[] ").split(",")

    user_ids = []
    for candidate in candidates:
        try:
            user_id = int(str(candidate).strip())
        except ValueError:
            continue
        if user_id > 0:
            user_ids.append(user_id)
    return user_ids


def format_time(value: datetime) -> str:
    """Format an aware datetime for storage."""
    return value.astimezone(timezone.utc).strftime(TIME_FORMAT)


def parse_time(value: str) -> datetime:
    """Parse a stored time. Naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _ReadWriteLock:
    """Readers share access; a writer waits for readers and excludes everyone."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class Storage:
    """
    Async SQLite storage.

    Holds subscriptions, per-user keyword sets and the per-feed watermark
    used to tell new items from already processed ones.
    """

    def __init__(self, database_path: str | Path):
        """
        Initialize storage with database path.

        Parameters
        ----------
        database_path : str | Path
            Path to the SQLite database file.
        """
        self.database_path = Path(database_path)
        self._connection: aiosqlite.Connection | None = None
        self._lock = _ReadWriteLock()

    async def initialize(self) -> None:
        """
        Initialize the database connection and create tables.

        Creates the database file and parent directories if they don't exist.
        """
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Initializing database at %s", self.database_path)

        async with self._lock.writer():
            self._connection = await aiosqlite.connect(self.database_path)
            await self._create_tables()

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        if self._connection is None:
            raise StorageError("Database not initialized")

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS subscriptions (
                subscription_id INTEGER PRIMARY KEY AUTOINCREMENT,
                rss_url TEXT NOT NULL,
                rss_name TEXT NOT NULL UNIQUE,
                users TEXT NOT NULL DEFAULT '[]',
                channel INTEGER DEFAULT 0
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS user_keywords (
                user_id INTEGER PRIMARY KEY,
                keywords TEXT NOT NULL DEFAULT '[]'
            )
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS feed_data (
                rss_name TEXT PRIMARY KEY,
                last_update_time TEXT,
                latest_title TEXT DEFAULT ''
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_subscriptions_url
            ON subscriptions (rss_url)
        """)

        await self._connection.commit()
        logger.debug("Database tables created/verified")

    @asynccontextmanager
    async def _access(self, write: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """
        Check connectivity and hand out the connection under the lock.

        Multi-statement changes take the writer side so no other coroutine
        can commit half of them.
        """
        lock = self._lock.writer() if write else self._lock.reader()
        async with lock:
            if self._connection is None:
                raise StorageError("Database not initialized")
            try:
                await self._connection.execute("SELECT 1")
                yield self._connection
            except aiosqlite.Error as e:
                raise StorageError(str(e)) from e

    # Subscriptions

    async def get_subscriptions(self) -> list[Subscription]:
        """
        Load every subscription.

        Returns
        -------
        list[Subscription]
            All subscriptions ordered by ID.
        """
        async with self._access() as conn:
            cursor = await conn.execute(
                "SELECT subscription_id, rss_url, rss_name, users, channel "
                "FROM subscriptions ORDER BY subscription_id"
            )
            rows = await cursor.fetchall()

        return [self._row_to_subscription(row) for row in rows]

    async def get_subscription(self, name: str) -> Subscription | None:
        """Look up one subscription by name."""
        async with self._access() as conn:
            cursor = await conn.execute(
                "SELECT subscription_id, rss_url, rss_name, users, channel "
                "FROM subscriptions WHERE rss_name = ?",
                (name,),
            )
            row = await cursor.fetchone()

        return self._row_to_subscription(row) if row else None

    async def get_subscriptions_for_user(self, user_id: int) -> list[Subscription]:
        """List the subscriptions a user belongs to."""
        subscriptions = await self.get_subscriptions()
        return [sub for sub in subscriptions if user_id in sub.users]

    async def add_subscription(
        self,
        url: str,
        name: str,
        user_id: int,
        channel: bool = False,
    ) -> bool:
        """
        Subscribe a user to a feed.

        A feed matching either the URL or the name is reused; otherwise a
        new subscription and its empty watermark are created.

        Parameters
        ----------
        url : str
            Feed URL.
        name : str
            Subscription name.
        user_id : int
            Subscribing user.
        channel : bool
            Channel mode, only used when the subscription is created.

        Returns
        -------
        bool
            True if a new subscription was created.

        Raises
        ------
        SubscriptionError
            If the user is already subscribed.
        """
        async with self._access(write=True) as conn:
            cursor = await conn.execute(
                "SELECT rss_name, users FROM subscriptions WHERE rss_url = ? OR rss_name = ?",
                (url, name),
            )
            row = await cursor.fetchone()

            if row is None:
                await conn.execute(
                    "INSERT INTO subscriptions (rss_url, rss_name, users, channel) "
                    "VALUES (?, ?, ?, ?)",
                    (url, name, json.dumps([user_id]), int(channel)),
                )
                await conn.execute(
                    "INSERT OR IGNORE INTO feed_data (rss_name, last_update_time, latest_title) "
                    "VALUES (?, NULL, '')",
                    (name,),
                )
                await conn.commit()
                logger.info("Created subscription '%s' for user %d", name, user_id)
                return True

            existing_name, users_raw = row
            users = parse_user_ids(users_raw)
            if user_id in users:
                raise SubscriptionError(f"User {user_id} is already subscribed to '{existing_name}'")

            users.append(user_id)
            await conn.execute(
                "UPDATE subscriptions SET users = ? WHERE rss_name = ?",
                (json.dumps(users), existing_name),
            )
            await conn.commit()
            logger.info("Added user %d to subscription '%s'", user_id, existing_name)
            return False

    async def remove_subscription_user(self, name: str, user_id: int) -> bool:
        """
        Unsubscribe a user.

        Parameters
        ----------
        name : str
            Subscription name.
        user_id : int
            User to remove.

        Returns
        -------
        bool
            True if the subscription had no users left and was deleted.

        Raises
        ------
        SubscriptionError
            If the subscription does not exist or the user is not in it.
        """
        async with self._access(write=True) as conn:
            cursor = await conn.execute(
                "SELECT users FROM subscriptions WHERE rss_name = ?",
                (name,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise SubscriptionError(f"Subscription '{name}' does not exist")

            users = parse_user_ids(row[0])
            if user_id not in users:
                raise SubscriptionError(f"User {user_id} is not subscribed to '{name}'")

            remaining = [uid for uid in users if uid != user_id]
            if remaining:
                await conn.execute(
                    "UPDATE subscriptions SET users = ? WHERE rss_name = ?",
                    (json.dumps(remaining), name),
                )
            else:
                await conn.execute("DELETE FROM subscriptions WHERE rss_name = ?", (name,))
                await conn.execute("DELETE FROM feed_data WHERE rss_name = ?", (name,))
            await conn.commit()

        if remaining:
            logger.info("Removed user %d from subscription '%s'", user_id, name)
            return False

        logger.info("Deleted subscription '%s', no users left", name)
        return True

    @staticmethod
    def _row_to_subscription(row: tuple) -> Subscription:
        sub_id, url, name, users_raw, channel = row
        return Subscription(
            id=sub_id,
            url=url,
            name=name,
            users=parse_user_ids(users_raw),
            channel=bool(channel),
        )

    # Keywords

    async def get_keywords(self, user_id: int) -> list[str]:
        """Return a user's keyword rules, empty if none are stored."""
        async with self._access() as conn:
            cursor = await conn.execute(
                "SELECT keywords FROM user_keywords WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()

        return parse_keywords(row[0]) if row else []

    async def get_all_keywords(self) -> dict[int, list[str]]:
        """
        Load every non-empty keyword set.

        Returns
        -------
        dict[int, list[str]]
            Rules keyed by user ID.
        """
        async with self._access() as conn:
            cursor = await conn.execute("SELECT user_id, keywords FROM user_keywords")
            rows = await cursor.fetchall()

        user_keywords = {}
        for user_id, raw in rows:
            keywords = parse_keywords(raw)
            if keywords:
                user_keywords[user_id] = keywords
        return user_keywords

    async def add_keywords(self, user_id: int, rules: list[str]) -> tuple[int, list[str]]:
        """
        Merge rules into a user's keyword set.

        Duplicates are detected by exact, case-sensitive comparison. The
        stored set is kept sorted.

        Parameters
        ----------
        user_id : int
            Owner of the set.
        rules : list[str]
            Rules to add, already split.

        Returns
        -------
        tuple[int, list[str]]
            Number of rules added and the resulting set.
        """
        async with self._access(write=True) as conn:
            cursor = await conn.execute(
                "SELECT keywords FROM user_keywords WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
            existing = parse_keywords(row[0]) if row else []

            merged = list(existing)
            for rule in rules:
                if rule not in merged:
                    merged.append(rule)

            added = len(merged) - len(existing)
            if added == 0:
                return 0, sorted(existing)

            merged.sort()
            await conn.execute(
                "INSERT INTO user_keywords (user_id, keywords) VALUES (?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET keywords = excluded.keywords",
                (user_id, json.dumps(merged, ensure_ascii=False)),
            )
            await conn.commit()

        logger.info("Added %d keyword(s) for user %d, %d total", added, user_id, len(merged))
        return added, merged

    async def remove_keyword(self, user_id: int, rule: str) -> bool:
        """
        Remove one rule from a user's keyword set.

        Returns
        -------
        bool
            False if the rule was not in the set.
        """
        async with self._access(write=True) as conn:
            cursor = await conn.execute(
                "SELECT keywords FROM user_keywords WHERE user_id = ?",
                (user_id,),
            )
            row = await cursor.fetchone()
            existing = parse_keywords(row[0]) if row else []
            if rule not in existing:
                return False

            remaining = [k for k in existing if k != rule]
            await conn.execute(
                "UPDATE user_keywords SET keywords = ? WHERE user_id = ?",
                (json.dumps(remaining, ensure_ascii=False), user_id),
            )
            await conn.commit()

        logger.info("Removed keyword '%s' for user %d", rule, user_id)
        return True

    # Watermarks

    async def get_watermark(self, feed_name: str) -> tuple[datetime, bool]:
        """
        Get the last seen item time of a feed.

        A missing record is created as a side effect.

        Parameters
        ----------
        feed_name : str
            Subscription name.

        Returns
        -------
        tuple[datetime, bool]
            The watermark and whether one was stored. EPOCH when not found.
        """
        async with self._access() as conn:
            cursor = await conn.execute(
                "SELECT last_update_time FROM feed_data WHERE rss_name = ?",
                (feed_name,),
            )
            row = await cursor.fetchone()

            if row is None:
                await conn.execute(
                    "INSERT OR IGNORE INTO feed_data (rss_name, last_update_time, latest_title) "
                    "VALUES (?, NULL, '')",
                    (feed_name,),
                )
                await conn.commit()
                logger.debug("Created watermark record for '%s'", feed_name)
                return EPOCH, False

        if not row[0]:
            return EPOCH, False

        try:
            return parse_time(row[0]), True
        except ValueError as e:
            raise StorageError(f"Invalid watermark for '{feed_name}': {row[0]!r}") from e

    async def set_watermark(self, feed_name: str, time: datetime, title: str) -> None:
        """
        Store the last seen item time of a feed.

        Older times than the stored one are ignored.

        Parameters
        ----------
        feed_name : str
            Subscription name.
        time : datetime
            Latest item time observed.
        title : str
            Title of the feed's first item, kept for reference.
        """
        async with self._access() as conn:
            await conn.execute(
                """
                INSERT INTO feed_data (rss_name, last_update_time, latest_title)
                VALUES (?, ?, ?)
                ON CONFLICT(rss_name) DO UPDATE SET
                    last_update_time = excluded.last_update_time,
                    latest_title = excluded.latest_title
                WHERE feed_data.last_update_time IS NULL
                    OR feed_data.last_update_time <= excluded.last_update_time
                """,
                (feed_name, format_time(time), title),
            )
            await conn.commit()
        logger.debug("Watermark for '%s' set to %s", feed_name, time.isoformat())

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock.writer():
            if self._connection:
                await self._connection.close()
                self._connection = None
                logger.debug("Database connection closed")

    async def __aenter__(self) -> "Storage":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
