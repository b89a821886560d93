from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
import sqlite3
from typing import Any, AsyncIterator, Optional, Sequence

import aiosqlite

from errors import ConflictError, NotFoundError, StorageError
from settings import DEFAULT_DB_PATH


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def timestamp_millis(value: str) -> int:
    """Convert a stored ISO-8601 timestamp to epoch milliseconds (naive means UTC)."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class UserRecord:
    id: int
    username: str
    password: str
    created_at: str

    def to_public_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username}


@dataclass
class SessionRecord:
    id: int
    user_id: int
    token_hash: str
    created_at: str


@dataclass
class FeedRecord:
    id: str
    user_id: int
    caption: str
    image_count: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = timestamp_millis(self.created_at)
        return payload


@dataclass
class FeedSummary:
    id: str
    username: str
    caption: str
    image_count: int
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = timestamp_millis(self.created_at)
        return payload


@dataclass
class CommentRecord:
    id: int
    feed_id: str
    username: str
    content: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = timestamp_millis(self.created_at)
        return payload


_FEED_SUMMARY_SELECT = """
    SELECT feeds.id, users.username, feeds.caption, feeds.image_count, feeds.created_at
    FROM feeds
    INNER JOIN users ON feeds.user_id = users.id
"""

_COMMENT_SELECT = """
    SELECT comments.id, comments.feed_id, users.username, comments.content, comments.created_at
    FROM comments
    INNER JOIN users ON comments.user_id = users.id
"""


class Database:
    """Async SQLite persistence for users, sessions, feeds, images and comments.

    Every call opens its own short-lived connection, so one instance can be
    shared by all concurrent requests. Any sqlite error escaping a connection
    is re-raised as ``StorageError``.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH) -> None:
        self.db_path = db_path

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        try:
            async with aiosqlite.connect(self.db_path) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA foreign_keys = ON;")
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"{type(exc).__name__}: {exc}") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection whose writes commit together or not at all.

        Any exception, cancellation included, rolls the whole scope back.
        """
        async with self._connection() as conn:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def initialize(self) -> None:
        """Create the data directory and every table the service needs."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL UNIQUE,
                    token_hash TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS feeds (
                    id TEXT PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    caption TEXT NOT NULL,
                    image_count INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
                """
            )
            # Image rows are written before their feed row, inside one transaction.
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    feed_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    data BLOB NOT NULL,
                    UNIQUE (feed_id, position),
                    FOREIGN KEY (feed_id) REFERENCES feeds(id) DEFERRABLE INITIALLY DEFERRED
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS comments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    feed_id TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (feed_id) REFERENCES feeds(id),
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
                """
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(self, query: str, params: Sequence[Any]) -> list[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    # Users

    async def create_user(self, username: str, password: str) -> UserRecord:
        """Insert a new user; a taken username raises ``ConflictError``."""
        created_at = now_iso()
        async with self._connection() as conn:
            try:
                cursor = await conn.execute(
                    "INSERT INTO users (username, password, created_at) VALUES (?, ?, ?)",
                    (username, password, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"username {username!r} is taken") from exc
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise StorageError("Failed to read the inserted user ID.")
        return UserRecord(
            id=int(lastrowid),
            username=username,
            password=password,
            created_at=created_at,
        )

    async def fetch_user_by_username(self, username: str) -> Optional[UserRecord]:
        row = await self.fetch_one(
            "SELECT id, username, password, created_at FROM users WHERE username = ?",
            (username,),
        )
        return UserRecord(**row) if row else None

    async def fetch_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        row = await self.fetch_one(
            "SELECT id, username, password, created_at FROM users WHERE id = ?",
            (user_id,),
        )
        return UserRecord(**row) if row else None

    async def update_user_password(self, user_id: int, password: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE users SET password = ? WHERE id = ?",
                (password, user_id),
            )
            await conn.commit()

    # Sessions

    async def replace_session(self, user_id: int, token_hash: str) -> SessionRecord:
        """Drop every session of the user and store the new one, atomically."""
        created_at = now_iso()
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            cursor = await conn.execute(
                "INSERT INTO sessions (user_id, token_hash, created_at) VALUES (?, ?, ?)",
                (user_id, token_hash, created_at),
            )
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise StorageError("Failed to read the inserted session ID.")
        return SessionRecord(
            id=int(lastrowid),
            user_id=user_id,
            token_hash=token_hash,
            created_at=created_at,
        )

    async def fetch_user_by_token_hash(self, token_hash: str) -> Optional[UserRecord]:
        """Resolve a session hash to its user with a single query."""
        row = await self.fetch_one(
            """
            SELECT users.id, users.username, users.password, users.created_at
            FROM sessions
            INNER JOIN users ON sessions.user_id = users.id
            WHERE sessions.token_hash = ?
            """,
            (token_hash,),
        )
        return UserRecord(**row) if row else None

    # Feeds and images

    async def insert_image(
        self, conn: aiosqlite.Connection, feed_id: str, position: int, data: bytes
    ) -> None:
        """Write one image row on a connection owned by ``transaction()``."""
        await conn.execute(
            "INSERT INTO images (feed_id, position, data) VALUES (?, ?, ?)",
            (feed_id, position, data),
        )

    async def insert_feed(
        self,
        conn: aiosqlite.Connection,
        *,
        feed_id: str,
        user_id: int,
        caption: str,
        image_count: int,
    ) -> FeedRecord:
        created_at = now_iso()
        await conn.execute(
            """
            INSERT INTO feeds (id, user_id, caption, image_count, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (feed_id, user_id, caption, image_count, created_at),
        )
        return FeedRecord(
            id=feed_id,
            user_id=user_id,
            caption=caption,
            image_count=image_count,
            created_at=created_at,
        )

    async def fetch_feed(self, feed_id: str) -> Optional[FeedRecord]:
        row = await self.fetch_one(
            "SELECT id, user_id, caption, image_count, created_at FROM feeds WHERE id = ?",
            (feed_id,),
        )
        return FeedRecord(**row) if row else None

    async def fetch_image(self, feed_id: str, position: int) -> Optional[bytes]:
        """Return the bytes stored for ``(feed_id, position)`` of a committed feed."""
        row = await self.fetch_one(
            """
            SELECT images.data
            FROM images
            INNER JOIN feeds ON images.feed_id = feeds.id
            WHERE images.feed_id = ? AND images.position = ? AND images.position < feeds.image_count
            """,
            (feed_id, position),
        )
        return bytes(row["data"]) if row else None

    async def list_feeds(self) -> list[FeedSummary]:
        rows = await self.fetch_all(
            _FEED_SUMMARY_SELECT + " ORDER BY feeds.created_at DESC, feeds.rowid DESC",
            (),
        )
        return [FeedSummary(**row) for row in rows]

    async def list_feeds_for_user(self, username: str) -> list[FeedSummary]:
        rows = await self.fetch_all(
            _FEED_SUMMARY_SELECT
            + " WHERE users.username = ? ORDER BY feeds.created_at DESC, feeds.rowid DESC",
            (username,),
        )
        return [FeedSummary(**row) for row in rows]

    # Comments

    async def create_comment(
        self, feed_id: str, user_id: int, content: str
    ) -> CommentRecord:
        """Insert a comment; an unknown feed raises ``NotFoundError``."""
        created_at = now_iso()
        async with self._connection() as conn:
            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO comments (feed_id, user_id, content, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (feed_id, user_id, content, created_at),
                )
            except sqlite3.IntegrityError as exc:
                raise NotFoundError(f"feed {feed_id!r} does not exist") from exc
            await conn.commit()
            comment_id = cursor.lastrowid
            cursor = await conn.execute(
                _COMMENT_SELECT + " WHERE comments.id = ?",
                (comment_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            raise StorageError("Failed to read back the inserted comment.")
        return CommentRecord(**row)

    async def list_comments(self, feed_id: str) -> list[CommentRecord]:
        rows = await self.fetch_all(
            _COMMENT_SELECT
            + " WHERE comments.feed_id = ? ORDER BY comments.created_at ASC, comments.id ASC",
            (feed_id,),
        )
        return [CommentRecord(**row) for row in rows]
