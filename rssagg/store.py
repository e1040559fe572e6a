"""SQLite-backed storage for users, feeds, follows and posts."""

from __future__ import annotations

import hashlib
import secrets
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from .models import Feed, FeedFollow, Post, User

_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    name TEXT NOT NULL,
    api_key TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    last_fetched_at TEXT
);
CREATE TABLE IF NOT EXISTS feed_follows (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    UNIQUE (user_id, feed_id)
);
CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    published_at TEXT NOT NULL,
    url TEXT NOT NULL UNIQUE,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE
);
"""

_FEED_COLUMNS = "id, created_at, updated_at, name, url, user_id, last_fetched_at"
_FOLLOW_COLUMNS = "id, created_at, updated_at, user_id, feed_id"
_POST_COLUMNS = (
    "posts.id, posts.created_at, posts.updated_at, posts.title, "
    "posts.description, posts.published_at, posts.url, posts.feed_id"
)


class StoreError(Exception):
    """Raised when a storage operation fails."""


class NotFoundError(StoreError):
    """Raised when a requested row does not exist."""


class DuplicateError(StoreError):
    """Raised when a row would violate a uniqueness constraint."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIME_FORMAT)


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TIME_FORMAT).replace(tzinfo=timezone.utc)


def _new_api_key() -> str:
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def _user(row: sqlite3.Row) -> User:
    return User(
        id=uuid.UUID(row["id"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        name=row["name"],
        api_key=row["api_key"],
    )


def _feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=uuid.UUID(row["id"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        name=row["name"],
        url=row["url"],
        user_id=uuid.UUID(row["user_id"]),
        last_fetched_at=_from_db(row["last_fetched_at"]),
    )


def _follow(row: sqlite3.Row) -> FeedFollow:
    return FeedFollow(
        id=uuid.UUID(row["id"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        user_id=uuid.UUID(row["user_id"]),
        feed_id=uuid.UUID(row["feed_id"]),
    )


def _post(row: sqlite3.Row) -> Post:
    return Post(
        id=uuid.UUID(row["id"]),
        created_at=_from_db(row["created_at"]),
        updated_at=_from_db(row["updated_at"]),
        title=row["title"],
        description=row["description"],
        published_at=_from_db(row["published_at"]),
        url=row["url"],
        feed_id=uuid.UUID(row["feed_id"]),
    )


class Store:
    """Thread-safe access to the aggregator's database."""

    def __init__(self, path: str = ":memory:") -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._lock = threading.RLock()
        self._depth = 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def _atomic(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[Store]:
        """Group several operations so they commit or roll back together."""
        with self._atomic():
            yield self

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise DuplicateError(f"duplicate key: {exc}") from exc
            raise StoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def _one(self, sql: str, params: tuple[Any, ...], what: str) -> sqlite3.Row:
        row = self._execute(sql, params).fetchone()
        if row is None:
            raise NotFoundError(f"{what} not found")
        return row

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must not be negative")

    def create_user(self, name: str) -> User:
        now = _to_db(_now())
        user_id = str(uuid.uuid4())
        with self._atomic():
            self._execute(
                "INSERT INTO users (id, created_at, updated_at, name, api_key) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, now, now, name, _new_api_key()),
            )
            row = self._one("SELECT * FROM users WHERE id = ?", (user_id,), "user")
        return _user(row)

    def get_user_by_api_key(self, api_key: str) -> User:
        with self._atomic():
            row = self._one(
                "SELECT * FROM users WHERE api_key = ?", (api_key,), "user"
            )
        return _user(row)

    def create_feed(self, name: str, url: str, user_id: uuid.UUID) -> Feed:
        now = _to_db(_now())
        feed_id = str(uuid.uuid4())
        with self._atomic():
            self._execute(
                "INSERT INTO feeds (id, created_at, updated_at, name, url, user_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (feed_id, now, now, name, url, str(user_id)),
            )
            row = self._one(
                f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,), "feed"
            )
        return _feed(row)

    def get_feeds(self) -> list[Feed]:
        with self._atomic():
            rows = self._execute(f"SELECT {_FEED_COLUMNS} FROM feeds").fetchall()
        return [_feed(row) for row in rows]

    def get_next_feeds_to_fetch(self, limit: int) -> list[Feed]:
        """Return up to ``limit`` feeds, never-fetched first, then oldest fetch."""
        self._check_limit(limit)
        with self._atomic():
            rows = self._execute(
                f"SELECT {_FEED_COLUMNS} FROM feeds "
                "ORDER BY last_fetched_at IS NOT NULL, last_fetched_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_feed(row) for row in rows]

    def mark_feed_as_fetched(self, feed_id: uuid.UUID) -> Feed:
        now = _to_db(_now())
        with self._atomic():
            cursor = self._execute(
                "UPDATE feeds SET last_fetched_at = ?, updated_at = ? WHERE id = ?",
                (now, now, str(feed_id)),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("feed not found")
            row = self._one(
                f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?",
                (str(feed_id),),
                "feed",
            )
        return _feed(row)

    def create_feed_follow(self, user_id: uuid.UUID, feed_id: uuid.UUID) -> FeedFollow:
        now = _to_db(_now())
        follow_id = str(uuid.uuid4())
        with self._atomic():
            self._execute(
                "INSERT INTO feed_follows (id, created_at, updated_at, user_id, feed_id) "
                "VALUES (?, ?, ?, ?, ?)",
                (follow_id, now, now, str(user_id), str(feed_id)),
            )
            row = self._one(
                f"SELECT {_FOLLOW_COLUMNS} FROM feed_follows WHERE id = ?",
                (follow_id,),
                "feed follow",
            )
        return _follow(row)

    def get_feed_follows(self, user_id: uuid.UUID) -> list[FeedFollow]:
        with self._atomic():
            rows = self._execute(
                f"SELECT {_FOLLOW_COLUMNS} FROM feed_follows WHERE user_id = ?",
                (str(user_id),),
            ).fetchall()
        return [_follow(row) for row in rows]

    def delete_feed_follow(self, follow_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Delete a follow owned by ``user_id``; does nothing if none matches."""
        with self._atomic():
            self._execute(
                "DELETE FROM feed_follows WHERE id = ? AND user_id = ?",
                (str(follow_id), str(user_id)),
            )

    def create_post(
        self,
        title: str,
        description: str | None,
        published_at: datetime,
        url: str,
        feed_id: uuid.UUID,
    ) -> Post:
        now = _to_db(_now())
        post_id = str(uuid.uuid4())
        with self._atomic():
            self._execute(
                "INSERT INTO posts (id, created_at, updated_at, title, description, "
                "published_at, url, feed_id) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    post_id,
                    now,
                    now,
                    title,
                    description,
                    _to_db(published_at),
                    url,
                    str(feed_id),
                ),
            )
            row = self._one(
                f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?", (post_id,), "post"
            )
        return _post(row)

    def get_posts_for_user(self, user_id: uuid.UUID, limit: int) -> list[Post]:
        """Return the newest posts from feeds the user follows."""
        self._check_limit(limit)
        with self._atomic():
            rows = self._execute(
                f"SELECT {_POST_COLUMNS} FROM posts "
                "JOIN feed_follows ON posts.feed_id = feed_follows.feed_id "
                "WHERE feed_follows.user_id = ? "
                "ORDER BY posts.published_at DESC LIMIT ?",
                (str(user_id), limit),
            ).fetchall()
        return [_post(row) for row in rows]