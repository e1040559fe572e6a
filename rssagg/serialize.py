"""JSON-ready representations of stored records."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import Feed, FeedFollow, Post, User

JSONDict = dict[str, Any]


def _format_time(value: datetime) -> str:
    """Format a timestamp as RFC 3339 with trailing fractional zeros trimmed."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if offset == timedelta(0):
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    hours, minutes = divmod(minutes, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def user_to_json(user: User) -> JSONDict:
    return {
        "id": str(user.id),
        "created_at": _format_time(user.created_at),
        "updated_at": _format_time(user.updated_at),
        "name": user.name,
        "apikey": user.api_key,
    }


def feed_to_json(feed: Feed) -> JSONDict:
    # The feed response publishes its URL under the "apikey" field.
    return {
        "id": str(feed.id),
        "created_at": _format_time(feed.created_at),
        "updated_at": _format_time(feed.updated_at),
        "name": feed.name,
        "apikey": feed.url,
        "user_id": str(feed.user_id),
    }


def feeds_to_json(feeds: Iterable[Feed]) -> list[JSONDict]:
    return [feed_to_json(feed) for feed in feeds]


def feed_follow_to_json(follow: FeedFollow) -> JSONDict:
    return {
        "id": str(follow.id),
        "created_at": _format_time(follow.created_at),
        "updated_at": _format_time(follow.updated_at),
        "user_id": str(follow.user_id),
        "feed_id": str(follow.feed_id),
    }


def feed_follows_to_json(follows: Iterable[FeedFollow]) -> list[JSONDict]:
    return [feed_follow_to_json(follow) for follow in follows]


def post_to_json(post: Post) -> JSONDict:
    return {
        "id": str(post.id),
        "created_at": _format_time(post.created_at),
        "updated_at": _format_time(post.updated_at),
        "title": post.title,
        "description": post.description,
        "published_at": _format_time(post.published_at),
        "url": post.url,
        "feed_id": str(post.feed_id),
    }


def posts_to_json(posts: Iterable[Post]) -> list[JSONDict]:
    return [post_to_json(post) for post in posts]