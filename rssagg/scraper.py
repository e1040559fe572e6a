"""Periodic fetching of feeds into stored posts."""

from __future__ import annotations

import http.client
import logging
import re
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from .models import Feed
from .rss import RSSFeed, fetch_feed
from .store import DuplicateError, Store, StoreError

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], RSSFeed]

_DAYS = {"Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"}
_MONTHS = {
    name: number
    for number, name in enumerate(
        ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
         "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"],
        start=1,
    )
}
_RFC1123Z = re.compile(
    r"(?P<weekday>[A-Za-z]{3}), (?P<day>\d{2}) (?P<month>[A-Za-z]{3}) (?P<year>\d{4}) "
    r"(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})(?P<fraction>[.,]\d+)? "
    r"(?P<sign>[+-])(?P<off_hour>\d{2})(?P<off_minute>\d{2})"
)


def parse_pub_date(text: str) -> datetime:
    """Parse an RFC 1123 date with numeric zone, e.g. ``Mon, 02 Jan 2006 15:04:05 -0700``."""
    match = _RFC1123Z.fullmatch(text)
    if match is None:
        raise ValueError(f"cannot parse {text!r} as an RFC 1123 date")
    if match["weekday"].title() not in _DAYS:
        raise ValueError(f"unknown weekday in {text!r}")
    month = _MONTHS.get(match["month"].title())
    if month is None:
        raise ValueError(f"unknown month in {text!r}")

    microsecond = 0
    if match["fraction"]:
        microsecond = int(match["fraction"][1:7].ljust(6, "0"))

    offset = timedelta(hours=int(match["off_hour"]), minutes=int(match["off_minute"]))
    if match["sign"] == "-":
        offset = -offset

    try:
        return datetime(
            int(match["year"]),
            month,
            int(match["day"]),
            int(match["hour"]),
            int(match["minute"]),
            int(match["second"]),
            microsecond,
            tzinfo=timezone(offset),
        )
    except ValueError as exc:
        raise ValueError(f"out of range value in {text!r}") from exc


def scrape_feed(store: Store, feed: Feed, fetcher: Fetcher = fetch_feed) -> int:
    """Fetch one feed and store its new posts; return how many were created."""
    try:
        store.mark_feed_as_fetched(feed.id)
    except StoreError:
        logger.warning("Error while marking %s", feed.name)
        return 0

    try:
        rss = fetcher(feed.url)
    except (OSError, http.client.HTTPException):
        logger.warning("Error while fetching %s", feed.name)
        return 0

    created = 0
    for item in rss.items:
        try:
            published_at = parse_pub_date(item.pub_date)
        except ValueError:
            logger.warning("Error parsing date")
            continue
        try:
            store.create_post(
                title=item.title,
                description=item.description,
                published_at=published_at,
                url=item.link,
                feed_id=feed.id,
            )
        except DuplicateError:
            continue
        except StoreError:
            logger.warning("failed")
            continue
        created += 1
    return created


def scrape_once(store: Store, concurrency: int, fetcher: Fetcher = fetch_feed) -> int:
    """Scrape up to ``concurrency`` feeds in parallel; return posts created."""
    try:
        feeds = store.get_next_feeds_to_fetch(concurrency)
    except StoreError:
        logger.warning("Error fetching feeds")
        return 0
    if not feeds:
        return 0
    with ThreadPoolExecutor(max_workers=len(feeds)) as pool:
        return sum(pool.map(lambda feed: scrape_feed(store, feed, fetcher), feeds))


def start_scraping(
    store: Store,
    concurrency: int,
    interval: timedelta | float,
    stop_event: threading.Event | None = None,
    fetcher: Fetcher = fetch_feed,
) -> None:
    """Scrape immediately and then once per ``interval`` until ``stop_event`` is set."""
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds <= 0:
        raise ValueError("interval must be positive")
    stop = stop_event if stop_event is not None else threading.Event()

    logger.info("Scraping on %d threads every %s seconds", concurrency, seconds)
    deadline = time.monotonic()
    while not stop.is_set():
        scrape_once(store, concurrency, fetcher)
        deadline = max(deadline + seconds, time.monotonic())
        if stop.wait(max(0.0, deadline - time.monotonic())):
            break