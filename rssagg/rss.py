"""Fetching and parsing of RSS documents."""

from __future__ import annotations

import logging
import urllib.error
import urllib.request
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_CHANNEL_FIELDS = {
    "title": "title",
    "link": "link",
    "description": "description",
    "language": "language",
}
_ITEM_FIELDS = {
    "title": "title",
    "link": "link",
    "description": "description",
    "pubDate": "pub_date",
}


@dataclass
class RSSItem:
    title: str = ""
    link: str = ""
    description: str = ""
    pub_date: str = ""


@dataclass
class RSSFeed:
    title: str = ""
    link: str = ""
    description: str = ""
    language: str = ""
    items: list[RSSItem] = field(default_factory=list)


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _direct_text(element: ET.Element) -> str:
    """Character data of the element itself, skipping nested elements' text."""
    return (element.text or "") + "".join(child.tail or "" for child in element)


def _read_fields(element: ET.Element, names: dict[str, str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for child in element:
        attr = names.get(_local_name(child.tag))
        if attr is not None:
            values[attr] = _direct_text(child)
    return values


def parse_feed(data: bytes | str) -> RSSFeed:
    """Parse an RSS document; malformed input yields an empty feed."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError:
        return RSSFeed()

    feed = RSSFeed()
    for channel in root:
        if _local_name(channel.tag) != "channel":
            continue
        for attr, value in _read_fields(channel, _CHANNEL_FIELDS).items():
            setattr(feed, attr, value)
        feed.items.extend(
            RSSItem(**_read_fields(item, _ITEM_FIELDS))
            for item in channel
            if _local_name(item.tag) == "item"
        )
    return feed


def fetch_feed(url: str, timeout: float = 10.0) -> RSSFeed:
    """Download ``url`` and parse it as RSS; network failures raise OSError."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            data = response.read()
    except urllib.error.HTTPError as exc:
        try:
            data = exc.read()
        finally:
            exc.close()
    logger.debug("fetched %d bytes from %s", len(data), url)
    return parse_feed(data)