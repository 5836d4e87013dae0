"""RSS 2.0 and Atom feed parsing.

Both formats are read with ElementTree and matched on local tag names, so
namespaced documents (Atom, ``content:encoded``, ``dc:date``) need no
prefix table.  CDATA arrives as plain element text.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlparse
from xml.etree import ElementTree as ET

from src.activity_sync.config_loader import FeedSource
from src.activity_sync.errors import ParseError

logger = logging.getLogger("activity_sync.feeds.parser")

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_IMG_SRC_RE = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_IMAGE_EXT_RE = re.compile(r"\.(?:jpe?g|png|gif|webp)(?:[?#]|$)", re.IGNORECASE)

_SUMMARY_CHARS = 500


@dataclass
class FeedItem:
    """One normalized feed entry.

    Attributes:
        title:        Plain-text title.
        link:         Article URL ('' if the entry has none).
        summary:      Plain-text summary, HTML stripped and entities decoded.
        published_at: UTC publish (or update) time, if the entry has one.
        source:       Link host without ``www.``, else the feed label.
        feed_id:      Catalog id of the feed the item came from.
        categories:   Category / tag labels.
        author:       Byline from author, dc:creator or the Atom author name.
        image_url:    Lead image, if the entry carries one.
    """

    title: str
    link: str
    summary: str = ""
    published_at: datetime | None = None
    source: str = ""
    feed_id: str = ""
    categories: list[str] = field(default_factory=list)
    author: str = ""
    image_url: str | None = None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child(elem: ET.Element, *names: str) -> ET.Element | None:
    for name in names:
        for child in elem:
            if _local(child.tag) == name:
                return child
    return None


def _text(elem: ET.Element, *names: str) -> str:
    child = _child(elem, *names)
    if child is None:
        return ""
    return "".join(child.itertext()).strip()


def clean_text(value: str) -> str:
    """Strip tags, decode entities and collapse whitespace."""
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _WS_RE.sub(" ", text).strip()


def parse_date(value: str) -> datetime | None:
    """Parse an RFC 2822 (RSS) or ISO-8601 (Atom) date to aware UTC."""
    value = (value or "").strip()
    if not value:
        return None
    dt: datetime | None = None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def source_name(link: str, fallback: str) -> str:
    """Host of ``link`` without a leading ``www.``; ``fallback`` if there is none."""
    host = urlparse(link).hostname if link else None
    if not host:
        return fallback
    return host[4:] if host.startswith("www.") else host


def _atom_link(entry: ET.Element) -> str:
    first = ""
    for child in entry:
        if _local(child.tag) != "link":
            continue
        href = child.get("href", "")
        if child.get("rel", "alternate") == "alternate" and href:
            return href
        first = first or href
    return first


def _atom_author(entry: ET.Element) -> str:
    author = _child(entry, "author")
    name = _text(author, "name") if author is not None else ""
    return clean_text(name or _text(entry, "creator"))


def _media_image(elem: ET.Element) -> str:
    # media:content before media:thumbnail, either may sit inside media:group
    for name in ("content", "thumbnail"):
        for node in elem.iter():
            if _local(node.tag) == name and node.get("url"):
                return node.get("url", "").strip()
    return ""


def _enclosure_image(elem: ET.Element) -> str:
    by_extension = ""
    for child in elem:
        tag = _local(child.tag)
        if tag == "enclosure":
            url = child.get("url", "")
        elif tag == "link" and child.get("rel") == "enclosure":
            url = child.get("href", "")
        else:
            continue
        if not url:
            continue
        if child.get("type", "").startswith("image/"):
            return url.strip()
        if not by_extension and _IMAGE_EXT_RE.search(url):
            by_extension = url.strip()
    return by_extension


def _html_image(elem: ET.Element, *names: str) -> str:
    for name in names:
        child = _child(elem, name)
        if child is None:
            continue
        # Atom xhtml content arrives as elements, everything else as text
        for node in child.iter():
            if _local(node.tag) == "img" and node.get("src"):
                return node.get("src", "").strip()
        match = _IMG_SRC_RE.search("".join(child.itertext()))
        if match:
            return html.unescape(match.group(1)).strip()
    return ""


def item_image(elem: ET.Element, *html_fields: str) -> str | None:
    """First image found on an entry.

    Media RSS content, then its thumbnail, then an image enclosure (by MIME
    type, else by file extension), then the first ``<img>`` in the named
    HTML fields.
    """
    return _media_image(elem) or _enclosure_image(elem) or _html_image(elem, *html_fields) or None


def _rss_item(item: ET.Element, feed: FeedSource) -> FeedItem:
    link = _text(item, "link") or _text(item, "guid")
    if not link.startswith("http"):
        link = ""
    summary = _text(item, "description") or _text(item, "encoded")
    return FeedItem(
        title=clean_text(_text(item, "title")),
        link=link,
        summary=clean_text(summary)[:_SUMMARY_CHARS],
        published_at=parse_date(_text(item, "pubDate", "date")),
        source=source_name(link, feed.label),
        feed_id=feed.id,
        categories=[
            clean_text("".join(c.itertext()))
            for c in item
            if _local(c.tag) == "category" and "".join(c.itertext()).strip()
        ],
        author=clean_text(_text(item, "author", "creator")),
        image_url=item_image(item, "encoded", "description"),
    )


def _atom_entry(entry: ET.Element, feed: FeedSource) -> FeedItem:
    link = _atom_link(entry)
    summary = _text(entry, "summary") or _text(entry, "content")
    return FeedItem(
        title=clean_text(_text(entry, "title")),
        link=link,
        summary=clean_text(summary)[:_SUMMARY_CHARS],
        published_at=parse_date(_text(entry, "published", "updated")),
        source=source_name(link, feed.label),
        feed_id=feed.id,
        categories=[
            c.get("term") or c.get("label") or ""
            for c in entry
            if _local(c.tag) == "category" and (c.get("term") or c.get("label"))
        ],
        author=_atom_author(entry),
        image_url=item_image(entry, "content", "summary"),
    )


def parse_feed(document: str | bytes, feed: FeedSource) -> list[FeedItem]:
    """Parse an RSS 2.0 or Atom document.

    Args:
        document: Raw feed body.
        feed:     Catalog entry the document was fetched for.

    Returns:
        Items in document order.  Entries with neither title nor link are
        dropped.

    Raises:
        ParseError: If the body is not well-formed XML or is neither format.
    """
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise ParseError(f"Invalid feed XML for {feed.id}: {exc}", provider="feed") from exc

    kind = _local(root.tag)
    if kind == "feed":
        entries = [_atom_entry(e, feed) for e in root if _local(e.tag) == "entry"]
    elif kind in ("rss", "RDF"):
        channel = _child(root, "channel")
        containers = [root] + ([channel] if channel is not None else [])
        entries = [
            _rss_item(i, feed)
            for container in containers
            for i in container
            if _local(i.tag) == "item"
        ]
    else:
        raise ParseError(f"{feed.id}: unrecognized feed root <{kind}>", provider="feed")

    items = [e for e in entries if e.title or e.link]
    logger.debug("Feed %s: parsed %d items", feed.id, len(items))
    return items


def matches_keywords(item: FeedItem, keywords: list[str]) -> bool:
    """True if any keyword appears (case-insensitive) in title, summary or categories."""
    if not keywords:
        return True
    haystack = " ".join([item.title, item.summary, *item.categories]).lower()
    return any(k.lower() in haystack for k in keywords if k)
