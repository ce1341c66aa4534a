#!/usr/bin/env python3
"""
RSS Publisher for cached summaries.

Renders cached items as an RSS 2.0 document with feedgen. Successful
summaries are HTML-escaped before decoration; failed ones already carry the
original (HTML) description and are decorated as-is.
"""

from datetime import datetime, timezone
from html import escape
from typing import Dict, List, Optional
import re

from feedgen.feed import FeedGenerator

from config import config, get_logger
from errors import ERROR_PREFIX_SUMMARY_FAILED
from models import CachedItem
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("publisher")
init_telemetry("feed-summarizer-publisher")

_BOLD_PATTERN = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def is_error(summary: str) -> bool:
    """Whether a cached summary holds a failure diagnostic instead of a summary."""
    return ERROR_PREFIX_SUMMARY_FAILED in summary


def decorate_html(summary: str) -> str:
    """Turn summary text into HTML (line breaks and ``**bold**``)."""
    if not is_error(summary):
        summary = escape(summary, quote=False).replace("\n", "<br>")
    return _BOLD_PATTERN.sub(r"<b>\1</b>", summary)


def _sanitize_xml_string(text: str) -> str:
    """Remove NULL bytes and control characters that are invalid in XML."""
    if not text:
        return ''
    if isinstance(text, bytes):
        text = text.decode('utf-8', errors='ignore')
    # Keep tab, newline and carriage return
    return ''.join(
        char for char in text
        if char in ('\t', '\n', '\r') or (ord(char) >= 32 and ord(char) != 0x7F)
    )


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


class RSSPublisher:
    """Publishes cached items as an RSS feed.

    Channel metadata defaults to the ``publish:`` section of feeds.yaml.
    """

    def __init__(
        self,
        title: Optional[str] = None,
        link: Optional[str] = None,
        description: Optional[str] = None,
        author: Optional[str] = None,
        email: Optional[str] = None,
    ):
        info: Dict[str, str] = config.PUBLISH_INFO
        self.title = title if title is not None else info["title"]
        self.link = link if link is not None else info["link"]
        self.description = description if description is not None else info["description"]
        self.author = author if author is not None else info["author"]
        self.email = email if email is not None else info["email"]

    def _item_content(self, item: CachedItem) -> str:
        content = decorate_html(item.summary)
        # Failed items already end with the original description
        if not is_error(item.summary):
            if item.comments:
                content += f'<br><br>Comments: <a href="{item.comments}">{item.comments}</a>'
            else:
                content += f'<br><br>GUID: <a href="{item.guid}">{item.guid}</a>'
        return content

    @trace_span(
        "publisher.publish_xml",
        tracer_name="publisher",
        attr_from_args=lambda self, items: {"publish.items": len(items)},
    )
    def publish_xml(self, items: List[CachedItem]) -> bytes:
        """Render ``items`` (newest first) as RSS XML bytes.

        Items that have not been summarized yet (empty summary) are omitted.
        """
        fg = FeedGenerator()
        fg.title(_sanitize_xml_string(self.title) or 'Untitled')
        fg.link(href=_sanitize_xml_string(self.link), rel='alternate')
        fg.description(_sanitize_xml_string(self.description) or ' ')
        if self.author or self.email:
            author = {'name': self.author or self.email}
            if self.email:
                author['email'] = self.email
            fg.author(author)
        fg.generator('Feed Summarizer')
        fg.lastBuildDate(datetime.now(timezone.utc))

        published = [item for item in items if item.summary]
        # feedgen prepends entries, so add oldest first to keep newest first in the output
        for item in reversed(published):
            fe = fg.add_entry()
            fe.guid(_sanitize_xml_string(item.guid), permalink=item.guid.startswith(('http://', 'https://')))
            fe.title(_sanitize_xml_string(item.title) or item.guid)
            if item.link:
                fe.link(href=_sanitize_xml_string(item.link))
            if item.description:
                fe.description(_sanitize_xml_string(item.description))
            fe.content(_sanitize_xml_string(self._item_content(item)), type='html')
            fe.pubDate(_aware(item.created_at))
            fe.updated(_aware(item.updated_at))

        logger.debug(f"Publishing {len(published)} of {len(items)} cached items")
        return fg.rss_str(pretty=True)
