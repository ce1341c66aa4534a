#!/usr/bin/env python3
"""
Feed and content fetching.

- ``FeedFetcher`` downloads the configured feeds, parses them with feedparser
  and drops items that are already cached or published too long ago.
- ``ContentFetcher`` resolves an item URL into prompt-ready text (HTML, plain
  text, JSON) or raw file bytes (PDF).
- ``ReadabilityScrapper`` is the optional content scrapper, extracting the main
  article of an HTML page with readability and converting it to Markdown.
"""

import calendar
import json
from asyncio import TimeoutError, get_running_loop
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import partial
from hashlib import md5
from typing import Any, AsyncIterator, Dict, List, NamedTuple, Optional, Protocol, Tuple

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
from readability import Document

from config import config, get_logger
from errors import BatchError, FetchError
from models import Feed, FeedItem, FeedsItemsCache
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper, clean_html_to_markdown, remove_consecutive_empty_lines, validate_url

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("feed-summarizer-fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK = 200

URL_TO_TEXT_FORMAT = '<link url="{url}" content-type="{content_type}">\n{content}\n</link>'


def format_url_content(url: str, content_type: str, content: str) -> str:
    """Wrap fetched text in the delimiter block used in prompts."""
    return URL_TO_TEXT_FORMAT.format(url=url, content_type=content_type, content=content)


def is_text_formattable_content(content_type: str) -> bool:
    return content_type.startswith("text/") or content_type.startswith("application/json")


def is_file_content(content_type: str) -> bool:
    return content_type.startswith("application/pdf")


def is_html_content(content_type: str) -> bool:
    return content_type.startswith("text/html")


def extract_html_text(html: str) -> str:
    """Visible text of an HTML document, without scripts and stylesheets."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.select('script, style, link[rel~="stylesheet"]'):
        tag.decompose()
    return remove_consecutive_empty_lines(soup.get_text())


def _describe_client_error(error: Exception) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None and getattr(os_error, 'strerror', None):
        parts.append(str(os_error.strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FetchedContent(NamedTuple):
    content: bytes
    content_type: str


class ContentScrapper(Protocol):
    """Anything that can extract page text for a list of URLs, keyed by URL."""

    async def crawl_urls(self, urls: List[str]) -> Dict[str, str]: ...


class _SessionOwner:
    """Reuse an injected aiohttp session, or open a short-lived one per call."""

    def __init__(self, session: Optional[ClientSession] = None):
        self.session = session

    @asynccontextmanager
    async def _client_session(self) -> AsyncIterator[ClientSession]:
        if self.session is not None:
            yield self.session
        else:
            async with ClientSession() as session:
                yield session


class ContentFetcher(_SessionOwner):
    """Resolve item URLs into content suitable for summarization."""

    def __init__(self, session: Optional[ClientSession] = None, user_agent: Optional[str] = None, timeout: Optional[int] = None):
        super().__init__(session)
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = ClientTimeout(total=timeout or config.FETCH_URL_TIMEOUT)

    @trace_span("fetcher.content_type", tracer_name="fetcher", attr_from_args=lambda self, url: {"http.url": url})
    async def get_content_type(self, url: str) -> str:
        """Probe the content type with a HEAD request; failures yield an empty string."""
        logger.debug(f"Fetching head from url: {url}")
        try:
            async with self._client_session() as session:
                async with session.head(url, timeout=self.timeout, allow_redirects=True) as response:
                    return response.headers.get('Content-Type', '')
        except (ClientError, TimeoutError, ValueError) as e:
            logger.debug(f"Failed to fetch head from url {url}: {e}")
            return ""

    @trace_span("fetcher.url_content", tracer_name="fetcher", attr_from_args=lambda self, url: {"http.url": url})
    async def fetch_url_content(self, url: str) -> FetchedContent:
        """Fetch ``url`` and convert it for prompting.

        Text-like responses come back wrapped in the ``<link>`` block; PDF
        responses come back as raw bytes.

        Raises:
            FetchError: on transport errors, non-200 statuses and unsupported
                content types. The error carries a wrapped diagnostic payload.
        """
        logger.debug(f"Fetching contents from url: {url}")
        try:
            async with self._client_session() as session:
                async with session.get(url, headers={'User-Agent': self.user_agent}, timeout=self.timeout) as response:
                    content_type = response.headers.get('Content-Type', '')
                    logger.debug(f"Fetched '{content_type}' from url: {url}")

                    if response.status != HTTP_OK:
                        raise FetchError(
                            f"http error {response.status} from url: {url}",
                            self._diagnostic(url, content_type, f"HTTP Error {response.status}"),
                            content_type,
                        )

                    if is_text_formattable_content(content_type):
                        body = await response.text(errors='replace')
                        if is_html_content(content_type):
                            text = extract_html_text(body)
                        elif content_type.startswith("text/"):
                            text = remove_consecutive_empty_lines(body)
                        else:
                            text = body
                        return FetchedContent(format_url_content(url, content_type, text).encode('utf-8'), content_type)

                    if is_file_content(content_type):
                        return FetchedContent(await response.read(), content_type)

                    raise FetchError(
                        f"content type '{content_type}' not supported for url: {url}",
                        self._diagnostic(url, content_type, f"Content type '{content_type}' not supported."),
                        content_type,
                    )
        except (ClientError, TimeoutError, ValueError) as e:
            detail = _describe_client_error(e)
            raise FetchError(
                f"failed to fetch contents from url {url}: {detail}",
                self._diagnostic(url, "", f"Failed to fetch this document: {detail}"),
            ) from e

    def _diagnostic(self, url: str, content_type: str, message: str) -> bytes:
        return format_url_content(url, content_type, message).encode('utf-8')


class ReadabilityScrapper(_SessionOwner):
    """Content scrapper that keeps only the main article of an HTML page."""

    def __init__(self, session: Optional[ClientSession] = None, user_agent: Optional[str] = None, timeout: Optional[int] = None):
        super().__init__(session)
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = ClientTimeout(total=timeout or config.FETCH_URL_TIMEOUT)

    async def crawl_urls(self, urls: List[str]) -> Dict[str, str]:
        """Return article Markdown keyed by URL.

        Raises:
            FetchError: when any of the URLs cannot be crawled.
        """
        crawled: Dict[str, str] = {}
        async with self._client_session() as session:
            for url in urls:
                crawled[url] = await self._crawl(session, url)
        return crawled

    async def _crawl(self, session: ClientSession, url: str) -> str:
        logger.debug(f"Scrapping content from: {url}")
        try:
            async with session.get(url, headers={'User-Agent': self.user_agent}, timeout=self.timeout) as response:
                if response.status != HTTP_OK:
                    raise FetchError(f"http error {response.status} while scrapping url: {url}")
                html = await response.text(errors='replace')
        except (ClientError, TimeoutError, ValueError) as e:
            raise FetchError(f"failed to scrap url {url}: {_describe_client_error(e)}") from e

        # readability parsing is CPU-bound
        article = await get_running_loop().run_in_executor(None, partial(self._parse_with_readability, html, url))
        markdown = clean_html_to_markdown(article, base_url=url).strip() if article else ""
        if not markdown:
            raise FetchError(f"no readable content scrapped from url: {url}")
        return markdown

    def _parse_with_readability(self, html_content: str, url: str) -> Optional[str]:
        """Parse HTML content with readability (runs in executor)."""
        try:
            return Document(html_content).summary()
        except (ValueError, TypeError) as e:
            logger.warning(f"Error in readability parsing for {url}: {e}")
            return None


def _entry_value(entry: Any, field: str) -> Any:
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(field)
    return getattr(entry, field, None)


def entry_published(entry: Any) -> Optional[datetime]:
    """Publication (or update) date of a feedparser entry as an aware UTC datetime."""
    for field in ('published_parsed', 'updated_parsed', 'created_parsed'):
        value = _entry_value(entry, field)
        if value:
            try:
                return datetime.fromtimestamp(calendar.timegm(tuple(value)), tz=timezone.utc)
            except (OverflowError, ValueError, TypeError, OSError):
                continue
    return None


def entry_guid(entry: Any) -> str:
    """Extract or derive a stable GUID for an entry."""
    guid = _entry_value(entry, 'id')
    if guid:
        return str(guid)
    link = _entry_value(entry, 'link')
    if link:
        return str(link)
    title = _entry_value(entry, 'title') or ''
    published = _entry_value(entry, 'published') or _entry_value(entry, 'updated') or ''
    return md5(f"{title}{published}".encode('utf-8')).hexdigest()


def entry_description(entry: Any) -> str:
    description = _entry_value(entry, 'summary') or _entry_value(entry, 'description')
    if description:
        return str(description)
    for content in _entry_value(entry, 'content') or []:
        value = content.get('value') if hasattr(content, 'get') else None
        if value:
            return str(value)
    return ""


def feed_item_from_entry(entry: Any) -> FeedItem:
    return FeedItem(
        title=str(_entry_value(entry, 'title') or ''),
        link=str(_entry_value(entry, 'link') or ''),
        guid=entry_guid(entry),
        description=entry_description(entry),
        author=str(_entry_value(entry, 'author') or ''),
        published=entry_published(entry),
        comments=str(_entry_value(entry, 'comments') or ''),
    )


def _json_feed_published(item: Dict[str, Any]) -> Optional[datetime]:
    for field in ('date_published', 'date_modified'):
        value = item.get(field)
        if value:
            try:
                published = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
            except ValueError:
                continue
            return published if published.tzinfo else published.replace(tzinfo=timezone.utc)
    return None


def _parse_json_feed(document: Dict[str, Any], url: str) -> Feed:
    """Build a Feed from a JSON Feed (jsonfeed.org) document."""
    items: List[FeedItem] = []
    for item in document.get('items') or []:
        if not isinstance(item, dict):
            continue
        link = str(item.get('url') or item.get('external_url') or '')
        authors = item.get('authors') or ([item['author']] if isinstance(item.get('author'), dict) else [])
        author = next((str(a.get('name')) for a in authors if isinstance(a, dict) and a.get('name')), '')
        items.append(FeedItem(
            title=str(item.get('title') or ''),
            link=link,
            guid=str(item.get('id') or link),
            description=str(item.get('content_html') or item.get('content_text') or item.get('summary') or ''),
            author=author,
            published=_json_feed_published(item),
        ))
    return Feed(title=str(document.get('title') or url), url=url, items=items)


def _load_json_feed(content: bytes) -> Optional[Dict[str, Any]]:
    stripped = content.lstrip()
    if not stripped.startswith(b'{'):
        return None
    try:
        document = json.loads(stripped)
    except ValueError:
        return None
    if isinstance(document, dict) and 'jsonfeed.org' in str(document.get('version', '')):
        return document
    return None


def parse_feed(content: bytes, url: str) -> Feed:
    """Parse an RSS/Atom/JSON feed document.

    feedparser handles RSS and Atom; JSON Feed documents are read directly.

    Raises:
        ValueError: when the document cannot be made sense of.
    """
    json_feed = _load_json_feed(content)
    if json_feed is not None:
        return _parse_json_feed(json_feed, url)

    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise ValueError(f"failed to parse feeds from '{url}': {parsed.get('bozo_exception')}")
    title = parsed.feed.get('title', '') if parsed.feed else ''
    return Feed(title=title or url, url=url, items=[feed_item_from_entry(e) for e in parsed.entries])


class FeedFetcher(_SessionOwner):
    """Fetch configured feeds and reconcile their items against the cache."""

    def __init__(self, cache: FeedsItemsCache, feed_urls: Optional[List[str]] = None, session: Optional[ClientSession] = None, clock=None):
        super().__init__(session)
        self.cache = cache
        self.feed_urls = list(feed_urls) if feed_urls is not None else list(config.FEED_SOURCES.values())
        self.retry_helper = RetryHelper(max_retries=config.FETCH_MAX_RETRIES, base_delay=config.FETCH_RETRY_DELAY_BASE)
        self.timeout = ClientTimeout(total=config.FEED_FETCH_TIMEOUT)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @trace_span(
        "fetcher.fetch_feeds",
        tracer_name="fetcher",
        attr_from_args=lambda self, ignore_already_cached=True, ignore_items_published_before_days=7: {
            "feeds.count": len(self.feed_urls),
            "feeds.ignore_already_cached": bool(ignore_already_cached),
            "feeds.ignore_before_days": int(ignore_items_published_before_days),
        },
    )
    async def fetch_feeds(
        self,
        ignore_already_cached: bool = True,
        ignore_items_published_before_days: int = 7,
    ) -> Tuple[List[Feed], Optional[BatchError]]:
        """Fetch every configured feed and filter its items.

        Returns:
            The successfully fetched feeds (with filtered items) and a
            ``BatchError`` aggregating per-feed failures, or None.
        """
        feeds: List[Feed] = []
        errors: List[str] = []

        async with self._client_session() as session:
            for url in self.feed_urls:
                if not validate_url(url):
                    errors.append(f"invalid feed url: '{url}'")
                    continue
                logger.info(f"Fetching feeds from url: {url}")
                try:
                    content = await self._fetch_feed_content(session, url)
                    feed = await get_running_loop().run_in_executor(None, parse_feed, content, url)
                except (FetchError, ValueError) as e:
                    logger.error(str(e))
                    errors.append(str(e))
                    continue

                logger.debug(f"Fetched {len(feed.items)} item(s) from {url}")
                feed.items = await self.filter_items(
                    feed.items, ignore_already_cached, ignore_items_published_before_days
                )
                logger.info(f"Returning {len(feed.items)} item(s) from {url}")
                feeds.append(feed)

        return feeds, (BatchError(errors) if errors else None)

    async def filter_items(
        self,
        items: List[FeedItem],
        ignore_already_cached: bool,
        ignore_items_published_before_days: int,
    ) -> List[FeedItem]:
        """Drop cached items (optionally) and items published strictly before the cutoff.

        Items without a publication date are kept.
        """
        kept: List[FeedItem] = []
        cutoff = self._clock() - timedelta(days=ignore_items_published_before_days)
        for item in items:
            if ignore_already_cached and await self.cache.exists(item.guid):
                logger.debug(f"Ignoring already cached item: '{item.title}' ({item.guid})")
                continue
            if item.published is not None and item.published < cutoff:
                logger.debug(
                    f"Ignoring item older than {ignore_items_published_before_days} days: '{item.title}' ({item.guid})"
                )
                continue
            kept.append(item)
        return kept

    async def _fetch_feed_content(self, session: ClientSession, url: str) -> bytes:
        """Download a feed document, retrying network errors with backoff."""
        last_error = ""
        for attempt in range(self.retry_helper.max_retries + 1):
            try:
                async with session.get(
                    url,
                    headers={'User-Agent': config.USER_AGENT},
                    timeout=self.timeout,
                ) as response:
                    if response.status != HTTP_OK:
                        raise FetchError(f"http error {response.status} from url: '{url}'")
                    return await response.read()
            except (ClientError, TimeoutError) as e:
                last_error = _describe_client_error(e)
                if attempt < self.retry_helper.max_retries:
                    logger.warning(
                        "Retry %d/%d for %s due to error: %s",
                        attempt + 1,
                        self.retry_helper.max_retries,
                        url,
                        last_error,
                    )
                    await self.retry_helper.sleep_for_attempt(attempt)
        raise FetchError(f"failed to fetch feeds from url '{url}': {last_error}")
