#!/usr/bin/env python3
"""
Feed Processing Orchestrator

Wires the cache, fetcher, summarizer and publisher together:
1. Delete cached items past the retention window
2. Fetch new items from the configured feeds
3. Summarize (and translate) new items, caching every outcome
4. Publish cached summaries as RSS

Modes:
  run     one pipeline pass, then print the unread cached items
  list    print the unread cached items (optionally marking them as read)
  serve   serve the cached items as an RSS feed over HTTP
  cleanup delete cached items past the retention window
  status  show configuration and cache statistics
"""

import asyncio
import sys
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
import argparse

from aiohttp import web

from config import config, get_logger
from errors import BatchError
from fetcher import ContentScrapper, FeedFetcher, ReadabilityScrapper
from llm_client import GeminiClient
from models import CachedItem, Feed, FeedsItemsCache, create_cache
from publisher import RSSPublisher
from summarizer import NewsProcessor
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration, redact_text

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("feed-summarizer-orchestrator")
_tracer = get_tracer("orchestrator")

NO_SUMMARY = "<<< no summary >>>"


class FeedProcessingOrchestrator:
    """Client-facing entry point for fetching, summarizing, caching and publishing.

    Args:
        cache: Cache backend; defaults to the configured one.
        llm: Generative backend; created lazily so that read-only modes
            (list, serve, cleanup) work without API keys.
        feed_urls: Feeds to fetch; defaults to the ``feeds:`` section of feeds.yaml.
        scrapper: Optional scrapper preferred for HTML pages.
    """

    def __init__(
        self,
        cache: Optional[FeedsItemsCache] = None,
        llm: Optional[GeminiClient] = None,
        feed_urls: Optional[List[str]] = None,
        scrapper: Optional[ContentScrapper] = None,
        publisher: Optional[RSSPublisher] = None,
    ) -> None:
        self.cache = cache or create_cache()
        self.feed_urls = list(feed_urls) if feed_urls is not None else list(config.FEED_SOURCES.values())
        self.scrapper = scrapper
        if self.scrapper is None and config.USE_READER_SCRAPPER:
            self.scrapper = ReadabilityScrapper()
        self.publisher = publisher or RSSPublisher()
        self._llm = llm
        self._processor: Optional[NewsProcessor] = None
        self._started = False

    async def start(self) -> None:
        if not self._started:
            await self.cache.start()
            self._started = True

    async def close(self) -> None:
        if self._started:
            await self.cache.close()
            self._started = False

    async def __aenter__(self) -> "FeedProcessingOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def llm(self) -> GeminiClient:
        if self._llm is None:
            self._llm = GeminiClient()
        return self._llm

    @property
    def processor(self) -> NewsProcessor:
        if self._processor is None:
            self._processor = NewsProcessor(self.cache, self.llm)
        return self._processor

    def _api_keys(self) -> List[str]:
        if self._llm is not None:
            return list(self._llm.api_keys)
        return list(config.GOOGLE_AI_API_KEYS)

    async def fetch_feeds(
        self,
        ignore_already_cached: Optional[bool] = None,
        ignore_items_published_before_days: Optional[int] = None,
    ) -> Tuple[List[Feed], Optional[BatchError]]:
        """Fetch the configured feeds, dropping cached and old items."""
        fetcher = FeedFetcher(self.cache, self.feed_urls)
        return await fetcher.fetch_feeds(
            config.IGNORE_ALREADY_CACHED if ignore_already_cached is None else ignore_already_cached,
            config.IGNORE_ITEMS_OLDER_THAN_DAYS
            if ignore_items_published_before_days is None
            else ignore_items_published_before_days,
        )

    async def summarize_and_cache_feeds(
        self,
        feeds: List[Feed],
        scrapper: Optional[ContentScrapper] = None,
    ) -> Optional[BatchError]:
        """Summarize and cache every item of ``feeds`` (see ``NewsProcessor``)."""
        return await self.processor.summarize_and_cache_feeds(feeds, scrapper or self.scrapper)

    async def list_cached_items(self, include_read: bool = False) -> List[CachedItem]:
        """List cached items newest first, with API keys redacted from summaries."""
        keys = self._api_keys()
        items = await self.cache.list_items(include_read)
        return [
            replace(item, summary=redact_text(item.summary, keys)) if item.summary else item
            for item in items
        ]

    async def mark_cached_items_as_read(self, items: List[CachedItem]) -> int:
        marked = 0
        for item in items:
            if await self.cache.mark_as_read(item.guid):
                marked += 1
        return marked

    async def delete_old_cached_items(self) -> int:
        return await self.cache.delete_older_than(timedelta(days=config.CACHE_RETENTION_DAYS))

    def publish_xml(self, items: List[CachedItem]) -> bytes:
        """Render ``items`` as RSS (application/rss+xml)."""
        return self.publisher.publish_xml(items)

    @trace_span("run_pipeline", tracer_name="orchestrator")
    async def run_pipeline(self) -> bool:
        """Run one pass: retention sweep, fetch, summarize and cache.

        Returns:
            True when every feed was fetched and every item summarized.
        """
        logger.info("🚀 Starting feed processing pipeline")
        start_time = time.time()

        deleted = await self.delete_old_cached_items()
        logger.debug(f"Retention sweep removed {deleted} cached items")

        feeds, fetch_error = await self.fetch_feeds()
        if fetch_error:
            logger.warning(f"⚠️ Some feeds failed to fetch:\n{fetch_error}")

        new_items = sum(len(feed.items) for feed in feeds)
        logger.info(f"📡 Fetched {new_items} new item(s) from {len(feeds)} feed(s)")

        summarize_error = None
        if new_items:
            summarize_error = await self.summarize_and_cache_feeds(feeds)
            if summarize_error and summarize_error.retryable:
                logger.warning("⏳ Model overloaded; remaining items will be summarized on the next run")
            elif summarize_error:
                logger.warning(f"⚠️ Summary failed with some errors:\n{summarize_error}")

        elapsed = format_duration(time.time() - start_time)
        ok = fetch_error is None and summarize_error is None
        logger.info(f"{'🎉' if ok else '⚠️'} Pipeline completed in {elapsed}")
        return ok

    async def check_status(self) -> Dict[str, Any]:
        """Report configuration and cache statistics."""
        logger.info("📊 Checking system status")
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'checks': {},
        }

        counter = getattr(self.cache, "count", None)
        if callable(counter):
            counts = await counter()
            status['checks']['cache'] = {'status': 'ok', **counts}
        else:
            status['checks']['cache'] = {'status': 'unknown', 'message': 'Cache does not report counts'}

        status['checks']['feeds'] = {'configured': len(self.feed_urls)}
        status['checks']['llm'] = {'api_keys': len(self._api_keys()), 'model': config.GOOGLE_AI_MODEL}

        all_ok = (
            status['checks']['cache'].get('status') == 'ok'
            and status['checks']['feeds']['configured'] > 0
            and status['checks']['llm']['api_keys'] > 0
        )
        status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
        return status

    def print_status(self, status: Dict[str, Any]) -> None:
        """Print formatted status information."""
        print("\n📊 Feed Processing System Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        cache = status['checks']['cache']
        if cache['status'] == 'ok':
            print(f"\n💾 Cache ({config.CACHE_BACKEND}):")
            print(f"   📰 Items: {cache['total']}")
            print(f"   📬 Unread: {cache['unread']}")
        else:
            print(f"\n💾 Cache: {cache['status'].upper()} - {cache.get('message', 'Unknown error')}")

        print("\n📡 Feeds:")
        print(f"   Configured: {status['checks']['feeds']['configured']}")
        print("\n🧠 Model:")
        print(f"   {status['checks']['llm']['model']} ({status['checks']['llm']['api_keys']} API key(s))")


def print_items(items: List[CachedItem]) -> None:
    for item in items:
        print(
            f"\n>>> Title: {item.title}\n"
            f">>> Date: {item.publish_date}\n\n"
            f">>> Summary:\n\n{item.summary or NO_SUMMARY}\n\n----"
        )


async def run_and_list(orchestrator: FeedProcessingOrchestrator, mark_read: bool, fetch: bool) -> bool:
    """Optionally run the pipeline, then print (and optionally mark) the unread items."""
    ok = True
    async with orchestrator:
        if fetch:
            ok = await orchestrator.run_pipeline()
        items = await orchestrator.list_cached_items(include_read=False)
        print_items(items)
        logger.info(f">>> listed {len(items)} unread item(s).")
        if mark_read:
            marked = await orchestrator.mark_cached_items_as_read(items)
            logger.info(f">>> marked {marked} item(s) as read.")
    return ok


def create_app(orchestrator: FeedProcessingOrchestrator) -> web.Application:
    """Build the aiohttp application serving cached items as RSS."""

    async def handle_feed(request: web.Request) -> web.Response:
        agent = request.headers.get('User-Agent', '')
        if config.SERVER_ALLOWED_USER_AGENT and config.SERVER_ALLOWED_USER_AGENT not in agent:
            logger.warning(f"Dropping access from unwanted agent: {agent}")
            return web.Response(status=403)

        items = await orchestrator.list_cached_items(include_read=True)
        body = orchestrator.publish_xml(items)
        return web.Response(
            body=body,
            content_type='application/rss+xml',
            charset='utf-8',
            headers={'Cache-Control': f"max-age={config.SERVER_MAX_AGE}"},
        )

    async def on_startup(app: web.Application) -> None:
        await orchestrator.start()
        deleted = await orchestrator.delete_old_cached_items()
        logger.info(f"Deleted {deleted} old cached item(s) on startup")

    async def on_cleanup(app: web.Application) -> None:
        await orchestrator.close()

    app = web.Application()
    app.router.add_get('/', handle_feed)
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


async def run_cleanup(orchestrator: FeedProcessingOrchestrator) -> int:
    async with orchestrator:
        return await orchestrator.delete_old_cached_items()


async def run_status(orchestrator: FeedProcessingOrchestrator) -> Dict[str, Any]:
    async with orchestrator:
        status = await orchestrator.check_status()
    orchestrator.print_status(status)
    return status


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Processing Orchestrator')
    parser.add_argument('mode', choices=['run', 'list', 'serve', 'cleanup', 'status'],
                        help='Operation mode')
    parser.add_argument('--mark-read', action='store_true',
                        help='Mark listed items as read (run/list modes)')
    parser.add_argument('--host', type=str, default=None,
                        help='Host to bind in serve mode')
    parser.add_argument('--port', type=int, default=None,
                        help='Port to listen on in serve mode')

    args = parser.parse_args()

    orchestrator = FeedProcessingOrchestrator()

    try:
        if args.mode == 'run':
            success = asyncio.run(run_and_list(orchestrator, mark_read=args.mark_read, fetch=True))
            sys.exit(0 if success else 1)

        elif args.mode == 'list':
            asyncio.run(run_and_list(orchestrator, mark_read=args.mark_read, fetch=False))

        elif args.mode == 'serve':
            web.run_app(
                create_app(orchestrator),
                host=args.host or config.SERVER_HOST,
                port=args.port or config.SERVER_PORT,
            )

        elif args.mode == 'cleanup':
            deleted = asyncio.run(run_cleanup(orchestrator))
            logger.info(f"🧹 Deleted {deleted} cached item(s) older than {config.CACHE_RETENTION_DAYS} days")

        elif args.mode == 'status':
            asyncio.run(run_status(orchestrator))

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except ValueError as e:
        # e.g. missing API keys
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
