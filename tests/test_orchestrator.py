import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from aiohttp.test_utils import TestClient, TestServer

from config import config
from main import FeedProcessingOrchestrator, create_app
from models import FeedItem, MemoryCache
from utils import REDACTED

SECRET = "AIzaSy-very-secret-key"


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 3, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def make_orchestrator(cache=None):
    llm = SimpleNamespace(api_keys=[SECRET], model="gemini-test")
    return FeedProcessingOrchestrator(cache=cache or MemoryCache(), llm=llm, feed_urls=[])


def feed_item(n):
    return FeedItem(title=f"Title {n}", link=f"https://example.com/{n}", guid=f"guid-{n}", description="desc")


@pytest.mark.asyncio
async def test_list_cached_items_redacts_api_keys():
    orchestrator = make_orchestrator()
    async with orchestrator:
        await orchestrator.cache.save(feed_item(1), "Title", f"leaked {SECRET} in summary")
        items = await orchestrator.list_cached_items()

    assert items[0].summary == f"leaked {REDACTED} in summary"
    # The stored record is untouched
    assert SECRET in (await orchestrator.cache.fetch("guid-1")).summary


@pytest.mark.asyncio
async def test_mark_cached_items_as_read():
    orchestrator = make_orchestrator()
    async with orchestrator:
        await orchestrator.cache.save(feed_item(1), "one", "s")
        await orchestrator.cache.save(feed_item(2), "two", "s")
        items = await orchestrator.list_cached_items()

        assert await orchestrator.mark_cached_items_as_read(items) == 2
        assert await orchestrator.list_cached_items() == []
        assert len(await orchestrator.list_cached_items(include_read=True)) == 2


@pytest.mark.asyncio
async def test_delete_old_cached_items_uses_configured_retention(monkeypatch):
    clock = FakeClock()
    orchestrator = make_orchestrator(MemoryCache(clock=clock))
    monkeypatch.setattr(config, "CACHE_RETENTION_DAYS", 30)
    async with orchestrator:
        await orchestrator.cache.save(feed_item(1), "old", "s")
        clock.now += timedelta(days=31)
        await orchestrator.cache.save(feed_item(2), "new", "s")

        assert await orchestrator.delete_old_cached_items() == 1
        assert [it.guid for it in await orchestrator.list_cached_items()] == ["guid-2"]


@pytest.mark.asyncio
async def test_run_pipeline_without_new_items_does_not_call_the_model():
    orchestrator = make_orchestrator()
    async with orchestrator:
        assert await orchestrator.run_pipeline() is True


@pytest.mark.asyncio
async def test_check_status_reports_cache_counts():
    orchestrator = make_orchestrator()
    async with orchestrator:
        await orchestrator.cache.save(feed_item(1), "t", "s")
        status = await orchestrator.check_status()

    assert status['checks']['cache'] == {'status': 'ok', 'total': 1, 'unread': 1}
    assert status['checks']['llm']['api_keys'] == 1
    # No feeds configured in this orchestrator
    assert status['overall_status'] == 'issues_detected'


@pytest.mark.asyncio
async def test_server_serves_rss_with_cache_headers(monkeypatch):
    monkeypatch.setattr(config, "SERVER_ALLOWED_USER_AGENT", "")
    monkeypatch.setattr(config, "SERVER_MAX_AGE", 60)
    orchestrator = make_orchestrator()
    await orchestrator.cache.save(feed_item(1), "Served", f"summary with {SECRET}")

    client = TestClient(TestServer(create_app(orchestrator)))
    await client.start_server()
    try:
        response = await client.get("/")
        assert response.status == 200
        assert response.headers["Content-Type"].startswith("application/rss+xml")
        assert response.headers["Cache-Control"] == "max-age=60"
        body = await response.read()
    finally:
        await client.close()

    root = ET.fromstring(body)
    assert [it.findtext("title") for it in root.iter("item")] == ["Served"]
    assert SECRET.encode() not in body


@pytest.mark.asyncio
async def test_server_rejects_unwanted_user_agents(monkeypatch):
    monkeypatch.setattr(config, "SERVER_ALLOWED_USER_AGENT", "Feedly/1.0")
    client = TestClient(TestServer(create_app(make_orchestrator())))
    await client.start_server()
    try:
        rejected = await client.get("/", headers={"User-Agent": "curl/8.0"})
        accepted = await client.get("/", headers={"User-Agent": "Feedly/1.0 (+http://www.feedly.com/fetcher.html)"})
        assert rejected.status == 403
        assert accepted.status == 200
    finally:
        await client.close()
