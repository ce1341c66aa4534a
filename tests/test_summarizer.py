from datetime import datetime, timezone

import pytest

import summarizer
from errors import ERROR_PREFIX_SUMMARY_FAILED, ErrorKind, FetchError, GenerationError
from fetcher import FetchedContent, format_url_content
from models import Feed, FeedItem, MemoryCache
from summarizer import SUMMARIZED_CONTENT_EMPTY, DEFAULT_PROMPTS, NewsProcessor, load_prompts

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeLLM:
    """Records calls; ``outcomes`` maps item links to results or exceptions."""

    model = "gemini-test"

    def __init__(self, outcomes=None, default=("Translated", "A fine summary")):
        self.outcomes = outcomes or {}
        self.default = default
        self.calls = []

    def _outcome(self, key):
        outcome = self.outcomes.get(key, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def translate_and_summarize(self, prompt, files=(), system_instruction=None):
        self.calls.append(("structured", prompt, list(files), system_instruction))
        for key in self.outcomes:
            if key in prompt:
                return self._outcome(key)
        return self._outcome(None)

    async def translate_and_summarize_video(self, prompt, video_url, system_instruction=None):
        self.calls.append(("video", prompt, video_url, system_instruction))
        return self._outcome(video_url)

    async def summarize_url(self, prompt, system_instruction=None):
        self.calls.append(("url", prompt, None, system_instruction))
        for key in self.outcomes:
            if key in prompt:
                return self._outcome(key)
        return "Summary read by the backend"


class FakeContentFetcher:
    def __init__(self, content_type="text/html", failures=0, payload=None):
        self.content_type = content_type
        self.failures = failures
        self.payload = payload
        self.calls = 0

    async def get_content_type(self, url):
        return self.content_type

    async def fetch_url_content(self, url):
        self.calls += 1
        if self.calls <= self.failures:
            raise FetchError(f"plain fetch failed for {url}")
        if self.payload is not None:
            return FetchedContent(self.payload, self.content_type)
        return FetchedContent(format_url_content(url, self.content_type, "page text").encode("utf-8"), self.content_type)


class FakeScrapper:
    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    async def crawl_urls(self, urls):
        self.calls += 1
        if self.calls <= self.failures:
            raise FetchError("scrapper failed")
        return {url: "scrapped markdown" for url in urls}


def make_processor(llm=None, fetcher=None, cache=None, **kwargs):
    kwargs.setdefault("summarize_interval_seconds", 0)
    kwargs.setdefault("summarize_timeout_seconds", 5)
    kwargs.setdefault("max_fetch_retries", 2)
    kwargs.setdefault("fetch_retry_delay", 0)
    return NewsProcessor(
        cache or MemoryCache(),
        llm or FakeLLM(),
        fetcher or FakeContentFetcher(),
        desired_language="Korean",
        prompts=dict(DEFAULT_PROMPTS),
        clock=lambda: FIXED_NOW,
        **kwargs,
    )


def item(n, link=None):
    return FeedItem(
        title=f"Title {n}",
        link=link or f"https://example.com/{n}",
        guid=f"guid-{n}",
        description=f"<p>Original description {n}</p>",
    )


def test_load_prompts_falls_back_per_key(tmp_path):
    prompt_file = tmp_path / "prompt.yaml"
    prompt_file.write_text("summarize_url: 'Custom {url} in {language}'\n", encoding="utf-8")

    prompts = load_prompts(str(prompt_file))

    assert prompts["summarize_url"] == "Custom {url} in {language}"
    assert prompts["system_instruction"] == DEFAULT_PROMPTS["system_instruction"]


def test_load_prompts_missing_file_uses_defaults(tmp_path):
    assert load_prompts(str(tmp_path / "missing.yaml")) == DEFAULT_PROMPTS


def test_system_instruction_carries_the_current_datetime():
    processor = make_processor()
    instruction = processor._system_instruction()
    assert "2025-03-10 12:00:00 (Mon) UTC" in instruction
    assert "- Be as truthful as possible." in instruction


@pytest.mark.asyncio
async def test_text_content_is_inlined_in_the_prompt():
    llm = FakeLLM()
    processor = make_processor(llm=llm)

    result = await processor.summarize("Title 1", "https://example.com/1")

    assert result.success
    assert (result.title, result.summary) == ("Translated", "A fine summary")
    kind, prompt, files, instruction = llm.calls[0]
    assert kind == "structured"
    assert '<link url="https://example.com/1" content-type="text/html">' in prompt
    assert "Korean" in prompt
    assert files == []
    assert "Current datetime is" in instruction


@pytest.mark.asyncio
async def test_fetch_chain_uses_scrapper_twice_then_plain_fetch():
    scrapper = FakeScrapper(failures=2)
    fetcher = FakeContentFetcher()
    processor = make_processor(fetcher=fetcher, max_fetch_retries=2)

    fetched = await processor._fetch("https://example.com/1", scrapper)

    assert scrapper.calls == 2
    assert fetcher.calls == 1
    assert b"page text" in fetched.content


@pytest.mark.asyncio
async def test_scrapper_output_is_wrapped_like_fetched_text():
    processor = make_processor()

    fetched = await processor._fetch("https://example.com/1", FakeScrapper())

    assert fetched.content.decode("utf-8") == format_url_content(
        "https://example.com/1", "text/html", "scrapped markdown"
    )


@pytest.mark.asyncio
async def test_scrapper_is_skipped_for_non_html_content():
    scrapper = FakeScrapper()
    fetcher = FakeContentFetcher(content_type="application/pdf", payload=b"%PDF")
    processor = make_processor(fetcher=fetcher)

    fetched = await processor._fetch("https://example.com/paper.pdf", scrapper)

    assert scrapper.calls == 0
    assert fetched.content == b"%PDF"


@pytest.mark.asyncio
async def test_plain_fetch_is_retried_until_the_budget_is_spent():
    fetcher = FakeContentFetcher(failures=3)
    processor = make_processor(fetcher=fetcher, max_fetch_retries=2)

    with pytest.raises(FetchError):
        await processor._fetch("https://example.com/1")
    assert fetcher.calls == 3


@pytest.mark.asyncio
async def test_pdf_is_attached_as_a_file():
    llm = FakeLLM()
    fetcher = FakeContentFetcher(content_type="application/pdf; qs=0.9", payload=b"%PDF-1.4")
    processor = make_processor(llm=llm, fetcher=fetcher)

    result = await processor.summarize("Paper", "https://example.com/paper.pdf")

    assert result.success
    kind, prompt, files, _ = llm.calls[0]
    assert files == [(b"%PDF-1.4", "application/pdf")]
    assert "attached file" in prompt


@pytest.mark.asyncio
async def test_unsupported_fetched_type_fails_the_item():
    fetcher = FakeContentFetcher(content_type="image/png", payload=b"\x89PNG")
    processor = make_processor(fetcher=fetcher)

    result = await processor.summarize("Image", "https://example.com/image.png")

    assert not result.success
    assert result.kind is ErrorKind.TERMINAL
    assert result.summary.startswith(f"{ERROR_PREFIX_SUMMARY_FAILED}: ")


@pytest.mark.asyncio
async def test_fetch_failure_falls_back_to_url_context_and_keeps_title():
    llm = FakeLLM()
    fetcher = FakeContentFetcher(failures=10)
    processor = make_processor(llm=llm, fetcher=fetcher)

    result = await processor.summarize("Original title", "https://example.com/1")

    assert result.success
    assert result.title == "Original title"
    assert result.summary == "Summary read by the backend"
    assert llm.calls[-1][0] == "url"
    assert "<link>https://example.com/1</link>" in llm.calls[-1][1]


@pytest.mark.asyncio
async def test_youtube_links_are_normalized_and_summarized_as_video():
    llm = FakeLLM()
    fetcher = FakeContentFetcher()
    processor = make_processor(llm=llm, fetcher=fetcher)

    result = await processor.summarize("A video", "https://youtu.be/dQw4w9WgXcQ?t=42")

    assert result.success
    assert llm.calls[0][0] == "video"
    assert llm.calls[0][2] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert fetcher.calls == 0


@pytest.mark.asyncio
async def test_empty_fields_get_placeholders():
    llm = FakeLLM(default=("", "   "))
    processor = make_processor(llm=llm)

    result = await processor.summarize("Original", "https://example.com/1")

    assert result.title == "Original"
    assert result.summary == SUMMARIZED_CONTENT_EMPTY


@pytest.mark.asyncio
async def test_successful_items_are_cached_with_provenance():
    cache = MemoryCache()
    processor = make_processor(cache=cache)

    error = await processor.summarize_and_cache_feeds([Feed("feed", "https://example.com/rss", [item(1)])])

    assert error is None
    cached = await cache.fetch("guid-1")
    assert cached.title == "Translated"
    assert cached.summary == (
        "A fine summary\n\n(summarized with **gemini-test**, 2025-03-10 12:00:00 (Mon) UTC)"
    )


@pytest.mark.asyncio
async def test_failed_items_are_cached_with_diagnostic_and_description():
    cache = MemoryCache()
    llm = FakeLLM(outcomes={"example.com/2": GenerationError("googleapi error 400: bad", ErrorKind.TERMINAL)})
    processor = make_processor(llm=llm, cache=cache)
    feeds = [Feed("feed", "https://example.com/rss", [item(1), item(2), item(3)])]

    error = await processor.summarize_and_cache_feeds(feeds)

    assert error is not None
    assert not error.retryable
    assert len(error.errors) == 1
    assert "failed to summarize item 'Title 2' (https://example.com/2)" in error.errors[0]

    failed = await cache.fetch("guid-2")
    assert failed.title == "Title 2"
    assert failed.summary == (
        f"{ERROR_PREFIX_SUMMARY_FAILED}: googleapi error 400: bad\n\n<p>Original description 2</p>"
    )
    assert (await cache.fetch("guid-1")).summary.startswith("A fine summary")
    assert (await cache.fetch("guid-3")).summary.startswith("A fine summary")


@pytest.mark.asyncio
async def test_overload_aborts_the_batch_without_caching_the_item():
    cache = MemoryCache()
    llm = FakeLLM(outcomes={"example.com/2": GenerationError("googleapi error 503: overloaded", ErrorKind.OVERLOADED)})
    processor = make_processor(llm=llm, cache=cache)
    feeds = [
        Feed("first", "https://example.com/rss", [item(1), item(2), item(3)]),
        Feed("second", "https://example.com/other", [item(4)]),
    ]

    error = await processor.summarize_and_cache_feeds(feeds)

    assert error is not None
    assert error.retryable
    assert await cache.exists("guid-1")
    assert not await cache.exists("guid-2")
    assert not await cache.exists("guid-3")
    assert not await cache.exists("guid-4")


@pytest.mark.asyncio
async def test_url_context_failure_after_fetch_failure_is_cached_with_both_errors():
    cache = MemoryCache()
    llm = FakeLLM(outcomes={"example.com/1": GenerationError("googleapi error 400: bad", ErrorKind.TERMINAL)})
    processor = make_processor(llm=llm, fetcher=FakeContentFetcher(failures=100), cache=cache)

    error = await processor.summarize_and_cache_feeds([Feed("feed", "https://example.com/rss", [item(1)])])

    assert error is not None
    assert not error.retryable
    assert llm.calls[-1][0] == "url"
    failed = await cache.fetch("guid-1")
    assert failed.title == "Title 1"
    assert failed.summary == (
        f"{ERROR_PREFIX_SUMMARY_FAILED}: googleapi error 400: bad "
        "(after fetch failure: plain fetch failed for https://example.com/1)"
        "\n\n<p>Original description 1</p>"
    )


@pytest.mark.asyncio
async def test_overload_from_url_context_aborts_the_batch():
    cache = MemoryCache()
    llm = FakeLLM(outcomes={"example.com/2": GenerationError("googleapi error 503: overloaded", ErrorKind.OVERLOADED)})
    processor = make_processor(llm=llm, fetcher=FakeContentFetcher(failures=100), cache=cache)

    error = await processor.summarize_and_cache_feeds(
        [Feed("feed", "https://example.com/rss", [item(1), item(2), item(3)])]
    )

    assert error is not None
    assert error.retryable
    assert (await cache.fetch("guid-1")).summary.startswith("Summary read by the backend")
    assert not await cache.exists("guid-2")
    assert not await cache.exists("guid-3")
    assert [kind for kind, *_ in llm.calls] == ["url", "url"]


@pytest.mark.asyncio
async def test_unexpected_exceptions_become_failures():
    cache = MemoryCache()
    llm = FakeLLM(outcomes={"example.com/1": RuntimeError("connection reset")})
    processor = make_processor(llm=llm, cache=cache)

    error = await processor.summarize_and_cache_feeds([Feed("feed", "https://example.com/rss", [item(1)])])

    assert error is not None
    assert "connection reset" in (await cache.fetch("guid-1")).summary


@pytest.mark.asyncio
async def test_sleeps_between_items_but_not_after_the_last(monkeypatch):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    monkeypatch.setattr(summarizer, "sleep", fake_sleep)
    processor = make_processor(summarize_interval_seconds=7)
    feeds = [
        Feed("first", "https://example.com/rss", [item(1), item(2), item(3)]),
        Feed("second", "https://example.com/other", [item(4), item(5)]),
    ]

    await processor.summarize_and_cache_feeds(feeds)

    assert slept == [7, 7, 7]
