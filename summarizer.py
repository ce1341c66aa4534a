#!/usr/bin/env python3
"""
AI-powered summarizer for RSS feed items.

``NewsProcessor.summarize`` decides how to obtain an item's content (video,
fetched text/file, or URL context as a last resort) and asks Gemini for a
translated title and summary. ``NewsProcessor.summarize_and_cache_feeds``
walks fetched feeds item by item, caches every outcome (failures included)
and stops early when the model is overloaded.
"""

from asyncio import TimeoutError, sleep, wait_for
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

import yaml

from config import config, get_logger
from errors import (
    ERROR_PREFIX_SUMMARY_FAILED,
    BatchError,
    ErrorKind,
    FetchError,
    GenerationError,
    error_string,
)
from fetcher import (
    ContentFetcher,
    ContentScrapper,
    FetchedContent,
    format_url_content,
    is_file_content,
    is_html_content,
    is_text_formattable_content,
)
from llm_client import GeminiClient
from models import Feed, FeedItem, FeedsItemsCache
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper, is_youtube_url, normalize_youtube_url, truncate_string

# Module-specific logger
logger = get_logger("summarizer")
init_telemetry("feed-summarizer-summarizer")
_tracer = get_tracer("summarizer")

SUMMARIZED_CONTENT_EMPTY = "(The summarized content was empty.)"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S (%a) %Z"

DEFAULT_PROMPTS: Dict[str, str] = {
    "system_instruction": (
        "You are a chat bot for summarizing contents retrieved from web sites or RSS feeds.\n\n"
        "Current datetime is {datetime}.\n\n"
        "Respond to user messages according to the following principles:\n"
        "- Do not repeat the user's request.\n"
        "- Be as accurate as possible.\n"
        "- Be as truthful as possible.\n"
        "- Be as comprehensive and informative as possible.\n"
    ),
    "summarize_content": (
        "Translate the following title into {language}, and summarize the content of the following "
        "<link></link> tag in {language} language.\n"
        "Call the provided function with the translated title and the summarized content.\n\n"
        "Title: {title}\n\n{content}\n"
    ),
    "summarize_file": (
        "Translate the title \"{title}\" into {language}, and summarize the content of the attached "
        "file(s) in {language} language.\n"
        "Call the provided function with the translated title and the summarized content.\n"
    ),
    "summarize_url": "Summarize the content of following <link></link> tag in {language} language:\n\n<link>{url}</link>\n",
    "summarize_video": (
        "Translate the title \"{title}\" into {language}, and summarize the attached video in "
        "{language} language.\n"
        "Call the provided function with the translated title and the summarized content.\n"
    ),
}


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, str]:
    """Load prompts from prompt.yaml, falling back to the built-in templates per key."""
    prompt_path = prompt_path or config.PROMPT_CONFIG_PATH
    prompts = dict(DEFAULT_PROMPTS)
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Prompt configuration file not found at {prompt_path}; using built-in prompts")
        return prompts
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error reading prompt configuration file {prompt_path}: {e}")
        return prompts

    if not isinstance(loaded, dict):
        logger.error(f"Prompt configuration file {prompt_path} must be a mapping")
        return prompts
    for key, value in loaded.items():
        if key in prompts and isinstance(value, str) and value.strip():
            prompts[key] = value
    return prompts


@dataclass
class GenerationResult:
    """Outcome of summarizing one item; on failure ``summary`` holds the diagnostic text."""

    title: str
    summary: str
    success: bool
    error: Optional[Exception] = None

    @property
    def kind(self) -> Optional[ErrorKind]:
        if self.error is None:
            return None
        return getattr(self.error, "kind", ErrorKind.TERMINAL)


def failed_result(title: str, err: Exception) -> GenerationResult:
    return GenerationResult(
        title=title,
        summary=f"{ERROR_PREFIX_SUMMARY_FAILED}: {error_string(err)}",
        success=False,
        error=err,
    )


class NewsProcessor:
    """Summarizes feed items with Gemini and caches the results."""

    def __init__(
        self,
        cache: FeedsItemsCache,
        llm: GeminiClient,
        content_fetcher: Optional[ContentFetcher] = None,
        *,
        desired_language: Optional[str] = None,
        summarize_interval_seconds: Optional[float] = None,
        summarize_timeout_seconds: Optional[float] = None,
        max_fetch_retries: Optional[int] = None,
        fetch_retry_delay: Optional[float] = None,
        prompts: Optional[Dict[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache = cache
        self.llm = llm
        self.content_fetcher = content_fetcher or ContentFetcher()
        self.desired_language = desired_language or config.DESIRED_LANGUAGE
        self.summarize_interval_seconds = (
            config.SUMMARIZE_INTERVAL_SECONDS if summarize_interval_seconds is None else summarize_interval_seconds
        )
        self.summarize_timeout_seconds = summarize_timeout_seconds or config.SUMMARIZE_TIMEOUT_SECONDS
        self.max_fetch_retries = config.FETCH_MAX_RETRIES if max_fetch_retries is None else max_fetch_retries
        self.retry_helper = RetryHelper(
            max_retries=self.max_fetch_retries,
            base_delay=config.FETCH_RETRY_DELAY_BASE if fetch_retry_delay is None else fetch_retry_delay,
        )
        self.prompts = prompts if prompts is not None else load_prompts()
        self._clock = clock or (lambda: datetime.now().astimezone())

    def _prompt(self, name: str, **values) -> str:
        template = self.prompts.get(name) or DEFAULT_PROMPTS[name]
        return template.format(language=self.desired_language, **values)

    def _system_instruction(self) -> str:
        return self._prompt("system_instruction", datetime=self._clock().strftime(DATETIME_FORMAT))

    def _generated(self, original_title: str, translated_title: str, summary: str) -> GenerationResult:
        # Empty structured fields do come back from the backend now and then
        if not translated_title.strip():
            translated_title = original_title
        if not summary.strip():
            summary = SUMMARIZED_CONTENT_EMPTY
        return GenerationResult(title=translated_title, summary=summary, success=True)

    @trace_span(
        "summarizer.summarize",
        tracer_name="summarizer",
        attr_from_args=lambda self, title, url, scrapper=None: {"item.url": url, "item.scrapper": scrapper is not None},
    )
    async def summarize(self, title: str, url: str, scrapper: Optional[ContentScrapper] = None) -> GenerationResult:
        """Summarize one item, returning a result instead of raising.

        The strategy is picked as follows:
        - YouTube URLs are summarized natively as video.
        - Otherwise the content is fetched (with retries and the optional
          scrapper); text goes inline into the prompt and PDFs are attached
          as files.
        - If fetching fails entirely, the backend reads the URL itself and
          the original title is kept.
        """
        try:
            if is_youtube_url(url):
                video_url = normalize_youtube_url(url)
                logger.debug(f"Summarizing youtube url: {video_url}")
                translated_title, summary = await self.llm.translate_and_summarize_video(
                    self._prompt("summarize_video", title=title),
                    video_url,
                    system_instruction=self._system_instruction(),
                )
                return self._generated(title, translated_title, summary)

            logger.debug(f"Summarizing content of url: {url}")
            try:
                fetched = await self._fetch(url, scrapper)
            except FetchError as fetch_error:
                logger.info(f"Could not fetch {url} ({fetch_error}); summarizing with url context")
                return await self._summarize_url(title, url, fetch_error)

            if is_text_formattable_content(fetched.content_type):
                prompt = self._prompt(
                    "summarize_content",
                    title=title,
                    content=fetched.content.decode('utf-8', errors='replace'),
                )
                translated_title, summary = await self.llm.translate_and_summarize(
                    prompt, system_instruction=self._system_instruction()
                )
            elif is_file_content(fetched.content_type):
                mime_type = fetched.content_type.split(';')[0].strip()
                translated_title, summary = await self.llm.translate_and_summarize(
                    self._prompt("summarize_file", title=title),
                    files=[(fetched.content, mime_type)],
                    system_instruction=self._system_instruction(),
                )
            else:
                raise GenerationError(f"not a summarizable content type: {fetched.content_type}", ErrorKind.TERMINAL)
            return self._generated(title, translated_title, summary)

        except GenerationError as e:
            logger.warning(f"Failed to summarize '{truncate_string(title, 80)}' ({url}): {e}")
            return failed_result(title, e)

    async def _summarize_url(self, title: str, url: str, fetch_error: FetchError) -> GenerationResult:
        try:
            summary = await self.llm.summarize_url(
                self._prompt("summarize_url", url=url),
                system_instruction=self._system_instruction(),
            )
        except GenerationError as e:
            raise GenerationError(f"{e} (after fetch failure: {fetch_error})", e.kind, code=e.code, details=e.details) from e
        # URL context mode does not translate the title
        return self._generated(title, title, summary)

    async def _fetch(self, url: str, scrapper: Optional[ContentScrapper] = None) -> FetchedContent:
        """Fetch ``url`` with up to ``max_fetch_retries`` retries.

        While retries remain and the page is HTML, a supplied scrapper is
        preferred; the final attempt always uses the plain fetch.

        Raises:
            FetchError: the error of the final attempt.
        """
        content_type = await self.content_fetcher.get_content_type(url)
        remaining = self.max_fetch_retries
        attempt = 0
        while True:
            use_scrapper = scrapper is not None and remaining > 0 and is_html_content(content_type)
            try:
                if use_scrapper:
                    return await self._scrap(scrapper, url, content_type)
                return await self.content_fetcher.fetch_url_content(url)
            except FetchError as e:
                if remaining <= 0:
                    raise
                logger.debug(f"Retrying fetch from url '{url}' (remaining count: {remaining}): {e}")
                remaining -= 1
                await self.retry_helper.sleep_for_attempt(attempt)
                attempt += 1

    async def _scrap(self, scrapper: ContentScrapper, url: str, content_type: str) -> FetchedContent:
        crawled = await scrapper.crawl_urls([url])
        for text in crawled.values():
            # Only one URL was requested
            return FetchedContent(format_url_content(url, content_type, text).encode('utf-8'), content_type)
        raise FetchError(f"nothing was scrapped from url: {url}")

    async def _summarize_item(self, item: FeedItem, scrapper: Optional[ContentScrapper]) -> GenerationResult:
        try:
            return await wait_for(self.summarize(item.title, item.link, scrapper), timeout=self.summarize_timeout_seconds)
        except TimeoutError:
            return failed_result(
                item.title,
                GenerationError(f"summarizing timed out after {self.summarize_timeout_seconds}s", ErrorKind.TERMINAL),
            )
        except Exception as e:
            # Unexpected failures still become cached diagnostics for the item
            logger.exception(f"Unexpected error summarizing {item.link}: {e}")
            return failed_result(item.title, e)

    def _provenance(self) -> str:
        return f"(summarized with **{self.llm.model}**, {self._clock().strftime(DATETIME_FORMAT)})"

    @trace_span(
        "summarizer.summarize_and_cache_feeds",
        tracer_name="summarizer",
        attr_from_args=lambda self, feeds, scrapper=None: {"feeds.count": len(feeds)},
    )
    async def summarize_and_cache_feeds(
        self,
        feeds: List[Feed],
        scrapper: Optional[ContentScrapper] = None,
    ) -> Optional[BatchError]:
        """Summarize every item of ``feeds`` and cache the outcome.

        Failed items are cached with the diagnostic text followed by the
        original description. When the model is overloaded the remaining
        items are left for a later run.

        Returns:
            A ``BatchError`` describing the failures (``overloaded=True`` when
            the run was cut short), or None when everything succeeded.
        """
        errors: List[str] = []

        for feed in feeds:
            for i, item in enumerate(feed.items):
                result = await self._summarize_item(item, scrapper)

                if result.kind is ErrorKind.OVERLOADED:
                    logger.warning("Skipping remaining feed items due to overloaded model (will be retried later)")
                    errors.append(error_string(result.error))
                    return BatchError(errors, overloaded=True)

                if result.success:
                    summary = f"{result.summary}\n\n{self._provenance()}"
                else:
                    summary = f"{result.summary}\n\n{item.description}"
                    errors.append(f"failed to summarize item '{item.title}' ({item.link}): {error_string(result.error)}")

                await self.cache.save(item, result.title, summary)

                if i < len(feed.items) - 1:
                    await sleep(self.summarize_interval_seconds)

        return BatchError(errors) if errors else None
