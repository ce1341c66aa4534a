#!/usr/bin/env python3
"""Async Google Gemini helper for translating titles and summarizing content.

Every call takes one API key from a round-robin pool, forces a structured
(function call) response where a title/summary pair is expected, and retries
transient server errors. All failures surface as ``GenerationError`` tagged
with an ``ErrorKind`` so callers can tell model overload apart from
per-item failures."""
from __future__ import annotations

import io
import threading
from asyncio import TimeoutError, create_task, gather, sleep, wait_for
from typing import Any, Callable, List, Optional, Sequence, Tuple

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from config import config, get_logger
from errors import ErrorKind, GenerationError
from telemetry import trace_span
from utils import mask_secret

logger = get_logger("llm_client")

FUNCTION_NAME = "translate_title_and_summarize_content"
ARG_TRANSLATED_TITLE = "translated_title"
ARG_SUMMARIZED_CONTENT = "summarized_content"

VIDEO_MIME_TYPE = "video/*"

# (content bytes, mime type) pairs attached to a prompt
PromptFile = Tuple[bytes, str]


def classify_error(err: BaseException) -> ErrorKind:
    """Map a Gemini SDK error to the reaction callers should take.

    429 (quota) and 503 "model is overloaded" stop the whole batch; other
    5xx errors are worth retrying; anything else is final for the item.
    """
    if not isinstance(err, genai_errors.APIError):
        return ErrorKind.TERMINAL
    code = getattr(err, "code", None) or 0
    text = f"{getattr(err, 'status', '') or ''} {getattr(err, 'message', '') or ''}".lower()
    if code == 429:
        return ErrorKind.OVERLOADED
    if code == 503 and "overloaded" in text:
        return ErrorKind.OVERLOADED
    if 500 <= code < 600:
        return ErrorKind.TRANSIENT
    return ErrorKind.TERMINAL


def _api_error_message(err: genai_errors.APIError) -> str:
    status = f" {err.status}" if err.status else ""
    return f"googleapi error {err.code}{status}: {err.message or err}"


def _translate_and_summarize_tool() -> types.Tool:
    return types.Tool(
        function_declarations=[
            types.FunctionDeclaration(
                name=FUNCTION_NAME,
                description="Translate the given title and summarize the given content, both in the requested language.",
                parameters=types.Schema(
                    type=types.Type.OBJECT,
                    properties={
                        ARG_TRANSLATED_TITLE: types.Schema(
                            type=types.Type.STRING,
                            description="The title translated into the requested language.",
                        ),
                        ARG_SUMMARIZED_CONTENT: types.Schema(
                            type=types.Type.STRING,
                            description="The summary of the content, written in the requested language.",
                        ),
                    },
                    required=[ARG_TRANSLATED_TITLE, ARG_SUMMARIZED_CONTENT],
                ),
            )
        ]
    )


def _file_state_name(file: Any) -> str:
    state = getattr(file, "state", None)
    if state is None:
        return "ACTIVE"
    return str(getattr(state, "name", state)).upper()


def _candidate_parts(response: Any) -> List[Any]:
    parts: List[Any] = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        parts.extend(getattr(content, "parts", None) or [])
    return parts


def _unusable_response_reason(response: Any, expected: str) -> str:
    """Explain why a response had nothing usable, using finish/block reasons when present."""
    candidates = getattr(response, "candidates", None) or []
    if candidates:
        reason = getattr(candidates[0], "finish_reason", None)
        if reason is not None:
            return f"no {expected} in generated result (finish reason: {getattr(reason, 'name', reason)})"
        return f"no {expected} in generated result"
    feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(feedback, "block_reason", None) if feedback else None
    if block_reason is not None:
        return f"no candidate in generated result (blocked: {getattr(block_reason, 'name', block_reason)})"
    return "no candidate in generated result"


def extract_function_args(response: Any) -> Tuple[str, str]:
    """Return (translated title, summarized content) from the forced function call.

    Raises:
        GenerationError: TERMINAL when the expected function call is missing.
    """
    for part in _candidate_parts(response):
        function_call = getattr(part, "function_call", None)
        if function_call is None:
            continue
        if function_call.name != FUNCTION_NAME:
            logger.warning("Unexpected function call in response: %s", function_call.name)
            continue
        args = function_call.args or {}
        return str(args.get(ARG_TRANSLATED_TITLE) or ""), str(args.get(ARG_SUMMARIZED_CONTENT) or "")
    raise GenerationError(_unusable_response_reason(response, f"function call '{FUNCTION_NAME}'"), ErrorKind.TERMINAL)


def extract_text(response: Any) -> str:
    """Concatenate the plain text parts of a response (may be empty).

    Raises:
        GenerationError: TERMINAL when the response has no candidate at all.
    """
    if not getattr(response, "candidates", None):
        raise GenerationError(_unusable_response_reason(response, "text"), ErrorKind.TERMINAL)
    texts = [
        part.text
        for part in _candidate_parts(response)
        if getattr(part, "text", None) and not getattr(part, "thought", False)
    ]
    return "".join(texts).strip()


class GeminiClient:
    """Generative backend adapter over the google-genai SDK.

    Args:
        api_keys: Pool of API keys used round-robin; must not be empty.
        model: Model name (e.g. ``gemini-2.5-flash``).
        client_factory: Callable building an SDK client from ``api_key=``;
            tests inject fakes here.
    """

    def __init__(
        self,
        api_keys: Optional[Sequence[str]] = None,
        model: Optional[str] = None,
        *,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        video_timeout: Optional[float] = None,
        file_ready_timeout: Optional[float] = None,
        file_poll_interval: Optional[float] = None,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        keys = list(api_keys if api_keys is not None else config.GOOGLE_AI_API_KEYS)
        if not keys:
            raise ValueError("at least one Google AI API key is required")
        self.api_keys = keys
        self.model = model or config.GOOGLE_AI_MODEL
        self.max_retries = config.GENERATION_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = config.GENERATION_RETRY_DELAY if retry_delay is None else retry_delay
        self.timeout = timeout or config.GENERATION_TIMEOUT_SECONDS
        self.video_timeout = video_timeout or config.GENERATION_TIMEOUT_SECONDS_FOR_VIDEO
        self.file_ready_timeout = file_ready_timeout or config.FILE_UPLOAD_READY_TIMEOUT
        self.file_poll_interval = file_poll_interval or config.FILE_POLL_INTERVAL
        self.client_factory = client_factory or genai.Client
        self._request_count = 0
        self._lock = threading.Lock()

    def rotated_api_key(self) -> str:
        """Next key of the pool (request counter modulo pool size)."""
        with self._lock:
            key = self.api_keys[self._request_count % len(self.api_keys)]
            self._request_count += 1
        return key

    def _new_client(self) -> Any:
        key = self.rotated_api_key()
        logger.debug("Using Google AI API key %s", mask_secret(key))
        return self.client_factory(api_key=key)

    async def _close_client(self, client: Any) -> None:
        aclose = getattr(getattr(client, "aio", None), "aclose", None)
        if callable(aclose):
            await aclose()

    @trace_span(
        "llm.translate_and_summarize",
        tracer_name="llm",
        attr_from_args=lambda self, prompt, files=(), system_instruction=None: {"llm.files": len(files or ())},
    )
    async def translate_and_summarize(
        self,
        prompt: str,
        files: Sequence[PromptFile] = (),
        system_instruction: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Translate a title and summarize content (inline text or attached files).

        Returns:
            (translated title, summarized content); either may be empty.
        """
        client = self._new_client()
        uploaded: List[Any] = []
        try:
            if files:
                uploaded = await self._upload_files(client, files)
            parts = [types.Part.from_uri(file_uri=f.uri, mime_type=f.mime_type) for f in uploaded]
            parts.append(types.Part.from_text(text=prompt))
            response = await self._generate(
                client,
                [types.Content(role="user", parts=parts)],
                self._structured_config(system_instruction),
                purpose="translate_and_summarize",
                timeout=self.timeout,
            )
            return extract_function_args(response)
        finally:
            await self._delete_files(client, uploaded)
            await self._close_client(client)

    @trace_span("llm.translate_and_summarize_video", tracer_name="llm")
    async def translate_and_summarize_video(
        self,
        prompt: str,
        video_url: str,
        system_instruction: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Translate a title and summarize a video the backend reads natively."""
        client = self._new_client()
        try:
            parts = [
                types.Part.from_uri(file_uri=video_url, mime_type=VIDEO_MIME_TYPE),
                types.Part.from_text(text=prompt),
            ]
            response = await self._generate(
                client,
                [types.Content(role="user", parts=parts)],
                self._structured_config(system_instruction),
                purpose="translate_and_summarize_video",
                timeout=self.video_timeout,
            )
            return extract_function_args(response)
        finally:
            await self._close_client(client)

    @trace_span("llm.summarize_url", tracer_name="llm")
    async def summarize_url(self, prompt: str, system_instruction: Optional[str] = None) -> str:
        """Summarize content the backend fetches itself through its URL context tool."""
        client = self._new_client()
        try:
            response = await self._generate(
                client,
                prompt,
                types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    tools=[types.Tool(url_context=types.UrlContext())],
                ),
                purpose="summarize_url",
                timeout=self.timeout,
            )
            return extract_text(response)
        finally:
            await self._close_client(client)

    def _structured_config(self, system_instruction: Optional[str]) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=system_instruction,
            tools=[_translate_and_summarize_tool()],
            tool_config=types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(
                    mode=types.FunctionCallingConfigMode.ANY,
                    allowed_function_names=[FUNCTION_NAME],
                )
            ),
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

    async def _generate(self, client: Any, contents: Any, generation_config: Any, *, purpose: str, timeout: float) -> Any:
        """Call generate_content, retrying TRANSIENT errors with a fixed delay."""
        attempt = 0
        while True:
            try:
                return await wait_for(
                    client.aio.models.generate_content(
                        model=self.model,
                        contents=contents,
                        config=generation_config,
                    ),
                    timeout=timeout,
                )
            except genai_errors.APIError as e:
                kind = classify_error(e)
                if kind is ErrorKind.TRANSIENT and attempt < self.max_retries:
                    attempt += 1
                    logger.warning(
                        "%s transient Gemini error: %s. Retrying in %ss (attempt %d/%d)",
                        purpose,
                        _api_error_message(e),
                        self.retry_delay,
                        attempt,
                        self.max_retries,
                    )
                    await sleep(self.retry_delay)
                    continue
                raise GenerationError(_api_error_message(e), kind, code=e.code, details=getattr(e, "details", None)) from e
            except TimeoutError as e:
                raise GenerationError(f"{purpose} timed out after {timeout}s", ErrorKind.TERMINAL) from e

    async def _upload_files(self, client: Any, files: Sequence[PromptFile]) -> List[Any]:
        """Upload prompt files and wait until all of them are ready for use."""
        uploaded: List[Any] = []
        try:
            for i, (data, mime_type) in enumerate(files):
                uploaded.append(
                    await client.aio.files.upload(
                        file=io.BytesIO(data),
                        config=types.UploadFileConfig(mime_type=mime_type, display_name=f"file {i + 1}"),
                    )
                )
            return await self._wait_for_files_active(client, uploaded)
        except genai_errors.APIError as e:
            await self._delete_files(client, uploaded)
            raise GenerationError(f"failed to upload file: {_api_error_message(e)}", classify_error(e), code=e.code) from e
        except GenerationError:
            await self._delete_files(client, uploaded)
            raise

    async def _wait_for_files_active(self, client: Any, files: List[Any]) -> List[Any]:
        async def _wait(file: Any) -> Any:
            while _file_state_name(file) == "PROCESSING":
                await sleep(self.file_poll_interval)
                file = await client.aio.files.get(name=file.name)
            if _file_state_name(file) != "ACTIVE":
                raise GenerationError(
                    f"uploaded file {file.name} is not usable (state: {_file_state_name(file)})",
                    ErrorKind.TERMINAL,
                )
            return file

        tasks = [create_task(_wait(f)) for f in files]
        try:
            return list(await wait_for(gather(*tasks), timeout=self.file_ready_timeout))
        except TimeoutError as e:
            raise GenerationError(
                f"uploaded files did not become active within {self.file_ready_timeout}s",
                ErrorKind.TERMINAL,
            ) from e
        finally:
            # One failed poll must not leave the others running against deleted files
            for task in tasks:
                if not task.done():
                    task.cancel()
            await gather(*tasks, return_exceptions=True)

    async def _delete_files(self, client: Any, files: List[Any]) -> None:
        for file in files:
            try:
                await client.aio.files.delete(name=file.name)
            except genai_errors.APIError as e:
                logger.warning("Failed to delete uploaded file %s: %s", file.name, _api_error_message(e))


__all__ = [
    "GeminiClient",
    "classify_error",
    "extract_function_args",
    "extract_text",
    "FUNCTION_NAME",
    "ARG_TRANSLATED_TITLE",
    "ARG_SUMMARIZED_CONTENT",
]
