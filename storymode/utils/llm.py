from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any, Dict

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from storymode.utils.env import get_bool_env, get_float_env, get_int_env
from storymode.utils.errors import GenerationConfigError, GenerationRequestFailed
from storymode.utils.logging import get_logger
from storymode.utils.observability import get_metrics

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.openai.com/v1"
_DEFAULT_CHAT_MODEL = "gpt-4o-mini"
_DEFAULT_MAX_TOKENS = 1000
OFFLINE_REPLY = "[offline] Unable to call model. Provide STORYMODE_LLM_API_KEY to enable generation."


def _base_url() -> str:
    return os.getenv("STORYMODE_LLM_BASE", _DEFAULT_BASE).rstrip("/")


def _api_key() -> str | None:
    return os.getenv("STORYMODE_LLM_API_KEY")


def generation_enabled() -> bool:
    return bool(_api_key())


def default_model() -> str:
    return os.getenv("STORYMODE_LLM_MODEL", _DEFAULT_CHAT_MODEL)


def default_max_tokens() -> int:
    return get_int_env("STORYMODE_LLM_MAX_TOKENS", _DEFAULT_MAX_TOKENS)


def _connect_timeout_seconds() -> float:
    return get_float_env("STORYMODE_LLM_CONNECT_TIMEOUT_SECONDS", 30.0)


def _max_attempts() -> int:
    if get_bool_env("STORYMODE_LLM_DISABLE_RETRY"):
        return 1
    return get_int_env("STORYMODE_LLM_MAX_ATTEMPTS", 3)


def _backoff_min_seconds() -> float:
    return get_float_env("STORYMODE_LLM_BACKOFF_MIN_SECONDS", 1.0)


def _backoff_max_seconds() -> float:
    return get_float_env("STORYMODE_LLM_BACKOFF_MAX_SECONDS", 8.0)


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise GenerationConfigError("STORYMODE_LLM_API_KEY is not configured")
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json", "Accept": "text/event-stream"}


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


def _delta_from_event(raw: str) -> str | None:
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        return None
    choices = event.get("choices") or []
    if not choices:
        return None
    first = choices[0] or {}
    delta = first.get("delta") or {}
    content = delta.get("content")
    if content is None:
        message = first.get("message") or {}
        content = message.get("content")
    return str(content) if content else None


async def _open_stream(client: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
    """Send the request and return a streaming response once headers arrive.

    Only connection setup is retried; once chunks start flowing a failure is
    surfaced to the caller instead of replaying the stream.
    """

    metrics = get_metrics()
    backoff_min = _backoff_min_seconds()
    backoff_max = max(backoff_min, _backoff_max_seconds())
    async for attempt in AsyncRetrying(
        wait=wait_exponential(multiplier=1, min=backoff_min, max=backoff_max),
        stop=stop_after_attempt(max(_max_attempts(), 1)),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    ):
        attempt_number = attempt.retry_state.attempt_number
        if attempt_number > 1:
            metrics.increment_counter("generation_retry::attempt")
            log.warning("llm_stream_retry", attempt=attempt_number, idle_for=attempt.retry_state.idle_for)
        with attempt:
            request = client.build_request("POST", f"{_base_url()}/chat/completions", headers=_headers(), json=payload)
            response = await client.send(request, stream=True)
            if response.is_error:
                await response.aread()
                await response.aclose()
                response.raise_for_status()
            return response
    raise GenerationRequestFailed("generation stream could not be opened")  # pragma: no cover


async def stream_completion(
    prompt: str,
    *,
    system_message: str = "You are a helpful assistant.",
    model: str | None = None,
    max_tokens: int | None = None,
    temperature: float = 0.7,
    client: httpx.AsyncClient | None = None,
) -> AsyncIterator[str]:
    """Stream completion deltas from an OpenAI-compatible chat endpoint.

    Yields text deltas in arrival order. Errors are raised as
    ``GenerationRequestFailed`` whether they happen before the first chunk or
    mid-stream.
    """

    if not generation_enabled():
        yield OFFLINE_REPLY
        return

    payload: Dict[str, Any] = {
        "model": model or default_model(),
        "messages": [
            {"role": "system", "content": system_message},
            {"role": "user", "content": prompt},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens or default_max_tokens(),
        "stream": True,
    }

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=httpx.Timeout(_connect_timeout_seconds(), read=None))
    try:
        try:
            response = await _open_stream(client, payload)
        except httpx.HTTPError as exc:
            raise GenerationRequestFailed(f"generation request failed: {exc}") from exc

        try:
            content_type = response.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await response.aread()
                delta = _delta_from_event(body.decode("utf-8", errors="ignore"))
                if delta:
                    yield delta
                return

            async for line in response.aiter_lines():
                if not line or not line.startswith("data:"):
                    continue
                raw = line[5:].strip()
                if not raw:
                    continue
                if raw == "[DONE]":
                    break
                delta = _delta_from_event(raw)
                if delta:
                    yield delta
        except httpx.HTTPError as exc:
            raise GenerationRequestFailed(f"generation stream interrupted: {exc}") from exc
        finally:
            await response.aclose()
    finally:
        if owns_client:
            await client.aclose()
