from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable

from storymode.schemas.models import ChatMessage
from storymode.utils.env import get_float_env
from storymode.utils.errors import GenerationRequestFailed, GenerationTimeout
from storymode.utils.llm import stream_completion
from storymode.utils.logging import get_logger
from storymode.utils.observability import get_metrics

log = get_logger(__name__)

CompletionFn = Callable[..., AsyncIterator[str]]


class CancellationToken:
    """Flag shared between a turn and whoever may abandon it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class StreamUpdate:
    message_id: str
    content: str
    delta: str
    index: int


def generation_timeout_seconds() -> float:
    return get_float_env("GENERATION_TIMEOUT_SECONDS", 120.0)


class ResponseStreamer:
    """Drive a streamed completion into one assistant message.

    Each received chunk is appended to the message and published as a
    ``StreamUpdate`` whose content is the concatenation of every chunk so far.
    The cancellation token is checked before each chunk is applied; once it
    trips, remaining chunks are dropped and the upstream stream is closed.
    """

    def __init__(
        self,
        completion: CompletionFn | None = None,
        *,
        timeout_seconds: float | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.7,
    ) -> None:
        self._completion = completion or stream_completion
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else generation_timeout_seconds()
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def stream(
        self,
        prompt: str,
        message: ChatMessage,
        *,
        system_message: str,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        token = token or CancellationToken()
        metrics = get_metrics()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        chunks = self._completion(
            prompt,
            system_message=system_message,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        index = 0
        started = time.perf_counter()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise GenerationTimeout(f"generation exceeded {self.timeout_seconds:.1f}s")
                try:
                    delta = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as exc:
                    raise GenerationTimeout(f"generation exceeded {self.timeout_seconds:.1f}s") from exc
                except GenerationRequestFailed:
                    raise
                except Exception as exc:
                    raise GenerationRequestFailed(str(exc) or exc.__class__.__name__) from exc

                if token.cancelled:
                    metrics.increment_counter("generation::chunks_discarded")
                    log.info("stream_cancelled", message_id=message.id, applied_chunks=index)
                    break
                if not delta:
                    continue
                index += 1
                content = message.append(delta)
                yield StreamUpdate(message_id=message.id, content=content, delta=delta, index=index)
        except GenerationRequestFailed as exc:
            metrics.increment_counter("generation::failed")
            log.warning(
                "stream_failed",
                message_id=message.id,
                applied_chunks=index,
                partial_length=len(message.content),
                error=str(exc),
            )
            raise
        finally:
            message.finalize()
            await chunks.aclose()
            metrics.record_phase("generation", (time.perf_counter() - started) * 1000)
        if token.cancelled:
            return
        log.info("stream_completed", message_id=message.id, chunks=index, length=len(message.content))
