"""LiteLLM-backed generation client with retry, backoff and circuit breaking."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

from litellm import acompletion

from nudgeflow.errors import GenerationError, MalformedResponseError

from .breaker import CircuitBreaker
from .classifier import classify_exception, decide_retry, error_from_failure
from .models import GenerationFailure, parse_completion, parse_stream_chunk

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MODEL = "gemini/gemini-1.5-flash"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_S = 1.0
DEFAULT_BACKOFF_JITTER_S = 0.25
_DEFAULT_TIMEOUT_S = 20.0


async def _close_upstream(upstream: object) -> None:
    """Release the provider stream so its socket is returned promptly."""
    closer = getattr(upstream, "aclose", None) or getattr(upstream, "close", None)
    if closer is None:
        return
    try:
        outcome = closer()
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        logger.debug("Closing upstream stream raised %s: %s", type(exc).__name__, exc)


class GenerationClient:
    """
    Calls the configured text-generation model and returns nudge text.

    Every call is gated by the shared ``CircuitBreaker``. A call makes up to
    ``max_attempts`` attempts, sleeping ``backoff_base_s * 2**attempt`` plus
    up to ``backoff_jitter_s`` of jitter between them. Non-retryable errors
    skip the remaining attempts. A call counts as one breaker failure no
    matter how many attempts it made.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        api_base: str | None = None,
        api_key: str | None = None,
        request_timeout_s: float = _DEFAULT_TIMEOUT_S,
        max_tokens: int | None = 256,
        temperature: float | None = 0.7,
        top_p: float | None = 0.95,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        backoff_jitter_s: float = DEFAULT_BACKOFF_JITTER_S,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **kwargs: Any,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.model_name = model_name
        self.api_base = api_base
        self.api_key = api_key
        self.request_timeout_s = request_timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self.backoff_jitter_s = backoff_jitter_s
        self.breaker = breaker or CircuitBreaker()
        self.kwargs = kwargs
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the attempt following zero-based ``attempt``."""
        delay = self.backoff_base_s * (2**attempt)
        if self.backoff_jitter_s > 0:
            delay += random.uniform(0.0, self.backoff_jitter_s)
        return delay

    async def generate(self, prompt: str) -> str:
        """Return generated nudge text or raise a ``GenerationError``."""
        self.breaker.check()

        try:
            text = await self._with_retries(self._complete_once, prompt)
        except GenerationError as err:
            self.breaker.record_failure()
            logger.warning(
                "Generation failed (%s, consecutive failures: %d): %s",
                err.kind.value,
                self.breaker.consecutive_failures,
                err.message,
            )
            raise

        self.breaker.record_success()
        logger.info("AI nudge generated (%d chars)", len(text))
        return text

    async def stream(self, prompt: str) -> AsyncGenerator[str, None]:
        """
        Yield generated text fragments in arrival order.

        Opening the stream is retried like ``generate``; once fragments flow
        a failure is final. Undecodable chunks are skipped, and a stream
        with no non-whitespace text is malformed. Closing this
        iterator early closes the provider stream and leaves the breaker
        untouched.
        """
        self.breaker.check()

        try:
            upstream = await self._with_retries(self._open_stream, prompt)
        except GenerationError:
            self.breaker.record_failure()
            raise

        iterator = upstream.__aiter__()
        produced = 0
        has_text = False
        finished = False
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        iterator.__anext__(), timeout=self.request_timeout_s
                    )
                except StopAsyncIteration:
                    break
                except GenerationError:
                    raise
                except Exception as exc:
                    raise classify_exception(exc) from exc

                fragment = parse_stream_chunk(chunk)
                if fragment is None:
                    logger.debug("Skipped malformed streaming chunk: %r", chunk)
                    continue
                if not fragment:
                    continue
                produced += 1
                has_text = has_text or bool(fragment.strip())
                yield fragment

            if not has_text:
                raise MalformedResponseError("Stream ended without any generated text.")
            finished = True
        except GenerationError as err:
            self.breaker.record_failure()
            logger.warning(
                "Streaming generation failed after %d fragments (%s): %s",
                produced,
                err.kind.value,
                err.message,
            )
            raise
        finally:
            if not finished:
                await _close_upstream(upstream)

        self.breaker.record_success()
        logger.info("AI nudge streamed (%d fragments)", produced)

    async def _with_retries(
        self,
        operation: Callable[[str], Awaitable[T]],
        prompt: str,
    ) -> T:
        attempt = 0
        while True:
            logger.info(
                "Generation attempt %d/%d (model=%s)",
                attempt + 1,
                self.max_attempts,
                self.model_name,
            )
            try:
                return await operation(prompt)
            except GenerationError as err:
                decision = decide_retry(err, attempt, self.max_attempts)
                if not decision:
                    logger.info("Not retrying: %s", decision.reason)
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Retry attempt %d after %.2fs: %s",
                    attempt + 1,
                    delay,
                    err.message,
                )
                await self._sleep(delay)
                attempt += 1

    async def _complete_once(self, prompt: str) -> str:
        try:
            response = await asyncio.wait_for(
                acompletion(**self._completion_kwargs(prompt)),
                timeout=self.request_timeout_s,
            )
        except Exception as exc:
            raise classify_exception(exc) from exc

        result = parse_completion(response)
        if isinstance(result, GenerationFailure):
            raise error_from_failure(result)
        return result.text

    async def _open_stream(self, prompt: str) -> Any:
        try:
            return await asyncio.wait_for(
                acompletion(**self._completion_kwargs(prompt, stream=True)),
                timeout=self.request_timeout_s,
            )
        except Exception as exc:
            raise classify_exception(exc) from exc

    def _completion_kwargs(self, prompt: str, *, stream: bool = False) -> dict[str, Any]:
        completion_kwargs: dict[str, Any] = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": self.request_timeout_s,
            # Retries are handled by _with_retries.
            "num_retries": 0,
        }
        completion_kwargs.update(self.kwargs)

        if self.max_tokens is not None:
            completion_kwargs["max_tokens"] = self.max_tokens
        if self.temperature is not None:
            completion_kwargs["temperature"] = self.temperature
        if self.top_p is not None:
            completion_kwargs["top_p"] = self.top_p
        if self.api_base:
            completion_kwargs["api_base"] = self.api_base
        if self.api_key:
            completion_kwargs["api_key"] = self.api_key
        if stream:
            completion_kwargs["stream"] = True
        return completion_kwargs
