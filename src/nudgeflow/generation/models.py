"""Tagged results and payload parsing for the generation client."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Canonical classification of a failed generation attempt."""

    upstream = "upstream"          # Retryable: 5xx from the provider
    rate_limited = "rate_limited"  # Retryable: 429
    transport = "transport"        # Retryable: connection reset, DNS, TLS
    timeout = "timeout"            # Retryable: attempt exceeded its budget
    malformed = "malformed"        # Retryable: payload without generated text
    rejected = "rejected"          # Non-retryable: any other 4xx
    circuit_open = "circuit_open"  # No attempt made


class GenerationSuccess(BaseModel):
    """A usable generated text."""

    outcome: Literal["success"] = "success"
    text: str


class GenerationFailure(BaseModel):
    """A classified failure. Drives retry and fallback, never persisted."""

    outcome: Literal["failure"] = "failure"
    error_kind: ErrorKind
    message: str
    status_code: int | None = None


GenerationAttemptResult = Union[GenerationSuccess, GenerationFailure]


def _read_mapping_value(obj: object, key: str) -> object:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _first_choice(response: object) -> object:
    choices = _read_mapping_value(response, "choices")
    if not isinstance(choices, (list, tuple)) or not choices:
        return None
    return choices[0]


def parse_completion(response: object) -> GenerationAttemptResult:
    """
    Pull the generated text out of a chat-completion response.

    Accepts both plain dicts and the attribute-style objects LiteLLM returns.
    Anything without a non-empty ``choices[0].message.content`` string is a
    ``malformed`` failure rather than an exception.
    """
    choice = _first_choice(response)
    if choice is None:
        return GenerationFailure(
            error_kind=ErrorKind.malformed,
            message="Response has no choices.",
        )

    message = _read_mapping_value(choice, "message")
    content = _read_mapping_value(message, "content")
    if not isinstance(content, str):
        return GenerationFailure(
            error_kind=ErrorKind.malformed,
            message="Response choice has no text content.",
        )

    text = content.strip()
    if not text:
        return GenerationFailure(
            error_kind=ErrorKind.malformed,
            message="Response text is empty.",
        )
    return GenerationSuccess(text=text)


def parse_stream_chunk(chunk: object) -> str | None:
    """
    Return the text fragment carried by one streamed chunk.

    ``None`` means the chunk is not decodable and should be skipped; an empty
    string is a legitimate keep-alive or role-only delta.
    """
    choice = _first_choice(chunk)
    if choice is None:
        return None

    delta = _read_mapping_value(choice, "delta")
    if delta is None:
        return None

    content = _read_mapping_value(delta, "content")
    if content is None:
        return ""
    if not isinstance(content, str):
        return None
    return content
