"""Streaming event types and the streaming callback protocol.

These types are internal to the library and are intentionally decoupled from
HTTP transport (FastAPI / SSE). A streaming call produces zero or more
`TokenEvent`s followed by exactly one terminal event (`FinalEvent` or
`ErrorEvent`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class TokenEvent:
    """Text produced by one generated token."""

    text: str


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event for a successful generation."""

    finish_reason: Literal["stop", "length", "cancelled"]
    usage: Usage
    timing: Timing


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal event for a failed generation."""

    message: str


StreamEvent = TokenEvent | FinalEvent | ErrorEvent


@runtime_checkable
class StreamingCallback(Protocol):
    """Consumer of a streaming generation.

    `on_token` is called for each non-empty text fragment, then exactly one of
    `on_complete` / `on_error`.
    """

    def on_token(self, text: str) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, message: str) -> None: ...
