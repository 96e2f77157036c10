"""Engine configuration and response types.

These types are used internally by the engine and backends.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

from .stream_types import Timing, Usage


FinishReason = Literal["stop", "length", "partial", "cancelled"]


@dataclass(frozen=True)
class GenerationParams:
    """Per-model generation defaults, fixed at load time.

    Only `max_tokens` and `temperature` can be overridden per call.
    """

    max_tokens: int = 256
    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    min_p: float = 0.0
    n_threads: int = 4
    context_size: int = 2048
    seed: int | None = None

    def with_overrides(self, *, max_tokens: int | None = None, temperature: float | None = None) -> "GenerationParams":
        changes: dict[str, Any] = {}
        if max_tokens is not None:
            changes["max_tokens"] = int(max_tokens)
        if temperature is not None:
            changes["temperature"] = float(temperature)
        return replace(self, **changes) if changes else self

    def validate(self) -> None:
        if self.max_tokens < 0:
            raise ValueError("'max_tokens' must be >= 0.")
        if self.temperature < 0:
            raise ValueError("'temperature' must be >= 0.")
        if self.top_k < 0:
            raise ValueError("'top_k' must be >= 0.")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'top_p' must be in (0, 1].")
        if not 0.0 <= self.min_p <= 1.0:
            raise ValueError("'min_p' must be in [0, 1].")
        if self.n_threads <= 0:
            raise ValueError("'n_threads' must be > 0.")


@dataclass(frozen=True)
class SessionConfig:
    """Session-wide limits.

    `min_context_size` is the floor applied to the requested context window so
    one full turn always fits. `ingestion_chunk_width` bounds every batch handed
    to the backend.
    """

    min_context_size: int = 4096
    ingestion_chunk_width: int = 2048

    def __post_init__(self) -> None:
        if self.min_context_size <= 0:
            raise ValueError("'min_context_size' must be > 0.")
        if self.ingestion_chunk_width <= 0:
            raise ValueError("'ingestion_chunk_width' must be > 0.")


@dataclass
class GenerateResponse:
    """Result of a blocking generation call."""

    text: str
    finish_reason: FinishReason = "stop"
    usage: Usage = field(default_factory=lambda: Usage(prompt_tokens=0, completion_tokens=0))
    timing: Timing = field(default_factory=Timing)
    cache_hit: bool | None = None  # None for uncached call shapes
    error: str | None = None  # Set when finish_reason == "partial"

    @property
    def is_partial(self) -> bool:
        return self.finish_reason == "partial"


@dataclass
class ModelInfo:
    """Information about a loaded model."""

    model_path: str | None
    backend: str
    context_size: int
    n_threads: int
    loaded: bool
    extra: dict[str, Any] = field(default_factory=dict)
