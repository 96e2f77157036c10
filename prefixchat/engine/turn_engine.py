"""Turn orchestration (single sequence, single-flight).

This module provides the core, reusable engine:
- prefix cache resolution for the cached call shape
- prompt / user-turn tokenization and chunked ingestion
- the sampling loop and UTF-8 safe text assembly
- blocking, callback streaming and async streaming delivery

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable

from .decode import LoopResult, SamplingLoop
from .errors import (
    CallbackContractError,
    InvalidInputError,
    ModelNotLoadedError,
    PrefixChatError,
    TokenizationError,
)
from .ingestion import ingest_chunked
from .query_profile import detect_query_type, optimal_temperature
from .sampling import SamplerChain
from .session import ModelSession
from .stream_types import ErrorEvent, FinalEvent, StreamEvent, StreamingCallback, Timing, TokenEvent, Usage
from .text_codec import assemble
from .types import GenerateResponse, GenerationParams, ModelInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnTemplate:
    """ChatML framing for the cached call shape.

    `{content}` is substituted literally. The system block is tokenized with the
    begin marker, the user block without it; both parse special tokens.
    """

    system: str = "<|im_start|>system\n{content}<|im_end|>\n"
    user: str = "<|im_start|>user\n{content}<|im_end|>\n<|im_start|>assistant\n"

    def format_system(self, content: str) -> str:
        return self.system.replace("{content}", content)

    def format_user(self, content: str) -> str:
        return self.user.replace("{content}", content)


class TurnState(str, Enum):
    IDLE = "idle"
    PREFIX_RESOLVED = "prefix_resolved"
    INGESTED = "ingested"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults."""

    template: TurnTemplate = field(default_factory=TurnTemplate)
    # Pick the temperature from the prompt when the caller passes none.
    auto_temperature: bool = False


@dataclass
class _TurnOutcome:
    result: LoopResult
    usage: Usage
    timing: Timing
    cache_hit: bool | None


class TurnEngine:
    """Core turn engine.

    Thread-safety:
        The backend is not thread-safe. Every public operation holds the
        session lock for its whole duration (single-flight).
    """

    def __init__(self, session: ModelSession, *, config: EngineConfig | None = None) -> None:
        self._session = session
        self._config = config or EngineConfig()
        self._state = TurnState.IDLE
        self.last_turn_state: TurnState | None = None

    @property
    def session(self) -> ModelSession:
        return self._session

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def model_info(self) -> ModelInfo:
        return self._session.model_info

    def is_ready(self) -> bool:
        return self._session.is_ready()

    # -------------------------------------------------------------------------
    # Model lifecycle
    # -------------------------------------------------------------------------

    def load_model(self, model_path: str, **kwargs: Any) -> bool:
        """Load a model (see `ModelSession.load`). Returns False on failure."""
        return self._session.load(model_path, **kwargs)

    def unload_model(self) -> None:
        self._session.unload()

    def shutdown(self) -> None:
        self.unload_model()

    def estimate_token_count(self, text: str) -> int:
        """Token count of `text`, or `len(text) // 4` when it cannot be computed."""
        self._check_text("text", text)
        fallback = len(text) // 4
        with self._session.lock:
            if not self._session.is_ready():
                return fallback
            try:
                n = len(self._session.backend.tokenize(text, add_bos=False, parse_special=False))
            except TokenizationError as exc:
                logger.debug("Token estimate fell back to length heuristic: %s", exc)
                return fallback
        return n if n > 0 else fallback

    # -------------------------------------------------------------------------
    # Blocking generation
    # -------------------------------------------------------------------------

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GenerateResponse:
        """Generate a reply to a raw prompt.

        The prompt is ingested as one untracked sequence: the decode state is
        cleared and any cached prefix is dropped.

        Raises:
            InvalidInputError: `prompt` is not a string or overrides are invalid.
            ModelNotLoadedError: No model loaded.
            TokenizationError: Prompt could not be tokenized (nothing mutated).
            IngestionError: Prompt ingestion failed.
        """
        self._check_text("prompt", prompt)
        with self._session.lock:
            self._require_ready()
            params = self._resolve_params(prompt, max_tokens, temperature)
            pieces: list[bytes] = []
            outcome = self._execute(lambda: self._prepare_plain(prompt), params, pieces.append)
        return self._to_response(outcome, pieces)

    def generate_with_cache(
        self,
        system_prefix: str,
        user_text: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GenerateResponse:
        """Generate a reply reusing the decode state of a repeated system prefix.

        Raises:
            InvalidInputError: A part is not a string, or both parts are blank.
            ModelNotLoadedError: No model loaded.
            TokenizationError: Prefix or user turn could not be tokenized.
            IngestionError: Prefix or user turn ingestion failed.
        """
        self._check_text("system_prefix", system_prefix)
        self._check_text("user_text", user_text)
        if not system_prefix.strip() and not user_text.strip():
            raise InvalidInputError("Both system prefix and user text are empty.")

        with self._session.lock:
            self._require_ready()
            params = self._resolve_params(user_text, max_tokens, temperature)
            pieces: list[bytes] = []
            outcome = self._execute(
                lambda: self._prepare_cached(system_prefix, user_text),
                params,
                pieces.append,
            )
        return self._to_response(outcome, pieces)

    # -------------------------------------------------------------------------
    # Streaming generation
    # -------------------------------------------------------------------------

    def generate_streaming(
        self,
        prompt: str,
        max_tokens: int | None,
        temperature: float | None,
        callback: StreamingCallback,
    ) -> None:
        """Stream a reply to a raw prompt through `callback`.

        `on_token` receives each non-empty text fragment; then exactly one of
        `on_complete` / `on_error` is called. Model or ingestion failures are
        reported through `on_error`, as are a `prompt` that is not a string and an
        exception raised by `on_token`.

        Raises:
            CallbackContractError: `callback` lacks one of the three methods.
        """
        self._check_callback(callback)

        def emit(event: StreamEvent) -> None:
            if isinstance(event, TokenEvent):
                callback.on_token(event.text)
            elif isinstance(event, FinalEvent):
                callback.on_complete()
            elif isinstance(event, ErrorEvent):
                callback.on_error(event.message)

        self._stream(prompt, max_tokens, temperature, emit, None)

    async def astream_generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Async iterator over the events of one streaming generation.

        Yields zero or more `TokenEvent`s, then exactly one `FinalEvent` or
        `ErrorEvent`. Closing the iterator early cancels generation at the next
        decode step. Invalid input arrives as the `ErrorEvent`.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        cancel = threading.Event()

        def emit(event: StreamEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        def worker() -> None:
            try:
                self._stream(prompt, max_tokens, temperature, emit, cancel)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        thread = threading.Thread(target=worker, name=f"prefixchat-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        except asyncio.CancelledError:
            cancel.set()
            raise
        finally:
            # If the consumer stops early (disconnect / generator close), cancel generation promptly.
            cancel.set()

    def _stream(
        self,
        prompt: str,
        max_tokens: int | None,
        temperature: float | None,
        emit: Callable[[StreamEvent], None],
        cancel: threading.Event | None,
    ) -> None:
        """Run one streaming turn; `emit` sees exactly one terminal event, last."""

        def on_piece(raw: bytes) -> None:
            # Each fragment is assembled on its own; codepoints split across tokens are dropped.
            text = assemble(raw)
            if text:
                emit(TokenEvent(text))

        terminal: StreamEvent
        with self._session.lock:
            try:
                self._require_ready()
                self._check_text("prompt", prompt)
                params = self._resolve_params(prompt, max_tokens, temperature)
                outcome = self._execute(lambda: self._prepare_plain(prompt), params, on_piece, cancel)
                if outcome.result.finish_reason == "partial":
                    terminal = ErrorEvent(outcome.result.error or "Generation stopped early.")
                else:
                    terminal = FinalEvent(
                        finish_reason=outcome.result.finish_reason,
                        usage=outcome.usage,
                        timing=outcome.timing,
                    )
            except PrefixChatError as exc:
                terminal = ErrorEvent(str(exc))
            except Exception as exc:
                logger.exception("Streaming generation failed")
                terminal = ErrorEvent(f"Generation failed: {exc}")
        emit(terminal)

    # -------------------------------------------------------------------------
    # Internal: turn execution
    # -------------------------------------------------------------------------

    def _execute(
        self,
        prepare: Callable[[], tuple[int, bool | None]],
        params: GenerationParams,
        on_piece: Callable[[bytes], None],
        cancel: threading.Event | None = None,
    ) -> _TurnOutcome:
        """Prepare the decode state and run the sampling loop. Caller holds the lock."""
        backend = self._session.backend
        started = time.monotonic()
        self._transition(TurnState.IDLE)

        try:
            prompt_tokens, cache_hit = prepare()
            prefill_done = time.monotonic()

            self._transition(TurnState.GENERATING)
            sampler = SamplerChain.from_params(params)
            result = SamplingLoop(backend, sampler).run(params.max_tokens, on_piece, cancel)
        except Exception:
            self._transition(TurnState.ERRORED)
            raise

        ended = time.monotonic()
        self._transition(TurnState.ERRORED if result.finish_reason == "partial" else TurnState.COMPLETED)

        decode_s = max(ended - prefill_done, 0.0)
        tok_per_s = None
        if decode_s > 0 and result.completion_tokens > 0:
            tok_per_s = result.completion_tokens / decode_s

        timing = Timing(
            prefill_s=max(prefill_done - started, 0.0),
            decode_s=decode_s,
            total_s=max(ended - started, 0.0),
            tok_per_s=tok_per_s,
        )
        usage = Usage(prompt_tokens=prompt_tokens, completion_tokens=result.completion_tokens)
        logger.info(
            "Turn finished (%s): prompt=%d completion=%d cache_hit=%s tok/s=%s",
            result.finish_reason,
            usage.prompt_tokens,
            usage.completion_tokens,
            cache_hit,
            f"{tok_per_s:.1f}" if tok_per_s is not None else "n/a",
        )
        return _TurnOutcome(result=result, usage=usage, timing=timing, cache_hit=cache_hit)

    def _prepare_plain(self, prompt: str) -> tuple[int, bool | None]:
        session = self._session
        backend = session.backend

        token_ids = backend.tokenize(prompt, add_bos=True, parse_special=True)
        if not token_ids:
            raise TokenizationError("Prompt produced no tokens.")

        # Untracked sequence: nothing of the cached prefix survives.
        session.prefix_cache.clear()
        backend.clear()
        self._transition(TurnState.PREFIX_RESOLVED)

        ingest_chunked(backend, token_ids, chunk_width=session.chunk_width)
        self._transition(TurnState.INGESTED)
        return len(token_ids), None

    def _prepare_cached(self, system_prefix: str, user_text: str) -> tuple[int, bool | None]:
        session = self._session
        backend = session.backend
        template = self._config.template

        user_ids = backend.tokenize(template.format_user(user_text), add_bos=False, parse_special=True)

        decision = session.prefix_cache.resolve(
            backend,
            system_prefix,
            template.format_system(system_prefix),
            chunk_width=session.chunk_width,
        )
        self._transition(TurnState.PREFIX_RESOLVED)

        ingest_chunked(backend, user_ids, chunk_width=session.chunk_width)
        self._transition(TurnState.INGESTED)
        return backend.n_positions, decision.hit

    def _to_response(self, outcome: _TurnOutcome, pieces: list[bytes]) -> GenerateResponse:
        # Blocking delivery assembles all bytes at once so split codepoints survive.
        return GenerateResponse(
            text=assemble(b"".join(pieces)),
            finish_reason=outcome.result.finish_reason,
            usage=outcome.usage,
            timing=outcome.timing,
            cache_hit=outcome.cache_hit,
            error=outcome.result.error,
        )

    # -------------------------------------------------------------------------
    # Internal: validation
    # -------------------------------------------------------------------------

    def _transition(self, state: TurnState) -> None:
        logger.debug("Turn state: %s -> %s", self._state.value, state.value)
        self._state = state
        if state in (TurnState.COMPLETED, TurnState.ERRORED):
            self.last_turn_state = state

    def _require_ready(self) -> None:
        if not self._session.is_ready():
            raise ModelNotLoadedError()

    def _resolve_params(
        self,
        profile_text: str,
        max_tokens: int | None,
        temperature: float | None,
    ) -> GenerationParams:
        if temperature is None and self._config.auto_temperature:
            query_type = detect_query_type(profile_text)
            temperature = optimal_temperature(query_type)
            logger.debug("Auto temperature: %s -> %.2f", query_type.value, temperature)

        params = self._session.params.with_overrides(max_tokens=max_tokens, temperature=temperature)
        try:
            params.validate()
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc
        return params

    @staticmethod
    def _check_text(name: str, value: Any) -> None:
        if not isinstance(value, str):
            raise InvalidInputError(f"'{name}' must be a string, got {type(value).__name__}.")

    @staticmethod
    def _check_callback(callback: Any) -> None:
        missing = [
            name
            for name in ("on_token", "on_complete", "on_error")
            if not callable(getattr(callback, name, None))
        ]
        if missing:
            raise CallbackContractError(f"Streaming callback is missing: {', '.join(missing)}.")
