"""Autoregressive sampling loop.

Each step draws a token from the backend's current scores, hands its raw bytes
to the caller, then feeds the token back so the next scores are conditioned on
it. The end-of-sequence token is neither emitted nor ingested.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .adapters.base import BaseBackend
from .errors import IngestionError
from .ingestion import ingest_chunked
from .sampling import SamplerChain
from .types import FinishReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopResult:
    completion_tokens: int
    finish_reason: FinishReason
    error: str | None = None


class SamplingLoop:
    def __init__(self, backend: BaseBackend, sampler: SamplerChain) -> None:
        self._backend = backend
        self._sampler = sampler

    def run(
        self,
        max_tokens: int,
        on_piece: Callable[[bytes], None],
        cancel: threading.Event | None = None,
    ) -> LoopResult:
        """Generate up to `max_tokens` tokens.

        Args:
            max_tokens: Step budget. 0 generates nothing.
            on_piece: Receives the raw bytes of every emitted token, in order.
                Exceptions raised here propagate to the caller.
            cancel: Checked between steps only.

        Returns:
            LoopResult with finish_reason "stop" (end-of-sequence), "length"
            (budget reached), "partial" (feeding a token back failed) or
            "cancelled".
        """
        backend = self._backend
        emitted = 0

        while emitted < max_tokens:
            if cancel is not None and cancel.is_set():
                return LoopResult(emitted, "cancelled")

            token_id = self._sampler.sample(backend.next_token_logits())
            if backend.is_end_of_sequence(token_id):
                return LoopResult(emitted, "stop")

            on_piece(backend.token_to_piece(token_id))
            emitted += 1

            try:
                ingest_chunked(backend, [token_id], chunk_width=1)
            except IngestionError as exc:
                logger.warning("Generation stopped after %d tokens: %s", emitted, exc)
                return LoopResult(emitted, "partial", str(exc))

        return LoopResult(emitted, "length")
