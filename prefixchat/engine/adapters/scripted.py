"""Deterministic in-memory backend.

Byte-level vocabulary (ids 0-255 are the bytes themselves) plus a handful of
ChatML special tokens. Instead of running a network, the scores after each
prompt put all of their mass on the next byte of a scripted reply, followed by
the end-of-sequence marker. Useful for dry runs of the server and for exercising
the cache/ingestion/decoding pipeline without model weights.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Sequence

import torch

from ..errors import LoadError, TokenizationError
from .base import BaseBackend

logger = logging.getLogger(__name__)

BOS_ID = 256
EOS_ID = 257

SPECIAL_TOKENS: dict[str, int] = {
    "<|startoftext|>": 258,
    "<|im_start|>": 259,
    "<|im_end|>": 260,
}

VOCAB_SIZE = 261

_SPECIAL_SPLIT = re.compile("(" + "|".join(re.escape(s) for s in SPECIAL_TOKENS) + ")")
_SPECIAL_BY_ID = {v: k for k, v in SPECIAL_TOKENS.items()}

_PEAK_SCORE = 30.0

DEFAULT_REPLY = "Hello from the scripted backend."


class ScriptedBackend(BaseBackend):
    """
    Backend with a byte-level vocabulary and scripted replies.

    Replies are consumed in order (cycling) by successive generations. A
    generation starts whenever scores are requested after anything other than
    the echo of the previously suggested token.

    Args:
        replies: Reply texts, one per generation.
        fail_on_ingest: Predicate `(call_index, token_ids) -> bool`; when true the
            batch is rejected and the decode state is left untouched. `call_index`
            counts `ingest_batch` calls since load, starting at 0.
        fail_load_stage: Make `load()` fail at this stage.
        fail_tokenize_on: Make `tokenize()` fail for text containing this substring.
    """

    name = "scripted"

    def __init__(
        self,
        replies: Sequence[str | bytes] | None = None,
        *,
        fail_on_ingest: Callable[[int, list[int]], bool] | None = None,
        fail_load_stage: str | None = None,
        fail_tokenize_on: str | None = None,
    ) -> None:
        self._replies: list[bytes] = [
            r.encode("utf-8") if isinstance(r, str) else bytes(r) for r in (replies or [DEFAULT_REPLY])
        ]
        self.fail_on_ingest = fail_on_ingest
        self.fail_load_stage = fail_load_stage
        self.fail_tokenize_on = fail_tokenize_on

        self._loaded = False
        self._model_path: str | None = None
        self._context_size = 0

        # Resident token ids, position i at index i.
        self.tokens: list[int] = []
        # (start_position, batch_length) for every successful ingest_batch call.
        self.ingest_calls: list[tuple[int, int]] = []
        self._ingest_count = 0

        self._turn = 0
        self._reply: bytes | None = None
        self._cursor = 0
        self._suggested: int | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def load(self, model_path: str, *, n_threads: int, context_size: int, **kwargs) -> None:
        if not model_path:
            raise LoadError("open", "Empty model path.")
        if self.fail_load_stage is not None:
            raise LoadError(self.fail_load_stage, f"Scripted failure while loading {model_path}")

        self._loaded = True
        self._model_path = model_path
        self._context_size = int(context_size)
        self._reset_state()
        self.ingest_calls = []
        self._ingest_count = 0
        self._turn = 0
        logger.info("Scripted backend ready (context=%d)", self._context_size)

    def unload(self) -> None:
        self._loaded = False
        self._model_path = None
        self._context_size = 0
        self._reset_state()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def context_size(self) -> int:
        return self._context_size

    @property
    def n_positions(self) -> int:
        return len(self.tokens)

    @property
    def model_info(self) -> dict[str, Any]:
        info = super().model_info
        info.update({"model_path": self._model_path, "vocab_size": VOCAB_SIZE, "n_positions": self.n_positions})
        return info

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, *, add_bos: bool, parse_special: bool) -> list[int]:
        self._ensure_loaded()
        if self.fail_tokenize_on is not None and self.fail_tokenize_on in text:
            raise TokenizationError(f"Scripted tokenization failure for {self.fail_tokenize_on!r}")

        ids: list[int] = [BOS_ID] if add_bos else []
        parts = _SPECIAL_SPLIT.split(text) if parse_special else [text]
        for part in parts:
            if not part:
                continue
            if parse_special and part in SPECIAL_TOKENS:
                ids.append(SPECIAL_TOKENS[part])
            else:
                ids.extend(part.encode("utf-8"))
        return ids

    def token_to_piece(self, token_id: int) -> bytes:
        token_id = int(token_id)
        if 0 <= token_id < 256:
            return bytes([token_id])
        if token_id in _SPECIAL_BY_ID:
            return _SPECIAL_BY_ID[token_id].encode("utf-8")
        return b""

    def is_end_of_sequence(self, token_id: int) -> bool:
        return int(token_id) in (EOS_ID, SPECIAL_TOKENS["<|im_end|>"])

    # -------------------------------------------------------------------------
    # Decode state
    # -------------------------------------------------------------------------

    def ingest_batch(self, token_ids: Sequence[int]) -> None:
        self._ensure_loaded()
        batch = [int(t) for t in token_ids]
        call_index = self._ingest_count
        self._ingest_count += 1

        if not batch:
            return
        if self.fail_on_ingest is not None and self.fail_on_ingest(call_index, batch):
            raise RuntimeError(f"Scripted ingestion failure at call {call_index}")
        if len(self.tokens) + len(batch) > self._context_size:
            raise RuntimeError(
                f"Context window exceeded: {len(self.tokens)} + {len(batch)} > {self._context_size} positions."
            )
        for t in batch:
            if not 0 <= t < VOCAB_SIZE:
                raise RuntimeError(f"Token id out of range: {t}")

        echo = self._suggested is not None and batch == [self._suggested]
        self.ingest_calls.append((len(self.tokens), len(batch)))
        self.tokens.extend(batch)
        self._suggested = None
        if echo:
            self._cursor += 1
        else:
            self._reply = None
            self._cursor = 0

    def next_token_logits(self) -> torch.Tensor:
        self._ensure_loaded()
        if not self.tokens:
            raise RuntimeError("No scores available. Ingest at least one token first.")

        if self._reply is None:
            self._reply = self._replies[self._turn % len(self._replies)]
            self._turn += 1
            self._cursor = 0

        token = self._reply[self._cursor] if self._cursor < len(self._reply) else EOS_ID
        self._suggested = token

        scores = torch.zeros(VOCAB_SIZE, dtype=torch.float32)
        scores[token] = _PEAK_SCORE
        return scores

    def truncate(self, position: int) -> None:
        self._ensure_loaded()
        position = int(position)
        if position < 0:
            raise ValueError(f"position must be >= 0, got {position}")
        del self.tokens[position:]
        self._reply = None
        self._suggested = None

    def clear(self) -> None:
        self._ensure_loaded()
        self._reset_state()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _reset_state(self) -> None:
        self.tokens = []
        self._reply = None
        self._cursor = 0
        self._suggested = None

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            raise RuntimeError("Model not loaded. Call load() first.")
