"""Single-record system-prefix cache.

The session remembers the raw text and token ids of the last system prefix it
ingested. While a record exists, positions [0, token_count) of the decode state
hold exactly those tokens, so a turn that repeats the same prefix only has to
drop whatever follows them.

Matching is exact: no normalization, a trailing space is a different prefix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .adapters.base import BaseBackend
from .ingestion import ingest_chunked

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrefixCacheRecord:
    text: str
    token_ids: tuple[int, ...]

    @property
    def token_count(self) -> int:
        return len(self.token_ids)


@dataclass(frozen=True)
class CacheDecision:
    hit: bool
    cached_token_count: int = 0


class PrefixCache:
    def __init__(self) -> None:
        self._record: PrefixCacheRecord | None = None

    @property
    def record(self) -> PrefixCacheRecord | None:
        return self._record

    def clear(self) -> None:
        self._record = None

    def decide(self, text: str) -> CacheDecision:
        """Hit iff the stored text equals `text` and covers at least one token."""
        record = self._record
        if record is not None and record.token_count > 0 and record.text == text:
            return CacheDecision(hit=True, cached_token_count=record.token_count)
        return CacheDecision(hit=False)

    def resolve(
        self,
        backend: BaseBackend,
        text: str,
        formatted_prefix: str,
        *,
        chunk_width: int,
    ) -> CacheDecision:
        """Make positions [0, N) hold the prefix for `text` and nothing after.

        On a hit the decode state is truncated to the cached length. On a miss
        the formatted prefix is tokenized first (so a tokenization failure
        leaves everything untouched), then the record is dropped, the decode
        state cleared and the prefix ingested. The new record is stored only
        after ingestion succeeds.

        Raises:
            TokenizationError: Prefix could not be tokenized (no mutation).
            IngestionError: Prefix ingestion failed (no record left behind).
        """
        decision = self.decide(text)
        if decision.hit:
            if backend.n_positions >= decision.cached_token_count:
                backend.truncate(decision.cached_token_count)
                logger.debug("Prefix cache hit: reusing %d positions", decision.cached_token_count)
                return decision
            logger.warning(
                "Prefix cache record is stale (%d resident < %d cached); re-ingesting",
                backend.n_positions,
                decision.cached_token_count,
            )

        token_ids = backend.tokenize(formatted_prefix, add_bos=True, parse_special=True)

        self._record = None
        backend.clear()
        ingest_chunked(backend, token_ids, chunk_width=chunk_width)

        self._record = PrefixCacheRecord(text=text, token_ids=tuple(token_ids))
        logger.debug("Prefix cache miss: ingested %d prefix tokens", len(token_ids))
        return CacheDecision(hit=False, cached_token_count=len(token_ids))
