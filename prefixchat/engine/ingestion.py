"""Chunked context ingestion.

Long token sequences are fed to the backend in consecutive, non-overlapping
chunks of at most `chunk_width` tokens, strictly in order. The first failing
chunk aborts the call; chunks ingested before it stay resident.
"""

from __future__ import annotations

import logging
import time
from typing import Iterator, Sequence

from .adapters.base import BaseBackend
from .errors import IngestionError

logger = logging.getLogger(__name__)


def iter_chunks(token_ids: Sequence[int], chunk_width: int) -> Iterator[Sequence[int]]:
    if chunk_width <= 0:
        raise ValueError(f"chunk_width must be > 0, got {chunk_width}")
    for start in range(0, len(token_ids), chunk_width):
        yield token_ids[start : start + chunk_width]


def ingest_chunked(backend: BaseBackend, token_ids: Sequence[int], *, chunk_width: int) -> int:
    """Ingest `token_ids` after the currently resident positions.

    Args:
        backend: Loaded backend.
        token_ids: Tokens to append. Empty input is a no-op.
        chunk_width: Maximum tokens per backend batch.

    Returns:
        Number of positions ingested.

    Raises:
        IngestionError: On the first failing chunk, carrying its index and the
            number of positions ingested by this call before it.
    """
    ingested = 0
    for index, chunk in enumerate(iter_chunks(token_ids, chunk_width)):
        started = time.perf_counter()
        try:
            backend.ingest_batch(chunk)
        except Exception as exc:
            raise IngestionError(
                f"Failed to ingest chunk {index} ({len(chunk)} tokens) after {ingested} tokens: {exc}",
                chunk_index=index,
                ingested=ingested,
            ) from exc

        ingested += len(chunk)
        if logger.isEnabledFor(logging.DEBUG):
            elapsed = max(time.perf_counter() - started, 1e-9)
            logger.debug(
                "Ingested chunk %d: %d tokens in %.3fs (%.1f tok/s)",
                index,
                len(chunk),
                elapsed,
                len(chunk) / elapsed,
            )
    return ingested
