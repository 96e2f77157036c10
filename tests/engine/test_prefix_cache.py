import pytest

pytest.importorskip("torch")

from prefixchat.engine.adapters.scripted import BOS_ID, ScriptedBackend
from prefixchat.engine.errors import IngestionError, TokenizationError
from prefixchat.engine.prefix_cache import PrefixCache


def _backend(**kwargs) -> ScriptedBackend:
    backend = ScriptedBackend(**kwargs)
    backend.load("scripted", n_threads=1, context_size=4096)
    return backend


def _fmt(text: str) -> str:
    return f"<|im_start|>system\n{text}<|im_end|>\n"


def test_decide_is_pure_and_exact() -> None:
    backend = _backend()
    cache = PrefixCache()
    assert not cache.decide("You are helpful").hit

    cache.resolve(backend, "You are helpful", _fmt("You are helpful"), chunk_width=16)
    calls = list(backend.ingest_calls)

    decision = cache.decide("You are helpful")
    assert decision.hit
    assert decision.cached_token_count == cache.record.token_count
    assert backend.ingest_calls == calls

    # A trailing space is a different prefix.
    assert not cache.decide("You are helpful ").hit


def test_miss_ingests_prefix_and_stores_record() -> None:
    backend = _backend()
    cache = PrefixCache()

    decision = cache.resolve(backend, "sys", _fmt("sys"), chunk_width=8)

    assert not decision.hit
    record = cache.record
    assert record is not None
    assert record.text == "sys"
    assert record.token_ids[0] == BOS_ID
    assert tuple(backend.tokens) == record.token_ids
    # Chunked at width 8.
    assert all(length <= 8 for _, length in backend.ingest_calls)


def test_hit_truncates_to_cached_length() -> None:
    backend = _backend()
    cache = PrefixCache()
    cache.resolve(backend, "sys", _fmt("sys"), chunk_width=64)
    n = cache.record.token_count

    # Simulate a previous user turn and reply after the prefix.
    backend.ingest_batch(list(b"user turn and reply"))
    assert backend.n_positions > n

    decision = cache.resolve(backend, "sys", _fmt("sys"), chunk_width=64)

    assert decision.hit
    assert decision.cached_token_count == n
    assert backend.n_positions == n
    assert tuple(backend.tokens) == cache.record.token_ids


def test_changed_prefix_clears_and_reingests() -> None:
    backend = _backend()
    cache = PrefixCache()
    cache.resolve(backend, "first", _fmt("first"), chunk_width=64)
    backend.ingest_batch(list(b"tail"))

    decision = cache.resolve(backend, "second", _fmt("second"), chunk_width=64)

    assert not decision.hit
    assert cache.record.text == "second"
    assert tuple(backend.tokens) == cache.record.token_ids


def test_stale_record_falls_through_to_miss() -> None:
    backend = _backend()
    cache = PrefixCache()
    cache.resolve(backend, "sys", _fmt("sys"), chunk_width=64)
    # Something cleared the decode state behind the cache's back.
    backend.clear()

    decision = cache.resolve(backend, "sys", _fmt("sys"), chunk_width=64)

    assert not decision.hit
    assert tuple(backend.tokens) == cache.record.token_ids


def test_tokenization_failure_leaves_state_untouched() -> None:
    backend = _backend(fail_tokenize_on="broken")
    cache = PrefixCache()
    cache.resolve(backend, "ok", _fmt("ok"), chunk_width=64)
    before = list(backend.tokens)

    with pytest.raises(TokenizationError):
        cache.resolve(backend, "broken", _fmt("broken"), chunk_width=64)

    assert backend.tokens == before
    assert cache.record.text == "ok"


def test_failed_prefix_ingestion_leaves_no_record() -> None:
    backend = _backend(fail_on_ingest=lambda call_index, batch: call_index == 1)
    cache = PrefixCache()

    with pytest.raises(IngestionError):
        cache.resolve(backend, "a long system prefix", _fmt("a long system prefix"), chunk_width=4)

    assert cache.record is None
    assert not cache.decide("a long system prefix").hit


def test_clear_drops_record() -> None:
    backend = _backend()
    cache = PrefixCache()
    cache.resolve(backend, "sys", _fmt("sys"), chunk_width=64)
    cache.clear()
    assert cache.record is None
    assert not cache.decide("sys").hit
