import pytest

pytest.importorskip("torch")

from prefixchat.engine.adapters.scripted import ScriptedBackend
from prefixchat.engine.session import ModelSession
from prefixchat.engine.types import SessionConfig


def test_context_window_has_a_floor() -> None:
    session = ModelSession(ScriptedBackend())
    assert session.load("scripted", n_threads=2, context_size=2048)
    assert session.context_size == 4096

    assert session.load("scripted", n_threads=2, context_size=8192)
    assert session.context_size == 8192


def test_floor_and_chunk_width_are_configurable() -> None:
    session = ModelSession(ScriptedBackend(), config=SessionConfig(min_context_size=512, ingestion_chunk_width=64))
    assert session.load("scripted", context_size=128)
    assert session.context_size == 512
    assert session.chunk_width == 64


def test_load_stores_generation_defaults() -> None:
    session = ModelSession(ScriptedBackend())
    assert session.load("scripted", n_threads=3, temperature=0.2, top_k=5, top_p=0.5, min_p=0.0)
    assert session.params.n_threads == 3
    assert session.params.temperature == 0.2
    assert (session.params.top_k, session.params.top_p, session.params.min_p) == (5, 0.5, 0.0)
    assert session.model_info.loaded
    assert session.model_info.backend == "scripted"


@pytest.mark.parametrize("stage", ["open", "parse", "vocab", "context"])
def test_load_failure_returns_false_and_stays_unloaded(stage: str) -> None:
    session = ModelSession(ScriptedBackend(fail_load_stage=stage))
    assert session.load("scripted") is False
    assert not session.is_ready()
    assert session.last_load_error is not None
    assert session.last_load_error.stage == stage


def test_empty_path_fails_at_open() -> None:
    session = ModelSession(ScriptedBackend())
    assert session.load("") is False
    assert session.last_load_error.stage == "open"


def test_reload_tears_down_previous_model_and_cache() -> None:
    backend = ScriptedBackend()
    session = ModelSession(backend)
    assert session.load("first")
    session.prefix_cache.resolve(backend, "sys", "sys", chunk_width=16)
    assert backend.n_positions > 0

    assert session.load("second")
    assert backend.n_positions == 0
    assert session.prefix_cache.record is None
    assert session.model_info.model_path == "second"


def test_failed_reload_leaves_nothing_loaded() -> None:
    backend = ScriptedBackend()
    session = ModelSession(backend)
    assert session.load("first")

    backend.fail_load_stage = "parse"
    assert session.load("second") is False
    assert not session.is_ready()
    assert session.model_info.model_path is None


def test_unload_is_idempotent() -> None:
    session = ModelSession(ScriptedBackend())
    session.unload()
    assert session.load("scripted")
    session.unload()
    session.unload()
    assert not session.is_ready()


def test_min_p_is_off_by_default() -> None:
    session = ModelSession(ScriptedBackend())
    assert session.load("scripted")
    assert session.params.min_p == 0.0


@pytest.mark.parametrize(
    "overrides",
    [{"temperature": -1.0}, {"top_p": 0.0}, {"min_p": 1.5}, {"n_threads": 0}],
)
def test_invalid_defaults_return_false_and_keep_current_model(overrides) -> None:
    backend = ScriptedBackend()
    session = ModelSession(backend)
    assert session.load("first", temperature=0.3)
    backend.ingest_batch([1, 2, 3])

    assert session.load("second", **overrides) is False
    assert session.is_ready()
    assert session.model_info.model_path == "first"
    assert session.params.temperature == 0.3
    assert backend.n_positions == 3
