"""
prefixchat - Session layer for local text generation with system-prefix reuse.

The engine keeps the decode state of the last system prefix resident between
turns, so a conversation that repeats its instructions only pays for the new
user turn. Long inputs are ingested in bounded chunks, replies are sampled with
a top-k / top-p / temperature chain, and raw token bytes are assembled
into valid UTF-8 for blocking or streaming delivery.

Quick Start:
    from prefixchat import ModelSession, TurnEngine
    from prefixchat.engine.adapters.transformers_backend import TransformersBackend

    session = ModelSession(TransformersBackend())
    engine = TurnEngine(session)
    engine.load_model("path/to/checkpoint", n_threads=4, context_size=4096)

    reply = engine.generate_with_cache("You are a calculator.", "2+2?")
    print(reply.text, reply.cache_hit)
"""

from prefixchat._version import __version__

from prefixchat.engine.errors import (
    CallbackContractError,
    IngestionError,
    InvalidInputError,
    LoadError,
    ModelNotLoadedError,
    PrefixChatError,
    TokenizationError,
)
from prefixchat.engine.session import ModelSession
from prefixchat.engine.stream_types import ErrorEvent, FinalEvent, StreamingCallback, TokenEvent
from prefixchat.engine.turn_engine import EngineConfig, TurnEngine, TurnState, TurnTemplate
from prefixchat.engine.types import GenerateResponse, GenerationParams, SessionConfig

__all__ = [
    "__version__",
    # Engine
    "ModelSession",
    "TurnEngine",
    "EngineConfig",
    "TurnTemplate",
    "TurnState",
    # Types
    "GenerationParams",
    "SessionConfig",
    "GenerateResponse",
    "StreamingCallback",
    "TokenEvent",
    "FinalEvent",
    "ErrorEvent",
    # Errors
    "PrefixChatError",
    "ModelNotLoadedError",
    "InvalidInputError",
    "LoadError",
    "TokenizationError",
    "IngestionError",
    "CallbackContractError",
]
