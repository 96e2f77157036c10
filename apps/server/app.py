"""FastAPI app for blocking, cached and streaming generation.

The HTTP layer lives under `apps/` and can depend on heavier deps (FastAPI, uvicorn).
All model execution is delegated to the core engine (`prefixchat/engine`).
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from prefixchat._version import __version__
from prefixchat.engine.errors import (
    IngestionError,
    InvalidInputError,
    ModelNotLoadedError,
    TokenizationError,
)
from prefixchat.engine.stream_types import ErrorEvent, FinalEvent, TokenEvent, Timing, Usage
from prefixchat.engine.turn_engine import TurnEngine
from prefixchat.engine.types import GenerateResponse


def create_app(
    *,
    engine: TurnEngine,
    model_id: str,
    http_max_completion_tokens: int | None = None,
) -> FastAPI:
    app = FastAPI(title="prefixchat Inference Server", version=__version__)

    if http_max_completion_tokens is not None:
        try:
            http_max_completion_tokens = int(http_max_completion_tokens)
        except Exception as exc:
            raise ValueError("http_max_completion_tokens must be an integer") from exc
        if http_max_completion_tokens <= 0:
            raise ValueError("http_max_completion_tokens must be > 0")

    async def _json_dict(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except Exception as exc:
            raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
        if isinstance(payload, dict):
            return payload
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    def _overrides(payload: dict[str, Any]) -> tuple[int | None, float | None]:
        max_tokens = payload.get("max_tokens")
        if max_tokens is not None:
            if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
                raise HTTPException(status_code=400, detail="'max_tokens' must be an integer.")
            if max_tokens < 0:
                raise HTTPException(status_code=400, detail="'max_tokens' must be >= 0.")
            if http_max_completion_tokens is not None and max_tokens > http_max_completion_tokens:
                raise HTTPException(
                    status_code=400,
                    detail=f"'max_tokens' exceeds server cap ({http_max_completion_tokens}).",
                )

        temperature = payload.get("temperature")
        if temperature is not None:
            if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
                raise HTTPException(status_code=400, detail="'temperature' must be a number.")
            temperature = float(temperature)
        return max_tokens, temperature

    def _required_str(payload: dict[str, Any], key: str) -> str:
        value = payload.get(key)
        if not isinstance(value, str):
            raise HTTPException(status_code=400, detail=f"'{key}' is required and must be a string.")
        return value

    async def _call_engine(fn: Any, *args: Any) -> GenerateResponse:
        try:
            return await asyncio.to_thread(fn, *args)
        except ModelNotLoadedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except InvalidInputError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except (TokenizationError, IngestionError) as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    # -------------------------------------------------------------------------
    # Health & Model
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "ready": engine.is_ready()}

    @app.get("/v1/model")
    async def model_info() -> dict[str, Any]:
        info = engine.model_info
        return {
            "id": model_id,
            "backend": info.backend,
            "loaded": info.loaded,
            "context_size": info.context_size,
            "n_threads": info.n_threads,
        }

    @app.post("/v1/model/unload")
    async def unload_model() -> Any:
        await asyncio.to_thread(engine.unload_model)
        return JSONResponse({"status": "unloaded"})

    @app.post("/v1/tokens/estimate")
    async def estimate_tokens(request: Request) -> Any:
        payload = await _json_dict(request)
        text = _required_str(payload, "text")
        n = await asyncio.to_thread(engine.estimate_token_count, text)
        return JSONResponse({"tokens": n})

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    @app.post("/v1/generate")
    async def generate(request: Request) -> Any:
        payload = await _json_dict(request)
        prompt = _required_str(payload, "prompt")
        max_tokens, temperature = _overrides(payload)

        if bool(payload.get("stream", False)):
            if not engine.is_ready():
                raise HTTPException(status_code=503, detail=str(ModelNotLoadedError()))
            event_iter = _stream_generate(
                engine=engine,
                prompt=prompt,
                max_tokens=max_tokens,
                temperature=temperature,
                model_id=model_id,
            )
            return StreamingResponse(event_iter, media_type="text/event-stream")

        result = await _call_engine(engine.generate, prompt, max_tokens, temperature)
        return JSONResponse(_response_json(result, model_id=model_id))

    @app.post("/v1/generate/cached")
    async def generate_cached(request: Request) -> Any:
        payload = await _json_dict(request)
        system = _required_str(payload, "system")
        user = _required_str(payload, "user")
        max_tokens, temperature = _overrides(payload)

        result = await _call_engine(engine.generate_with_cache, system, user, max_tokens, temperature)
        return JSONResponse(_response_json(result, model_id=model_id))

    return app


def _sse(data: str) -> str:
    return f"data: {data}\n\n"


def _usage_json(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _timing_json(timing: Timing) -> dict[str, float | None]:
    return {
        "prefill_s": timing.prefill_s,
        "decode_s": timing.decode_s,
        "total_s": timing.total_s,
        "tok_per_s": timing.tok_per_s,
    }


def _response_json(result: GenerateResponse, *, model_id: str) -> dict[str, Any]:
    resp: dict[str, Any] = {
        "object": "generation",
        "model": model_id,
        "text": result.text,
        "finish_reason": result.finish_reason,
        "usage": _usage_json(result.usage),
        "timing": _timing_json(result.timing),
    }
    if result.cache_hit is not None:
        resp["cache_hit"] = result.cache_hit
    if result.error is not None:
        resp["error"] = result.error
    return resp


async def _stream_generate(
    *,
    engine: TurnEngine,
    prompt: str,
    max_tokens: int | None,
    temperature: float | None,
    model_id: str,
) -> AsyncIterator[str]:
    async for event in engine.astream_generate(prompt, max_tokens, temperature):
        if isinstance(event, TokenEvent):
            chunk = {"object": "generation.chunk", "model": model_id, "text": event.text}
            yield _sse(json.dumps(chunk, ensure_ascii=False))
        elif isinstance(event, FinalEvent):
            terminal = {
                "object": "generation.chunk",
                "model": model_id,
                "text": "",
                "finish_reason": event.finish_reason,
                "usage": _usage_json(event.usage),
                "timing": _timing_json(event.timing),
            }
            yield _sse(json.dumps(terminal, ensure_ascii=False))
        elif isinstance(event, ErrorEvent):
            yield _sse(json.dumps({"error": {"message": event.message}}, ensure_ascii=False))
    yield "data: [DONE]\n\n"
