"""prefixchat inference server entrypoint (FastAPI + uvicorn).

Example:
    python -m apps.server.main --model ./models/lfm2-1.2b --threads 4 --ctx-size 4096 --port 8787
"""

from __future__ import annotations

import argparse
import os
from typing import Any

from apps.server.app import create_app
from prefixchat.engine.adapters.base import BaseBackend
from prefixchat.engine.adapters.scripted import ScriptedBackend
from prefixchat.engine.adapters.transformers_backend import TransformersBackend
from prefixchat.engine.session import ModelSession
from prefixchat.engine.turn_engine import EngineConfig, TurnEngine
from prefixchat.engine.types import SessionConfig

# "scripted" serves canned replies and needs no weights.
_BACKENDS: dict[str, type[BaseBackend]] = {
    "transformers": TransformersBackend,
    "scripted": ScriptedBackend,
}


def _make_backend(name: str) -> BaseBackend:
    if name not in _BACKENDS:
        available = ", ".join(_BACKENDS)
        raise ValueError(f"Unknown backend: {name!r}. Available: {available}")
    return _BACKENDS[name]()


def _default_chunk_width() -> int:
    raw = os.environ.get("PREFIXCHAT_CHUNK_WIDTH")
    if not raw:
        return 2048
    try:
        return int(raw)
    except ValueError as exc:
        raise SystemExit(f"PREFIXCHAT_CHUNK_WIDTH must be an integer, got {raw!r}") from exc


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="prefixchat inference server")
    p.add_argument("--model", required=True, help="Local model path")
    p.add_argument(
        "--backend",
        default="transformers",
        choices=sorted(_BACKENDS),
        help="Model backend (default: transformers)",
    )
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")

    p.add_argument("--threads", type=int, default=4, help="Worker threads (default: 4)")
    p.add_argument("--ctx-size", type=int, default=2048, help="Requested context window (default: 2048)")
    p.add_argument("--temperature", type=float, default=0.7, help="Default temperature (default: 0.7)")
    p.add_argument("--top-k", type=int, default=40, help="Top-k cutoff (default: 40)")
    p.add_argument("--top-p", type=float, default=0.9, help="Nucleus cutoff (default: 0.9)")
    p.add_argument("--min-p", type=float, default=0.0, help="Min-p cutoff, 0 disables (default: 0)")
    p.add_argument("--max-tokens", type=int, default=256, help="Default completion budget (default: 256)")
    p.add_argument("--seed", type=int, default=None, help="Sampler seed (default: random)")

    p.add_argument(
        "--chunk-width",
        type=int,
        default=_default_chunk_width(),
        help="Max tokens per ingestion batch (default: $PREFIXCHAT_CHUNK_WIDTH or 2048)",
    )
    p.add_argument(
        "--min-context",
        type=int,
        default=4096,
        help="Floor applied to --ctx-size (default: 4096)",
    )
    p.add_argument(
        "--auto-temperature",
        action="store_true",
        help="Pick the temperature from the prompt when a request sets none",
    )
    p.add_argument(
        "--http-max-completion-tokens",
        type=int,
        default=0,
        help="Reject requests with max_tokens above this cap (0 = unlimited)",
    )

    p.add_argument("--device", default="cpu", help="Torch device for the transformers backend (default: cpu)")
    p.add_argument("--dtype", default="float32", help="Torch dtype: float16|bfloat16|float32 (default: float32)")
    p.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    return p.parse_args()


def _dtype_from_string(dtype: str) -> Any:
    import torch

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def main() -> None:
    args = _parse_args()

    backend = _make_backend(args.backend)
    session = ModelSession(
        backend,
        config=SessionConfig(
            min_context_size=int(args.min_context),
            ingestion_chunk_width=int(args.chunk_width),
        ),
    )
    engine = TurnEngine(session, config=EngineConfig(auto_temperature=bool(args.auto_temperature)))

    backend_kwargs: dict[str, Any] = {}
    if args.backend == "transformers":
        backend_kwargs = {"device": args.device, "dtype": _dtype_from_string(args.dtype)}

    print(
        "[server] loading model... "
        f"model={args.model!r} backend={args.backend!r} threads={int(args.threads)} "
        f"ctx_size={int(args.ctx_size)} chunk_width={int(args.chunk_width)}",
        flush=True,
    )
    ok = engine.load_model(
        args.model,
        n_threads=int(args.threads),
        context_size=int(args.ctx_size),
        temperature=float(args.temperature),
        top_k=int(args.top_k),
        top_p=float(args.top_p),
        min_p=float(args.min_p),
        max_tokens=int(args.max_tokens),
        seed=args.seed,
        **backend_kwargs,
    )
    if not ok:
        err = session.last_load_error or "invalid generation defaults"
        raise SystemExit(f"[server] model load failed: {err}")
    print(f"[server] model loaded (context={session.context_size})", flush=True)

    model_id = os.path.basename(args.model.rstrip("/")) or "prefixchat"
    app = create_app(
        engine=engine,
        model_id=model_id,
        http_max_completion_tokens=None
        if args.http_max_completion_tokens <= 0
        else int(args.http_max_completion_tokens),
    )

    import uvicorn

    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
