"""Model session: the loaded backend, its generation defaults and the session lock."""

from __future__ import annotations

import logging
import threading
from typing import Any

from .adapters.base import BaseBackend
from .errors import LoadError
from .prefix_cache import PrefixCache
from .types import GenerationParams, ModelInfo, SessionConfig

logger = logging.getLogger(__name__)


class ModelSession:
    """Owns one backend and everything that lives as long as its model.

    Thread-safety:
        Backends are not thread-safe. Every operation that touches the backend
        must hold `lock` for its whole duration. The lock is re-entrant so
        composite operations can call `load` / `unload` while holding it.
    """

    def __init__(self, backend: BaseBackend, *, config: SessionConfig | None = None) -> None:
        self._backend = backend
        self._config = config or SessionConfig()
        self.lock = threading.RLock()
        self.prefix_cache = PrefixCache()
        self.params = GenerationParams()
        self.last_load_error: LoadError | None = None
        self._model_path: str | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def backend(self) -> BaseBackend:
        return self._backend

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def chunk_width(self) -> int:
        return self._config.ingestion_chunk_width

    @property
    def context_size(self) -> int:
        return self._backend.context_size

    def effective_context_size(self, requested: int) -> int:
        return max(int(requested), self._config.min_context_size)

    def is_ready(self) -> bool:
        return self._backend.is_loaded

    @property
    def model_info(self) -> ModelInfo:
        extra: dict[str, Any] = dict(self._backend.model_info)
        return ModelInfo(
            model_path=self._model_path,
            backend=self._backend.name,
            context_size=self._backend.context_size,
            n_threads=self.params.n_threads,
            loaded=self._backend.is_loaded,
            extra=extra,
        )

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(
        self,
        model_path: str,
        *,
        n_threads: int = 4,
        context_size: int = 2048,
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.9,
        min_p: float = 0.0,
        max_tokens: int = 256,
        seed: int | None = None,
        **backend_kwargs: Any,
    ) -> bool:
        """Load a model, replacing any model already loaded.

        Returns:
            True on success. Invalid generation defaults return False before
            anything is unloaded. A backend failure leaves the session unloaded,
            with the failing stage logged and kept in `last_load_error`.
        """
        with self.lock:
            params = GenerationParams(
                max_tokens=max_tokens,
                temperature=temperature,
                top_k=top_k,
                top_p=top_p,
                min_p=min_p,
                n_threads=n_threads,
                context_size=context_size,
                seed=seed,
            )
            try:
                params.validate()
            except ValueError as exc:
                logger.error("Model load rejected, invalid generation defaults: %s", exc)
                return False
            effective = self.effective_context_size(context_size)

            if self._backend.is_loaded:
                self.unload()

            try:
                self._backend.load(
                    model_path,
                    n_threads=n_threads,
                    context_size=effective,
                    **backend_kwargs,
                )
            except LoadError as exc:
                logger.error("Model load failed at stage %r: %s", exc.stage, exc)
                self.last_load_error = exc
                self._backend.unload()
                self._model_path = None
                return False

            self.params = params
            self.last_load_error = None
            self._model_path = model_path
            self.prefix_cache.clear()
            logger.info(
                "Model loaded: %s (backend=%s context=%d threads=%d)",
                model_path,
                self._backend.name,
                effective,
                n_threads,
            )
            return True

    def unload(self) -> None:
        """Release decode state and model. Safe to call repeatedly."""
        with self.lock:
            self.prefix_cache.clear()
            was_loaded = self._backend.is_loaded
            self._backend.unload()
            self._model_path = None
            if was_loaded:
                logger.info("Model unloaded")
