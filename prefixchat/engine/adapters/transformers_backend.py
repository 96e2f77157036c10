"""Backend for Hugging Face causal language models."""

from __future__ import annotations

import json
import logging
import os
import re
from typing import TYPE_CHECKING, Any, Sequence

from ..errors import LoadError, TokenizationError
from .base import BaseBackend

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

_BYTE_TOKEN = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")


def _make_byte_decoder() -> dict[str, int]:
    """Inverse of the GPT-2 byte-to-unicode table used by byte-level BPE vocabularies."""
    char_to_bytes: dict[str, int] = {}
    limits = [
        0,
        ord("!"),
        ord("~") + 1,
        ord("¡"),
        ord("¬") + 1,
        ord("®"),
        ord("ÿ") + 1,
    ]
    n = 0
    for i, (start, stop) in enumerate(zip(limits, limits[1:])):
        if i % 2 == 0:
            for b in range(start, stop):
                char_to_bytes[chr(2**8 + n)] = b
                n += 1
        else:
            for b in range(start, stop):
                char_to_bytes[chr(b)] = b
    return char_to_bytes


def _is_spm_decoder(decoder: Any) -> bool:
    if not isinstance(decoder, dict):
        return False
    if decoder.get("type") == "Metaspace":
        return True
    if decoder.get("type") != "Sequence":
        return False
    steps = [d for d in decoder.get("decoders") or [] if isinstance(d, dict)]
    return any(
        d.get("type") == "Replace" and (d.get("pattern") or {}).get("String") == "\u2581" for d in steps
    )


def _is_bpe_decoder(decoder: Any) -> bool:
    return isinstance(decoder, dict) and decoder.get("type", None) == "ByteLevel"


def detect_piece_decoding(tokenizer: Any) -> str:
    """Classify how a tokenizer spells raw bytes in its vocabulary.

    Returns:
        "spm" for SentencePiece vocabularies (U+2581 for spaces, `<0xNN>` byte
        fallback), "bpe" for byte-level BPE (GPT-2 byte-to-unicode table) and
        "text" when neither can be established.
    """
    backend = getattr(tokenizer, "backend_tokenizer", None)
    if backend is not None:
        try:
            decoder = json.loads(backend.to_str()).get("decoder")
        except (AttributeError, TypeError, ValueError):
            decoder = None
        if _is_spm_decoder(decoder):
            return "spm"
        if _is_bpe_decoder(decoder):
            return "bpe"
    elif getattr(tokenizer, "sp_model", None) is not None:
        return "spm"
    return "text"


class TransformersBackend(BaseBackend):
    """
    Backend for `AutoModelForCausalLM` checkpoints.

    The decode state is a `DynamicCache` plus the position cursor and the scores
    of the last ingested position. Truncation crops the cache in place, so a
    cached system prefix survives across turns without re-prefill.

    Example:
        >>> backend = TransformersBackend()
        >>> backend.load("path/to/checkpoint", n_threads=4, context_size=4096)
        >>> backend.ingest_batch(backend.tokenize("Hello", add_bos=True, parse_special=True))
        >>> scores = backend.next_token_logits()
    """

    name = "transformers"

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._context_size: int = 0
        self._cache = None
        self._positions: int = 0
        self._next_token_logits: torch.Tensor | None = None
        self._eos_token_ids: frozenset[int] = frozenset()
        self._special_ids: frozenset[int] = frozenset()
        self._byte_decoder: dict[str, int] | None = None
        self._piece_decoding: str = "text"

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def is_loaded(self) -> bool:
        return self._model is not None and self._tokenizer is not None and self._cache is not None

    @property
    def context_size(self) -> int:
        return self._context_size if self.is_loaded else 0

    @property
    def n_positions(self) -> int:
        return self._positions

    @property
    def model_info(self) -> dict[str, Any]:
        info = super().model_info
        info.update(
            {
                "model_path": self._model_path,
                "device": self._device,
                "dtype": str(self._dtype),
                "n_positions": self._positions,
            }
        )
        if self._tokenizer is not None:
            info["vocab_size"] = len(self._tokenizer)
        return info

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, *, n_threads: int, context_size: int, **kwargs) -> None:
        """Load a causal LM checkpoint and its tokenizer.

        Args:
            model_path: Local checkpoint directory.
            n_threads: Passed to `torch.set_num_threads`.
            context_size: Maximum resident positions.
            device: Device to load the model on (default: "cpu").
            dtype: Torch dtype (default: checkpoint dtype).
            trust_remote_code: Forwarded to `from_pretrained` (default: False).
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

        device = kwargs.pop("device", "cpu")
        dtype = kwargs.pop("dtype", None)
        trust_remote_code = bool(kwargs.pop("trust_remote_code", False))

        if not os.path.exists(model_path) or not os.access(model_path, os.R_OK):
            raise LoadError("open", f"Model path not found or unreadable: {model_path}")

        torch.set_num_threads(int(n_threads))

        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=dtype if dtype is not None else "auto",
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
            model.to(device)
            model.eval()
        except Exception as exc:
            raise LoadError("parse", f"Failed to load model from {model_path}: {exc}") from exc

        try:
            tokenizer = AutoTokenizer.from_pretrained(model_path, trust_remote_code=trust_remote_code)
        except Exception as exc:
            del model
            raise LoadError("vocab", f"Failed to load tokenizer from {model_path}: {exc}") from exc

        try:
            cache = DynamicCache()
        except Exception as exc:
            del model, tokenizer
            raise LoadError("context", f"Failed to allocate decode state: {exc}") from exc

        self._model = model
        self._tokenizer = tokenizer
        self._cache = cache
        self._model_path = model_path
        self._device = device
        self._dtype = getattr(model, "dtype", dtype)
        self._context_size = int(context_size)
        self._positions = 0
        self._next_token_logits = None
        self._eos_token_ids = self._collect_eos_ids(model, tokenizer)
        self._bind_vocabulary(tokenizer)

        logger.info(
            "Loaded %s (device=%s dtype=%s context=%d threads=%d)",
            model_path,
            device,
            self._dtype,
            self._context_size,
            n_threads,
        )
        logger.debug("Piece decoding for %s: %s", model_path, self._piece_decoding)

    def unload(self) -> None:
        """Release the decode state, then the model."""
        import gc

        self._cache = None
        self._positions = 0
        self._next_token_logits = None

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None
        self._model_path = None
        self._context_size = 0
        self._eos_token_ids = frozenset()
        self._special_ids = frozenset()
        self._byte_decoder = None
        self._piece_decoding = "text"

        gc.collect()

    @staticmethod
    def _collect_eos_ids(model: Any, tokenizer: Any) -> frozenset[int]:
        ids: set[int] = set()
        if tokenizer.eos_token_id is not None:
            ids.add(int(tokenizer.eos_token_id))
        gen_cfg = getattr(model, "generation_config", None)
        gen_eos = getattr(gen_cfg, "eos_token_id", None)
        if isinstance(gen_eos, int):
            ids.add(gen_eos)
        elif isinstance(gen_eos, (list, tuple)):
            ids.update(int(i) for i in gen_eos)
        return frozenset(ids)

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, *, add_bos: bool, parse_special: bool) -> list[int]:
        self._ensure_loaded()
        tok = self._tokenizer
        try:
            # split_special_tokens keeps special-token markup as plain text.
            ids = tok.encode(text, add_special_tokens=False, split_special_tokens=not parse_special)
        except Exception as exc:
            raise TokenizationError(f"Tokenization failed: {exc}") from exc

        ids = [int(i) for i in ids]
        if add_bos:
            bos = tok.bos_token_id
            if bos is not None and (not ids or ids[0] != bos):
                ids.insert(0, int(bos))
        return ids

    def token_to_piece(self, token_id: int) -> bytes:
        self._ensure_loaded()
        token_id = int(token_id)
        piece = self._tokenizer.convert_ids_to_tokens(token_id)
        if piece is None:
            return b""

        if token_id in self._special_ids:
            return piece.encode("utf-8")

        if self._piece_decoding == "spm":
            m = _BYTE_TOKEN.match(piece)
            if m:
                return bytes.fromhex(m.group(1))
            return piece.replace("▁", " ").encode("utf-8")

        if self._piece_decoding == "bpe":
            decoder = self._byte_decoder or {}
            out = bytearray()
            for c in piece:
                b = decoder.get(c)
                if b is None:
                    out.extend(c.encode("utf-8"))
                else:
                    out.append(b)
            return bytes(out)

        return self._tokenizer.convert_tokens_to_string([piece]).encode("utf-8")

    def _bind_vocabulary(self, tokenizer: Any) -> None:
        """Fix the special ids and the piece decoding for this tokenizer."""
        self._special_ids = frozenset(int(i) for i in getattr(tokenizer, "all_special_ids", []))
        self._piece_decoding = detect_piece_decoding(tokenizer)
        self._byte_decoder = _make_byte_decoder() if self._piece_decoding == "bpe" else None

    def is_end_of_sequence(self, token_id: int) -> bool:
        return int(token_id) in self._eos_token_ids

    # -------------------------------------------------------------------------
    # Decode state
    # -------------------------------------------------------------------------

    def ingest_batch(self, token_ids: Sequence[int]) -> None:
        self._ensure_loaded()
        import torch

        n = len(token_ids)
        if n == 0:
            return
        if self._positions + n > self._context_size:
            raise RuntimeError(
                f"Context window exceeded: {self._positions} + {n} > {self._context_size} positions."
            )

        device = self._model.device
        input_ids = torch.tensor([list(token_ids)], dtype=torch.long, device=device)
        cache_position = torch.arange(self._positions, self._positions + n, device=device)

        try:
            with torch.no_grad():
                outputs = self._model(
                    input_ids,
                    past_key_values=self._cache,
                    cache_position=cache_position,
                    use_cache=True,
                )
        except Exception:
            # Some layers may already hold the new entries; drop them.
            self._rollback_cache()
            raise

        # Positions only advance after a successful forward pass.
        self._cache = outputs.past_key_values
        self._next_token_logits = outputs.logits[0, -1, :].detach()
        self._positions += n

    def next_token_logits(self) -> torch.Tensor:
        self._ensure_loaded()
        if self._next_token_logits is None:
            raise RuntimeError("No scores available. Ingest at least one token first.")
        return self._next_token_logits

    def truncate(self, position: int) -> None:
        self._ensure_loaded()
        position = int(position)
        if position < 0:
            raise ValueError(f"position must be >= 0, got {position}")
        if position >= self._positions:
            return
        if position == 0:
            self.clear()
            return
        self._cache.crop(position)
        self._positions = position
        # Scores belonged to the removed tail.
        self._next_token_logits = None

    def clear(self) -> None:
        self._ensure_loaded()
        from transformers import DynamicCache

        self._cache = DynamicCache()
        self._positions = 0
        self._next_token_logits = None

    def _rollback_cache(self) -> None:
        """Crop the cache back to the committed positions after a failed forward."""
        if self._positions == 0:
            from transformers import DynamicCache

            self._cache = DynamicCache()
        else:
            self._cache.crop(self._positions)

    # -------------------------------------------------------------------------
    # Internal: Validation
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None or self._cache is None:
            raise RuntimeError("Model not loaded. Call load() first.")
