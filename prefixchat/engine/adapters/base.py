"""Base backend interface for model execution."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    import torch


class BaseBackend(ABC):
    """
    Abstract base class for model backends.

    A backend owns the loaded model and exactly one decode state (a single
    sequence). The engine drives it step by step; the backend never decides
    what to reuse or when to sample.

    Thread Safety:
        Backends are NOT thread-safe. The owning `ModelSession` serializes
        every call behind its session lock.
    """

    name: str = "base"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, model_path: str, *, n_threads: int, context_size: int, **kwargs) -> None:
        """
        Load model and vocabulary, and allocate an empty decode state.

        Args:
            model_path: Local model path.
            n_threads: Worker threads for the execution engine.
            context_size: Maximum number of resident positions.
            **kwargs: Backend-specific loading options.

        Raises:
            LoadError: With the failing stage ("open", "parse", "vocab", "context").
        """
        pass

    def unload(self) -> None:
        """
        Release decode state, then the model.

        Must be safe to call when nothing (or only part of a model) is loaded.
        """
        pass

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        pass

    @property
    @abstractmethod
    def context_size(self) -> int:
        """Maximum number of resident positions (0 when unloaded)."""
        pass

    @property
    @abstractmethod
    def n_positions(self) -> int:
        """Number of positions currently resident in the decode state."""
        pass

    @property
    def model_info(self) -> dict[str, Any]:
        return {"backend": self.name, "loaded": self.is_loaded, "context_size": self.context_size}

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(self, text: str, *, add_bos: bool, parse_special: bool) -> list[int]:
        """
        Convert text to token ids.

        Args:
            text: Input text.
            add_bos: Prepend the begin-of-sequence marker.
            parse_special: Map special-token markup in `text` to special ids.

        Raises:
            TokenizationError: If the text cannot be tokenized.
        """
        pass

    @abstractmethod
    def token_to_piece(self, token_id: int) -> bytes:
        """Raw bytes for one token. May end in the middle of a codepoint."""
        pass

    @abstractmethod
    def is_end_of_sequence(self, token_id: int) -> bool:
        pass

    # -------------------------------------------------------------------------
    # Decode state
    # -------------------------------------------------------------------------

    @abstractmethod
    def ingest_batch(self, token_ids: Sequence[int]) -> None:
        """
        Append `token_ids` at the next free positions and compute scores for
        the last one.

        Raises:
            Exception: Any failure; the engine wraps it as an IngestionError.
                Positions ingested by earlier calls stay resident.
        """
        pass

    @abstractmethod
    def next_token_logits(self) -> "torch.Tensor":
        """1-D scores over the vocabulary for the token after the last position."""
        pass

    @abstractmethod
    def truncate(self, position: int) -> None:
        """Remove every position >= `position`."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every position."""
        pass
