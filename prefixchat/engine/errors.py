"""Engine error taxonomy."""

from __future__ import annotations


class PrefixChatError(Exception):
    """Base class for engine errors."""


class ModelNotLoadedError(PrefixChatError):
    def __init__(self, message: str = "Model not loaded. Call load_model() first.") -> None:
        super().__init__(message)


class InvalidInputError(PrefixChatError, ValueError):
    """A text argument was missing or unusable."""


class LoadError(PrefixChatError):
    """Model load failed at an identifiable stage.

    Stages: "open" (file missing/unreadable), "parse" (weights/config),
    "vocab" (tokenizer), "context" (decode-state allocation).
    """

    STAGES = ("open", "parse", "vocab", "context")

    def __init__(self, stage: str, message: str) -> None:
        if stage not in self.STAGES:
            raise ValueError(f"Unknown load stage: {stage!r}")
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class TokenizationError(PrefixChatError):
    pass


class IngestionError(PrefixChatError):
    """A backend batch failed while extending the decode state.

    Attributes:
        chunk_index: Index of the chunk that failed.
        ingested: Positions successfully ingested by this call before the failure.
    """

    def __init__(self, message: str, *, chunk_index: int = 0, ingested: int = 0) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
        self.ingested = ingested


class CallbackContractError(PrefixChatError, TypeError):
    """Streaming target is missing one of on_token / on_complete / on_error."""
