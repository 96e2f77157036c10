# Model backends
#
# Each backend implements a common interface for:
#   - Loading model + vocabulary
#   - Tokenizing text and mapping tokens back to raw bytes
#   - Extending, truncating and clearing one decode state
#
# The engine uses backends to stay model-agnostic.

from .base import BaseBackend

__all__ = ["BaseBackend"]
