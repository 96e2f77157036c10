"""Sampler chain: top-k -> top-p -> temperature -> draw, with an optional min-p filter."""

from __future__ import annotations

from dataclasses import dataclass

import torch

from .types import GenerationParams


@dataclass
class SamplerChain:
    """Draws one token id from a 1-D score vector.

    Filters run in a fixed order on the raw scores: top-k, top-p (nucleus over
    the remaining candidates), then min-p when `min_p > 0` (off by default).
    The survivors are scaled by `temperature` and drawn from. A temperature of 0
    is greedy.

    Scores are sanitized: NaN entries never win, and if no probability mass
    survives the chain falls back to argmax.
    """

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.9
    min_p: float = 0.0
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.temperature is None or self.temperature < 0:
            raise ValueError(f"Temperature must be >= 0, got {self.temperature}")
        self._generator: torch.Generator | None = None
        if self.seed is not None:
            self._generator = torch.Generator()
            self._generator.manual_seed(int(self.seed))

    @classmethod
    def from_params(cls, params: GenerationParams, temperature: float | None = None) -> "SamplerChain":
        return cls(
            temperature=params.temperature if temperature is None else float(temperature),
            top_k=params.top_k,
            top_p=params.top_p,
            min_p=params.min_p,
            seed=params.seed,
        )

    def sample(self, logits: torch.Tensor) -> int:
        raw = logits.detach().float().reshape(-1).cpu()
        if self.temperature == 0:
            return int(torch.argmax(raw))

        scores = torch.nan_to_num(raw, nan=float("-inf"))
        if not (scores > float("-inf")).any():
            return int(torch.argmax(raw))

        scores = self._apply_top_k(scores)
        scores = self._apply_top_p(scores)
        if self.min_p > 0:
            scores = self._apply_min_p(scores)

        # Numerical stability: softmax in fp32 after temperature scaling.
        probs = torch.softmax(scores / float(self.temperature), dim=-1)

        if torch.isnan(probs).any() or torch.isinf(probs).any() or (probs < 0).any():
            probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0)
            probs = torch.clamp(probs, min=0.0)
            z = probs.sum()
            if z <= 0:
                return int(torch.argmax(scores))
            probs = probs / z

        return int(torch.multinomial(probs, 1, generator=self._generator).item())

    # -------------------------------------------------------------------------
    # Filters
    # -------------------------------------------------------------------------

    def _apply_top_k(self, scores: torch.Tensor) -> torch.Tensor:
        k = int(self.top_k)
        if k <= 0 or k >= scores.numel():
            return scores
        kth = torch.topk(scores, k).values[-1]
        return scores.masked_fill(scores < kth, float("-inf"))

    def _apply_top_p(self, scores: torch.Tensor) -> torch.Tensor:
        if self.top_p >= 1.0:
            return scores
        sorted_scores, order = torch.sort(scores, descending=True)
        probs = torch.softmax(sorted_scores, dim=-1)
        before = torch.cumsum(probs, dim=-1) - probs
        # A candidate survives while the mass ahead of it is below top_p; the best always does.
        drop_sorted = before >= self.top_p
        drop_sorted[0] = False
        drop = torch.zeros_like(drop_sorted)
        drop[order] = drop_sorted
        return scores.masked_fill(drop, float("-inf"))

    def _apply_min_p(self, scores: torch.Tensor) -> torch.Tensor:
        probs = torch.softmax(scores, dim=-1)
        threshold = probs.max() * float(self.min_p)
        return scores.masked_fill(probs < threshold, float("-inf"))
