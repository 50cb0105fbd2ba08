from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import torch


class Sampler(ABC):
    @abstractmethod
    def __call__(self, logits: torch.Tensor) -> int:
        """Pick one token id from 1-D logits."""
        ...


class GreedySampler(Sampler):
    def __call__(self, logits: torch.Tensor) -> int:
        return int(torch.argmax(logits.reshape(-1)).item())


class TopKTopPSampler(Sampler):
    """Temperature + top-k + nucleus sampling with a private RNG."""

    def __init__(self, temperature: float = 1.0, top_k: int = 0, top_p: float = 1.0, seed: Optional[int] = None):
        if temperature <= 0.0:
            raise ValueError("temperature must be > 0; use GreedySampler instead")
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self._gen = torch.Generator()
        if seed is not None:
            self._gen.manual_seed(seed)
        else:
            self._gen.seed()

    def __call__(self, logits: torch.Tensor) -> int:
        logits = logits.reshape(-1).float().cpu() / self.temperature

        if self.top_k > 0 and self.top_k < logits.shape[0]:
            kth = torch.topk(logits, self.top_k).values[-1]
            logits = logits.masked_fill(logits < kth, float("-inf"))

        if self.top_p < 1.0:
            sorted_logits, sorted_idx = torch.sort(logits, descending=True)
            cum = torch.softmax(sorted_logits, dim=-1).cumsum(dim=-1)
            # Drop a token once the mass before it already exceeds top_p; the best token always stays.
            drop = (cum - torch.softmax(sorted_logits, dim=-1)) > self.top_p
            sorted_logits = sorted_logits.masked_fill(drop, float("-inf"))
            logits = torch.full_like(logits, float("-inf")).scatter(0, sorted_idx, sorted_logits)

        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, 1, generator=self._gen).item())


def make_sampler(temperature: float, top_k: int = 0, top_p: float = 1.0, seed: Optional[int] = None) -> Sampler:
    if temperature <= 0.0:
        return GreedySampler()
    return TopKTopPSampler(temperature=temperature, top_k=top_k, top_p=top_p, seed=seed)
