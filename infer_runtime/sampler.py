"""Token samplers: turn a logit vector into the next token id."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

import numpy as np


def softmax(logits: Any) -> Any:
    """Numerically stable softmax over a 1-D float array (float64 out)."""
    x = np.asarray(logits, dtype=np.float64)
    finite = np.isfinite(x)
    if not finite.any():
        raise ValueError("cannot normalise logits: no finite values")
    x = np.where(finite, x, -np.inf)
    exp_x = np.exp(x - x[finite].max())
    return exp_x / exp_x.sum()


class Sampler(Protocol):
    def sample(self, logits: Any, previous_tokens: Sequence[int], rng: np.random.Generator) -> int:
        ...


class GreedySampler:
    """Always picks the most likely token; ignores ``rng``."""

    def sample(self, logits: Any, previous_tokens: Sequence[int], rng: np.random.Generator) -> int:
        return int(np.argmax(logits))


@dataclass
class TopPTopKSampler:
    """Top-k then top-p (nucleus) sampling with a repetition penalty.

    Order of operations: token bias, repetition penalty over the last
    ``repeat_last_n`` tokens, temperature, top-k cut, softmax, top-p cut,
    weighted draw.
    """

    top_k: int = 40
    top_p: float = 0.95
    temperature: float = 0.8
    repeat_penalty: float = 1.3
    repeat_last_n: int = 64
    token_bias: Mapping[int, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("top_p must be in (0, 1]")
        if self.temperature <= 0.0:
            raise ValueError("temperature must be > 0; use GreedySampler for argmax decoding")
        if self.repeat_penalty <= 0.0:
            raise ValueError("repeat_penalty must be > 0")
        if self.repeat_last_n < 0:
            raise ValueError("repeat_last_n must be >= 0")

    def adjusted_logits(self, logits: Any, previous_tokens: Sequence[int]) -> Any:
        x = np.array(logits, dtype=np.float64)
        for token_id, bias in self.token_bias.items():
            if 0 <= token_id < x.shape[0]:
                x[token_id] = bias
        if self.repeat_last_n and previous_tokens and self.repeat_penalty != 1.0:
            recent = np.unique(np.asarray(previous_tokens[-self.repeat_last_n:], dtype=np.int64))
            recent = recent[(recent >= 0) & (recent < x.shape[0])]
            penalised = x[recent]
            x[recent] = np.where(
                penalised < 0, penalised * self.repeat_penalty, penalised / self.repeat_penalty,
            )
        return x / self.temperature

    def sample(self, logits: Any, previous_tokens: Sequence[int], rng: np.random.Generator) -> int:
        x = self.adjusted_logits(logits, previous_tokens)
        k = min(self.top_k, x.shape[0])
        # stable sort keeps lower ids first among ties
        order = np.argsort(-x, kind="stable")[:k]
        probs = softmax(x[order])

        cumulative = np.cumsum(probs)
        keep = int(np.searchsorted(cumulative, self.top_p)) + 1
        order = order[:keep]
        probs = probs[:keep] / probs[:keep].sum()
        return int(order[rng.choice(len(order), p=probs)])
