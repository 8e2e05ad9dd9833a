"""NumPy evaluator for LLaMA-style decoder models.

This is the compute capability behind every backend: backends decide where
weights live and how they are read back, the executor turns a batch of token
ids plus the key/value cache into next-token logits.
"""
from __future__ import annotations

import math
from typing import Any, Protocol, Sequence

import numpy as np

from infer_runtime.errors import EvaluationError
from infer_runtime.kv_cache import KVCache
from infer_runtime.types import Hyperparameters

TOKEN_EMBEDDINGS = "tok_embeddings.weight"
OUTPUT_NORM = "norm.weight"
OUTPUT = "output.weight"

LAYER_TENSORS = [
    "attention_norm.weight",
    "attention.wq.weight",
    "attention.wk.weight",
    "attention.wv.weight",
    "attention.wo.weight",
    "ffn_norm.weight",
    "feed_forward.w1.weight",
    "feed_forward.w2.weight",
    "feed_forward.w3.weight",
]


def layer_tensor(layer_id: int, suffix: str) -> str:
    return f"layers.{layer_id}.{suffix}"


def expected_tensor_shapes(hparams: Hyperparameters) -> dict[str, tuple[int, ...]]:
    """Every tensor the graph reads, with the shape implied by ``hparams``."""
    n_embd = hparams.n_embd
    kv_dim = hparams.n_head_kv * hparams.head_dim
    shapes: dict[str, tuple[int, ...]] = {
        TOKEN_EMBEDDINGS: (hparams.n_vocab, n_embd),
        OUTPUT_NORM: (n_embd,),
        OUTPUT: (hparams.n_vocab, n_embd),
    }
    per_layer = {
        "attention_norm.weight": (n_embd,),
        "attention.wq.weight": (n_embd, n_embd),
        "attention.wk.weight": (kv_dim, n_embd),
        "attention.wv.weight": (kv_dim, n_embd),
        "attention.wo.weight": (n_embd, n_embd),
        "ffn_norm.weight": (n_embd,),
        "feed_forward.w1.weight": (hparams.n_ff, n_embd),
        "feed_forward.w2.weight": (n_embd, hparams.n_ff),
        "feed_forward.w3.weight": (hparams.n_ff, n_embd),
    }
    for layer_id in range(hparams.n_layer):
        for suffix in LAYER_TENSORS:
            shapes[layer_tensor(layer_id, suffix)] = per_layer[suffix]
    return shapes


class WeightSource(Protocol):
    """Resolves a tensor name to a float32 host array."""

    def tensor(self, name: str) -> Any:
        ...


# ---------------------------------------------------------------------------
# Math primitives
# ---------------------------------------------------------------------------

def rms_norm(x: Any, weight: Any, eps: float = 1e-6) -> Any:
    rms = np.sqrt(np.mean(x ** 2, axis=-1, keepdims=True) + eps)
    return weight * (x / rms)


def silu(x: Any) -> Any:
    return x / (1.0 + np.exp(-x))


def softmax(x: Any, axis: int = -1) -> Any:
    x_max = x.max(axis=axis, keepdims=True)
    exp_x = np.exp(x - x_max)
    return exp_x / exp_x.sum(axis=axis, keepdims=True)


def linear_t(x: Any, weight: Any) -> Any:
    """nn.Linear convention: x @ weight.T (weight is [out, in])."""
    return x @ weight.T


def rope(
    q: Any, k: Any, positions: Any, head_dim: int, base: float = 10000.0,
) -> tuple[Any, Any]:
    """Apply rotary position embeddings.

    q: [n_heads, seq_len, head_dim], k: [n_kv_heads, seq_len, head_dim]
    positions: [seq_len] absolute token positions
    """
    half_dim = head_dim // 2
    freqs = 1.0 / (base ** (np.arange(0, half_dim, dtype=np.float64) / half_dim))
    angles = np.outer(positions.astype(np.float64), freqs).astype(np.float32)
    cos_vals = np.cos(angles)  # [seq_len, half_dim]
    sin_vals = np.sin(angles)

    def _rotate(x: Any) -> Any:
        x1 = x[..., :half_dim]
        x2 = x[..., half_dim:]
        return np.concatenate(
            [x1 * cos_vals - x2 * sin_vals, x2 * cos_vals + x1 * sin_vals],
            axis=-1,
        )

    return _rotate(q), _rotate(k)


def repeat_kv(x: Any, n_rep: int) -> Any:
    """Repeat KV heads to match Q heads.  x: [n_kv_heads, seq_len, head_dim]."""
    if n_rep == 1:
        return x
    return np.repeat(x, n_rep, axis=0)


def _expect(arr: Any, shape: tuple[int, ...], what: str) -> Any:
    if tuple(arr.shape) != shape:
        raise EvaluationError(f"{what}: expected shape {shape}, got {tuple(arr.shape)}")
    return arr


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class TransformerExecutor:
    """Evaluates one batch of tokens against the cache and returns logits."""

    def __init__(self, hparams: Hyperparameters) -> None:
        if hparams.n_embd % hparams.n_head != 0:
            raise ValueError("n_embd must be divisible by n_head")
        if hparams.n_head % hparams.n_head_kv != 0:
            raise ValueError("n_head must be divisible by n_head_kv")
        self.hparams = hparams
        self.head_dim = hparams.head_dim

    def evaluate(self, weights: WeightSource, cache: KVCache, tokens: Sequence[int]) -> Any:
        """Run the decoder over ``tokens``; returns float32 logits ``[len(tokens), n_vocab]``.

        Rows are appended to ``cache`` but not committed; the caller commits
        on success and rolls back on failure.
        """
        try:
            return self._forward(weights, cache, tokens)
        except ValueError as exc:
            raise EvaluationError(f"malformed tensor during evaluation: {exc}") from exc

    def _forward(self, weights: WeightSource, cache: KVCache, tokens: Sequence[int]) -> Any:
        hp = self.hparams
        ids = np.asarray(tokens, dtype=np.int64)
        seq_len = ids.shape[0]
        if seq_len == 0:
            raise EvaluationError("cannot evaluate an empty batch")
        if ids.min() < 0 or ids.max() >= hp.n_vocab:
            raise EvaluationError(f"token id out of range [0, {hp.n_vocab}): {ids.tolist()}")

        n_heads = hp.n_head
        n_kv_heads = hp.n_head_kv
        head_dim = self.head_dim
        embed = _expect(weights.tensor(TOKEN_EMBEDDINGS), (hp.n_vocab, hp.n_embd), TOKEN_EMBEDDINGS)
        x = np.asarray(embed[ids], dtype=np.float32)

        start = cache.n_evicted + cache.n_past
        positions = np.arange(start, start + seq_len)

        for layer_id in range(hp.n_layer):
            t = {s: weights.tensor(layer_tensor(layer_id, s)) for s in LAYER_TENSORS}

            # --- Attention block ---
            h = rms_norm(x, t["attention_norm.weight"], hp.rms_norm_eps)
            q = _expect(linear_t(h, t["attention.wq.weight"]), (seq_len, n_heads * head_dim), "q")
            k = _expect(linear_t(h, t["attention.wk.weight"]), (seq_len, n_kv_heads * head_dim), "k")
            v = _expect(linear_t(h, t["attention.wv.weight"]), (seq_len, n_kv_heads * head_dim), "v")

            q = q.reshape(seq_len, n_heads, head_dim).transpose(1, 0, 2)
            k = k.reshape(seq_len, n_kv_heads, head_dim).transpose(1, 0, 2)
            v = v.reshape(seq_len, n_kv_heads, head_dim).transpose(1, 0, 2)
            q, k = rope(q, k, positions, head_dim, hp.rope_theta)

            cache.append(layer_id, k.transpose(1, 0, 2), v.transpose(1, 0, 2))
            cached_k, cached_v = cache.window(layer_id)
            total = cached_k.shape[0]
            keys = cached_k.astype(np.float32).transpose(1, 0, 2)
            values = cached_v.astype(np.float32).transpose(1, 0, 2)

            n_rep = n_heads // n_kv_heads
            keys = repeat_kv(keys, n_rep)
            values = repeat_kv(values, n_rep)

            # query i sits at logical slot total - seq_len + i
            scores = (q @ keys.transpose(0, 2, 1)) / math.sqrt(head_dim)
            mask = np.triu(
                np.full((seq_len, total), -1e10, dtype=np.float32), k=total - seq_len + 1,
            )
            attn_w = softmax(scores + mask, axis=-1)
            attn_out = attn_w @ values

            attn_out = attn_out.transpose(1, 0, 2).reshape(seq_len, hp.n_embd)
            x = x + linear_t(attn_out, t["attention.wo.weight"])

            # --- SwiGLU MLP block ---
            h = rms_norm(x, t["ffn_norm.weight"], hp.rms_norm_eps)
            gate = linear_t(h, t["feed_forward.w1.weight"])
            up = linear_t(h, t["feed_forward.w3.weight"])
            h = linear_t(silu(gate) * up, t["feed_forward.w2.weight"])
            x = _expect(x + h, (seq_len, hp.n_embd), f"layer {layer_id} output")

        h = rms_norm(x, weights.tensor(OUTPUT_NORM), hp.rms_norm_eps)
        logits = linear_t(h, weights.tensor(OUTPUT))
        return _expect(np.asarray(logits, dtype=np.float32), (seq_len, hp.n_vocab), "logits")
