from __future__ import annotations

from typing import Any

import numpy as np

from infer_runtime.errors import CapacityExceeded
from infer_runtime.types import ElementType

_MEMORY_DTYPES = {
    ElementType.F16: np.float16,
    ElementType.F32: np.float32,
}


class KVCache:
    """Per-layer key/value ring buffers addressed by logical position.

    Logical position 0 is the oldest cached token.  ``append`` writes rows
    after ``n_past`` for one layer; ``commit`` makes them visible to the
    session once every layer has received the same number of rows.  Eviction
    moves the ring start instead of copying, so ``n_past`` and the physical
    offset are independent.

    Buffer shape per layer: ``[capacity, n_head_kv, head_dim]``.
    """

    def __init__(
        self,
        n_layer: int,
        n_head_kv: int,
        head_dim: int,
        capacity: int,
        memory_type: ElementType = ElementType.F16,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if memory_type not in _MEMORY_DTYPES:
            raise ValueError(f"unsupported cache memory type: {memory_type!r}")
        self.n_layer = n_layer
        self.n_head_kv = n_head_kv
        self.head_dim = head_dim
        self.memory_type = memory_type
        self._capacity = capacity
        dtype = _MEMORY_DTYPES[memory_type]
        shape = (capacity, n_head_kv, head_dim)
        self._keys: list[Any] = [np.zeros(shape, dtype=dtype) for _ in range(n_layer)]
        self._values: list[Any] = [np.zeros(shape, dtype=dtype) for _ in range(n_layer)]
        self._start = 0
        self._n_past = 0
        self._n_evicted = 0
        self._pending = [0] * n_layer

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def n_past(self) -> int:
        return self._n_past

    @property
    def n_evicted(self) -> int:
        """Tokens dropped from the front; absolute position of logical slot 0."""
        return self._n_evicted

    @property
    def remaining(self) -> int:
        return self._capacity - self._n_past

    @property
    def is_full(self) -> bool:
        return self._n_past >= self._capacity

    @property
    def nbytes(self) -> int:
        return sum(k.nbytes + v.nbytes for k, v in zip(self._keys, self._values))

    def _slots(self, logical_start: int, count: int) -> Any:
        return (self._start + np.arange(logical_start, logical_start + count)) % self._capacity

    def append(self, layer_index: int, new_keys: Any, new_values: Any) -> None:
        expected = (self.n_head_kv, self.head_dim)
        if new_keys.shape[1:] != expected or new_values.shape != new_keys.shape:
            raise ValueError(
                f"layer {layer_index}: expected keys/values of shape [t, {expected[0]}, "
                f"{expected[1]}], got {new_keys.shape} and {new_values.shape}"
            )
        count = new_keys.shape[0]
        begin = self._n_past + self._pending[layer_index]
        if begin + count > self._capacity:
            raise CapacityExceeded(begin + count, self._capacity)
        idx = self._slots(begin, count)
        self._keys[layer_index][idx] = new_keys
        self._values[layer_index][idx] = new_values
        self._pending[layer_index] += count

    def window(self, layer_index: int) -> tuple[Any, Any]:
        """Keys and values for logical positions ``[0, n_past + pending)``, oldest first."""
        length = self._n_past + self._pending[layer_index]
        keys = self._keys[layer_index]
        values = self._values[layer_index]
        if self._start + length <= self._capacity:
            k = keys[self._start : self._start + length]
            v = values[self._start : self._start + length]
            k.flags.writeable = False
            v.flags.writeable = False
            return k, v
        idx = self._slots(0, length)
        return keys[idx], values[idx]

    def commit(self, count: int) -> None:
        if any(p != count for p in self._pending):
            raise ValueError(f"cannot commit {count} rows, pending per layer: {self._pending}")
        self._n_past += count
        self._pending = [0] * self.n_layer

    def rollback(self) -> None:
        """Discard rows appended since the last commit."""
        self._pending = [0] * self.n_layer

    def evict(self, count: int) -> None:
        """Drop the ``count`` oldest committed entries."""
        if any(self._pending):
            raise ValueError("cannot evict while an evaluation is in flight")
        if count < 0 or count > self._n_past:
            raise ValueError(f"cannot evict {count} of {self._n_past} cached tokens")
        self._start = (self._start + count) % self._capacity
        self._n_past -= count
        self._n_evicted += count

    def reset(self) -> None:
        self._start = 0
        self._n_past = 0
        self._n_evicted = 0
        self._pending = [0] * self.n_layer

    def release(self) -> None:
        self.reset()
        self._keys.clear()
        self._values.clear()
