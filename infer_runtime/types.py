from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any


class ElementType(enum.IntEnum):
    """Element encodings understood by the container; values are the on-disk tags."""

    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q8_0 = 8

    @property
    def is_quantized(self) -> bool:
        return self not in (ElementType.F32, ElementType.F16)


@dataclass(slots=True)
class HostBuffer:
    view: memoryview
    pinned: bool = False

    @property
    def nbytes(self) -> int:
        return self.view.nbytes


@dataclass(slots=True)
class DeviceBuffer:
    handle: Any
    nbytes: int
    backend: str


@dataclass(frozen=True, slots=True)
class Region:
    """Byte range inside a read-only arena."""

    offset: int
    nbytes: int

    @property
    def end(self) -> int:
        return self.offset + self.nbytes


@dataclass(frozen=True, slots=True)
class TensorDescriptor:
    name: str
    shape: tuple[int, ...]
    element_type: ElementType
    region: Region

    @property
    def n_elements(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count

    @property
    def nbytes(self) -> int:
        return self.region.nbytes


@dataclass(frozen=True, slots=True)
class Hyperparameters:
    n_vocab: int
    n_embd: int
    n_head: int
    n_head_kv: int
    n_layer: int
    n_ff: int
    n_ctx: int
    file_type: ElementType = ElementType.F32
    rms_norm_eps: float = 1e-6
    rope_theta: float = 10000.0

    @property
    def head_dim(self) -> int:
        return self.n_embd // self.n_head


@dataclass(frozen=True, slots=True)
class Vocabulary:
    tokens: tuple[bytes, ...]
    scores: tuple[float, ...] = ()
    bos_id: int = 1
    eos_id: int = 2

    def __len__(self) -> int:
        return len(self.tokens)

    def token(self, token_id: int) -> bytes:
        return self.tokens[token_id]

    def lookup(self) -> dict[bytes, int]:
        return {tok: i for i, tok in enumerate(self.tokens)}

