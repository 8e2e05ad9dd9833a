"""Element encodings: byte-size math, quantization and dequantization.

Quantized encodings are blocked over the innermost (last) dimension in blocks
of ``QK`` elements.  Block layouts:

  Q4_0: f16 scale, 16 bytes of packed nibbles          (18 bytes)
  Q4_1: f16 scale, f16 minimum, 16 bytes of nibbles    (20 bytes)
  Q8_0: f16 scale, 32 signed bytes                     (34 bytes)

Nibble packing: byte ``j`` holds element ``j`` in the low nibble and element
``j + 16`` in the high nibble.
"""
from __future__ import annotations

from typing import Any, Protocol, Sequence

import numpy as np

from infer_runtime.types import ElementType, HostBuffer, TensorDescriptor

QK = 32

_Q4_0_BLOCK = np.dtype([("d", "<f2"), ("qs", "u1", (QK // 2,))])
_Q4_1_BLOCK = np.dtype([("d", "<f2"), ("m", "<f2"), ("qs", "u1", (QK // 2,))])
_Q8_0_BLOCK = np.dtype([("d", "<f2"), ("qs", "i1", (QK,))])

_PLAIN_DTYPES: dict[ElementType, Any] = {
    ElementType.F32: np.dtype("<f4"),
    ElementType.F16: np.dtype("<f2"),
}

_BLOCK_DTYPES: dict[ElementType, Any] = {
    ElementType.Q4_0: _Q4_0_BLOCK,
    ElementType.Q4_1: _Q4_1_BLOCK,
    ElementType.Q8_0: _Q8_0_BLOCK,
}


def _count(shape: Sequence[int]) -> int:
    n = 1
    for dim in shape:
        n *= int(dim)
    return n


def block_bytes(element_type: ElementType) -> int:
    """Bytes per block (quantized) or per element (plain)."""
    if element_type in _PLAIN_DTYPES:
        return _PLAIN_DTYPES[element_type].itemsize
    return _BLOCK_DTYPES[element_type].itemsize


def check_shape(element_type: ElementType, shape: Sequence[int]) -> None:
    if not shape or any(int(d) <= 0 for d in shape):
        raise ValueError(f"every dimension must be > 0, got {tuple(shape)}")
    if element_type.is_quantized and int(shape[-1]) % QK != 0:
        raise ValueError(
            f"{element_type.name} needs the last dimension to be a multiple of {QK}, "
            f"got {tuple(shape)}"
        )


def nbytes_for(element_type: ElementType, shape: Sequence[int]) -> int:
    """Exact storage size of a tensor of ``shape`` in ``element_type``."""
    check_shape(element_type, shape)
    n = _count(shape)
    if element_type in _PLAIN_DTYPES:
        return n * _PLAIN_DTYPES[element_type].itemsize
    return (n // QK) * _BLOCK_DTYPES[element_type].itemsize


# ---------------------------------------------------------------------------
# Quantize
# ---------------------------------------------------------------------------

def _blocks_of(values: Any) -> Any:
    return np.ascontiguousarray(values, dtype=np.float32).reshape(-1, QK)


def _quantize_q8_0(values: Any) -> Any:
    x = _blocks_of(values)
    amax = np.abs(x).max(axis=1)
    d = amax / 127.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d > 0)
    out = np.zeros(x.shape[0], dtype=_Q8_0_BLOCK)
    out["d"] = d.astype(np.float16)
    out["qs"] = np.clip(np.rint(x * inv[:, None]), -127, 127).astype(np.int8)
    return out


def _quantize_q4_0(values: Any) -> Any:
    x = _blocks_of(values)
    idx = np.abs(x).argmax(axis=1)
    peak = x[np.arange(x.shape[0]), idx]
    d = peak / -8.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d != 0)
    q = np.clip(np.floor(x * inv[:, None] + 8.5), 0, 15).astype(np.uint8)
    out = np.zeros(x.shape[0], dtype=_Q4_0_BLOCK)
    out["d"] = d.astype(np.float16)
    out["qs"] = q[:, : QK // 2] | (q[:, QK // 2 :] << 4)
    return out


def _quantize_q4_1(values: Any) -> Any:
    x = _blocks_of(values)
    lo = x.min(axis=1)
    hi = x.max(axis=1)
    d = (hi - lo) / 15.0
    inv = np.divide(1.0, d, out=np.zeros_like(d), where=d > 0)
    q = np.clip(np.floor((x - lo[:, None]) * inv[:, None] + 0.5), 0, 15).astype(np.uint8)
    out = np.zeros(x.shape[0], dtype=_Q4_1_BLOCK)
    out["d"] = d.astype(np.float16)
    out["m"] = lo.astype(np.float16)
    out["qs"] = q[:, : QK // 2] | (q[:, QK // 2 :] << 4)
    return out


_QUANTIZERS = {
    ElementType.Q4_0: _quantize_q4_0,
    ElementType.Q4_1: _quantize_q4_1,
    ElementType.Q8_0: _quantize_q8_0,
}


def quantize(values: Any, element_type: ElementType) -> bytes:
    """Encode a float array into ``element_type`` storage bytes."""
    arr = np.asarray(values)
    check_shape(element_type, arr.shape)
    if element_type in _PLAIN_DTYPES:
        return np.ascontiguousarray(arr, dtype=_PLAIN_DTYPES[element_type]).tobytes()
    return _QUANTIZERS[element_type](arr).tobytes()


# ---------------------------------------------------------------------------
# Dequantize
# ---------------------------------------------------------------------------

def _unpack_nibbles(qs: Any) -> Any:
    return np.concatenate([qs & 0x0F, qs >> 4], axis=1).astype(np.float32)


def dequantize_bytes(raw: Any, element_type: ElementType, shape: Sequence[int]) -> Any:
    """Decode storage bytes into a float32 array of ``shape``."""
    shape = tuple(int(d) for d in shape)
    if element_type in _PLAIN_DTYPES:
        arr = np.frombuffer(raw, dtype=_PLAIN_DTYPES[element_type], count=_count(shape))
        return arr.astype(np.float32, copy=element_type != ElementType.F32).reshape(shape)

    blocks = np.frombuffer(raw, dtype=_BLOCK_DTYPES[element_type], count=_count(shape) // QK)
    d = blocks["d"].astype(np.float32)[:, None]
    if element_type == ElementType.Q8_0:
        values = blocks["qs"].astype(np.float32) * d
    elif element_type == ElementType.Q4_0:
        values = (_unpack_nibbles(blocks["qs"]) - 8.0) * d
    else:
        values = _unpack_nibbles(blocks["qs"]) * d + blocks["m"].astype(np.float32)[:, None]
    return values.reshape(shape)


class Dequantizer(Protocol):
    """Converts quantized tensor storage to full precision before H2D transfer."""

    def needs_dequantize(self, tensor: TensorDescriptor) -> bool: ...

    def dequantize(self, tensor: TensorDescriptor, buf: HostBuffer) -> HostBuffer: ...

    def decompressed_nbytes(self, tensor: TensorDescriptor) -> int: ...


class BlockDequantizer:
    """Dequantizes every non-F32 encoding to F32."""

    def needs_dequantize(self, tensor: TensorDescriptor) -> bool:
        return tensor.element_type != ElementType.F32

    def decompressed_nbytes(self, tensor: TensorDescriptor) -> int:
        if not self.needs_dequantize(tensor):
            return tensor.nbytes
        return tensor.n_elements * 4

    def dequantize(self, tensor: TensorDescriptor, buf: HostBuffer) -> HostBuffer:
        if not self.needs_dequantize(tensor):
            return buf
        values = dequantize_bytes(buf.view, tensor.element_type, tensor.shape)
        return HostBuffer(view=memoryview(bytearray(values.tobytes())), pinned=False)
