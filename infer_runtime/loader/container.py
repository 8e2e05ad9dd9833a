"""Binary model container: reader and writer.

Layout (little-endian)::

    magic "IRTM" | u32 version
    u32 n_vocab n_embd n_head n_head_kv n_layer n_ff n_ctx file_type
    [version >= 2] f64 rms_norm_eps, f64 rope_theta
    u32 n_tokens, then per token: u32 len, bytes, f32 score
    [version >= 3] u32 bos_id, u32 eos_id
    u32 n_tensors, then per tensor:
        u32 name_len, name, u32 n_dims, u64 dims[n_dims],
        u32 encoding, u64 nbytes, u64 offset
    padding to DATA_ALIGNMENT, then tensor data

Tensor offsets are relative to the start of the data section.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterable

from infer_runtime.errors import BadMagic, TruncatedHeader, UnknownEncoding, UnsupportedVersion
from infer_runtime.types import ElementType, Hyperparameters, Vocabulary

MAGIC = b"IRTM"
CURRENT_VERSION = 3
SUPPORTED_VERSIONS = frozenset({1, 2, 3})
DATA_ALIGNMENT = 32

_HPARAMS_V1 = struct.Struct("<8I")
_HPARAMS_V2_EXTRA = struct.Struct("<2d")
_SPECIAL_TOKENS_V3 = struct.Struct("<2I")


@dataclass(frozen=True, slots=True)
class TensorRecord:
    name: str
    shape: tuple[int, ...]
    encoding: int
    nbytes: int
    offset: int


@dataclass(slots=True)
class ContainerHeader:
    version: int
    hparams: Hyperparameters
    vocabulary: Vocabulary
    tensors: list[TensorRecord] = field(default_factory=list)
    data_offset: int = 0


def _file_type(tag: int) -> ElementType:
    try:
        return ElementType(tag)
    except ValueError:
        raise UnknownEncoding(tag, "<file type>") from None


def align(offset: int, alignment: int = DATA_ALIGNMENT) -> int:
    return (offset + alignment - 1) // alignment * alignment


class _Reader:
    def __init__(self, fp: BinaryIO) -> None:
        self._fp = fp
        self.position = 0

    def read(self, n: int, what: str) -> bytes:
        data = self._fp.read(n)
        if len(data) != n:
            raise TruncatedHeader(
                f"container ended while reading {what} at byte {self.position} "
                f"({len(data)} of {n} bytes)"
            )
        self.position += n
        return data

    def unpack(self, fmt: str | struct.Struct, what: str) -> tuple[Any, ...]:
        s = fmt if isinstance(fmt, struct.Struct) else struct.Struct(fmt)
        return s.unpack(self.read(s.size, what))

    def u32(self, what: str) -> int:
        return self.unpack("<I", what)[0]

    def u64(self, what: str) -> int:
        return self.unpack("<Q", what)[0]


def read_header(fp: BinaryIO) -> ContainerHeader:
    """Parse everything up to the data section.

    Raises :class:`BadMagic`, :class:`UnsupportedVersion` or
    :class:`TruncatedHeader`; tensor-level validation is the weight store's job.
    """
    reader = _Reader(fp)
    magic = reader.read(4, "magic")
    if magic != MAGIC:
        raise BadMagic(magic)
    version = reader.u32("version")
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedVersion(version)

    (n_vocab, n_embd, n_head, n_head_kv, n_layer, n_ff, n_ctx, file_type) = reader.unpack(
        _HPARAMS_V1, "hyperparameters"
    )
    eps, theta = 1e-6, 10000.0
    if version >= 2:
        eps, theta = reader.unpack(_HPARAMS_V2_EXTRA, "hyperparameters")

    n_tokens = reader.u32("vocabulary size")
    tokens: list[bytes] = []
    scores: list[float] = []
    for i in range(n_tokens):
        length = reader.u32(f"token {i} length")
        tokens.append(reader.read(length, f"token {i}"))
        scores.append(reader.unpack("<f", f"token {i} score")[0])
    # older containers assume the LLaMA ids
    bos_id, eos_id = 1, 2
    if version >= 3:
        bos_id, eos_id = reader.unpack(_SPECIAL_TOKENS_V3, "special token ids")

    n_tensors = reader.u32("tensor count")
    records: list[TensorRecord] = []
    for i in range(n_tensors):
        name_len = reader.u32(f"tensor {i} name length")
        raw_name = reader.read(name_len, f"tensor {i} name")
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TruncatedHeader(f"tensor {i} name is not valid utf-8") from exc
        n_dims = reader.u32(f"tensor {name!r} rank")
        shape = reader.unpack(f"<{n_dims}Q", f"tensor {name!r} shape") if n_dims else ()
        encoding = reader.u32(f"tensor {name!r} encoding")
        nbytes = reader.u64(f"tensor {name!r} size")
        offset = reader.u64(f"tensor {name!r} offset")
        records.append(TensorRecord(name, tuple(int(d) for d in shape), encoding, nbytes, offset))

    hparams = Hyperparameters(
        n_vocab=n_vocab, n_embd=n_embd, n_head=n_head, n_head_kv=n_head_kv,
        n_layer=n_layer, n_ff=n_ff, n_ctx=n_ctx,
        file_type=_file_type(file_type),
        rms_norm_eps=float(eps), rope_theta=float(theta),
    )
    vocab = Vocabulary(tokens=tuple(tokens), scores=tuple(scores), bos_id=bos_id, eos_id=eos_id)
    return ContainerHeader(
        version=version,
        hparams=hparams,
        vocabulary=vocab,
        tensors=records,
        data_offset=align(reader.position),
    )


@dataclass(slots=True)
class _PendingTensor:
    name: str
    shape: tuple[int, ...]
    encoding: int
    data: bytes


class ContainerWriter:
    """Builds a container file from hyperparameters, vocabulary and encoded tensors."""

    def __init__(
        self,
        hparams: Hyperparameters,
        vocabulary: Vocabulary | Iterable[bytes],
        *,
        version: int = CURRENT_VERSION,
    ) -> None:
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersion(version)
        self.hparams = hparams
        if not isinstance(vocabulary, Vocabulary):
            vocabulary = Vocabulary(tokens=tuple(vocabulary))
        self.vocabulary = vocabulary
        self.version = version
        self._tensors: list[_PendingTensor] = []

    def add_tensor(
        self, name: str, shape: Iterable[int], element_type: ElementType | int, data: bytes,
    ) -> None:
        """Queue already-encoded tensor bytes; no validation is done here."""
        self._tensors.append(_PendingTensor(name, tuple(int(d) for d in shape), int(element_type), data))

    def _header_bytes(self, offsets: list[int]) -> bytes:
        hp = self.hparams
        out = bytearray(MAGIC)
        out += struct.pack("<I", self.version)
        out += _HPARAMS_V1.pack(
            hp.n_vocab, hp.n_embd, hp.n_head, hp.n_head_kv, hp.n_layer,
            hp.n_ff, hp.n_ctx, int(hp.file_type),
        )
        if self.version >= 2:
            out += _HPARAMS_V2_EXTRA.pack(hp.rms_norm_eps, hp.rope_theta)
        scores = self.vocabulary.scores or (0.0,) * len(self.vocabulary.tokens)
        out += struct.pack("<I", len(self.vocabulary.tokens))
        for token, score in zip(self.vocabulary.tokens, scores):
            out += struct.pack("<I", len(token)) + token + struct.pack("<f", score)
        if self.version >= 3:
            out += _SPECIAL_TOKENS_V3.pack(self.vocabulary.bos_id, self.vocabulary.eos_id)
        out += struct.pack("<I", len(self._tensors))
        for tensor, offset in zip(self._tensors, offsets):
            name = tensor.name.encode("utf-8")
            out += struct.pack("<I", len(name)) + name
            out += struct.pack("<I", len(tensor.shape))
            out += struct.pack(f"<{len(tensor.shape)}Q", *tensor.shape)
            out += struct.pack("<IQQ", tensor.encoding, len(tensor.data), offset)
        return bytes(out)

    def write(self, path: str | Path) -> Path:
        offsets: list[int] = []
        cursor = 0
        for tensor in self._tensors:
            cursor = align(cursor)
            offsets.append(cursor)
            cursor += len(tensor.data)

        header = self._header_bytes(offsets)
        data_start = align(len(header))
        path = Path(path)
        with path.open("wb") as fp:
            fp.write(header)
            fp.write(b"\x00" * (data_start - len(header)))
            written = 0
            for tensor, offset in zip(self._tensors, offsets):
                fp.write(b"\x00" * (offset - written))
                fp.write(tensor.data)
                written = offset + len(tensor.data)
        return path
