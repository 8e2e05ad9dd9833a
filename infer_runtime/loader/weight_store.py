from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Union

from infer_runtime.errors import (
    DuplicateTensor,
    InvalidShape,
    MissingTensor,
    TensorSizeMismatch,
    TruncatedTensor,
    UnknownEncoding,
)
from infer_runtime.executor import expected_tensor_shapes
from infer_runtime.loader.container import ContainerHeader, read_header
from infer_runtime.quantize import nbytes_for
from infer_runtime.storage import HeapStorage, MMapArena, TensorStorage
from infer_runtime.types import (
    ElementType,
    HostBuffer,
    Hyperparameters,
    Region,
    TensorDescriptor,
    Vocabulary,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LoadParameters:
    """How a container is brought into memory."""

    prefer_mmap: bool = True
    context_size: int | None = None

    def __post_init__(self) -> None:
        if self.context_size is not None and self.context_size <= 0:
            raise ValueError("context_size must be > 0")


@dataclass(frozen=True, slots=True)
class HyperparametersLoaded:
    hparams: Hyperparameters


@dataclass(frozen=True, slots=True)
class TensorLoaded:
    current: int
    total: int
    name: str


@dataclass(frozen=True, slots=True)
class Loaded:
    file_size: int
    tensor_count: int
    seconds: float


LoadProgress = Union[HyperparametersLoaded, TensorLoaded, Loaded]


@dataclass(frozen=True, eq=False)
class Model:
    """A loaded container.  Immutable; shared read-only by every session."""

    hparams: Hyperparameters
    tensors: Mapping[str, TensorDescriptor]
    vocabulary: Vocabulary
    storage: TensorStorage
    version: int
    path: Path

    def __enter__(self) -> "Model":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def eos_id(self) -> int:
        return self.vocabulary.eos_id

    @property
    def nbytes(self) -> int:
        return sum(t.nbytes for t in self.tensors.values())

    def tensor_data(self, name: str) -> HostBuffer:
        return self.storage.get(self.tensors[name].region)

    def close(self) -> None:
        self.storage.close()


def _check_hparams(hp: Hyperparameters) -> None:
    fields = {
        "n_vocab": hp.n_vocab, "n_embd": hp.n_embd, "n_head": hp.n_head,
        "n_head_kv": hp.n_head_kv, "n_layer": hp.n_layer, "n_ff": hp.n_ff, "n_ctx": hp.n_ctx,
    }
    bad = [name for name, value in fields.items() if value <= 0]
    if bad:
        raise InvalidShape(f"hyperparameters must be > 0: {', '.join(bad)}")
    if hp.n_embd % hp.n_head or hp.n_head % hp.n_head_kv:
        raise InvalidShape(
            f"n_embd={hp.n_embd}, n_head={hp.n_head}, n_head_kv={hp.n_head_kv} "
            "do not divide evenly"
        )


def _check_vocabulary(hp: Hyperparameters, vocab: Vocabulary) -> None:
    if len(vocab) != hp.n_vocab:
        raise InvalidShape(f"vocabulary has {len(vocab)} tokens, n_vocab is {hp.n_vocab}")
    for role, token_id in (("bos", vocab.bos_id), ("eos", vocab.eos_id)):
        if not 0 <= token_id < hp.n_vocab:
            raise InvalidShape(f"{role} token id {token_id} outside vocabulary of {hp.n_vocab}")


def _descriptors(header: ContainerHeader, file_size: int) -> dict[str, TensorDescriptor]:
    out: dict[str, TensorDescriptor] = {}
    for record in header.tensors:
        if record.name in out:
            raise DuplicateTensor(record.name)
        try:
            element_type = ElementType(record.encoding)
        except ValueError:
            raise UnknownEncoding(record.encoding, record.name) from None
        try:
            expected = nbytes_for(element_type, record.shape)
        except ValueError as exc:
            raise InvalidShape(f"tensor {record.name!r}: {exc}") from None
        if expected != record.nbytes:
            raise TensorSizeMismatch(record.name, expected, record.nbytes)
        region = Region(offset=header.data_offset + record.offset, nbytes=record.nbytes)
        if region.end > file_size:
            raise TruncatedTensor(record.name, region.end, file_size)
        out[record.name] = TensorDescriptor(
            name=record.name, shape=record.shape, element_type=element_type, region=region,
        )
    return out


def _check_graph(hp: Hyperparameters, tensors: Mapping[str, TensorDescriptor]) -> None:
    for name, shape in expected_tensor_shapes(hp).items():
        tensor = tensors.get(name)
        if tensor is None:
            raise MissingTensor(name)
        if tensor.shape != shape:
            raise InvalidShape(f"tensor {name!r}: expected shape {shape}, got {tensor.shape}")


class WeightStore:
    """Opens model containers."""

    @classmethod
    def open(
        cls,
        path: str | Path,
        params: LoadParameters | None = None,
        progress: Callable[[LoadProgress], None] | None = None,
    ) -> Model:
        """Parse and validate ``path``; every failure is a :class:`LoadError`."""
        params = params or LoadParameters()
        path = Path(path)
        notify = progress or (lambda _event: None)
        t0 = time.perf_counter()

        file_size = path.stat().st_size
        with path.open("rb") as fp:
            header = read_header(fp)

        hparams = header.hparams
        if params.context_size is not None:
            hparams = dataclasses.replace(hparams, n_ctx=params.context_size)
        _check_hparams(hparams)
        _check_vocabulary(hparams, header.vocabulary)
        notify(HyperparametersLoaded(hparams))

        tensors = _descriptors(header, file_size)
        _check_graph(hparams, tensors)
        total = len(tensors)
        names = list(tensors)

        storage: TensorStorage
        if params.prefer_mmap:
            storage = MMapArena(path)
            for i, name in enumerate(names):
                notify(TensorLoaded(current=i, total=total, name=name))
        else:
            by_region = {t.region: t.name for t in tensors.values()}
            loaded = 0

            def _on_region(region: Region) -> None:
                nonlocal loaded
                notify(TensorLoaded(current=loaded, total=total, name=by_region[region]))
                loaded += 1

            try:
                storage = HeapStorage.read(path, (t.region for t in tensors.values()), _on_region)
            except EOFError as exc:
                raise TruncatedTensor(names[loaded], file_size, file_size) from exc

        elapsed = time.perf_counter() - t0
        log.info(
            "loaded %s (version %d, %s, %d tensors, %d bytes, %s) in %.1f ms",
            path.name, header.version, hparams.file_type.name, total, file_size,
            "mmap" if params.prefer_mmap else "heap", elapsed * 1000,
        )
        notify(Loaded(file_size=file_size, tensor_count=total, seconds=elapsed))
        return Model(
            hparams=hparams,
            tensors=MappingProxyType(tensors),
            vocabulary=header.vocabulary,
            storage=storage,
            version=header.version,
            path=path,
        )


open_model = WeightStore.open
