from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence

from infer_runtime.backends.base import BackendCapabilities, ComputeBackend
from infer_runtime.backends.staging import PinnedStagingBuffer
from infer_runtime.errors import BackendError, EvaluationError, OutOfDeviceMemory
from infer_runtime.quantize import BlockDequantizer, dequantize_bytes
from infer_runtime.types import DeviceBuffer, ElementType, HostBuffer

if TYPE_CHECKING:
    from infer_runtime.executor import TransformerExecutor
    from infer_runtime.kv_cache import KVCache
    from infer_runtime.loader.weight_store import Model

log = logging.getLogger(__name__)

_DEVICE_LOCKS: dict[str, threading.Lock] = {}
_DEVICE_LOCKS_GUARD = threading.Lock()


def device_lock(device: str) -> threading.Lock:
    """The execution lock shared by every handle on ``device``."""
    with _DEVICE_LOCKS_GUARD:
        lock = _DEVICE_LOCKS.get(device)
        if lock is None:
            lock = _DEVICE_LOCKS[device] = threading.Lock()
        return lock


@dataclass(slots=True)
class _Resident:
    shape: tuple[int, ...]
    element_type: ElementType
    nbytes: int
    host: HostBuffer | None = None
    device: DeviceBuffer | None = None


class MaterializedWeights:
    """A model's tensors as held by one backend.

    ``tensor`` returns float32 arrays: host-resident F32 tensors come back as
    zero-copy read-only views, device-resident ones are read back first, and
    quantized storage is decoded on the way out.
    """

    def __init__(
        self,
        model: Model,
        handle: BackendHandle,
        entries: dict[str, _Resident],
        reserved: int = 0,
    ) -> None:
        self.model = model
        self._handle = handle
        self._entries = entries
        self._reserved = reserved

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def nbytes(self) -> int:
        return sum(e.nbytes for e in self._entries.values())

    def element_type(self, name: str) -> ElementType:
        return self._entries[name].element_type

    def tensor(self, name: str) -> Any:
        entry = self._entries.get(name)
        if entry is None:
            raise EvaluationError(f"tensor {name!r} is not materialized on {self._handle.device}")
        if entry.device is not None:
            raw = bytearray(entry.nbytes)
            self._handle.download(HostBuffer(view=memoryview(raw)), entry.device)
        else:
            assert entry.host is not None
            raw = entry.host.view
        return dequantize_bytes(raw, entry.element_type, entry.shape)

    def free(self) -> None:
        backend = self._handle.backend
        for entry in self._entries.values():
            if entry.device is not None:
                backend.free_device(entry.device)
        if self._reserved:
            backend.unreserve(self._reserved)
            self._reserved = 0
        self._entries.clear()


class BackendHandle:
    """One selected backend instance and the weights materialized on it."""

    def __init__(self, backend: ComputeBackend, *, downgraded: bool = False) -> None:
        self.backend = backend
        self.downgraded = downgraded
        self.lock = device_lock(backend.device)
        self._materialize_lock = threading.Lock()
        self._weights: dict[int, MaterializedWeights] = {}
        self._stream: Any = None
        self._staging = PinnedStagingBuffer(backend) if backend.supports_pinned_host else None
        self._released = False

    def __repr__(self) -> str:
        return f"BackendHandle({self.device!r}, downgraded={self.downgraded})"

    @property
    def name(self) -> str:
        return self.backend.name

    @property
    def device(self) -> str:
        return self.backend.device

    @property
    def capabilities(self) -> BackendCapabilities:
        return self.backend.capabilities

    @property
    def stream(self) -> Any:
        if self._stream is None:
            self._stream = self.backend.create_stream("weights")
        return self._stream

    def is_materialized(self, model: Model) -> bool:
        return id(model) in self._weights

    def weights(self, model: Model) -> MaterializedWeights:
        weights = self._weights.get(id(model))
        if weights is None:
            raise BackendError(f"model {model.path.name} is not materialized on {self.device}")
        return weights

    def upload(self, dst: DeviceBuffer, src: HostBuffer) -> None:
        """Copy host bytes to the device, staging through a pinned buffer when possible."""
        stream = self.stream
        if self._staging is not None:
            with self._staging.stage(src) as staging:
                self.backend.copy_h2d_async(dst, staging, stream)
                self.backend.synchronize_stream(stream)
            return
        if src.view.readonly:
            src = HostBuffer(view=memoryview(bytearray(src.view)))
        self.backend.copy_h2d_async(dst, src, stream)
        self.backend.synchronize_stream(stream)

    def download(self, dst: HostBuffer, src: DeviceBuffer) -> None:
        stream = self.stream
        self.backend.copy_d2h_async(dst, src, stream)
        self.backend.synchronize_stream(stream)

    def evaluate(
        self, model: Model, executor: TransformerExecutor, cache: KVCache, tokens: Sequence[int],
    ) -> Any:
        """Evaluate ``tokens`` under the device lock; see :meth:`TransformerExecutor.evaluate`."""
        limit = self.capabilities.max_tokens_per_eval
        if limit is not None and len(tokens) > limit:
            raise EvaluationError(
                f"{self.device} evaluates at most {limit} tokens per call, got {len(tokens)}"
            )
        weights = self.weights(model)
        with self.lock:
            try:
                return executor.evaluate(weights, cache, tokens)
            except (RuntimeError, ValueError, ArithmeticError, IndexError) as exc:
                raise EvaluationError(f"{self.device}: {type(exc).__name__}: {exc}") from exc

    def release(self, model: Model | None = None) -> None:
        """Free device buffers for ``model``, or for every model and the handle itself."""
        with self._materialize_lock:
            keys = list(self._weights) if model is None else [id(model)]
            for key in keys:
                weights = self._weights.pop(key, None)
                if weights is not None:
                    weights.free()
            if model is None:
                if self._staging is not None:
                    self._staging.drain()
                if self._stream is not None:
                    self.backend.destroy_stream(self._stream)
                    self._stream = None
                self._released = True


def _stage_entry(tensor: Any, src: HostBuffer, caps: BackendCapabilities) -> tuple[HostBuffer, ElementType]:
    dequantizer = BlockDequantizer()
    if not caps.consumes_quantized and dequantizer.needs_dequantize(tensor):
        return dequantizer.dequantize(tensor, src), ElementType.F32
    return src, tensor.element_type


def _materialize(model: Model, handle: BackendHandle) -> MaterializedWeights:
    caps = handle.capabilities
    backend = handle.backend
    entries: dict[str, _Resident] = {}

    if not caps.requires_device_weights:
        dequantizer = BlockDequantizer()
        total = sum(
            t.nbytes if caps.consumes_quantized else dequantizer.decompressed_nbytes(t)
            for t in model.tensors.values()
        )
        backend.reserve(total)
        try:
            for name, tensor in model.tensors.items():
                buf, encoding = _stage_entry(tensor, model.tensor_data(name), caps)
                entries[name] = _Resident(tensor.shape, encoding, buf.nbytes, host=buf)
        except MemoryError as exc:
            backend.unreserve(total)
            raise OutOfDeviceMemory(handle.device, total, "dequantization failed") from exc
        return MaterializedWeights(model, handle, entries, reserved=total)

    allocated: list[DeviceBuffer] = []
    try:
        for name, tensor in model.tensors.items():
            src, encoding = _stage_entry(tensor, model.tensor_data(name), caps)
            dst = backend.alloc_device(src.nbytes)
            allocated.append(dst)
            handle.upload(dst, src)
            entries[name] = _Resident(tensor.shape, encoding, dst.nbytes, device=dst)
    except MemoryError as exc:
        for buf in allocated:
            backend.free_device(buf)
        raise OutOfDeviceMemory(handle.device, model.nbytes, "host staging failed") from exc
    except Exception:
        for buf in allocated:
            backend.free_device(buf)
        raise
    return MaterializedWeights(model, handle, entries)


def materialize(model: Model, handle: BackendHandle) -> MaterializedWeights:
    """Make ``model``'s tensors usable on ``handle``; repeated calls return the same weights."""
    with handle._materialize_lock:
        if handle._released:
            raise BackendError(f"{handle.device} handle has been released")
        existing = handle._weights.get(id(model))
        if existing is not None:
            return existing
        t0 = time.perf_counter()
        try:
            weights = _materialize(model, handle)
        finally:
            if handle._staging is not None:
                freed = handle._staging.drain()
                if freed:
                    log.debug("freed %d bytes of pinned staging on %s", freed, handle.device)
        handle._weights[id(model)] = weights
        log.info(
            "materialized %d tensors (%d bytes) on %s in %.1f ms",
            len(weights), weights.nbytes, handle.device, (time.perf_counter() - t0) * 1000,
        )
        return weights
