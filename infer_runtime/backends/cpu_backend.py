from __future__ import annotations

from typing import Any

from infer_runtime.backends.base import BackendCapabilities, ComputeBackend
from infer_runtime.errors import OutOfDeviceMemory
from infer_runtime.types import DeviceBuffer, HostBuffer


class CPUBackend(ComputeBackend):
    """Host backend: evaluates any batch size and reads quantized weights in place.

    "Device" buffers are host ``bytearray``s keyed by ``id()``; they are only
    used when a subclass reports ``requires_device_weights``.  ``memory_limit``
    caps the bytes held through :meth:`reserve` and :meth:`alloc_device`.
    """

    name = "cpu"

    def __init__(self, device_id: int = 0, memory_limit: int | None = None) -> None:
        super().__init__(device_id)
        if memory_limit is not None and memory_limit < 0:
            raise ValueError("memory_limit must be >= 0")
        self.memory_limit = memory_limit
        self.used_bytes = 0
        self._buffers: dict[int, bytearray] = {}

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            max_tokens_per_eval=None,
            requires_device_weights=False,
            consumes_quantized=True,
            requires_contiguous_memory=False,
        )

    @property
    def supports_pinned_host(self) -> bool:
        return True

    def alloc_pinned_host(self, nbytes: int) -> HostBuffer:
        return HostBuffer(view=memoryview(bytearray(nbytes)), pinned=True)

    def free_pinned_host(self, buf: HostBuffer) -> None:
        _ = buf

    def reserve(self, nbytes: int) -> None:
        if self.memory_limit is not None and self.used_bytes + nbytes > self.memory_limit:
            raise OutOfDeviceMemory(
                self.device, nbytes,
                f"{self.used_bytes} of {self.memory_limit} bytes already in use",
            )
        self.used_bytes += nbytes

    def unreserve(self, nbytes: int) -> None:
        self.used_bytes = max(0, self.used_bytes - nbytes)

    def create_stream(self, purpose: str) -> object:
        return object()

    def destroy_stream(self, stream: Any) -> None:
        _ = stream

    def alloc_device(self, nbytes: int) -> DeviceBuffer:
        self.reserve(nbytes)
        try:
            buf = bytearray(nbytes)
        except MemoryError as exc:
            self.unreserve(nbytes)
            raise OutOfDeviceMemory(self.device, nbytes, "host allocation failed") from exc
        key = id(buf)
        self._buffers[key] = buf
        return DeviceBuffer(handle=key, nbytes=nbytes, backend=self.name)

    def free_device(self, buf: DeviceBuffer) -> None:
        if self._buffers.pop(int(buf.handle), None) is not None:
            self.unreserve(buf.nbytes)

    def copy_h2d_async(self, dst: DeviceBuffer, src: HostBuffer, stream: Any) -> None:
        _ = stream
        target = self._buffers[int(dst.handle)]
        n = min(dst.nbytes, src.nbytes)
        target[:n] = src.view[:n]

    def copy_d2h_async(self, dst: HostBuffer, src: DeviceBuffer, stream: Any) -> None:
        _ = stream
        source = self._buffers[int(src.handle)]
        n = min(dst.nbytes, src.nbytes)
        dst.view[:n] = source[:n]

    def synchronize_stream(self, stream: Any) -> None:
        _ = stream

    def close(self) -> None:
        self._buffers.clear()
        self.used_bytes = 0
