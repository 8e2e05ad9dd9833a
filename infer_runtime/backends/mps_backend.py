from __future__ import annotations

import ctypes
from typing import Any

from infer_runtime.backends.base import BackendCapabilities, ComputeBackend
from infer_runtime.errors import DeviceUnavailable, OutOfDeviceMemory
from infer_runtime.types import DeviceBuffer, HostBuffer

try:
    import Metal  # type: ignore  # pyobjc-framework-Metal
    _metal_device = Metal.MTLCreateSystemDefaultDevice()
except Exception:  # pragma: no cover - optional dependency
    Metal = None
    _metal_device = None


class MPSBackend(ComputeBackend):
    """Apple Metal backend for Apple Silicon.

    - Unified memory: weights live in shared-mode MTLBuffers (zero-copy for the CPU)
    - Streams map to MTLCommandQueue instances
    - Evaluation is one token per call, so prompts are fed through the CPU
      fallback handle
    """

    name = "mps"

    def __init__(self, device_id: int = 0) -> None:
        super().__init__(device_id)
        if Metal is None or _metal_device is None:
            raise DeviceUnavailable(
                "pyobjc-framework-Metal is not installed or no Metal device found; "
                "cannot initialize MPSBackend"
            )
        self._device = _metal_device
        self._buffers: dict[int, Any] = {}  # handle -> MTLBuffer

    @classmethod
    def is_compiled(cls) -> bool:
        return Metal is not None

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            max_tokens_per_eval=1,
            requires_device_weights=True,
            consumes_quantized=False,
            requires_contiguous_memory=True,
        )

    @property
    def supports_pinned_host(self) -> bool:
        return True  # UMA: all host memory is effectively pinned

    def alloc_pinned_host(self, nbytes: int) -> HostBuffer:
        return HostBuffer(view=memoryview(bytearray(nbytes)), pinned=True)

    def free_pinned_host(self, buf: HostBuffer) -> None:
        pass

    def create_stream(self, purpose: str) -> Any:
        _ = purpose
        queue = self._device.newCommandQueue()
        if queue is None:
            raise DeviceUnavailable("failed to create Metal command queue")
        return queue

    def destroy_stream(self, stream: Any) -> None:
        # MTLCommandQueue is reference-counted by the ObjC runtime
        pass

    def alloc_device(self, nbytes: int) -> DeviceBuffer:
        # MTLResourceStorageModeShared = 0
        mtl_buf = self._device.newBufferWithLength_options_(nbytes, 0)
        if mtl_buf is None:
            raise OutOfDeviceMemory(self.device, nbytes, "newBufferWithLength returned nil")
        handle = id(mtl_buf)
        self._buffers[handle] = mtl_buf
        return DeviceBuffer(handle=handle, nbytes=nbytes, backend=self.name)

    def free_device(self, buf: DeviceBuffer) -> None:
        self._buffers.pop(int(buf.handle), None)

    def copy_h2d_async(self, dst: DeviceBuffer, src: HostBuffer, stream: Any) -> None:
        if src.nbytes < dst.nbytes:
            raise ValueError(
                f"Host buffer ({src.nbytes}B) smaller than device buffer ({dst.nbytes}B)"
            )
        mtl_buf = self._buffers[int(dst.handle)]
        ctypes.memmove(mtl_buf.contents(), bytes(src.view[: dst.nbytes]), dst.nbytes)
        mtl_buf.didModifyRange_(Metal.NSRange(0, dst.nbytes))

    def copy_d2h_async(self, dst: HostBuffer, src: DeviceBuffer, stream: Any) -> None:
        if dst.nbytes < src.nbytes:
            raise ValueError(
                f"Host buffer ({dst.nbytes}B) smaller than device buffer ({src.nbytes}B)"
            )
        mtl_buf = self._buffers[int(src.handle)]
        dst.view[: src.nbytes] = ctypes.string_at(mtl_buf.contents(), src.nbytes)

    def synchronize_stream(self, stream: Any) -> None:
        cmd_buf = stream.commandBuffer()
        cmd_buf.commit()
        cmd_buf.waitUntilCompleted()

    def close(self) -> None:
        self._buffers.clear()
