from __future__ import annotations

import ctypes
from typing import Any

from infer_runtime.backends.base import BackendCapabilities, ComputeBackend
from infer_runtime.errors import BackendError, DeviceUnavailable, OutOfDeviceMemory
from infer_runtime.types import DeviceBuffer, HostBuffer

try:
    from cuda import cudart  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    cudart = None

# cudaErrorMemoryAllocation
_STATUS_OUT_OF_MEMORY = 2


class CUDARuntimeError(BackendError):
    def __init__(self, status: int) -> None:
        super().__init__(f"CUDA runtime call failed with status={status}")
        self.status = status


def _check(result: tuple[Any, ...]) -> Any:
    status, *rest = result
    if int(status) != 0:
        raise CUDARuntimeError(int(status))
    if not rest:
        return None
    if len(rest) == 1:
        return rest[0]
    return tuple(rest)


def _ptr_from_writable_view(view: memoryview) -> int:
    if view.readonly:
        raise ValueError(
            "HostBuffer.view must be writable for async cudaMemcpyAsync; "
            "stage read-only weights through a pinned buffer"
        )
    return ctypes.addressof(ctypes.c_char.from_buffer(view))


class CUDABackend(ComputeBackend):
    """CUDA adapter using cuda-python runtime bindings.

    Weights are kept dequantized in device memory; evaluation is batched.
    """

    name = "cuda"

    def __init__(self, device_id: int = 0) -> None:
        super().__init__(device_id)
        if cudart is None:
            raise DeviceUnavailable("cuda-python is not installed; cannot initialize CUDABackend")
        try:
            _check(cudart.cudaSetDevice(device_id))
        except CUDARuntimeError as exc:
            raise DeviceUnavailable(f"cuda:{device_id}: {exc}") from exc
        self._pinned: dict[int, int] = {}

    @classmethod
    def is_compiled(cls) -> bool:
        return cudart is not None

    @property
    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            max_tokens_per_eval=None,
            requires_device_weights=True,
            consumes_quantized=False,
            requires_contiguous_memory=True,
        )

    @property
    def supports_pinned_host(self) -> bool:
        return True

    def alloc_pinned_host(self, nbytes: int) -> HostBuffer:
        ptr = _check(cudart.cudaMallocHost(nbytes))
        raw = (ctypes.c_char * nbytes).from_address(int(ptr))
        view = memoryview(raw).cast("B")
        self._pinned[id(view)] = int(ptr)
        return HostBuffer(view=view, pinned=True)

    def free_pinned_host(self, buf: HostBuffer) -> None:
        ptr = self._pinned.pop(id(buf.view), None)
        if ptr is not None:
            buf.view.release()
            _check(cudart.cudaFreeHost(ptr))

    def create_stream(self, purpose: str) -> Any:
        _ = purpose
        # cudaStreamNonBlocking = 1
        return _check(cudart.cudaStreamCreateWithFlags(1))

    def destroy_stream(self, stream: Any) -> None:
        _check(cudart.cudaStreamDestroy(stream))

    def alloc_device(self, nbytes: int) -> DeviceBuffer:
        try:
            dev_ptr = _check(cudart.cudaMalloc(nbytes))
        except CUDARuntimeError as exc:
            if exc.status == _STATUS_OUT_OF_MEMORY:
                raise OutOfDeviceMemory(self.device, nbytes, str(exc)) from exc
            raise
        return DeviceBuffer(handle=dev_ptr, nbytes=nbytes, backend=self.name)

    def free_device(self, buf: DeviceBuffer) -> None:
        _check(cudart.cudaFree(buf.handle))

    def copy_h2d_async(self, dst: DeviceBuffer, src: HostBuffer, stream: Any) -> None:
        src_ptr = _ptr_from_writable_view(src.view)
        _check(
            cudart.cudaMemcpyAsync(
                dst.handle,
                src_ptr,
                min(dst.nbytes, src.nbytes),
                cudart.cudaMemcpyKind.cudaMemcpyHostToDevice,
                stream,
            )
        )

    def copy_d2h_async(self, dst: HostBuffer, src: DeviceBuffer, stream: Any) -> None:
        dst_ptr = _ptr_from_writable_view(dst.view)
        _check(
            cudart.cudaMemcpyAsync(
                dst_ptr,
                src.handle,
                min(dst.nbytes, src.nbytes),
                cudart.cudaMemcpyKind.cudaMemcpyDeviceToHost,
                stream,
            )
        )

    def synchronize_stream(self, stream: Any) -> None:
        _check(cudart.cudaStreamSynchronize(stream))
