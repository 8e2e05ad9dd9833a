from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from infer_runtime.types import DeviceBuffer, HostBuffer


@dataclass(frozen=True, slots=True)
class BackendCapabilities:
    """Fixed capability record the session dispatches on.

    ``max_tokens_per_eval`` is ``None`` when a single call may evaluate any
    number of tokens.
    """

    max_tokens_per_eval: int | None
    requires_device_weights: bool
    consumes_quantized: bool
    requires_contiguous_memory: bool = False

    @property
    def supports_batched_eval(self) -> bool:
        return self.max_tokens_per_eval is None or self.max_tokens_per_eval > 1

    def batch_limit(self, requested: int) -> int:
        if self.max_tokens_per_eval is None:
            return requested
        return max(1, min(requested, self.max_tokens_per_eval))


class ComputeBackend(ABC):
    """Vendor-specific device API adapter.

    Sessions depend only on this contract plus :attr:`capabilities`, so a
    backend can be swapped without touching the evaluation loop.
    """

    name: str

    def __init__(self, device_id: int = 0) -> None:
        self.device_id = device_id

    @classmethod
    def is_compiled(cls) -> bool:
        """Whether the bindings this backend needs were importable."""
        return True

    @property
    def device(self) -> str:
        return f"{self.name}:{self.device_id}"

    @property
    @abstractmethod
    def capabilities(self) -> BackendCapabilities:
        pass

    @property
    def supports_pinned_host(self) -> bool:
        return False

    def alloc_pinned_host(self, nbytes: int) -> HostBuffer:
        raise NotImplementedError(f"{self.name} does not support pinned host memory")

    def free_pinned_host(self, buf: HostBuffer) -> None:
        raise NotImplementedError(f"{self.name} does not support pinned host memory")

    def reserve(self, nbytes: int) -> None:
        """Account for ``nbytes`` of weights referenced in place (no device copy)."""

    def unreserve(self, nbytes: int) -> None:
        pass

    @abstractmethod
    def create_stream(self, purpose: str) -> Any:
        pass

    @abstractmethod
    def destroy_stream(self, stream: Any) -> None:
        pass

    @abstractmethod
    def alloc_device(self, nbytes: int) -> DeviceBuffer:
        """Raises :class:`OutOfDeviceMemory` when the device cannot hold ``nbytes``."""

    @abstractmethod
    def free_device(self, buf: DeviceBuffer) -> None:
        pass

    @abstractmethod
    def copy_h2d_async(self, dst: DeviceBuffer, src: HostBuffer, stream: Any) -> None:
        pass

    @abstractmethod
    def copy_d2h_async(self, dst: HostBuffer, src: DeviceBuffer, stream: Any) -> None:
        pass

    @abstractmethod
    def synchronize_stream(self, stream: Any) -> None:
        pass

    def close(self) -> None:
        pass
