from __future__ import annotations

import enum
import logging

from .base import BackendCapabilities, ComputeBackend
from .cpu_backend import CPUBackend
from .cuda_backend import CUDABackend
from .handle import BackendHandle, MaterializedWeights, device_lock, materialize
from .mps_backend import MPSBackend
from .staging import PinnedStagingBuffer
from infer_runtime.errors import BackendError, DeviceUnavailable

log = logging.getLogger(__name__)


class BackendPreference(str, enum.Enum):
    CPU = "cpu"
    PREFER_GPU = "prefer_gpu"
    REQUIRE_GPU = "require_gpu"


BACKENDS: dict[str, type[ComputeBackend]] = {
    "cpu": CPUBackend,
    "cuda": CUDABackend,
    "mps": MPSBackend,
}

# search order for GPU preferences
GPU_BACKENDS = ("cuda", "mps")


def compiled_backends() -> list[str]:
    """Names of the backends whose bindings imported, CPU always included."""
    return [name for name, cls in BACKENDS.items() if cls.is_compiled()]


def _open(name: str, device_id: int) -> ComputeBackend:
    if name not in BACKENDS:
        raise ValueError(f"unknown backend {name!r}; expected one of {sorted(BACKENDS)}")
    if name not in compiled_backends():
        raise DeviceUnavailable(f"backend {name!r} is not available in this build")
    try:
        return BACKENDS[name](device_id)
    except BackendError:
        raise
    except (RuntimeError, OSError) as exc:
        raise DeviceUnavailable(f"{name}:{device_id}: {exc}") from exc


def select_backend(
    requested: BackendPreference | str = BackendPreference.CPU,
    device_id: int = 0,
) -> BackendHandle:
    """Pick exactly one backend for ``requested``; nothing is materialized yet.

    ``PREFER_GPU`` falls back to the CPU with a warning and marks the handle
    ``downgraded``; every other unsatisfiable request raises
    :class:`DeviceUnavailable`.
    """
    try:
        preference: BackendPreference | None = BackendPreference(requested)
    except ValueError:
        preference = None

    if preference is BackendPreference.CPU:
        return BackendHandle(CPUBackend(device_id))
    if preference is None:
        return BackendHandle(_open(str(requested), device_id))

    failures: list[str] = []
    for name in GPU_BACKENDS:
        if name not in compiled_backends():
            failures.append(f"{name}: not compiled")
            continue
        try:
            return BackendHandle(_open(name, device_id))
        except DeviceUnavailable as exc:
            failures.append(str(exc))
    detail = "; ".join(failures)
    if preference is BackendPreference.REQUIRE_GPU:
        raise DeviceUnavailable(f"no GPU backend available ({detail})")
    log.warning("no GPU backend available (%s); using cpu:%d", detail, device_id)
    return BackendHandle(CPUBackend(device_id), downgraded=True)


__all__ = [
    "BACKENDS",
    "BackendCapabilities",
    "BackendHandle",
    "BackendPreference",
    "CPUBackend",
    "CUDABackend",
    "ComputeBackend",
    "GPU_BACKENDS",
    "MPSBackend",
    "MaterializedWeights",
    "PinnedStagingBuffer",
    "compiled_backends",
    "device_lock",
    "materialize",
    "select_backend",
]
