"""Pinned host staging for weight uploads."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from infer_runtime.types import HostBuffer

if TYPE_CHECKING:
    from infer_runtime.backends.base import ComputeBackend


class PinnedStagingBuffer:
    """One pinned host buffer that every upload on a handle is copied through.

    Tensors are uploaded one at a time, so a single buffer sized to the largest
    tensor seen so far serves a whole model. :func:`materialize` drains it once
    the model is resident; pinned memory is held only while uploading.
    """

    def __init__(self, backend: ComputeBackend) -> None:
        self._backend = backend
        self._buffer: HostBuffer | None = None
        self._lock = threading.Lock()
        self.peak_bytes = 0

    @property
    def capacity(self) -> int:
        return 0 if self._buffer is None else self._buffer.nbytes

    @contextmanager
    def stage(self, src: HostBuffer) -> Iterator[HostBuffer]:
        """Copy ``src`` into the pinned buffer and yield a view of exactly its size."""
        with self._lock:
            if src.nbytes > self.capacity:
                self._free()
                self._buffer = self._backend.alloc_pinned_host(src.nbytes)
                self.peak_bytes = max(self.peak_bytes, src.nbytes)
            staging = self._buffer.view[: src.nbytes]
            staging[:] = src.view
            yield HostBuffer(view=staging, pinned=True)

    def drain(self) -> int:
        """Free the pinned buffer; returns the bytes released."""
        with self._lock:
            return self._free()

    def _free(self) -> int:
        buf, self._buffer = self._buffer, None
        if buf is None:
            return 0
        self._backend.free_pinned_host(buf)
        return buf.nbytes
