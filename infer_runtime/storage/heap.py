from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable

from infer_runtime.types import HostBuffer, Region


class HeapStorage:
    """Copies every tensor region into its own heap buffer up front.

    Startup costs one read per tensor; afterwards the container file can be
    moved or deleted.
    """

    def __init__(self, buffers: dict[Region, bytearray] | None = None) -> None:
        self._buffers: dict[Region, bytearray] = dict(buffers or {})

    @classmethod
    def read(
        cls,
        path: str | Path,
        regions: Iterable[Region],
        on_region: Callable[[Region], None] | None = None,
    ) -> "HeapStorage":
        buffers: dict[Region, bytearray] = {}
        with Path(path).open("rb") as fp:
            for region in regions:
                fp.seek(region.offset)
                data = bytearray(region.nbytes)
                read = fp.readinto(data)
                if read != region.nbytes:
                    raise EOFError(
                        f"short read at offset {region.offset}: {read} of {region.nbytes} bytes"
                    )
                buffers[region] = data
                if on_region is not None:
                    on_region(region)
        return cls(buffers)

    @property
    def resident(self) -> bool:
        return True

    @property
    def nbytes(self) -> int:
        return sum(len(b) for b in self._buffers.values())

    def get(self, region: Region) -> HostBuffer:
        data = self._buffers[region]
        return HostBuffer(view=memoryview(data).toreadonly(), pinned=False)

    def close(self) -> None:
        self._buffers.clear()
