from __future__ import annotations

import gc
import logging
import mmap
from pathlib import Path
from typing import Any

from infer_runtime.types import HostBuffer, Region

log = logging.getLogger(__name__)


class MMapArena:
    """Maps a container file read-only and hands out bounds-checked views.

    Views reference the mapping directly, so no bytes are copied at load
    time; pages are faulted in on first touch.  The file must stay
    available for as long as the arena is open.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._fp = self.path.open("rb")
        try:
            self._map = mmap.mmap(self._fp.fileno(), length=0, access=mmap.ACCESS_READ)
        except (OSError, ValueError):
            self._fp.close()
            raise
        self._view: memoryview | None = memoryview(self._map)

    def __enter__(self) -> "MMapArena":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def resident(self) -> bool:
        return False

    @property
    def size(self) -> int:
        return len(self._map)

    @property
    def closed(self) -> bool:
        return self._view is None

    def get(self, region: Region) -> HostBuffer:
        if self._view is None:
            raise ValueError(f"arena for {self.path} is closed")
        if region.offset < 0 or region.nbytes < 0 or region.end > len(self._view):
            raise IndexError(
                f"region [{region.offset}, {region.end}) outside arena of {len(self._view)} bytes"
            )
        return HostBuffer(view=self._view[region.offset : region.end], pinned=False)

    def close(self) -> None:
        if self._view is None:
            return
        self._view.release()
        self._view = None
        gc.collect()
        try:
            self._map.close()
        except BufferError:
            # Views handed out earlier are still alive; the mapping is
            # unmapped when the last of them is garbage collected.
            log.warning("mmap of %s still referenced; leaving it to the collector", self.path)
        self._fp.close()
