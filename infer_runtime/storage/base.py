from __future__ import annotations

from typing import Protocol

from infer_runtime.types import HostBuffer, Region


class TensorStorage(Protocol):
    """Read-only backing memory for a loaded model's tensor regions."""

    @property
    def resident(self) -> bool:
        """True when the data no longer depends on the container file."""
        ...

    def get(self, region: Region) -> HostBuffer:
        ...

    def close(self) -> None:
        ...
