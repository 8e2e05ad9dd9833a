from .base import TensorStorage
from .heap import HeapStorage
from .mmap_arena import MMapArena

__all__ = ["HeapStorage", "MMapArena", "TensorStorage"]
