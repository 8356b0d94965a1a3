"""RAM cell allocation for compiled variables.

Cells are handed out lowest-first and never given back: a variable lives for
the whole compilation.
"""

from __future__ import annotations

import logging

import numpy as np

from tape_compiler.errors import OutOfMemory

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_SIZE = 255


class MemoryPool:
    def __init__(self, size: int = DEFAULT_MEMORY_SIZE) -> None:
        if size <= 0:
            raise ValueError("memory size must be positive")
        self.size = size
        self.occupied = np.zeros(size, dtype=bool)

    def allocate(self) -> int:
        free = np.flatnonzero(~self.occupied)
        if free.size == 0:
            raise OutOfMemory(f"no free RAM cell left (all {self.size} cells are in use)")
        address = int(free[0])
        self.occupied[address] = True
        logger.debug("allocated RAM cell %d", address)
        return address

    def is_occupied(self, address: int) -> bool:
        if not 0 <= address < self.size:
            return False
        return bool(self.occupied[address])

    @property
    def allocated(self) -> int:
        return int(np.count_nonzero(self.occupied))

    @property
    def free(self) -> int:
        return self.size - self.allocated
