"""
llama-session :: Memory Locking

Best-effort mlock(2) of tensor storage through the C library.
Refusal (RLIMIT_MEMLOCK, no libc, non-CPU tensors) is reported, never
raised: the session keeps working, just swappable.

INL - 2025
"""

import ctypes
import ctypes.util
import os
from typing import Iterable, List, Optional, Tuple

import torch

from llama_session.core.logging import get_logger

logger = get_logger("llama_session.mlock")

_libc = None


def _load_libc():
    global _libc
    if _libc is None:
        name = ctypes.util.find_library("c")
        if name is None:
            return None
        lib = ctypes.CDLL(name, use_errno=True)
        lib.mlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
        lib.mlock.restype = ctypes.c_int
        lib.munlock.argtypes = [ctypes.c_void_p, ctypes.c_size_t]
        lib.munlock.restype = ctypes.c_int
        _libc = lib
    return _libc


class MemoryLock:
    """
    Locks a set of tensors in RAM.

    Usage:
        lock = MemoryLock()
        if not lock.lock(weights + cache.tensors()):
            logger.warning(lock.error)
        ...
        lock.unlock()
    """

    def __init__(self):
        self.regions: List[Tuple[int, int]] = []
        self.error: Optional[str] = None

    @property
    def locked_bytes(self) -> int:
        return sum(size for _, size in self.regions)

    def lock(self, tensors: Iterable[torch.Tensor]) -> bool:
        """Lock every CPU tensor. Returns False (with self.error set) on the first refusal."""
        try:
            libc = _load_libc()
        except OSError as e:
            self.error = f"mlock unavailable: {e}"
            return False
        if libc is None:
            self.error = "mlock unavailable: C library not found"
            return False

        for t in tensors:
            if t.device.type != "cpu":
                continue
            size = t.numel() * t.element_size()
            if size == 0:
                continue
            addr = t.data_ptr()
            if libc.mlock(ctypes.c_void_p(addr), ctypes.c_size_t(size)) != 0:
                errno = ctypes.get_errno()
                self.error = (
                    f"failed to mlock {size:,} bytes ({os.strerror(errno)}); "
                    f"{self.locked_bytes:,} bytes already locked. "
                    f"Try raising the memlock limit (ulimit -l)."
                )
                return False
            self.regions.append((addr, size))
        return True

    def unlock(self):
        libc = _libc
        if libc is not None:
            for addr, size in self.regions:
                libc.munlock(ctypes.c_void_p(addr), ctypes.c_size_t(size))
        self.regions = []
