"""
llama-session :: KV Cache

Contiguous single-sequence KV cache sized to the context window.

Memory layout:
    k_caches[layer]: (n_ctx, n_kv_heads, head_dim)
    v_caches[layer]: (n_ctx, n_kv_heads, head_dim)

Stored in float16 (f16_kv) or float32; reads return the compute dtype.
n_past is the position counter: positions [0, n_past) hold valid
keys/values, and the next token is written at n_past.

INL - 2025
"""

import torch
from typing import List, Tuple


class KVCache:
    """
    One sequence, n_ctx positions, no eviction.

    When n_past reaches n_ctx the cache is full and further writes
    raise; the generation loop stops before that happens.
    """

    def __init__(
        self,
        num_layers: int,
        num_kv_heads: int,
        head_dim: int,
        n_ctx: int,
        dtype: torch.dtype = torch.float16,
        compute_dtype: torch.dtype = torch.float32,
        device: str = "cpu",
    ):
        self.num_layers = num_layers
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.n_ctx = n_ctx
        self.kv_dtype = dtype
        self.compute_dtype = compute_dtype
        self.device = device

        self.k_caches = [
            torch.zeros(n_ctx, num_kv_heads, head_dim, dtype=dtype, device=device)
            for _ in range(num_layers)
        ]
        self.v_caches = [
            torch.zeros(n_ctx, num_kv_heads, head_dim, dtype=dtype, device=device)
            for _ in range(num_layers)
        ]
        self.n_past = 0

    @property
    def n_free(self) -> int:
        return self.n_ctx - self.n_past

    @property
    def is_full(self) -> bool:
        return self.n_past >= self.n_ctx

    @property
    def nbytes(self) -> int:
        per = self.n_ctx * self.num_kv_heads * self.head_dim * self.k_caches[0].element_size() if self.k_caches else 0
        return 2 * self.num_layers * per

    def write_kv_batch(
        self,
        layer_idx: int,
        start: int,
        k: torch.Tensor,   # (n, num_kv_heads, head_dim)
        v: torch.Tensor,   # (n, num_kv_heads, head_dim)
    ):
        """Write K/V for positions [start, start + n)."""
        end = start + k.shape[0]
        if start < 0 or end > self.n_ctx:
            raise IndexError(f"KV write [{start}, {end}) outside context of {self.n_ctx}")
        self.k_caches[layer_idx][start:end] = k.to(self.kv_dtype)
        self.v_caches[layer_idx][start:end] = v.to(self.kv_dtype)

    def read_kv(self, layer_idx: int, length: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Read K/V for positions [0, length).

        Returns:
            k: (length, num_kv_heads, head_dim) in compute dtype
            v: (length, num_kv_heads, head_dim) in compute dtype
        """
        return (
            self.k_caches[layer_idx][:length].to(self.compute_dtype),
            self.v_caches[layer_idx][:length].to(self.compute_dtype),
        )

    def advance(self, n: int):
        """Commit n newly written positions."""
        if self.n_past + n > self.n_ctx:
            raise IndexError(f"context overflow: {self.n_past} + {n} > {self.n_ctx}")
        self.n_past += n

    def reset(self):
        """Forget all positions. Storage is reused, not cleared."""
        self.n_past = 0

    def tensors(self) -> List[torch.Tensor]:
        return self.k_caches + self.v_caches

    def free(self):
        self.k_caches = []
        self.v_caches = []
        self.n_past = 0

    def get_stats(self) -> dict:
        return {
            "n_ctx": self.n_ctx,
            "n_past": self.n_past,
            "n_free": self.n_free,
            "kv_dtype": str(self.kv_dtype).replace("torch.", ""),
            "kv_bytes": self.nbytes,
        }
