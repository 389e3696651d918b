"""
llama-session :: Rotary Positional Embedding

Integer position IDs → float sin/cos rotation.

GGUF llama checkpoints rotate adjacent pairs (x[2i], x[2i+1]), not
the two halves of the head, so apply_rotary works on interleaved pairs.

INL - 2025
"""

import torch
import torch.nn as nn
from typing import Tuple


class RotaryEmbedding(nn.Module):
    def __init__(self, dim: int, base: float = 10000.0, scale: float = 1.0, device=None):
        super().__init__()
        inv_freq = 1.0 / (base ** (torch.arange(0, dim, 2, device=device).float() / dim))
        self.register_buffer("inv_freq", inv_freq, persistent=False)
        self.scale = scale

    def forward(self, positions: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """positions: (n,) integer → cos, sin: (n, dim // 2)"""
        t = positions.float() * self.scale
        freqs = torch.outer(t, self.inv_freq)
        return freqs.cos(), freqs.sin()


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """
    Apply rotary embedding to x.
    x:   (n, heads, head_dim)
    cos: (n, head_dim // 2), from RotaryEmbedding.forward()
    sin: (n, head_dim // 2)
    """
    x1 = x[..., 0::2].float()
    x2 = x[..., 1::2].float()
    cos = cos.unsqueeze(1)  # (n, 1, d/2)
    sin = sin.unsqueeze(1)
    out = torch.stack([x1 * cos - x2 * sin, x1 * sin + x2 * cos], dim=-1)
    return out.flatten(-2).type_as(x)
