"""
llama-session :: Attention

Causal attention of new queries against the cached history.
Plain torch.bmm; GQA by repeating KV heads.

INL - 2025
"""

import torch
import torch.nn.functional as F
import math
from typing import Optional


def cached_attention(
    q: torch.Tensor,           # (n_tokens, num_heads, head_dim)
    k_full: torch.Tensor,      # (history_len, num_kv_heads, head_dim)
    v_full: torch.Tensor,      # (history_len, num_kv_heads, head_dim)
    num_kv_groups: int,
    positions: torch.Tensor,   # (n_tokens,) int
    softmax_scale: Optional[float] = None,
) -> torch.Tensor:
    """
    Q attends to all of k_full/v_full with causal masking.
    history_len must cover every query position.
    """
    if softmax_scale is None:
        softmax_scale = 1.0 / math.sqrt(q.shape[-1])

    n = q.shape[0]

    # Align dtypes (cache may be fp16 while q is fp32)
    compute_dtype = q.dtype
    if k_full.dtype != compute_dtype:
        k_full = k_full.to(compute_dtype)
    if v_full.dtype != compute_dtype:
        v_full = v_full.to(compute_dtype)

    # GQA expand
    if num_kv_groups > 1:
        k_full = k_full.repeat_interleave(num_kv_groups, dim=1)
        v_full = v_full.repeat_interleave(num_kv_groups, dim=1)

    q_t = q.transpose(0, 1)       # (num_heads, n, head_dim)
    k_t = k_full.transpose(0, 1)  # (num_heads, history, head_dim)
    v_t = v_full.transpose(0, 1)

    attn = torch.bmm(q_t, k_t.transpose(1, 2)) * softmax_scale

    if n > 1:
        total = k_full.shape[0]
        q_pos = positions.unsqueeze(1)
        k_pos = torch.arange(total, device=q.device).unsqueeze(0)
        causal = torch.zeros(n, total, device=q.device, dtype=compute_dtype)
        causal = causal.masked_fill(k_pos > q_pos, float("-inf"))
        attn = attn + causal.unsqueeze(0)

    attn = F.softmax(attn.float(), dim=-1).to(compute_dtype)
    out = torch.bmm(attn, v_t)   # (num_heads, n, head_dim)
    return out.transpose(0, 1)    # (n, num_heads, head_dim)
