"""
llama-session :: LLaMA Model

Decoder-only LLaMA built from GGUF-named tensors:
  - RMSNorm → attention (RoPE, GQA) → residual
  - RMSNorm → SwiGLU MLP → residual
  - final RMSNorm → lm_head (or tied embeddings)

Single sequence; keys/values go through the session's KVCache.

INL - 2025
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from llama_session.layers.rmsnorm import RMSNorm
from llama_session.layers.rotary import RotaryEmbedding, apply_rotary
from llama_session.layers.mlp import SwiGLUMLP
from llama_session.layers.attention import cached_attention


@dataclass
class LlamaConfig:
    vocab_size: int
    hidden_size: int
    intermediate_size: int
    num_hidden_layers: int
    num_attention_heads: int
    num_key_value_heads: int
    rms_norm_eps: float = 1e-5
    rope_theta: float = 10000.0
    rope_scale: float = 1.0
    tie_word_embeddings: bool = False

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    @classmethod
    def from_hparams(cls, hp, tie_word_embeddings: bool = False, rope_theta: float = 0.0,
                     rope_scale: float = 1.0, rms_norm_eps: float = 0.0) -> "LlamaConfig":
        """Build from loader HyperParams; zero overrides mean "use the file's value"."""
        return cls(
            vocab_size=hp.vocab_size,
            hidden_size=hp.n_embd,
            intermediate_size=hp.n_ff,
            num_hidden_layers=hp.n_layer,
            num_attention_heads=hp.n_head,
            num_key_value_heads=hp.n_head_kv,
            rms_norm_eps=rms_norm_eps or hp.rms_norm_eps,
            rope_theta=rope_theta or hp.rope_freq_base,
            rope_scale=rope_scale * hp.rope_freq_scale,
            tie_word_embeddings=tie_word_embeddings,
        )


# GGUF tensor name → module parameter name
_GLOBAL_NAMES = {
    "token_embd.weight": "embed_tokens.weight",
    "output_norm.weight": "norm.weight",
    "output.weight": "lm_head.weight",
}
_LAYER_NAMES = {
    "attn_norm": "input_layernorm",
    "attn_q": "self_attn.q_proj",
    "attn_k": "self_attn.k_proj",
    "attn_v": "self_attn.v_proj",
    "attn_output": "self_attn.o_proj",
    "ffn_norm": "post_attention_layernorm",
    "ffn_gate": "mlp.gate_proj",
    "ffn_up": "mlp.up_proj",
    "ffn_down": "mlp.down_proj",
}


def gguf_to_state_dict(tensors: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    state = {}
    for name, t in tensors.items():
        if name in _GLOBAL_NAMES:
            state[_GLOBAL_NAMES[name]] = t
            continue
        parts = name.split(".")
        if len(parts) == 4 and parts[0] == "blk" and parts[2] in _LAYER_NAMES:
            state[f"layers.{parts[1]}.{_LAYER_NAMES[parts[2]]}.{parts[3]}"] = t
    return state


class LlamaAttention(nn.Module):
    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.num_kv_groups = self.num_heads // self.num_kv_heads

        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=False)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=False)
        self.o_proj = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=False)

    def forward(
        self,
        hidden: torch.Tensor,
        positions: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        kv_cache,
        layer_idx: int,
    ) -> torch.Tensor:
        n = hidden.shape[0]
        q = self.q_proj(hidden).view(n, self.num_heads, self.head_dim)
        k = self.k_proj(hidden).view(n, self.num_kv_heads, self.head_dim)
        v = self.v_proj(hidden).view(n, self.num_kv_heads, self.head_dim)

        q = apply_rotary(q, cos, sin)
        k = apply_rotary(k, cos, sin)

        # Write new K/V, then attend over everything up to the last new position
        start = int(positions[0].item())
        kv_cache.write_kv_batch(layer_idx, start, k, v)
        k_full, v_full = kv_cache.read_kv(layer_idx, start + n)

        out = cached_attention(q, k_full, v_full, self.num_kv_groups, positions)
        return self.o_proj(out.reshape(n, self.num_heads * self.head_dim))


class LlamaDecoderLayer(nn.Module):
    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = LlamaAttention(config)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = SwiGLUMLP(config.hidden_size, config.intermediate_size)

    def forward(self, hidden, positions, cos, sin, kv_cache, layer_idx):
        residual = hidden
        hidden = self.input_layernorm(hidden)
        hidden = self.self_attn(hidden, positions, cos, sin, kv_cache, layer_idx)
        hidden = residual + hidden

        residual = hidden
        hidden = self.post_attention_layernorm(hidden)
        hidden = self.mlp(hidden)
        return residual + hidden


class LlamaModel(nn.Module):
    """
    LLaMA transformer.

    forward() returns (final-norm hidden states, logits); logits cover
    every input position when logits_all, else only the last one.
    """

    def __init__(self, config: LlamaConfig):
        super().__init__()
        self.config = config

        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList([
            LlamaDecoderLayer(config)
            for _ in range(config.num_hidden_layers)
        ])
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

        self.tie_word_embeddings = config.tie_word_embeddings
        if not config.tie_word_embeddings:
            self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)

        self.rope = RotaryEmbedding(config.head_dim, config.rope_theta, config.rope_scale)

    @classmethod
    def from_tensors(
        cls,
        config: LlamaConfig,
        tensors: Dict[str, torch.Tensor],
        dtype: torch.dtype = torch.float32,
        device: str = "cpu",
    ) -> "LlamaModel":
        """
        Build directly on loaded tensors (GGUF names).

        Modules are created on the meta device so no throwaway random
        init is allocated; the loaded tensors are assigned in place.
        """
        with torch.device("meta"):
            model = cls(config)
        state = {k: v.to(device=device, dtype=dtype) for k, v in gguf_to_state_dict(tensors).items()}
        model.load_state_dict(state, strict=True, assign=True)
        model.rope = RotaryEmbedding(config.head_dim, config.rope_theta, config.rope_scale, device=device)
        return model.eval()

    def forward(
        self,
        token_ids: torch.Tensor,
        positions: torch.Tensor,
        kv_cache,
        logits_all: bool = False,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        hidden = self.embed_tokens(token_ids.long())
        cos, sin = self.rope(positions)

        for layer_idx, layer in enumerate(self.layers):
            hidden = layer(hidden, positions, cos, sin, kv_cache, layer_idx)

        hidden = self.norm(hidden)
        rows = hidden if logits_all else hidden[-1:]

        if self.tie_word_embeddings:
            logits = F.linear(rows, self.embed_tokens.weight)
        else:
            logits = self.lm_head(rows)

        return hidden, logits

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())
