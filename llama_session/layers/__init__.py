"""
llama-session :: Generic transformer layers.
"""

from llama_session.layers.rmsnorm import RMSNorm
from llama_session.layers.rotary import RotaryEmbedding, apply_rotary
from llama_session.layers.mlp import SwiGLUMLP
from llama_session.layers.attention import cached_attention
