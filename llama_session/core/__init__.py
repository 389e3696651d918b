"""
llama-session :: Core

Infrastructure under the session:
  - config: ModelConfig / GenerationRequest
  - gguf, quantization, loader: model files → tensors
  - tokenizer: text ↔ token ids
  - sampling: logits → token id
  - kv_cache: per-session context storage
"""

from llama_session.core.config import ModelConfig, GenerationRequest
from llama_session.core.tokenizer import LlamaTokenizer, load_tokenizer
from llama_session.core.sampling import SamplingParams, Sampler, sample_token
from llama_session.core.kv_cache import KVCache
from llama_session.core.loader import open_model_file, ModelFile, HyperParams, Vocabulary
