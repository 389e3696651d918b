"""
llama-session: a minimal LLaMA inference session.

    session = load(ModelConfig(path="model.gguf", n_ctx=1024))
    for frag in session.generate(prompt="Hello", n_tok_predict=5, temp=0):
        print(frag.text, end="")
    session.close()

  Load:       GGUF / safetensors → dequantized weights → TensorBackend
  Tokenize:   embedded vocabulary (HuggingFace tokenizers)
  Generate:   lazy TokenStream, seeded sampling, cooperative cancel
  Embed:      final-norm hidden state of the last prompt token

INL - 2025
"""

__version__ = "0.1.0"

from llama_session.core.config import ModelConfig, GenerationRequest
from llama_session.core.errors import (
    LlamaSessionError, LoadError, LoadErrorKind, SessionClosedError, SessionBusyError,
    ValidationError, BackendComputeError, CancelledError,
)
from llama_session.engine.session import load, ModelSession
from llama_session.engine.generation import TokenStream, TokenFragment, CompletionResult, GenerationState
from llama_session.engine.async_session import AsyncModelSession
