"""
llama-session :: Engine

  - session: load() / ModelSession lifecycle
  - generation: TokenStream state machine
  - async_session: asyncio wrapper
"""

from llama_session.engine.session import load, ModelSession
from llama_session.engine.generation import TokenStream, TokenFragment, CompletionResult, GenerationState
from llama_session.engine.async_session import AsyncModelSession
