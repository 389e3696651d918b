"""
Model implementations for llama-session.
"""

from llama_session.models.llama import LlamaModel, LlamaConfig
