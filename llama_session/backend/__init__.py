"""
llama-session :: Tensor backends.
"""

from llama_session.backend.base import TensorBackend, ForwardOutput, BackendOptions
from llama_session.backend.torch_backend import TorchBackend
