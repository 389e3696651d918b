"""
llama-session :: PyTorch Backend

Runs the LLaMA graph with PyTorch on CPU or CUDA.

  - weights: float32 on CPU, float16 on CUDA (override with dtype=)
  - n_threads sets torch's intra-op thread count for the length of one
    CPU forward pass; the previous (process-wide) value is restored after
  - forward passes run under torch.inference_mode()

INL - 2025
"""

import contextlib

import torch
from typing import Dict, List, Optional, Sequence

from llama_session.backend.base import TensorBackend, ForwardOutput, BackendOptions
from llama_session.models.llama import LlamaConfig, LlamaModel
from llama_session.core.logging import get_logger

logger = get_logger("llama_session.backend")


@contextlib.contextmanager
def _num_threads(n: Optional[int]):
    """Set torch's intra-op thread count for the duration of the block."""
    previous = torch.get_num_threads()
    if not n or n == previous:
        yield
        return
    torch.set_num_threads(n)
    try:
        yield
    finally:
        torch.set_num_threads(previous)


class TorchBackend(TensorBackend):
    name = "torch"

    def __init__(self, device: str = "cpu", dtype: Optional[torch.dtype] = None):
        self._device = device
        if dtype is None:
            dtype = torch.float16 if device.startswith("cuda") else torch.float32
        self._dtype = dtype
        self.model: Optional[LlamaModel] = None

    @property
    def device(self) -> str:
        return self._device

    @property
    def compute_dtype(self) -> torch.dtype:
        return self._dtype

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def load_weights(self, hparams, tensors: Dict[str, torch.Tensor], options: BackendOptions):
        config = LlamaConfig.from_hparams(
            hparams,
            tie_word_embeddings="output.weight" not in tensors,
            rope_theta=options.rope_freq_base,
            rope_scale=options.rope_freq_scale,
            rms_norm_eps=options.rms_norm_eps,
        )
        self.model = LlamaModel.from_tensors(config, tensors, dtype=self._dtype, device=self._device)
        logger.debug(
            f"torch backend: {self.model.num_parameters():,} parameters on {self._device} ({self._dtype})"
        )

    def forward(
        self,
        token_ids: Sequence[int],
        kv_cache,
        logits_all: bool = False,
        n_threads: Optional[int] = None,
    ) -> ForwardOutput:
        if self.model is None:
            raise RuntimeError("torch backend has no weights loaded")
        n = len(token_ids)
        if n == 0:
            raise ValueError("forward() needs at least one token")

        start = kv_cache.n_past
        with _num_threads(n_threads if self._device == "cpu" else None), torch.inference_mode():
            ids = torch.tensor(list(token_ids), dtype=torch.long, device=self._device)
            positions = torch.arange(start, start + n, dtype=torch.long, device=self._device)
            hidden, logits = self.model(ids, positions, kv_cache, logits_all=logits_all)
        kv_cache.advance(n)

        return ForwardOutput(logits=logits.float(), hidden=hidden[-1].float())

    def weight_tensors(self) -> List[torch.Tensor]:
        if self.model is None:
            return []
        return [p.data for p in self.model.parameters()]

    def free(self):
        self.model = None
        if self._device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()
