"""
llama-session :: Tensor Backend Interface

The capability boundary between the session and the tensor math.
A backend owns the weights; the session owns the KV cache and hands
it to every forward pass.

INL - 2025
"""

import torch
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence


@dataclass
class ForwardOutput:
    """Result of one forward pass over n new tokens."""
    logits: torch.Tensor              # (n, vocab) with logits_all, else (1, vocab)
    hidden: Optional[torch.Tensor]    # (n_embd,) final-norm hidden state of the last token

    @property
    def last_logits(self) -> torch.Tensor:
        return self.logits[-1]


@dataclass
class BackendOptions:
    """Per-load knobs the session forwards from ModelConfig."""
    rope_freq_base: float = 0.0
    rope_freq_scale: float = 1.0
    rms_norm_eps: float = 0.0


class TensorBackend(ABC):
    """
    One implementation per compute backend, injected into load().

    Contract:
      load_weights()  takes ownership of the dequantized tensors
      forward()       writes K/V for positions [cache.n_past, + len(tokens)),
                      advances cache.n_past, returns logits (+ hidden)
      free()          drops every weight reference
    """

    name: str = "abstract"

    @property
    @abstractmethod
    def device(self) -> str:
        ...

    @property
    @abstractmethod
    def compute_dtype(self) -> torch.dtype:
        ...

    @abstractmethod
    def load_weights(self, hparams, tensors: Dict[str, torch.Tensor], options: BackendOptions):
        ...

    @abstractmethod
    def forward(
        self,
        token_ids: Sequence[int],
        kv_cache,
        logits_all: bool = False,
        n_threads: Optional[int] = None,
    ) -> ForwardOutput:
        ...

    @abstractmethod
    def free(self):
        ...

    def weight_tensors(self) -> List[torch.Tensor]:
        """Storage to mlock; backends without host memory return []."""
        return []

    @property
    def is_loaded(self) -> bool:
        return False
