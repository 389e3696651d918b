"""
llama-session :: Model Session

load(config) → ModelSession: the owner of one loaded model.

  LOADED ──close()──► CLOSED

A session owns:
  - the backend (and through it the weights, exclusively)
  - the vocabulary / tokenizer
  - the KV cache and its position counter (n_past)
  - the sampling RNG, seeded once from config.seed

Requests are serialized: one threading.Lock is held from prefill to
the terminal state of each request. The lock belongs to the request's
TokenStream, which may be pulled from any thread. Another request
waits its turn; a second request from the thread that is consuming
the live one raises SessionBusyError instead of deadlocking.

INL - 2025
"""

import itertools
import os
import threading
import time
import weakref
from typing import Any, Dict, List, Mapping, Optional, Union

import torch

from llama_session.backend.base import BackendOptions, TensorBackend
from llama_session.core.config import GenerationRequest, ModelConfig
from llama_session.core.errors import (
    BackendComputeError, LoadError, LoadErrorKind, SessionBusyError, SessionClosedError, ValidationError,
)
from llama_session.core.kv_cache import KVCache
from llama_session.core.loader import ModelFile, _is_oom, open_model_file
from llama_session.core.logging import get_logger
from llama_session.core.mlock import MemoryLock
from llama_session.core.sampling import Sampler, SamplingParams
from llama_session.core.tokenizer import LlamaTokenizer, load_tokenizer
from llama_session.engine.generation import CompletionResult, GenerationState, TokenStream

logger = get_logger("llama_session.session")

_LOCK_POLL_S = 0.05


def _as_model_config(config) -> ModelConfig:
    if isinstance(config, ModelConfig):
        return config
    if isinstance(config, Mapping):
        return ModelConfig.from_dict(config)
    if isinstance(config, (str, os.PathLike)):
        return ModelConfig(path=os.fspath(config))
    raise ValidationError(f"expected ModelConfig, mapping or path, got {type(config).__name__}")


def _as_request(request, overrides: Dict[str, Any]) -> GenerationRequest:
    if request is None:
        request = GenerationRequest()
    elif isinstance(request, str):
        request = GenerationRequest(prompt=request)
    elif isinstance(request, Mapping):
        request = GenerationRequest.from_dict(request)
    elif not isinstance(request, GenerationRequest):
        raise ValidationError(f"expected GenerationRequest, mapping or prompt, got {type(request).__name__}")
    return request.with_overrides(**overrides) if overrides else request


def load(config: Union[ModelConfig, Mapping[str, Any], str], backend: Optional[TensorBackend] = None) -> "ModelSession":
    """
    Load a model file into a ready session.

    Raises:
        ValidationError: invalid config values
        LoadError: FILE_NOT_FOUND / UNSUPPORTED_FORMAT / OUT_OF_MEMORY / CORRUPT_HEADER
    """
    config = _as_model_config(config)
    start = time.perf_counter()

    model_file = open_model_file(config.path, n_parts=config.n_parts, use_mmap=config.use_mmap)
    try:
        try:
            tokenizer = load_tokenizer(config.path, model_file.vocab)
        except Exception as e:
            # tokenizers raises plain Exception for malformed vocabularies
            raise LoadError(LoadErrorKind.CORRUPT_HEADER, f"cannot build tokenizer: {e}", config.path) from e

        if not config.vocab_only:
            if backend is None:
                from llama_session.backend.torch_backend import TorchBackend
                backend = TorchBackend(device=config.device)
            _load_weights(config, model_file, backend)
    finally:
        model_file.close()

    session = ModelSession(config, model_file, tokenizer, backend)

    if config.enable_logging:
        hp = model_file.hparams
        logger.info(
            "model loaded",
            extra={"extra_data": {
                "path": config.path,
                "format": model_file.format,
                "parts": len(model_file.parts),
                "n_vocab": hp.vocab_size,
                "n_embd": hp.n_embd,
                "n_layer": hp.n_layer,
                "n_ctx": config.n_ctx,
                "vocab_only": config.vocab_only,
                "seed": session.seed,
                "ms": round((time.perf_counter() - start) * 1000, 2),
            }},
        )
    return session


def _load_weights(config: ModelConfig, model_file: ModelFile, backend: TensorBackend):
    tensors = model_file.read_tensors()
    options = BackendOptions(
        rope_freq_base=config.rope_freq_base,
        rope_freq_scale=config.rope_freq_scale,
        rms_norm_eps=config.rms_norm_eps,
    )
    try:
        backend.load_weights(model_file.hparams, tensors, options)
    except MemoryError as e:
        raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"backend allocation: {e}", config.path) from e
    except RuntimeError as e:
        if _is_oom(e):
            raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"backend allocation: {e}", config.path) from e
        raise


class ModelSession:
    """
    A loaded model. Create with load(); use as a context manager or
    call close() when done.
    """

    def __init__(
        self,
        config: ModelConfig,
        model_file: ModelFile,
        tokenizer: LlamaTokenizer,
        backend: Optional[TensorBackend],
    ):
        self.config = config
        self.path = config.path
        self.format = model_file.format
        self.parts = list(model_file.parts)
        self.hparams = model_file.hparams
        self.vocab = model_file.vocab
        self.metadata = model_file.metadata
        self.tokenizer = tokenizer
        self.backend = backend
        self.logger = logger

        if self.hparams.n_ctx_train and config.n_ctx > self.hparams.n_ctx_train:
            logger.warning(
                f"n_ctx={config.n_ctx} exceeds the training context of {self.hparams.n_ctx_train}; "
                f"expect degraded output",
            )

        # Sampling RNG: seeded once, advanced on every draw
        self.generator = torch.Generator(device="cpu")
        if config.seed >= 0:
            self.generator.manual_seed(config.seed)
            self.seed = config.seed
        else:
            self.seed = self.generator.seed()

        self.kv_cache: Optional[KVCache] = None
        if not config.vocab_only:
            self.kv_cache = self._alloc_cache()

        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active = None  # weakref to the TokenStream holding the lock
        self._request_ids = itertools.count()
        self._last_logits: Optional[torch.Tensor] = None

        self.closed = False
        self.needs_reset = False
        self.metrics = None
        self._stats = {
            "requests_total": 0,
            "requests_completed": 0,
            "requests_stopped": 0,
            "requests_errored": 0,
            "embeddings_total": 0,
            "prompt_tokens_total": 0,
            "tokens_generated_total": 0,
            "forward_passes": 0,
        }

        self._mlock = MemoryLock()
        if config.use_mlock:
            storage = list(self.kv_cache.tensors()) if self.kv_cache is not None else []
            if backend is not None:
                storage = backend.weight_tensors() + storage
            if not self._mlock.lock(storage):
                logger.warning(f"use_mlock: {self._mlock.error}")

    def _alloc_cache(self) -> KVCache:
        hp = self.hparams
        try:
            return KVCache(
                num_layers=hp.n_layer,
                num_kv_heads=hp.n_head_kv,
                head_dim=hp.head_dim,
                n_ctx=self.config.n_ctx,
                dtype=torch.float16 if self.config.f16_kv else torch.float32,
                compute_dtype=self.backend.compute_dtype,
                device=self.backend.device,
            )
        except MemoryError as e:
            raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"KV cache for n_ctx={self.config.n_ctx}: {e}",
                            self.path) from e
        except RuntimeError as e:
            if _is_oom(e):
                raise LoadError(LoadErrorKind.OUT_OF_MEMORY, f"KV cache for n_ctx={self.config.n_ctx}: {e}",
                                self.path) from e
            raise

    # =====================================================================
    # Tokenizer
    # =====================================================================

    def tokenize(self, text: str, add_bos: bool = False) -> List[int]:
        self._check_open()
        ids = self.tokenizer.encode(text)
        return [self.tokenizer.bos_token_id] + ids if add_bos else ids

    def detokenize(self, token_ids: List[int]) -> str:
        self._check_open()
        return self.tokenizer.decode(token_ids)

    @property
    def n_vocab(self) -> int:
        return self.hparams.vocab_size

    @property
    def n_past(self) -> int:
        return self.kv_cache.n_past if self.kv_cache is not None else 0

    # =====================================================================
    # Requests
    # =====================================================================

    def generate(self, request: Union[GenerationRequest, Mapping[str, Any], str, None] = None,
                 **overrides) -> TokenStream:
        """
        Validate and tokenize a request (synchronously) and return its
        lazy TokenStream. Nothing is computed until the first pull.
        """
        request = _as_request(request, overrides)
        self._check_ready()
        if not request.prompt:
            raise ValidationError("prompt must be non-empty for generation")
        self._check_logit_bias(request)
        self._check_not_reentrant()

        prompt_tokens = self._prompt_tokens(request.prompt)
        if len(prompt_tokens) > self.config.n_ctx:
            raise ValidationError(
                f"prompt is {len(prompt_tokens)} tokens, context window is {self.config.n_ctx}"
            )

        sampler = Sampler(
            SamplingParams.from_request(request),
            generator=self.generator,
            newline_token_id=self.tokenizer.newline_token_id,
        )
        deadline = time.perf_counter() + request.timeout_s if request.timeout_s is not None else None

        with self._state_lock:
            self._stats["requests_total"] += 1
        return TokenStream(self, request, next(self._request_ids), prompt_tokens, sampler, deadline)

    def complete(self, request: Union[GenerationRequest, Mapping[str, Any], str, None] = None,
                 **overrides) -> CompletionResult:
        """Run a request to its terminal state."""
        with self.generate(request, **overrides) as stream:
            return stream.collect()

    def embed(self, request: Union[GenerationRequest, Mapping[str, Any], str, None] = None,
              **overrides) -> List[float]:
        """
        Embedding of the prompt: the final-norm hidden state of the last
        prompt position. Requires a session loaded with embedding=True.
        The prompt may be empty (BOS only).
        """
        request = _as_request(request, overrides)
        self._check_ready()
        if not self.config.embedding:
            raise ValidationError("session was not loaded with embedding=True")
        self._check_not_reentrant()

        tokens = self._prompt_tokens(request.prompt) or [self.tokenizer.bos_token_id]
        if len(tokens) > self.config.n_ctx:
            raise ValidationError(f"prompt is {len(tokens)} tokens, context window is {self.config.n_ctx}")

        if not self._acquire(None):
            raise SessionClosedError("session closed while waiting to embed")
        try:
            hidden = self._prefill(tokens, request.n_threads, want_hidden=True)
        finally:
            self._release(None)

        with self._state_lock:
            self._stats["embeddings_total"] += 1
            self._stats["prompt_tokens_total"] += len(tokens)
        return hidden.tolist()

    def _prompt_tokens(self, prompt: str) -> List[int]:
        ids = self.tokenizer.encode(prompt)
        if self.vocab.add_bos:
            ids = [self.tokenizer.bos_token_id] + ids
        return ids

    # =====================================================================
    # State helpers used by TokenStream
    # =====================================================================

    def _check_open(self):
        if self.closed:
            raise SessionClosedError("session is closed")

    def _check_ready(self):
        self._check_open()
        if self.backend is None or self.kv_cache is None:
            raise ValidationError("session was loaded with vocab_only=True; only tokenization is available")

    def _check_logit_bias(self, request: GenerationRequest):
        for token in request.logit_bias or {}:
            if token >= self.n_vocab:
                raise ValidationError(f"logit_bias token {token} outside vocabulary of {self.n_vocab}")

    def _holder_consumed_here(self) -> bool:
        """True when the stream holding the lock was last pulled on the calling thread."""
        holder = self._active() if self._active is not None else None
        return holder is not None and holder.consumer == threading.get_ident()

    def _check_not_reentrant(self):
        # Waiting here would deadlock: only this thread can finish the holder
        if self._holder_consumed_here():
            raise SessionBusyError("this thread already has a request in flight on this session")

    def _acquire(self, stream) -> bool:
        """
        Take the session lock for `stream` (None for an embedding).
        Returns False if `stream` was cancelled while waiting; raises
        SessionClosedError if the session closed.
        """
        self._check_not_reentrant()
        while not self._lock.acquire(timeout=_LOCK_POLL_S):
            if self.closed:
                raise SessionClosedError("session closed while waiting for the session lock")
            if stream is not None and stream.cancelled:
                return False
        if self.closed:
            self._lock.release()
            raise SessionClosedError("session is closed")
        self._active = weakref.ref(stream) if stream is not None else None
        return True

    def _release(self, stream):
        self._active = None
        self._lock.release()

    def _forward(self, tokens: List[int], n_threads: int):
        try:
            out = self.backend.forward(tokens, self.kv_cache, logits_all=self.config.logits_all,
                                       n_threads=n_threads)
        except Exception as e:
            self.needs_reset = True
            raise BackendComputeError(
                f"forward pass over {len(tokens)} tokens at position {self.kv_cache.n_past} failed: {e}"
            ) from e
        self._stats["forward_passes"] += 1
        return out

    def _prefill(self, tokens: List[int], n_threads: int, want_hidden: bool = False) -> torch.Tensor:
        """Reset the cache and evaluate `tokens` in n_batch chunks. Returns last logits (or hidden)."""
        self.reset()
        rows = []
        out = None
        for i in range(0, len(tokens), self.config.n_batch):
            out = self._forward(tokens[i:i + self.config.n_batch], n_threads)
            if self.config.logits_all:
                rows.append(out.logits)
        self._last_logits = torch.cat(rows, dim=0) if rows else out.logits
        if self.metrics is not None:
            self.metrics.update_kv_usage(self.kv_cache.n_past, self.kv_cache.n_ctx)
        if want_hidden:
            return out.hidden
        return out.last_logits

    def _decode(self, token: int, n_threads: int) -> torch.Tensor:
        out = self._forward([token], n_threads)
        if self.config.logits_all and self._last_logits is not None:
            self._last_logits = torch.cat([self._last_logits, out.logits], dim=0)
        else:
            self._last_logits = out.logits
        return out.last_logits

    def _on_request_end(self, stream: TokenStream):
        result = stream.result
        with self._state_lock:
            key = {
                GenerationState.COMPLETE: "requests_completed",
                GenerationState.STOPPED: "requests_stopped",
                GenerationState.ERRORED: "requests_errored",
            }[result.state]
            self._stats[key] += 1
            self._stats["prompt_tokens_total"] += len(result.prompt_tokens)
            self._stats["tokens_generated_total"] += len(result.output_tokens)
        if self.metrics is not None:
            self.metrics.on_request_end(
                stream._start_time, len(result.prompt_tokens), len(result.output_tokens),
                outcome=result.finish_reason, decode_ms=result.decode_ms,
            )
            self.metrics.update_kv_usage(self.n_past, self.config.n_ctx)

    # =====================================================================
    # Introspection
    # =====================================================================

    def reset(self):
        """Forget the cached context. Clears needs_reset."""
        self._check_open()
        if self.kv_cache is not None:
            self.kv_cache.reset()
        self._last_logits = None
        self.needs_reset = False

    def get_logits(self) -> Optional[torch.Tensor]:
        """
        Logits retained by the last request: one row per evaluated
        position with logits_all, else only the most recent one.
        """
        self._check_open()
        return self._last_logits

    def enable_metrics(self, port: Optional[int] = None):
        """Enable Prometheus metrics collection for this session."""
        from llama_session.core.metrics import SessionMetrics
        self.metrics = SessionMetrics(model_name=os.path.basename(self.path), port=port)
        return self.metrics

    def get_stats(self) -> Dict[str, int]:
        """Session stats, all integers."""
        with self._state_lock:
            stats = dict(self._stats)
        stats["n_vocab"] = self.n_vocab
        stats["n_ctx"] = self.config.n_ctx
        stats["n_past"] = self.n_past
        stats["mlock_bytes"] = self._mlock.locked_bytes
        return stats

    # =====================================================================
    # Lifecycle
    # =====================================================================

    def close(self):
        """
        Release the backend and cache. Idempotent. An in-flight stream
        is cancelled; later operations raise SessionClosedError.
        """
        if self.closed:
            return
        self.closed = True

        active = self._active() if self._active is not None else None
        if active is not None:
            active.cancel()

        got = False if self._holder_consumed_here() else self._lock.acquire()
        try:
            self._mlock.unlock()
            if self.backend is not None:
                self.backend.free()
            if self.kv_cache is not None:
                self.kv_cache.free()
            self._last_logits = None
        finally:
            if got:
                self._lock.release()
        if self.config.enable_logging:
            logger.info("session closed", extra={"extra_data": {"path": self.path}})

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "ready"
        return f"ModelSession(path={self.path!r}, n_ctx={self.config.n_ctx}, {state})"
