"""
llama-session :: Generation Loop

One request, driven lazily by its consumer:

    INIT ──► PREFILL ──► DECODING ──► COMPLETE | STOPPED | ERRORED

  INIT      inside session.generate(): validation + tokenization,
            synchronous, raises before anything is computed
  PREFILL   first pull: take the session lock, reset the cache,
            run the prompt through the backend in n_batch chunks
  DECODING  sample → emit (suspend) → checks → one forward pass

Each fragment is handed to the consumer before the next forward pass
starts. Cancellation and deadlines are checked between tokens only.

Finish reasons:
  length     n_tok_predict tokens emitted        COMPLETE
  eos        end-of-sequence sampled (not emitted) COMPLETE
  stop       stop_sequence appeared in the text   COMPLETE
  context    KV cache full                         STOPPED
  cancelled  cancel() / close()                    STOPPED
  timeout    timeout_s deadline passed             STOPPED
  error      backend failure                       ERRORED

INL - 2025
"""

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from llama_session.core.errors import BackendComputeError, SessionBusyError, SessionClosedError
from llama_session.core.logging import RequestLogger
from llama_session.core.sampling import Sampler


class GenerationState(str, enum.Enum):
    INIT = "init"
    PREFILL = "prefill"
    DECODING = "decoding"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationState.COMPLETE, GenerationState.STOPPED, GenerationState.ERRORED)


@dataclass
class TokenFragment:
    """One emitted token. `completed` marks the last fragment of the stream when it is known to be last."""
    index: int
    token_id: int
    text: str
    completed: bool = False


@dataclass
class CompletionResult:
    """Result of a generation request."""
    request_id: int
    prompt_tokens: List[int]
    output_tokens: List[int]
    text: str
    state: GenerationState
    finish_reason: str
    prefill_ms: float = 0.0
    decode_ms: float = 0.0
    error: Optional[str] = field(default=None, repr=False)

    @property
    def num_output_tokens(self) -> int:
        return len(self.output_tokens)


_HOLD = "\ufffd"  # decoder output for an incomplete UTF-8 sequence


def _stop_prefix_len(text: str, stop: str) -> int:
    """Length of the longest tail of `text` that is a proper prefix of `stop`."""
    for k in range(min(len(stop) - 1, len(text)), 0, -1):
        if text.endswith(stop[:k]):
            return k
    return 0


class TokenStream:
    """
    Lazy, finite, non-restartable sequence of TokenFragment.

    Usage:
        with session.generate(request) as stream:
            for frag in stream:
                print(frag.text, end="")
        print(stream.result.finish_reason)

    cancel() may be called from any thread. It takes effect between
    tokens: a pull in progress still returns its fragment, the next one
    ends the stream with STOPPED / cancelled.
    """

    def __init__(
        self,
        session,
        request,
        request_id: int,
        prompt_tokens: List[int],
        sampler: Sampler,
        deadline: Optional[float] = None,
    ):
        self.session = session
        self.request = request
        self.request_id = request_id
        self.prompt_tokens = list(prompt_tokens)
        self.sampler = sampler
        self.deadline = deadline

        self.state = GenerationState.INIT
        self.tokens: List[int] = []
        self.result: Optional[CompletionResult] = None

        self._decoded_upto = ""   # decoded prefix already accounted for in fragments
        self._streamed = ""       # concatenated fragment text
        self._stop_at: Optional[int] = None
        self.consumer: Optional[int] = None  # thread ident of the latest pull
        self._prefill_ms = 0.0
        self._decode_start: Optional[float] = None
        self._start_time = time.perf_counter()

        self._cancel = threading.Event()
        self._step = threading.Lock()
        self._gen = self._run()
        self.log = RequestLogger(request_id, session.logger, verbose=session.config.enable_logging)

    # ── consumer interface ──

    def __iter__(self):
        return self

    def __next__(self) -> TokenFragment:
        with self._step:
            self.consumer = threading.get_ident()
            if self._cancel.is_set():
                self._close_gen()
                raise StopIteration
            frag = next(self._gen)
            if self._cancel.is_set():
                # Cancelled while this step was computing: deliver it, then stop
                self._close_gen()
            return frag

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.cancel()

    def cancel(self):
        """Request a cooperative stop. Safe from any thread; idempotent."""
        self._cancel.set()
        if self._step.acquire(blocking=False):
            try:
                self._close_gen()
            finally:
                self._step.release()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def finished(self) -> bool:
        return self.state.is_terminal

    def collect(self) -> CompletionResult:
        """Drain the stream and return its CompletionResult."""
        for _ in self:
            pass
        return self.result

    @property
    def text(self) -> str:
        if self.result is not None:
            return self.result.text
        return self.session.tokenizer.decode(self.tokens)

    # ── internals ──

    def _close_gen(self):
        self._gen.close()
        if not self.state.is_terminal:
            # Closed before the first pull: the generator body never ran
            self._finish(GenerationState.STOPPED, "cancelled")

    def _finish(self, state: GenerationState, reason: str, error: Optional[str] = None):
        if self.state.is_terminal:
            return
        decode_ms = (time.perf_counter() - self._decode_start) * 1000 if self._decode_start else 0.0
        # Text still held back when the stream ends is dropped
        text = self._streamed

        self.state = state
        self.result = CompletionResult(
            request_id=self.request_id,
            prompt_tokens=list(self.prompt_tokens),
            output_tokens=list(self.tokens),
            text=text,
            state=state,
            finish_reason=reason,
            prefill_ms=self._prefill_ms,
            decode_ms=decode_ms,
            error=error,
        )
        self.session._on_request_end(self)

        if state == GenerationState.ERRORED:
            self.log.error(f"request failed: {error}", finish_reason=reason)
        else:
            self.log.info(
                "request finished",
                finish_reason=reason,
                prompt_tokens=len(self.prompt_tokens),
                output_tokens=len(self.tokens),
                prefill_ms=round(self._prefill_ms, 2),
                decode_ms=round(decode_ms, 2),
            )

    def _next_text(self, final: bool) -> str:
        """
        Decoded increment for the newest token.

        Held back while a character is incomplete, and while the tail
        could still turn into the stop sequence (unless `final`). A
        matched stop sequence is cut off, so the fragments always add up
        to the result text.
        """
        full = self.session.tokenizer.decode(self.tokens)
        if full.endswith(_HOLD):
            return ""
        start = len(self._decoded_upto) if full.startswith(self._decoded_upto) else 0
        end = len(full)

        stop = self.request.stop_sequence
        if stop:
            idx = full.find(stop, max(0, start - len(stop) + 1))
            if idx >= 0:
                self._stop_at = idx
                end = max(idx, start)
            elif not final:
                end = max(end - _stop_prefix_len(full, stop), start)

        delta = full[start:end]
        self._decoded_upto = full[:end]
        self._streamed += delta
        return delta

    def _past_deadline(self) -> bool:
        return self.deadline is not None and time.perf_counter() > self.deadline

    def _run(self):
        session = self.session
        req = self.request
        acquired = False
        try:
            if not session._acquire(self):
                # Cancelled while waiting for another request to finish
                self._finish(GenerationState.STOPPED, "cancelled")
                return
            acquired = True
            if self._past_deadline():
                self.log.warning("request timed out waiting for the session", timeout_s=req.timeout_s)
                self._finish(GenerationState.STOPPED, "timeout")
                return

            # ── Prefill ──
            self.state = GenerationState.PREFILL
            t0 = time.perf_counter()
            logits = session._prefill(self.prompt_tokens, req.n_threads)
            self._prefill_ms = (time.perf_counter() - t0) * 1000
            self.log.info("prefill done", tokens=len(self.prompt_tokens), ms=round(self._prefill_ms, 2))

            # ── Decoding ──
            self.state = GenerationState.DECODING
            self._decode_start = time.perf_counter()
            history = list(self.prompt_tokens)
            eos = session.tokenizer.eos_token_id
            n_ctx = session.config.n_ctx

            while True:
                if len(self.tokens) >= req.n_tok_predict:
                    self._finish(GenerationState.COMPLETE, "length")
                    return

                token = self.sampler.sample(logits, history)
                if token == eos:
                    self._finish(GenerationState.COMPLETE, "eos")
                    return

                self.tokens.append(token)
                history.append(token)
                text = self._next_text(
                    final=len(self.tokens) >= req.n_tok_predict or session.kv_cache.n_past >= n_ctx,
                )

                if len(self.tokens) >= req.n_tok_predict:
                    last = (GenerationState.COMPLETE, "length")
                elif self._stop_at is not None:
                    last = (GenerationState.COMPLETE, "stop")
                elif session.kv_cache.n_past >= n_ctx:
                    last = (GenerationState.STOPPED, "context")
                else:
                    last = None

                yield TokenFragment(
                    index=len(self.tokens) - 1,
                    token_id=token,
                    text=text,
                    completed=last is not None,
                )

                if last is not None:
                    self._finish(*last)
                    return

                # ── Resumed by the consumer ──
                if session.closed:
                    raise SessionClosedError("session closed during generation")
                if self._cancel.is_set():
                    self._finish(GenerationState.STOPPED, "cancelled")
                    return
                if self._past_deadline():
                    self.log.warning("request timed out", timeout_s=req.timeout_s)
                    self._finish(GenerationState.STOPPED, "timeout")
                    return

                logits = session._decode(token, req.n_threads)

        except BackendComputeError as e:
            self._finish(GenerationState.ERRORED, "error", error=str(e))
            raise
        except SessionBusyError as e:
            self._finish(GenerationState.ERRORED, "error", error=str(e))
            raise
        except SessionClosedError:
            self._finish(GenerationState.STOPPED, "cancelled")
            raise
        except GeneratorExit:
            self._finish(GenerationState.STOPPED, "cancelled")
            raise
        except Exception as e:
            self._finish(GenerationState.ERRORED, "error", error=str(e))
            raise
        finally:
            if acquired:
                session._release(self)
