"""
llama-session :: Generation Tests

Tests for:
  - Greedy end-to-end run on the tiny model, seeded determinism
  - Finish reasons: length, eos, stop, context, cancelled, timeout, error
  - Fragment stream: indices, completed flag, UTF-8 hold-back
  - Cancellation: before the first pull, mid-stream, from another thread
  - Request serialization: busy re-entry, cross-thread waiting, close()
  - Request validation

INL - 2025
"""

import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from llama_session import (
    BackendComputeError, GenerationRequest, GenerationState, ModelConfig, SessionBusyError,
    TokenFragment, ValidationError, load,
)
from tiny_model import N_VOCAB, token_id


HELLO = token_id("Hello")
WORLD = token_id("▁world")
THE = token_id("▁the")


# =========================================================================
# Real model
# =========================================================================

class TestRealModel:
    def test_greedy_five_tokens(self, tiny_gguf):
        request = GenerationRequest(
            prompt="Hello", n_tok_predict=5, top_k=40, top_p=0.1, temp=0.0, repeat_penalty=1.0,
        )
        with load(ModelConfig(path=tiny_gguf, n_ctx=1024, seed=0)) as s:
            frags = list(s.generate(request))
            again = s.complete(request)

        assert len(frags) == 5
        assert [f.index for f in frags] == [0, 1, 2, 3, 4]
        assert all(isinstance(f, TokenFragment) for f in frags)
        assert [f.completed for f in frags] == [False] * 4 + [True]
        assert all(0 <= f.token_id < N_VOCAB for f in frags)
        # The cache is reset per request, so greedy output repeats
        assert again.output_tokens == [f.token_id for f in frags]
        assert again.state == GenerationState.COMPLETE
        assert again.finish_reason == "length"

    def test_greedy_same_across_sessions(self, tiny_gguf):
        with load(ModelConfig(path=tiny_gguf, n_ctx=64, seed=1)) as a, \
                load(ModelConfig(path=tiny_gguf, n_ctx=64, seed=2)) as b:
            ra = a.complete(prompt="Hello world", n_tok_predict=6, temp=0)
            rb = b.complete(prompt="Hello world", n_tok_predict=6, temp=0)
        assert ra.output_tokens == rb.output_tokens

    def test_seeded_sampling_is_reproducible(self, tiny_gguf):
        kwargs = dict(prompt="Hello", n_tok_predict=8, temp=0.8, top_k=40, top_p=0.95)
        with load(ModelConfig(path=tiny_gguf, n_ctx=64, seed=7)) as a, \
                load(ModelConfig(path=tiny_gguf, n_ctx=64, seed=7)) as b:
            ra = a.complete(**kwargs)
            rb = b.complete(**kwargs)
        assert ra.output_tokens == rb.output_tokens
        assert ra.text == rb.text

    def test_logit_bias_bans_greedy_token(self, session):
        first = session.complete(prompt="Hello", n_tok_predict=1, temp=0).output_tokens[0]
        banned = session.complete(prompt="Hello", n_tok_predict=1, temp=0,
                                  logit_bias={first: float("-inf")})
        assert banned.output_tokens[0] != first

    def test_timings_recorded(self, session):
        result = session.complete(prompt="Hello", n_tok_predict=3, temp=0)
        assert result.prefill_ms > 0
        assert result.decode_ms >= 0
        assert result.prompt_tokens[0] == 1


# =========================================================================
# Finish reasons
# =========================================================================

class TestFinishReasons:
    def test_length(self, scripted):
        s, _ = scripted(then=HELLO)
        result = s.complete(prompt="Hello", n_tok_predict=4, temp=0)
        assert result.finish_reason == "length"
        assert result.state == GenerationState.COMPLETE
        assert result.num_output_tokens == 4

    def test_zero_tokens_requested(self, scripted):
        s, backend = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=0)
        assert list(stream) == []
        assert stream.result.finish_reason == "length"
        assert stream.result.state == GenerationState.COMPLETE
        assert stream.result.text == ""
        assert len(backend.calls) == 1

    def test_eos_is_not_emitted(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD])
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        frags = list(stream)
        assert [f.token_id for f in frags] == [HELLO, WORLD]
        # EOS was not yet known when the last fragment went out
        assert not frags[-1].completed
        assert stream.result.finish_reason == "eos"
        assert stream.result.state == GenerationState.COMPLETE
        assert stream.result.text == "Hello world"
        assert 2 not in stream.result.output_tokens

    def test_immediate_eos(self, scripted):
        s, _ = scripted()
        result = s.complete(prompt="Hello", temp=0)
        assert result.output_tokens == []
        assert result.finish_reason == "eos"

    def test_stop_sequence_truncates(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD, THE, THE])
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0, stop_sequence="world")
        frags = list(stream)
        assert len(frags) == 2
        assert frags[-1].completed
        assert stream.result.finish_reason == "stop"
        assert stream.result.state == GenerationState.COMPLETE
        assert stream.result.text == "Hello "
        assert stream.result.output_tokens == [HELLO, WORLD]

    def test_stop_sequence_across_tokens(self, scripted):
        s, _ = scripted(script=[token_id("He"), token_id("llo"), THE])
        result = s.complete(prompt="Hello", n_tok_predict=10, temp=0, stop_sequence="ell")
        assert result.finish_reason == "stop"
        assert result.text == "H"

    def test_context_full(self, scripted):
        s, _ = scripted(then=HELLO, n_ctx=4)
        stream = s.generate(prompt="Hello", n_tok_predict=100, temp=0)
        frags = list(stream)
        # 2 prompt tokens; the last sampled token is never evaluated
        assert len(frags) == 3
        assert frags[-1].completed
        assert stream.result.finish_reason == "context"
        assert stream.result.state == GenerationState.STOPPED
        assert s.n_past == 4

    def test_prompt_fills_context(self, scripted):
        s, _ = scripted(then=HELLO, n_ctx=2)
        result = s.complete(prompt="Hello", n_tok_predict=100, temp=0)
        assert result.num_output_tokens == 1
        assert result.finish_reason == "context"

    def test_timeout(self, scripted):
        s, _ = scripted(then=HELLO, delay_s=0.05)
        result = s.complete(prompt="Hello", n_tok_predict=100, temp=0, timeout_s=0.12)
        assert result.finish_reason == "timeout"
        assert result.state == GenerationState.STOPPED
        assert 1 <= result.num_output_tokens < 100

    def test_deadline_passed_before_prefill(self, scripted):
        s, backend = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=5, temp=0, timeout_s=0.05)
        time.sleep(0.1)
        assert list(stream) == []
        assert stream.result.finish_reason == "timeout"
        assert stream.result.state == GenerationState.STOPPED
        assert backend.calls == []
        # The session lock was released
        assert s.complete(prompt="Hello", n_tok_predict=1, temp=0).num_output_tokens == 1

    def test_backend_error_mid_stream(self, scripted):
        s, _ = scripted(then=HELLO, fail_on_call=3)
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        got = [next(stream), next(stream)]
        with pytest.raises(BackendComputeError, match="scripted backend failure"):
            next(stream)

        assert stream.state == GenerationState.ERRORED
        assert stream.result.finish_reason == "error"
        assert "scripted backend failure" in stream.result.error
        assert stream.result.output_tokens == [f.token_id for f in got]
        assert s.needs_reset
        with pytest.raises(StopIteration):
            next(stream)

        # The next request recovers: prefill resets the cache
        result = s.complete(prompt="Hello", n_tok_predict=2, temp=0)
        assert result.num_output_tokens == 2
        assert not s.needs_reset

    def test_backend_error_in_prefill(self, scripted):
        s, _ = scripted(then=HELLO, fail_on_call=1)
        stream = s.generate(prompt="Hello", n_tok_predict=3, temp=0)
        with pytest.raises(BackendComputeError):
            next(stream)
        assert stream.result.output_tokens == []
        assert stream.result.state == GenerationState.ERRORED
        assert s.get_stats()["requests_errored"] == 1


# =========================================================================
# Fragments
# =========================================================================

class TestFragments:
    def test_incomplete_character_is_held_back(self, scripted):
        s, _ = scripted(script=[token_id("<0xC3>"), token_id("<0xA9>")])
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        frags = list(stream)
        assert [f.text for f in frags] == ["", "é"]
        assert stream.result.text == "é"

    def test_fragment_text_concatenates_to_result(self, scripted):
        script = [HELLO, WORLD, token_id(","), THE, token_id("<0xC3>"), token_id("<0xA9>"), token_id("!")]
        s, _ = scripted(script=script)
        with s.generate(prompt="Hello", n_tok_predict=len(script), temp=0) as stream:
            texts = [f.text for f in stream]
        assert "".join(texts) == "Hello world, theé!"
        assert stream.result.text == "Hello world, theé!"
        assert stream.text == stream.result.text

    def test_fragments_exclude_stop_sequence(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD, token_id("!"), THE])
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0, stop_sequence="world")
        texts = [f.text for f in stream]
        assert texts == ["Hello", " "]
        assert "".join(texts) == stream.result.text == "Hello "
        assert stream.result.finish_reason == "stop"

    def test_possible_stop_start_is_held_back(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD, THE])
        stream = s.generate(prompt="Hello", n_tok_predict=3, temp=0, stop_sequence="worlds")
        texts = [f.text for f in stream]
        # " world" could begin "worlds" until "▁the" arrives
        assert texts == ["Hello", " ", "world the"]
        assert "".join(texts) == stream.result.text == "Hello world the"
        assert stream.result.finish_reason == "length"

    def test_last_fragment_flushes_held_text(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD])
        stream = s.generate(prompt="Hello", n_tok_predict=2, temp=0, stop_sequence="worlds")
        texts = [f.text for f in stream]
        assert texts == ["Hello", " world"]
        assert stream.result.text == "Hello world"

    def test_stream_not_restartable(self, scripted):
        s, _ = scripted(script=[HELLO])
        stream = s.generate(prompt="Hello", n_tok_predict=1, temp=0)
        assert len(list(stream)) == 1
        assert list(stream) == []
        assert stream.finished

    def test_text_before_finish(self, scripted):
        s, _ = scripted(script=[HELLO, WORLD])
        stream = s.generate(prompt="Hello", n_tok_predict=5, temp=0)
        next(stream)
        next(stream)
        assert stream.result is None
        assert stream.text == "Hello world"
        stream.cancel()

    def test_nothing_computed_before_first_pull(self, scripted):
        s, backend = scripted(script=[HELLO])
        stream = s.generate(prompt="Hello", n_tok_predict=1)
        assert stream.state == GenerationState.INIT
        assert backend.calls == []
        stream.collect()
        assert backend.calls


# =========================================================================
# Cancellation
# =========================================================================

class TestCancel:
    def test_cancel_before_first_pull(self, scripted):
        s, backend = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        stream.cancel()
        assert list(stream) == []
        assert stream.result.finish_reason == "cancelled"
        assert stream.result.state == GenerationState.STOPPED
        assert backend.calls == []
        # The session lock was never taken
        assert s.complete(prompt="Hello", n_tok_predict=1, temp=0).num_output_tokens == 1

    def test_cancel_mid_stream_keeps_prefix(self, scripted):
        s, _ = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        got = [next(stream), next(stream)]
        stream.cancel()
        stream.cancel()
        with pytest.raises(StopIteration):
            next(stream)
        assert stream.cancelled
        assert stream.result.finish_reason == "cancelled"
        assert stream.result.output_tokens == [f.token_id for f in got]

    def test_context_manager_cancels(self, scripted):
        s, _ = scripted(then=HELLO)
        with s.generate(prompt="Hello", n_tok_predict=10, temp=0) as stream:
            next(stream)
        assert stream.result.finish_reason == "cancelled"
        assert s.get_stats()["requests_stopped"] == 1
        assert s.complete(prompt="Hello", n_tok_predict=2, temp=0).num_output_tokens == 2

    def test_cancel_from_another_thread(self, scripted):
        s, _ = scripted(then=HELLO, delay_s=0.1)
        stream = s.generate(prompt="Hello", n_tok_predict=100, temp=0)
        received = []
        first = threading.Event()

        def consume():
            for frag in stream:
                received.append(frag)
                first.set()

        t = threading.Thread(target=consume)
        t.start()
        assert first.wait(5.0)
        stream.cancel()
        t.join(5.0)

        assert not t.is_alive()
        assert stream.result.finish_reason == "cancelled"
        assert 1 <= len(received) < 100
        assert stream.result.output_tokens == [f.token_id for f in received]

    def test_cancel_while_waiting_for_lock(self, scripted):
        s, _ = scripted(then=HELLO)
        first = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        next(first)

        waiting = {}

        def other():
            stream = s.generate(prompt="Hello", n_tok_predict=3, temp=0)
            waiting["stream"] = stream
            waiting["frags"] = list(stream)

        t = threading.Thread(target=other)
        t.start()
        while "stream" not in waiting:
            time.sleep(0.01)
        time.sleep(0.1)
        waiting["stream"].cancel()
        t.join(5.0)

        assert not t.is_alive()
        assert waiting["frags"] == []
        assert waiting["stream"].result.finish_reason == "cancelled"
        first.cancel()


# =========================================================================
# Serialization / lifecycle
# =========================================================================

class TestSerialization:
    def test_same_thread_reentry_is_busy(self, scripted):
        s, _ = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=5, temp=0)
        next(stream)
        with pytest.raises(SessionBusyError):
            s.generate(prompt="Hello")
        stream.collect()
        assert s.complete(prompt="Hello", n_tok_predict=1, temp=0).num_output_tokens == 1

    def test_stream_handed_to_another_thread(self, scripted):
        """The lock follows the stream: the thread that started it is free once another resumes it."""
        s, _ = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=4, temp=0)
        starter = threading.Thread(target=next, args=(stream,))
        starter.start()
        starter.join(5.0)

        next(stream)
        with pytest.raises(SessionBusyError):
            s.generate(prompt="Hello")

        done = {}

        def other():
            done["result"] = s.complete(prompt="Hello", n_tok_predict=1, temp=0)

        t = threading.Thread(target=other)
        t.start()
        time.sleep(0.1)
        assert "result" not in done

        assert stream.collect().num_output_tokens == 4
        t.join(5.0)
        assert done["result"].num_output_tokens == 1

    def test_unstarted_stream_does_not_hold_session(self, scripted):
        s, _ = scripted(then=HELLO)
        idle = s.generate(prompt="Hello", n_tok_predict=5, temp=0)
        assert s.complete(prompt="Hello", n_tok_predict=2, temp=0).num_output_tokens == 2
        assert idle.collect().num_output_tokens == 5

    def test_other_thread_waits_its_turn(self, scripted):
        s, _ = scripted(then=HELLO)
        first = s.generate(prompt="Hello", n_tok_predict=5, temp=0)
        next(first)

        done = {}

        def other():
            done["result"] = s.complete(prompt="Hello", n_tok_predict=2, temp=0)

        t = threading.Thread(target=other)
        t.start()
        time.sleep(0.2)
        assert "result" not in done

        assert first.collect().num_output_tokens == 5
        t.join(5.0)
        assert done["result"].num_output_tokens == 2
        assert s.get_stats()["requests_completed"] == 2

    def test_close_during_stream(self, scripted):
        s, backend = scripted(then=HELLO)
        stream = s.generate(prompt="Hello", n_tok_predict=10, temp=0)
        next(stream)
        s.close()
        with pytest.raises(StopIteration):
            next(stream)
        assert stream.result.finish_reason == "cancelled"
        assert s.closed
        assert backend.freed


# =========================================================================
# Validation
# =========================================================================

class TestValidation:
    def test_empty_prompt(self, scripted):
        s, _ = scripted()
        with pytest.raises(ValidationError):
            s.generate(prompt="")

    def test_logit_bias_outside_vocab(self, scripted):
        s, _ = scripted()
        with pytest.raises(ValidationError, match="logit_bias"):
            s.generate(prompt="Hello", logit_bias={N_VOCAB: 1.0})

    def test_prompt_longer_than_context(self, scripted):
        s, _ = scripted(n_ctx=4)
        with pytest.raises(ValidationError, match="context window"):
            s.generate(prompt="a b c d e f")

    def test_bad_request_type(self, scripted):
        s, _ = scripted()
        with pytest.raises(ValidationError):
            s.generate(42)

    def test_request_forms(self, scripted):
        s, _ = scripted(script=[HELLO])
        assert s.complete("Hello", temp=0).output_tokens == [HELLO]
        assert s.complete({"prompt": "Hello", "nTokPredict": 1, "temp": 0}).output_tokens == [HELLO]

    def test_invalid_values_raise_before_compute(self, scripted):
        s, backend = scripted()
        with pytest.raises(ValidationError):
            s.generate(prompt="Hello", n_tok_predict=-1)
        with pytest.raises(ValidationError):
            s.generate(prompt="Hello", timeout_s=0)
        assert backend.calls == []
        assert s.get_stats()["requests_total"] == 0
