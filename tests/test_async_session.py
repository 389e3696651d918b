"""
llama-session :: Test Async Session

Verifies the asyncio front: streaming, full completions, cancellation
of running and queued requests, serialization of concurrent callers.

Run:
    python -m pytest tests/test_async_session.py -v

INL - 2025
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from llama_session import AsyncModelSession, CancelledError, CompletionResult, TokenFragment
from tiny_model import token_id

HELLO = token_id("Hello")


async def _wait_until(cond, timeout=5.0):
    waited = 0.0
    while not cond():
        await asyncio.sleep(0.01)
        waited += 0.01
        assert waited < timeout, "condition not reached"


async def test_generate_stream(scripted):
    """Fragments arrive in order and the stream ends on its own."""
    s, _ = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    frags = [f async for f in asession.generate_stream(prompt="Hello", n_tok_predict=3, temp=0)]

    assert len(frags) == 3
    assert all(isinstance(f, TokenFragment) for f in frags)
    assert [f.index for f in frags] == [0, 1, 2]
    assert frags[-1].completed
    assert asession.active_requests == 0


async def test_generate(scripted):
    s, _ = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    result = await asession.generate(prompt="Hello", n_tok_predict=4, temp=0)

    assert isinstance(result, CompletionResult)
    assert result.num_output_tokens == 4
    assert result.finish_reason == "length"


async def test_cancel_running_request(scripted):
    """cancel(request_id) stops a running request; the partial result travels with the error."""
    s, _ = scripted(then=HELLO, delay_s=0.05)
    asession = AsyncModelSession(s)
    rid = asession.new_request_id()

    task = asyncio.create_task(asession.generate(prompt="Hello", n_tok_predict=100, temp=0, request_id=rid))
    await _wait_until(lambda: asession.active_requests == 1)
    await asyncio.sleep(0.1)

    assert await asession.cancel(rid) is True
    with pytest.raises(CancelledError) as ei:
        await task

    partial = ei.value.partial
    assert partial is not None
    assert partial.finish_reason == "cancelled"
    assert partial.num_output_tokens < 100
    assert asession.active_requests == 0


async def test_cancel_queued_request(scripted):
    """A request cancelled before its turn never starts."""
    s, backend = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    rid = asession.new_request_id()
    assert await asession.cancel(rid) is False
    with pytest.raises(CancelledError) as ei:
        await asession.generate(prompt="Hello", n_tok_predict=3, request_id=rid)
    assert ei.value.partial is None

    rid = asession.new_request_id()
    await asession.cancel(rid)
    frags = [f async for f in asession.generate_stream(prompt="Hello", request_id=rid)]
    assert frags == []
    assert backend.calls == []


async def test_concurrent_requests_serialized(scripted):
    """Concurrent callers all complete, one at a time."""
    s, _ = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    results = await asyncio.gather(*[
        asession.generate(prompt="Hello", n_tok_predict=3 + i, temp=0) for i in range(3)
    ])

    assert [r.num_output_tokens for r in results] == [3, 4, 5]
    assert len({r.request_id for r in results}) == 3
    assert s.get_stats()["requests_completed"] == 3


async def test_stream_closed_early(scripted):
    """Closing the async generator cancels the underlying stream and frees the session."""
    s, _ = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    agen = asession.generate_stream(prompt="Hello", n_tok_predict=50, temp=0)
    await agen.__anext__()
    await agen.__anext__()
    await agen.aclose()

    assert asession.active_requests == 0
    assert s.get_stats()["requests_stopped"] == 1
    result = await asession.generate(prompt="Hello", n_tok_predict=2, temp=0)
    assert result.num_output_tokens == 2


async def test_cancelled_consumer_leaves_session_usable(scripted):
    """Cancelling the consuming task mid-pull frees the session for the next request."""
    s, _ = scripted(then=HELLO, delay_s=0.05)
    asession = AsyncModelSession(s)

    async def consume():
        async for _ in asession.generate_stream(prompt="Hello", n_tok_predict=50, temp=0):
            pass

    for _ in range(3):
        task = asyncio.create_task(consume())
        await _wait_until(lambda: asession.active_requests == 1)
        await asyncio.sleep(0.12)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        result = await asession.generate(prompt="Hello", n_tok_predict=3, temp=0)
        assert result.finish_reason == "length"
        assert result.num_output_tokens == 3

    stats = s.get_stats()
    assert stats["requests_stopped"] == 3
    assert stats["requests_completed"] == 3
    assert stats["requests_errored"] == 0
    assert asession.active_requests == 0


async def test_cancel_memory_is_bounded(scripted):
    s, backend = scripted(then=HELLO)
    asession = AsyncModelSession(s)

    for rid in range(10_000, 13_000):
        assert await asession.cancel(rid) is False
    assert len(asession._cancelled) <= 1024

    # The most recent ones are still honoured
    with pytest.raises(CancelledError):
        await asession.generate(prompt="Hello", n_tok_predict=3, request_id=12_999)
    assert backend.calls == []


async def test_embed(scripted):
    s, backend = scripted(embedding=True)
    asession = AsyncModelSession(s)

    vec = await asession.embed(prompt="Hello")

    assert len(vec) == backend.n_embd
    assert s.get_stats()["embeddings_total"] == 1


async def test_stats_and_close(scripted):
    s, backend = scripted(then=HELLO)
    asession = AsyncModelSession(s)
    await asession.generate(prompt="Hello", n_tok_predict=1, temp=0)

    stats = asession.get_stats()
    assert stats["active_requests"] == 0
    assert stats["pending_requests"] == 0
    assert stats["requests_completed"] == 1

    await asession.close()
    assert s.closed
    assert backend.freed
