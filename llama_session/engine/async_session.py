"""
llama-session :: Async Session

asyncio front for a ModelSession. Requests are serialized with an
asyncio.Lock; each token is pulled in a worker thread so the event
loop stays responsive while the backend computes.

  - generate_stream(): async generator of TokenFragment; cancelling the
    consuming task cancels the underlying stream
  - generate(): CompletionResult, or CancelledError (with the partial
    result) after cancel(request_id)
  - embed(), close()

INL - 2025
"""

import asyncio
import contextlib
import itertools
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from llama_session.core.errors import CancelledError
from llama_session.core.logging import get_logger
from llama_session.engine.generation import CompletionResult, TokenFragment, TokenStream

logger = get_logger("llama_session.async")

# Cancellations remembered for requests that have not started; oldest dropped first
_MAX_CANCELLED = 1024


def _pull(stream: TokenStream) -> Optional[TokenFragment]:
    # StopIteration cannot cross a future boundary
    try:
        return next(stream)
    except StopIteration:
        return None


class AsyncModelSession:
    """
    Async wrapper around one ModelSession.

    Usage:
        asession = AsyncModelSession(load(config))
        async for frag in asession.generate_stream(prompt="Hello"):
            ...
        await asession.close()
    """

    def __init__(self, session):
        self.session = session
        self._lock = asyncio.Lock()
        self._ids = itertools.count()
        self._streams: Dict[int, TokenStream] = {}
        self._cancelled: "OrderedDict[int, None]" = OrderedDict()

        # Stats
        self.active_requests: int = 0
        self.pending_requests: int = 0

    def new_request_id(self) -> int:
        return next(self._ids)

    async def cancel(self, request_id: int) -> bool:
        """
        Cancel a request. A running one stops after its current token;
        a queued one is dropped when its turn comes. Returns True if the
        request was running.
        """
        stream = self._streams.get(request_id)
        if stream is not None:
            stream.cancel()
            return True
        self._cancelled[request_id] = None
        while len(self._cancelled) > _MAX_CANCELLED:
            self._cancelled.popitem(last=False)
        return False

    @contextlib.asynccontextmanager
    async def _turn(self):
        """Wait for exclusive use of the session."""
        self.pending_requests += 1
        try:
            await self._lock.acquire()
        finally:
            self.pending_requests -= 1
        try:
            yield
        finally:
            self._lock.release()

    def _open(self, request, request_id: int, overrides: Dict[str, Any]) -> Optional[TokenStream]:
        if request_id in self._cancelled:
            del self._cancelled[request_id]
            logger.debug(f"request {request_id} cancelled before it started")
            return None
        stream = self.session.generate(request, **overrides)
        self._streams[request_id] = stream
        self.active_requests += 1
        return stream

    async def _next(self, stream: TokenStream) -> Optional[TokenFragment]:
        """
        Pull one fragment in a worker thread.

        If the awaiting task is cancelled mid-pull, the stream is
        cancelled and the pull is still waited for: the session lock
        must be free before the next request gets its turn.
        """
        pull = asyncio.ensure_future(asyncio.to_thread(_pull, stream))
        try:
            return await asyncio.shield(pull)
        except asyncio.CancelledError:
            stream.cancel()
            await asyncio.wait([pull])
            if pull.exception() is not None:
                logger.debug(f"request {stream.request_id} failed after cancellation: {pull.exception()}")
            raise

    def _done(self, request_id: int, stream: TokenStream):
        # No-op when finished; otherwise stops after the in-flight step
        stream.cancel()
        self._streams.pop(request_id, None)
        self.active_requests -= 1

    async def generate_stream(self, request=None, request_id: Optional[int] = None, **overrides):
        """Submit a request and yield fragments as they are generated."""
        if request_id is None:
            request_id = self.new_request_id()
        async with self._turn():
            stream = self._open(request, request_id, overrides)
            if stream is None:
                return
            try:
                while True:
                    frag = await self._next(stream)
                    if frag is None:
                        break
                    yield frag
            finally:
                self._done(request_id, stream)

    async def generate(self, request=None, request_id: Optional[int] = None, **overrides) -> CompletionResult:
        """
        Run a request to completion.

        Raises CancelledError carrying the partial CompletionResult when
        the request is cancelled through cancel(request_id).
        """
        if request_id is None:
            request_id = self.new_request_id()
        async with self._turn():
            stream = self._open(request, request_id, overrides)
            if stream is None:
                raise CancelledError(f"request {request_id} cancelled before it started")
            try:
                while await self._next(stream) is not None:
                    pass
            finally:
                self._done(request_id, stream)

        result = stream.result
        if result is not None and result.finish_reason == "cancelled":
            raise CancelledError(f"request {request_id} cancelled", partial=result)
        return result

    async def embed(self, request=None, **overrides) -> List[float]:
        async with self._turn():
            return await asyncio.to_thread(self.session.embed, request, **overrides)

    async def close(self):
        """Cancel in-flight work and close the session."""
        for stream in list(self._streams.values()):
            stream.cancel()
        await asyncio.to_thread(self.session.close)

    def get_stats(self) -> Dict[str, int]:
        stats = self.session.get_stats()
        stats["active_requests"] = self.active_requests
        stats["pending_requests"] = self.pending_requests
        return stats
