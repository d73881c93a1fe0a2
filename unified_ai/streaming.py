"""Pull-based stream of completion chunks.

``ChunkStream`` is the only streaming type callers see. It advances the
underlying source exactly one chunk per pull, so nothing is buffered ahead of
the consumer, and it is single use: once exhausted, failed or closed it keeps
reporting end of stream.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

from .errors import RequestTimeoutError
from .schemas import UnifiedStreamChunk

logger = logging.getLogger(__name__)


class ChunkStream:
    """Async iterator over ``UnifiedStreamChunk`` with an overall deadline.

    Usage::

        stream = service.stream(request)
        async for chunk in stream:
            ...

    or, pulling explicitly::

        chunk = await stream.next()   # None at end of stream
    """

    def __init__(
        self,
        source: AsyncIterator[UnifiedStreamChunk],
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        on_success: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        on_abandon: Optional[Callable[[], None]] = None,
    ):
        """Initialize the stream.

        Args:
            source: Async generator producing chunks; it is closed when the
                stream ends for any reason.
            provider: Provider name used in error messages.
            timeout: Deadline in seconds for the whole stream, measured from
                the first pull.
            on_success: Called once when the source is exhausted normally.
            on_error: Called once with the error if the source fails.
            on_abandon: Called if the consumer closes or cancels the stream
                before it ends.
        """
        self._source = source
        self.provider = provider
        self.timeout = timeout
        self._on_success = on_success
        self._on_error = on_error
        self._on_abandon = on_abandon
        self._deadline: Optional[float] = None
        self._done = False
        self.chunks_received = 0

    @property
    def closed(self) -> bool:
        return self._done

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> UnifiedStreamChunk:
        if self._done:
            raise StopAsyncIteration

        loop = asyncio.get_running_loop()
        if self.timeout is not None and self._deadline is None:
            self._deadline = loop.time() + self.timeout

        try:
            if self._deadline is None:
                chunk = await self._source.__anext__()
            else:
                remaining = self._deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await asyncio.wait_for(self._source.__anext__(), remaining)
        except StopAsyncIteration:
            await self._finish()
            if self._on_success:
                self._on_success()
            raise
        except asyncio.TimeoutError:
            await self._finish()
            error = RequestTimeoutError(
                f"Stream exceeded deadline of {self.timeout}s",
                self.provider,
                timeout=self.timeout,
            )
            if self._on_error:
                self._on_error(error)
            raise error from None
        except asyncio.CancelledError:
            # Cancellation is terminal for this call and is not a provider failure
            if not self._done and self._on_abandon:
                self._on_abandon()
            await self._finish()
            raise
        except Exception as e:
            await self._finish()
            if self._on_error:
                self._on_error(e)
            raise

        self.chunks_received += 1
        return chunk

    async def next(self) -> Optional[UnifiedStreamChunk]:
        """Return the next chunk, or ``None`` at end of stream."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    async def collect(self) -> List[UnifiedStreamChunk]:
        """Drain the stream into a list."""
        return [chunk async for chunk in self]

    async def text(self) -> str:
        """Drain the stream and join the content deltas."""
        parts = []
        async for chunk in self:
            for choice in chunk.choices:
                if choice.delta.content:
                    parts.append(choice.delta.content)
        return "".join(parts)

    async def aclose(self) -> None:
        """Abandon the stream and release its connection."""
        if not self._done:
            logger.debug(f"Closing stream from {self.provider} after {self.chunks_received} chunks")
            if self._on_abandon:
                self._on_abandon()
        await self._finish()

    async def _finish(self) -> None:
        if self._done:
            return
        self._done = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError as e:
                # The generator is still running; it is torn down by its own task
                logger.debug(f"Stream source close deferred: {e}")

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
