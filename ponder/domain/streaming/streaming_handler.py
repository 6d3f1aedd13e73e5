from typing import AsyncIterator, Optional
import asyncio
import structlog

logger = structlog.get_logger(__name__)

_CLOSED = object()


class OutputChannel:
    """Bounded stream of partial answer text.

    ``send`` waits while the buffer is full, so a slow consumer slows the
    producer down instead of growing memory.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise RuntimeError("Output channel is closed")
        if text:
            await self._queue.put(text)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self._queue.put(_CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def collect(self) -> str:
        """Drain everything until the channel closes"""

        return "".join([piece async for piece in self])


class TokenBuffer:
    """Coalesces streamed text into larger pieces before forwarding"""

    def __init__(self, min_chars: int = 50, max_delay: float = 0.1):
        self.min_chars = min_chars
        self.max_delay = max_delay
        self._buffer = ""
        self._last_flush: Optional[float] = None

    def push(self, text: str) -> Optional[str]:
        """Add text; returns a piece when enough has accumulated"""

        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._last_flush is None:
            self._last_flush = now
        self._buffer += text
        if len(self._buffer) >= self.min_chars or now - self._last_flush >= self.max_delay:
            return self.flush()
        return None

    def flush(self) -> Optional[str]:
        if not self._buffer:
            return None
        piece, self._buffer = self._buffer, ""
        try:
            self._last_flush = asyncio.get_running_loop().time()
        except RuntimeError:
            self._last_flush = None
        return piece
