import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

import httpx

from .providers import describe_http_error
from .schemas import StreamEvent

logger = logging.getLogger("uvicorn.error")

TokenStreamFactory = Callable[[asyncio.Event], AsyncIterator[str]]
PersistText = Callable[[str], Awaitable[Any]]

TIMEOUT_MESSAGE = "The response took too long and was stopped."


class StreamingChannel:
    """One provider token stream relayed to one subscriber.

    The first of completion, provider error, timeout or `close()` wins: it
    stops the provider stream, persists the text received so far and (for
    everything but `close()`) yields the single terminal event.
    """

    def __init__(
        self,
        conversation_id: str,
        token_stream: TokenStreamFactory,
        persist: PersistText,
        timeout_s: float = 60.0,
        provider_label: str = "the provider",
    ):
        self.conversation_id = conversation_id
        self.provider_label = provider_label
        self.timeout_s = timeout_s
        self.cancel_event = asyncio.Event()
        self.terminal_event: Optional[StreamEvent] = None
        self._token_stream = token_stream
        self._persist = persist
        self._queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue()
        self._chunks: List[str] = []
        self._producer: Optional[asyncio.Task] = None
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    async def _produce(self) -> None:
        try:
            async for delta in self._token_stream(self.cancel_event):
                if self.cancel_event.is_set():
                    return
                if not delta:
                    continue
                self._chunks.append(delta)
                await self._queue.put(StreamEvent(kind="chunk", data=delta))
            await self._queue.put(StreamEvent(kind="complete"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, httpx.HTTPError):
                message = describe_http_error(self.provider_label, exc)
            else:
                message = str(exc) or exc.__class__.__name__
            logger.warning("Stream for conversation %s failed: %s", self.conversation_id, message)
            await self._queue.put(StreamEvent(kind="error", data=message))

    async def _stop_producer(self) -> None:
        task = self._producer
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _terminate(self, kind: Optional[str], data: str = "") -> Optional[StreamEvent]:
        if self._finished:
            return None
        self._finished = True
        self.cancel_event.set()
        await self._stop_producer()
        text = self.text
        if text.strip():
            try:
                await self._persist(text)
            except Exception as exc:
                logger.error("Could not persist streamed reply for %s: %s", self.conversation_id, exc)
        if kind is None:
            return None
        if kind == "complete" and not data:
            data = text
        self.terminal_event = StreamEvent(kind=kind, data=data)
        return self.terminal_event

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._producer is None and not self._finished:
            self._producer = asyncio.create_task(self._produce())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_s
        try:
            while not self._finished:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    event = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    logger.warning(
                        "Stream for conversation %s hit the %ss limit", self.conversation_id, self.timeout_s
                    )
                    terminal = await self._terminate("timeout", TIMEOUT_MESSAGE)
                    if terminal is not None:
                        yield terminal
                    return
                if not event.is_terminal:
                    yield event
                    continue
                terminal = await self._terminate(event.kind, event.data)
                if terminal is not None:
                    yield terminal
                return
        finally:
            await self.close()

    async def close(self) -> None:
        """Subscriber went away: stop the provider stream and keep any partial text."""
        await self._terminate(None)
